import json
import stat
from pathlib import Path

import pytest

from conftest import GIB, LIBRARY_PATH, SITE_URL
from errors import PreconditionError
from provision_config import Config, load_run_config


@pytest.fixture
def store(tmp_path):
    config = Config(tmp_path / "cfg" / "config.json")
    config.set("sharepoint", "site_url", SITE_URL)
    config.set("sharepoint", "library_path", LIBRARY_PATH)
    return config


def test_defaults_without_file(tmp_path):
    config = Config(tmp_path / "missing.json")
    assert not config.exists()
    assert config.get("vm", "memory_gb") == 8
    assert config.get("vm", "switch_name") == "Default Switch"
    assert config.get("vm", "unknown", "fallback") == "fallback"


def test_set_persists_with_private_permissions(store):
    data = json.loads(store.config_path.read_text())
    assert data["sharepoint"]["site_url"] == SITE_URL
    assert stat.S_IMODE(store.config_path.stat().st_mode) == 0o600


def test_missing_keys_fall_back_to_defaults(store):
    assert store.get("vm", "processor_count") == 4
    assert store.get("auth", "method") == "interactive"


def test_environment_overrides_file(store, monkeypatch):
    monkeypatch.setenv("VMPROV_VM_SWITCH_NAME", "External")
    assert store.get("vm", "switch_name") == "External"


def test_init_does_not_overwrite(tmp_path):
    config = Config(tmp_path / "config.json")
    assert config.init()
    config.set("vm", "memory_gb", 32)
    assert not Config(config.config_path).init()
    assert Config(config.config_path).get("vm", "memory_gb") == 32


def test_show_masks_sensitive_values(store):
    store.set("auth", "client_id", "04b07795-8ddb-461a-bbee-02f9e1bf7b46")
    shown = store.show()
    assert shown["auth"]["client_id"] == "04b0...7b46"
    assert shown["vm"]["name"] == "(not set)"


def test_load_run_config(store):
    config = load_run_config(store)

    assert config.site_url == SITE_URL
    assert config.library_path == LIBRARY_PATH
    assert config.memory_bytes == 8 * GIB
    assert config.memory_gb == 8
    assert config.processor_count == 4
    assert config.switch_name == "Default Switch"
    assert config.auth_method == "interactive"
    assert config.vm_name is None
    assert config.folder is None
    assert isinstance(config.temp_dir, Path)


def test_overrides_beat_environment(store, monkeypatch):
    monkeypatch.setenv("VMPROV_VM_MEMORY_GB", "16")
    monkeypatch.setenv("VMPROV_VM_PROCESSOR_COUNT", "2")

    config = load_run_config(store, {"processor_count": 6, "vm_name": "LAB-01", "switch_name": None})

    assert config.memory_bytes == 16 * GIB
    assert config.processor_count == 6
    assert config.vm_name == "LAB-01"
    assert config.switch_name == "Default Switch"


def test_run_config_is_frozen(store):
    config = load_run_config(store)
    with pytest.raises(AttributeError):
        config.vm_name = "other"


@pytest.mark.parametrize("overrides", [
    {"site_url": ""},
    {"site_url": "http://contoso.sharepoint.com/sites/IT"},
    {"library_path": "Shared Documents"},
    {"memory_gb": 0},
    {"memory_gb": "lots"},
    {"processor_count": 0},
    {"processor_count": 2.5},
    {"processor_count": "2.5"},
    {"switch_name": "  "},
    {"auth_method": "password"},
])
def test_invalid_settings(store, overrides):
    with pytest.raises(PreconditionError):
        load_run_config(store, overrides)


def test_whole_number_cpu_count_from_file(store):
    store.set("vm", "processor_count", 2.0)
    assert load_run_config(store).processor_count == 2


def test_delete_key_falls_back_to_default(store):
    store.set("vm", "switch_name", "External")
    store.delete("vm", "switch_name")
    assert store.get("vm", "switch_name") == "Default Switch"
    assert "switch_name" not in json.loads(store.config_path.read_text())["vm"]


def test_delete_section(store):
    store.delete("sharepoint")
    assert store.get("sharepoint", "site_url") == ""
    assert "sharepoint" not in json.loads(store.config_path.read_text())
