#!/usr/bin/env python3
"""
provision_config.py - Configuration for the VM provisioning workflow

Settings live in a single JSON file outside the repo:
    ~/.vmprov_config/config.json

Lookup order for every value: command line flag, then environment variable
VMPROV_<SECTION>_<KEY> (e.g. VMPROV_VM_MEMORY_GB), then the config file,
then the built-in default.

Usage:
    from provision_config import Config, load_run_config

    store = Config()
    run_config = load_run_config(store, {"vm_name": "Win11Image"})
"""

import copy
import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional
from urllib.parse import urlparse

from common import speak, speak_plain
from errors import PreconditionError


# Centralized config location - NOT in repo
CONFIG_DIR = Path.home() / ".vmprov_config"
CONFIG_FILE = CONFIG_DIR / "config.json"

ENV_PREFIX = "VMPROV"
AUTH_METHODS = ("interactive", "device")

# Azure CLI public client, usable for delegated sign-in without app registration
DEFAULT_CLIENT_ID = "04b07795-8ddb-461a-bbee-02f9e1bf7b46"


class Config:
    """JSON backed settings store with environment overrides."""

    DEFAULT_CONFIG = {
        "_comment": "VM provisioning configuration - DO NOT COMMIT TO GIT",
        "sharepoint": {
            "site_url": "",
            "library_path": "/Shared Documents/VM Images"
        },
        "auth": {
            "method": "interactive",
            "client_id": DEFAULT_CLIENT_ID,
            "tenant_id": "organizations"
        },
        "paths": {
            "temp_dir": "C:\\Temp\\VMImage",
            "archiver": "C:\\Program Files\\7-Zip\\7z.exe",
            "transcript_dir": "C:\\Temp\\VMProvisionLogs",
            "powershell": "powershell.exe"
        },
        "vm": {
            "name": "",
            "memory_gb": 8.0,
            "switch_name": "Default Switch",
            "processor_count": 4
        }
    }

    # Fields that should be masked when displayed
    SENSITIVE_FIELDS = ["client_id", "secret", "token", "password"]

    def __init__(self, config_path: Optional[Path] = None):
        self.config_path = Path(config_path) if config_path else CONFIG_FILE
        self.config_dir = self.config_path.parent
        self._config = None

    def _ensure_dir(self):
        """Ensure config directory exists with secure permissions."""
        if not self.config_dir.exists():
            self.config_dir.mkdir(parents=True, mode=0o700)

    def _load(self) -> dict:
        """Load configuration from file, falling back to defaults."""
        if self._config is not None:
            return self._config

        if self.config_path.exists():
            try:
                with open(self.config_path) as f:
                    self._config = json.load(f)
            except (json.JSONDecodeError, IOError) as e:
                speak(f"Warning: Could not load config: {e}")
                self._config = copy.deepcopy(self.DEFAULT_CONFIG)
        else:
            self._config = copy.deepcopy(self.DEFAULT_CONFIG)

        return self._config

    def _save(self):
        """Save configuration to file with secure permissions."""
        self._ensure_dir()

        with open(self.config_path, "w") as f:
            json.dump(self._config, f, indent=2)

        self.config_path.chmod(0o600)

    def get(self, section: str, key: str, default: Any = None) -> Any:
        """
        Get a config value.

        Environment variables VMPROV_<SECTION>_<KEY> win over the file, and
        keys missing from the file fall back to DEFAULT_CONFIG.
        """
        env_key = f"{ENV_PREFIX}_{section.upper()}_{key.upper()}"
        env_value = os.environ.get(env_key)
        if env_value:
            return env_value

        section_data = self._load().get(section, {})
        if isinstance(section_data, dict) and key in section_data:
            return section_data[key]

        fallback = self.DEFAULT_CONFIG.get(section, {}).get(key)
        return default if fallback is None else fallback

    def set(self, section: str, key: str, value: Any):
        """Set a config value and persist it."""
        config = self._load()
        config.setdefault(section, {})[key] = value
        self._config = config
        self._save()

    def delete(self, section: str, key: Optional[str] = None):
        """Delete a config key or entire section. Lookups fall back to defaults."""
        config = self._load()

        if key is None:
            config.pop(section, None)
        elif section in config:
            config[section].pop(key, None)

        self._config = config
        self._save()

    def init(self, force: bool = False) -> bool:
        """Write the default config file. Returns False if one already exists."""
        if self.exists() and not force:
            return False

        self._config = copy.deepcopy(self.DEFAULT_CONFIG)
        self._save()
        return True

    def exists(self) -> bool:
        return self.config_path.exists()

    def mask_value(self, key: str, value: Any) -> str:
        """Mask sensitive values for display."""
        if value is None or value == "":
            return "(not set)"

        is_sensitive = any(s in key.lower() for s in self.SENSITIVE_FIELDS)

        if is_sensitive and isinstance(value, str) and len(value) > 8:
            return f"{value[:4]}...{value[-4:]}"
        elif is_sensitive and isinstance(value, str):
            return "****"

        return str(value)

    def show(self, show_secrets: bool = False) -> dict:
        """Get config for display (with masked secrets)."""
        config = self._load()

        if show_secrets:
            return config

        result = {}
        for section, values in config.items():
            if isinstance(values, dict):
                result[section] = {k: self.mask_value(k, v) for k, v in values.items()}
            else:
                result[section] = values
        return result


@dataclass(frozen=True)
class RunConfig:
    """Settings for one provisioning run. Built once, never mutated."""
    site_url: str
    library_path: str
    temp_dir: Path
    archiver_path: str
    transcript_dir: Path
    powershell: str
    memory_bytes: int
    switch_name: str
    processor_count: int
    auth_method: str = "interactive"
    client_id: str = DEFAULT_CLIENT_ID
    tenant_id: str = "organizations"
    vm_name: Optional[str] = None
    folder: Optional[str] = None

    @property
    def memory_gb(self) -> float:
        return self.memory_bytes / 1024 ** 3


def _as_number(name: str, value: Any, cast=int):
    try:
        return cast(value)
    except (TypeError, ValueError):
        raise PreconditionError(f"Invalid value for {name}: {value!r}")


def _as_count(name: str, value: Any) -> int:
    """Parse a whole number, rejecting values like 2.5 instead of truncating."""
    number = _as_number(name, value, float)
    if not number.is_integer():
        raise PreconditionError(f"{name} must be a whole number, got {value!r}")
    return int(number)


def load_run_config(store: Config, overrides: Optional[dict] = None) -> RunConfig:
    """
    Resolve and validate every run setting.

    Args:
        store: Config file/environment lookup
        overrides: Values from the command line; None entries are ignored

    Raises:
        PreconditionError: if a setting is missing or invalid
    """
    overrides = {k: v for k, v in (overrides or {}).items() if v is not None}

    def pick(name: str, section: str, key: str) -> Any:
        if name in overrides:
            return overrides[name]
        return store.get(section, key)

    site_url = str(pick("site_url", "sharepoint", "site_url") or "").rstrip("/")
    parsed = urlparse(site_url)
    if parsed.scheme != "https" or not parsed.netloc:
        raise PreconditionError(
            f"SharePoint site URL must be an https URL, got {site_url!r}. "
            "Set it with: vmprov config set sharepoint.site_url <url>"
        )

    library_path = str(pick("library_path", "sharepoint", "library_path") or "").rstrip("/")
    if not library_path.startswith("/"):
        raise PreconditionError(
            f"Library path must be server relative (start with '/'), got {library_path!r}"
        )

    memory_gb = _as_number("vm.memory_gb", pick("memory_gb", "vm", "memory_gb"), float)
    if memory_gb <= 0:
        raise PreconditionError(f"vm.memory_gb must be positive, got {memory_gb}")

    processor_count = _as_count(
        "vm.processor_count", pick("processor_count", "vm", "processor_count")
    )
    if processor_count < 1:
        raise PreconditionError(f"vm.processor_count must be at least 1, got {processor_count}")

    switch_name = str(pick("switch_name", "vm", "switch_name") or "").strip()
    if not switch_name:
        raise PreconditionError("vm.switch_name is not set")

    auth_method = str(pick("auth_method", "auth", "method")).lower()
    if auth_method not in AUTH_METHODS:
        raise PreconditionError(
            f"auth.method must be one of {', '.join(AUTH_METHODS)}, got {auth_method!r}"
        )

    return RunConfig(
        site_url=site_url,
        library_path=library_path,
        temp_dir=Path(pick("temp_dir", "paths", "temp_dir")),
        archiver_path=str(pick("archiver_path", "paths", "archiver")),
        transcript_dir=Path(pick("transcript_dir", "paths", "transcript_dir")),
        powershell=str(pick("powershell", "paths", "powershell")),
        memory_bytes=int(memory_gb * 1024 ** 3),
        switch_name=switch_name,
        processor_count=processor_count,
        auth_method=auth_method,
        client_id=str(pick("client_id", "auth", "client_id")),
        tenant_id=str(pick("tenant_id", "auth", "tenant_id")),
        vm_name=pick("vm_name", "vm", "name") or None,
        folder=overrides.get("folder"),
    )


# CLI functionality
def _split_key(key: str) -> tuple:
    parts = key.split(".", 1)
    if len(parts) != 2:
        raise ValueError("Key format should be section.key (e.g., vm.memory_gb)")
    return parts[0], parts[1]


def cmd_init(args) -> int:
    """Initialize config file."""
    config = Config(args.config_file)

    if not config.init(force=args.force):
        speak_plain(f"Config already exists at: {config.config_path}")
        speak_plain("Use --force to overwrite.")
        return 0

    speak(f"Created config file at: {config.config_path}")
    speak_plain("")
    speak_plain("Set the SharePoint site before the first run:")
    speak_plain("  vmprov config set sharepoint.site_url https://contoso.sharepoint.com/sites/IT")
    speak_plain("")
    speak_plain("Environment variables also work:")
    speak_plain("  VMPROV_SHAREPOINT_SITE_URL")
    speak_plain("  VMPROV_VM_MEMORY_GB")
    return 0


def cmd_show(args) -> int:
    """Show current config."""
    config = Config(args.config_file)

    speak_plain("")
    speak_plain(f"Config file: {config.config_path}")
    if not config.exists():
        speak_plain("(file not found, showing defaults)")
    speak_plain("=" * 60)
    speak_plain("")

    for section, values in config.show(show_secrets=args.show_secrets).items():
        if section.startswith("_"):
            continue
        speak_plain(f"[{section}]")
        if isinstance(values, dict):
            for k, v in values.items():
                speak_plain(f"  {k}: {v}")
        else:
            speak_plain(f"  {values}")
        speak_plain("")
    return 0


def cmd_get(args) -> int:
    """Get a config value."""
    config = Config(args.config_file)
    section, key = _split_key(args.key)
    value = config.get(section, key)

    if value is None or value == "":
        speak_plain("(not set)")
    else:
        speak_plain(str(value))
    return 0


def cmd_set(args) -> int:
    """Set a config value."""
    config = Config(args.config_file)
    section, key = _split_key(args.key)
    value: Any = args.value
    default = Config.DEFAULT_CONFIG.get(section, {}).get(key)
    if isinstance(default, int):
        value = _as_count(args.key, value)
    elif isinstance(default, float):
        value = _as_number(args.key, value, float)
        if value.is_integer():
            value = int(value)
    config.set(section, key, value)
    speak(f"Set {section}.{key}")
    return 0


def cmd_delete(args) -> int:
    """Delete a config key or section."""
    config = Config(args.config_file)

    parts = args.key.split(".", 1)
    section = parts[0]
    key = parts[1] if len(parts) > 1 else None

    if key:
        config.delete(section, key)
        speak(f"Deleted {section}.{key}")
    else:
        config.delete(section)
        speak(f"Deleted section [{section}]")
    return 0
