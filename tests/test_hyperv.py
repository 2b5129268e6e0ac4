import json
import subprocess

import pytest

import hyperv
from hyperv import HyperVClient, HyperVError, VmSpec, ps_quote


class FakePowerShell:
    def __init__(self, stdout="", returncode=0, stderr=""):
        self.stdout = stdout
        self.returncode = returncode
        self.stderr = stderr
        self.calls = []

    def __call__(self, cmd, **kwargs):
        self.calls.append(cmd)
        return subprocess.CompletedProcess(cmd, self.returncode, self.stdout, self.stderr)

    @property
    def script(self):
        return self.calls[-1][-1]


@pytest.fixture
def powershell(monkeypatch):
    fake = FakePowerShell()
    monkeypatch.setattr(hyperv.subprocess, "run", fake)
    return fake


def test_ps_quote_doubles_apostrophes():
    assert ps_quote("O'Brien VM") == "'O''Brien VM'"


def test_command_line(powershell):
    HyperVClient("pwsh").get_vm("Win11Image")
    assert powershell.calls[0][:4] == ["pwsh", "-NoProfile", "-NonInteractive", "-Command"]


def test_get_vm_parses_json(powershell):
    powershell.stdout = json.dumps({
        "Name": "Win11Image",
        "State": "Off",
        "Generation": 2,
        "MemoryStartup": 8589934592,
        "ProcessorCount": 4,
    })

    vm = HyperVClient().get_vm("Win11Image")

    assert vm.name == "Win11Image"
    assert vm.state == "Off"
    assert vm.generation == 2
    assert vm.memory_startup == 8589934592
    assert vm.processor_count == 4
    assert "$_.Name -eq 'Win11Image'" in powershell.script


def test_get_vm_missing_returns_none(powershell):
    assert HyperVClient().get_vm("nope") is None
    assert not HyperVClient().vm_exists("nope")


def test_create_vm_script(powershell):
    spec = VmSpec(
        name="Win11Image",
        memory_bytes=8589934592,
        disk_path="C:\\Temp\\VMImage\\disk.vhdx",
        switch_name="Default Switch",
        processor_count=4,
    )

    HyperVClient().create_vm(spec)

    script = powershell.script
    assert "New-VM -Name 'Win11Image'" in script
    assert "-MemoryStartupBytes 8589934592" in script
    assert "-Generation 2" in script
    assert "-VHDPath 'C:\\Temp\\VMImage\\disk.vhdx'" in script
    assert "-SwitchName 'Default Switch'" in script


def test_set_processor_count(powershell):
    HyperVClient().set_processor_count("Win11Image", 4)
    assert "Set-VMProcessor -VMName 'Win11Image' -Count 4" in powershell.script


def test_failure_raises_with_platform_message(powershell):
    powershell.returncode = 1
    powershell.stderr = "New-VM : The operation failed because the file was not found."

    with pytest.raises(HyperVError) as exc_info:
        HyperVClient().set_processor_count("Win11Image", 4)

    assert "file was not found" in exc_info.value.message
    assert exc_info.value.returncode == 1


def test_unparseable_output(powershell):
    powershell.stdout = "WARNING: not json"
    with pytest.raises(HyperVError):
        HyperVClient().get_vm("Win11Image")


def test_is_available(powershell):
    powershell.stdout = "present\n"
    assert HyperVClient().is_available()


def test_is_not_available_when_powershell_missing(monkeypatch):
    def missing(cmd, **kwargs):
        raise FileNotFoundError(cmd[0])

    monkeypatch.setattr(hyperv.subprocess, "run", missing)
    assert not HyperVClient("powershell.exe").is_available()
