import os
import subprocess
from pathlib import Path

import pytest

import archive
from hyperv import HyperVError, VmInfo
from provision_config import RunConfig
from sharepoint import RemoteFile, RemoteFolder, SharePointError


SITE_URL = "https://contoso.sharepoint.com/sites/IT"
LIBRARY_PATH = "/sites/IT/Shared Documents/VM Images"
GIB = 1024 ** 3


class FakeStore:
    """In-memory stand-in for SharePointClient."""

    def __init__(self, folders, contents=None, fail_on=None):
        self.folders = list(folders)
        self.contents = dict(contents or {})
        self.fail_on = fail_on
        self.downloads = []
        self.closed = False

    def list_folders(self, path):
        return [RemoteFolder(name, f"{path}/{name}") for name in self.folders]

    def list_files(self, path):
        return [
            RemoteFile(name, f"{path}/{name}", len(data))
            for name, data in self.contents.items()
        ]

    def download_file(self, remote, dest):
        self.downloads.append(remote.name)
        if remote.name == self.fail_on:
            raise SharePointError(503, "Service Unavailable")
        data = self.contents[remote.name]
        Path(dest).write_bytes(data)
        return len(data)

    def close(self):
        self.closed = True


class FakeHyperV:
    """Records Hyper-V calls and keeps created VMs in a dict."""

    def __init__(self, existing=(), available=True, fail_create=False, fail_processor=False):
        self.vms = {
            name: VmInfo(name, "Running", 2, 4 * GIB, 2) for name in existing
        }
        self.available = available
        self.fail_create = fail_create
        self.fail_processor = fail_processor
        self.created = []
        self.processor_calls = []

    def is_available(self):
        return self.available

    def get_vm(self, name):
        return self.vms.get(name)

    def vm_exists(self, name):
        return name in self.vms

    def create_vm(self, spec):
        if self.fail_create:
            raise HyperVError("New-VM", "The switch 'Default Switch' was not found")
        self.created.append(spec)
        self.vms[spec.name] = VmInfo(spec.name, "Off", spec.generation, spec.memory_bytes, 1)

    def set_processor_count(self, name, count):
        self.processor_calls.append((name, count))
        if self.fail_processor:
            raise HyperVError("Set-VMProcessor", "The virtual machine is in an invalid state")
        vm = self.vms[name]
        self.vms[name] = VmInfo(vm.name, vm.state, vm.generation, vm.memory_startup, count)


class FakeArchiver:
    """Replaces subprocess.run for 7z; drops a VHDX into the output dir."""

    def __init__(self, returncode=0, image_name="disk.vhdx"):
        self.returncode = returncode
        self.image_name = image_name
        self.calls = []

    def __call__(self, cmd, **kwargs):
        self.calls.append(cmd)
        if self.returncode == 0 and self.image_name:
            output_dir = Path(next(arg[2:] for arg in cmd if arg.startswith("-o")))
            (output_dir / self.image_name).write_bytes(b"vhdx")
        return subprocess.CompletedProcess(cmd, self.returncode, "", "archive error")


@pytest.fixture
def run_config(tmp_path):
    archiver = tmp_path / "7z.exe"
    archiver.write_text("")
    return RunConfig(
        site_url=SITE_URL,
        library_path=LIBRARY_PATH,
        temp_dir=tmp_path / "scratch",
        archiver_path=str(archiver),
        transcript_dir=tmp_path / "logs",
        powershell="powershell.exe",
        memory_bytes=8 * GIB,
        switch_name="Default Switch",
        processor_count=4,
    )


@pytest.fixture
def fake_archiver(monkeypatch):
    fake = FakeArchiver()
    monkeypatch.setattr(archive.subprocess, "run", fake)
    return fake


@pytest.fixture
def image_store():
    return FakeStore(
        ["Win11Image", "Server2022"],
        {"image.7z.001": b"part one", "image.7z.002": b"part two"},
    )


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    for key in list(os.environ):
        if key.startswith("VMPROV_"):
            monkeypatch.delenv(key)
