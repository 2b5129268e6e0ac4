#!/usr/bin/env python3
"""
hyperv.py - Hyper-V management through PowerShell

Thin wrapper around the Hyper-V PowerShell module: look up a VM by name,
create a generation 2 VM on an existing VHDX and set its CPU count.
"""

import json
import subprocess
from dataclasses import dataclass
from typing import Any, Optional

from common import speak_plain


class HyperVError(Exception):
    """PowerShell reported a failure."""
    def __init__(self, command: str, message: str, returncode: int = 1):
        self.command = command
        self.message = message
        self.returncode = returncode
        super().__init__(message)


@dataclass(frozen=True)
class VmSpec:
    name: str
    memory_bytes: int
    disk_path: str
    switch_name: str
    processor_count: int
    generation: int = 2


@dataclass(frozen=True)
class VmInfo:
    name: str
    state: str
    generation: int
    memory_startup: int
    processor_count: int

    @classmethod
    def from_json(cls, data: dict) -> "VmInfo":
        return cls(
            name=data.get("Name", ""),
            state=str(data.get("State", "Unknown")),
            generation=int(data.get("Generation") or 0),
            memory_startup=int(data.get("MemoryStartup") or 0),
            processor_count=int(data.get("ProcessorCount") or 0),
        )


def ps_quote(value: str) -> str:
    """Single-quote a string for PowerShell."""
    return "'" + str(value).replace("'", "''") + "'"


VM_PROPERTIES = (
    "Name, @{n='State';e={$_.State.ToString()}}, Generation, MemoryStartup, ProcessorCount"
)


class HyperVClient:
    """Runs Hyper-V cmdlets in a fresh PowerShell process per call."""

    def __init__(self, powershell: str = "powershell.exe"):
        self.powershell = powershell

    def _run(self, script: str, output_json: bool = False) -> Optional[Any]:
        cmd = [self.powershell, "-NoProfile", "-NonInteractive", "-Command", script]
        try:
            result = subprocess.run(cmd, capture_output=True, text=True)
        except OSError as e:
            raise HyperVError(script, f"Could not start {self.powershell}: {e}") from e

        if result.returncode != 0:
            message = (result.stderr or result.stdout).strip() or f"exit code {result.returncode}"
            raise HyperVError(script, message, result.returncode)

        output = result.stdout.strip()
        if not output_json:
            return output or None
        if not output:
            return None
        try:
            return json.loads(output)
        except json.JSONDecodeError as e:
            raise HyperVError(script, f"Failed to parse PowerShell output: {e}") from e

    def is_available(self) -> bool:
        """Check that the Hyper-V module is installed."""
        try:
            output = self._run(
                "if (Get-Command New-VM -ErrorAction SilentlyContinue) { 'present' }"
            )
        except HyperVError:
            return False
        return output == "present"

    def get_vm(self, name: str) -> Optional[VmInfo]:
        """Return the VM with exactly this name, or None."""
        script = (
            "$ErrorActionPreference = 'Stop'; "
            f"Get-VM | Where-Object {{ $_.Name -eq {ps_quote(name)} }} | "
            f"Select-Object -First 1 {VM_PROPERTIES} | ConvertTo-Json -Compress"
        )
        data = self._run(script, output_json=True)
        if not data:
            return None
        return VmInfo.from_json(data)

    def vm_exists(self, name: str) -> bool:
        return self.get_vm(name) is not None

    def create_vm(self, spec: VmSpec) -> None:
        script = (
            "$ErrorActionPreference = 'Stop'; "
            f"New-VM -Name {ps_quote(spec.name)} "
            f"-MemoryStartupBytes {spec.memory_bytes} "
            f"-Generation {spec.generation} "
            f"-VHDPath {ps_quote(spec.disk_path)} "
            f"-SwitchName {ps_quote(spec.switch_name)} | Out-Null"
        )
        self._run(script)

    def set_processor_count(self, name: str, count: int) -> None:
        script = (
            "$ErrorActionPreference = 'Stop'; "
            f"Set-VMProcessor -VMName {ps_quote(name)} -Count {int(count)}"
        )
        self._run(script)


def format_memory(size_bytes: int) -> str:
    return f"{size_bytes / 1024 ** 3:g} GB"


def print_vm(vm: VmInfo) -> None:
    """Print VM properties for the operator."""
    speak_plain("")
    speak_plain("Virtual Machine Details")
    speak_plain("=" * 70)
    speak_plain("")
    speak_plain(f"  Name: {vm.name}")
    speak_plain(f"  State: {vm.state}")
    speak_plain(f"  Generation: {vm.generation}")
    speak_plain(f"  Memory: {format_memory(vm.memory_startup)}")
    speak_plain(f"  Processors: {vm.processor_count}")
    speak_plain("")
