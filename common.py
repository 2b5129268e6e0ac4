#!/usr/bin/env python3
"""
common.py - Shared utilities for the VM provisioning tools

Console logging, the operator picker, privilege checks and the run
transcript.
"""

import os
import re
import shutil
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Optional, Sequence


class Colors:
    """ANSI color codes for terminal output."""
    RED = '\033[0;31m'
    GREEN = '\033[0;32m'
    YELLOW = '\033[1;33m'
    BLUE = '\033[0;34m'
    CYAN = '\033[0;36m'
    BOLD = '\033[1m'
    NC = '\033[0m'  # No Color


ANSI_ESCAPE = re.compile(r"\x1b\[[0-9;]*m")


def log_info(message: str) -> None:
    """Print info message in blue."""
    print(f"{Colors.BLUE}[INFO]{Colors.NC} {message}")


def log_success(message: str) -> None:
    """Print success message in green."""
    print(f"{Colors.GREEN}[SUCCESS]{Colors.NC} {message}")


def log_warn(message: str) -> None:
    """Print warning message in yellow."""
    print(f"{Colors.YELLOW}[WARN]{Colors.NC} {message}")


def log_error(message: str) -> None:
    """Print error message in red to stderr."""
    print(f"{Colors.RED}[ERROR]{Colors.NC} {message}", file=sys.stderr)


def speak(message: str) -> None:
    """Print message with timestamp."""
    timestamp = datetime.now().strftime("%H:%M:%S")
    print(f"[{timestamp}] {message}")
    sys.stdout.flush()


def speak_plain(message: str) -> None:
    """Print without timestamp for lists and tables."""
    print(message)
    sys.stdout.flush()


def format_size(size_bytes: int) -> str:
    """Format a byte count for humans."""
    size = float(size_bytes)
    for unit in ("B", "KB", "MB", "GB"):
        if size < 1024:
            return f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} TB"


def select_item(
    items: Sequence[Any],
    title: str,
    label: Callable[[Any], str] = str
) -> Optional[Any]:
    """
    Let the operator pick exactly one item from a numbered list.

    Blocks until a valid number is entered. Returns None when the operator
    cancels with 0, an empty line or Ctrl-C.
    """
    if not items:
        return None

    print(f"\n{Colors.BLUE}{title}{Colors.NC}")
    for i, item in enumerate(items, 1):
        print(f"  {i}. {label(item)}")
    print("  0. Cancel")

    while True:
        try:
            choice = input("\nEnter number: ").strip()
            if choice == "0" or choice == "":
                return None
            idx = int(choice) - 1
            if 0 <= idx < len(items):
                return items[idx]
            print(f"{Colors.RED}Invalid selection{Colors.NC}")
        except ValueError:
            print(f"{Colors.RED}Please enter a number{Colors.NC}")
        except (KeyboardInterrupt, EOFError):
            print()
            return None


def is_admin() -> bool:
    """Check whether the process runs with administrative rights."""
    if os.name == "nt":
        import ctypes
        try:
            return bool(ctypes.windll.shell32.IsUserAnAdmin())
        except (AttributeError, OSError):
            return False
    return os.geteuid() == 0


def find_executable(command: str) -> Optional[str]:
    """Resolve a command name or path to an executable, or None."""
    if Path(command).is_file():
        return command
    return shutil.which(command)


class _TeeStream:
    """Write-through stream that mirrors output into a transcript file."""

    def __init__(self, stream, handle):
        self._stream = stream
        self._handle = handle

    def write(self, data: str) -> int:
        self._stream.write(data)
        self._handle.write(ANSI_ESCAPE.sub("", data))
        return len(data)

    def flush(self) -> None:
        self._stream.flush()
        self._handle.flush()

    def __getattr__(self, name: str):
        return getattr(self._stream, name)


class Transcript:
    """
    Record everything printed during a run.

    Usage:
        with Transcript(Path("logs")) as transcript:
            ...
        print(transcript.path)
    """

    def __init__(self, log_dir: Path, prefix: str = "provision"):
        self.log_dir = Path(log_dir)
        self.prefix = prefix
        self.path: Optional[Path] = None
        self._handle = None
        self._stdout = None
        self._stderr = None

    def __enter__(self) -> "Transcript":
        self.log_dir.mkdir(parents=True, exist_ok=True)
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        self.path = self.log_dir / f"{self.prefix}_{timestamp}.log"
        self._handle = open(self.path, "w", encoding="utf-8")

        self._stdout, self._stderr = sys.stdout, sys.stderr
        sys.stdout = _TeeStream(self._stdout, self._handle)
        sys.stderr = _TeeStream(self._stderr, self._handle)
        speak(f"Transcript started, output file is {self.path}")
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        speak(f"Transcript stopped, output file is {self.path}")
        sys.stdout, sys.stderr = self._stdout, self._stderr
        self._handle.close()
        return False
