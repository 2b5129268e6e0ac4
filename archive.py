#!/usr/bin/env python3
"""
archive.py - Multi-part 7-Zip extraction

Finds the first volume of a split archive (image.7z.001), hands it to the
7-Zip command line and locates the extracted VHDX.
"""

import re
import subprocess
from pathlib import Path
from typing import Optional

from common import log_error, speak
from errors import ExtractionError


FIRST_SEGMENT_PATTERN = "*.7z.001"
DISK_IMAGE_PATTERN = "*.vhdx"
SEGMENT_NAME = re.compile(r"\.7z\.\d{3}$", re.IGNORECASE)


def is_archive_segment(path: Path) -> bool:
    """True for volumes of a split 7z archive (*.7z.001, *.7z.002, ...)."""
    return bool(SEGMENT_NAME.search(path.name))


def find_first_segment(directory: Path) -> Optional[Path]:
    matches = sorted(Path(directory).glob(FIRST_SEGMENT_PATTERN))
    return matches[0] if matches else None


def find_disk_image(directory: Path) -> Optional[Path]:
    matches = sorted(Path(directory).glob(DISK_IMAGE_PATTERN))
    return matches[0] if matches else None


def archive_segments(directory: Path) -> list[Path]:
    return sorted(p for p in Path(directory).iterdir() if p.is_file() and is_archive_segment(p))


def build_extract_command(archiver: str, first_segment: Path, output_dir: Path) -> list[str]:
    """7z e "<first>" -o"<dir>" -y"""
    return [str(archiver), "e", str(first_segment), f"-o{output_dir}", "-y"]


def extract_archive(archiver: str, first_segment: Path, output_dir: Path) -> None:
    """
    Run the archiver and wait for it.

    Raises:
        ExtractionError: non-zero exit code, carried in exit_code
    """
    cmd = build_extract_command(archiver, first_segment, output_dir)
    speak(f"Running: {' '.join(cmd)}")

    try:
        result = subprocess.run(cmd, capture_output=True, text=True)
    except OSError as e:
        raise ExtractionError(f"Could not start archiver {archiver}: {e}") from e

    if result.returncode != 0:
        if result.stderr:
            log_error(result.stderr.strip())
        raise ExtractionError(
            f"Archiver exited with code {result.returncode}",
            exit_code=result.returncode
        )


def extract_disk_image(archiver: str, directory: Path) -> Path:
    """
    Extract the split archive in directory and return the VHDX it produced.

    Raises:
        ExtractionError: first volume missing, archiver failed or no VHDX found
    """
    first_segment = find_first_segment(directory)
    if first_segment is None:
        raise ExtractionError(
            f"No first archive volume ({FIRST_SEGMENT_PATTERN}) in {directory}"
        )

    speak(f"Extracting {first_segment.name}...")
    extract_archive(archiver, first_segment, directory)

    disk_image = find_disk_image(directory)
    if disk_image is None:
        raise ExtractionError(
            f"Extraction finished but no disk image ({DISK_IMAGE_PATTERN}) was found in {directory}"
        )
    return disk_image
