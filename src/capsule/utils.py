"""
Capsule - Utility functions.

Created by orpheus497
Version: 1.0.0

Provides formatting and file naming helpers.
"""

import logging
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)


def utc_timestamp() -> str:
    """
    Current UTC time as a fixed-width ISO 8601 string.

    Always carries milliseconds and a "Z" suffix so that lexicographic order
    equals chronological order.
    """
    now = datetime.now(timezone.utc)
    return now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z"


def format_size(size: int) -> str:
    """
    Format a byte count for display.

    Args:
        size: Size in bytes

    Returns:
        Human-readable size, e.g. "1.50 MiB"
    """
    value = float(size)
    for unit in ("B", "KiB", "MiB", "GiB"):
        if value < 1024 or unit == "GiB":
            return f"{int(value)} B" if unit == "B" else f"{value:.2f} {unit}"
        value /= 1024
    return f"{size} B"


def sanitize_filename(filename: str) -> str:
    """
    Sanitize a filename by removing invalid characters.

    Args:
        filename: Filename to sanitize

    Returns:
        Sanitized filename
    """
    invalid_chars = '<>:"/\\|?*\x00'
    for char in invalid_chars:
        filename = filename.replace(char, "_")

    # Remove leading/trailing spaces and dots
    filename = filename.strip(". ")

    if not filename:
        filename = "unnamed"

    return filename


def unique_path(directory: Path, filename: str) -> Path:
    """
    Pick a path in directory that does not exist yet.

    "report.pdf" becomes "report (1).pdf", "report (2).pdf", ... on clashes.
    """
    candidate = directory / filename
    stem, suffix = candidate.stem, candidate.suffix
    counter = 1
    while candidate.exists():
        candidate = directory / f"{stem} ({counter}){suffix}"
        counter += 1
    return candidate
