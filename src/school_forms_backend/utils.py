"""
Utility functions for file system operations and name sanitization.

This module provides helper functions for:
- Turning submitter-provided names into filesystem-safe fragments
- Ensuring directory creation with proper error handling
- Splitting and normalising upload file extensions
- Millisecond epoch timestamps used in references and filenames
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from pathlib import Path

# Anything that is not an ASCII letter or digit becomes an underscore
REFERENCE_PATTERN = re.compile(r"[^a-zA-Z0-9]")

# Characters kept (case preserved) in attachment filenames
ATTACHMENT_PATTERN = re.compile(r"[^a-zA-Z0-9._-]+")


def sanitize_name(name: str, fallback: str = "unknown") -> str:
    """
    Generate a lowercase reference fragment from a human-readable name.

    Every character that is not an ASCII letter or digit is replaced by an
    underscore, one for one, so the result stays readable and sortable.

    Args:
        name: The original name (e.g. the child's name)
        fallback: Value returned when the name is blank

    Returns:
        A lowercase, filesystem-safe fragment or the fallback value

    Example:
        >>> sanitize_name("Asha Rao")
        "asha_rao"
        >>> sanitize_name("  ")
        "unknown"
    """
    cleaned = REFERENCE_PATTERN.sub("_", name.strip()).lower()
    return cleaned or fallback


def attachment_stem(name: str, fallback: str = "Applicant") -> str:
    """
    Build the name part of an email attachment filename.

    Whitespace runs collapse to a single underscore and characters that are
    unsafe in filenames are dropped; case is preserved.

    Example:
        >>> attachment_stem("Asha  Rao")
        "Asha_Rao"
    """
    collapsed = re.sub(r"\s+", "_", name.strip())
    cleaned = ATTACHMENT_PATTERN.sub("", collapsed).strip("._-")
    return cleaned or fallback


def ensure_directory(path: Path) -> Path:
    """
    Create a directory if it doesn't exist, including parent directories.

    Args:
        path: The directory path to create

    Returns:
        The same path object for chaining

    Raises:
        OSError: If directory creation fails due to permissions or other I/O errors
    """
    path.mkdir(parents=True, exist_ok=True)
    return path


def split_extension(filename: str, default: str = ".jpg") -> tuple[str, str]:
    """
    Split a filename into stem and lowercase extension components.

    Args:
        filename: The filename to split (can include path)
        default: Extension used when the filename has none

    Returns:
        A tuple of (stem, extension) where extension includes the dot

    Example:
        >>> split_extension("Passport.JPEG")
        ("Passport", ".jpeg")
        >>> split_extension("photo")
        ("photo", ".jpg")
    """
    path = Path(filename)
    return path.stem, (path.suffix.lower() or default)


def epoch_millis(moment: datetime | None = None) -> int:
    """Milliseconds since the Unix epoch for *moment* (default: now, UTC)."""
    moment = moment or datetime.now(timezone.utc)
    return int(moment.timestamp() * 1000)


def from_epoch_millis(value: int) -> datetime:
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
