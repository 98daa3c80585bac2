"""
Input checks for contact and admission submissions.

All functions are pure: they return the names of the offending fields and
leave raising to the caller.
"""

from __future__ import annotations

import re
from typing import Iterable, List, Mapping, Optional, Sequence

from .models import PhotoUpload
from .utils import split_extension

CONTACT_REQUIRED_FIELDS: Sequence[str] = ("name", "email", "phone", "message")

ADMISSION_REQUIRED_FIELDS: Sequence[str] = (
    "childName",
    "dateOfBirth",
    "sex",
    "contactType",
    "contactNumber",
    "classAdmission",
    "tcAttached",
    "howKnow",
)

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def find_missing_fields(fields: Mapping[str, str], required: Iterable[str]) -> List[str]:
    """Required names that are absent or hold only whitespace, in order."""
    return [name for name in required if not (fields.get(name) or "").strip()]


def is_valid_email(value: str) -> bool:
    return bool(EMAIL_PATTERN.match(value or ""))


def validate_contact(fields: Mapping[str, str]) -> List[str]:
    problems = find_missing_fields(fields, CONTACT_REQUIRED_FIELDS)
    if "email" not in problems and not is_valid_email(fields.get("email", "").strip()):
        problems.append("email")
    return problems


def validate_admission(fields: Mapping[str, str]) -> List[str]:
    return find_missing_fields(fields, ADMISSION_REQUIRED_FIELDS)


def validate_photo(
    photo: Optional[PhotoUpload],
    max_bytes: int,
    allowed_extensions: Iterable[str],
) -> List[str]:
    """
    Check an uploaded photo's extension and size.

    Returns a list of human readable problems (empty when the photo is
    acceptable or absent). Image content is not inspected here; a photo that
    fails to decode is handled by the renderer.
    """
    if photo is None:
        return []
    problems: List[str] = []
    _, extension = split_extension(photo.filename, default="")
    if extension not in {ext.lower() for ext in allowed_extensions}:
        problems.append("Only image files are allowed!")
    if len(photo.content) > max_bytes:
        problems.append(f"File too large (max {max_bytes // (1024 * 1024)}MB)")
    return problems
