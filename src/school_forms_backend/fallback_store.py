"""
Local, durable storage for submissions.

Admission records are written as one directory per submission::

    <root>/admission_<sanitized-name>_<epoch-ms>/
        form.pdf
        photo.<ext>      (only when a photo was uploaded)
        data.json        (the submitted fields, pretty-printed)

The directory is assembled under a hidden staging name and renamed into
place only after every artifact has been written, so a reference that shows
up in a listing is always complete.

Contact records are single JSON files under ``<root>/contacts``.

All methods are blocking; async callers run them in the threadpool.
"""

from __future__ import annotations

import json
import logging
import os
import re
import shutil
import tempfile
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Tuple

from .exceptions import PersistenceError
from .models import ContactSummary, FallbackSummary, FormSubmission
from .utils import ensure_directory, epoch_millis, from_epoch_millis, sanitize_name, split_extension

logger = logging.getLogger(__name__)

ADMISSION_PREFIX = "admission_"
CONTACT_PREFIX = "contact_"
DOCUMENT_NAME = "form.pdf"
DATA_NAME = "data.json"
PHOTO_STEM = "photo"

REFERENCE_PATTERN = re.compile(r"^admission_[a-z0-9_]+_(\d+)$")
CONTACT_PATTERN = re.compile(r"^contact_(\d+)$")


@dataclass(frozen=True)
class FallbackRecord:
    reference: str
    path: Path
    created_at: datetime
    artifacts: Tuple[str, ...]


def _created_at(path: Path, pattern: re.Pattern) -> datetime:
    match = pattern.match(path.stem if path.is_file() else path.name)
    if match:
        return from_epoch_millis(int(match.group(1)))
    return datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)


class FallbackStore:
    """
    Filesystem store for submissions that could not (or should not only) be
    emailed.

    Attributes:
        root: Base directory holding admission record directories
        contacts_root: Directory holding contact JSON files
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root)
        self.contacts_root = self.root / "contacts"

    @classmethod
    def from_settings(cls, settings) -> "FallbackStore":
        return cls(Path(settings.storage.root))

    def persist_admission(self, submission: FormSubmission, document_bytes: bytes) -> FallbackRecord:
        """
        Write the PDF, optional photo and field data as one record.

        Raises:
            PersistenceError: If any artifact could not be written. Nothing is
                left under the final reference name in that case.
        """
        name = sanitize_name(submission.get("childName"))
        millis = epoch_millis()

        try:
            ensure_directory(self.root)
            staging = Path(tempfile.mkdtemp(prefix=f".{ADMISSION_PREFIX}", suffix=".partial", dir=self.root))
        except OSError as exc:
            logger.error(f"Could not create staging directory under {self.root}: {exc}")
            raise PersistenceError("Failed to save application.") from exc

        try:
            artifacts = self._write_admission_artifacts(staging, submission, document_bytes)
            while True:
                reference = f"{ADMISSION_PREFIX}{name}_{millis}"
                target = self.root / reference
                if not target.exists():
                    break
                millis += 1
            staging.rename(target)
        except OSError as exc:
            shutil.rmtree(staging, ignore_errors=True)
            logger.error(f"Failed to save admission for {name}: {exc}")
            raise PersistenceError("Failed to save application.") from exc

        logger.info(f"Form saved to: {target}")
        return FallbackRecord(
            reference=reference,
            path=target,
            created_at=from_epoch_millis(millis),
            artifacts=artifacts,
        )

    @staticmethod
    def _write_admission_artifacts(directory: Path, submission: FormSubmission, document_bytes: bytes) -> Tuple[str, ...]:
        written = []

        (directory / DOCUMENT_NAME).write_bytes(document_bytes)
        written.append(DOCUMENT_NAME)

        if submission.photo and submission.photo.content:
            _, extension = split_extension(submission.photo.filename)
            photo_name = f"{PHOTO_STEM}{extension}"
            (directory / photo_name).write_bytes(submission.photo.content)
            written.append(photo_name)

        data = json.dumps(dict(submission.fields), indent=2, ensure_ascii=False)
        (directory / DATA_NAME).write_text(data, encoding="utf-8")
        written.append(DATA_NAME)
        return tuple(written)

    def persist_contact(self, submission: FormSubmission) -> FallbackRecord:
        """Write a contact submission to ``contacts/contact_<epoch-ms>.json``."""
        payload: Dict[str, Any] = {
            **dict(submission.fields),
            "timestamp": submission.received_at.isoformat(),
        }
        millis = epoch_millis()
        try:
            ensure_directory(self.contacts_root)
            while (self.contacts_root / f"{CONTACT_PREFIX}{millis}.json").exists():
                millis += 1
            target = self.contacts_root / f"{CONTACT_PREFIX}{millis}.json"

            descriptor, temp_name = tempfile.mkstemp(prefix=".contact_", suffix=".tmp", dir=self.contacts_root)
            try:
                with os.fdopen(descriptor, "w", encoding="utf-8") as handle:
                    json.dump(payload, handle, indent=2, ensure_ascii=False)
                os.replace(temp_name, target)
            except OSError:
                Path(temp_name).unlink(missing_ok=True)
                raise
        except OSError as exc:
            logger.error(f"Failed to save contact message: {exc}")
            raise PersistenceError("Failed to save message.") from exc

        logger.info(f"Contact saved to file: {target.name}")
        return FallbackRecord(
            reference=target.stem,
            path=target,
            created_at=from_epoch_millis(millis),
            artifacts=(target.name,),
        )

    def list_admissions(self) -> List[FallbackSummary]:
        """
        Summaries of stored admission records, newest first.

        A record whose data.json is missing or unreadable is logged and
        skipped; it never hides the other records.
        """
        if not self.root.exists():
            return []

        forms: List[FallbackSummary] = []
        for item in self.root.iterdir():
            if not item.is_dir() or not item.name.startswith(ADMISSION_PREFIX):
                continue
            try:
                data = json.loads((item / DATA_NAME).read_text(encoding="utf-8"))
                if not isinstance(data, dict):
                    raise ValueError("data.json does not hold an object")
                forms.append(
                    FallbackSummary(
                        id=item.name,
                        timestamp=_created_at(item, REFERENCE_PATTERN),
                        childName=data.get("childName"),
                        classAdmission=data.get("classAdmission"),
                        contactNumber=data.get("contactNumber"),
                        has_photo=any(item.glob(f"{PHOTO_STEM}.*")),
                    )
                )
            except (OSError, ValueError) as exc:
                logger.warning(f"Error reading {item.name}: {exc}")

        forms.sort(key=lambda summary: (summary.timestamp, summary.id), reverse=True)
        return forms

    def list_contacts(self) -> List[ContactSummary]:
        if not self.contacts_root.exists():
            return []

        contacts: List[ContactSummary] = []
        for item in self.contacts_root.glob(f"{CONTACT_PREFIX}*.json"):
            try:
                data = json.loads(item.read_text(encoding="utf-8"))
                if not isinstance(data, dict):
                    raise ValueError("contact file does not hold an object")
                contacts.append(
                    ContactSummary(
                        id=item.stem,
                        timestamp=_created_at(item, CONTACT_PATTERN),
                        name=data.get("name"),
                        email=data.get("email"),
                        phone=data.get("phone"),
                    )
                )
            except (OSError, ValueError) as exc:
                logger.warning(f"Error reading {item.name}: {exc}")

        contacts.sort(key=lambda summary: (summary.timestamp, summary.id), reverse=True)
        return contacts

    def resolve_artifact(self, reference: str, artifact: str) -> Path:
        """
        Locate one artifact of a stored admission record.

        Raises:
            FileNotFoundError: Unknown reference, unknown artifact name, or a
                path that escapes the record directory
        """
        if not REFERENCE_PATTERN.match(reference):
            raise FileNotFoundError("Record not found.")
        if artifact not in (DOCUMENT_NAME, DATA_NAME) and not artifact.startswith(f"{PHOTO_STEM}."):
            raise FileNotFoundError("Artifact not found.")

        base_path = (self.root / reference).resolve()
        file_path = (base_path / artifact).resolve()
        if file_path.parent != base_path or not file_path.is_file():
            raise FileNotFoundError("Artifact not found.")
        return file_path
