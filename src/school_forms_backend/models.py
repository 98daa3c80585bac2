from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import List, Mapping, Optional

from pydantic import BaseModel


class SubmissionKind(str, Enum):
    CONTACT = "contact"
    ADMISSION = "admission"


@dataclass(frozen=True)
class PhotoUpload:
    content: bytes
    content_type: str
    filename: str


@dataclass(frozen=True)
class FormSubmission:
    """
    One inbound form payload, immutable once created.

    Field values are stripped of surrounding whitespace; non-string values
    are coerced to strings so the renderer and the JSON record see the same
    data.
    """

    kind: SubmissionKind
    fields: Mapping[str, str]
    photo: Optional[PhotoUpload] = None
    received_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def create(
        cls,
        kind: SubmissionKind,
        fields: Mapping[str, object],
        photo: Optional[PhotoUpload] = None,
    ) -> "FormSubmission":
        cleaned = {str(key): "" if value is None else str(value).strip() for key, value in fields.items()}
        return cls(kind=kind, fields=MappingProxyType(cleaned), photo=photo)

    def get(self, name: str) -> str:
        return self.fields.get(name, "")


class SubmissionResult(BaseModel):
    success: bool
    message: str
    reference: Optional[str] = None
    warning: Optional[str] = None


class ErrorResponse(BaseModel):
    error: str
    fields: Optional[List[str]] = None


class FallbackSummary(BaseModel):
    id: str
    timestamp: datetime
    childName: Optional[str] = None
    classAdmission: Optional[str] = None
    contactNumber: Optional[str] = None
    has_photo: bool = False


class ContactSummary(BaseModel):
    id: str
    timestamp: datetime
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None


class FormListing(BaseModel):
    success: bool = True
    forms: List[FallbackSummary]


class ContactListing(BaseModel):
    success: bool = True
    contacts: List[ContactSummary]


class HealthStatus(BaseModel):
    status: str
    time: datetime
    email: str
    activeTransport: str


class EmailCheckResult(BaseModel):
    success: bool
    message: str
    transport: Optional[str] = None
    attempts: int = 0
