"""
Exception hierarchy for the forms backend.

Every error the submission pipeline raises derives from FormsBackendError.
The HTTP layer maps each class to its status code. TransportUnavailable,
DeliveryFailure and DeliveryTimeout stay internal: the dispatcher turns them
into a DeliveryOutcome and they never reach clients.
"""

from __future__ import annotations

from typing import Any, Dict, Optional, Sequence


class FormsBackendError(Exception):
    """Base exception for all submission pipeline errors."""

    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(FormsBackendError):
    """Raised when required fields are missing or malformed."""

    status_code = 400

    def __init__(self, fields: Sequence[str], message: Optional[str] = None):
        self.fields = list(fields)
        super().__init__(message or f"Missing fields: {', '.join(self.fields)}", {"fields": self.fields})


class RenderError(FormsBackendError):
    """Raised when the admission document cannot be produced at all."""


class PersistenceError(FormsBackendError):
    """Raised when the fallback store could not write a record."""


class TransportUnavailable(FormsBackendError):
    """No transport candidate could be established."""


class DeliveryFailure(FormsBackendError):
    """A single send attempt was rejected or errored."""


class DeliveryTimeout(DeliveryFailure):
    """A single send attempt exceeded its time bound."""
