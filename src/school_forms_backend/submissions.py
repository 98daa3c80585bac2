"""
Per-request control flow for contact and admission submissions.

Admission (persist-or-fail)::

    validate -> render PDF -> persist record -> email operator (best effort)

The record is written before any delivery attempt, so an acknowledged
admission always exists on disk. A failed email only adds a warning to the
response.

Contact::

    validate -> email operator -> persist JSON if the email could not be sent

Once validation has passed, processing runs in a task shielded from request
cancellation: a client that disconnects mid-request does not abandon the
record half way.
"""

from __future__ import annotations

import asyncio
import html
import logging
from typing import Awaitable, Iterable, Optional, Set

from starlette.concurrency import run_in_threadpool

from .dispatcher import DeliveryDispatcher, DeliveryOutcome, DeliveryStatus
from .exceptions import ValidationError
from .fallback_store import FallbackStore
from .models import FormSubmission, SubmissionResult
from .renderer import AdmissionPdfRenderer, RenderedDocument, attachment_filename, photo_attachment_filename
from .transports import Attachment, OutboundMessage
from .utils import epoch_millis
from .validation import (
    CONTACT_REQUIRED_FIELDS,
    find_missing_fields,
    validate_admission,
    validate_contact,
    validate_photo,
)

logger = logging.getLogger(__name__)

DELIVERY_WARNING = "Email notification could not be sent; your submission was saved and will be processed manually."


class SubmissionService:
    """Ties validation, rendering, delivery and fallback storage together."""

    def __init__(
        self,
        renderer: AdmissionPdfRenderer,
        dispatcher: DeliveryDispatcher,
        store: FallbackStore,
        max_photo_bytes: int = 5 * 1024 * 1024,
        photo_extensions: Iterable[str] = (".jpg", ".jpeg", ".png", ".gif"),
    ) -> None:
        self.renderer = renderer
        self.dispatcher = dispatcher
        self.store = store
        self.max_photo_bytes = max_photo_bytes
        self.photo_extensions = tuple(photo_extensions)
        self._inflight: Set[asyncio.Task] = set()

    @classmethod
    def from_settings(
        cls,
        settings,
        dispatcher: Optional[DeliveryDispatcher] = None,
        store: Optional[FallbackStore] = None,
    ) -> "SubmissionService":
        return cls(
            renderer=AdmissionPdfRenderer.from_settings(settings),
            dispatcher=dispatcher or DeliveryDispatcher.from_settings(settings),
            store=store or FallbackStore.from_settings(settings),
            max_photo_bytes=int(settings.uploads.max_photo_bytes),
            photo_extensions=list(settings.uploads.photo_extensions),
        )

    async def submit_contact(self, submission: FormSubmission) -> SubmissionResult:
        problems = validate_contact(submission.fields)
        if problems:
            missing = find_missing_fields(submission.fields, CONTACT_REQUIRED_FIELDS)
            raise ValidationError(problems, "All fields are required" if missing else "Invalid email format")

        logger.info(f"Contact form submission from: {submission.get('name')}")
        return await self._shielded(self._process_contact(submission))

    async def submit_admission(self, submission: FormSubmission) -> SubmissionResult:
        problems = validate_admission(submission.fields)
        if problems:
            raise ValidationError(problems)

        photo_problems = validate_photo(submission.photo, self.max_photo_bytes, self.photo_extensions)
        if photo_problems:
            raise ValidationError(["photo"], photo_problems[0])

        logger.info(f"Admission form for: {submission.get('childName')}")
        return await self._shielded(self._process_admission(submission))

    async def _shielded(self, work: Awaitable[SubmissionResult]) -> SubmissionResult:
        task = asyncio.ensure_future(work)
        self._inflight.add(task)
        task.add_done_callback(self._finish)
        return await asyncio.shield(task)

    def _finish(self, task: asyncio.Task) -> None:
        self._inflight.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Submission processing failed: {task.exception()!r}")

    async def drain(self) -> None:
        """Wait for submissions still being processed after their client left."""
        if self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    async def _process_contact(self, submission: FormSubmission) -> SubmissionResult:
        if await self.dispatcher.resolve() is None:
            record = await run_in_threadpool(self.store.persist_contact, submission)
            return SubmissionResult(
                success=True,
                message="Message received! We will contact you soon.",
                reference=record.reference,
            )

        outcome = await self.dispatcher.deliver(self.contact_message(submission))
        if outcome.delivered:
            logger.info(f"Contact email sent for {submission.get('name')}")
            return SubmissionResult(success=True, message="Message sent successfully!")

        logger.warning(f"Contact email for {submission.get('name')} not delivered ({outcome.status.value}); saving to file")
        record = await run_in_threadpool(self.store.persist_contact, submission)
        return SubmissionResult(
            success=True,
            message="Message received! We will contact you soon.",
            reference=record.reference,
            warning=DELIVERY_WARNING,
        )

    async def _process_admission(self, submission: FormSubmission) -> SubmissionResult:
        document = await run_in_threadpool(self.renderer.render, submission)
        record = await run_in_threadpool(self.store.persist_admission, submission, document.content)

        outcome = await self.dispatcher.deliver(self.admission_message(submission, document))
        return self._admission_result(record.reference, outcome)

    @staticmethod
    def _admission_result(reference: str, outcome: DeliveryOutcome) -> SubmissionResult:
        if outcome.delivered:
            return SubmissionResult(
                success=True,
                message="Application submitted successfully!",
                reference=reference,
            )
        if outcome.status is DeliveryStatus.NO_TRANSPORT:
            return SubmissionResult(
                success=True,
                message="Application received! We will process it shortly.",
                reference=reference,
            )
        logger.warning(f"Admission {reference} stored but email not delivered: {outcome.reason}")
        return SubmissionResult(
            success=True,
            message="Application received! We will contact you soon.",
            reference=reference,
            warning=DELIVERY_WARNING,
        )

    def contact_message(self, submission: FormSubmission) -> OutboundMessage:
        name = submission.get("name")
        escaped = {key: html.escape(submission.get(key)) for key in CONTACT_REQUIRED_FIELDS}
        body = escaped["message"].replace("\n", "<br>")
        html_body = (
            "<h2>New Contact Form Submission</h2>"
            f"<p><strong>Name:</strong> {escaped['name']}</p>"
            f"<p><strong>Email:</strong> {escaped['email']}</p>"
            f"<p><strong>Phone:</strong> {escaped['phone']}</p>"
            "<p><strong>Message:</strong></p>"
            f"<p>{body}</p>"
        )
        text_body = (
            f"Name: {name}\n"
            f"Email: {submission.get('email')}\n"
            f"Phone: {submission.get('phone')}\n\n"
            f"{submission.get('message')}\n"
        )
        return self.dispatcher.compose(
            subject=f"New Contact: {name}",
            html=html_body,
            text=text_body,
            reply_to=submission.get("email"),
        )

    def admission_message(self, submission: FormSubmission, document: RenderedDocument) -> OutboundMessage:
        child_name = submission.get("childName")
        summary = [
            ("Student", child_name),
            ("Class", submission.get("classAdmission")),
            ("Contact", submission.get("contactNumber")),
            ("DOB", submission.get("dateOfBirth")),
        ]
        html_body = (
            "<h2>New Admission Enquiry</h2>"
            + "".join(f"<p><strong>{label}:</strong> {html.escape(value)}</p>" for label, value in summary)
            + "<p>Full details in attached PDF</p>"
        )
        text_body = "".join(f"{label}: {value}\n" for label, value in summary) + "\nFull details in attached PDF\n"

        attachments = [
            Attachment(
                filename=attachment_filename(child_name, epoch_millis(document.generated_at)),
                content=document.content,
                content_type=document.media_type,
            )
        ]
        photo = submission.photo
        if photo and photo.content:
            attachments.append(
                Attachment(
                    filename=photo_attachment_filename(child_name, photo.filename),
                    content=photo.content,
                    content_type=photo.content_type or "image/jpeg",
                )
            )

        return self.dispatcher.compose(
            subject=f"New Admission: {child_name}",
            html=html_body,
            text=text_body,
            attachments=attachments,
        )
