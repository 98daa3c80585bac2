from __future__ import annotations

import asyncio
import logging
import secrets
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from starlette.datastructures import UploadFile
from starlette.exceptions import HTTPException as StarletteHTTPException

from .configuration import get_settings, split_csv
from .dispatcher import DeliveryStatus
from .exceptions import FormsBackendError, ValidationError
from .fallback_store import FallbackStore
from .middleware import RateLimiter
from .models import (
    ContactListing,
    EmailCheckResult,
    ErrorResponse,
    FormListing,
    FormSubmission,
    HealthStatus,
    PhotoUpload,
    SubmissionKind,
    SubmissionResult,
)
from .submissions import SubmissionService
from .utils import ensure_directory

settings = get_settings()

logging.basicConfig(
    level=getattr(logging, str(settings.logging.level).upper(), logging.INFO),
    format="%(asctime)s %(name)s %(levelname)s %(message)s",
)
logger = logging.getLogger(__name__)

submission_service = SubmissionService.from_settings(settings)
ensure_directory(submission_service.store.root)

rate_limiter = RateLimiter(
    requests_per_window=int(settings.rate_limit.requests_per_window),
    window_seconds=float(settings.rate_limit.window_seconds),
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Resolve the email transport in the background; requests arriving
    # before it finishes wait on the same probe.
    probe = asyncio.create_task(submission_service.dispatcher.resolve())
    yield
    if not probe.done():
        probe.cancel()
    await submission_service.drain()


app = FastAPI(title="School Forms API", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=split_csv(settings.security.cors_origins),
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-API-Key"],
)


def get_submission_service() -> SubmissionService:
    return submission_service


def get_fallback_store(service: SubmissionService = Depends(get_submission_service)) -> FallbackStore:
    return service.store


def enforce_rate_limit(request: Request) -> None:
    identifier = request.client.host if request.client else "unknown"
    if not rate_limiter.is_allowed(identifier):
        raise HTTPException(status_code=429, detail="Too many submissions, please try again later.")


def require_operator(x_api_key: Optional[str] = Header(None)) -> None:
    expected = settings.security.operator_api_key
    if not expected:
        raise HTTPException(status_code=403, detail="Operator access is not configured")
    if not x_api_key or not secrets.compare_digest(x_api_key, expected):
        raise HTTPException(status_code=401, detail="Invalid API key")


@app.exception_handler(FormsBackendError)
async def handle_forms_error(request: Request, exc: FormsBackendError) -> JSONResponse:
    content: Dict[str, Any] = {"error": exc.message}
    if isinstance(exc, ValidationError):
        content["fields"] = exc.fields
    else:
        logger.error(f"{request.method} {request.url.path} failed: {exc!r}")
    return JSONResponse(status_code=exc.status_code, content=content)


@app.exception_handler(StarletteHTTPException)
async def handle_http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=getattr(exc, "headers", None))


@app.exception_handler(Exception)
async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"Server error on {request.method} {request.url.path}")
    return JSONResponse(status_code=500, content={"error": "Server error"})


async def _read_submission(request: Request, max_photo_bytes: Optional[int] = None) -> Tuple[Dict[str, Any], Optional[PhotoUpload]]:
    """
    Pull field values (JSON, urlencoded or multipart) and the optional photo.

    At most ``max_photo_bytes + 1`` bytes of the photo are read; anything
    longer is reported as too large by the photo check.
    """
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        try:
            payload = await request.json()
        except ValueError as exc:
            raise HTTPException(status_code=400, detail="Invalid JSON payload") from exc
        if not isinstance(payload, dict):
            raise HTTPException(status_code=400, detail="Invalid JSON payload")
        return payload, None

    form = await request.form()
    fields = {key: value for key, value in form.items() if isinstance(value, str)}
    photo: Optional[PhotoUpload] = None
    upload = form.get("photo")
    if isinstance(upload, UploadFile) and upload.filename:
        content = await upload.read(-1 if max_photo_bytes is None else max_photo_bytes + 1)
        await upload.close()
        if content:
            photo = PhotoUpload(
                content=content,
                content_type=upload.content_type or "image/jpeg",
                filename=upload.filename,
            )
    return fields, photo


@app.get("/health", response_model=HealthStatus)
def healthcheck(service: SubmissionService = Depends(get_submission_service)) -> HealthStatus:
    dispatcher = service.dispatcher
    active = dispatcher.active_transport
    return HealthStatus(
        status="OK",
        time=datetime.now(timezone.utc),
        email=dispatcher.status_label,
        activeTransport=active.name if active else "none",
    )


@app.post(
    "/api/contact",
    response_model=SubmissionResult,
    response_model_exclude_none=True,
    responses={400: {"model": ErrorResponse}, 429: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
    dependencies=[Depends(enforce_rate_limit)],
)
async def submit_contact(
    request: Request,
    service: SubmissionService = Depends(get_submission_service),
) -> SubmissionResult:
    fields, _ = await _read_submission(request)
    submission = FormSubmission.create(SubmissionKind.CONTACT, fields)
    return await service.submit_contact(submission)


@app.post(
    "/api/admission",
    response_model=SubmissionResult,
    response_model_exclude_none=True,
    responses={400: {"model": ErrorResponse}, 429: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
    dependencies=[Depends(enforce_rate_limit)],
)
async def submit_admission(
    request: Request,
    service: SubmissionService = Depends(get_submission_service),
) -> SubmissionResult:
    fields, photo = await _read_submission(request, max_photo_bytes=service.max_photo_bytes)
    submission = FormSubmission.create(SubmissionKind.ADMISSION, fields, photo=photo)
    return await service.submit_admission(submission)


@app.get("/api/admin/forms", response_model=FormListing, dependencies=[Depends(require_operator)])
def list_forms(store: FallbackStore = Depends(get_fallback_store)) -> FormListing:
    return FormListing(forms=store.list_admissions())


@app.get("/api/admin/contacts", response_model=ContactListing, dependencies=[Depends(require_operator)])
def list_contacts(store: FallbackStore = Depends(get_fallback_store)) -> ContactListing:
    return ContactListing(contacts=store.list_contacts())


@app.get("/api/admin/forms/{reference}/{artifact}", dependencies=[Depends(require_operator)])
def download_artifact(reference: str, artifact: str, store: FallbackStore = Depends(get_fallback_store)):
    try:
        file_path = store.resolve_artifact(reference, artifact)
    except FileNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return FileResponse(file_path, filename=f"{reference}_{artifact}")


@app.post("/api/test-email", response_model=EmailCheckResult, dependencies=[Depends(require_operator)])
async def send_test_email(
    reprobe: bool = False,
    service: SubmissionService = Depends(get_submission_service),
) -> EmailCheckResult:
    dispatcher = service.dispatcher
    if reprobe:
        dispatcher.reset()

    outcome = await dispatcher.send_test_message()
    if outcome.status is DeliveryStatus.NO_TRANSPORT:
        return EmailCheckResult(success=False, message="No working email configuration; using file storage mode")
    if not outcome.delivered:
        raise HTTPException(status_code=502, detail=f"Test email failed: {outcome.reason}")
    return EmailCheckResult(
        success=True,
        message="Test email sent!",
        transport=outcome.transport,
        attempts=outcome.attempts,
    )
