"""
Pytest configuration and fixtures for School Forms Backend tests.
"""

import asyncio
import os
import shutil
import tempfile
from io import BytesIO

import pytest
from fastapi.testclient import TestClient
from PIL import Image

# Set test environment variables before importing the app
os.environ["OPERATOR_API_KEY"] = "test-operator-key-12345"
os.environ["FORMS_STORAGE_DIR"] = tempfile.mkdtemp(prefix="forms_test_storage_")
os.environ["MAIL_RECIPIENTS"] = "office@school.test"
os.environ["MAIL_SENDER"] = "Admissions <forms@school.test>"
for _name in ("SMTP_USERNAME", "SMTP_PASSWORD", "SENDGRID_API_KEY"):
    os.environ[_name] = ""

from school_forms_backend.dispatcher import DeliveryDispatcher  # noqa: E402
from school_forms_backend.exceptions import DeliveryFailure  # noqa: E402
from school_forms_backend.fallback_store import FallbackStore  # noqa: E402
from school_forms_backend.main import app, get_submission_service, rate_limiter  # noqa: E402
from school_forms_backend.renderer import AdmissionPdfRenderer  # noqa: E402
from school_forms_backend.submissions import SubmissionService  # noqa: E402

OPERATOR_KEY = "test-operator-key-12345"

ADMISSION_FIELDS = {
    "childName": "Asha Rao",
    "dateOfBirth": "2018-04-12",
    "sex": "Female",
    "bloodGroup": "B+",
    "contactType": "Mother",
    "contactNumber": "9876543210",
    "classAdmission": "LKG",
    "tcAttached": "No",
    "howKnow": "Friends",
}

RELATIVE_FIELDS = {
    "fatherName": "Ravi Rao",
    "fatherNationality": "Indian",
    "fatherOccupation": "Engineer",
    "fatherOfficeAddress": "12 Industrial Estate, Chennai",
    "fatherDistance": "8 km",
    "fatherPermanentAddress": "4 Lake View Road, Chennai",
    "fatherIncome": "80000",
    "motherName": "Meena Rao",
    "motherNationality": "Indian",
    "motherOccupation": "Teacher",
    "motherOfficeAddress": "St. Mary's School, Chennai",
    "motherDistance": "3 km",
    "motherPermanentAddress": "4 Lake View Road, Chennai",
    "motherIncome": "50000",
    "guardianName": "Lakshmi Iyer",
    "guardianRelation": "Aunt",
    "guardianNationality": "Indian",
    "guardianOccupation": "Doctor",
    "guardianOfficeAddress": "City Hospital, Chennai",
    "guardianDistance": "5 km",
    "guardianPermanentAddress": "9 Temple Street, Chennai",
    "guardianIncome": "120000",
}

CONTACT_FIELDS = {
    "name": "Kiran Das",
    "email": "kiran@example.com",
    "phone": "9000000001",
    "message": "Is there a school bus\nfrom Adyar?",
}


class FakeTransport:
    """In-memory transport that records messages instead of sending them."""

    kind = "fake"

    def __init__(self, name="fake", probe_ok=True, failures=0, hang=False, probe_delay=0.0, send_delay=0.0, error=None):
        self.name = name
        self.probe_ok = probe_ok
        self.failures_left = failures
        self.hang = hang
        self.probe_delay = probe_delay
        self.send_delay = send_delay
        self.error = error
        self.probes = 0
        self.attempts = 0
        self.sent = []

    async def probe(self, timeout):
        self.probes += 1
        if self.probe_delay:
            await asyncio.sleep(self.probe_delay)
        if not self.probe_ok:
            raise DeliveryFailure(f"{self.name}: probe refused")

    async def send(self, message, timeout):
        self.attempts += 1
        if self.send_delay:
            await asyncio.sleep(self.send_delay)
        if self.hang:
            await asyncio.sleep(timeout * 20)
        if self.error is not None:
            raise self.error
        if self.failures_left > 0:
            self.failures_left -= 1
            raise DeliveryFailure(f"{self.name}: 451 temporary failure")
        self.sent.append(message)


async def no_sleep(_seconds):
    return None


def build_dispatcher(transports, **kwargs):
    options = {
        "sender": "Admissions <forms@school.test>",
        "recipients": ["office@school.test"],
        "probe_timeout": 0.5,
        "send_timeout": 0.2,
        "max_attempts": 2,
        "backoff_seconds": 0,
        "sleep": no_sleep,
    }
    options.update(kwargs)
    return DeliveryDispatcher(candidates=transports, **options)


@pytest.fixture(scope="session", autouse=True)
def storage_env_dir():
    """Remove the storage directory used by the module-level app."""
    path = os.environ["FORMS_STORAGE_DIR"]
    yield path
    shutil.rmtree(path, ignore_errors=True)


@pytest.fixture
def store(tmp_path):
    return FallbackStore(tmp_path / "storage")


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def make_service(store):
    """Build a SubmissionService around the given transports and a temp store."""

    def _make(transports=(), **dispatcher_options):
        return SubmissionService(
            renderer=AdmissionPdfRenderer(),
            dispatcher=build_dispatcher(list(transports), **dispatcher_options),
            store=store,
        )

    return _make


@pytest.fixture
def service(make_service, transport):
    return make_service([transport])


@pytest.fixture
def offline_service(make_service):
    return make_service([])


@pytest.fixture
def client_for():
    """Create a test client bound to a specific SubmissionService."""

    def _client(service):
        app.dependency_overrides[get_submission_service] = lambda: service
        return TestClient(app)

    yield _client
    app.dependency_overrides.clear()
    rate_limiter.reset()


@pytest.fixture
def client(client_for, service):
    return client_for(service)


@pytest.fixture
def operator_headers():
    return {"X-API-Key": OPERATOR_KEY}


@pytest.fixture
def admission_fields():
    return dict(ADMISSION_FIELDS)


@pytest.fixture
def full_admission_fields():
    return {**ADMISSION_FIELDS, **RELATIVE_FIELDS}


@pytest.fixture
def contact_fields():
    return dict(CONTACT_FIELDS)


@pytest.fixture
def photo_bytes():
    """A small valid PNG image."""
    buffer = BytesIO()
    Image.new("RGB", (60, 80), (30, 60, 160)).save(buffer, format="PNG")
    return buffer.getvalue()


@pytest.fixture
def corrupt_photo_bytes():
    return b"\x89PNG\r\n\x1a\nthis is not really an image"
