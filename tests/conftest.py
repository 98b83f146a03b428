"""
Pytest configuration and fixtures for PDF/A Backend tests.
"""

import threading
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from pdfa_backend.configuration import load_settings
from pdfa_backend.conversion_service import ConversionService
from pdfa_backend.database import Database
from pdfa_backend.errors import RendererFailure
from pdfa_backend.expansion_service import ExpansionService
from pdfa_backend.expansion_workflow import ExpansionWorkflow
from pdfa_backend.job_tracker import JobTracker
from pdfa_backend.main import create_app
from pdfa_backend.models import ExpansionRequestIn
from pdfa_backend.quota_ledger import QuotaLedger
from pdfa_backend.records import UploadedPdf
from pdfa_backend.storage import LocalStorage

ADMIN_KEY = "test-admin-key-12345"

# Minimal PDF that is technically valid
SAMPLE_PDF = b"""%PDF-1.4
1 0 obj
<< /Type /Catalog /Pages 2 0 R >>
endobj
2 0 obj
<< /Type /Pages /Kids [3 0 R] /Count 1 >>
endobj
3 0 obj
<< /Type /Page /Parent 2 0 R /MediaBox [0 0 612 792] >>
endobj
trailer
<< /Size 4 /Root 1 0 R >>
%%EOF"""


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start=None):
        self.current = start or datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)
        self._lock = threading.Lock()

    def __call__(self):
        with self._lock:
            return self.current

    def advance(self, **kwargs):
        with self._lock:
            self.current = self.current + timedelta(**kwargs)
        return self.current


class StubRenderer:
    """
    Stand-in for Ghostscript and pdfinfo.

    Inputs containing ``BROKEN`` fail; inputs containing ``SLOW`` sleep for
    ``delay`` seconds first. Everything else is "converted" by prefixing a
    marker to the input bytes. Inputs containing ``pdfaid`` report a PDF/A-2b
    subtype when inspected.
    """

    OUTPUT_PREFIX = b"%PDF/A-stub\n"

    def __init__(self, delay=0.5):
        self.delay = delay
        self.calls = 0
        self._lock = threading.Lock()

    def render(self, input_path: Path, output_path: Path) -> Path:
        with self._lock:
            self.calls += 1
        data = input_path.read_bytes()
        if b"BROKEN" in data:
            raise RendererFailure("PDF/A conversion failed: unreadable input")
        if b"SLOW" in data:
            time.sleep(self.delay)
        output_path.write_bytes(self.OUTPUT_PREFIX + data)
        return output_path

    def inspect(self, path: Path):
        data = path.read_bytes()
        if b"BROKEN" in data:
            return {}
        metadata = {"Pages": "1", "Producer": "stub", "PDF version": "1.4"}
        if b"pdfaid" in data:
            metadata["PDF subtype"] = "PDF/A-2b"
        return metadata


class RecordingNotifier:
    def __init__(self):
        self.requests = []

    def notify_expansion_request(self, request):
        self.requests.append(request)


def make_upload(name="report.pdf", body=b"", content=None):
    """Build an upload; ``body`` is appended to the sample PDF so contents differ."""
    return UploadedPdf(filename=name, content=content if content is not None else SAMPLE_PDF + body,
                       content_type="application/pdf")


def make_request_fields(**overrides):
    fields = {
        "contact_email": "Ops@Example.com",
        "contact_name": " Jane Doe ",
        "organization": "Example Archive",
        "justification": "We digitise municipal records and need to archive several hundred files a day.",
        "requested_limit": 100,
    }
    fields.update(overrides)
    return ExpansionRequestIn(**fields)


@pytest.fixture
def settings(tmp_path):
    """Isolated settings: temporary database and storage, no background work."""
    return load_settings(
        overrides={
            "database": {"path": str(tmp_path / "pdfa.db")},
            "storage": {"backend": "local", "root": str(tmp_path / "storage")},
            "maintenance": {"enabled": False},
            "admin": {"api_key": ADMIN_KEY},
            "conversion": {"render_timeout_seconds": 5, "max_workers": 2},
        },
        environ={},
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def database(settings):
    return Database(Path(settings.database.path))


@pytest.fixture
def ledger(database, clock):
    return QuotaLedger(database, default_limit=10, clock=clock)


@pytest.fixture
def jobs(database, ledger, clock):
    return JobTracker(database, ledger, clock=clock)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def workflow(database, ledger, notifier, settings, clock):
    return ExpansionWorkflow(database, ledger, notifier, settings, clock=clock)


@pytest.fixture
def storage(settings):
    return LocalStorage(Path(settings.storage.root))


@pytest.fixture
def renderer():
    return StubRenderer()


@pytest.fixture
def conversions(ledger, jobs, renderer, storage, settings, clock):
    service = ConversionService(ledger, jobs, renderer, storage, settings, clock=clock)
    yield service
    service.shutdown()


@pytest.fixture
def expansions(ledger, workflow, settings):
    return ExpansionService(ledger, workflow, settings)


@pytest.fixture
def app(settings, renderer, storage, notifier, clock):
    return create_app(settings, renderer=renderer, storage=storage, notifier=notifier, clock=clock)


@pytest.fixture
def client(app):
    """Create a test client; the identity of every request is ``testclient``."""
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def admin_headers():
    return {"X-Admin-Key": ADMIN_KEY}
