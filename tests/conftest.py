"""
Pytest configuration and fixtures for MedReport Backend tests.
"""

import io
import os
import shutil
import tempfile
import time
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from PIL import Image
from reportlab.pdfgen import canvas

# Set test environment variables before importing the app
_DATA_DIR = tempfile.mkdtemp(prefix="medreport_test_data_")
os.environ["ADMIN_API_KEY"] = "test-master-key-12345"
os.environ["USE_MOCK_AI"] = "true"
os.environ["MOCK_AI_DELAY"] = "0"
os.environ["DATABASE_PATH"] = os.path.join(_DATA_DIR, "medreport.db")
os.environ["UPLOAD_DIR"] = tempfile.mkdtemp(prefix="medreport_test_uploads_")
os.environ["QUEUE_POLL_INTERVAL"] = "0.05"

from medreport_backend.main import app, job_manager  # noqa: E402


@pytest.fixture(scope="session", autouse=True)
def test_dirs():
    """Create and cleanup test directories."""
    yield {
        "data": _DATA_DIR,
        "upload": os.environ["UPLOAD_DIR"],
    }

    # Cleanup after all tests
    shutil.rmtree(_DATA_DIR, ignore_errors=True)
    shutil.rmtree(os.environ["UPLOAD_DIR"], ignore_errors=True)


@pytest.fixture
def client():
    """
    Create a test client for the FastAPI app.

    The lifespan is not entered, so the queue worker stays NOT_STARTED and
    uploaded reports remain PENDING until processed explicitly.
    """
    return TestClient(app)


@pytest.fixture
def manager():
    return job_manager


@pytest.fixture
def master_key():
    """Return the master API key for admin operations."""
    return "test-master-key-12345"


def _create_key(client, master_key, owner):
    response = client.post(
        "/admin/keys",
        json={"owner": owner},
        headers={"X-API-Key": master_key},
    )
    assert response.status_code == 201
    return response.json()["api_key"]


@pytest.fixture
def api_key(client, master_key):
    """Create a test API key."""
    return _create_key(client, master_key, "test-user")


@pytest.fixture
def other_api_key(client, master_key):
    """API key belonging to a different owner."""
    return _create_key(client, master_key, "other-user")


@pytest.fixture
def png_bytes():
    """A small PNG image."""
    buffer = io.BytesIO()
    Image.new("RGB", (32, 32), color="white").save(buffer, format="PNG")
    return buffer.getvalue()


@pytest.fixture
def digital_pdf(tmp_path):
    """A PDF with an embedded text layer."""
    path = tmp_path / "digital.pdf"
    pdf = canvas.Canvas(str(path))
    pdf.drawString(72, 720, "Glucose: 95 mg/dL")
    pdf.drawString(72, 700, "Total Cholesterol: 210 mg/dL")
    pdf.showPage()
    pdf.save()
    return path


@pytest.fixture
def blank_pdf(tmp_path):
    """A valid PDF without any text, standing in for a scanned document."""
    path = tmp_path / "scanned.pdf"
    pdf = canvas.Canvas(str(path))
    pdf.rect(72, 72, 200, 200)
    pdf.showPage()
    pdf.save()
    return path


def wait_for(predicate, timeout=5.0, interval=0.02):
    """Poll ``predicate`` until it is truthy or ``timeout`` expires."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return bool(predicate())


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "test.db"


@pytest.fixture(name="wait_for")
def wait_for_fixture():
    return wait_for
