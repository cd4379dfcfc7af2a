"""
Tests for the report pipeline (queue handler).
"""

from pathlib import Path

import pytest

from medreport_backend.database import ReportDatabase
from medreport_backend.errors import ExtractionServiceError, ServiceErrorKind
from medreport_backend.extraction_client import MOCK_RESULT, StructuredExtractionClient
from medreport_backend.models import ReportRecord, ReportStatus
from medreport_backend.pipeline import INTERRUPTED_MESSAGE, ReportPipeline
from medreport_backend.text_extraction import TextExtractor


class RecordingDatabase(ReportDatabase):
    """ReportDatabase that remembers the status of every save."""

    def __init__(self, db_path):
        super().__init__(db_path)
        self.saved_statuses = []

    def save(self, record):
        self.saved_statuses.append(record.status)
        super().save(record)


class StaticExtractor:
    def __init__(self, text):
        self.text = text
        self.calls = 0

    def extract_text(self, path):
        self.calls += 1
        return self.text


class CapturingClient:
    def __init__(self, result=None, error=None):
        self.result = result or {"patient_name": None, "blood_sugar": None, "cholesterol": None}
        self.error = error
        self.received = []

    def extract(self, text):
        self.received.append(text)
        if self.error is not None:
            raise self.error
        return self.result


@pytest.fixture
def database(db_path):
    return RecordingDatabase(db_path)


@pytest.fixture
def source_file(tmp_path):
    path = tmp_path / "report.png"
    path.write_bytes(b"image")
    return path


@pytest.fixture
def pending_record(database, source_file):
    record = ReportRecord(id="job-1", owner="alice", filename="report.png", source_path=source_file)
    database.create(record)
    return record


def mock_pipeline(database):
    return ReportPipeline(
        database,
        TextExtractor(mock_mode=True),
        StructuredExtractionClient(mock_mode=True, mock_delay=0),
    )


class TestSuccessfulRun:
    """PENDING -> PROCESSING -> COMPLETED."""

    def test_mock_mode_completes(self, database, pending_record):
        mock_pipeline(database).process(pending_record.id)

        record = database.find_by_id(pending_record.id)
        assert record.status is ReportStatus.COMPLETED
        assert record.result == MOCK_RESULT
        assert record.error is None
        assert database.saved_statuses == [ReportStatus.PROCESSING, ReportStatus.COMPLETED]

    def test_text_is_redacted_before_extraction(self, database, pending_record):
        client = CapturingClient()
        pipeline = ReportPipeline(
            database,
            StaticExtractor("Patient Name: John Doe\nEmail: jd@example.com\nGlucose: 95 mg/dL"),
            client,
        )

        pipeline.process(pending_record.id)

        sent = client.received[0]
        assert "John" not in sent
        assert "jd@example.com" not in sent
        assert "Glucose: 95 mg/dL" in sent


class TestFailedRun:
    """Stage failures end in FAILED with a message and no result."""

    def test_missing_source_file(self, database, pending_record, source_file):
        source_file.unlink()

        mock_pipeline(database).process(pending_record.id)

        record = database.find_by_id(pending_record.id)
        assert record.status is ReportStatus.FAILED
        assert record.result is None
        assert "Source file not found" in record.error
        assert database.saved_statuses[-1] is ReportStatus.FAILED

    def test_service_error_message_persisted(self, database, pending_record):
        error = ExtractionServiceError(ServiceErrorKind.QUOTA_EXHAUSTED, "OpenAI insufficient_quota: no credit")
        pipeline = ReportPipeline(database, StaticExtractor("text"), CapturingClient(error=error))

        pipeline.process(pending_record.id)

        record = database.find_by_id(pending_record.id)
        assert record.status is ReportStatus.FAILED
        assert record.error == "OpenAI insufficient_quota: no credit"

    def test_empty_exception_message_falls_back_to_class_name(self, database, pending_record):
        pipeline = ReportPipeline(database, StaticExtractor("text"), CapturingClient(error=RuntimeError()))

        pipeline.process(pending_record.id)

        assert database.find_by_id(pending_record.id).error == "RuntimeError"


class TestSkippedRuns:
    """Records the handler must leave alone."""

    def test_missing_record(self, database):
        extractor = StaticExtractor("text")
        ReportPipeline(database, extractor, CapturingClient()).process("does-not-exist")

        assert extractor.calls == 0
        assert database.find_by_id("does-not-exist") is None

    @pytest.mark.parametrize("status", [ReportStatus.DELETED, ReportStatus.COMPLETED, ReportStatus.FAILED])
    def test_terminal_record_untouched(self, database, source_file, status):
        record = ReportRecord(
            id="job-terminal",
            owner="alice",
            filename="report.png",
            source_path=source_file,
            status=status,
        )
        database.create(record)
        extractor = StaticExtractor("text")

        ReportPipeline(database, extractor, CapturingClient()).process(record.id)

        assert extractor.calls == 0
        assert database.saved_statuses == []
        assert database.find_by_id(record.id).status is status

    def test_interrupted_processing_record_fails(self, database, source_file):
        record = ReportRecord(
            id="job-interrupted",
            owner="alice",
            filename="report.png",
            source_path=Path(source_file),
            status=ReportStatus.PROCESSING,
        )
        database.create(record)
        extractor = StaticExtractor("text")

        ReportPipeline(database, extractor, CapturingClient()).process(record.id)

        stored = database.find_by_id(record.id)
        assert extractor.calls == 0
        assert stored.status is ReportStatus.FAILED
        assert stored.error == INTERRUPTED_MESSAGE
