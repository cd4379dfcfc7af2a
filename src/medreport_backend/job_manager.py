"""
Report admission and lifecycle management.

This module wires the processing components together and exposes the
operations the HTTP layer needs:
- Admitting uploaded documents as PENDING reports and scheduling them
- Starting and stopping the background queue worker
- Owner-scoped lookups, listing and soft deletion of reports

All collaborators are created once here and passed by handle; there is no
module-level queue or database instance.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional
from uuid import uuid4

from omegaconf import DictConfig

from .configuration import is_mock_mode, load_settings
from .database import ReportDatabase
from .errors import (
    AdmissionError,
    QueueError,
    ReportAlreadyDeleted,
    ReportForbidden,
    ReportNotFound,
)
from .extraction_client import StructuredExtractionClient
from .key_manager import KeyManager
from .models import ReportRecord, ReportStatus, ReportSummary
from .pipeline import ReportPipeline
from .task_queue import TaskQueue
from .text_extraction import TextExtractor, poppler_install_hint
from .utils import ensure_directory, is_pdf

logger = logging.getLogger(__name__)

SCANNED_PDF_WITHOUT_RASTERIZER = (
    "Uploaded PDF appears to be scanned (no extractable text) and server is missing "
    "`pdftoppm` (Poppler). Install Poppler or upload a digital PDF/image."
)


class JobManager:
    """
    Central coordinator for report processing.

    Attributes:
        settings: Resolved runtime configuration
        upload_root: Directory where uploaded documents are stored
        database: Report record store
        key_manager: API key store used for request verification
        queue: Durable task queue feeding the pipeline
        pipeline: Task handler run for every dequeued report
    """

    def __init__(
        self,
        settings: Optional[DictConfig] = None,
        *,
        extractor: Optional[TextExtractor] = None,
        extraction_client: Optional[StructuredExtractionClient] = None,
    ) -> None:
        self.settings = settings if settings is not None else load_settings()
        self.mock_mode = is_mock_mode(self.settings)

        db_path = Path(self.settings.storage.database_path)
        self.upload_root = ensure_directory(Path(self.settings.storage.upload_dir))
        self.database = ReportDatabase(db_path)
        self.key_manager = KeyManager(db_path)

        self.extractor = extractor or TextExtractor.from_settings(self.settings)
        self.extraction_client = extraction_client or StructuredExtractionClient.from_settings(self.settings)
        self.pipeline = ReportPipeline(self.database, self.extractor, self.extraction_client)
        self.queue = TaskQueue(
            db_path,
            self.pipeline.process,
            poll_interval=float(self.settings.queue.poll_interval_seconds),
            concurrency=int(self.settings.queue.concurrency),
        )

    def start(self) -> None:
        if not self.mock_mode and not self.extractor.rasterizer_available():
            logger.warning(f"`pdftoppm` (Poppler) not found. Scanned PDFs will not be processed. {poppler_install_hint()}")
        self.queue.start()

    def stop(self) -> None:
        self.queue.stop()

    def submit_report(self, owner: str, filename: str, stored_path: Path) -> ReportSummary:
        """
        Admit an uploaded document and schedule it for processing.

        The record is created PENDING before anything else. If scheduling
        fails because the queue is not running, the failure is logged and the
        record stays PENDING.

        Args:
            owner: Owner of the API key that uploaded the document
            filename: Original filename as uploaded
            stored_path: Where the upload was written

        Returns:
            Summary of the new report

        Raises:
            AdmissionError: A scanned PDF was uploaded and no rasterizer is
                installed; the stored file and the record are removed
        """
        record = ReportRecord(
            id=uuid4().hex,
            owner=owner,
            filename=filename,
            source_path=Path(stored_path),
        )
        self.database.create(record)

        try:
            self._check_admission(record)
        except AdmissionError:
            record.source_path.unlink(missing_ok=True)
            self.database.delete(record.id)
            raise

        try:
            self.queue.enqueue(record.id)
        except QueueError as exc:
            logger.error(f"Failed to schedule report {record.id}, leaving it PENDING: {exc}")

        return record.to_summary()

    def _check_admission(self, record: ReportRecord) -> None:
        """Reject scanned PDFs up front when they could never be OCR'd."""
        if self.mock_mode or not is_pdf(record.source_path):
            return
        if self.extractor.has_native_text(record.source_path):
            return
        if self.extractor.rasterizer_available():
            return
        raise AdmissionError(SCANNED_PDF_WITHOUT_RASTERIZER)

    def get_report(self, owner: str, report_id: str, include_deleted: bool = False) -> ReportRecord:
        """
        Fetch a report owned by ``owner``.

        Raises:
            ReportNotFound: Unknown id, or soft-deleted and include_deleted is False
            ReportForbidden: The report belongs to another owner
        """
        record = self.database.find_by_id(report_id)
        if record is None:
            raise ReportNotFound(f"Report {report_id} not found")
        if record.owner != owner:
            raise ReportForbidden(f"Report {report_id} belongs to another owner")
        if record.status is ReportStatus.DELETED and not include_deleted:
            raise ReportNotFound(f"Report {report_id} not found")
        return record

    def list_reports(self, owner: str) -> List[ReportSummary]:
        return [record.to_summary() for record in self.database.list_for_owner(owner)]

    def soft_delete(self, owner: str, report_id: str) -> ReportRecord:
        """
        Mark a report DELETED. The stored file is kept on disk.

        Raises:
            ReportAlreadyDeleted: The report was already deleted
        """
        record = self.get_report(owner, report_id, include_deleted=True)
        if record.status is ReportStatus.DELETED:
            raise ReportAlreadyDeleted(f"Report {report_id} already deleted")
        record.mark_deleted()
        self.database.save(record)
        logger.info(f"Report {report_id} marked DELETED")
        return record
