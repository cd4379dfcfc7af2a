"""
Report processing pipeline: the task handler run by the queue worker.

For one report it performs, strictly in this order:
1. Text extraction from the stored upload
2. PII redaction of the raw text
3. Structured extraction through the language-model service

and drives the record PENDING -> PROCESSING -> COMPLETED | FAILED. The final
status write is always the last write of a run.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Callable, Dict

from .database import ReportDatabase
from .extraction_client import StructuredExtractionClient
from .models import ReportStatus
from .redaction import redact
from .text_extraction import TextExtractor

logger = logging.getLogger(__name__)

INTERRUPTED_MESSAGE = "Processing was interrupted before completion"


class ReportPipeline:
    """
    Sequences extractor, redactor and extraction client for a single report.

    Attributes:
        database: Record store the pipeline reads and mutates
        extractor: Turns the stored upload into plain text
        extraction_client: Turns redacted text into structured values
    """

    def __init__(
        self,
        database: ReportDatabase,
        extractor: TextExtractor,
        extraction_client: StructuredExtractionClient,
        *,
        redactor: Callable[[str], str] = redact,
    ) -> None:
        self.database = database
        self.extractor = extractor
        self.extraction_client = extraction_client
        self.redactor = redactor

    def process(self, job_id: str) -> None:
        """
        Run the pipeline for one report (queue handler entry point).

        A record that no longer exists, was soft-deleted or already reached a
        terminal status is left untouched. Stage failures are persisted on
        the record and not re-raised.
        """
        record = self.database.find_by_id(job_id)
        if record is None:
            logger.info(f"Report {job_id} no longer exists, skipping")
            return
        if record.status.is_terminal:
            logger.info(f"Report {job_id} is {record.status.value}, skipping")
            return
        if record.status is ReportStatus.PROCESSING:
            # Only reachable when a worker died mid-run and its task was released
            logger.warning(f"Report {job_id} was interrupted while PROCESSING, marking it FAILED")
            record.mark_failed(INTERRUPTED_MESSAGE)
            self.database.save(record)
            return

        record.mark_processing()
        self.database.save(record)
        logger.info(f"Report {job_id} is PROCESSING")

        try:
            result = self._run_stages(job_id, record.source_path)
        except Exception as exc:  # noqa: BLE001
            message = str(exc) or type(exc).__name__
            logger.exception(f"Report {job_id} failed: {message}")
            record.mark_failed(message)
            self.database.save(record)
            return

        record.mark_completed(result)
        self.database.save(record)
        logger.info(f"Report {job_id} COMPLETED")

    def _run_stages(self, job_id: str, source_path: Path) -> Dict[str, Any]:
        raw_text = self.extractor.extract_text(source_path)
        logger.info(f"Report {job_id}: extracted {len(raw_text)} characters")

        redacted = self.redactor(raw_text)

        result = self.extraction_client.extract(redacted)
        logger.info(f"Report {job_id}: structured extraction finished")
        return result
