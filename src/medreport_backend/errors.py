"""
Exception taxonomy for the report processing pipeline.

Every error raised by the pipeline derives from MedReportError so the HTTP
layer and the orchestrator can catch the whole family in one place. The
message carried by each exception (``str(exc)``) is what gets persisted in
the report record when a job fails.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional


class MedReportError(Exception):
    """Base class for all errors raised by this package."""


class ExtractionError(MedReportError):
    """
    Text extraction failed at a specific stage.

    Attributes:
        reason: Machine-readable failure reason (e.g. "rasterizer_missing")
        stage: The extraction stage that failed ("native", "rasterize", "ocr"...)
        page: 1-based page number for per-page OCR failures
    """

    SOURCE_MISSING = "source_missing"
    UNSUPPORTED_TYPE = "unsupported_type"
    RASTERIZER_MISSING = "rasterizer_missing"
    RASTERIZER_FAILED = "rasterizer_failed"
    NO_PAGES_PRODUCED = "no_pages_produced"
    OCR_FAILED = "ocr_failed"

    def __init__(
        self,
        reason: str,
        message: str,
        *,
        stage: Optional[str] = None,
        page: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.reason = reason
        self.stage = stage
        self.page = page


class ServiceErrorKind(str, Enum):
    QUOTA_EXHAUSTED = "quota_exhausted"
    TRANSIENT = "transient"
    PERMANENT = "permanent"
    MALFORMED_RESPONSE = "malformed_response"


class ExtractionServiceError(MedReportError):
    """The structured extraction upstream call failed."""

    def __init__(
        self,
        kind: ServiceErrorKind,
        message: str,
        *,
        status_code: Optional[int] = None,
        attempts: int = 0,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.status_code = status_code
        self.attempts = attempts


class QueueError(MedReportError):
    """The task queue cannot accept work in its current state."""


class InvalidTransitionError(MedReportError):
    """A report status change that the state machine does not allow."""

    def __init__(self, current: str, target: str) -> None:
        super().__init__(f"Invalid status transition: {current} -> {target}")
        self.current = current
        self.target = target


class AdmissionError(MedReportError):
    """An upload was rejected before a job could be admitted."""


class ReportNotFound(MedReportError):
    pass


class ReportForbidden(MedReportError):
    pass


class ReportAlreadyDeleted(MedReportError):
    pass


class ToolNotFoundError(MedReportError):
    """An external binary is not installed or not on PATH."""

    def __init__(self, tool: str) -> None:
        super().__init__(f"Required binary `{tool}` not found")
        self.tool = tool


class ToolFailedError(MedReportError):
    """An external binary ran but reported a processing failure."""

    def __init__(self, tool: str, returncode: int, stderr: str = "") -> None:
        detail = stderr.strip() or f"exit status {returncode}"
        super().__init__(f"`{tool}` failed: {detail}")
        self.tool = tool
        self.returncode = returncode
        self.stderr = stderr
