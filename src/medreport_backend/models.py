from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict

from .errors import InvalidTransitionError


class ReportStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    DELETED = "DELETED"

    @property
    def is_terminal(self) -> bool:
        return self in (ReportStatus.COMPLETED, ReportStatus.FAILED, ReportStatus.DELETED)

    def can_transition(self, target: ReportStatus) -> bool:
        return target in _ALLOWED_TRANSITIONS[self]

    def transition(self, target: ReportStatus) -> ReportStatus:
        """
        Validate a status change and return the new status.

        Raises:
            InvalidTransitionError: If the edge is not part of the state machine
                (e.g. COMPLETED -> PROCESSING)
        """
        if not self.can_transition(target):
            raise InvalidTransitionError(self.value, target.value)
        return target


# DELETED is reachable from every live state; it is applied by the CRUD layer.
_ALLOWED_TRANSITIONS: Dict[ReportStatus, frozenset] = {
    ReportStatus.PENDING: frozenset({ReportStatus.PROCESSING, ReportStatus.DELETED}),
    ReportStatus.PROCESSING: frozenset({ReportStatus.COMPLETED, ReportStatus.FAILED, ReportStatus.DELETED}),
    ReportStatus.COMPLETED: frozenset({ReportStatus.DELETED}),
    ReportStatus.FAILED: frozenset({ReportStatus.DELETED}),
    ReportStatus.DELETED: frozenset(),
}


class LabValue(BaseModel):
    value: Optional[float] = None
    unit: Optional[str] = None
    status: Optional[str] = None


class ExtractedReport(BaseModel):
    """Structured clinical values returned by the extraction service."""

    model_config = ConfigDict(extra="allow")

    patient_name: Optional[str] = None
    blood_sugar: Optional[LabValue] = None
    cholesterol: Optional[LabValue] = None


class ReportSummary(BaseModel):
    id: str
    filename: str
    status: ReportStatus
    created_at: datetime
    updated_at: datetime


class ReportDetail(ReportSummary):
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None


class ReportStatusView(BaseModel):
    status: ReportStatus
    created_at: datetime


class ReportResultView(BaseModel):
    result: Dict[str, Any]


class UploadAccepted(BaseModel):
    job_id: str
    message: str = "Processing started"


class APIKeyCreate(BaseModel):
    owner: str


class APIKeyCreated(BaseModel):
    api_key: str
    record: Dict[str, Any]


@dataclass
class ReportRecord:
    """
    Persisted state of one document's processing lifecycle.

    ``result`` and ``error`` are mutually exclusive: ``result`` is only set on
    entering COMPLETED and ``error`` only on entering FAILED. Both stay unset
    while the report is PENDING or PROCESSING.

    Attributes:
        id: Unique report identifier (hex UUID), immutable
        owner: Identifier of the API key owner who uploaded the document
        filename: Original uploaded filename
        source_path: Location of the stored upload, immutable
        status: Current lifecycle status
        result: Extracted structured values (COMPLETED only)
        error: Failure description (FAILED only)
        created_at: Creation timestamp (UTC)
        updated_at: Last modification timestamp (UTC)
    """

    id: str
    owner: str
    filename: str
    source_path: Path
    status: ReportStatus = ReportStatus.PENDING
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)

    def _move_to(self, target: ReportStatus) -> None:
        self.status = self.status.transition(target)
        self.updated_at = datetime.utcnow()

    def mark_processing(self) -> None:
        self._move_to(ReportStatus.PROCESSING)
        self.result = None
        self.error = None

    def mark_completed(self, result: Dict[str, Any]) -> None:
        self._move_to(ReportStatus.COMPLETED)
        self.result = result
        self.error = None

    def mark_failed(self, message: str) -> None:
        self._move_to(ReportStatus.FAILED)
        self.result = None
        self.error = message

    def mark_deleted(self) -> None:
        self._move_to(ReportStatus.DELETED)

    def to_summary(self) -> ReportSummary:
        return ReportSummary(
            id=self.id,
            filename=self.filename,
            status=self.status,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )

    def to_detail(self) -> ReportDetail:
        return ReportDetail(
            **self.to_summary().model_dump(),
            result=self.result,
            error=self.error,
        )
