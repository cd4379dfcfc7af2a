from __future__ import annotations

import secrets
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Dict, List, Optional
from uuid import uuid4

from fastapi import Depends, FastAPI, File, Header, HTTPException, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse
from starlette.concurrency import run_in_threadpool

from .configuration import configure_logging, load_settings
from .errors import AdmissionError, ReportAlreadyDeleted, ReportForbidden, ReportNotFound
from .job_manager import JobManager
from .key_manager import APIKeyRecord
from .models import (
    APIKeyCreate,
    APIKeyCreated,
    ReportDetail,
    ReportRecord,
    ReportResultView,
    ReportStatus,
    ReportStatusView,
    ReportSummary,
    UploadAccepted,
)
from .utils import ensure_directory, is_allowed_upload, sanitize_filename

settings = load_settings()
configure_logging(settings)

job_manager = JobManager(settings)


@asynccontextmanager
async def lifespan(_: FastAPI):
    job_manager.start()
    yield
    job_manager.stop()


app = FastAPI(title="MedReport API", version="0.1.0", lifespan=lifespan)

allowed_origins = ["*"]
app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_job_manager() -> JobManager:
    return job_manager


def require_api_key(
    x_api_key: Optional[str] = Header(None),
    manager: JobManager = Depends(get_job_manager),
) -> APIKeyRecord:
    record = manager.key_manager.validate_key(x_api_key)
    if record is None:
        raise HTTPException(status_code=401, detail="Invalid or missing API key")
    return record


def require_master_key(x_api_key: str = Header(...), manager: JobManager = Depends(get_job_manager)) -> None:
    master_key = str(manager.settings.auth.master_key)
    if not master_key or not secrets.compare_digest(x_api_key.encode(), master_key.encode()):
        raise HTTPException(status_code=401, detail="Invalid master key")


def _load_report(manager: JobManager, owner: str, report_id: str, include_deleted: bool = False) -> ReportRecord:
    try:
        return manager.get_report(owner, report_id, include_deleted=include_deleted)
    except ReportNotFound as exc:  # noqa: BLE001
        raise HTTPException(status_code=404, detail="Not found") from exc
    except ReportForbidden as exc:  # noqa: BLE001
        raise HTTPException(status_code=403, detail="Forbidden") from exc


@app.get("/healthz")
def healthcheck() -> Dict[str, str]:
    return {"status": "ok"}


@app.post("/admin/keys", response_model=APIKeyCreated, status_code=201, dependencies=[Depends(require_master_key)])
def create_api_key(payload: APIKeyCreate, manager: JobManager = Depends(get_job_manager)) -> APIKeyCreated:
    raw_key, record = manager.key_manager.create_key(payload.owner)
    return APIKeyCreated(api_key=raw_key, record=record)


@app.get("/admin/keys", dependencies=[Depends(require_master_key)])
def list_api_keys(manager: JobManager = Depends(get_job_manager)) -> List[dict]:
    return manager.key_manager.list_keys()


@app.delete("/admin/keys/{key_id}", dependencies=[Depends(require_master_key)])
def revoke_api_key(key_id: str, manager: JobManager = Depends(get_job_manager)) -> Dict[str, str]:
    if not manager.key_manager.revoke_key(key_id):
        raise HTTPException(status_code=404, detail="API key not found")
    return {"status": "revoked"}


async def _store_upload(file: UploadFile, upload_root: Path) -> Path:
    upload_dir = ensure_directory(upload_root / uuid4().hex)
    destination = upload_dir / sanitize_filename(file.filename or "document", content_type=file.content_type)

    with destination.open("wb") as buffer:
        while chunk := await file.read(8 * 1024 * 1024):
            buffer.write(chunk)
    await file.close()
    return destination


@app.post("/reports", response_model=UploadAccepted)
async def upload_report(
    file: UploadFile = File(...),
    key: APIKeyRecord = Depends(require_api_key),
    manager: JobManager = Depends(get_job_manager),
) -> UploadAccepted:
    if not file.filename:
        raise HTTPException(status_code=400, detail="No file uploaded")
    if not is_allowed_upload(file.filename, file.content_type):
        raise HTTPException(
            status_code=400,
            detail="Only image or PDF uploads are allowed (png, jpg, jpeg, tiff, pdf).",
        )

    stored_path = await _store_upload(file, manager.upload_root)
    try:
        summary = await run_in_threadpool(manager.submit_report, key.owner, file.filename, stored_path)
    except AdmissionError as exc:  # noqa: BLE001
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    return UploadAccepted(job_id=summary.id)


@app.get("/reports", response_model=List[ReportSummary])
def list_reports(
    key: APIKeyRecord = Depends(require_api_key),
    manager: JobManager = Depends(get_job_manager),
) -> List[ReportSummary]:
    return manager.list_reports(key.owner)


@app.get("/reports/{report_id}", response_model=ReportDetail)
def get_report(
    report_id: str,
    key: APIKeyRecord = Depends(require_api_key),
    manager: JobManager = Depends(get_job_manager),
) -> ReportDetail:
    return _load_report(manager, key.owner, report_id).to_detail()


@app.get("/reports/{report_id}/status", response_model=ReportStatusView)
def report_status(
    report_id: str,
    key: APIKeyRecord = Depends(require_api_key),
    manager: JobManager = Depends(get_job_manager),
) -> ReportStatusView:
    record = _load_report(manager, key.owner, report_id, include_deleted=True)
    return ReportStatusView(status=record.status, created_at=record.created_at)


@app.get("/reports/{report_id}/result", response_model=ReportResultView)
def report_result(
    report_id: str,
    key: APIKeyRecord = Depends(require_api_key),
    manager: JobManager = Depends(get_job_manager),
) -> ReportResultView:
    record = _load_report(manager, key.owner, report_id)
    if record.status is not ReportStatus.COMPLETED or record.result is None:
        raise HTTPException(status_code=400, detail="Report not ready")
    return ReportResultView(result=record.result)


@app.get("/reports/{report_id}/file")
def report_file(
    report_id: str,
    key: APIKeyRecord = Depends(require_api_key),
    manager: JobManager = Depends(get_job_manager),
):
    record = _load_report(manager, key.owner, report_id)
    file_path = Path(record.source_path).resolve()
    if not file_path.exists() or not file_path.is_file():
        raise HTTPException(status_code=404, detail="File not found")
    return FileResponse(file_path, filename=record.filename, content_disposition_type="inline")


@app.delete("/reports/{report_id}")
def delete_report(
    report_id: str,
    key: APIKeyRecord = Depends(require_api_key),
    manager: JobManager = Depends(get_job_manager),
) -> Dict[str, str]:
    try:
        manager.soft_delete(key.owner, report_id)
    except ReportNotFound as exc:  # noqa: BLE001
        raise HTTPException(status_code=404, detail="Not found") from exc
    except ReportForbidden as exc:  # noqa: BLE001
        raise HTTPException(status_code=403, detail="Forbidden") from exc
    except ReportAlreadyDeleted as exc:  # noqa: BLE001
        raise HTTPException(status_code=400, detail="Already deleted") from exc
    return {"message": "Report deleted"}


def run() -> None:
    import uvicorn

    uvicorn.run("medreport_backend.main:app", host="0.0.0.0", port=8000)
