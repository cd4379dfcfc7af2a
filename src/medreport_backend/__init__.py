"""
MedReport Backend - REST API for asynchronous medical report extraction

This package provides a FastAPI-based web service that turns uploaded lab
reports (digital PDFs, scanned PDFs and images) into structured clinical
values. It enables:

- Report uploads with API key authentication
- Durable background processing through a SQLite-backed task queue
- Layered text extraction (embedded text, PDF repair, OCR)
- PII redaction before any text leaves the service
- Structured extraction through an OpenAI-compatible chat completion API
- Status tracking, result retrieval and soft deletion of reports

Key Components:
    - main: FastAPI application and HTTP endpoint definitions
    - job_manager: Admission checks and report lifecycle coordination
    - task_queue: Persisted single-worker task queue
    - pipeline: Extract -> redact -> structured extraction for one report
    - text_extraction: pdfplumber, qpdf/Ghostscript, pdftoppm and Tesseract
    - redaction: Regex-based PII masking
    - extraction_client: Language-model client with retry classification
    - database / key_manager: SQLite persistence for reports and API keys
    - configuration: OmegaConf settings resolved from the environment

Usage:
    Run the API server with:
        uvicorn medreport_backend.main:app --reload --host 0.0.0.0 --port 8000

    Or, once installed:
        medreport-api

    Set USE_MOCK_AI=true to run without external tools or an OpenAI key.
"""
