"""
Utility functions for upload storage and filename handling.

This module provides helper functions for:
- Sanitizing user-provided filenames for safe filesystem usage
- Ensuring directory creation with proper error handling
- Deciding which uploads are accepted
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Iterable, Optional

# Pattern to match characters that are not safe for filesystem paths
# Allows: alphanumeric characters, underscores, and hyphens
SANITIZE_PATTERN = re.compile(r"[^a-zA-Z0-9_-]+")

ALLOWED_CONTENT_TYPES = {
    "image/png",
    "image/jpeg",
    "image/jpg",
    "image/tiff",
    "application/pdf",
}

# Stored extension for uploads whose filename carries none we can read
CONTENT_TYPE_EXTENSIONS = {
    "image/png": ".png",
    "image/jpeg": ".jpg",
    "image/jpg": ".jpg",
    "image/tiff": ".tiff",
    "application/pdf": ".pdf",
}


def allowed_upload_extensions() -> Iterable[str]:
    """
    Get the file extensions accepted for upload.

    Returns:
        The extensions of the image and PDF formats the pipeline can read
    """
    return [".png", ".jpg", ".jpeg", ".tif", ".tiff", ".pdf"]


def is_allowed_upload(filename: str, content_type: Optional[str]) -> bool:
    """
    Check an upload against the accepted formats.

    Either a known content type or a known extension is enough, since
    browsers are inconsistent about the content type of TIFF and PDF files.
    """
    suffix = Path(filename).suffix.lower()
    return (content_type or "").lower() in ALLOWED_CONTENT_TYPES or suffix in allowed_upload_extensions()


def sanitize_filename(filename: str, fallback: str = "document", content_type: Optional[str] = None) -> str:
    """
    Generate a filesystem-safe filename from user input.

    The stem is reduced to safe characters; the extension is lower-cased and
    kept only if it is an accepted upload extension. Otherwise the extension
    matching ``content_type`` is used, if any.

    Example:
        >>> sanitize_filename("Lab Results (May).PDF")
        "Lab-Results-May.pdf"
        >>> sanitize_filename("@#$.exe")
        "document"
        >>> sanitize_filename("report", content_type="image/png")
        "report.png"
    """
    path = Path(filename)
    stem = SANITIZE_PATTERN.sub("-", path.stem.strip()).strip("-_") or fallback
    suffix = path.suffix.lower()
    if suffix not in allowed_upload_extensions():
        suffix = CONTENT_TYPE_EXTENSIONS.get((content_type or "").lower(), "")
    return f"{stem}{suffix}"


def ensure_directory(path: Path) -> Path:
    """
    Create a directory if it doesn't exist, including parent directories.

    Args:
        path: The directory path to create

    Returns:
        The same path object for chaining

    Raises:
        OSError: If directory creation fails due to permissions or other I/O errors
    """
    path.mkdir(parents=True, exist_ok=True)
    return path


def is_pdf(path: Path) -> bool:
    return Path(path).suffix.lower() == ".pdf"
