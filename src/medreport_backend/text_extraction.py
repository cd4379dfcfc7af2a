"""
Text extraction from uploaded PDFs and images.

Extraction cascade for PDFs (each step only runs when the previous one
produced no usable text):
1. pdfplumber: embedded text of digitally generated PDFs (no external process)
2. Structural repair with qpdf, or Ghostscript when qpdf is unavailable,
   followed by a second pdfplumber pass on the repaired file
3. pdftoppm rasterization + Tesseract OCR, one page at a time

Image uploads go straight to OCR. Repaired files and page images live in a
per-call temporary directory that is removed on every exit path.
"""

from __future__ import annotations

import logging
import subprocess
import sys
import tempfile
from pathlib import Path
from typing import Callable, List, Optional, Sequence

import pdfplumber
import pytesseract
from omegaconf import DictConfig
from PIL import Image

from .configuration import is_mock_mode
from .errors import ExtractionError, ToolFailedError, ToolNotFoundError

logger = logging.getLogger(__name__)

PDF_EXTENSIONS = {".pdf"}
IMAGE_EXTENSIONS = {".png", ".jpg", ".jpeg", ".tif", ".tiff", ".bmp", ".webp"}

# Placeholder returned in mock mode, where no external tool is touched
MOCK_TEXT = "MOCK OCR TEXT"

# qpdf exits with 3 when it wrote the output but emitted warnings
_QPDF_WARNINGS_EXIT = 3

ToolRunner = Callable[[Sequence[str]], subprocess.CompletedProcess]


def run_tool(args: Sequence[str]) -> subprocess.CompletedProcess:
    """
    Run an external binary and translate its failure modes.

    Raises:
        ToolNotFoundError: The binary is not installed / not on PATH
        ToolFailedError: The binary ran and exited with a non-zero status
    """
    try:
        return subprocess.run(list(args), check=True, capture_output=True, text=True)
    except FileNotFoundError as exc:
        raise ToolNotFoundError(args[0]) from exc
    except subprocess.CalledProcessError as exc:
        raise ToolFailedError(args[0], exc.returncode, exc.stderr or "") from exc


def poppler_install_hint(platform: Optional[str] = None) -> str:
    platform = platform or sys.platform
    if platform == "win32":
        return "On Windows install Poppler (e.g. via Chocolatey: `choco install poppler -y`) and ensure `pdftoppm` is on PATH."
    if platform == "darwin":
        return "On macOS install Poppler via Homebrew: `brew install poppler`."
    return "On Debian/Ubuntu install `poppler-utils`: `sudo apt update && sudo apt install -y poppler-utils`."


def read_native_text(path: Path) -> str:
    """Return the embedded text layer of a PDF, pages separated by newlines."""
    with pdfplumber.open(path) as pdf:
        return "\n".join(page.extract_text() or "" for page in pdf.pages)


class TextExtractor:
    """
    Turns a stored upload into plain text using a layered fallback strategy.

    Either the full text is returned or an ExtractionError naming the failing
    stage is raised; partial OCR output is never returned.

    Attributes:
        ocr_language: Tesseract language code
        mock_mode: Skip every external tool and return MOCK_TEXT
    """

    RASTERIZER = "pdftoppm"
    PAGE_PREFIX = "page"

    def __init__(
        self,
        *,
        ocr_language: str = "eng",
        mock_mode: bool = False,
        runner: ToolRunner = run_tool,
    ) -> None:
        self.ocr_language = ocr_language
        self.mock_mode = mock_mode
        self._run = runner

    @classmethod
    def from_settings(cls, settings: DictConfig) -> "TextExtractor":
        return cls(ocr_language=str(settings.ocr.language), mock_mode=is_mock_mode(settings))

    def extract_text(self, path: Path) -> str:
        """
        Extract plain text from a PDF or raster image.

        Args:
            path: Location of the stored upload

        Returns:
            The extracted text

        Raises:
            ExtractionError: If no stage could produce text
        """
        path = Path(path)
        if not path.is_file():
            raise ExtractionError(
                ExtractionError.SOURCE_MISSING,
                f"Source file not found: {path}",
                stage="open",
            )

        if self.mock_mode:
            logger.info(f"Mock mode enabled, skipping extraction for {path.name}")
            return MOCK_TEXT

        suffix = path.suffix.lower()
        if suffix in IMAGE_EXTENSIONS:
            return self._ocr_image(path)
        if suffix not in PDF_EXTENSIONS:
            raise ExtractionError(
                ExtractionError.UNSUPPORTED_TYPE,
                f"Unsupported file type: {suffix or path.name}",
                stage="open",
            )

        with tempfile.TemporaryDirectory(prefix="medreport_") as scratch:
            return self._extract_pdf(path, Path(scratch))

    def _extract_pdf(self, path: Path, scratch: Path) -> str:
        text = self._native_text(path)
        if text:
            logger.info(f"Using embedded text layer of {path.name}")
            return text

        pdf_to_process = path
        repaired = self._repair(path, scratch / "repaired.pdf")
        if repaired is not None:
            pdf_to_process = repaired
            text = self._native_text(repaired)
            if text:
                logger.info(f"Using embedded text layer of repaired {path.name}")
                return text

        logger.info(f"No embedded text in {path.name}, falling back to OCR")
        pages = self._rasterize(pdf_to_process, scratch / "pages")
        return self._ocr_pages(pages)

    def _native_text(self, path: Path) -> str:
        """Embedded text, or an empty string when there is none or parsing fails."""
        try:
            text = read_native_text(path)
        # pdfminer raises many unrelated exception types on damaged files
        except Exception as exc:  # noqa: BLE001
            logger.warning(f"Embedded text extraction failed for {path.name}: {exc}")
            return ""
        return text if text.strip() else ""

    def has_native_text(self, path: Path) -> bool:
        return bool(self._native_text(Path(path)))

    def _repair(self, source: Path, target: Path) -> Optional[Path]:
        """
        Rewrite a damaged PDF, preferring qpdf over Ghostscript.

        Returns:
            Path of the repaired file, or None when no tool could repair it
        """
        commands = [
            ["qpdf", str(source), str(target)],
            ["gs", "-o", str(target), "-sDEVICE=pdfwrite", "-dPDFSETTINGS=/prepress", str(source)],
        ]
        for args in commands:
            tool = args[0]
            try:
                self._run(args)
            except ToolNotFoundError:
                logger.warning(f"{tool} not found, trying next repair tool")
                continue
            except ToolFailedError as exc:
                if not (tool == "qpdf" and exc.returncode == _QPDF_WARNINGS_EXIT and target.exists()):
                    logger.warning(f"PDF repair with {tool} failed: {exc}")
                    continue
            if target.exists():
                logger.info(f"Repaired {source.name} with {tool}")
                return target

        logger.warning(f"Could not repair {source.name}, continuing with the original file")
        return None

    def _rasterize(self, pdf_path: Path, output_dir: Path) -> List[Path]:
        output_dir.mkdir(parents=True, exist_ok=True)
        prefix = output_dir / self.PAGE_PREFIX
        try:
            # pdftoppm writes page-1.png, page-2.png, ... zero-padded to the page count
            self._run([self.RASTERIZER, "-png", str(pdf_path), str(prefix)])
        except ToolNotFoundError as exc:
            raise ExtractionError(
                ExtractionError.RASTERIZER_MISSING,
                f"Required binary `{self.RASTERIZER}` not found. {poppler_install_hint()}",
                stage="rasterize",
            ) from exc
        except ToolFailedError as exc:
            raise ExtractionError(
                ExtractionError.RASTERIZER_FAILED,
                f"PDF conversion failed: {exc}",
                stage="rasterize",
            ) from exc

        pages = sorted(
            (item for item in output_dir.iterdir() if item.suffix.lower() == ".png"),
            key=lambda item: item.name,
        )
        if not pages:
            raise ExtractionError(
                ExtractionError.NO_PAGES_PRODUCED,
                "PDF conversion produced no images",
                stage="rasterize",
            )
        return pages

    def _ocr_pages(self, pages: List[Path]) -> str:
        texts = []
        for number, page in enumerate(pages, start=1):
            try:
                texts.append(self.recognize(page))
            except (pytesseract.TesseractError, OSError, RuntimeError) as exc:
                raise ExtractionError(
                    ExtractionError.OCR_FAILED,
                    f"OCR failed for page {page.name}: {exc}",
                    stage="ocr",
                    page=number,
                ) from exc
        logger.info(f"OCR completed for {len(pages)} page(s)")
        return "\n".join(texts)

    def _ocr_image(self, path: Path) -> str:
        try:
            return self.recognize(path)
        except (pytesseract.TesseractError, OSError, RuntimeError) as exc:
            raise ExtractionError(
                ExtractionError.OCR_FAILED,
                f"OCR failed: {exc}",
                stage="ocr",
            ) from exc

    def recognize(self, image_path: Path) -> str:
        """Run Tesseract over a single image file."""
        with Image.open(image_path) as image:
            return pytesseract.image_to_string(image, lang=self.ocr_language)

    def rasterizer_available(self) -> bool:
        try:
            self._run([self.RASTERIZER, "-v"])
        except ToolNotFoundError:
            return False
        except ToolFailedError:
            # older Poppler releases exit non-zero for -v
            return True
        return True
