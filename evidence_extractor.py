import logging
import tempfile
from pathlib import Path
from typing import Optional, Union

import fitz  # PyMuPDF
import PyPDF2
import pytesseract
from PIL import Image
from PyPDF2.errors import PdfReadError

from exception_models import Evidence
from resolution_config import ResolutionConfig, DEFAULT_CONFIG

logger = logging.getLogger(__name__)

OCR_ERRORS = (RuntimeError, ValueError, IndexError, OSError, pytesseract.TesseractError)


def count_pages(pdf_path: Path) -> int:
    """Page count via PyMuPDF, falling back to PyPDF2 when PyMuPDF cannot open the file."""
    try:
        with fitz.open(pdf_path) as doc:
            return doc.page_count
    except RuntimeError as e:
        logger.warning(f"PyMuPDF could not read {pdf_path.name}: {e}. Trying PyPDF2")
        with pdf_path.open("rb") as fh:
            return len(PyPDF2.PdfReader(fh).pages)


def render_first_page(pdf_path: Path, output_dir: Path, dpi: int) -> Path:
    """Render page 1 only to a PNG inside output_dir."""
    image_path = output_dir / f"page_1_{pdf_path.stem}.png"
    with fitz.open(pdf_path) as doc:
        pix = doc.load_page(0).get_pixmap(dpi=dpi)
        pix.save(str(image_path))
    if not image_path.exists():
        raise RuntimeError(f"PDF to image conversion produced no PNG in {output_dir}")
    return image_path


def recognize_text(image_path: Path, lang: str) -> str:
    with Image.open(image_path) as image:
        return pytesseract.image_to_string(image, lang=lang) or ""


def extract_evidence(
    source: Union[str, Path, bytes],
    file_name: Optional[str] = None,
    config: ResolutionConfig = DEFAULT_CONFIG
) -> Evidence:
    """
    Turn an invoice PDF into bounded OCR text from page 1.

    Returns a TOO_LARGE evidence without rendering anything when the document
    has more than config.max_pages pages, and a FAILED evidence on any
    tooling error. Temporary files never outlive the call.
    """
    display_name = file_name or (Path(source).name if not isinstance(source, bytes) else "buffer")
    logger.info(f"Extracting evidence from {display_name}")

    with tempfile.TemporaryDirectory(prefix="evidence-") as work_dir:
        work_dir = Path(work_dir)
        try:
            if isinstance(source, bytes):
                pdf_path = work_dir / "input.pdf"
                pdf_path.write_bytes(source)
            else:
                pdf_path = Path(source)
                if not pdf_path.exists():
                    raise FileNotFoundError(f"Document not found: {pdf_path}")

            page_count = count_pages(pdf_path)
            logger.info(f"PDF page count for {display_name}: {page_count}")

            if page_count > config.max_pages:
                evidence = Evidence.too_large(display_name, page_count, config.max_pages)
                logger.warning(evidence.message)
                return evidence

            image_path = render_first_page(pdf_path, work_dir, config.ocr_dpi)
            text = recognize_text(image_path, config.ocr_lang).strip()

        except (PdfReadError, *OCR_ERRORS) as e:
            logger.error(f"OCR/Conversion error for {display_name}: {e}")
            return Evidence.failed(str(e))

    if not text:
        logger.warning(f"OCR produced no text for {display_name}")
        return Evidence.failed("no text recognized")

    logger.info(f"OCR completed for {display_name} ({len(text)} chars)")
    return Evidence.from_text(text[:config.evidence_char_limit])
