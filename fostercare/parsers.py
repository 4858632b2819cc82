"""Document parsing utilities.

Referral PDFs are converted to text with pdfplumber (pypdf as a second
backend) and fall back to Tesseract OCR for scanned forms. Carer
spreadsheets (CSV, Excel) are read into row records with pandas.
"""
from __future__ import annotations

import io
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, BinaryIO, Callable

import pandas as pd
import pdfplumber
import pytesseract
from pdf2image import convert_from_bytes
from pypdf import PdfReader

from .config import settings

logger = logging.getLogger(__name__)


class FileType(str, Enum):
    """Supported file types."""
    PDF = "pdf"
    CSV = "csv"
    EXCEL = "excel"
    UNKNOWN = "unknown"


class ParseError(Exception):
    """Raised when a document cannot be converted to text or records."""
    pass


@dataclass
class ParsedDocument:
    """Text of a referral document and how it was obtained."""
    text: str
    file_type: FileType
    metadata: dict[str, Any] = field(default_factory=dict)
    confidence: float = 1.0


_EXTENSIONS = {
    ".pdf": FileType.PDF,
    ".csv": FileType.CSV,
    ".xls": FileType.EXCEL,
    ".xlsx": FileType.EXCEL,
    ".xlsm": FileType.EXCEL,
}

_MAGIC_NUMBERS = (
    (b"%PDF", FileType.PDF),
    (b"PK\x03\x04", FileType.EXCEL),  # xlsx is a zip container
)


def detect_file_type(filename: str, content: bytes | None = None) -> FileType:
    """Detect file type from the extension, then from leading bytes.

    Args:
        filename: Original filename (attachments may have none)
        content: Optional file content for magic number detection
    """
    name = (filename or "").lower()
    for extension, file_type in _EXTENSIONS.items():
        if name.endswith(extension):
            return file_type

    for magic, file_type in _MAGIC_NUMBERS:
        if content and content.startswith(magic):
            return file_type

    return FileType.UNKNOWN


def _confidence_for(text: str) -> float:
    stripped = len(text.strip())
    if stripped > 100:
        return 0.95
    elif stripped > 20:
        return 0.7
    return 0.3


def _pdfplumber_pages(file_obj: BinaryIO) -> list[str]:
    with pdfplumber.open(file_obj) as pdf:
        return [page.extract_text() or "" for page in pdf.pages]


def _pypdf_pages(file_obj: BinaryIO) -> list[str]:
    return [page.extract_text() or "" for page in PdfReader(file_obj).pages]


# Tried in order until one of them can open the file
PDF_TEXT_BACKENDS: list[tuple[str, Callable[[BinaryIO], list[str]]]] = [
    ("pdfplumber", _pdfplumber_pages),
    ("pypdf", _pypdf_pages),
]


def extract_text_from_pdf_native(file_obj: BinaryIO) -> tuple[str, float]:
    """Extract embedded text from a PDF.

    Returns:
        Tuple of (extracted_text, confidence_score); ("", 0.0) if no
        backend could read the file
    """
    for name, read_pages in PDF_TEXT_BACKENDS:
        file_obj.seek(0)
        try:
            pages = read_pages(file_obj)
        except Exception as e:
            logger.warning(f"{name} could not read PDF: {e}")
            continue

        text = "\n\n".join(page for page in pages if page)
        logger.debug(f"{name} read {len(pages)} pages, {len(text)} chars")
        return text, _confidence_for(text)

    logger.error("No PDF backend could read the document")
    return "", 0.0


def _ocr_page(image) -> tuple[str, float | None]:
    """OCR one rendered page; confidence is None when Tesseract reports none."""
    lang = settings.ocr.tesseract_lang
    data = pytesseract.image_to_data(image, lang=lang, output_type=pytesseract.Output.DICT)
    text = pytesseract.image_to_string(image, lang=lang)

    # Tesseract marks non-word boxes with a confidence of -1
    word_confidences = [float(c) for c in data["conf"] if float(c) >= 0]
    if not word_confidences:
        return text, None
    return text, sum(word_confidences) / len(word_confidences) / 100.0


def extract_text_from_pdf_ocr(file_content: bytes) -> tuple[str, float]:
    """Render each PDF page and run Tesseract over it.

    Returns:
        Tuple of (extracted_text, mean page confidence)

    Raises:
        ParseError: If the PDF cannot be rasterised or Tesseract is missing
    """
    try:
        images = convert_from_bytes(file_content, dpi=settings.ocr.dpi, fmt="jpeg")
    except Exception as e:
        logger.error(f"PDF rasterisation failed: {e}")
        raise ParseError(f"OCR processing failed: {e}") from e

    pages: list[str] = []
    confidences: list[float] = []
    for number, image in enumerate(images, start=1):
        try:
            text, confidence = _ocr_page(image)
        except pytesseract.TesseractNotFoundError as e:
            raise ParseError(f"OCR processing failed: {e}") from e
        except Exception as e:
            logger.error(f"OCR failed for page {number}: {e}")
            continue

        if text.strip():
            pages.append(text)
            if confidence is not None:
                confidences.append(confidence)

    text = "\n\n".join(pages)
    confidence = sum(confidences) / len(confidences) if confidences else 0.0
    logger.info(f"OCR read {len(pages)}/{len(images)} pages ({len(text)} chars, confidence {confidence:.2f})")
    return text, confidence


def _needs_ocr(text: str, confidence: float) -> bool:
    return settings.ocr.enabled and (
        confidence < settings.ocr.confidence_threshold
        or len(text.strip()) < settings.extraction.min_text_chars
    )


def parse_pdf(file_obj: BinaryIO, filename: str) -> ParsedDocument:
    """Convert a referral PDF to text, using OCR when embedded text is poor.

    OCR output replaces the embedded text only if it is more confident or
    longer. If OCR is unavailable, whatever embedded text exists is kept.

    Raises:
        ParseError: If no text at all can be produced
    """
    try:
        text, confidence = extract_text_from_pdf_native(file_obj)
        method = "native"

        if _needs_ocr(text, confidence):
            logger.info(f"Embedded text of {filename} is poor (confidence {confidence:.2f}), trying OCR")
            file_obj.seek(0)
            try:
                ocr_text, ocr_confidence = extract_text_from_pdf_ocr(file_obj.read())
            except ParseError as e:
                if not text.strip():
                    raise
                logger.warning(f"OCR unavailable for {filename}, keeping embedded text: {e}")
            else:
                if ocr_confidence > confidence or len(ocr_text) > len(text):
                    text, confidence, method = ocr_text, ocr_confidence, "ocr"

    except ParseError:
        raise
    except Exception as e:
        logger.error(f"PDF parsing failed for {filename}: {e}")
        raise ParseError(f"Failed to parse PDF: {e}") from e

    if not text.strip():
        raise ParseError("No text could be extracted from PDF")

    return ParsedDocument(
        text=text,
        file_type=FileType.PDF,
        confidence=confidence,
        metadata={"filename": filename, "method": method},
    )


def parse_pdf_bytes(content: bytes, filename: str) -> ParsedDocument:
    """Convenience wrapper for in-memory attachments and uploads."""
    if not content:
        raise ParseError(f"Empty document: {filename}")
    return parse_pdf(io.BytesIO(content), filename)


def _records_from_frame(df: pd.DataFrame) -> list[dict[str, Any]]:
    # NaN cells become None so downstream coercion sees "missing"
    df = df.astype(object).where(pd.notna(df), None)
    return df.to_dict("records")


def _read_table(kind: str, read: Callable[[], pd.DataFrame], filename: str) -> list[dict[str, Any]]:
    try:
        df = read()
    except Exception as e:
        logger.error(f"{kind} parsing failed for {filename}: {e}")
        raise ParseError(f"Failed to parse {kind}: {e}") from e

    if df.empty:
        raise ParseError(f"{kind} file {filename} has no rows")

    logger.info(f"Parsed {kind} {filename}: {len(df)} rows, {len(df.columns)} columns")
    return _records_from_frame(df)


def parse_csv(file_obj: BinaryIO, filename: str) -> list[dict[str, Any]]:
    """Read a CSV file into row records.

    Raises:
        ParseError: If the file cannot be read or has no data rows
    """
    return _read_table("CSV", lambda: pd.read_csv(file_obj, encoding="utf-8"), filename)


def parse_excel(file_obj: BinaryIO, filename: str, sheet_name: str | int = 0) -> list[dict[str, Any]]:
    """Read one Excel sheet into row records.

    Raises:
        ParseError: If the sheet cannot be read or has no data rows
    """
    return _read_table(
        "Excel",
        lambda: pd.read_excel(file_obj, sheet_name=sheet_name, engine="openpyxl"),
        filename,
    )


def parse_file(file_obj: BinaryIO, filename: str) -> ParsedDocument | list[dict[str, Any]]:
    """Parse an uploaded file based on its extension.

    Returns:
        ParsedDocument for PDFs, row records for CSV/Excel

    Raises:
        ParseError: If the file type is unsupported or parsing fails
    """
    parsers: dict[FileType, Callable[[BinaryIO, str], Any]] = {
        FileType.PDF: parse_pdf,
        FileType.CSV: parse_csv,
        FileType.EXCEL: parse_excel,
    }
    parser = parsers.get(detect_file_type(filename))
    if parser is None:
        raise ParseError(f"Unsupported file type: {filename}")
    return parser(file_obj, filename)
