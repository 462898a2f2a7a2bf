"""
Text extraction from various document formats.

Supports:
- .txt: UTF-8 text (with fallback for encoding errors)
- .md / .markdown: UTF-8 markdown, kept as-is
- .pdf: Best-effort text extraction per page using PyMuPDF
- .csv: One section per row, rendered as "header: value" lines

Every document is returned as a list of Sections; only PDFs and CSVs
produce more than one.
"""
import csv
import io
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from apps.indexing.chunker import normalize_whitespace

logger = logging.getLogger(__name__)


class ExtractionError(Exception):
    """Raised when text extraction fails."""
    pass


@dataclass
class Section:
    """A unit of extracted text: the whole document, one PDF page or one CSV row."""
    text: str
    page_number: Optional[int] = None  # 1-based
    row_index: Optional[int] = None    # 0-based data row


def decode_text(data: bytes, name: str = "") -> str:
    """Decode UTF-8, dropping undecodable bytes rather than failing."""
    try:
        return data.decode('utf-8-sig')
    except UnicodeDecodeError:
        logger.warning(f"UTF-8 decode failed for {name}, using errors='ignore'")
        return data.decode('utf-8', errors='ignore')


def extract_text_from_txt(data: bytes, name: str = "") -> List[Section]:
    """
    Extract text from a plain text or markdown file.

    The chunker and embedder handle markdown syntax, so it is not converted.
    """
    return [Section(text=decode_text(data, name))]


def extract_pages_from_pdf(data: bytes, name: str = "") -> List[Section]:
    """
    Extract text from each page of a PDF using PyMuPDF.

    This is a best-effort extraction - scanned, image-based PDFs may not
    yield text. Page text is whitespace-normalized.

    Returns:
        One Section per page with non-empty text

    Raises:
        ExtractionError: If the PDF cannot be opened or read
    """
    try:
        import fitz  # PyMuPDF
    except ImportError as e:
        raise ExtractionError("PyMuPDF (fitz) not installed") from e

    sections = []
    try:
        with fitz.open(stream=data, filetype="pdf") as doc:
            for page_num, page in enumerate(doc, 1):
                page_text = normalize_whitespace(page.get_text())
                if page_text:
                    sections.append(Section(text=page_text, page_number=page_num))
    except Exception as e:
        raise ExtractionError(f"Failed to extract text from PDF: {e}") from e

    if not sections:
        logger.warning(f"No text extracted from PDF {name} (may be image-based)")

    return sections


def extract_rows_from_csv(data: bytes, name: str = "") -> List[Section]:
    """
    Extract one Section per CSV data row.

    The header row supplies the labels; each row becomes
    "header: value" lines, skipping empty cells. Rows with no values
    are dropped but still count toward row numbering.

    Raises:
        ExtractionError: If the CSV cannot be parsed
    """
    text = decode_text(data, name)
    sections = []

    try:
        reader = csv.DictReader(io.StringIO(text))
        for row_index, row in enumerate(reader):
            lines = [
                f"{header}: {value.strip()}"
                for header, value in row.items()
                if header and isinstance(value, str) and value.strip()
            ]
            if lines:
                sections.append(Section(text="\n".join(lines), row_index=row_index))
    except csv.Error as e:
        raise ExtractionError(f"Failed to parse CSV: {e}") from e

    logger.debug(f"Extracted {len(sections)} rows from CSV {name}")
    return sections


def extract_sections(name: str, data: bytes, content_type: Optional[str] = None) -> List[Section]:
    """
    Extract text sections from a document.

    Determines the extraction method based on file extension or content type.

    Args:
        name: Original file name
        data: Raw file contents
        content_type: Optional MIME type hint

    Returns:
        Extracted sections (may be empty for text-less PDFs or CSVs)

    Raises:
        ExtractionError: If extraction fails or format not supported
    """
    suffix = Path(name).suffix.lower()

    logger.info(f"Extracting text from {name} (suffix={suffix}, content_type={content_type})")

    if suffix == '.pdf' or content_type == 'application/pdf':
        return extract_pages_from_pdf(data, name)

    elif suffix == '.csv' or content_type == 'text/csv':
        return extract_rows_from_csv(data, name)

    elif suffix in ('.txt', '.md', '.markdown') or content_type in (
        'text/plain', 'text/markdown', 'text/x-markdown'
    ):
        return extract_text_from_txt(data, name)

    else:
        raise ExtractionError(f"Unsupported file format: {suffix}")
