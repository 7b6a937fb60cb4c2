"""Plain-text extraction from course material files.

Each extractor returns ``(locator, raw_text)`` segments with 1-based
locators: pages for PDF, slides for PPTX, synthetic pages of N paragraphs
for DOCX, and a single segment for plain text.
"""
from pathlib import Path
from typing import List, Tuple

import structlog

from course_rag import config
from course_rag.rag.models import DocumentType

logger = structlog.get_logger()

Segment = Tuple[int, str]


class ExtractionError(Exception):
    """Raised when a document cannot be parsed."""


def extract(path: Path, document_type: DocumentType) -> List[Segment]:
    """Extract text segments from a document.

    Args:
        path: Path to the document
        document_type: Format of the document

    Returns:
        List of (locator, raw_text) pairs; empty if nothing was extractable

    Raises:
        FileNotFoundError: If the file doesn't exist
        ExtractionError: If the parser fails
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Document not found: {path}")

    handlers = {
        DocumentType.PDF: _extract_pdf,
        DocumentType.DOCX: _extract_docx,
        DocumentType.PPTX: _extract_pptx,
        DocumentType.TXT: _extract_txt,
    }
    handler = handlers[DocumentType(document_type)]

    try:
        segments = handler(path)
    except ExtractionError:
        raise
    except Exception as e:
        raise ExtractionError(f"Failed to extract {path.name}: {e}") from e

    logger.debug(
        "document_extracted",
        path=str(path),
        document_type=DocumentType(document_type).value,
        segment_count=len(segments),
    )
    return segments


def _extract_pdf(path: Path) -> List[Segment]:
    from pypdf import PdfReader

    reader = PdfReader(str(path))
    segments = []
    for page_number, page in enumerate(reader.pages, 1):
        try:
            text = page.extract_text() or ""
        except Exception as e:
            # One unreadable page should not lose the rest of the document
            logger.warning(
                "pdf_page_extraction_failed",
                path=str(path),
                page=page_number,
                error=str(e),
            )
            continue
        if text.strip():
            segments.append((page_number, text))
    return segments


def _extract_docx(path: Path) -> List[Segment]:
    from docx import Document

    per_page = max(config.DOCX_PARAGRAPHS_PER_PAGE, 1)
    document = Document(str(path))

    segments = []
    buffer: List[str] = []
    for paragraph in document.paragraphs:
        text = paragraph.text or ""
        if not text.strip():
            continue
        buffer.append(text)
        if len(buffer) >= per_page:
            segments.append((len(segments) + 1, "\n".join(buffer)))
            buffer = []

    if buffer:
        segments.append((len(segments) + 1, "\n".join(buffer)))
    return segments


def _extract_pptx(path: Path) -> List[Segment]:
    from pptx import Presentation

    presentation = Presentation(str(path))
    segments = []
    for slide_number, slide in enumerate(presentation.slides, 1):
        parts = []
        for shape in slide.shapes:
            if not getattr(shape, "has_text_frame", False):
                continue
            text = shape.text_frame.text
            if text and text.strip():
                parts.append(text)
        if parts:
            segments.append((slide_number, "\n".join(parts)))
    return segments


def _extract_txt(path: Path) -> List[Segment]:
    text = path.read_bytes().decode("utf-8", errors="replace")
    if not text.strip():
        return []
    return [(1, text)]
