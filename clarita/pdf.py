import logging
import re
from dataclasses import dataclass
from typing import List

import fitz  # PyMuPDF

from clarita.errors import ValidationError

logger = logging.getLogger(__name__)

MIN_PAGE_CHARS = 20

_INLINE_SPACE = re.compile(r"[ \t\r\f\v]+")
_EXTRA_NEWLINES = re.compile(r"\n{3,}")


@dataclass
class PdfText:
    text_by_page: List[str]
    page_count: int
    total_chars: int
    pages_with_text: int


def normalize_whitespace(text: str) -> str:
    text = text.replace("\x00", "")
    text = _INLINE_SPACE.sub(" ", text)
    text = "\n".join(line.strip() for line in text.split("\n"))
    return _EXTRA_NEWLINES.sub("\n\n", text).strip()


def extract_pdf_text(data: bytes) -> PdfText:
    """Extract normalized text for every page of a PDF document."""
    if not data:
        raise ValidationError("Uploaded file is empty")

    try:
        with fitz.open(stream=data, filetype="pdf") as doc:
            if doc.needs_pass:
                raise ValidationError("Password-protected PDFs are not supported")
            text_by_page = [normalize_whitespace(page.get_text("text") or "") for page in doc]
    except RuntimeError as exc:
        # PyMuPDF raises FileDataError (a RuntimeError) for corrupt input
        logger.warning("PDF extraction failed: %s", exc)
        raise ValidationError("Could not read PDF file") from exc

    if not text_by_page:
        raise ValidationError("PDF has no pages")

    total_chars = sum(len(text) for text in text_by_page)
    pages_with_text = sum(1 for text in text_by_page if len(text) >= MIN_PAGE_CHARS)
    logger.info(
        "Extracted PDF text (pages=%s, pages_with_text=%s, chars=%s)",
        len(text_by_page),
        pages_with_text,
        total_chars,
    )
    return PdfText(
        text_by_page=text_by_page,
        page_count=len(text_by_page),
        total_chars=total_chars,
        pages_with_text=pages_with_text,
    )
