import io
import logging
from typing import Optional

from pypdf import PdfReader

logger = logging.getLogger("backstage.extraction")

PDF = "application/pdf"
TEXT = "text/plain"
ALLOWED_TYPES = (PDF, TEXT)


def pdf_text(data: bytes) -> str:
    reader = PdfReader(io.BytesIO(data))
    pages = []
    for page in reader.pages:
        t = (page.extract_text() or "").strip()
        if t:
            pages.append(t)
    return "\n\n".join(pages)


def extract_text(data: bytes, media_type: str, name: str = "") -> Optional[str]:
    """Plain text for a stored blob, or None when it cannot be read."""
    try:
        if media_type == TEXT:
            return data.decode("utf-8")
        if media_type == PDF:
            return pdf_text(data)
    except Exception as e:
        logger.warning("Text extraction failed for %s (%s): %s", name or "<blob>", media_type, e)
        return None

    logger.warning("No extractor for %s (%s)", name or "<blob>", media_type)
    return None
