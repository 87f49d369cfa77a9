"""
PDF intake checks, run before any model call.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

import fitz  # PyMuPDF

logger = logging.getLogger(__name__)


class DocumentIntakeError(ValueError):
    """Raised when an input file cannot be processed as a PDF."""


@dataclass
class PdfInfo:
    path: Path
    file_name: str
    file_size: int
    page_count: int
    title: Optional[str] = None


def inspect_pdf(path: Union[str, Path]) -> PdfInfo:
    """
    Open a PDF and collect basic metadata.

    Raises:
        DocumentIntakeError: Missing, non-PDF, unreadable, encrypted or empty file
    """
    path = Path(path)
    if not path.exists() or not path.is_file():
        raise DocumentIntakeError(f"PDF file not found: {path}")
    if path.suffix.lower() != ".pdf":
        raise DocumentIntakeError(f"Not a PDF file: {path.name}")

    file_size = path.stat().st_size
    if file_size == 0:
        raise DocumentIntakeError(f"PDF file is empty: {path.name}")

    try:
        with fitz.open(str(path)) as doc:
            if doc.needs_pass:
                raise DocumentIntakeError(f"PDF is encrypted: {path.name}")
            page_count = doc.page_count
            title = (doc.metadata or {}).get("title") or None
    except DocumentIntakeError:
        raise
    except (RuntimeError, ValueError) as e:
        # fitz.FileDataError is a RuntimeError subclass
        raise DocumentIntakeError(f"Unreadable PDF {path.name}: {e}") from e

    if page_count == 0:
        raise DocumentIntakeError(f"PDF has no pages: {path.name}")

    logger.info(f"PDF intake OK: {path.name} ({page_count} pages, {file_size} bytes)")
    return PdfInfo(
        path=path,
        file_name=path.name,
        file_size=file_size,
        page_count=page_count,
        title=title,
    )
