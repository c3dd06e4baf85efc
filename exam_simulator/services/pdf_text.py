"""
services/pdf_text.py

PDF exam paper -> plain text for the extraction prompts.

Public API:
  - extract_text(file_bytes) -> str : page-tagged text of the whole document

Scanned pages (little or no text layer) are kept with whatever text they
have and reported in the log; no OCR is attempted.
"""

import logging
from typing import List

import fitz  # PyMuPDF

from config import MAX_PDF_PAGES, MIN_CHARS_PER_PAGE

logger = logging.getLogger(__name__)


def extract_text(file_bytes: bytes) -> str:
    """
    PDF bytes -> text, one "--- Page N ---" block per page.

    Raises:
        ValueError: empty input, unreadable PDF, too many pages, or no text at all.
    """
    if not file_bytes:
        raise ValueError("The PDF file is empty.")

    doc = None
    try:
        try:
            doc = fitz.open(stream=file_bytes, filetype="pdf")
        except Exception as e:
            logger.error(f"extract_text: could not open PDF - {e}")
            raise ValueError("The file could not be read as a PDF.") from e

        page_count = len(doc)
        if page_count > MAX_PDF_PAGES:
            raise ValueError(
                f"The PDF has too many pages ({page_count}). At most {MAX_PDF_PAGES} pages are supported."
            )

        blocks: List[str] = []
        low_text_pages: List[int] = []
        has_text = False
        for i in range(page_count):
            page_text = doc.load_page(i).get_text().strip()
            has_text = has_text or bool(page_text)
            if len(page_text) < MIN_CHARS_PER_PAGE:
                low_text_pages.append(i + 1)
            blocks.append(f"--- Page {i + 1} ---\n{page_text}")

        if low_text_pages:
            logger.warning(f"extract_text: little or no text on pages {low_text_pages} (scanned?)")

        text = "\n\n".join(blocks).strip()
        if not has_text:
            raise ValueError("No text could be extracted from the PDF.")

        logger.info(f"extract_text: {page_count} page(s), {len(text)} chars")
        return text
    finally:
        if doc is not None:
            doc.close()
