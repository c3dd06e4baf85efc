import fitz
import pytest

import exam_simulator.services.pdf_text as pdf_text
from exam_simulator.services.pdf_text import extract_text


def make_pdf(*pages):
    doc = fitz.open()
    for text in pages:
        page = doc.new_page()
        if text:
            page.insert_text((72, 72), text)
    data = doc.tobytes()
    doc.close()
    return data


def test_extract_text_tags_each_page():
    text = extract_text(make_pdf("Q1. What is 2 + 2?", "Q2. What is 3 + 3?"))

    assert text.startswith("--- Page 1 ---")
    assert "What is 2 + 2?" in text
    assert "--- Page 2 ---" in text
    assert text.index("What is 2 + 2?") < text.index("What is 3 + 3?")


def test_pages_without_text_are_kept_and_logged(caplog):
    text = extract_text(make_pdf("Section A", ""))
    assert "--- Page 2 ---" in text
    assert "little or no text" in caplog.text


def test_empty_input_is_rejected():
    with pytest.raises(ValueError):
        extract_text(b"")


def test_non_pdf_is_rejected():
    with pytest.raises(ValueError):
        extract_text(b"this is not a pdf")


def test_pdf_without_any_text_is_rejected():
    with pytest.raises(ValueError, match="No text"):
        extract_text(make_pdf("", ""))


def test_page_limit(monkeypatch):
    monkeypatch.setattr(pdf_text, "MAX_PDF_PAGES", 1)
    with pytest.raises(ValueError, match="too many pages"):
        extract_text(make_pdf("one", "two"))
