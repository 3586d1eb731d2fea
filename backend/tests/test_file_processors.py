"""Tests for text extraction from uploaded files."""

import pymupdf
import pytest

from clarity.exceptions import ProcessingError, UnsupportedFileTypeError
from clarity.services.file_processors import (
    extract_document,
    file_kind,
    title_from_file_name,
)
from clarity.services.storage import sanitize_file_name


class TestFileKind:
    @pytest.mark.parametrize(
        ("file_name", "kind"),
        [
            ("notes.md", "markdown"),
            ("NOTES.MARKDOWN", "markdown"),
            ("log.txt", "text"),
            ("paper.pdf", "pdf"),
            ("book.epub", "epub"),
        ],
    )
    def test_supported(self, file_name, kind):
        assert file_kind(file_name) == kind

    @pytest.mark.parametrize("file_name", ["image.png", "archive.tar.gz", "README"])
    def test_unsupported(self, file_name):
        with pytest.raises(UnsupportedFileTypeError):
            file_kind(file_name)


class TestExtraction:
    def test_markdown_keeps_text(self):
        document = extract_document("my-notes.md", "# Heading\n\nBody with [[Link]]".encode("utf-8"))
        assert document.title == "My Notes"
        assert document.content == "# Heading\n\nBody with [[Link]]"
        assert document.metadata["word_count"] == 5

    def test_control_characters_are_stripped(self):
        document = extract_document("raw.txt", b"a\x00b\x07c\nd")
        assert document.content == "abc\nd"

    def test_invalid_utf8(self):
        with pytest.raises(ProcessingError):
            extract_document("broken.txt", b"\xff\xfe\xfa")

    def test_pdf_text(self):
        pdf = pymupdf.open()
        page = pdf.new_page()
        page.insert_text((72, 72), "Hello from a PDF")
        data = pdf.tobytes()
        pdf.close()

        document = extract_document("report.pdf", data)

        assert "Hello from a PDF" in document.content
        assert document.metadata["page_count"] == 1

    def test_corrupt_pdf(self):
        with pytest.raises(ProcessingError):
            extract_document("bad.pdf", b"not a pdf at all")

    def test_epub_reference_card(self):
        document = extract_document("war_and_peace.epub", b"x" * 2048)
        assert document.title == "War And Peace"
        assert document.content.startswith("# War And Peace")
        assert document.metadata["is_placeholder"] is True


class TestNames:
    @pytest.mark.parametrize(
        ("file_name", "title"),
        [
            ("my-great_notes.pdf", "My Great Notes"),
            ("camelCaseFile.md", "Camel Case File"),
            ("plain.txt", "Plain"),
        ],
    )
    def test_title_from_file_name(self, file_name, title):
        assert title_from_file_name(file_name) == title

    def test_sanitize_file_name(self):
        assert sanitize_file_name('a/b\\c:d*e?f"g<h>i|j.md') == "a_b_c_d_e_f_g_h_i_j.md"
        assert len(sanitize_file_name("x" * 300 + ".md")) == 255
