"""Text extraction for uploaded files (PDF via PyMuPDF, Markdown, plain text, EPUB)."""

import logging
import re
from dataclasses import dataclass, field
from pathlib import PurePath
from typing import Any

import pymupdf  # PyMuPDF

from clarity.exceptions import ProcessingError, UnsupportedFileTypeError

logger = logging.getLogger(__name__)

# Control characters that Postgres TEXT/VARCHAR cannot store (NUL, etc.)
_ILLEGAL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f]")

SUPPORTED_EXTENSIONS = {
    ".md": "markdown",
    ".markdown": "markdown",
    ".txt": "text",
    ".text": "text",
    ".pdf": "pdf",
    ".epub": "epub",
}


@dataclass
class ExtractedDocument:
    title: str
    content: str
    metadata: dict[str, Any] = field(default_factory=dict)


def file_extension(file_name: str) -> str:
    return PurePath(file_name).suffix.lower()


def file_kind(file_name: str) -> str:
    """Processor kind for a file name, or UnsupportedFileTypeError."""
    extension = file_extension(file_name)
    kind = SUPPORTED_EXTENSIONS.get(extension)
    if kind is None:
        raise UnsupportedFileTypeError(
            f"Unsupported file type: {extension or 'no extension'}. "
            f"Supported types: {', '.join(sorted(SUPPORTED_EXTENSIONS))}",
            fields={"file": "unsupported file type"},
        )
    return kind


def title_from_file_name(file_name: str) -> str:
    """'my-great_notesFile.pdf' -> 'My Great Notes File'."""
    stem = PurePath(file_name).stem
    stem = re.sub(r"[-_]", " ", stem)
    stem = re.sub(r"([a-z])([A-Z])", r"\1 \2", stem)
    words = stem.split()
    return " ".join(word[:1].upper() + word[1:].lower() for word in words) or file_name


def _clean(text: str) -> str:
    return _ILLEGAL_CHARS.sub("", text)


def extract_text_document(file_name: str, data: bytes) -> ExtractedDocument:
    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError as e:
        raise ProcessingError(f"{file_name} is not valid UTF-8 text") from e
    text = _clean(text)
    return ExtractedDocument(
        title=title_from_file_name(file_name),
        content=text,
        metadata={"word_count": len(text.split()), "character_count": len(text)},
    )


def extract_pdf_document(file_name: str, data: bytes) -> ExtractedDocument:
    """Extract text from every page, pages separated by blank lines."""
    try:
        doc = pymupdf.open(stream=data, filetype="pdf")
    except Exception as e:
        raise ProcessingError(f"{file_name} is not a readable PDF: {e}") from e

    try:
        pages = [page.get_text() for page in doc]
        metadata = dict(doc.metadata or {})
        page_count = len(doc)
    finally:
        doc.close()

    text = _clean("\n\n".join(pages)).strip()
    title = (metadata.get("title") or "").strip() or title_from_file_name(file_name)
    return ExtractedDocument(
        title=title,
        content=text,
        metadata={
            "page_count": page_count,
            "author": metadata.get("author") or None,
            "word_count": len(text.split()),
            "character_count": len(text),
        },
    )


def extract_epub_document(file_name: str, data: bytes) -> ExtractedDocument:
    """EPUB files get a reference card; chapter text is not extracted."""
    title = title_from_file_name(file_name)
    size_mb = len(data) / 1024 / 1024
    content = (
        f"# {title}\n\n"
        f"**File Type:** EPUB eBook  \n"
        f"**File Size:** {size_mb:.2f} MB  \n\n"
        "*This is a reference card for an EPUB file. Open it in an eBook reader "
        "to read the full book.*"
    )
    return ExtractedDocument(
        title=title,
        content=content,
        metadata={"content_type": "epub-reference", "is_placeholder": True},
    )


_EXTRACTORS = {
    "markdown": extract_text_document,
    "text": extract_text_document,
    "pdf": extract_pdf_document,
    "epub": extract_epub_document,
}


def extract_document(file_name: str, data: bytes) -> ExtractedDocument:
    """Dispatch on file extension. Raises UnsupportedFileTypeError or ProcessingError."""
    kind = file_kind(file_name)
    document = _EXTRACTORS[kind](file_name, data)
    logger.info("Extracted %d chars from %s (%s)", len(document.content), file_name, kind)
    return document
