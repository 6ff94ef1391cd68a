"""EPUB conversion package.

Turns sanitized article HTML into an EPUB e-book with Calibre's
``ebook-convert`` CLI, falling back to a standalone HTML file when Calibre is
not installed.

High-level usage:

from nl2kindle.email.epub import generate_epub_file
book = generate_epub_file(article_html, metadata)

``book.content`` holds the bytes, ``book.filename`` a name derived from the title.
"""
from .converter import (
    generate_epub_file,
    build_document,
    write_generated_file,
    EbookConvertNotAvailableError,
    EpubConversionError,
    EpubOptions,
    GeneratedFile,
)

__all__ = [
    "generate_epub_file",
    "build_document",
    "write_generated_file",
    "EbookConvertNotAvailableError",
    "EpubConversionError",
    "EpubOptions",
    "GeneratedFile",
]
