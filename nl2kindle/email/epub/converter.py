"""HTML to EPUB conversion using Calibre's ``ebook-convert``.

We shell out to the ``ebook-convert`` CLI rather than build the EPUB container
ourselves: Calibre's output is what Kindle's Send-to-Kindle service digests
most reliably (see: https://manual.calibre-ebook.com/generated/en/ebook-convert.html).

Behaviour:
- The article HTML is wrapped in a standalone document carrying the metadata
  and a Kindle-friendly stylesheet.
- Work happens in a private temporary directory that is always removed.
- The command runs as an argv list with a timeout; a non-zero exit raises
  :class:`EpubConversionError` with the tool's stderr.
- When ``ebook-convert`` is not installed the wrapped HTML itself is returned
  as the artifact, which Kindle also accepts.
"""
from __future__ import annotations

import html as html_lib
import os
import shutil
import subprocess
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

from nl2kindle.extraction import ConversionMetadata
from nl2kindle.file_operations import sanitize_file_name
from nl2kindle.logger import get_logger

logger = get_logger("epub")

EPUB_MEDIA_TYPE = "application/epub+zip"
HTML_MEDIA_TYPE = "text/html"
DEFAULT_TIMEOUT = 120

KINDLE_CSS = """
body {
  font-family: Georgia, serif;
  line-height: 1.6;
  margin: 1em;
  text-align: justify;
}
h1, h2, h3, h4, h5, h6 {
  font-family: Georgia, serif;
  font-weight: bold;
  margin-top: 1.5em;
  margin-bottom: 0.5em;
  page-break-after: avoid;
}
h1 { font-size: 1.8em; text-align: center; margin-bottom: 1em; }
h2 { font-size: 1.4em; }
h3 { font-size: 1.2em; }
p { margin: 0 0 1em 0; text-indent: 0; }
blockquote {
  margin: 1em 2em;
  padding-left: 1em;
  border-left: 3px solid #ccc;
  font-style: italic;
}
img { max-width: 100%; height: auto; display: block; margin: 1em auto; }
pre, code { font-family: "Courier New", monospace; font-size: 0.9em; }
pre { white-space: pre-wrap; margin: 1em 0; }
a { color: #000; text-decoration: underline; }
.article-meta { text-align: center; margin-bottom: 2em; font-size: 0.9em; color: #666; }
.article-meta p { margin: 0.3em 0; }
"""


class EbookConvertNotAvailableError(RuntimeError):
    """Raised when the ebook-convert executable cannot be located."""


class EpubConversionError(RuntimeError):
    """Raised on non-zero ebook-convert exit, timeout or unexpected failures."""

    def __init__(self, message: str, stderr: str = ""):
        super().__init__(message)
        self.stderr = stderr


@dataclass
class EpubOptions:
    language: str = "en"
    publisher: str = "nl2kindle"
    timeout: int = DEFAULT_TIMEOUT
    executable: Optional[str] = None
    extra_args: Sequence[str] | None = None


@dataclass
class GeneratedFile:
    content: bytes
    filename: str
    size: int
    media_type: str = EPUB_MEDIA_TYPE

    @property
    def is_epub(self) -> bool:
        return self.media_type == EPUB_MEDIA_TYPE


_EBOOK_CONVERT_CACHE = {"checked": False, "available": False, "path": None}


def _find_ebook_convert(explicit: Optional[str] = None) -> str:
    if explicit:
        if shutil.which(explicit) is None and not Path(explicit).is_file():
            raise EbookConvertNotAvailableError(f"ebook-convert not found at {explicit}")
        return explicit
    if not _EBOOK_CONVERT_CACHE["checked"]:
        path = shutil.which("ebook-convert")
        _EBOOK_CONVERT_CACHE["checked"] = True
        _EBOOK_CONVERT_CACHE["available"] = path is not None
        _EBOOK_CONVERT_CACHE["path"] = path
    if not _EBOOK_CONVERT_CACHE["available"]:
        raise EbookConvertNotAvailableError(
            "ebook-convert executable not found in PATH. Install Calibre from https://calibre-ebook.com/download"
        )
    return _EBOOK_CONVERT_CACHE["path"]  # type: ignore


def build_document(content_html: str, metadata: ConversionMetadata) -> str:
    """Standalone XHTML-ish document with escaped metadata around the article."""
    title = html_lib.escape(metadata.title or "", quote=True)
    author = html_lib.escape(metadata.author or "", quote=True)
    date = html_lib.escape(metadata.date or "", quote=True)
    source = html_lib.escape(metadata.source or "", quote=True)

    return f"""<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="UTF-8">
  <title>{title}</title>
  <meta name="author" content="{author}">
  <meta name="date" content="{date}">
  <meta name="source" content="{source}">
  <meta name="word-count" content="{metadata.word_count}">
  <meta name="reading-time" content="{metadata.reading_time}">
  <style>{KINDLE_CSS}</style>
</head>
<body>
  <div class="article-meta">
    <h1>{title}</h1>
    <p>By {author}</p>
    <p>{source}</p>
    <p>{metadata.reading_time} min read</p>
  </div>
  <div class="article-content">
{content_html}
  </div>
</body>
</html>
"""


def build_command(
    executable: str,
    input_path: Path,
    output_path: Path,
    metadata: ConversionMetadata,
    options: EpubOptions,
) -> list[str]:
    cmd: list[str] = [
        executable,
        str(input_path),
        str(output_path),
        "--title",
        metadata.title,
        "--authors",
        metadata.author,
        "--language",
        options.language,
        "--publisher",
        options.publisher,
        "--no-default-epub-cover",
        "--disable-font-rescaling",
        "--input-encoding=utf-8",
        "--no-chapters-in-toc",
        "--preserve-cover-aspect-ratio",
    ]
    if options.extra_args:
        cmd.extend(options.extra_args)
    return cmd


def _artifact_name(title: str, suffix: str) -> str:
    stem = sanitize_file_name(title) or "article"
    return f"{stem}_{int(time.time() * 1000)}{suffix}"


def _remove_work_dir(work_dir: str) -> None:
    try:
        shutil.rmtree(work_dir)
    except OSError as e:
        logger.warning(f"Failed to clean up temporary directory {work_dir}: {e}")


def generate_epub_file(
    content_html: str,
    metadata: ConversionMetadata,
    options: Optional[EpubOptions] = None,
) -> GeneratedFile:
    """Convert article HTML into an EPUB (or an HTML fallback).

    Raises
    ------
    EpubConversionError: on ebook-convert failure, timeout or missing output.
    """
    opts = options or EpubOptions()
    document = build_document(content_html, metadata)
    work_dir = tempfile.mkdtemp(prefix="nl2kindle-")

    try:
        input_path = Path(work_dir) / "article.html"
        output_path = Path(work_dir) / "article.epub"
        input_path.write_text(document, encoding="utf-8")

        try:
            executable = _find_ebook_convert(opts.executable)
        except EbookConvertNotAvailableError as e:
            logger.warning(f"{e}; delivering HTML instead of EPUB")
            data = document.encode("utf-8")
            return GeneratedFile(
                content=data,
                filename=_artifact_name(metadata.title, ".html"),
                size=len(data),
                media_type=HTML_MEDIA_TYPE,
            )

        cmd = build_command(executable, input_path, output_path, metadata, opts)
        logger.info("Converting HTML to EPUB", extra={
            "event": "epub_conversion_start",
            "title": metadata.title,
            "cmd": " ".join(cmd),
        })

        try:
            completed = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                check=False,
                timeout=opts.timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise EpubConversionError(f"ebook-convert timed out after {opts.timeout}s") from e
        except OSError as e:
            raise EpubConversionError(f"Failed to execute ebook-convert: {e}") from e

        if completed.returncode != 0:
            stderr = (completed.stderr or "").strip()
            logger.error(
                "ebook-convert failed",
                extra={
                    "event": "epub_conversion_error",
                    "returncode": completed.returncode,
                    "stderr": stderr[-2000:],
                },
            )
            last_line = stderr.splitlines()[-1] if stderr else "no output"
            raise EpubConversionError(
                f"ebook-convert failed with exit code {completed.returncode}: {last_line}",
                stderr=stderr,
            )

        if not output_path.is_file():
            raise EpubConversionError("ebook-convert reported success but output file was not created")

        data = output_path.read_bytes()
        logger.info(
            "EPUB conversion complete",
            extra={"event": "epub_conversion_complete", "size_bytes": len(data)},
        )
        return GeneratedFile(
            content=data,
            filename=_artifact_name(metadata.title, ".epub"),
            size=len(data),
            media_type=EPUB_MEDIA_TYPE,
        )
    finally:
        _remove_work_dir(work_dir)


def write_generated_file(generated: GeneratedFile, output_dir: str | os.PathLike) -> Path:
    out_dir = Path(output_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    path = out_dir / generated.filename
    path.write_bytes(generated.content)
    return path


__all__ = [
    "generate_epub_file",
    "build_document",
    "build_command",
    "write_generated_file",
    "EpubOptions",
    "GeneratedFile",
    "EbookConvertNotAvailableError",
    "EpubConversionError",
    "KINDLE_CSS",
]
