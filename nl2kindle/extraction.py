"""Metadata extraction, content validation and URL fetching.

Every intake path (relay webhook, SES/S3, direct API, CLI) goes through the
functions in this module, so titles, word counts and validation messages are
the same wherever an article comes from.
"""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import urlparse

import requests
from bs4 import BeautifulSoup

from .errors import ContentFetchError
from .logger import get_logger
from .sanitizer import build_placeholder_document, sanitize_html

logger = get_logger("extraction")

WORDS_PER_MINUTE = 200
MAX_CONTENT_LENGTH = 1_000_000
MIN_WORD_COUNT = 10

DEFAULT_TITLE = "Untitled Article"
DEFAULT_AUTHOR = "Unknown Author"
DEFAULT_SOURCE = "Unknown Source"

REQUEST_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/124.0 Safari/537.36"
    ),
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
}


@dataclass
class ConversionMetadata:
    title: str = DEFAULT_TITLE
    author: str = DEFAULT_AUTHOR
    date: str = ""
    source: str = DEFAULT_SOURCE
    word_count: int = 0
    reading_time: int = 1

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ValidationResult:
    is_valid: bool
    errors: List[str] = field(default_factory=list)


@dataclass
class ExtractedContent:
    html: str
    title: str
    author: str
    source: str
    url: str = ""
    is_placeholder: bool = False


def reading_time(word_count: int) -> int:
    """Minutes at 200 words per minute, never less than one."""
    return max(1, math.ceil(word_count / WORDS_PER_MINUTE))


def _text_of(soup: BeautifulSoup) -> str:
    root = soup.body or soup
    return root.get_text(" ")


def count_words(html: str) -> int:
    return len(_text_of(BeautifulSoup(html or "", "html.parser")).split())


def _meta_content(soup: BeautifulSoup, **attrs) -> Optional[str]:
    tag = soup.find("meta", attrs=attrs)
    if tag is None:
        return None
    content = (tag.get("content") or "").strip()
    return content or None


def _first_text(soup: BeautifulSoup, *selectors: str) -> Optional[str]:
    for selector in selectors:
        element = soup.select_one(selector)
        if element is not None:
            text = element.get_text(" ", strip=True)
            if text:
                return text
    return None


def find_title(soup: BeautifulSoup) -> str:
    if soup.title is not None:
        title = soup.title.get_text(strip=True)
        if title:
            return title
    return _meta_content(soup, property="og:title") or _first_text(soup, "h1") or DEFAULT_TITLE


def find_author(soup: BeautifulSoup) -> str:
    return (
        _meta_content(soup, name="author")
        or _meta_content(soup, property="article:author")
        or _first_text(soup, '[class*="author"]')
        or DEFAULT_AUTHOR
    )


def find_date(soup: BeautifulSoup) -> str:
    meta_date = _meta_content(soup, name="date")
    if meta_date:
        return meta_date
    time_tag = soup.find("time", attrs={"datetime": True})
    if time_tag is not None and time_tag["datetime"].strip():
        return time_tag["datetime"].strip()
    return datetime.now(timezone.utc).isoformat()


def extract_metadata(html: str) -> ConversionMetadata:
    """Derive title, author, date, source and reading statistics from an HTML document."""
    soup = BeautifulSoup(html or "", "html.parser")
    words = len(_text_of(soup).split())
    return ConversionMetadata(
        title=find_title(soup),
        author=find_author(soup),
        date=find_date(soup),
        source=_meta_content(soup, name="source") or DEFAULT_SOURCE,
        word_count=words,
        reading_time=reading_time(words),
    )


def validate_content(html: str | None) -> ValidationResult:
    """Check content is present, not oversized and long enough to be an article.

    All violations are reported together.
    """
    errors: List[str] = []
    content = html or ""

    if not content.strip():
        errors.append("Content is empty")
    else:
        if len(content) > MAX_CONTENT_LENGTH:
            errors.append("Content is too large")
        if count_words(content) < MIN_WORD_COUNT:
            errors.append(f"Content is too short (minimum {MIN_WORD_COUNT} words)")

    return ValidationResult(is_valid=not errors, errors=errors)


def merge_metadata(extracted: ConversionMetadata, overrides: Mapping[str, Any] | None) -> ConversionMetadata:
    """Caller supplied values win over extracted ones; unknown keys are ignored."""
    if not overrides:
        return extracted
    merged = extracted.to_dict()
    aliases = {"wordCount": "word_count", "readingTime": "reading_time"}
    for key, value in overrides.items():
        key = aliases.get(key, key)
        if key in merged and value not in (None, ""):
            merged[key] = value
    return ConversionMetadata(**merged)


def source_from_url(url: str) -> str:
    host = (urlparse(url).hostname or "").lower()
    return host[4:] if host.startswith("www.") else host


def extract_content_from_url(
    url: str,
    *,
    session: Optional[requests.Session] = None,
    timeout: float = 20,
) -> ExtractedContent:
    """Fetch ``url`` and return its sanitized article with basic metadata.

    Raises :class:`ContentFetchError` when the page cannot be fetched.
    """
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.hostname:
        raise ContentFetchError(f"Invalid URL: {url}")

    http = session or requests
    logger.info(f"Fetching article from {url}")
    try:
        response = http.get(url, headers=REQUEST_HEADERS, timeout=timeout)
        response.raise_for_status()
    except requests.RequestException as e:
        raise ContentFetchError(f"Failed to fetch content from URL: {e}") from e

    page = response.text
    soup = BeautifulSoup(page, "html.parser")
    title = find_title(soup)
    author = find_author(soup)

    article = sanitize_html(page, url, placeholder_on_short=True)
    return ExtractedContent(
        html=article,
        title=title,
        author=author,
        source=source_from_url(url),
        url=url,
        is_placeholder=article == build_placeholder_document(url),
    )


__all__ = [
    "ConversionMetadata",
    "ValidationResult",
    "ExtractedContent",
    "reading_time",
    "count_words",
    "extract_metadata",
    "validate_content",
    "merge_metadata",
    "source_from_url",
    "extract_content_from_url",
]
