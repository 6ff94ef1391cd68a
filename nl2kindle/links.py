"""Find links to full articles inside newsletter emails."""

import re
from typing import List
from urllib.parse import urlparse

from bs4 import BeautifulSoup

from .config import get_newsletter_domains
from .logger import get_logger

logger = get_logger("links")

BARE_URL_PATTERN = re.compile(r"https?://[^\s<>\"{}|\\^`\[\]]+")


def is_newsletter_url(url: str, domains: List[str] | None = None) -> bool:
    """True when the URL's host is an allow-listed platform or a subdomain of one."""
    try:
        host = (urlparse(url).hostname or "").lower()
    except ValueError:
        return False
    if not host:
        return False
    allowed = domains if domains is not None else get_newsletter_domains()
    return any(host == d or host.endswith(f".{d}") for d in allowed)


def extract_links_from_email(html: str, domains: List[str] | None = None) -> List[str]:
    """Newsletter article URLs in ``html``: anchors first, then bare URLs, deduplicated in order."""
    if not html:
        return []

    candidates: List[str] = []
    soup = BeautifulSoup(html, "html.parser")
    for anchor in soup.find_all("a", href=True):
        candidates.append(anchor["href"].strip())
    candidates.extend(BARE_URL_PATTERN.findall(soup.get_text(" ")))

    links: List[str] = []
    seen = set()
    for url in candidates:
        if url in seen or not is_newsletter_url(url, domains):
            continue
        seen.add(url)
        links.append(url)

    logger.debug(f"Found {len(links)} newsletter links in email")
    return links


__all__ = ["extract_links_from_email", "is_newsletter_url"]
