"""Article isolation and Kindle-safe HTML cleanup.

Sanitizing happens in two passes. The first isolates the article body using
the strategy registered for the URL's host (falling back to a generic
strategy and finally to a stripped-down ``<body>``). The second rewrites the
fragment into markup Kindle renders well: no scripts or embeds, no styling
attributes, paragraphs instead of layout divs.

Strategies come from ``config/platforms.yaml``; code can add more with
:func:`register_strategy`.
"""

from __future__ import annotations

import html as html_lib
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional
from urllib.parse import urlparse

from bs4 import BeautifulSoup, Comment, NavigableString, Tag

from .config import get_strategy_definitions
from .logger import get_logger

logger = get_logger("sanitizer")

MIN_SELECTOR_CONTENT_LENGTH = 200
MIN_EXTRACTED_TEXT_LENGTH = 100

NON_CONTENT_TAGS = ["script", "style", "noscript", "template", "link", "meta"]
EMBED_TAGS = ["svg", "canvas", "video", "audio", "iframe", "object", "embed"]
CHROME_TAGS = ["nav", "header", "footer", "aside", "form", "button", "input", "select", "textarea"]

BLOCK_TAGS = {
    "address", "article", "aside", "blockquote", "dd", "div", "dl", "dt", "figcaption",
    "figure", "footer", "form", "h1", "h2", "h3", "h4", "h5", "h6", "header", "hr", "li",
    "main", "nav", "ol", "p", "pre", "section", "table", "tbody", "td", "tfoot", "th",
    "thead", "tr", "ul",
}

NOISE_CLASS_PATTERN = re.compile(
    r"^(ads?|advert\w*|ad-[\w-]+|sponsor[\w-]*|subscribe[\w-]*|subscription[\w-]*|"
    r"paywall[\w-]*|share[\w-]*|social[\w-]*|comments?|comment-[\w-]+|related[\w-]*|"
    r"newsletter-signup|nav|navbar|navigation|menu|sidebar|site-header|site-footer|"
    r"cookie[\w-]*|popup|modal)$",
    re.IGNORECASE,
)

DROPPED_ATTRIBUTES = {"style", "class", "id", "role"}
DROPPED_ATTRIBUTE_PREFIXES = ("data-", "aria-", "on")


@dataclass
class SanitizerStrategy:
    """Host-matched list of CSS selectors locating the article body."""

    name: str
    hosts: List[str] = field(default_factory=list)
    selectors: List[str] = field(default_factory=list)

    def matches(self, host: str) -> bool:
        host = host.lower()
        return any(host == h or host.endswith(f".{h}") for h in self.hosts)

    def extract(self, soup: BeautifulSoup, min_length: int = MIN_SELECTOR_CONTENT_LENGTH) -> Optional[str]:
        for selector in self.selectors:
            try:
                element = soup.select_one(selector)
            except ValueError as e:
                logger.warning(f"Strategy {self.name}: bad selector {selector!r}: {e}")
                continue
            if element is None:
                continue
            content = element.decode_contents()
            if len(content.strip()) > min_length:
                logger.debug(f"Strategy {self.name} matched selector {selector!r}")
                return content
        return None


_registered: Dict[str, SanitizerStrategy] = {}


def register_strategy(strategy: SanitizerStrategy) -> None:
    """Add or replace a strategy; code-registered strategies win over the YAML file."""
    _registered[strategy.name] = strategy


def get_strategies() -> Dict[str, SanitizerStrategy]:
    strategies = {
        name: SanitizerStrategy(
            name=name,
            hosts=[h.lower() for h in (definition or {}).get("hosts", []) or []],
            selectors=list((definition or {}).get("selectors", []) or []),
        )
        for name, definition in get_strategy_definitions().items()
    }
    strategies.update(_registered)
    if "generic" not in strategies:
        strategies["generic"] = SanitizerStrategy(name="generic", selectors=["article", "main"])
    return strategies


def select_strategy(url: str | None) -> SanitizerStrategy:
    strategies = get_strategies()
    host = (urlparse(url).hostname or "") if url else ""
    if host:
        for strategy in strategies.values():
            if strategy.name != "generic" and strategy.matches(host):
                return strategy
    return strategies["generic"]


def _decompose_all(elements) -> None:
    for element in list(elements):
        if getattr(element, "decomposed", False):
            continue
        element.decompose()


def _body_fallback(soup: BeautifulSoup) -> str:
    body = soup.body or soup
    _decompose_all(body.find_all(CHROME_TAGS))
    noisy = []
    for tag in body.find_all(True):
        if getattr(tag, "decomposed", False):
            continue
        if any(NOISE_CLASS_PATTERN.match(c) for c in tag.get("class") or []):
            noisy.append(tag)
    _decompose_all(noisy)
    return body.decode_contents()


def _is_tracking_pixel(img: Tag) -> bool:
    return str(img.get("width", "")).strip() == "1" or str(img.get("height", "")).strip() == "1"


def _keep_attribute(name: str) -> bool:
    name = name.lower()
    return name not in DROPPED_ATTRIBUTES and not name.startswith(DROPPED_ATTRIBUTE_PREFIXES)


def make_kindle_safe(fragment: str) -> str:
    """Rewrite an HTML fragment into markup suitable for e-readers."""
    soup = BeautifulSoup(fragment or "", "html.parser")

    _decompose_all(soup.find_all(NON_CONTENT_TAGS + EMBED_TAGS))
    _decompose_all(img for img in soup.find_all("img") if _is_tracking_pixel(img))
    for comment in soup.find_all(string=lambda s: isinstance(s, Comment)):
        comment.extract()

    for tag in soup.find_all(True):
        tag.attrs = {k: v for k, v in tag.attrs.items() if _keep_attribute(k)}

    # innermost first, so an outer div sees its children already converted
    for div in reversed(soup.find_all("div")):
        if any(isinstance(child, Tag) and child.name in BLOCK_TAGS for child in div.children):
            div.unwrap()
        else:
            div.name = "p"

    for text in soup.find_all(string=True):
        if not isinstance(text, NavigableString) or text.find_parent("pre") is not None:
            continue
        collapsed = re.sub(r"\s+", " ", str(text))
        if collapsed != str(text):
            text.replace_with(collapsed)

    _decompose_all(
        tag for tag in soup.find_all(["p", "div"])
        if not tag.get_text(strip=True) and tag.find("img") is None
    )

    return str(soup).strip()


def build_placeholder_document(url: str | None = None) -> str:
    """Readable stand-in used when nothing article-like could be extracted."""
    source = ""
    if url:
        escaped = html_lib.escape(url, quote=True)
        source = f'<p>Original article: <a href="{escaped}">{escaped}</a></p>'
    return (
        "<h1>Content could not be fully extracted</h1>"
        "<p>We were unable to extract the full content of this article. This usually happens because:</p>"
        "<ul>"
        "<li>The article is behind a paywall or requires a subscription</li>"
        "<li>The URL is not publicly accessible</li>"
        "<li>The page structure is not supported yet</li>"
        "</ul>"
        f"{source}"
    )


def sanitize_html(
    html: str,
    url: str | None = None,
    *,
    min_content_length: int = MIN_SELECTOR_CONTENT_LENGTH,
    placeholder_on_short: bool = False,
) -> str:
    """Isolate the article in ``html`` and return Kindle-safe markup.

    With ``placeholder_on_short`` a result with under 100 characters of text
    is replaced by :func:`build_placeholder_document`.
    """
    soup = BeautifulSoup(html or "", "html.parser")
    _decompose_all(soup.find_all(NON_CONTENT_TAGS))

    strategy = select_strategy(url)
    content = strategy.extract(soup, min_content_length)
    if content is None and strategy.name != "generic":
        content = get_strategies()["generic"].extract(soup, min_content_length)
    if content is None:
        logger.debug(f"No selector matched for {url or 'inline content'}; using body fallback")
        content = _body_fallback(soup)

    cleaned = make_kindle_safe(content)

    if placeholder_on_short:
        text_length = len(BeautifulSoup(cleaned, "html.parser").get_text(" ", strip=True))
        if text_length < MIN_EXTRACTED_TEXT_LENGTH:
            logger.warning(f"Extracted content too short ({text_length} chars) for {url}; using placeholder")
            return build_placeholder_document(url)

    return cleaned


__all__ = [
    "SanitizerStrategy",
    "register_strategy",
    "get_strategies",
    "select_strategy",
    "make_kindle_safe",
    "build_placeholder_document",
    "sanitize_html",
]
