"""Kindle delivery.

Responsibilities:
    * Emailing a generated book to a user's Send-to-Kindle address.
    * Retrying transient SMTP failures with exponential backoff.
    * Bounding the whole delivery by a deadline.
    * Stamping ``delivered_at`` on the conversion once Amazon accepted the mail.

Terminal failures are reported as a :class:`DeliveryResult` with a category
(``timeout``, ``authentication``, ``network``, ``generic`` or ``deadline``) and
a message fit for showing to the user; nothing is raised to the caller.
"""
from __future__ import annotations

import html as html_lib
import re
import smtplib
import socket
import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Tuple

from nl2kindle.email.epub.converter import EPUB_MEDIA_TYPE, HTML_MEDIA_TYPE
from nl2kindle.email.send_email import Attachment, EmailSender
from nl2kindle.file_operations import sanitize_file_name
from nl2kindle.logger import get_logger
from nl2kindle.retry import exponential_backoff, retry_with_backoff

logger = get_logger("kindle")

BRAND = "Link to Reader"
KINDLE_EMAIL_PATTERN = re.compile(r"^[A-Za-z0-9._%+-]+@kindle\.com$")

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_DEADLINE_SECONDS = 600

DEADLINE_MESSAGE = "Delivery timeout: Email delivery exceeded 10 minute limit"
TIMEOUT_MESSAGE = "Email delivery took too long. Please check your Kindle email address and try again."
AUTH_MESSAGE = "Email authentication failed. Please contact support."
NETWORK_MESSAGE = "Network error occurred. Please try again in a few minutes."


@dataclass
class DeliveryResult:
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None
    category: Optional[str] = None


def validate_kindle_email(address: str | None) -> bool:
    """Accept only Send-to-Kindle addresses (``...@kindle.com``)."""
    return bool(address) and KINDLE_EMAIL_PATTERN.match(address.strip()) is not None


def classify_delivery_error(error: BaseException) -> Tuple[str, str]:
    """Map a transport exception to ``(category, user_message)``."""
    text = str(error)
    lowered = text.lower()
    if isinstance(error, (socket.timeout, TimeoutError)) or "timeout" in lowered or "timed out" in lowered:
        return "timeout", TIMEOUT_MESSAGE
    if isinstance(error, smtplib.SMTPAuthenticationError) or "authentication" in lowered:
        return "authentication", AUTH_MESSAGE
    if isinstance(
        error, (smtplib.SMTPConnectError, smtplib.SMTPServerDisconnected, ConnectionError, socket.gaierror)
    ) or "network" in lowered:
        return "network", NETWORK_MESSAGE
    return "generic", text or "Delivery failed"


def _attachment_for(file_ref: str, title: str) -> Attachment:
    path = Path(file_ref)
    stem = sanitize_file_name(title) or "article"
    if path.suffix.lower() == ".html":
        return Attachment(filename=f"{stem}.html", content=path.read_bytes(), content_type=HTML_MEDIA_TYPE)
    return Attachment(filename=f"{stem}.epub", content=path.read_bytes(), content_type=EPUB_MEDIA_TYPE)


def _bodies(title: str) -> Tuple[str, str]:
    text = (
        f'Your article "{title}" has been converted and is ready to read on your Kindle.\n\n'
        f"Enjoy distraction-free reading!\n\n-- {BRAND}"
    )
    safe_title = html_lib.escape(title)
    html_body = (
        '<div style="font-family: Georgia, serif; max-width: 600px;">'
        "<h2>Your article is ready!</h2>"
        f"<p>We've converted \"<strong>{safe_title}</strong>\" and it's attached to this email.</p>"
        "<p>The file will automatically appear in your Kindle library shortly.</p>"
        f"<p>Enjoy distraction-free reading!<br><strong>{BRAND}</strong></p>"
        "</div>"
    )
    return text, html_body


class KindleDeliveryService:
    """Sends books to Kindle with retries and an overall deadline.

    ``store`` is anything with ``mark_delivered(conversion_id)`` and
    ``record_delivery_failure(conversion_id, error)``; it is optional so the
    CLI can deliver files that were never persisted.
    """

    def __init__(
        self,
        sender: Optional[EmailSender] = None,
        store=None,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        deadline_seconds: float = DEFAULT_DEADLINE_SECONDS,
        backoff: Callable[[int], float] = exponential_backoff,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        self._sender = sender
        self.store = store
        self.max_attempts = max_attempts
        self.deadline_seconds = deadline_seconds
        self.backoff = backoff
        self._sleep = sleep

    @property
    def sender(self) -> EmailSender:
        if self._sender is None:
            self._sender = EmailSender()
        return self._sender

    def send_to_kindle(
        self,
        file_ref: str,
        kindle_email: str,
        title: str,
        conversion_id: Optional[str] = None,
    ) -> DeliveryResult:
        if not validate_kindle_email(kindle_email):
            logger.error(f"Refusing delivery to non-Kindle address {kindle_email!r}")
            return DeliveryResult(False, error="Invalid Kindle email address", category="validation")

        cancelled = threading.Event()
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="kindle-delivery")
        future = executor.submit(self._deliver_with_retries, file_ref, kindle_email, title, cancelled)

        try:
            message_id = future.result(timeout=self.deadline_seconds)
        except FuturesTimeoutError:
            cancelled.set()
            logger.error(f"Kindle delivery of '{title}' exceeded {self.deadline_seconds}s deadline")
            result = DeliveryResult(False, error=DEADLINE_MESSAGE, category="deadline")
        except Exception as e:
            category, message = classify_delivery_error(e)
            logger.error(f"Kindle delivery of '{title}' failed ({category}): {e}")
            result = DeliveryResult(False, error=message, category=category)
        else:
            logger.info(f"Kindle delivery successful for '{title}': {message_id}")
            result = DeliveryResult(True, message_id=message_id)
        finally:
            executor.shutdown(wait=False)

        if conversion_id:
            self._record(conversion_id, result)
        return result

    def _deliver_with_retries(self, file_ref: str, kindle_email: str, title: str, cancelled: threading.Event) -> str:
        sleep = self._sleep or cancelled.wait
        text_body, html_body = _bodies(title)

        def attempt() -> str:
            if cancelled.is_set():
                raise TimeoutError("Delivery cancelled after deadline")
            return self.sender.send(
                subject=f"{BRAND}: {title}",
                body=text_body,
                html_body=html_body,
                recipients=kindle_email,
                attachments=[_attachment_for(file_ref, title)],
            )

        return retry_with_backoff(
            attempt,
            max_attempts=self.max_attempts,
            backoff=self.backoff,
            should_continue=lambda: not cancelled.is_set(),
            sleep=sleep,
            description=f"Kindle delivery to {kindle_email}",
        )

    def _record(self, conversion_id: str, result: DeliveryResult) -> None:
        if self.store is None:
            return
        try:
            if result.success:
                self.store.mark_delivered(conversion_id)
            else:
                self.store.record_delivery_failure(conversion_id, result.error or "Delivery failed")
        except Exception as e:  # noqa: BLE001
            # The email outcome stands even if bookkeeping fails
            logger.warning(f"Failed to update delivery status for {conversion_id}: {e}")


__all__ = [
    "DeliveryResult",
    "KindleDeliveryService",
    "classify_delivery_error",
    "validate_kindle_email",
    "KINDLE_EMAIL_PATTERN",
]
