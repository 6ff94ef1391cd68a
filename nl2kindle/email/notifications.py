"""Account notifications: usage warnings and conversion failures.

Notifications are best effort. Every public method logs and swallows send
failures, so a broken SMTP relay never affects a conversion.
"""
from __future__ import annotations

import html as html_lib
from typing import Optional

from nl2kindle.email.send_email import EmailSender
from nl2kindle.logger import get_logger

logger = get_logger("notifications")

BRAND = "Link to Reader"


def _html_paragraphs(text: str) -> str:
    paragraphs = [p.strip() for p in text.split("\n\n") if p.strip()]
    body = "".join(f"<p>{html_lib.escape(p).replace(chr(10), '<br>')}</p>" for p in paragraphs)
    return f'<div style="font-family: Arial, sans-serif; max-width: 600px;">{body}</div>'


class NotificationService:
    def __init__(self, sender: Optional[EmailSender] = None):
        self._sender = sender

    @property
    def sender(self) -> EmailSender:
        if self._sender is None:
            self._sender = EmailSender()
        return self._sender

    def _send(self, recipient: str | None, subject: str, text: str) -> bool:
        if not recipient:
            logger.debug(f"No recipient for notification '{subject}'; skipped")
            return False
        try:
            self.sender.send(subject=subject, body=text, html_body=_html_paragraphs(text), recipients=recipient)
        except Exception as e:  # noqa: BLE001
            logger.error(f"Failed to send notification '{subject}' to {recipient}: {e}")
            return False
        logger.info(f"Notification '{subject}' sent to {recipient}")
        return True

    def send_conversion_failure(self, recipient: str | None, title: str, error: str) -> bool:
        text = (
            f"Hi there,\n\n"
            f'We encountered an issue converting your article "{title or "Unknown Article"}" to EPUB format.\n\n'
            f"Error: {error or 'Unknown error occurred'}\n\n"
            "What to do next:\n"
            "- Try sharing the article again, temporary issues often resolve themselves\n"
            "- Make sure the article content is complete\n"
            "- If the issue persists, reply to this email for support\n\n"
            f"Best regards,\n{BRAND} Team"
        )
        return self._send(recipient, f"{BRAND}: Conversion Failed", text)

    def send_usage_warning(self, recipient: str | None, usage) -> bool:
        percentage = round(usage.articles_used / usage.articles_limit * 100) if usage.articles_limit else 0
        text = (
            f"Hi there,\n\n"
            f"You're approaching your monthly article conversion limit.\n\n"
            f"Usage: {usage.articles_used} of {usage.articles_limit} articles ({percentage}%)\n"
            f"Current plan: {usage.subscription_tier.capitalize()}\n\n"
            f"Your limit resets in {usage.days_until_reset} days.\n\n"
            f"Best regards,\n{BRAND} Team"
        )
        return self._send(recipient, f"{BRAND}: Approaching Monthly Limit", text)

    def send_limit_reached(self, recipient: str | None, usage) -> bool:
        text = (
            f"Hi there,\n\n"
            f"You've reached your monthly limit of {usage.articles_limit} article conversions.\n\n"
            f"Current plan: {usage.subscription_tier.capitalize()}\n"
            f"Limit resets in: {usage.days_until_reset} days\n\n"
            "Upgrade to Pro for 300 articles per month, or wait for the reset.\n\n"
            f"Best regards,\n{BRAND} Team"
        )
        return self._send(recipient, f"{BRAND}: Monthly Limit Reached", text)


__all__ = ["NotificationService"]
