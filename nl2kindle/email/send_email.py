"""SMTP email sending for nl2kindle.

Features:
    * Secrets only via environment (.env supported)
    * Plain text + HTML alternative bodies
    * In-memory attachments (EPUB goes out as *application/epub+zip*)
    * Returns the Message-ID so deliveries can be traced

Retrying is left to callers (see ``nl2kindle.retry``): a single call makes one
SMTP attempt and raises on failure so the caller can classify the error.

Environment variables:
    SMTP_HOST / EMAIL_SMTP_SERVER        -> default smtp.gmail.com
    SMTP_PORT / EMAIL_SMTP_PORT          -> default 587
    SMTP_USER / EMAIL_ADDRESS            -> login (required)
    SMTP_PASSWORD / EMAIL_PASSWORD       -> app password (required)
    SMTP_FROM                            -> sender address, defaults to the login
"""

from __future__ import annotations

import os
import smtplib
from dataclasses import dataclass
from email import encoders
from email.mime.base import MIMEBase
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formatdate, make_msgid
from typing import List, Sequence, Union

from dotenv import load_dotenv

from nl2kindle.config import _first_env, _required_env
from nl2kindle.logger import get_logger

logger = get_logger("email")

SMTP_TIMEOUT = 30


@dataclass
class Attachment:
    filename: str
    content: bytes
    content_type: str = "application/octet-stream"


class EmailSender:
    """Single-attempt SMTP sender."""

    def __init__(
        self,
        *,
        smtp_server: str | None = None,
        port: int | None = None,
        username: str | None = None,
        password: str | None = None,
        sender_address: str | None = None,
        use_tls: bool = True,
        timeout: float = SMTP_TIMEOUT,
    ) -> None:
        load_dotenv(os.path.join(os.getcwd(), ".env"))
        self.smtp_server: str = smtp_server or _first_env("SMTP_HOST", "EMAIL_SMTP_SERVER") or "smtp.gmail.com"
        self.port: int = port or int(_first_env("SMTP_PORT", "EMAIL_SMTP_PORT") or 587)
        self.username: str = username or _required_env("SMTP_USER", "EMAIL_ADDRESS")
        self.password: str = password or _required_env("SMTP_PASSWORD", "EMAIL_PASSWORD")
        self.sender_address: str = sender_address or _first_env("SMTP_FROM") or self.username
        self.use_tls = use_tls
        self.timeout = timeout

    def _normalize_recipients(self, recipients: Union[str, Sequence[str] | None]) -> List[str]:
        if recipients is None:
            raise ValueError("No recipients provided.")
        if isinstance(recipients, str):
            return [r.strip() for r in recipients.split(",") if r.strip()]
        return [r.strip() for r in recipients if r and r.strip()]

    def _attach(self, msg: MIMEMultipart, attachments: Sequence[Attachment]) -> None:
        for attachment in attachments:
            maintype, subtype = attachment.content_type.split("/", 1)
            payload = MIMEBase(maintype, subtype)
            payload.set_payload(attachment.content)
            encoders.encode_base64(payload)
            payload.add_header("Content-Disposition", "attachment", filename=attachment.filename)
            msg.attach(payload)
            logger.debug(
                f"Attached {attachment.filename} ({attachment.content_type}, {len(attachment.content)} bytes)"
            )

    def build_message(
        self,
        subject: str,
        body: str,
        to_list: Sequence[str],
        *,
        html_body: str | None = None,
        attachments: Sequence[Attachment] | None = None,
    ) -> MIMEMultipart:
        msg = MIMEMultipart("mixed")
        msg["Subject"] = subject
        msg["From"] = self.sender_address
        msg["To"] = ", ".join(to_list)
        msg["Date"] = formatdate(localtime=False)
        msg["Message-ID"] = make_msgid(domain=self.sender_address.rsplit("@", 1)[-1])

        alternative = MIMEMultipart("alternative")
        alternative.attach(MIMEText(body, "plain", _charset="utf-8"))
        if html_body:
            alternative.attach(MIMEText(html_body, "html", _charset="utf-8"))
        msg.attach(alternative)

        if attachments:
            self._attach(msg, attachments)
        return msg

    def send(
        self,
        subject: str,
        body: str,
        recipients: Union[str, Sequence[str] | None],
        *,
        html_body: str | None = None,
        attachments: Sequence[Attachment] | None = None,
    ) -> str:
        """Send one message and return its Message-ID.

        SMTP and socket errors propagate unchanged.
        """
        to_list = list(dict.fromkeys(self._normalize_recipients(recipients)))
        if not to_list:
            raise ValueError("No valid recipients specified.")

        msg = self.build_message(subject, body, to_list, html_body=html_body, attachments=attachments)

        with smtplib.SMTP(self.smtp_server, self.port, timeout=self.timeout) as server:
            if self.use_tls:
                server.starttls()
            server.login(self.username, self.password)
            server.sendmail(self.sender_address, to_list, msg.as_string())

        logger.info(f"Email '{subject}' sent to {to_list}")
        return msg["Message-ID"]


__all__ = ["Attachment", "EmailSender"]
