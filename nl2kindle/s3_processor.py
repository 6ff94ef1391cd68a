"""Inbound email stored by SES in S3.

SES writes each received message to the bucket (object key = SES message id)
and notifies us through SNS. This module fetches and parses the raw MIME,
validates that it is worth processing, and deletes it afterwards so email
content is never kept.
"""

import html as html_lib
import re
from dataclasses import dataclass, field
from datetime import datetime
from email import message_from_bytes, policy
from email.utils import parseaddr, parsedate_to_datetime
from typing import Any, List, Mapping, Optional
from urllib.parse import unquote_plus

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from .logger import get_logger

logger = get_logger("s3_processor")

TRACKING_PIXEL_PATTERNS = [
    re.compile(r"<img[^>]*\bheight=[\"']?1[\"']?[^>]*>", re.IGNORECASE),
    re.compile(r"<img[^>]*\bwidth=[\"']?1[\"']?[^>]*>", re.IGNORECASE),
    re.compile(r"<!-- tracking-pixel -->.*?<!-- /tracking-pixel -->", re.IGNORECASE | re.DOTALL),
]


@dataclass
class S3EmailLocation:
    bucket: str
    key: str


@dataclass
class InboundEmail:
    message_id: str
    sender: str
    recipient: str
    subject: str
    html_body: str
    text_body: str = ""
    date: Optional[datetime] = None
    attachments: List[str] = field(default_factory=list)


def get_s3_client(region: str | None = None):
    config = Config(connect_timeout=10, read_timeout=30, retries={"max_attempts": 3})
    return boto3.client("s3", region_name=region, config=config)


def text_to_html(text: str) -> str:
    paragraphs = [p for p in re.split(r"\n\s*\n+", text) if p.strip()]
    return "\n".join(f"<p>{html_lib.escape(p.strip()).replace(chr(10), '<br>')}</p>" for p in paragraphs)


def clean_html_content(html: str) -> str:
    for pattern in TRACKING_PIXEL_PATTERNS:
        html = pattern.sub("", html)
    html = re.sub(r"\s+", " ", html)
    html = re.sub(r">\s+<", "><", html)
    return html.strip()


def _address(header_value: str | None) -> str:
    return parseaddr(str(header_value or ""))[1].strip().lower()


class S3EmailProcessor:
    def __init__(self, bucket: str | None, client=None, region: str | None = None):
        self.bucket = bucket
        self.region = region
        self._client = client

    @property
    def client(self):
        if self._client is None:
            self._client = get_s3_client(self.region)
        return self._client

    def fetch_and_parse_email(self, location: S3EmailLocation) -> Optional[InboundEmail]:
        """Download and parse one stored message; None when it cannot be read."""
        logger.info(f"Fetching email from S3: {location.bucket}/{location.key}")
        try:
            response = self.client.get_object(Bucket=location.bucket, Key=location.key)
            raw = response["Body"].read()
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Failed to fetch email {location.key}: {e}")
            return None
        if not raw:
            logger.error(f"Email object {location.key} is empty")
            return None
        try:
            return self.parse_email(raw, location.key)
        except (LookupError, ValueError, UnicodeError) as e:
            logger.error(f"Failed to parse email {location.key}: {e}")
            return None

    def parse_email(self, raw: bytes, key: str) -> InboundEmail:
        message = message_from_bytes(raw, policy=policy.default)

        html_part = message.get_body(preferencelist=("html",))
        text_part = message.get_body(preferencelist=("plain",))
        html_body = html_part.get_content() if html_part is not None else ""
        text_body = text_part.get_content() if text_part is not None else ""
        if not html_body and text_body:
            html_body = text_to_html(text_body)

        date = None
        if message["Date"]:
            try:
                date = parsedate_to_datetime(str(message["Date"]))
            except (TypeError, ValueError):
                logger.debug(f"Unparseable Date header on {key}: {message['Date']}")

        attachments = [part.get_filename() or "unnamed" for part in message.iter_attachments()]
        message_id = key.rsplit("/", 1)[-1]
        if message_id.endswith(".eml"):
            message_id = message_id[: -len(".eml")]

        return InboundEmail(
            message_id=message_id,
            sender=_address(message["From"]),
            recipient=_address(message["To"]),
            subject=str(message["Subject"] or "No Subject"),
            html_body=clean_html_content(html_body),
            text_body=text_body,
            date=date,
            attachments=attachments,
        )

    def delete_email(self, location: S3EmailLocation) -> bool:
        """Remove the stored message. Failures are logged, never raised."""
        try:
            self.client.delete_object(Bucket=location.bucket, Key=location.key)
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Failed to delete email {location.key} from S3: {e}")
            return False
        logger.info(f"Deleted email from S3: {location.key}")
        return True

    def location_from_s3_event(self, event: Mapping[str, Any]) -> Optional[S3EmailLocation]:
        """Location from an S3 ``ObjectCreated`` event (first record)."""
        records = event.get("Records") or []
        if not records:
            return None
        s3 = records[0].get("s3") or {}
        bucket = (s3.get("bucket") or {}).get("name") or self.bucket
        key = (s3.get("object") or {}).get("key")
        if not bucket or not key:
            logger.error("S3 event record without bucket or key")
            return None
        return S3EmailLocation(bucket=bucket, key=unquote_plus(key))

    def location_from_ses_event(self, event: Mapping[str, Any]) -> Optional[S3EmailLocation]:
        """Location from a legacy SES receipt notification; SES keys objects by message id."""
        mail = event.get("mail") or event.get("Mail") or {}
        message_id = mail.get("messageId") or mail.get("MessageId")
        if not message_id:
            logger.error("No messageId found in SES event")
            return None
        if not self.bucket:
            logger.error("S3_EMAIL_BUCKET not configured; cannot locate SES message")
            return None
        return S3EmailLocation(bucket=self.bucket, key=message_id)


def validate_email_for_processing(email: InboundEmail, inbound_domain: str) -> List[str]:
    """Reasons the message should be dropped; empty when it is fine to process."""
    errors: List[str] = []
    if not email.html_body and not email.text_body:
        errors.append("Email has no content")
    if not email.recipient.endswith(f"@{inbound_domain.lower()}"):
        errors.append(f"Email not addressed to {inbound_domain}")
    if "[spam]" in email.subject.lower():
        errors.append("Email marked as spam")
    return errors


__all__ = [
    "S3EmailLocation",
    "InboundEmail",
    "S3EmailProcessor",
    "get_s3_client",
    "text_to_html",
    "clean_html_content",
    "validate_email_for_processing",
]
