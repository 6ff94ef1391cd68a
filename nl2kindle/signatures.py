"""Authenticity checks for inbound webhooks.

Two schemes are supported:

* the relay webhook (Mailgun style): hex HMAC-SHA256 over ``timestamp + token``
  with a shared signing key, a 5 minute freshness window and replay rejection;
* SNS envelopes (SES -> S3 -> SNS): envelope sanity checks plus verification
  of the RSA signature against the certificate SNS signs with.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import re
import threading
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Mapping, Optional
from urllib.parse import urlparse

import requests
from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding

from .logger import get_logger

logger = get_logger("signatures")

HMAC_TOLERANCE_SECONDS = 300
SNS_TOLERANCE_SECONDS = 3600
REPLAY_CLEANUP_THRESHOLD = 1000

SNS_HOST_PATTERN = re.compile(r"^sns\.[a-z0-9-]+\.amazonaws\.com(\.cn)?$")

_NOTIFICATION_FIELDS = ("Message", "MessageId", "Subject", "Timestamp", "TopicArn", "Type")
_SUBSCRIPTION_FIELDS = ("Message", "MessageId", "SubscribeURL", "Timestamp", "Token", "TopicArn", "Type")
_REQUIRED_ENVELOPE_FIELDS = ("Type", "MessageId", "Message", "Timestamp")


class ReplayGuard:
    """Remembers accepted ``(signature, timestamp)`` pairs for the freshness window."""

    def __init__(
        self,
        tolerance_seconds: int = HMAC_TOLERANCE_SECONDS,
        max_entries: int = REPLAY_CLEANUP_THRESHOLD,
        clock: Callable[[], float] = time.time,
    ):
        self.tolerance_seconds = tolerance_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._seen: Dict[str, float] = {}
        self._lock = threading.Lock()

    def check_and_remember(self, signature: str, timestamp: str) -> bool:
        """Return False if the pair was already accepted, else record it."""
        key = f"{signature}:{timestamp}"
        with self._lock:
            now = self._clock()
            if len(self._seen) > self.max_entries:
                self._cleanup(now)
            if key in self._seen:
                return False
            # A pair stays fresh until the later of acceptance and its own timestamp
            try:
                stamped = float(timestamp)
            except (TypeError, ValueError):
                stamped = now
            self._seen[key] = max(now, stamped)
            return True

    def _cleanup(self, now: float) -> None:
        cutoff = now - self.tolerance_seconds
        for key in [k for k, fresh_from in self._seen.items() if fresh_from < cutoff]:
            del self._seen[key]

    def __len__(self) -> int:
        return len(self._seen)


def compute_mailgun_signature(timestamp: str, token: str, signing_key: str) -> str:
    return hmac.new(
        signing_key.encode("utf-8"),
        f"{timestamp}{token}".encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()


def validate_mailgun_signature(
    timestamp: str | None,
    token: str | None,
    signature: str | None,
    signing_key: str,
    replay_guard: Optional[ReplayGuard] = None,
    *,
    now: float | None = None,
    tolerance_seconds: int = HMAC_TOLERANCE_SECONDS,
) -> bool:
    """Verify a relay webhook signature.

    The HMAC is checked first, so only authentic pairs ever reach the replay
    guard and an attacker cannot poison it.
    """
    if not timestamp or not token or not signature:
        logger.warning("Webhook signature fields missing")
        return False

    try:
        ts = int(timestamp)
    except (TypeError, ValueError):
        logger.warning(f"Webhook timestamp is not numeric: {timestamp!r}")
        return False

    expected = compute_mailgun_signature(timestamp, token, signing_key)
    if not hmac.compare_digest(expected, signature.lower()):
        logger.warning("Webhook signature mismatch")
        return False

    current = time.time() if now is None else now
    if abs(current - ts) > tolerance_seconds:
        logger.warning(f"Webhook timestamp outside tolerance: {timestamp}")
        return False

    if replay_guard is not None and not replay_guard.check_and_remember(signature.lower(), timestamp):
        logger.warning("Webhook replay rejected")
        return False

    return True


# ---------------------------------------------------------------------------
# SNS
# ---------------------------------------------------------------------------
def is_valid_sns_url(url: str | None) -> bool:
    """HTTPS URL on an SNS endpoint host (certificate and subscribe URLs)."""
    if not url:
        return False
    parsed = urlparse(url)
    return parsed.scheme == "https" and bool(SNS_HOST_PATTERN.match((parsed.hostname or "").lower()))


def _parse_sns_timestamp(value: str) -> datetime:
    ts = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def build_sns_string_to_sign(envelope: Mapping[str, Any]) -> str:
    """Canonical ``Key\\nValue\\n`` string SNS signs, per message type."""
    if envelope.get("Type") == "Notification":
        fields = _NOTIFICATION_FIELDS
    else:
        fields = _SUBSCRIPTION_FIELDS
    parts = []
    for name in fields:
        value = envelope.get(name)
        if value is None:
            continue
        parts.append(f"{name}\n{value}\n")
    return "".join(parts)


class SnsSignatureValidator:
    """Validates SNS HTTP(S) envelopes."""

    def __init__(
        self,
        *,
        verify_signatures: bool = True,
        skip_verification: bool = False,
        session: Optional[requests.Session] = None,
        fetch_timeout: float = 10,
        tolerance_seconds: int = SNS_TOLERANCE_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.verify_signatures = verify_signatures and not skip_verification
        self.session = session or requests.Session()
        self.fetch_timeout = fetch_timeout
        self.tolerance_seconds = tolerance_seconds
        self._clock = clock
        self._certificates: Dict[str, x509.Certificate] = {}
        self._lock = threading.Lock()
        if skip_verification:
            logger.warning("SNS signature verification disabled (development bypass)")

    def validate(self, envelope: Mapping[str, Any]) -> bool:
        missing = [name for name in _REQUIRED_ENVELOPE_FIELDS if not envelope.get(name)]
        if missing:
            logger.warning(f"SNS envelope missing fields: {', '.join(missing)}")
            return False

        try:
            sent_at = _parse_sns_timestamp(str(envelope["Timestamp"]))
        except ValueError:
            logger.warning(f"SNS timestamp unparseable: {envelope['Timestamp']!r}")
            return False
        if abs(self._clock() - sent_at.timestamp()) > self.tolerance_seconds:
            logger.warning(f"SNS message timestamp outside tolerance: {envelope['Timestamp']}")
            return False

        if not self.verify_signatures:
            return True

        cert_url = envelope.get("SigningCertURL") or envelope.get("SigningCertUrl")
        if not is_valid_sns_url(cert_url):
            logger.warning(f"SNS signing certificate URL rejected: {cert_url}")
            return False

        signature = envelope.get("Signature")
        if not signature:
            logger.warning("SNS envelope has no signature")
            return False

        version = str(envelope.get("SignatureVersion", "1"))
        if version == "1":
            digest = hashes.SHA1()
        elif version == "2":
            digest = hashes.SHA256()
        else:
            logger.warning(f"Unsupported SNS signature version: {version}")
            return False

        try:
            certificate = self._get_certificate(cert_url)
            certificate.public_key().verify(
                base64.b64decode(signature),
                build_sns_string_to_sign(envelope).encode("utf-8"),
                padding.PKCS1v15(),
                digest,
            )
        except InvalidSignature:
            logger.warning(f"SNS signature invalid for message {envelope.get('MessageId')}")
            return False
        except (requests.RequestException, ValueError) as e:
            logger.error(f"SNS signature verification failed: {e}")
            return False

        return True

    def _get_certificate(self, url: str) -> x509.Certificate:
        with self._lock:
            cached = self._certificates.get(url)
        if cached is not None:
            return cached

        response = self.session.get(url, timeout=self.fetch_timeout)
        response.raise_for_status()
        certificate = x509.load_pem_x509_certificate(response.content)
        with self._lock:
            self._certificates[url] = certificate
        logger.debug(f"Cached SNS signing certificate from {url}")
        return certificate


__all__ = [
    "ReplayGuard",
    "compute_mailgun_signature",
    "validate_mailgun_signature",
    "is_valid_sns_url",
    "build_sns_string_to_sign",
    "SnsSignatureValidator",
]
