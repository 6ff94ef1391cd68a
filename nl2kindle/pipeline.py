"""Conversion pipeline.

Ties intake, extraction, conversion, persistence and delivery together::

    accept_inbound_email  -> pending row (caller schedules process_intake)
    process_conversion    -> sanitize + convert (retried) -> completed/failed
                          -> Kindle delivery (retried, deadline bounded)
    convert_direct        -> same, synchronously, for the authenticated API
    retry_conversion      -> failed row back to pending
    purge_expired_artifacts -> stored books past the download window deleted
    convert_url_inline    -> artifact for download, nothing persisted

Errors meant for the caller are :mod:`nl2kindle.errors` exceptions; the
background half (``process_*``) never raises and reports through the row.
"""

import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Mapping, Optional
from urllib.parse import urlparse

from .config import Settings
from .email.epub.converter import EpubConversionError, EpubOptions, GeneratedFile, generate_epub_file
from .email.kindle import DeliveryResult, KindleDeliveryService
from .errors import (
    ContentFetchError,
    InvalidTransitionError,
    NotFoundError,
    PipelineError,
    QuotaExceededError,
    RateLimitedError,
    RetryUnavailableError,
    ValidationError,
)
from .extraction import (
    DEFAULT_TITLE,
    ConversionMetadata,
    ExtractedContent,
    count_words,
    extract_content_from_url,
    extract_metadata,
    merge_metadata,
    reading_time,
    validate_content,
)
from .file_operations import ArtifactStore
from .links import extract_links_from_email
from .logger import get_logger
from .models import STATUS_COMPLETED, STATUS_FAILED, Conversion, utcnow
from .rate_limiter import RateLimiter
from .retry import retry_with_backoff
from .s3_processor import S3EmailLocation, S3EmailProcessor, text_to_html, validate_email_for_processing
from .sanitizer import sanitize_html
from .store import ConversionStore
from .usage import UsageTracker

logger = get_logger("pipeline")

# Emails shorter than this are treated as teasers when they link to a full article
TEASER_MAX_WORDS = 150
MAX_LINKS_TRIED = 3

EMAIL_ACCEPTED_MESSAGE = "Email received and processing started"
RETRY_UNAVAILABLE_MESSAGE = "Original content not available for retry. Please resend the email."


@dataclass
class IntakeResult:
    conversion_id: str
    user_id: str
    kindle_email: Optional[str]
    metadata: ConversionMetadata
    html: str
    source_url: Optional[str] = None
    notify_email: Optional[str] = None


@dataclass
class ProcessingOutcome:
    conversion_id: str
    status: str
    file_url: Optional[str] = None
    file_size: Optional[int] = None
    filename: Optional[str] = None
    error: Optional[str] = None
    delivery: Optional[DeliveryResult] = None


@dataclass
class DirectConversionResult:
    conversion_id: str
    metadata: ConversionMetadata
    file_url: str
    file_size: int
    filename: str
    delivery: Optional[DeliveryResult] = None
    warning: Optional[str] = None


def _metadata_from_row(conversion: Conversion) -> ConversionMetadata:
    return ConversionMetadata(
        title=conversion.title,
        author=conversion.author or "",
        date=conversion.article_date or "",
        source=conversion.source or "",
        word_count=conversion.word_count,
        reading_time=conversion.reading_time,
    )


def _with_extracted(metadata: ConversionMetadata, extracted: ExtractedContent) -> ConversionMetadata:
    return merge_metadata(
        metadata,
        {"title": extracted.title, "author": extracted.author, "source": extracted.source},
    )


class ConversionPipeline:
    def __init__(
        self,
        settings: Settings,
        store: ConversionStore,
        usage: UsageTracker,
        delivery: KindleDeliveryService,
        artifacts: ArtifactStore,
        *,
        rate_limiter: Optional[RateLimiter] = None,
        notifier=None,
        converter: Callable[..., GeneratedFile] = generate_epub_file,
        fetcher: Callable[..., ExtractedContent] = extract_content_from_url,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.settings = settings
        self.store = store
        self.usage = usage
        self.delivery = delivery
        self.artifacts = artifacts
        self.rate_limiter = rate_limiter
        self.notifier = notifier
        self.converter = converter
        self.fetcher = fetcher
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Gates
    # ------------------------------------------------------------------
    def check_rate_limit(self, sender: str) -> None:
        if self.rate_limiter is None:
            return
        result = self.rate_limiter.is_allowed(sender.lower())
        if not result.allowed:
            raise RateLimitedError(
                "Rate limit exceeded. Please try again later.",
                remaining=result.remaining_requests,
                reset_time=result.reset_time,
                limit=self.rate_limiter.max_requests,
            )

    def check_quota(self, user_id: str) -> None:
        decision = self.usage.can_user_convert(user_id)
        if not decision.can_convert:
            logger.info(f"Usage limit exceeded for user {user_id}")
            raise QuotaExceededError(decision.reason or "Usage limit exceeded")

    def _validate(self, html: str) -> None:
        validation = validate_content(html)
        if not validation.is_valid:
            logger.info(f"Content validation failed: {validation.errors}")
            raise ValidationError(", ".join(validation.errors), details=validation.errors)

    def _fetch(self, url: str) -> ExtractedContent:
        return self.fetcher(url, timeout=self.settings.fetch_timeout)

    # ------------------------------------------------------------------
    # Email intake
    # ------------------------------------------------------------------
    def resolve_linked_article(self, html: str) -> Optional[ExtractedContent]:
        """Full article behind a teaser email, when one can be fetched."""
        if not self.settings.prefer_linked_articles or count_words(html) >= TEASER_MAX_WORDS:
            return None
        for link in extract_links_from_email(html)[:MAX_LINKS_TRIED]:
            try:
                extracted = self._fetch(link)
            except ContentFetchError as e:
                logger.info(f"Linked article {link} unavailable: {e}")
                continue
            if not extracted.is_placeholder and validate_content(extracted.html).is_valid:
                logger.info(f"Using linked article {link} instead of teaser email")
                return extracted
        return None

    def accept_inbound_email(self, sender: str, recipient: str, subject: str, html: str) -> IntakeResult:
        """Run the intake gates and create the pending row.

        The caller has already verified the webhook signature and is expected
        to schedule :meth:`process_intake` with the result.
        """
        sender = (sender or "").strip()
        recipient = (recipient or "").strip().lower()
        self.check_rate_limit(sender)

        user = self.store.find_user_by_personal_email(recipient)
        if user is None:
            logger.info(f"User not found for email: {recipient}")
            raise NotFoundError("User not found")
        if not user.kindle_email:
            raise ValidationError("Kindle email not configured")

        self.check_quota(user.user_id)

        content = html or ""
        source_url = None
        extracted = self.resolve_linked_article(content) if content.strip() else None
        if extracted is not None:
            content, source_url = extracted.html, extracted.url

        self._validate(content)

        metadata = extract_metadata(content)
        if extracted is not None:
            metadata = _with_extracted(metadata, extracted)
        else:
            metadata.source = sender
            if metadata.title == DEFAULT_TITLE and subject:
                metadata.title = subject.strip()

        conversion = self.store.create_pending(
            user.user_id, metadata, source_url=source_url, source_html=content
        )
        self.usage.check_and_send_usage_alerts(user.user_id)

        return IntakeResult(
            conversion_id=conversion.id,
            user_id=user.user_id,
            kindle_email=user.kindle_email,
            metadata=metadata,
            html=content,
            source_url=source_url,
            notify_email=user.account_email if user.notifications_enabled else None,
        )

    def process_stored_email(
        self,
        processor: S3EmailProcessor,
        location: S3EmailLocation,
        schedule: Callable[..., Any],
    ) -> Dict[str, Any]:
        """Handle one SES message stored in S3; the object is deleted afterwards whatever happens."""
        try:
            inbound = processor.fetch_and_parse_email(location)
            if inbound is None:
                return {"success": False, "error": "Failed to fetch or parse email"}

            errors = validate_email_for_processing(inbound, self.settings.inbound_domain)
            if errors:
                logger.warning(f"Email {inbound.message_id} rejected: {errors}")
                return {"success": False, "error": "; ".join(errors)}

            try:
                intake = self.accept_inbound_email(
                    inbound.sender,
                    inbound.recipient,
                    inbound.subject,
                    inbound.html_body or text_to_html(inbound.text_body),
                )
            except PipelineError as e:
                logger.info(f"Email {inbound.message_id} not converted: {e.message}")
                return {"success": False, "error": e.message}

            schedule(self.process_intake, intake)
            return {"success": True, "conversionId": intake.conversion_id, "message": EMAIL_ACCEPTED_MESSAGE}
        finally:
            processor.delete_email(location)

    # ------------------------------------------------------------------
    # Conversion
    # ------------------------------------------------------------------
    def _convert_and_store(
        self, conversion_id: str, html: str, metadata: ConversionMetadata, source_url: Optional[str]
    ):
        cleaned = sanitize_html(html, source_url)
        options = EpubOptions(timeout=self.settings.conversion_timeout, executable=self.settings.ebook_convert_path)
        generated = self.converter(cleaned, metadata, options)
        file_url = self.artifacts.save(conversion_id, generated.filename, generated.content)
        return generated, file_url

    def _generate_with_retry(self, conversion_id: str, html: str, metadata: ConversionMetadata, source_url):
        return retry_with_backoff(
            lambda: self._convert_and_store(conversion_id, html, metadata, source_url),
            max_attempts=self.settings.conversion_attempts,
            retry_on=(EpubConversionError, OSError),
            sleep=self._sleep,
            description=f"Conversion {conversion_id}",
        )

    def process_conversion(
        self,
        conversion_id: str,
        html: str,
        metadata: ConversionMetadata,
        kindle_email: Optional[str] = None,
        source_url: Optional[str] = None,
        notify_email: Optional[str] = None,
    ) -> ProcessingOutcome:
        """Convert a pending row and deliver it. Never raises."""
        try:
            generated, file_url = self._generate_with_retry(conversion_id, html, metadata, source_url)
        except Exception as e:  # noqa: BLE001
            error = str(e) or e.__class__.__name__
            logger.error(f"Conversion {conversion_id} failed: {error}")
            self._record_failure(conversion_id, error)
            if self.notifier is not None and notify_email:
                self.notifier.send_conversion_failure(notify_email, metadata.title, error)
            return ProcessingOutcome(conversion_id, STATUS_FAILED, error=error)

        try:
            self.store.mark_completed(conversion_id, file_url, generated.size)
        except (InvalidTransitionError, NotFoundError) as e:
            logger.error(f"Could not complete conversion {conversion_id}: {e}")
            return ProcessingOutcome(conversion_id, STATUS_FAILED, error=str(e))

        outcome = ProcessingOutcome(
            conversion_id,
            STATUS_COMPLETED,
            file_url=file_url,
            file_size=generated.size,
            filename=generated.filename,
        )
        if kindle_email:
            outcome.delivery = self.delivery.send_to_kindle(file_url, kindle_email, metadata.title, conversion_id)
        return outcome

    def process_intake(self, intake: IntakeResult) -> ProcessingOutcome:
        return self.process_conversion(
            intake.conversion_id,
            intake.html,
            intake.metadata,
            kindle_email=intake.kindle_email,
            source_url=intake.source_url,
            notify_email=intake.notify_email,
        )

    def _record_failure(self, conversion_id: str, error: str) -> None:
        try:
            self.store.mark_failed(conversion_id, error)
        except (InvalidTransitionError, NotFoundError) as e:
            logger.error(f"Could not mark conversion {conversion_id} failed: {e}")

    # ------------------------------------------------------------------
    # Direct API
    # ------------------------------------------------------------------
    def convert_direct(
        self,
        user_id: str,
        *,
        html: Optional[str] = None,
        url: Optional[str] = None,
        source_url: Optional[str] = None,
        custom_metadata: Optional[Mapping[str, Any]] = None,
        send_to_kindle: bool = False,
    ) -> DirectConversionResult:
        self.check_quota(user_id)

        extracted = None
        if url:
            try:
                extracted = self._fetch(url)
            except ContentFetchError as e:
                raise ValidationError(str(e)) from e
            content = extracted.html
            source_url = url
        elif html:
            content = html
        else:
            raise ValidationError("Either htmlContent or url is required")

        self._validate(content)

        metadata = extract_metadata(content)
        if extracted is not None:
            metadata = _with_extracted(metadata, extracted)
        metadata = merge_metadata(metadata, custom_metadata)
        metadata.reading_time = reading_time(metadata.word_count)

        conversion = self.store.create_pending(user_id, metadata, source_url=source_url, source_html=content)
        outcome = self.process_conversion(conversion.id, content, metadata, source_url=source_url)
        if outcome.status != STATUS_COMPLETED:
            raise PipelineError(f"Conversion failed: {outcome.error}")

        self.usage.check_and_send_usage_alerts(user_id)

        result = DirectConversionResult(
            conversion_id=conversion.id,
            metadata=metadata,
            file_url=outcome.file_url,
            file_size=outcome.file_size,
            filename=outcome.filename,
        )
        if send_to_kindle:
            self._deliver_direct(user_id, result)
        return result

    def _deliver_direct(self, user_id: str, result: DirectConversionResult) -> None:
        settings = self.store.get_user_settings(user_id)
        if settings is None or not settings.kindle_email:
            result.warning = "Conversion succeeded but Kindle email not configured"
            return
        result.delivery = self.delivery.send_to_kindle(
            result.file_url, settings.kindle_email, result.metadata.title, result.conversion_id
        )
        if not result.delivery.success:
            result.warning = f"Conversion succeeded but delivery failed: {result.delivery.error}"

    # ------------------------------------------------------------------
    # Retry
    # ------------------------------------------------------------------
    def retry_conversion(self, user_id: str, conversion_id: str) -> IntakeResult:
        conversion = self.store.get(conversion_id, user_id=user_id)
        if conversion.status != STATUS_FAILED:
            raise ValidationError("Can only retry failed conversions")

        settings = self.store.get_user_settings(user_id)
        if settings is None or not settings.kindle_email:
            raise ValidationError("Kindle email not configured")
        if not conversion.source_html:
            raise RetryUnavailableError(RETRY_UNAVAILABLE_MESSAGE)

        self.store.reset_for_retry(conversion_id)
        return IntakeResult(
            conversion_id=conversion.id,
            user_id=user_id,
            kindle_email=settings.kindle_email,
            metadata=_metadata_from_row(conversion),
            html=conversion.source_html,
            source_url=conversion.source_url,
            notify_email=settings.account_email if settings.notifications_enabled else None,
        )

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------
    def purge_expired_artifacts(self, now: Optional[datetime] = None) -> int:
        """Delete stored books whose download window has closed; returns how many went."""
        cutoff = (now or utcnow()) - timedelta(days=self.settings.download_retention_days)
        purged = 0
        for conversion_id in self.store.completed_before(cutoff):
            if self.artifacts.delete(conversion_id):
                purged += 1
        logger.info(
            f"Purged {purged} expired artifact(s) older than {self.settings.download_retention_days} days",
            extra={"event": "artifacts_purged", "count": purged},
        )
        return purged

    # ------------------------------------------------------------------
    # Inline URL download
    # ------------------------------------------------------------------
    def is_supported_download_url(self, url: str) -> bool:
        host = (urlparse(url).hostname or "").lower()
        return any(host == d or host.endswith(f".{d}") for d in self.settings.url_download_domains)

    def convert_url_inline(self, url: str):
        """Fetch and convert ``url`` without persisting anything.

        Returns ``(generated_file, metadata)``.
        """
        if not url:
            raise ValidationError("URL is required")
        if not self.is_supported_download_url(url):
            raise ValidationError(
                f"Currently only supports URLs from: {', '.join(self.settings.url_download_domains)}"
            )

        try:
            extracted = self._fetch(url)
        except ContentFetchError as e:
            raise PipelineError(f"Failed to extract content: {e}", status_code=502) from e

        self._validate(extracted.html)
        metadata = _with_extracted(extract_metadata(extracted.html), extracted)
        options = EpubOptions(timeout=self.settings.conversion_timeout, executable=self.settings.ebook_convert_path)

        generated = retry_with_backoff(
            lambda: self.converter(extracted.html, metadata, options),
            max_attempts=self.settings.conversion_attempts,
            retry_on=(EpubConversionError, OSError),
            sleep=self._sleep,
            description=f"Inline conversion of {url}",
        )
        return generated, metadata


__all__ = [
    "ConversionPipeline",
    "IntakeResult",
    "ProcessingOutcome",
    "DirectConversionResult",
    "EMAIL_ACCEPTED_MESSAGE",
]
