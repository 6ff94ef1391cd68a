"""Service wiring and request dependencies."""

from dataclasses import dataclass
from typing import Callable, Optional

import requests
from fastapi import HTTPException, Request

from nl2kindle.config import Settings
from nl2kindle.db import create_db_engine, create_session_factory, init_db
from nl2kindle.email.epub.converter import generate_epub_file
from nl2kindle.email.kindle import KindleDeliveryService
from nl2kindle.email.notifications import NotificationService
from nl2kindle.email.send_email import EmailSender
from nl2kindle.extraction import extract_content_from_url
from nl2kindle.file_operations import ArtifactStore
from nl2kindle.pipeline import ConversionPipeline
from nl2kindle.rate_limiter import RateLimiter
from nl2kindle.s3_processor import S3EmailProcessor
from nl2kindle.signatures import ReplayGuard, SnsSignatureValidator
from nl2kindle.store import ConversionStore
from nl2kindle.usage import UsageTracker

USER_ID_HEADER = "X-User-Id"


def header_auth_resolver(request: Request) -> Optional[str]:
    """Identity asserted by the upstream auth proxy."""
    user_id = request.headers.get(USER_ID_HEADER, "").strip()
    return user_id or None


@dataclass
class Services:
    settings: Settings
    store: ConversionStore
    pipeline: ConversionPipeline
    rate_limiter: RateLimiter
    replay_guard: ReplayGuard
    sns_validator: SnsSignatureValidator
    s3_processor: S3EmailProcessor
    artifacts: ArtifactStore
    http: requests.Session
    auth_resolver: Callable[[Request], Optional[str]] = header_auth_resolver


def _email_sender(settings: Settings) -> Optional[EmailSender]:
    if not settings.smtp_user or not settings.smtp_password:
        return None
    return EmailSender(
        smtp_server=settings.smtp_server,
        port=settings.smtp_port,
        username=settings.smtp_user,
        password=settings.smtp_password,
        sender_address=settings.smtp_from,
    )


def build_services(
    settings: Settings,
    *,
    session_factory=None,
    email_sender: Optional[EmailSender] = None,
    converter=generate_epub_file,
    fetcher=extract_content_from_url,
    s3_client=None,
    http: Optional[requests.Session] = None,
    sleep=None,
    delivery_sleep=None,
) -> Services:
    """Construct every long-lived collaborator once per application."""
    if session_factory is None:
        engine = create_db_engine(settings.database_url)
        init_db(engine)
        session_factory = create_session_factory(engine)

    http = http or requests.Session()
    sender = email_sender or _email_sender(settings)
    store = ConversionStore(session_factory)
    notifier = NotificationService(sender)
    usage = UsageTracker(
        store,
        notifier,
        starter_limit=settings.starter_monthly_limit,
        pro_limit=settings.pro_monthly_limit,
    )
    delivery = KindleDeliveryService(
        sender,
        store,
        max_attempts=settings.delivery_attempts,
        deadline_seconds=settings.delivery_deadline,
        sleep=delivery_sleep,
    )
    artifacts = ArtifactStore(settings.artifacts_dir)
    rate_limiter = RateLimiter(settings.rate_limit_requests, settings.rate_limit_window_minutes)

    pipeline_kwargs = {}
    if sleep is not None:
        pipeline_kwargs["sleep"] = sleep
    pipeline = ConversionPipeline(
        settings,
        store,
        usage,
        delivery,
        artifacts,
        rate_limiter=rate_limiter,
        notifier=notifier,
        converter=converter,
        fetcher=fetcher,
        **pipeline_kwargs,
    )

    return Services(
        settings=settings,
        store=store,
        pipeline=pipeline,
        rate_limiter=rate_limiter,
        replay_guard=ReplayGuard(),
        sns_validator=SnsSignatureValidator(
            verify_signatures=settings.sns_verify_signatures,
            skip_verification=settings.skip_sns_verification,
            session=http,
        ),
        s3_processor=S3EmailProcessor(settings.s3_email_bucket, client=s3_client, region=settings.aws_region),
        artifacts=artifacts,
        http=http,
    )


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_current_user_id(request: Request) -> str:
    user_id = get_services(request).auth_resolver(request)
    if not user_id:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return user_id
