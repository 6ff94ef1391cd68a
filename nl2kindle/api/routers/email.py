"""Inbound email webhooks: relay (signed form post) and SES via SNS."""

import json

from fastapi import APIRouter, BackgroundTasks, Depends, Form, Request
from starlette.concurrency import run_in_threadpool

from nl2kindle.api.deps import Services, get_services
from nl2kindle.errors import AuthenticationError, ConfigurationError, ValidationError
from nl2kindle.logger import get_logger
from nl2kindle.pipeline import EMAIL_ACCEPTED_MESSAGE
from nl2kindle.signatures import is_valid_sns_url, validate_mailgun_signature

router = APIRouter()
logger = get_logger("api.email")


@router.post("/receive")
def receive_email(
    background_tasks: BackgroundTasks,
    sender: str = Form("", alias="From"),
    recipient: str = Form("", alias="To"),
    subject: str = Form("", alias="Subject"),
    body_html: str = Form("", alias="body-html"),
    timestamp: str = Form(""),
    token: str = Form(""),
    signature: str = Form(""),
    services: Services = Depends(get_services),
):
    """Relay webhook: verify the signature, run intake, convert in the background."""
    signing_key = services.settings.mailgun_signing_key
    if not signing_key:
        logger.error("MAILGUN_WEBHOOK_SIGNING_KEY not configured")
        raise ConfigurationError("Webhook signing key not configured")

    if not validate_mailgun_signature(timestamp, token, signature, signing_key, services.replay_guard):
        raise AuthenticationError("Invalid signature")

    intake = services.pipeline.accept_inbound_email(sender, recipient, subject, body_html)
    background_tasks.add_task(services.pipeline.process_intake, intake)

    logger.info(f"Email from {sender} accepted as conversion {intake.conversion_id}")
    return {
        "success": True,
        "conversionId": intake.conversion_id,
        "message": EMAIL_ACCEPTED_MESSAGE,
    }


@router.post("/ses-webhook")
async def ses_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    services: Services = Depends(get_services),
):
    """SNS endpoint for SES receipt notifications.

    SNS posts JSON with a ``text/plain`` content type, so the body is parsed
    by hand. Business rejections answer 200 with ``success: false`` because
    the stored message is already gone and an SNS redelivery cannot help.
    """
    raw = await request.body()
    try:
        envelope = json.loads(raw)
    except (ValueError, UnicodeDecodeError) as e:
        raise ValidationError("Invalid JSON payload") from e
    if not isinstance(envelope, dict):
        raise ValidationError("Invalid SNS payload")

    valid = await run_in_threadpool(services.sns_validator.validate, envelope)
    if not valid:
        raise AuthenticationError("Invalid SNS signature")

    message_type = envelope.get("Type")
    logger.info(f"SNS {message_type} received: {envelope.get('MessageId')}")

    if message_type == "SubscriptionConfirmation":
        subscribe_url = envelope.get("SubscribeURL")
        if not is_valid_sns_url(subscribe_url):
            raise ValidationError("Invalid SubscribeURL")
        response = await run_in_threadpool(services.http.get, subscribe_url, timeout=10)
        if response.status_code >= 400:
            logger.error(f"SNS subscription confirmation failed: HTTP {response.status_code}")
            raise ValidationError("Subscription confirmation failed")
        return {"success": True, "message": "Subscription confirmed"}

    if message_type == "UnsubscribeConfirmation":
        return {"success": True, "message": "Unsubscribe acknowledged"}

    if message_type != "Notification":
        raise ValidationError(f"Unsupported message type: {message_type}")

    try:
        message = json.loads(envelope["Message"])
    except (TypeError, ValueError) as e:
        raise ValidationError("Notification message is not JSON") from e
    if not isinstance(message, dict):
        raise ValidationError("Notification message is not a JSON object")

    processor = services.s3_processor
    if message.get("Records"):
        location = processor.location_from_s3_event(message)
    else:
        location = processor.location_from_ses_event(message)
    if location is None:
        raise ValidationError("Could not determine email location")

    return await run_in_threadpool(
        services.pipeline.process_stored_email, processor, location, background_tasks.add_task
    )
