import base64
import json
import time
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from nl2kindle.api.app import create_app
from nl2kindle.api.deps import build_services
from nl2kindle.email.send_email import EmailSender
from nl2kindle.extraction import ExtractedContent
from nl2kindle.models import Conversion
from nl2kindle.signatures import compute_mailgun_signature

AUTH = {"X-User-Id": "user-1"}
RAW_EMAIL = b"""From: writer@newsletter.example
To: reader@linktoreader.com
Subject: Issue 7
Content-Type: text/html; charset="utf-8"

<html><head><title>Issue Seven</title></head><body><p>%s</p></body></html>
""" % (b" ".join([b"paragraph"] * 40))


@pytest.fixture
def s3_client():
    body = MagicMock()
    body.read.return_value = RAW_EMAIL
    client = MagicMock()
    client.get_object.return_value = {"Body": body}
    return client


@pytest.fixture
def fetcher():
    return MagicMock(
        return_value=ExtractedContent(
            html="<article><h1>Full Story</h1><p>" + " ".join(["detail"] * 300) + "</p></article>",
            title="Full Story",
            author="Writer",
            source="writer.substack.com",
            url="https://writer.substack.com/p/full",
        )
    )


@pytest.fixture
def services(settings, session_factory, fake_smtp, fake_converter, s3_client, fetcher):
    settings.sns_verify_signatures = False
    sender = EmailSender(smtp_server="smtp.test", port=587, username="noreply@example.com", password="x")
    return build_services(
        settings,
        session_factory=session_factory,
        email_sender=sender,
        converter=fake_converter,
        fetcher=fetcher,
        s3_client=s3_client,
        http=MagicMock(),
        sleep=lambda s: None,
        delivery_sleep=lambda s: None,
    )


@pytest.fixture
def client(services):
    return TestClient(create_app(services=services))


def _signed_form(html, key="test-signing-key", token=None):
    timestamp = str(int(time.time()))
    token = token or f"tok-{time.monotonic_ns()}"
    return {
        "From": "writer@newsletter.example",
        "To": "reader@linktoreader.com",
        "Subject": "Issue 7",
        "body-html": html,
        "timestamp": timestamp,
        "token": token,
        "signature": compute_mailgun_signature(timestamp, token, key),
    }


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


class TestReceiveWebhook:
    def test_signed_email_converted_and_delivered(self, client, make_user, store, fake_smtp, article_html):
        make_user()
        response = client.post("/api/email/receive", data=_signed_form(article_html))

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["message"] == "Email received and processing started"

        conversion = store.get(body["conversionId"])
        assert conversion.status == "completed"
        assert conversion.delivered_at is not None
        sent = fake_smtp.all_sent()
        assert len(sent) == 1
        assert sent[0][1] == ["reader@kindle.com"]
        assert "Link to Reader: The Quiet Revolution in Batteries" in sent[0][2]

    def test_bad_signature(self, client, make_user, store, article_html):
        make_user()
        form = _signed_form(article_html, key="wrong-key")
        response = client.post("/api/email/receive", data=form)
        assert response.status_code == 401
        assert response.json() == {"error": "Invalid signature"}
        assert store.list_for_user("user-1").total == 0

    def test_replayed_request_rejected(self, client, make_user, article_html):
        make_user()
        form = _signed_form(article_html, token="fixed-token")
        assert client.post("/api/email/receive", data=form).status_code == 200
        assert client.post("/api/email/receive", data=form).status_code == 401

    def test_missing_signing_key(self, client, services, article_html):
        services.settings.mailgun_signing_key = None
        response = client.post("/api/email/receive", data=_signed_form(article_html))
        assert response.status_code == 500

    def test_unknown_user(self, client, article_html):
        response = client.post("/api/email/receive", data=_signed_form(article_html))
        assert response.status_code == 404
        assert response.json() == {"error": "User not found"}

    def test_missing_kindle_address(self, client, make_user, article_html):
        make_user(kindle_email=None)
        response = client.post("/api/email/receive", data=_signed_form(article_html))
        assert response.status_code == 400
        assert response.json()["error"] == "Kindle email not configured"

    def test_short_content(self, client, make_user):
        make_user()
        response = client.post("/api/email/receive", data=_signed_form("<p>hi</p>"))
        assert response.status_code == 400
        assert "too short" in response.json()["error"]

    def test_quota_exceeded(self, client, services, make_user, article_html):
        make_user()
        services.pipeline.usage.starter_limit = 1
        assert client.post("/api/email/receive", data=_signed_form(article_html)).status_code == 200
        response = client.post("/api/email/receive", data=_signed_form(article_html))
        assert response.status_code == 429
        assert response.json()["error"].startswith("Monthly limit reached (1/1)")

    def test_rate_limited(self, client, services, make_user, article_html):
        make_user()
        services.rate_limiter.max_requests = 1
        assert client.post("/api/email/receive", data=_signed_form(article_html)).status_code == 200
        response = client.post("/api/email/receive", data=_signed_form(article_html))
        assert response.status_code == 429
        assert response.headers["X-RateLimit-Limit"] == "1"
        assert response.headers["X-RateLimit-Remaining"] == "0"

    def test_conversion_failure_recorded(self, client, make_user, store, fake_converter, fake_smtp, article_html):
        make_user()
        fake_converter.failures = 3
        response = client.post("/api/email/receive", data=_signed_form(article_html))
        conversion = store.get(response.json()["conversionId"])
        assert conversion.status == "failed"
        assert conversion.error
        # failure notice goes to the account address, nothing to the Kindle
        recipients = [to for _, to, _ in fake_smtp.all_sent()]
        assert recipients == [["reader@example.com"]]


def _sns(message_type="Notification", message="{}", **fields):
    envelope = {
        "Type": message_type,
        "MessageId": "sns-1",
        "Message": message if isinstance(message, str) else json.dumps(message),
        "Timestamp": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.000Z"),
    }
    envelope.update(fields)
    return json.dumps(envelope)


class TestSesWebhook:
    def test_notification_processes_and_deletes(self, client, make_user, store, s3_client):
        make_user()
        payload = _sns(message={"notificationType": "Received", "mail": {"messageId": "ses-abc"}})
        response = client.post("/api/email/ses-webhook", content=payload, headers={"Content-Type": "text/plain"})

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        s3_client.get_object.assert_called_once_with(Bucket="inbound-mail", Key="ses-abc")
        s3_client.delete_object.assert_called_once_with(Bucket="inbound-mail", Key="ses-abc")
        conversion = store.get(body["conversionId"])
        assert conversion.title == "Issue Seven"
        assert conversion.status == "completed"

    def test_s3_record_notification(self, client, make_user, s3_client):
        make_user()
        event = {"Records": [{"s3": {"bucket": {"name": "other-bucket"}, "object": {"key": "emails/k1"}}}]}
        response = client.post("/api/email/ses-webhook", content=_sns(message=event))
        assert response.json()["success"] is True
        s3_client.get_object.assert_called_once_with(Bucket="other-bucket", Key="emails/k1")

    def test_business_rejection_answers_ok(self, client, s3_client):
        response = client.post("/api/email/ses-webhook", content=_sns(message={"mail": {"messageId": "ses-abc"}}))
        assert response.status_code == 200
        assert response.json() == {"success": False, "error": "User not found"}
        s3_client.delete_object.assert_called_once()

    def test_subscription_confirmation(self, client, services):
        payload = _sns(
            "SubscriptionConfirmation",
            message="You have chosen to subscribe",
            SubscribeURL="https://sns.us-east-1.amazonaws.com/?Action=ConfirmSubscription&Token=t",
        )
        services.http.get.return_value = MagicMock(status_code=200)
        response = client.post("/api/email/ses-webhook", content=payload)
        assert response.json()["message"] == "Subscription confirmed"
        services.http.get.assert_called_once()

    def test_subscription_url_must_be_sns(self, client, services):
        payload = _sns("SubscriptionConfirmation", message="x", SubscribeURL="https://evil.example/")
        response = client.post("/api/email/ses-webhook", content=payload)
        assert response.status_code == 400
        services.http.get.assert_not_called()

    def test_unsigned_envelope_rejected(self, client, services):
        services.sns_validator.verify_signatures = True
        response = client.post("/api/email/ses-webhook", content=_sns())
        assert response.status_code == 401

    def test_stale_envelope_rejected(self, client):
        response = client.post("/api/email/ses-webhook", content=_sns(Timestamp="2020-01-01T00:00:00.000Z"))
        assert response.status_code == 401

    def test_invalid_json(self, client):
        response = client.post("/api/email/ses-webhook", content="not json")
        assert response.status_code == 400

    def test_message_must_be_json_object(self, client, s3_client):
        response = client.post("/api/email/ses-webhook", content=_sns(message='["x"]'))
        assert response.status_code == 400
        s3_client.get_object.assert_not_called()

    def test_unreadable_email_answers_ok(self, client, make_user, s3_client):
        make_user()
        s3_client.get_object.return_value["Body"].read.return_value = RAW_EMAIL.replace(
            b'charset="utf-8"', b"charset=x-unknown-zzz"
        )
        response = client.post("/api/email/ses-webhook", content=_sns(message={"mail": {"messageId": "ses-abc"}}))
        assert response.status_code == 200
        assert response.json() == {"success": False, "error": "Failed to fetch or parse email"}


class TestConversionApi:
    def _create(self, client, article_html, **extra):
        payload = {"htmlContent": article_html, **extra}
        return client.post("/api/conversion", json=payload, headers=AUTH)

    def test_requires_identity(self, client, article_html):
        response = client.post("/api/conversion", json={"htmlContent": article_html})
        assert response.status_code == 401
        assert client.get("/api/conversion").status_code == 401

    def test_create_and_download(self, client, make_user, article_html):
        make_user()
        response = self._create(client, article_html, customMetadata={"title": "Custom Title"})
        assert response.status_code == 200
        body = response.json()
        assert body["metadata"]["title"] == "Custom Title"
        assert body["fileUrl"] == f"/api/conversions/{body['conversionId']}/download"

        download = client.get(body["fileUrl"], headers=AUTH)
        assert download.status_code == 200
        assert download.headers["content-type"] == "application/epub+zip"
        assert download.content.startswith(b"PK-fake-epub:")

    def test_create_and_send(self, client, make_user, fake_smtp, article_html):
        make_user()
        body = self._create(client, article_html, sendToKindle=True).json()
        assert body["delivered"] is True
        assert fake_smtp.all_sent()[0][1] == ["reader@kindle.com"]

    def test_create_requires_content(self, client, make_user):
        make_user()
        response = client.post("/api/conversion", json={}, headers=AUTH)
        assert response.status_code == 400

    def test_list_and_get(self, client, make_user, article_html):
        make_user()
        ids = [self._create(client, article_html).json()["conversionId"] for _ in range(3)]
        listing = client.get("/api/conversion?page=1&limit=2", headers=AUTH).json()
        assert listing["pagination"] == {"page": 1, "limit": 2, "total": 3, "totalPages": 2}
        assert len(listing["conversions"]) == 2

        detail = client.get(f"/api/conversions/{ids[0]}", headers=AUTH).json()
        assert detail["status"] == "completed"
        assert client.get(f"/api/conversions/{ids[0]}", headers={"X-User-Id": "other"}).status_code == 404

    def test_stats(self, client, make_user, article_html):
        make_user()
        self._create(client, article_html)
        self._create(client, article_html)
        assert client.get("/api/conversion/stats", headers=AUTH).json() == {
            "total": 2,
            "completed": 2,
            "failed": 0,
            "pending": 0,
            "successRate": 100.0,
        }
        assert client.get("/api/conversion/stats").status_code == 401

    def test_list_rejects_unknown_status(self, client):
        assert client.get("/api/conversion?status=weird", headers=AUTH).status_code == 400

    def test_retry_flow(self, client, make_user, store, fake_converter, article_html):
        make_user()
        fake_converter.failures = 3
        conversion_id = client.post("/api/email/receive", data=_signed_form(article_html)).json()["conversionId"]
        assert store.get(conversion_id).status == "failed"

        response = client.post(f"/api/conversions/{conversion_id}/retry", headers=AUTH)
        assert response.json() == {"success": True, "message": "Retry initiated", "conversionId": conversion_id}
        assert store.get(conversion_id).status == "completed"

        again = client.post(f"/api/conversions/{conversion_id}/retry", headers=AUTH)
        assert again.status_code == 400
        assert again.json()["error"] == "Can only retry failed conversions"

    def test_download_pending_and_expired(self, client, make_user, store, session_factory, article_html):
        make_user()
        from nl2kindle.extraction import ConversionMetadata

        pending = store.create_pending("user-1", ConversionMetadata(title="P"))
        assert client.get(f"/api/conversions/{pending.id}/download", headers=AUTH).status_code == 400

        conversion_id = self._create(client, article_html).json()["conversionId"]
        with session_factory() as session:
            row = session.get(Conversion, conversion_id)
            row.completed_at = row.completed_at - timedelta(days=8)
            session.commit()
        response = client.get(f"/api/conversions/{conversion_id}/download", headers=AUTH)
        assert response.status_code == 410

    def test_download_missing_file(self, client, make_user, services, article_html):
        make_user()
        conversion_id = self._create(client, article_html).json()["conversionId"]
        services.artifacts.delete(conversion_id)
        assert client.get(f"/api/conversions/{conversion_id}/download", headers=AUTH).status_code == 404


class TestUrlDownload:
    def test_converts_substack_url(self, client, fetcher):
        response = client.post("/api/conversion/url", json={"url": "https://writer.substack.com/p/full"})
        assert response.status_code == 200
        body = response.json()
        assert body["metadata"]["title"] == "Full Story"
        assert base64.b64decode(body["fileData"]).startswith(b"PK-fake-epub:")

    def test_unsupported_domain(self, client, fetcher):
        response = client.post("/api/conversion/url", json={"url": "https://example.com/a"})
        assert response.status_code == 400
        fetcher.assert_not_called()

    def test_upstream_failure(self, client, fetcher):
        from nl2kindle.errors import ContentFetchError

        fetcher.side_effect = ContentFetchError("HTTP 503")
        response = client.post("/api/conversion/url", json={"url": "https://writer.substack.com/p/full"})
        assert response.status_code == 502


def test_unhandled_errors_are_opaque(services, article_html, make_user):
    make_user()
    services.store.list_for_user = MagicMock(side_effect=RuntimeError("db exploded"))
    client = TestClient(create_app(services=services), raise_server_exceptions=False)
    response = client.get("/api/conversion", headers=AUTH)
    assert response.status_code == 500
    assert response.json() == {"error": "Internal server error"}
