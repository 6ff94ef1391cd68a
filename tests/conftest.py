import smtplib

import pytest

from nl2kindle.config import Settings, reset_config_cache
from nl2kindle.db import create_db_engine, create_session_factory, init_db
from nl2kindle.email.epub.converter import GeneratedFile
from nl2kindle.models import Subscription, UserSettings
from nl2kindle.store import ConversionStore


class FakeSMTP:
    """Fake SMTP server capturing sendmail arguments for assertions."""

    instances: list = []
    failures: list = []  # exceptions raised by successive sendmail calls

    def __init__(self, host, port, timeout=None):  # noqa: D401
        self.host = host
        self.port = port
        self.timeout = timeout
        self.started_tls = False
        self.logged_in = False
        self.sent = []
        FakeSMTP.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):  # noqa: D401
        return False

    def starttls(self):
        self.started_tls = True

    def login(self, user, password):
        self.logged_in = True
        self.user = user
        self.password = password

    def sendmail(self, from_addr, to_addrs, msg):
        if FakeSMTP.failures:
            raise FakeSMTP.failures.pop(0)
        self.sent.append((from_addr, to_addrs, msg))

    @classmethod
    def all_sent(cls):
        return [item for inst in cls.instances for item in inst.sent]


@pytest.fixture(autouse=True)
def fake_env(monkeypatch):
    monkeypatch.setenv("SMTP_USER", "noreply@example.com")
    monkeypatch.setenv("SMTP_PASSWORD", "dummy-pass")
    monkeypatch.delenv("SMTP_FROM", raising=False)
    monkeypatch.delenv("NL2KINDLE_PLATFORMS_FILE", raising=False)
    reset_config_cache()
    yield
    reset_config_cache()


@pytest.fixture
def fake_smtp(monkeypatch):
    FakeSMTP.instances = []
    FakeSMTP.failures = []
    monkeypatch.setattr(smtplib, "SMTP", FakeSMTP)
    yield FakeSMTP
    FakeSMTP.instances = []
    FakeSMTP.failures = []


@pytest.fixture
def settings(tmp_path):
    return Settings(
        env="test",
        database_url="sqlite://",
        artifacts_dir=str(tmp_path / "artifacts"),
        mailgun_signing_key="test-signing-key",
        inbound_domain="linktoreader.com",
        s3_email_bucket="inbound-mail",
        smtp_user="noreply@example.com",
        smtp_password="dummy-pass",
        smtp_from="noreply@example.com",
        delivery_deadline=30,
        prefer_linked_articles=False,
    )


@pytest.fixture
def session_factory():
    engine = create_db_engine("sqlite://")
    init_db(engine)
    yield create_session_factory(engine)
    engine.dispose()


@pytest.fixture
def store(session_factory):
    return ConversionStore(session_factory)


@pytest.fixture
def make_user(session_factory):
    def _make_user(
        user_id="user-1",
        personal_email="reader@linktoreader.com",
        kindle_email="reader@kindle.com",
        account_email="reader@example.com",
        subscription_status=None,
    ):
        with session_factory() as session:
            session.add(
                UserSettings(
                    user_id=user_id,
                    personal_email=personal_email,
                    kindle_email=kindle_email,
                    account_email=account_email,
                    notifications_enabled=True,
                )
            )
            if subscription_status:
                session.add(Subscription(user_id=user_id, status=subscription_status))
            session.commit()
        return user_id

    return _make_user


class FakeConverter:
    """Stands in for ebook-convert; records calls and can fail a number of times."""

    def __init__(self, failures=0, error=None):
        self.calls = []
        self.failures = failures
        self.error = error

    def __call__(self, html, metadata, options=None):
        self.calls.append((html, metadata))
        if self.failures:
            self.failures -= 1
            from nl2kindle.email.epub.converter import EpubConversionError

            raise self.error or EpubConversionError("ebook-convert failed with exit code 1: boom")
        data = b"PK-fake-epub:" + html.encode("utf-8")[:200]
        return GeneratedFile(content=data, filename="Article_1.epub", size=len(data))


@pytest.fixture
def fake_converter():
    return FakeConverter()


ARTICLE_HTML = """
<html>
<head>
  <title>The Quiet Revolution in Batteries</title>
  <meta name="author" content="Jane Writer">
</head>
<body>
  <article>
    <h1>The Quiet Revolution in Batteries</h1>
    <p>Solid state cells have been five years away for twenty years, but this time the
    factories are already being built and the first cars are on the road.</p>
    <p>Manufacturers have solved the dendrite problem with ceramic separators that keep
    lithium from growing spikes through the cell during fast charging.</p>
    <p>Costs are still high, yet analysts expect parity with conventional packs before the
    end of the decade as production scales up across three continents.</p>
  </article>
</body>
</html>
"""


@pytest.fixture
def article_html():
    return ARTICLE_HTML


@pytest.fixture
def make_converter():
    return FakeConverter
