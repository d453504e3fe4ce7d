"""Shared test fixtures for the mailwatch test suite."""

from __future__ import annotations

from datetime import datetime
from email.mime.base import MIMEBase
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email import encoders
from unittest.mock import AsyncMock

import pytest
from pydantic import SecretStr

from mailwatch.config import DatabaseConfig, GeminiConfig, ListenerConfig, SmsConfig
from mailwatch.db import Database
from mailwatch.errors import MailboxConnectionError
from mailwatch.models import ClassificationResult, Importance, MailboxStats, SmsResult, UserCredentials
from mailwatch.store import EmailStore, SettingsStore
from mailwatch.vault import CredentialVault


@pytest.fixture
def listener_config() -> ListenerConfig:
    return ListenerConfig(
        mailbox="INBOX",
        poll_interval_seconds=0.01,
        max_retries=3,
        backoff_base_seconds=0.001,
        backoff_max_seconds=0.01,
        lookback_hours=24,
    )


@pytest.fixture
def gemini_config() -> GeminiConfig:
    return GeminiConfig(
        api_key=SecretStr("test-key"),
        model="gemini-test",
        max_attempts=3,
        base_delay_seconds=6.0,
        max_delay_seconds=30.0,
    )


@pytest.fixture
def sms_config() -> SmsConfig:
    return SmsConfig(
        endpoint="https://sms.test.com/v1/send-sms",
        token=SecretStr("global-token"),
        numbers=["+244900000000"],
    )


@pytest.fixture
def credentials() -> UserCredentials:
    return UserCredentials(
        user_id="u1",
        mailbox_host="imap.test.com",
        mailbox_port=993,
        mailbox_user="testuser",
        mailbox_password=SecretStr("testpass"),
    )


@pytest.fixture
def vault() -> CredentialVault:
    return CredentialVault("test-passphrase")


@pytest.fixture
async def database(tmp_path):
    db = Database(DatabaseConfig(url=f"sqlite+aiosqlite:///{tmp_path}/mailwatch.db"))
    await db.create_all()
    yield db
    await db.close()


@pytest.fixture
def email_store(database: Database) -> EmailStore:
    return EmailStore(database)


@pytest.fixture
def settings_store(database: Database, vault: CredentialVault) -> SettingsStore:
    return SettingsStore(database, vault)


# ------------------------------------------------------------------
# Sample EML builders
# ------------------------------------------------------------------


def _build_plain_email(
    *,
    subject: str = "Test Subject",
    from_addr: str = "sender@example.com",
    to_addr: str = "recipient@example.com",
    body: str = "Hello, World!",
    message_id: str | None = "<test-001@example.com>",
) -> bytes:
    """Build a simple plain-text email as raw bytes."""
    msg = MIMEText(body, "plain")
    msg["Subject"] = subject
    msg["From"] = from_addr
    msg["To"] = to_addr
    if message_id:
        msg["Message-ID"] = message_id
    msg["Date"] = "Sun, 01 Jun 2025 12:00:00 +0000"
    return msg.as_bytes()


def _build_html_email(*, body_html: str = "<p>Hello</p>") -> bytes:
    msg = MIMEText(body_html, "html")
    msg["Subject"] = "HTML Email"
    msg["From"] = "sender@example.com"
    msg["To"] = "recipient@example.com"
    msg["Message-ID"] = "<html-001@example.com>"
    msg["Date"] = "Sun, 01 Jun 2025 12:00:00 +0000"
    return msg.as_bytes()


def _build_multipart_email(
    *,
    body_text: str = "Plain body",
    body_html: str = "<p>HTML body</p>",
    attachments: list[tuple[str, str, bytes]] | None = None,
) -> bytes:
    """Build a multipart email with text, HTML, and optional attachments."""
    msg = MIMEMultipart("mixed")
    msg["Subject"] = "Multipart Email"
    msg["From"] = "sender@example.com"
    msg["To"] = "recipient@example.com"
    msg["Message-ID"] = "<multi-001@example.com>"
    msg["Date"] = "Sun, 01 Jun 2025 12:00:00 +0000"

    alt = MIMEMultipart("alternative")
    alt.attach(MIMEText(body_text, "plain"))
    alt.attach(MIMEText(body_html, "html"))
    msg.attach(alt)

    for filename, content_type, payload in attachments or []:
        maintype, subtype = content_type.split("/", 1)
        part = MIMEBase(maintype, subtype)
        part.set_payload(payload)
        encoders.encode_base64(part)
        part.add_header("Content-Disposition", "attachment", filename=filename)
        msg.attach(part)

    return msg.as_bytes()


@pytest.fixture
def plain_eml_bytes() -> bytes:
    return _build_plain_email()


@pytest.fixture
def html_eml_bytes() -> bytes:
    return _build_html_email()


@pytest.fixture
def multipart_eml_bytes() -> bytes:
    return _build_multipart_email(
        attachments=[
            ("report.pdf", "application/pdf", b"%PDF-1.4 fake pdf content"),
            ("notes.txt", "text/plain", b"attached notes"),
        ],
    )


# ------------------------------------------------------------------
# Collaborator fakes
# ------------------------------------------------------------------


def _classification(
    importance: Importance = Importance.MEDIUM,
    summary: str = "A summary",
    confidence: float = 80,
    keywords: tuple[str, ...] = (),
) -> ClassificationResult:
    return ClassificationResult(
        importance=importance,
        summary=summary,
        confidence=confidence,
        keywords=keywords,
    )


def make_classifier_mock(result: ClassificationResult | None = None) -> AsyncMock:
    classifier = AsyncMock()
    classifier.analyze.return_value = result or _classification()
    return classifier


def make_gateway_mock(result: SmsResult | None = None) -> AsyncMock:
    gateway = AsyncMock()
    gateway.send_alert.return_value = result or SmsResult(success=True, message_id="sms-1")
    return gateway


def make_store_mock() -> AsyncMock:
    store = AsyncMock()
    store.get_processed_email.return_value = None
    return store


class FakeImapClient:
    """In-memory stand-in for :class:`mailwatch.imap_client.AsyncImapClient`.

    ``connect_failures`` connect attempts fail before one succeeds; a
    negative value makes every attempt fail.
    """

    def __init__(
        self,
        credentials: UserCredentials,
        mailbox: str = "INBOX",
        *,
        messages: dict[str, bytes] | None = None,
        connect_failures: int = 0,
    ) -> None:
        self.credentials = credentials
        self.mailbox = mailbox
        self.messages = dict(messages or {})
        self.seen: list[str] = []
        self.connect_failures = connect_failures
        self.connect_calls = 0
        self.search_calls = 0
        self.connect_times: list[datetime] = []
        self._authenticated = False

    @property
    def authenticated(self) -> bool:
        return self._authenticated

    async def connect(self) -> None:
        self.connect_calls += 1
        self.connect_times.append(datetime.now())
        if self.connect_failures < 0 or self.connect_calls <= self.connect_failures:
            raise MailboxConnectionError("connection refused")
        self._authenticated = True

    async def disconnect(self) -> None:
        self._authenticated = False

    async def search_unseen_since(self, since: datetime) -> list[str]:
        self.search_calls += 1
        return [uid for uid in self.messages if uid not in self.seen]

    async def fetch(self, uid: str) -> bytes | None:
        return self.messages.get(uid)

    async def mark_seen(self, uid: str) -> None:
        self.seen.append(uid)

    async def mailbox_stats(self) -> MailboxStats:
        if not self._authenticated:
            raise MailboxConnectionError("not connected")
        unread = [uid for uid in self.messages if uid not in self.seen]
        return MailboxStats(total_messages=len(self.messages), unread_messages=len(unread))
