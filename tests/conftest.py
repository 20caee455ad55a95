"""Shared test fixtures for the mail reflector test suite."""

from __future__ import annotations

from datetime import datetime
from email import encoders
from email.mime.base import MIMEBase
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from unittest.mock import MagicMock

import pytest
from imapclient.response_types import Address
from imapclient.response_types import Envelope as ImapEnvelope

from mail_reflector.config import (
    BackoffConfig,
    ImapConfig,
    ReflectorConfig,
    RetryConfig,
    SecurityMode,
    SmtpConfig,
)
from mail_reflector.envelope import Envelope
from mail_reflector.fetcher import MailSummary
from mail_reflector.registry import ProblematicUidRegistry
from mail_reflector.session import MailboxSession


@pytest.fixture
def imap_config() -> ImapConfig:
    return ImapConfig(
        host="imap.test.com",
        port=993,
        security=SecurityMode.SSL,
        username="reflector@test.com",
        password="imap-secret",
        mailbox="INBOX",
        poll_interval_seconds=0.05,
    )


@pytest.fixture
def smtp_config() -> SmtpConfig:
    return SmtpConfig(
        host="smtp.test.com",
        port=465,
        security=SecurityMode.SSL,
        username="reflector@test.com",
        password="smtp-secret",
    )


@pytest.fixture
def retry_config() -> RetryConfig:
    return RetryConfig(
        max_attempts=3,
        initial_wait_seconds=0.01,
        max_wait_seconds=0.1,
        multiplier=2.0,
    )


@pytest.fixture
def backoff_config() -> BackoffConfig:
    return BackoffConfig(initial_wait_seconds=0.01, max_wait_seconds=0.05, multiplier=2.0)


@pytest.fixture
def reflector_config(
    imap_config: ImapConfig,
    smtp_config: SmtpConfig,
    retry_config: RetryConfig,
    backoff_config: BackoffConfig,
) -> ReflectorConfig:
    return ReflectorConfig(
        senders=["board@org.example"],
        recipients=["alice@members.example", "bob@members.example"],
        subject_prefix="",
        idle_stop_grace_seconds=0.5,
        logout_grace_seconds=0.5,
        health_port=18080,
        imap=imap_config,
        smtp=smtp_config,
        retry=retry_config,
        backoff=backoff_config,
    )


@pytest.fixture
def registry() -> ProblematicUidRegistry:
    return ProblematicUidRegistry(threshold=3)


# ------------------------------------------------------------------
# Sample EML builders
# ------------------------------------------------------------------


def _build_plain_email(
    *,
    subject: str = "Update",
    from_addr: str = "Board <Board@Org.Example>",
    to_addr: str = "list@org.example",
    body: str = "Hello, members!",
    message_id: str = "<update-001@org.example>",
) -> bytes:
    """Build a simple plain-text email as raw bytes."""
    msg = MIMEText(body, "plain")
    msg["Subject"] = subject
    msg["From"] = from_addr
    msg["To"] = to_addr
    msg["Message-ID"] = message_id
    msg["Date"] = "Mon, 02 Jun 2025 12:00:00 +0000"
    return msg.as_bytes()


def _build_multipart_email(
    *,
    subject: str = "Multipart Update",
    from_addr: str = "board@org.example",
    body_text: str = "Plain body",
    body_html: str = "<p>HTML body</p>",
    attachments: list[tuple[str, str, bytes]] | None = None,
) -> bytes:
    """Build a multipart email with text, HTML, and optional attachments."""
    msg = MIMEMultipart("mixed")
    msg["Subject"] = subject
    msg["From"] = from_addr
    msg["To"] = "list@org.example"
    msg["Message-ID"] = "<multi-001@org.example>"
    msg["Date"] = "Mon, 02 Jun 2025 12:00:00 +0000"

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


def _imap_envelope(
    from_addr: str | None = "Board@Org.Example",
    *,
    name: str | None = "Board",
    subject: str = "Update",
) -> ImapEnvelope:
    """Build an ``imapclient`` ENVELOPE response for *from_addr*."""
    from_: tuple[Address, ...] = ()
    if from_addr is not None:
        mailbox, host = from_addr.split("@", 1)
        from_ = (
            Address(
                name.encode() if name else None,
                None,
                mailbox.encode(),
                host.encode(),
            ),
        )
    return ImapEnvelope(
        date=datetime(2025, 6, 2, 12, 0, 0),
        subject=subject.encode(),
        from_=from_,
        sender=from_,
        reply_to=from_,
        to=(),
        cc=(),
        bcc=(),
        in_reply_to=None,
        message_id=b"<update-001@org.example>",
    )


def _make_mock_client(
    *,
    messages: dict[int, tuple[ImapEnvelope, bytes]] | None = None,
    unseen: list[int] | None = None,
    capabilities: tuple[bytes, ...] = (b"IMAP4REV1", b"IDLE"),
    sent_folder: bytes | None = b"Sent",
) -> MagicMock:
    """Create a mock ``IMAPClient`` with programmed SEARCH/FETCH responses."""
    messages = messages or {}
    client = MagicMock()
    client.capabilities.return_value = capabilities
    client.login.return_value = b"Logged in"
    client.select_folder.return_value = {b"EXISTS": len(messages), b"UIDVALIDITY": 42}
    client.folder_status.return_value = {
        b"MESSAGES": len(messages),
        b"UNSEEN": len(unseen if unseen is not None else messages),
        b"UIDVALIDITY": 42,
    }
    client.search.return_value = list(unseen if unseen is not None else messages)
    client.find_special_folder.return_value = sent_folder
    client.logout.return_value = b"Logging out"
    client.noop.return_value = (b"OK", [])

    def _fetch(uids, data):
        out = {}
        for uid in uids:
            if uid not in messages:
                continue
            envelope, raw = messages[uid]
            item = {b"ENVELOPE": envelope, b"SEQ": uid}
            if "BODY.PEEK[]" in data:
                item[b"BODY[]"] = raw
            out[uid] = item
        return out

    client.fetch.side_effect = _fetch
    return client


@pytest.fixture
def make_session(imap_config: ImapConfig, registry: ProblematicUidRegistry):
    """Factory for a :class:`MailboxSession` around a mock client."""

    def _make(client: MagicMock, config: ImapConfig | None = None) -> MailboxSession:
        return MailboxSession(
            config or imap_config,
            client,
            capabilities=tuple(client.capabilities.return_value),
            registry=registry,
        )

    return _make


@pytest.fixture
def plain_eml_bytes() -> bytes:
    return _build_plain_email()


@pytest.fixture
def multipart_eml_bytes() -> bytes:
    return _build_multipart_email(
        attachments=[
            ("agenda.pdf", "application/pdf", b"%PDF-1.4 fake pdf content"),
            ("members.csv", "text/csv", b"name,email\nalice,alice@members.example\n"),
        ],
    )


@pytest.fixture
def summary() -> MailSummary:
    return MailSummary(
        uid=7,
        envelope=Envelope(
            from_addresses=["Board@Org.Example"],
            from_names=["Board"],
            subject="Update",
            message_id="<update-001@org.example>",
        ),
        text_body="Hello, members!",
        html_body="",
        attachments=[],
    )
