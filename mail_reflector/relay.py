"""Relay: rebuild a matched message, send it over SMTP, archive a copy."""

from __future__ import annotations

import email
import email.errors
import email.policy
import email.utils
import re
from collections.abc import Sequence
from email.message import EmailMessage

import aiosmtplib
import structlog

from .config import DEFAULT_SENT_FOLDERS, SecurityMode, SmtpConfig
from .errors import (
    ContinuationUnsupportedError,
    MailboxNotFoundError,
    SendError,
    TransportError,
)
from .fetcher import MailSummary
from .models import ArchiveOutcome, ForwardResult
from .parser import Attachment
from .session import MailboxSession

logger = structlog.get_logger()

_LINE_BREAKS = re.compile(r"[\r\n]+")


class Relay:
    """Forwards :class:`MailSummary` objects to a fixed recipient list.

    The outgoing message is sent *from* the SMTP identity, addressed *to*
    the original sender (who also gets Reply-To), with the real
    recipients in Bcc.  After a successful send a copy is appended to the
    first Sent folder that accepts it.  Archival is best-effort and never
    turns a successful send into a failure.
    """

    def __init__(
        self,
        config: SmtpConfig,
        sent_folders: Sequence[str] | None = None,
    ) -> None:
        self._config = config
        if sent_folders is None:
            sent_folders = DEFAULT_SENT_FOLDERS
        self._sent_folders = list(sent_folders)
        self._warned_insecure = False

    @property
    def from_address(self) -> str:
        return self._config.from_address or self._config.username

    # ------------------------------------------------------------------
    # Compose
    # ------------------------------------------------------------------

    def compose(
        self,
        summary: MailSummary,
        recipients: Sequence[str],
        subject_prefix: str = "",
    ) -> EmailMessage:
        """Build the outgoing message for *summary*.

        Raises :class:`SendError` when the original has no sender address,
        there is nobody to send to, or the message cannot be built from the
        original's headers and parts.
        """
        sender = summary.envelope.from_address
        if not sender:
            raise SendError(f"message {summary.uid} has no sender address")
        if not recipients:
            raise SendError("no recipients configured")

        subject = _single_line(summary.envelope.subject)
        if subject_prefix:
            subject = f"{subject_prefix} {subject}"

        msg = EmailMessage()
        try:
            msg["From"] = self.from_address
            msg["To"] = sender
            msg["Reply-To"] = sender
            msg["Bcc"] = ", ".join(recipients)
            msg["Subject"] = subject
            msg["Date"] = email.utils.formatdate(localtime=True)
            msg["Message-ID"] = email.utils.make_msgid()

            msg.set_content(summary.text_body)
            if summary.html_body:
                msg.add_alternative(summary.html_body, subtype="html")
            for attachment in summary.attachments:
                _attach(msg, attachment)
        except (ValueError, TypeError, LookupError, email.errors.MessageError) as exc:
            raise SendError(f"message {summary.uid} could not be rebuilt: {exc}") from exc
        return msg

    # ------------------------------------------------------------------
    # Send + archive
    # ------------------------------------------------------------------

    async def forward(
        self,
        session: MailboxSession,
        summary: MailSummary,
        recipients: Sequence[str],
        subject_prefix: str = "",
    ) -> ForwardResult:
        """Send *summary* to *recipients* and archive a copy on *session*.

        Raises :class:`SendError` if the message could not be handed to the
        SMTP server.  Not retried here.
        """
        msg = self.compose(summary, recipients, subject_prefix)
        # Serialize before sending; the archived copy keeps its Bcc header
        archive_bytes = msg.as_bytes()

        await self.send(msg)
        result = ForwardResult(
            uid=summary.uid,
            sent=True,
            subject=str(msg["Subject"]),
            recipient_count=len(recipients),
        )
        logger.info(
            "message_forwarded",
            uid=summary.uid,
            sender=summary.envelope.from_address,
            subject=result.subject,
            recipients=result.recipient_count,
            attachments=len(summary.attachments),
        )

        await self._archive(session, archive_bytes, result)
        return result

    async def send(self, msg: EmailMessage) -> None:
        """Hand *msg* to the configured SMTP server."""
        cfg = self._config
        if cfg.security is SecurityMode.STARTTLS:
            if not self._warned_insecure:
                logger.warning(
                    "smtp_certificate_verification_disabled",
                    host=cfg.host,
                    port=cfg.port,
                )
                self._warned_insecure = True
            tls_kwargs = {"use_tls": False, "start_tls": True, "validate_certs": False}
        else:
            tls_kwargs = {"use_tls": True, "start_tls": False, "validate_certs": True}

        try:
            await aiosmtplib.send(
                msg,
                hostname=cfg.host,
                port=cfg.port,
                username=cfg.username,
                password=cfg.password.get_secret_value(),
                timeout=cfg.timeout_seconds,
                **tls_kwargs,
            )
        except (aiosmtplib.SMTPException, OSError) as exc:
            logger.error("smtp_send_failed", host=cfg.host, error=str(exc))
            raise SendError(f"sending via {cfg.host}:{cfg.port} failed: {exc}") from exc

    async def _archive(
        self,
        session: MailboxSession,
        raw_bytes: bytes,
        result: ForwardResult,
    ) -> None:
        if not session.usable:
            result.archive = ArchiveOutcome.SKIPPED
            return

        for folder in await self._candidate_folders(session):
            try:
                await session.append(folder, raw_bytes)
            except MailboxNotFoundError:
                logger.debug("archive_folder_missing", folder=folder)
                continue
            except ContinuationUnsupportedError as exc:
                logger.debug("archive_unsupported", folder=folder, error=str(exc))
                result.archive = ArchiveOutcome.UNSUPPORTED
                result.error = str(exc)
                return
            except TransportError as exc:
                logger.warning("archive_append_failed", folder=folder, error=str(exc))
                result.error = str(exc)
                if not session.usable:
                    break
                continue

            result.archive = ArchiveOutcome.ARCHIVED
            result.archive_folder = folder
            logger.info("message_archived", uid=result.uid, folder=folder)
            return

        result.archive = ArchiveOutcome.FAILED
        logger.warning("archive_failed", uid=result.uid, error=result.error)

    async def _candidate_folders(self, session: MailboxSession) -> list[str]:
        candidates: list[str] = []
        try:
            special = await session.find_sent_folder()
        except TransportError as exc:
            logger.debug("sent_folder_lookup_failed", error=str(exc))
            special = None
        if special:
            candidates.append(special)
        for folder in self._sent_folders:
            if folder not in candidates:
                candidates.append(folder)
        return candidates


def _single_line(value: str) -> str:
    """Collapse CR/LF runs, which header values must not contain."""
    return _LINE_BREAKS.sub(" ", value).strip()


def _attach(msg: EmailMessage, attachment: Attachment) -> None:
    filename = _single_line(attachment.filename) or "attachment"
    maintype, _, subtype = attachment.content_type.partition("/")

    if (maintype, subtype) == ("message", "rfc822"):
        # Embedded messages must stay 7bit/8bit, so attach the parsed message
        inner = email.message_from_bytes(attachment.payload, policy=email.policy.default)
        msg.add_attachment(inner, filename=filename)
        return

    if not maintype or not subtype or maintype in ("multipart", "message"):
        maintype, subtype = "application", "octet-stream"
    msg.add_attachment(
        attachment.payload,
        maintype=maintype,
        subtype=subtype,
        filename=filename,
    )
