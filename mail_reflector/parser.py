"""MIME decomposition: a parsed message → (text body, HTML body, attachments)."""

from __future__ import annotations

import email
import email.message
import email.policy
from collections.abc import Iterator
from dataclasses import dataclass

import structlog

logger = structlog.get_logger()

DEFAULT_ATTACHMENT_NAME = "attachment"


@dataclass
class Attachment:
    """A single attachment extracted from a MIME message."""

    filename: str
    content_type: str
    payload: bytes


def decompose_bytes(raw_bytes: bytes) -> tuple[str, str, list[Attachment]]:
    """Parse raw RFC 822 bytes and :func:`decompose` the result."""
    msg = email.message_from_bytes(raw_bytes, policy=email.policy.default)
    return decompose(msg)


def decompose(entity: email.message.Message) -> tuple[str, str, list[Attachment]]:
    """Walk *entity* and return ``(text, html, attachments)``.

    * Parts with ``Content-Disposition: attachment`` are captured with
      their declared filename (``"attachment"`` if missing) and content
      type.  Their payload is transfer-decoded but otherwise unchanged,
      and their subtree is not searched for bodies.
    * Other ``text/plain`` and ``text/html`` parts are body candidates.
      When several parts share a type the last one wins.
    * A non-multipart entity is classified by its own content type.

    A part that cannot be decoded is skipped; the rest of the message is
    still returned.
    """
    text = ""
    html = ""
    attachments: list[Attachment] = []

    if not entity.is_multipart():
        content_type = entity.get_content_type()
        if content_type in ("text/plain", "text/html"):
            try:
                body = _read_text(entity)
            except (LookupError, ValueError, UnicodeError) as exc:
                logger.error("mime_body_unreadable", content_type=content_type, error=str(exc))
                return text, html, attachments
            if content_type == "text/plain":
                text = body
            else:
                html = body
        return text, html, attachments

    for part in _iter_leaves(entity):
        content_type = part.get_content_type()

        if part.get_content_disposition() == "attachment":
            try:
                payload = _read_bytes(part)
            except (LookupError, ValueError, UnicodeError) as exc:
                logger.warning(
                    "mime_attachment_unreadable",
                    filename=part.get_filename(),
                    error=str(exc),
                )
                continue
            attachments.append(
                Attachment(
                    filename=_filename(part),
                    content_type=content_type,
                    payload=payload,
                )
            )
            continue

        if content_type not in ("text/plain", "text/html"):
            continue
        try:
            body = _read_text(part)
        except (LookupError, ValueError, UnicodeError) as exc:
            logger.warning("mime_part_unreadable", content_type=content_type, error=str(exc))
            continue
        if content_type == "text/plain":
            text = body
        else:
            html = body

    return text, html, attachments


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------


def _iter_leaves(entity: email.message.Message) -> Iterator[email.message.Message]:
    """Yield leaf parts depth-first.  Attachments count as leaves."""
    payload = entity.get_payload()
    if not isinstance(payload, list):
        return
    for part in payload:
        if (
            part.get_content_disposition() != "attachment"
            and part.get_content_maintype() == "multipart"
        ):
            yield from _iter_leaves(part)
        else:
            yield part


def _filename(part: email.message.Message) -> str:
    try:
        name = part.get_filename()
    except (LookupError, ValueError):
        name = None
    return name or DEFAULT_ATTACHMENT_NAME


def _read_bytes(part: email.message.Message) -> bytes:
    if part.is_multipart():
        # message/rfc822 attachments: re-serialize the embedded message
        inner = part.get_payload()
        return b"".join(sub.as_bytes() for sub in inner)
    payload = part.get_payload(decode=True)
    if payload is None:
        raise ValueError("empty payload")
    return payload


def _read_text(part: email.message.Message) -> str:
    raw = part.get_payload(decode=True)
    if raw is None:
        return ""
    charset = part.get_content_charset() or "utf-8"
    try:
        return raw.decode(charset)
    except LookupError:
        # Unknown charset label
        return raw.decode("utf-8", errors="replace")
    except UnicodeDecodeError:
        return raw.decode(charset, errors="replace")
