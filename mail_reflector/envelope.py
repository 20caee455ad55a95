"""Envelope model and sender matching.

Envelopes come from the server (``FETCH ENVELOPE``), so the sender can be
checked before any message body is downloaded.
"""

from __future__ import annotations

import email.errors
import email.header
import email.utils
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


@dataclass(frozen=True)
class Envelope:
    """Read-only message metadata."""

    from_addresses: list[str] = field(default_factory=list)
    from_names: list[str] = field(default_factory=list)
    subject: str = ""
    date: datetime | None = None
    message_id: str = ""

    @property
    def from_address(self) -> str | None:
        """Address portion of the first From entry, case preserved."""
        return self.from_addresses[0] if self.from_addresses else None

    @property
    def display_from(self) -> str:
        if not self.from_addresses:
            return "unknown"
        name = self.from_names[0] if self.from_names else ""
        return email.utils.formataddr((name, self.from_addresses[0]))


class SenderFilter:
    """Case-insensitive allow-list of sender addresses.

    Only the address portion is compared; display names are ignored, so
    ``"Board <Board@Org.Example>"`` matches ``board@org.example``.
    """

    def __init__(self, addresses: Iterable[str]) -> None:
        normalized = set()
        for raw in addresses:
            _, addr = email.utils.parseaddr(raw)
            if addr:
                normalized.add(addr.strip().lower())
        self._addresses = frozenset(normalized)

    @property
    def addresses(self) -> frozenset[str]:
        return self._addresses

    def __len__(self) -> int:
        return len(self._addresses)

    def __repr__(self) -> str:
        return f"SenderFilter({sorted(self._addresses)!r})"

    def matches_address(self, address: str | None) -> bool:
        if not address:
            return False
        _, addr = email.utils.parseaddr(address)
        return addr.strip().lower() in self._addresses

    def matches(self, envelope: Envelope | None) -> bool:
        """True if the first From address of *envelope* is allowed."""
        if envelope is None:
            return False
        return self.matches_address(envelope.from_address)


# ------------------------------------------------------------------
# Builders
# ------------------------------------------------------------------


def envelope_from_imap(raw: Any) -> Envelope | None:
    """Convert an ``imapclient.response_types.Envelope`` to :class:`Envelope`.

    Returns ``None`` when *raw* is missing, which the fetcher treats as a
    stale UID.
    """
    if raw is None:
        return None

    addresses: list[str] = []
    names: list[str] = []
    for addr in raw.from_ or ():
        # Group syntax markers carry no host
        if addr is None or addr.mailbox is None or addr.host is None:
            continue
        mailbox = _to_text(addr.mailbox)
        host = _to_text(addr.host)
        addresses.append(f"{mailbox}@{host}")
        names.append(_decode_header_value(addr.name))

    return Envelope(
        from_addresses=addresses,
        from_names=names,
        subject=_decode_header_value(raw.subject),
        date=raw.date,
        message_id=_to_text(raw.message_id),
    )


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------


def _to_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


def _decode_header_value(value: Any) -> str:
    """Decode RFC 2047 encoded-words; fall back to the raw text."""
    text = _to_text(value)
    if not text:
        return ""
    try:
        return str(email.header.make_header(email.header.decode_header(text)))
    except (email.errors.HeaderParseError, LookupError, UnicodeDecodeError):
        return text
