"""Result and status models reported by passes and the watcher."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class WatcherState(str, Enum):
    """Runtime state of the watch loop."""

    DISCONNECTED = "disconnected"
    IDLE = "idle"
    PROCESSING = "processing"
    SHUTTING_DOWN = "shutting_down"


class ArchiveOutcome(str, Enum):
    """What happened when copying a forwarded message to the Sent folder."""

    ARCHIVED = "archived"
    UNSUPPORTED = "unsupported"
    FAILED = "failed"
    SKIPPED = "skipped"


class ForwardResult(BaseModel):
    """Outcome of relaying one message."""

    uid: int = Field(description="UID of the original message")
    sent: bool = Field(default=False, description="True once SMTP accepted the message")
    subject: str = Field(default="", description="Subject used for the forwarded copy")
    recipient_count: int = Field(default=0, description="Number of Bcc recipients")
    archive: ArchiveOutcome = Field(
        default=ArchiveOutcome.SKIPPED,
        description="Result of the best-effort Sent archival",
    )
    archive_folder: str | None = Field(
        default=None,
        description="Folder the copy was appended to, if any",
    )
    error: str | None = Field(default=None, description="Last archival error, if any")


class PassResult(BaseModel):
    """Counts for one fetch-forward-acknowledge pass."""

    trigger: str = Field(description="What started the pass (initial, idle, poll, manual)")
    found: int = Field(default=0, description="Matching messages fetched")
    forwarded: int = Field(default=0, description="Messages sent over SMTP")
    failed: int = Field(default=0, description="Messages that failed to fetch or send")
    skipped: int = Field(default=0, description="Messages skipped as problematic")
    mark_seen_failed: int = Field(
        default=0,
        description="Forwarded messages whose \\Seen flag could not be set",
    )
    started_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        description="When the pass started (UTC)",
    )
    interrupted: bool = Field(
        default=False,
        description="True if the session broke and the pass stopped early",
    )
    mailbox_messages: int | None = Field(
        default=None,
        description="Messages in the mailbox after the pass (STATUS)",
    )
    mailbox_unseen: int | None = Field(
        default=None,
        description="Unseen messages left after the pass (STATUS)",
    )
    finished_at: datetime | None = Field(default=None, description="When the pass ended (UTC)")


class WatcherStatus(BaseModel):
    """Response model for the /health endpoint."""

    state: WatcherState = Field(description="Current watcher state")
    uptime_seconds: float = Field(description="Seconds since the watcher started")
    host: str = Field(description="IMAP server")
    mailbox: str | None = Field(default=None, description="Selected mailbox while connected")
    idle_supported: bool | None = Field(
        default=None,
        description="Whether the server advertised IDLE on the last connect",
    )
    mailbox_messages: int | None = Field(
        default=None,
        description="Last-known message count of the watched mailbox",
    )
    mailbox_unseen: int | None = Field(
        default=None,
        description="Last-known unseen count of the watched mailbox",
    )
    last_pass: PassResult | None = Field(default=None, description="Most recent pass")
    totals: dict[str, int] = Field(
        default_factory=dict,
        description="Counters accumulated since start",
    )
    details: dict[str, Any] = Field(
        default_factory=dict,
        description="Extra runtime details (blocked UIDs, reconnects)",
    )
