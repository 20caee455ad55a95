"""Reflector configuration loaded from environment variables.

Uses pydantic-settings so every field can be overridden via env vars.
Each section has its own prefix (``IMAP_``, ``SMTP_``, ``RETRY_``,
``BACKOFF_``, ``REFLECTOR_``).
"""

from __future__ import annotations

import json
from enum import Enum
from typing import Annotated, Any

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, NoDecode

DEFAULT_SENT_FOLDERS: list[str] = [
    "Sent",
    "Sent Items",
    "Sent Messages",
    "Gesendet",
    "Gesendete Elemente",
    "Gesendete Objekte",
    "INBOX.Sent",
    "INBOX.Sent Items",
    "INBOX.Gesendet",
]


class SecurityMode(str, Enum):
    """How the transport is secured."""

    SSL = "ssl"
    STARTTLS = "starttls"


class ImapConfig(BaseSettings):
    """Inbound IMAP server settings."""

    model_config = {"env_prefix": "IMAP_"}

    host: str = Field(description="IMAP server hostname")
    port: int = Field(default=993, description="IMAP server port")
    security: SecurityMode = Field(
        default=SecurityMode.SSL,
        description="Implicit TLS (ssl) or STARTTLS upgrade (starttls)",
    )
    username: str = Field(description="IMAP login username")
    password: SecretStr = Field(description="IMAP login password")
    mailbox: str = Field(default="INBOX", description="Mailbox to watch")
    connect_timeout_seconds: float = Field(
        default=10.0,
        description="TCP + TLS connect timeout",
    )
    command_timeout_seconds: float = Field(
        default=30.0,
        description="Timeout for ordinary IMAP commands (search, store, append)",
    )
    validation_timeout_seconds: float = Field(
        default=10.0,
        description="Timeout for the envelope-only UID validation fetch",
    )
    message_timeout_seconds: float = Field(
        default=15.0,
        description="Timeout for fetching one full message",
    )
    poll_interval_seconds: float = Field(
        default=30.0,
        description="Seconds between checks when the server lacks IDLE",
    )
    idle_renew_seconds: float = Field(
        default=1500.0,
        description="Re-issue IDLE after this long (servers drop IDLE after ~30 min)",
    )


class SmtpConfig(BaseSettings):
    """Outbound SMTP relay settings."""

    model_config = {"env_prefix": "SMTP_"}

    host: str = Field(description="SMTP server hostname")
    port: int = Field(default=465, description="SMTP server port")
    security: SecurityMode = Field(
        default=SecurityMode.SSL,
        description="Implicit TLS (ssl) or STARTTLS with relaxed verification (starttls)",
    )
    username: str = Field(description="SMTP login username")
    password: SecretStr = Field(description="SMTP login password")
    from_address: str | None = Field(
        default=None,
        description="Outbound From address (defaults to the SMTP username)",
    )
    timeout_seconds: float = Field(default=30.0, description="SMTP operation timeout")


class RetryConfig(BaseSettings):
    """Retry settings for search / validation inside one pass (tenacity)."""

    model_config = {"env_prefix": "RETRY_"}

    max_attempts: int = Field(default=3, description="Maximum fetch attempts per pass")
    initial_wait_seconds: float = Field(default=1.0, description="Initial backoff wait")
    max_wait_seconds: float = Field(default=30.0, description="Maximum backoff wait")
    multiplier: float = Field(default=2.0, description="Exponential backoff multiplier")


class BackoffConfig(BaseSettings):
    """Reconnect backoff for the watch loop (tenacity)."""

    model_config = {"env_prefix": "BACKOFF_"}

    initial_wait_seconds: float = Field(default=5.0, description="First reconnect delay")
    max_wait_seconds: float = Field(default=300.0, description="Reconnect delay cap")
    multiplier: float = Field(default=2.0, description="Exponential backoff multiplier")


class ReflectorConfig(BaseSettings):
    """Root configuration for one watched mailbox.

    Nested configs are populated from their own env-var prefixes.
    """

    model_config = {"env_prefix": "REFLECTOR_"}

    senders: Annotated[list[str], NoDecode] = Field(
        default_factory=list,
        description="Allowed sender addresses (comma-separated in env)",
    )
    recipients: Annotated[list[str], NoDecode] = Field(
        default_factory=list,
        description="Bcc recipients of reflected mail (comma-separated in env)",
    )
    subject_prefix: str = Field(default="", description="Optional subject prefix")
    sent_folders: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: list(DEFAULT_SENT_FOLDERS),
        description="Candidate folders for archiving sent copies, in order",
    )
    problematic_threshold: int = Field(
        default=3,
        ge=1,
        description="Consecutive fetch failures after which a UID is skipped",
    )
    idle_stop_grace_seconds: float = Field(
        default=5.0,
        description="How long to wait for IDLE to terminate after DONE",
    )
    logout_grace_seconds: float = Field(
        default=3.0,
        description="How long to wait for LOGOUT before dropping the socket",
    )
    health_enabled: bool = Field(default=True, description="Serve health endpoints in serve mode")
    health_port: int = Field(default=8080, description="Port for health endpoints")
    log_level: str = Field(default="INFO", description="Root log level")
    log_json: bool = Field(default=True, description="Render logs as JSON lines")

    imap: ImapConfig = Field(default_factory=ImapConfig)
    smtp: SmtpConfig = Field(default_factory=SmtpConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    backoff: BackoffConfig = Field(default_factory=BackoffConfig)

    @field_validator("senders", "recipients", "sent_folders", mode="before")
    @classmethod
    def _split_list(cls, value: Any) -> Any:
        if isinstance(value, str):
            if value.lstrip().startswith("["):
                return json.loads(value)
            return [item.strip() for item in value.split(",") if item.strip()]
        return value


def config_warnings(config: ReflectorConfig) -> list[str]:
    """Return human-readable warnings about a loaded configuration."""
    warnings: list[str] = []
    if not config.senders:
        warnings.append("no sender addresses configured, no mail will be forwarded")
    elif any(sender != sender.lower() for sender in config.senders):
        warnings.append(
            "sender addresses contain uppercase letters, matching is case-insensitive"
        )
    if not config.recipients:
        warnings.append("no recipients configured, forwarding will fail")
    return warnings
