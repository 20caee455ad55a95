"""Mail Reflector: relay allow-listed mail from an IMAP mailbox over SMTP.

Public API re-exported here for convenience::

    from mail_reflector import ReflectorConfig, Watcher, check_once
"""

from .config import (
    BackoffConfig,
    ImapConfig,
    ReflectorConfig,
    RetryConfig,
    SecurityMode,
    SmtpConfig,
    config_warnings,
)
from .envelope import Envelope, SenderFilter
from .errors import (
    ConnectError,
    ContinuationUnsupportedError,
    FetchError,
    MailboxNotFoundError,
    MessageFetchError,
    OperationTimeoutError,
    ReflectorError,
    SendError,
    TransportError,
)
from .fetcher import MailSummary, MessageFetcher
from .health import create_health_app
from .logging import setup_logging
from .models import ArchiveOutcome, ForwardResult, PassResult, WatcherState, WatcherStatus
from .parser import Attachment, decompose, decompose_bytes
from .pipeline import check_once, run_pass
from .registry import ProblematicUidRegistry
from .relay import Relay
from .session import MailboxSession
from .watcher import Watcher

__all__ = [
    "ArchiveOutcome",
    "Attachment",
    "BackoffConfig",
    "ConnectError",
    "ContinuationUnsupportedError",
    "Envelope",
    "FetchError",
    "ForwardResult",
    "ImapConfig",
    "MailSummary",
    "MailboxNotFoundError",
    "MailboxSession",
    "MessageFetchError",
    "MessageFetcher",
    "OperationTimeoutError",
    "PassResult",
    "ProblematicUidRegistry",
    "ReflectorConfig",
    "ReflectorError",
    "Relay",
    "RetryConfig",
    "SecurityMode",
    "SendError",
    "SenderFilter",
    "SmtpConfig",
    "TransportError",
    "Watcher",
    "WatcherState",
    "WatcherStatus",
    "check_once",
    "config_warnings",
    "create_health_app",
    "decompose",
    "decompose_bytes",
    "run_pass",
    "setup_logging",
]
