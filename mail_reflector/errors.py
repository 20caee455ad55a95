"""Exception taxonomy for the reflector.

Callers decide between *reconnect*, *skip* and *degrade* based on the
exception type, never on the message text.
"""

from __future__ import annotations


class ReflectorError(Exception):
    """Base class for all reflector errors."""


class ConnectError(ReflectorError):
    """Connecting, authenticating or selecting the mailbox failed.

    Fatal for the current attempt.  The watcher retries with backoff.
    """


class TransportError(ReflectorError):
    """Generic I/O failure on an established IMAP session."""


class OperationTimeoutError(TransportError):
    """An IMAP command did not finish within its timeout.

    The response may still be in flight, so the session that raised this is
    no longer usable.
    """


class MailboxNotFoundError(TransportError):
    """The server reported that the requested mailbox does not exist."""


class ContinuationUnsupportedError(TransportError):
    """The server refused the continuation request of a literal (APPEND)."""


class FetchError(ReflectorError):
    """The server rejected a search or envelope validation request."""


class MessageFetchError(ReflectorError):
    """A single message could not be fetched or parsed."""

    def __init__(self, uid: int, reason: str) -> None:
        super().__init__(f"message {uid}: {reason}")
        self.uid = uid
        self.reason = reason


class SendError(ReflectorError):
    """Handing a message to the outbound SMTP relay failed."""
