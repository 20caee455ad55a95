"""Async IMAP session wrapping imapclient with asyncio.to_thread.

All blocking ``IMAPClient`` calls run in a worker thread under
``asyncio.wait_for``.  Only one command may be in flight at a time, and
IDLE counts as a command: nothing else can be issued until
:meth:`MailboxSession.idle_wait` has returned.
"""

from __future__ import annotations

import asyncio
import enum
import ssl
import threading
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, TypeVar

import structlog
from imapclient import IMAPClient
from imapclient.exceptions import IMAPClientAbortError, IMAPClientError
from imapclient.imapclient import SEEN, SENT, SocketTimeout

from .config import ImapConfig, SecurityMode
from .envelope import Envelope, envelope_from_imap
from .errors import (
    ConnectError,
    ContinuationUnsupportedError,
    MailboxNotFoundError,
    MessageFetchError,
    OperationTimeoutError,
    TransportError,
)
from .registry import ProblematicUidRegistry

logger = structlog.get_logger()

T = TypeVar("T")

_MAILBOX_MISSING_MARKERS = (
    "nonexistent",
    "does not exist",
    "doesn't exist",
    "no such mailbox",
    "unknown mailbox",
    "trycreate",
    "mailbox not found",
)
_CONTINUATION_MARKERS = ("continuation", "literal")
_IDLE_TICK_SECONDS = 1.0


class IdleOutcome(str, enum.Enum):
    """Why :meth:`MailboxSession.idle_wait` returned."""

    CHANGED = "changed"
    STOPPED = "stopped"
    RENEW = "renew"


@dataclass
class MailboxStatus:
    """Last-known state of the selected mailbox."""

    name: str
    readonly: bool
    exists: int = 0
    unseen: int | None = None
    uid_validity: int | None = None


@dataclass
class FetchedMessage:
    """Envelope and raw bytes of one message, from a single FETCH response."""

    uid: int
    envelope: Envelope
    raw_bytes: bytes


class MailboxSession:
    """One authenticated IMAP connection with a selected mailbox.

    Create with :meth:`connect`.  Use as an async context manager so
    :meth:`close` runs on every exit path::

        async with await MailboxSession.connect(config) as session:
            uids = await session.search_unseen()
    """

    def __init__(
        self,
        config: ImapConfig,
        client: IMAPClient,
        *,
        capabilities: tuple[bytes, ...] = (),
        registry: ProblematicUidRegistry | None = None,
    ) -> None:
        self._config = config
        self._client = client
        self._capabilities = capabilities
        self._registry = registry
        self._selected: tuple[str, bool] | None = None
        self._status: MailboxStatus | None = None
        self._status_lock = threading.Lock()
        self._in_flight: str | None = None
        self._usable = True
        self._closed = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @classmethod
    async def connect(
        cls,
        config: ImapConfig,
        *,
        registry: ProblematicUidRegistry | None = None,
    ) -> MailboxSession:
        """Connect, check capabilities, log in, and select the mailbox read-write.

        Raises :class:`ConnectError` on any failure.  Not retried here.
        """
        budget = config.connect_timeout_seconds + 3 * config.command_timeout_seconds
        pending = _PendingLogin()
        try:
            client, capabilities = await asyncio.wait_for(
                asyncio.to_thread(_open_client, config, pending), budget
            )
        except TimeoutError as exc:
            late = pending.abandon()
            if late is not None:
                await asyncio.to_thread(_shutdown_quietly, late)
            raise ConnectError(f"connecting to {config.host} timed out after {budget}s") from exc
        except (IMAPClientError, OSError, ssl.SSLError) as exc:
            raise ConnectError(f"connecting to {config.host} failed: {exc}") from exc

        session = cls(config, client, capabilities=capabilities, registry=registry)
        try:
            await session.select_mailbox(config.mailbox, readonly=False)
        except TransportError as exc:
            await session.close()
            raise ConnectError(f"selecting {config.mailbox} failed: {exc}") from exc

        logger.info(
            "imap_connected",
            host=config.host,
            port=config.port,
            mailbox=config.mailbox,
            idle_supported=session.has_idle,
        )
        return session

    async def close(self, grace: float | None = None) -> None:
        """Log out, or drop the socket if the session is unusable.

        Idempotent and never raises.  LOGOUT gets *grace* seconds (default:
        the command timeout) before the socket is dropped.
        """
        if self._closed:
            return
        self._closed = True
        if grace is None:
            grace = self._config.command_timeout_seconds
        if self._usable and self._in_flight is None:
            action = self._client.logout
        else:
            action = self._client.shutdown
        try:
            await asyncio.wait_for(asyncio.to_thread(action), grace)
        except TimeoutError:
            logger.warning("imap_logout_timed_out", host=self._config.host)
            await asyncio.to_thread(_shutdown_quietly, self._client)
        except (IMAPClientError, OSError, ssl.SSLError) as exc:
            logger.debug("imap_logout_failed", error=str(exc))
            await asyncio.to_thread(_shutdown_quietly, self._client)
        self._usable = False
        logger.info("imap_disconnected", host=self._config.host)

    async def __aenter__(self) -> MailboxSession:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def host(self) -> str:
        return self._config.host

    @property
    def mailbox(self) -> str | None:
        return self._selected[0] if self._selected else None

    @property
    def usable(self) -> bool:
        """False once a timeout or abort left the stream in an unknown state."""
        return self._usable and not self._closed

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def idling(self) -> bool:
        return self._in_flight == "idle"

    @property
    def status(self) -> MailboxStatus | None:
        with self._status_lock:
            return self._status

    @property
    def capabilities(self) -> tuple[bytes, ...]:
        """Capabilities advertised after login."""
        return self._capabilities

    @property
    def has_idle(self) -> bool:
        return b"IDLE" in self._capabilities

    def discard(self) -> None:
        """Mark the session unusable; :meth:`close` will drop the socket."""
        self._usable = False

    # ------------------------------------------------------------------
    # Mailbox
    # ------------------------------------------------------------------

    async def select_mailbox(self, name: str, readonly: bool = False) -> MailboxStatus:
        """SELECT (or EXAMINE) *name*, skipping the round-trip if already selected."""
        cached = self.status
        if self._selected == (name, readonly) and cached is not None:
            return cached

        response = await self._run("select", self._client.select_folder, name, readonly=readonly)
        status = MailboxStatus(
            name=name,
            readonly=readonly,
            exists=int(response.get(b"EXISTS", 0)),
            uid_validity=_int_or_none(response.get(b"UIDVALIDITY")),
        )
        self._selected = (name, readonly)
        self._set_status(status)
        if self._registry is not None:
            self._registry.observe_uid_validity(name, status.uid_validity)
        logger.debug(
            "imap_mailbox_selected",
            mailbox=name,
            readonly=readonly,
            exists=status.exists,
            uid_validity=status.uid_validity,
        )
        return status

    async def refresh_status(self) -> MailboxStatus | None:
        """Update the cached message / unseen counts with STATUS."""
        if self._selected is None:
            return None
        name, readonly = self._selected
        response = await self._run(
            "status",
            self._client.folder_status,
            name,
            [b"MESSAGES", b"UNSEEN", b"UIDVALIDITY"],
        )
        status = MailboxStatus(
            name=name,
            readonly=readonly,
            exists=int(response.get(b"MESSAGES", 0)),
            unseen=_int_or_none(response.get(b"UNSEEN")),
            uid_validity=_int_or_none(response.get(b"UIDVALIDITY")),
        )
        self._set_status(status)
        if self._registry is not None:
            self._registry.observe_uid_validity(name, status.uid_validity)
        return status

    async def is_connected(self) -> bool:
        """Check connection liveness with a NOOP command."""
        if not self.usable or self._in_flight is not None:
            return False
        try:
            await self._run("noop", self._client.noop)
        except TransportError:
            return False
        return True

    async def list_folders(self) -> list[str]:
        folders = await self._run("list", self._client.list_folders)
        return [_to_str(name) for _flags, _delimiter, name in folders]

    async def find_sent_folder(self) -> str | None:
        """Return the folder flagged ``\\Sent`` (RFC 6154), if the server advertises one."""
        name = await self._run("list_special", self._client.find_special_folder, SENT)
        return _to_str(name) if name else None

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def search_unseen(self) -> list[int]:
        """UIDs of all messages in the selected mailbox without ``\\Seen``."""
        uids = await self._run("search", self._client.search, ["UNSEEN"])
        return sorted(int(uid) for uid in uids)

    async def fetch_envelopes(self, uids: Sequence[int]) -> dict[int, Envelope | None]:
        """Fetch ENVELOPE for *uids* under the validation timeout.

        UIDs the server does not return map to nothing; UIDs with an
        unusable envelope map to ``None``.
        """
        if not uids:
            return {}
        response = await self._run(
            "validate",
            self._client.fetch,
            list(uids),
            ["ENVELOPE"],
            timeout=self._config.validation_timeout_seconds,
        )
        return {
            int(uid): envelope_from_imap(data.get(b"ENVELOPE"))
            for uid, data in response.items()
        }

    async def fetch_message(self, uid: int) -> FetchedMessage:
        """Fetch envelope and full body of *uid* without setting ``\\Seen``.

        The whole response is read before this returns, so nothing is left
        on the wire even if the caller discards the result.
        """
        response = await self._run(
            "fetch",
            self._client.fetch,
            [uid],
            ["ENVELOPE", "BODY.PEEK[]"],
            timeout=self._config.message_timeout_seconds,
        )
        data = response.get(uid)
        if not data:
            raise MessageFetchError(uid, "server returned no data")
        raw_bytes = data.get(b"BODY[]")
        if raw_bytes is None:
            raise MessageFetchError(uid, "no body in response")
        envelope = envelope_from_imap(data.get(b"ENVELOPE"))
        if envelope is None:
            raise MessageFetchError(uid, "no envelope in response")
        return FetchedMessage(uid=uid, envelope=envelope, raw_bytes=bytes(raw_bytes))

    async def mark_seen(self, uid: int) -> None:
        """Add ``\\Seen`` to *uid* (``UID STORE +FLAGS.SILENT``)."""
        await self._run("store", self._client.add_flags, [uid], [SEEN], silent=True)
        logger.debug("imap_marked_seen", uid=uid)

    async def append(self, folder: str, raw_bytes: bytes) -> None:
        """APPEND *raw_bytes* to *folder* flagged ``\\Seen``."""
        await self._run(
            "append",
            self._client.append,
            folder,
            raw_bytes,
            flags=(SEEN,),
            msg_time=datetime.now(UTC),
        )

    # ------------------------------------------------------------------
    # IDLE
    # ------------------------------------------------------------------

    async def idle_wait(self, stop: threading.Event, renew_after: float) -> IdleOutcome:
        """Block in IDLE until the mailbox changes, *stop* is set, or *renew_after* elapses.

        DONE is always sent before this returns, so the session is ready
        for ordinary commands afterwards.
        """
        return await self._run(
            "idle",
            self._idle_wait_sync,
            stop,
            renew_after,
            timeout=renew_after + self._config.command_timeout_seconds,
        )

    def _idle_wait_sync(self, stop: threading.Event, renew_after: float) -> IdleOutcome:
        client = self._client
        client.idle()
        deadline = time.monotonic() + renew_after
        outcome = IdleOutcome.STOPPED
        try:
            while not stop.is_set():
                responses = client.idle_check(timeout=_IDLE_TICK_SECONDS)
                if _server_said_bye(responses):
                    raise IMAPClientAbortError("server closed the connection during IDLE")
                if _mailbox_changed(responses):
                    logger.info("imap_mailbox_changed", responses=len(responses))
                    outcome = IdleOutcome.CHANGED
                    break
                if time.monotonic() >= deadline:
                    outcome = IdleOutcome.RENEW
                    break
        finally:
            client.idle_done()
        return outcome

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _set_status(self, status: MailboxStatus) -> None:
        with self._status_lock:
            self._status = status

    async def _run(
        self,
        op: str,
        func: Callable[..., T],
        *args: Any,
        timeout: float | None = None,
        **kwargs: Any,
    ) -> T:
        """Run one blocking IMAP call in a thread and translate its errors."""
        if self._closed:
            raise TransportError(f"{op}: session is closed")
        if not self._usable:
            raise TransportError(f"{op}: session is no longer usable")
        if self._in_flight is not None:
            raise TransportError(f"{op}: '{self._in_flight}' is still in flight")

        limit = timeout if timeout is not None else self._config.command_timeout_seconds
        self._in_flight = op
        try:
            return await asyncio.wait_for(asyncio.to_thread(func, *args, **kwargs), limit)
        except TimeoutError as exc:
            # Also covers socket timeouts raised inside the thread
            self._usable = False
            raise OperationTimeoutError(f"{op} timed out after {limit}s") from exc
        except asyncio.CancelledError:
            self._usable = False
            raise
        except IMAPClientAbortError as exc:
            self._usable = False
            raise _classify_error(op, exc) from exc
        except IMAPClientError as exc:
            raise _classify_error(op, exc) from exc
        except (OSError, ssl.SSLError) as exc:
            self._usable = False
            raise TransportError(f"{op} failed: {exc}") from exc
        finally:
            if self._usable:
                self._in_flight = None


# ------------------------------------------------------------------
# Module helpers (run in thread)
# ------------------------------------------------------------------


class _PendingLogin:
    """Hands a logged-in client over unless the caller stopped waiting for it."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._abandoned = False
        self._client: IMAPClient | None = None

    def deliver(self, client: IMAPClient) -> bool:
        with self._lock:
            if self._abandoned:
                return False
            self._client = client
            return True

    def abandon(self) -> IMAPClient | None:
        with self._lock:
            self._abandoned = True
            client, self._client = self._client, None
            return client


def _open_client(
    config: ImapConfig, pending: _PendingLogin
) -> tuple[IMAPClient, tuple[bytes, ...]]:
    """Open the connection, run the capability health check, and log in.

    Returns the client and its post-login capabilities.  A login that
    finishes after the caller gave up is shut down here.
    """
    ssl_context = ssl.create_default_context()
    client = IMAPClient(
        config.host,
        port=config.port,
        ssl=config.security is SecurityMode.SSL,
        ssl_context=ssl_context,
        timeout=SocketTimeout(
            connect=config.connect_timeout_seconds,
            read=config.command_timeout_seconds,
        ),
    )
    try:
        if config.security is SecurityMode.STARTTLS:
            client.starttls(ssl_context)
        client.capabilities()
        client.login(config.username, config.password.get_secret_value())
        capabilities = tuple(client.capabilities())
    except Exception:
        _shutdown_quietly(client)
        raise
    if not pending.deliver(client):
        logger.warning("imap_late_login_closed", host=config.host)
        _shutdown_quietly(client)
    return client, capabilities


def _shutdown_quietly(client: IMAPClient) -> None:
    try:
        client.shutdown()
    except (IMAPClientError, OSError) as exc:
        logger.debug("imap_socket_shutdown_failed", error=str(exc))


def _classify_error(op: str, exc: IMAPClientError) -> TransportError:
    text = str(exc).lower()
    if any(marker in text for marker in _CONTINUATION_MARKERS):
        return ContinuationUnsupportedError(f"{op} failed: {exc}")
    if any(marker in text for marker in _MAILBOX_MISSING_MARKERS):
        return MailboxNotFoundError(f"{op} failed: {exc}")
    return TransportError(f"{op} failed: {exc}")


def _mailbox_changed(responses: list[tuple[Any, ...]]) -> bool:
    return any(len(r) >= 2 and r[1] in (b"EXISTS", b"RECENT") for r in responses)


def _server_said_bye(responses: list[tuple[Any, ...]]) -> bool:
    return any(r and r[0] == b"BYE" for r in responses)


def _int_or_none(value: Any) -> int | None:
    return int(value) if value is not None else None


def _to_str(value: bytes | str) -> str:
    return value.decode("utf-8", errors="replace") if isinstance(value, bytes) else value
