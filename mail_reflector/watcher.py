"""Watcher: keeps a session open, waits for new mail, and runs passes."""

from __future__ import annotations

import asyncio
import threading
import time
from collections.abc import Awaitable, Callable

import structlog

from .config import ReflectorConfig
from .errors import ConnectError, FetchError, TransportError
from .fetcher import MessageFetcher
from .models import PassResult, WatcherState, WatcherStatus
from .pipeline import run_pass
from .registry import ProblematicUidRegistry
from .relay import Relay
from .retry import interruptible_sleep, reconnect_delay, reconnect_retrying
from .session import IdleOutcome, MailboxSession

logger = structlog.get_logger()

SessionFactory = Callable[..., Awaitable[MailboxSession]]

_TOTAL_KEYS = ("passes", "found", "forwarded", "failed", "skipped", "mark_seen_failed")


class Watcher:
    """Long-running watch loop for one mailbox.

    ``run()`` cycles through the states::

        DISCONNECTED --connect--> PROCESSING (initial pass) --> IDLE
        IDLE --new mail / poll tick / manual trigger--> PROCESSING --> IDLE
        any --transport error--> DISCONNECTED (reconnect with backoff)
        any --shutdown--> SHUTTING_DOWN

    Only one pass runs at a time.  :meth:`request_pass` queues at most one
    trigger and drops it while a pass is running or one is already queued.
    """

    def __init__(
        self,
        config: ReflectorConfig,
        *,
        registry: ProblematicUidRegistry | None = None,
        session_factory: SessionFactory = MailboxSession.connect,
    ) -> None:
        self.config = config
        self.registry = registry or ProblematicUidRegistry(config.problematic_threshold)
        self.start_time: float = time.monotonic()

        self._fetcher = MessageFetcher(self.registry)
        self._relay = Relay(config.smtp, config.sent_folders)
        self._session_factory = session_factory
        self._state = WatcherState.DISCONNECTED
        self._session: MailboxSession | None = None
        self._idle_supported: bool | None = None
        self._triggers: asyncio.Queue[str] = asyncio.Queue(maxsize=1)
        self._processing = asyncio.Lock()
        self._last_pass: PassResult | None = None
        self._totals: dict[str, int] = dict.fromkeys(_TOTAL_KEYS, 0)
        self._connects = 0
        self._session_losses = 0

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    @property
    def state(self) -> WatcherState:
        return self._state

    @property
    def last_pass(self) -> PassResult | None:
        return self._last_pass

    @property
    def totals(self) -> dict[str, int]:
        return dict(self._totals)

    def status(self) -> WatcherStatus:
        session = self._session
        mailbox_status = session.status if session is not None else None
        return WatcherStatus(
            state=self._state,
            uptime_seconds=time.monotonic() - self.start_time,
            host=self.config.imap.host,
            mailbox=session.mailbox if session is not None else None,
            idle_supported=self._idle_supported,
            mailbox_messages=mailbox_status.exists if mailbox_status else None,
            mailbox_unseen=mailbox_status.unseen if mailbox_status else None,
            last_pass=self._last_pass,
            totals=self.totals,
            details={
                "blocked_uids": self.registry.blocked(),
                "reconnects": max(self._connects - 1, 0),
                "session_losses": self._session_losses,
                "pass_queued": self._triggers.full(),
            },
        )

    def _set_state(self, state: WatcherState) -> None:
        if state is not self._state:
            logger.debug("watcher_state_changed", previous=self._state.value, current=state.value)
            self._state = state

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    def request_pass(self, trigger: str = "manual") -> bool:
        """Ask for a pass as soon as the watcher is waiting.

        Returns *False* if the request was dropped because a pass is
        already running or queued.
        """
        if self._processing.locked() or self._triggers.full():
            logger.info("pass_request_dropped", trigger=trigger, state=self._state.value)
            return False
        self._triggers.put_nowait(trigger)
        logger.info("pass_requested", trigger=trigger)
        return True

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    async def run(self, shutdown_event: asyncio.Event) -> None:
        """Watch the mailbox until *shutdown_event* is set."""
        self.start_time = time.monotonic()
        logger.info(
            "watcher_started",
            host=self.config.imap.host,
            mailbox=self.config.imap.mailbox,
            senders=len(self.config.senders),
            recipients=len(self.config.recipients),
        )
        try:
            while not shutdown_event.is_set():
                if not await self._delay_reconnect(shutdown_event):
                    break
                session = await self._connect(shutdown_event)
                if session is None:
                    break
                try:
                    await self._serve(session, shutdown_event)
                except TransportError as exc:
                    self._session_losses += 1
                    logger.error(
                        "watcher_session_lost",
                        error=str(exc),
                        session_losses=self._session_losses,
                    )
                finally:
                    if shutdown_event.is_set():
                        self._set_state(WatcherState.SHUTTING_DOWN)
                    await self._close(session)
        finally:
            self._set_state(WatcherState.SHUTTING_DOWN)
            logger.info("watcher_stopped", **self._totals)

    async def _delay_reconnect(self, shutdown_event: asyncio.Event) -> bool:
        """Back off after lost sessions.  Returns *False* if shutdown came first."""
        delay = reconnect_delay(self.config.backoff, self._session_losses)
        if delay > 0:
            self._set_state(WatcherState.DISCONNECTED)
            logger.warning(
                "watcher_reconnect_delayed",
                delay_seconds=round(delay, 1),
                session_losses=self._session_losses,
            )
            await interruptible_sleep(shutdown_event)(delay)
        return not shutdown_event.is_set()

    async def _connect(self, shutdown_event: asyncio.Event) -> MailboxSession | None:
        """Connect with backoff.  Returns *None* if shutdown came first."""
        self._set_state(WatcherState.DISCONNECTED)
        session: MailboxSession | None = None
        try:
            async for attempt in reconnect_retrying(self.config.backoff, shutdown_event):
                with attempt:
                    if shutdown_event.is_set():
                        return None
                    session = await self._session_factory(self.config.imap, registry=self.registry)
        except ConnectError as exc:
            logger.info("watcher_connect_abandoned", error=str(exc))
            return None

        self._connects += 1
        self._session = session
        return session

    async def _close(self, session: MailboxSession) -> None:
        self._session = None
        await session.close(grace=self.config.logout_grace_seconds)

    async def _serve(self, session: MailboxSession, shutdown_event: asyncio.Event) -> None:
        """Run passes on *session* until shutdown.  Raises on transport failure."""
        self._idle_supported = session.has_idle
        if not session.has_idle:
            logger.warning(
                "imap_idle_unsupported",
                poll_interval_seconds=self.config.imap.poll_interval_seconds,
            )

        trigger: str | None = "initial"
        while trigger is not None and not shutdown_event.is_set():
            await self._process(session, trigger, shutdown_event)
            if not session.usable:
                raise TransportError("session became unusable during the pass")
            self._set_state(WatcherState.IDLE)
            if session.has_idle:
                trigger = await self._wait_idle(session, shutdown_event)
            else:
                trigger = await self._wait_poll(shutdown_event)
            if trigger is not None:
                # A full wait cycle completed on this session
                self._session_losses = 0

    async def _process(
        self,
        session: MailboxSession,
        trigger: str,
        shutdown_event: asyncio.Event,
    ) -> None:
        async with self._processing:
            self._set_state(WatcherState.PROCESSING)
            try:
                result = await run_pass(
                    session,
                    self.config,
                    self._fetcher,
                    self._relay,
                    trigger,
                    shutdown_event=shutdown_event,
                )
            except FetchError as exc:
                # Server said NO to search/validation; the session is still fine
                logger.error("pass_failed", trigger=trigger, error=str(exc))
                return
            self._record(result)

    def _record(self, result: PassResult) -> None:
        self._last_pass = result
        self._totals["passes"] += 1
        self._totals["found"] += result.found
        self._totals["forwarded"] += result.forwarded
        self._totals["failed"] += result.failed
        self._totals["skipped"] += result.skipped
        self._totals["mark_seen_failed"] += result.mark_seen_failed

    # ------------------------------------------------------------------
    # Waiting
    # ------------------------------------------------------------------

    async def _wait_poll(self, shutdown_event: asyncio.Event) -> str | None:
        """Sleep for one poll interval.  Returns the trigger, or *None* on shutdown."""
        shutdown_task = asyncio.create_task(shutdown_event.wait())
        trigger_task = asyncio.create_task(self._triggers.get())
        try:
            await asyncio.wait(
                {shutdown_task, trigger_task},
                timeout=self.config.imap.poll_interval_seconds,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            await _cancel_pending(shutdown_task, trigger_task)

        if shutdown_task.done() and not shutdown_task.cancelled():
            return None
        if trigger_task.done() and not trigger_task.cancelled():
            return trigger_task.result()
        return "poll"

    async def _wait_idle(
        self,
        session: MailboxSession,
        shutdown_event: asyncio.Event,
    ) -> str | None:
        """IDLE until new mail, a manual trigger, or shutdown.

        Returns the trigger for the next pass, or *None* on shutdown.
        IDLE is re-issued every ``idle_renew_seconds`` so the server does
        not drop it.
        """
        while True:
            stop = threading.Event()
            idle_task = asyncio.create_task(
                session.idle_wait(stop, self.config.imap.idle_renew_seconds)
            )
            shutdown_task = asyncio.create_task(shutdown_event.wait())
            trigger_task = asyncio.create_task(self._triggers.get())
            try:
                await asyncio.wait(
                    {idle_task, shutdown_task, trigger_task},
                    return_when=asyncio.FIRST_COMPLETED,
                )
                if not idle_task.done():
                    await self._stop_idle(session, idle_task, stop)
            finally:
                stop.set()
                await _cancel_pending(idle_task, shutdown_task, trigger_task)

            idle_error = None
            if not idle_task.cancelled():
                idle_error = idle_task.exception()

            if shutdown_task.done() and not shutdown_task.cancelled():
                return None
            if idle_error is not None:
                raise idle_error
            if idle_task.cancelled() or not session.usable:
                raise TransportError("IDLE did not terminate cleanly")
            if trigger_task.done() and not trigger_task.cancelled():
                return trigger_task.result()

            outcome = idle_task.result()
            if outcome is IdleOutcome.CHANGED:
                return "idle"
            logger.debug("imap_idle_renewed", outcome=outcome.value)

    async def _stop_idle(
        self,
        session: MailboxSession,
        idle_task: asyncio.Task[IdleOutcome],
        stop: threading.Event,
    ) -> None:
        """Signal DONE and wait up to the grace period for IDLE to end."""
        stop.set()
        grace = self.config.idle_stop_grace_seconds
        done, _ = await asyncio.wait({idle_task}, timeout=grace)
        if done:
            return
        logger.warning("imap_idle_stop_timeout", grace_seconds=grace)
        session.discard()
        idle_task.cancel()
        await asyncio.wait({idle_task})


async def _cancel_pending(*tasks: asyncio.Task) -> None:
    pending = [task for task in tasks if not task.done()]
    for task in pending:
        task.cancel()
    if pending:
        await asyncio.wait(pending)
