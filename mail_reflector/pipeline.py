"""One fetch → forward → acknowledge pass over a connected session."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime

import structlog

from .config import ReflectorConfig
from .envelope import SenderFilter
from .errors import FetchError, SendError, TransportError
from .fetcher import MailSummary, MessageFetcher
from .models import PassResult
from .registry import ProblematicUidRegistry
from .relay import Relay
from .retry import with_retry
from .session import MailboxSession

logger = structlog.get_logger()


async def run_pass(
    session: MailboxSession,
    config: ReflectorConfig,
    fetcher: MessageFetcher,
    relay: Relay,
    trigger: str,
    *,
    shutdown_event: asyncio.Event | None = None,
) -> PassResult:
    """Fetch matching unseen messages, forward each one, then mark it seen.

    A message is marked seen only after it was sent, so a crash between
    the two steps forwards it again on the next pass (at-least-once).

    Raises :class:`FetchError` when search/validation keeps failing after
    retries, and :class:`TransportError` when the session breaks before any
    message was fetched.  If it breaks later, the pass stops early and
    ``interrupted`` is set; per-message problems are counted, not raised.
    Once *shutdown_event* is set no further message is fetched or
    forwarded, and the pass ends as ``interrupted``.
    """
    result = PassResult(trigger=trigger)
    log = logger.bind(trigger=trigger)
    log.info("pass_started")

    sender_filter = SenderFilter(config.senders)

    @with_retry(
        config.retry,
        retryable_exceptions=(FetchError,),
        shutdown_event=shutdown_event,
    )
    async def _fetch() -> list[MailSummary]:
        return await fetcher.fetch_matching(session, sender_filter, shutdown_event=shutdown_event)

    summaries = await _fetch()
    report = fetcher.last_report
    result.found = len(summaries)
    result.failed = len(report.failed)
    result.skipped = len(report.blocked)
    result.interrupted = report.interrupted

    if not session.usable:
        # Nothing can be marked seen on a broken session, so nothing is sent
        log.warning("pass_interrupted", fetched=len(summaries))
        result.interrupted = True
        result.finished_at = datetime.now(UTC)
        return result

    for index, summary in enumerate(summaries):
        if shutdown_event is not None and shutdown_event.is_set():
            log.info("pass_stopped_for_shutdown", remaining=len(summaries) - index)
            result.interrupted = True
            break
        try:
            await relay.forward(session, summary, config.recipients, config.subject_prefix)
        except SendError as exc:
            result.failed += 1
            log.error("message_forward_failed", uid=summary.uid, error=str(exc))
            continue
        result.forwarded += 1

        try:
            await session.mark_seen(summary.uid)
        except TransportError as exc:
            result.mark_seen_failed += 1
            log.error("mark_seen_failed", uid=summary.uid, error=str(exc))
            if not session.usable:
                result.interrupted = True
                break

    if session.usable and not result.interrupted:
        try:
            status = await session.refresh_status()
        except TransportError as exc:
            log.warning("mailbox_status_failed", error=str(exc))
        else:
            if status is not None:
                result.mailbox_messages = status.exists
                result.mailbox_unseen = status.unseen

    result.finished_at = datetime.now(UTC)
    log.info(
        "pass_complete",
        found=result.found,
        forwarded=result.forwarded,
        failed=result.failed,
        skipped=result.skipped,
        mark_seen_failed=result.mark_seen_failed,
    )
    return result


async def check_once(
    config: ReflectorConfig,
    *,
    registry: ProblematicUidRegistry | None = None,
) -> PassResult:
    """Connect, run a single pass, and disconnect."""
    if registry is None:
        registry = ProblematicUidRegistry(config.problematic_threshold)
    fetcher = MessageFetcher(registry)
    relay = Relay(config.smtp, config.sent_folders)

    session = await MailboxSession.connect(config.imap, registry=registry)
    async with session:
        return await run_pass(session, config, fetcher, relay, trigger="check")
