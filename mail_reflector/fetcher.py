"""Message fetcher: search unseen, validate UIDs, fetch matching bodies."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field

import structlog

from .envelope import Envelope, SenderFilter
from .errors import FetchError, MessageFetchError, OperationTimeoutError, TransportError
from .parser import Attachment, decompose_bytes
from .registry import ProblematicUidRegistry
from .session import MailboxSession

logger = structlog.get_logger()

# Per-message detail for non-matching mail is only logged up to this many
_NON_MATCHING_DETAIL_LIMIT = 10


@dataclass
class MailSummary:
    """A matching message, ready to be relayed."""

    uid: int
    envelope: Envelope
    text_body: str = ""
    html_body: str = ""
    attachments: list[Attachment] = field(default_factory=list)


@dataclass
class FetchReport:
    """What happened to each unseen UID during one fetch."""

    unseen: int = 0
    valid: int = 0
    matching: list[int] = field(default_factory=list)
    non_matching: list[int] = field(default_factory=list)
    blocked: list[int] = field(default_factory=list)
    failed: list[int] = field(default_factory=list)
    interrupted: bool = False


class MessageFetcher:
    """Runs the search + two-phase validate/fetch protocol.

    UIDs returned by SEARCH may already be stale by the time they are
    fetched (concurrent expunge, server inconsistencies), so they are first
    validated with an envelope-only FETCH.  Bodies are then fetched one
    message at a time so a single bad message cannot abort the batch.
    """

    def __init__(self, registry: ProblematicUidRegistry) -> None:
        self._registry = registry
        self.last_report = FetchReport()

    @property
    def registry(self) -> ProblematicUidRegistry:
        return self._registry

    async def fetch_matching(
        self,
        session: MailboxSession,
        sender_filter: SenderFilter,
        *,
        shutdown_event: asyncio.Event | None = None,
    ) -> list[MailSummary]:
        """Return a summary for every unseen message from an allowed sender.

        Raises :class:`FetchError` if the server rejects the search or the
        validation fetch, and :class:`TransportError` (including
        :class:`OperationTimeoutError`) if the connection fails while doing
        so.  Per-message failures are recorded in the registry instead.
        Fetching stops early (``last_report.interrupted``) once
        *shutdown_event* is set.
        """
        report = FetchReport()
        self.last_report = report

        try:
            uids = await session.search_unseen()
        except TransportError as exc:
            raise _as_fetch_error(session, "search", exc) from exc

        report.unseen = len(uids)
        if not uids:
            logger.info("imap_no_unseen_messages")
            return []
        logger.debug("imap_unseen_found", count=len(uids))

        # Phase 1: envelope-only validation of the whole candidate set
        try:
            envelopes = await session.fetch_envelopes(uids)
        except TransportError as exc:
            raise _as_fetch_error(session, "validation", exc) from exc

        valid = {uid: env for uid, env in envelopes.items() if env is not None}
        report.valid = len(valid)
        if len(valid) < len(uids):
            logger.debug(
                "imap_stale_uids_dropped",
                requested=len(uids),
                valid=len(valid),
            )

        candidates: list[int] = []
        for uid in sorted(valid):
            if not sender_filter.matches(valid[uid]):
                report.non_matching.append(uid)
                continue
            if self._registry.is_blocked(uid):
                report.blocked.append(uid)
                logger.warning(
                    "imap_uid_skipped",
                    uid=uid,
                    failures=self._registry.failures(uid),
                )
                continue
            candidates.append(uid)

        # Phase 2: one message at a time
        results: list[MailSummary] = []
        for uid in candidates:
            if shutdown_event is not None and shutdown_event.is_set():
                report.interrupted = True
                break
            try:
                summary = await self._fetch_one(session, uid, sender_filter)
            except OperationTimeoutError as exc:
                self._fail(report, uid, exc)
                # The stream is now in an unknown state; the session is unusable
                report.interrupted = True
                break
            except MessageFetchError as exc:
                self._fail(report, uid, exc)
                continue
            except TransportError as exc:
                self._fail(report, uid, exc)
                if not session.usable:
                    report.interrupted = True
                    break
                continue

            self._registry.record_success(uid)
            if summary is None:
                report.non_matching.append(uid)
                continue
            report.matching.append(uid)
            results.append(summary)

        self._log_summary(report, valid, sender_filter)
        return results

    async def _fetch_one(
        self,
        session: MailboxSession,
        uid: int,
        sender_filter: SenderFilter,
    ) -> MailSummary | None:
        logger.debug("imap_fetching_message", uid=uid)
        fetched = await session.fetch_message(uid)

        # The envelope in the body response is authoritative for this UID
        if not sender_filter.matches(fetched.envelope):
            logger.debug(
                "imap_message_no_longer_matches",
                uid=uid,
                sender=fetched.envelope.from_address,
            )
            return None

        try:
            text, html, attachments = decompose_bytes(fetched.raw_bytes)
        except (ValueError, LookupError, UnicodeError, IndexError) as exc:
            raise MessageFetchError(uid, f"unparseable MIME: {exc}") from exc

        return MailSummary(
            uid=uid,
            envelope=fetched.envelope,
            text_body=text,
            html_body=html,
            attachments=attachments,
        )

    def _fail(self, report: FetchReport, uid: int, exc: Exception) -> None:
        failures = self._registry.record_failure(uid)
        report.failed.append(uid)
        logger.warning(
            "imap_message_fetch_failed",
            uid=uid,
            failures=failures,
            threshold=self._registry.threshold,
            error=str(exc),
        )

    def _log_summary(
        self,
        report: FetchReport,
        envelopes: dict[int, Envelope],
        sender_filter: SenderFilter,
    ) -> None:
        logger.info(
            "imap_fetch_complete",
            unseen=report.unseen,
            valid=report.valid,
            matching=len(report.matching),
            non_matching=len(report.non_matching),
            blocked=len(report.blocked),
            failed=len(report.failed),
            interrupted=report.interrupted,
        )
        if 0 < len(report.non_matching) <= _NON_MATCHING_DETAIL_LIMIT:
            for uid in report.non_matching:
                env = envelopes.get(uid)
                logger.debug(
                    "imap_message_not_matching",
                    uid=uid,
                    sender=env.display_from if env else "unknown",
                    subject=env.subject if env else "",
                    active_filters=sorted(sender_filter.addresses),
                )


def _as_fetch_error(session: MailboxSession, phase: str, exc: TransportError) -> Exception:
    """Server-side rejections become :class:`FetchError`; broken transports stay as they are."""
    if not session.usable:
        return exc
    return FetchError(f"{phase} failed: {exc}")
