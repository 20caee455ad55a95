"""Tenacity retry policies.

Two distinct policies live here:

* :func:`with_retry` retries a failed search/validation inside one pass.
* :func:`reconnect_retrying` backs off between connection attempts of the
  watch loop.  The sleep is interrupted by the shutdown event.

Poison messages are handled separately by
:class:`~mail_reflector.registry.ProblematicUidRegistry`.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Awaitable, Callable
from typing import Any

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    stop_when_event_set,
    wait_exponential,
)

from .config import BackoffConfig, RetryConfig
from .errors import ConnectError

logger = structlog.get_logger()


def with_retry(
    config: RetryConfig,
    *,
    retryable_exceptions: tuple[type[BaseException], ...] = (Exception,),
    shutdown_event: asyncio.Event | None = None,
) -> Callable:
    """Return a tenacity retry decorator configured from *config*.

    With a *shutdown_event*, no further attempt is made once it is set and
    the wait between attempts ends early.

    Usage::

        @with_retry(config.retry, retryable_exceptions=(FetchError,))
        async def fetch() -> list[MailSummary]: ...
    """
    stop = stop_after_attempt(config.max_attempts)
    extra: dict[str, Any] = {}
    if shutdown_event is not None:
        stop = stop | stop_when_event_set(shutdown_event)
        extra["sleep"] = interruptible_sleep(shutdown_event)
    return retry(
        stop=stop,
        wait=wait_exponential(
            multiplier=config.multiplier,
            min=config.initial_wait_seconds,
            max=config.max_wait_seconds,
        ),
        retry=retry_if_exception_type(retryable_exceptions),
        reraise=True,
        **extra,
    )


def interruptible_sleep(shutdown_event: asyncio.Event) -> Callable[[float], Awaitable[None]]:
    """Return an async sleep function that returns early once *shutdown_event* is set."""

    async def _sleep(seconds: float) -> None:
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(shutdown_event.wait(), timeout=seconds)

    return _sleep


def _log_reconnect(retry_state: RetryCallState) -> None:
    outcome = retry_state.outcome
    delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
    logger.error(
        "imap_connect_failed",
        attempt=retry_state.attempt_number,
        retry_in_seconds=round(delay, 1),
        error=str(outcome.exception()) if outcome is not None else None,
    )


def reconnect_retrying(
    config: BackoffConfig,
    shutdown_event: asyncio.Event,
) -> AsyncRetrying:
    """Build a fresh reconnect policy.

    A new object is created for every reconnect, so the attempt counter
    starts at zero again after each successful connection.  Retrying stops
    (re-raising the last :class:`ConnectError`) once *shutdown_event* is set.
    """
    return AsyncRetrying(
        stop=stop_when_event_set(shutdown_event),
        wait=wait_exponential(
            multiplier=config.initial_wait_seconds,
            exp_base=config.multiplier,
            max=config.max_wait_seconds,
        ),
        retry=retry_if_exception_type(ConnectError),
        sleep=interruptible_sleep(shutdown_event),
        before_sleep=_log_reconnect,
        reraise=True,
    )


def reconnect_delay(config: BackoffConfig, session_losses: int) -> float:
    """Seconds to wait before reconnecting after *session_losses* lost sessions in a row.

    Follows the same curve as :func:`reconnect_retrying`, so a server that
    accepts the login and then drops the session is not hammered.
    """
    if session_losses <= 0:
        return 0.0
    delay = config.initial_wait_seconds * config.multiplier ** (session_losses - 1)
    return min(delay, config.max_wait_seconds)
