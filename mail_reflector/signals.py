"""Process signals for ``serve``.

SIGTERM and SIGINT stop the reflector; SIGUSR1 asks the watcher for an
extra pass, the same as ``POST /check``.
"""

from __future__ import annotations

import asyncio
import signal

import structlog

from .watcher import Watcher

logger = structlog.get_logger()

STOP_SIGNALS = (signal.SIGTERM, signal.SIGINT)
CHECK_SIGNAL = signal.SIGUSR1


def install_signal_handlers(watcher: Watcher, shutdown_event: asyncio.Event) -> None:
    """Wire process signals to *shutdown_event* and *watcher*.

    Must be called from the running event loop.
    """
    loop = asyncio.get_running_loop()

    def _stop(sig: signal.Signals) -> None:
        if shutdown_event.is_set():
            logger.info("shutdown_already_requested", signal=sig.name)
            return
        logger.info("shutdown_signal_received", signal=sig.name, state=watcher.state.value)
        shutdown_event.set()

    def _check() -> None:
        if shutdown_event.is_set():
            return
        watcher.request_pass("signal")

    for sig in STOP_SIGNALS:
        loop.add_signal_handler(sig, _stop, sig)
    loop.add_signal_handler(CHECK_SIGNAL, _check)


def remove_signal_handlers() -> None:
    loop = asyncio.get_running_loop()
    for sig in (*STOP_SIGNALS, CHECK_SIGNAL):
        loop.remove_signal_handler(sig)
