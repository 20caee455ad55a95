"""Entry point for the mail reflector.

Usage::

    python -m mail_reflector check   # run one pass now and exit
    python -m mail_reflector serve   # watch the mailbox until SIGTERM/SIGINT

Send SIGUSR1 to a running ``serve`` to trigger an extra pass.

Add ``--verbose`` to log at DEBUG.
"""

from __future__ import annotations

import asyncio
import sys

import structlog
import uvicorn

from .config import ReflectorConfig, config_warnings
from .errors import ReflectorError
from .health import create_health_app
from .logging import setup_logging
from .pipeline import check_once
from .signals import install_signal_handlers, remove_signal_handlers
from .watcher import Watcher

logger = structlog.get_logger()

USAGE = "Usage: python -m mail_reflector <check|serve> [--verbose]"


async def _run_health_server(watcher: Watcher, port: int, shutdown_event: asyncio.Event) -> None:
    """Serve the health app until the shutdown event fires."""
    app = create_health_app(watcher)
    config = uvicorn.Config(app, host="0.0.0.0", port=port, log_level="warning")
    server = uvicorn.Server(config)

    serve_task = asyncio.create_task(server.serve())
    await shutdown_event.wait()
    server.should_exit = True
    await serve_task


async def serve(config: ReflectorConfig) -> None:
    """Run the watcher (and the health server) until a shutdown signal."""
    shutdown_event = asyncio.Event()
    watcher = Watcher(config)
    install_signal_handlers(watcher, shutdown_event)

    logger.info("reflector_starting", host=config.imap.host, mailbox=config.imap.mailbox)
    try:
        async with asyncio.TaskGroup() as tg:
            tg.create_task(_watch(watcher, shutdown_event))
            if config.health_enabled:
                tg.create_task(_run_health_server(watcher, config.health_port, shutdown_event))
    except* Exception:
        logger.exception("reflector_task_group_error")
    finally:
        remove_signal_handlers()
        logger.info("reflector_stopped")


async def _watch(watcher: Watcher, shutdown_event: asyncio.Event) -> None:
    try:
        await watcher.run(shutdown_event)
    finally:
        # Stop the health server too once the watcher is done
        shutdown_event.set()


def main(argv: list[str] | None = None) -> None:
    args = list(sys.argv[1:] if argv is None else argv)
    verbose = "--verbose" in args
    args = [arg for arg in args if arg != "--verbose"]
    if len(args) != 1 or args[0] not in ("check", "serve"):
        print(USAGE, file=sys.stderr)
        sys.exit(1)

    config = ReflectorConfig()
    setup_logging(json=config.log_json, level="DEBUG" if verbose else config.log_level)
    for warning in config_warnings(config):
        logger.warning("config_warning", message=warning)

    if args[0] == "check":
        try:
            result = asyncio.run(check_once(config))
        except ReflectorError as exc:
            logger.error("check_failed", error=str(exc))
            sys.exit(1)
        print(
            f"found={result.found} forwarded={result.forwarded} "
            f"failed={result.failed} skipped={result.skipped}"
        )
        if result.failed or result.mark_seen_failed or result.interrupted:
            sys.exit(2)
    else:
        asyncio.run(serve(config))


if __name__ == "__main__":
    main()
