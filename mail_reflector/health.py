"""FastAPI health endpoints and the manual check trigger."""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from .models import WatcherState

if TYPE_CHECKING:
    from .watcher import Watcher


def create_health_app(watcher: Watcher) -> FastAPI:
    """Build a minimal FastAPI app with ``/health``, ``/ready`` and ``/check``.

    The *watcher* reference is used to read runtime status and to request
    an immediate pass.
    """
    app = FastAPI(title="mail-reflector health", docs_url=None, redoc_url=None)

    @app.get("/health")
    async def health() -> JSONResponse:
        status = watcher.status()
        healthy = status.state not in (WatcherState.DISCONNECTED, WatcherState.SHUTTING_DOWN)
        return JSONResponse(
            content=status.model_dump(mode="json"),
            status_code=200 if healthy else 503,
        )

    @app.get("/ready")
    async def ready() -> JSONResponse:
        is_ready = watcher.state in (WatcherState.IDLE, WatcherState.PROCESSING)
        return JSONResponse(
            content={"ready": is_ready},
            status_code=200 if is_ready else 503,
        )

    @app.post("/check")
    async def check() -> JSONResponse:
        accepted = watcher.request_pass("manual")
        return JSONResponse(
            content={"accepted": accepted, "state": watcher.state.value},
            status_code=202 if accepted else 409,
        )

    return app
