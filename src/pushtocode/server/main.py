"""FastAPI application factory for the pushtocode server."""

import asyncio
import logging
from contextlib import asynccontextmanager, suppress
from typing import AsyncGenerator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from . import __version__
from .api.routes import health, sessions, ws
from .services import get_supervisor
from .services.supervisor import SessionSupervisor
from .state import get_settings, init_start_time

logger = logging.getLogger(__name__)


async def _sweep_idle_sessions(supervisor: SessionSupervisor, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        try:
            await asyncio.to_thread(supervisor.sweep_idle)
        except Exception:
            logger.exception("Idle session sweep failed")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan context manager."""
    init_start_time()
    settings = get_settings()
    supervisor = get_supervisor()

    # Startup: reap processes left over by a crashed previous run, probe the agent CLI
    if supervisor.process_registry is not None:
        stale = await asyncio.to_thread(supervisor.process_registry.cleanup_stale)
        if stale:
            logger.warning("Killed %d stale agent process(es) from a previous run", len(stale))
    if supervisor.store is not None:
        await asyncio.to_thread(supervisor.store.purge_expired)

    startup_tasks: list[asyncio.Task] = []
    if await asyncio.to_thread(supervisor.verify_cli_installed):
        if settings.check_auth_on_startup:
            startup_tasks.append(asyncio.create_task(asyncio.to_thread(supervisor.check_auth_status)))
    else:
        logger.error("Agent CLI %r could not be run; sessions will fail to start", settings.agent_command)
    if not settings.api_key:
        logger.warning("No api_key configured; every connection will be rejected")

    sweeper = asyncio.create_task(_sweep_idle_sessions(supervisor, settings.idle_sweep_interval))

    yield

    # Shutdown: kill every agent process
    sweeper.cancel()
    for task in startup_tasks:
        task.cancel()
    with suppress(asyncio.CancelledError):
        await sweeper
    await asyncio.to_thread(supervisor.shutdown)
    if supervisor.process_registry is not None:
        await asyncio.to_thread(supervisor.process_registry.terminate_all)


def create_app(
    title: str = "pushtocode",
    debug: bool = False,
    cors_origins: list[str] | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        title: Application title for OpenAPI docs
        debug: Enable debug mode
        cors_origins: List of allowed CORS origins (None = allow all)

    Returns:
        Configured FastAPI application
    """
    app = FastAPI(
        title=title,
        description="Supervises agent CLI sessions and keeps remote terminals in sync",
        version=__version__,
        debug=debug,
        lifespan=lifespan,
    )

    if cors_origins is None:
        cors_origins = ["*"]

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health.router, tags=["Health"])
    app.include_router(sessions.router, prefix="/api/v1/sessions", tags=["Sessions"])
    app.include_router(ws.router, tags=["WebSocket"])

    return app
