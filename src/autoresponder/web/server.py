"""FastAPI application for the control plane."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from autoresponder import __version__
from autoresponder.config import Settings, get_settings
from autoresponder.control import HandshakeOrchestrator, ProcessLifecycleManager
from autoresponder.credentials import CredentialStore
from autoresponder.web.routes import control

logger = logging.getLogger(__name__)


def create_app(
    settings: Settings | None = None,
    processes: ProcessLifecycleManager | None = None,
    handshake: HandshakeOrchestrator | None = None,
) -> FastAPI:
    """Build the app. Components can be injected (tests) or built from settings."""
    settings = settings or get_settings()
    store = processes.store if processes else CredentialStore.from_env(settings.credentials_path)
    processes = processes or ProcessLifecycleManager(
        store, stop_grace_seconds=settings.stop_grace_seconds,
    )
    handshake = handshake or HandshakeOrchestrator(
        processes,
        store,
        code_timeout=settings.code_timeout_seconds,
        auth_timeout=settings.auth_timeout_seconds,
        code_idle_timeout=settings.code_idle_timeout_seconds,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"Credentials file: {store.path.resolve()}")
        yield
        logger.info("Shutting down server...")
        handshake.abort()
        await processes.shutdown()

    app = FastAPI(title="Autoresponder control panel", version=__version__, lifespan=lifespan)
    app.state.settings = settings
    app.state.store = store
    app.state.processes = processes
    app.state.handshake = handshake
    app.include_router(control.router)
    return app
