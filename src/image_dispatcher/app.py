"""ASGI application factory and FastAPI wiring for the image dispatcher."""

from __future__ import annotations

import logging

from fastapi import FastAPI

from .build_service import DispatchExecutor, Dispatcher, DispatchQueue
from .database import init_db
from .web import api

logger = logging.getLogger(__name__)


def create_app(dispatcher: Dispatcher | None = None, queue: DispatchQueue | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    :param dispatcher: Dispatcher used for cancel/visibility calls and queued work.
    :param queue: Queue receiving new dispatches; built around ``dispatcher`` when omitted.
    :returns: Fully configured FastAPI instance.
    """
    logger.debug("Initializing database")
    init_db()
    app = FastAPI(title="Image Dispatcher")

    dispatcher = dispatcher or Dispatcher()
    queue = queue or DispatchQueue(DispatchExecutor(dispatcher))
    app.state.dispatcher = dispatcher
    app.state.dispatch_queue = queue

    @app.on_event("startup")
    async def startup_event() -> None:
        """Start the dispatch queue worker."""
        logger.info("Starting background services")
        await queue.startup()

    @app.on_event("shutdown")
    async def shutdown_event() -> None:
        """Stop the worker and release HTTP clients."""
        logger.info("Shutting down background services")
        await queue.shutdown()

    app.include_router(api.router)
    return app


def get_app() -> FastAPI:
    """FastAPI factory hook used by uvicorn's ``--factory`` option."""
    return create_app()
