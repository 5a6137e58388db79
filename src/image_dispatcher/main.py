"""Entrypoint for running the FastAPI application under uvicorn."""

from __future__ import annotations

import logging

import uvicorn

from image_dispatcher.config import settings
from image_dispatcher.log_utils import init_logging

logger = logging.getLogger(__name__)


def main(host: str | None = None, port: int | None = None, reload: bool | None = None) -> None:
    """Run uvicorn with the application factory configured."""
    init_logging(settings.log_level)
    host = host or settings.host
    port = port or settings.port
    logger.info("Starting image-dispatcher on %s:%s", host, port)
    uvicorn.run(
        "image_dispatcher.app:get_app",
        host=host,
        port=port,
        reload=settings.reload if reload is None else reload,
        factory=True,
    )


if __name__ == "__main__":
    main()
