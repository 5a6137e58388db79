"""Bearer token guard for the HTTP API."""

from __future__ import annotations

import hmac
import logging

from fastapi import HTTPException, Request, status

from .config import settings

logger = logging.getLogger(__name__)


def _bearer_token(request: Request) -> str | None:
    header = request.headers.get("Authorization", "")
    scheme, _, value = header.partition(" ")
    if scheme.lower() != "bearer" or not value:
        return None
    return value.strip()


def require_api_token(request: Request) -> None:
    """Reject requests without the configured API token.

    When no ``api_token`` is configured the API is open, which is only
    sensible when the server listens on localhost.
    """
    expected = settings.api_token
    if not expected:
        return
    provided = _bearer_token(request)
    if provided is None or not hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8")):
        logger.warning("Rejected API request to %s", request.url.path)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API token",
            headers={"WWW-Authenticate": "Bearer"},
        )
