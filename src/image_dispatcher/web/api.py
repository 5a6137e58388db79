"""JSON routes for submitting and inspecting dispatches."""

from __future__ import annotations

import logging
from pathlib import Path

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel
from sqlmodel import Session

from image_dispatcher.auth import require_api_token
from image_dispatcher.build_service import Dispatcher, DispatchQueue, enqueue_dispatch, recent_dispatches
from image_dispatcher.database import get_session
from image_dispatcher.errors import DispatchError, PackageVisibilityError
from image_dispatcher.model_converter import convert_dispatch_to_ui_model
from image_dispatcher.models import BuildRequest, Dispatch
from image_dispatcher.ui_models import DispatchElement

router = APIRouter(prefix="/api", tags=["dispatches"], dependencies=[Depends(require_api_token)])
logger = logging.getLogger(__name__)


class MakePublicRequest(BaseModel):
    image_reference: str


def get_queue(request: Request) -> DispatchQueue:
    """Extract the shared :class:`DispatchQueue` from the app state."""
    return request.app.state.dispatch_queue


def get_dispatcher(request: Request) -> Dispatcher:
    return request.app.state.dispatcher


def _get_dispatch(session: Session, dispatch_id: int) -> Dispatch:
    dispatch = session.get(Dispatch, dispatch_id)
    if not dispatch:
        logger.error("Dispatch %s not found", dispatch_id)
        raise HTTPException(status_code=404, detail="Dispatch not found")
    return dispatch


@router.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@router.post("/dispatches", status_code=202, response_model=DispatchElement)
async def create_dispatch(
    build_request: BuildRequest,
    session: Session = Depends(get_session),
    queue: DispatchQueue = Depends(get_queue),
):
    """Queue a new dispatch; every call starts a fresh build."""
    try:
        dispatch = await enqueue_dispatch(build_request, session, queue, triggered_by="api")
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    return convert_dispatch_to_ui_model(dispatch)


@router.get("/dispatches", response_model=list[DispatchElement])
def list_dispatches(limit: int = 20, session: Session = Depends(get_session)):
    limit = max(1, min(limit, 200))
    return [convert_dispatch_to_ui_model(dispatch) for dispatch in recent_dispatches(session, limit)]


@router.get("/dispatches/{dispatch_id}", response_model=DispatchElement)
def get_dispatch(dispatch_id: int, session: Session = Depends(get_session)):
    return convert_dispatch_to_ui_model(_get_dispatch(session, dispatch_id))


@router.get("/dispatches/{dispatch_id}/log", response_class=PlainTextResponse)
def get_dispatch_log(dispatch_id: int, session: Session = Depends(get_session)):
    """Return the collected git and job output of a dispatch."""
    dispatch = _get_dispatch(session, dispatch_id)
    if not dispatch.log_path or not Path(dispatch.log_path).exists():
        raise HTTPException(status_code=404, detail="Log not available yet")
    return PlainTextResponse(Path(dispatch.log_path).read_text(encoding="utf-8", errors="replace"))


@router.post("/dispatches/{dispatch_id}/cancel", response_model=DispatchElement)
def cancel_dispatch(
    dispatch_id: int,
    session: Session = Depends(get_session),
    dispatcher: Dispatcher = Depends(get_dispatcher),
):
    _get_dispatch(session, dispatch_id)
    try:
        dispatcher.cancel(dispatch_id)
    except ValueError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except DispatchError as exc:
        raise HTTPException(status_code=502, detail={"kind": exc.kind.value, "message": str(exc)}) from exc
    session.expire_all()
    return convert_dispatch_to_ui_model(_get_dispatch(session, dispatch_id))


@router.post("/packages/public")
def make_public(payload: MakePublicRequest, dispatcher: Dispatcher = Depends(get_dispatcher)):
    """Confirm an image is anonymously pullable, or say where to change it."""
    try:
        dispatcher.make_public(payload.image_reference)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    except PackageVisibilityError as exc:
        raise HTTPException(
            status_code=409,
            detail={
                "kind": exc.kind.value,
                "message": str(exc),
                "visibility": exc.visibility,
                "settings_url": exc.settings_url,
            },
        ) from exc
    except DispatchError as exc:
        raise HTTPException(status_code=502, detail={"kind": exc.kind.value, "message": str(exc)}) from exc
    return {"image_reference": payload.image_reference, "public": True}
