from image_dispatcher.models import Dispatch
from image_dispatcher.time_utils import format_local_datetime
from image_dispatcher.ui_models import DispatchElement


def _split(value: str) -> list[str]:
    return [part for part in value.split(",") if part]


def convert_dispatch_to_ui_model(dispatch: Dispatch) -> DispatchElement:
    """Convert a Dispatch model to a DispatchElement UI model."""
    return DispatchElement(
        id=dispatch.id,
        repository=dispatch.repository,
        branch=dispatch.branch,
        image_name=dispatch.image_name,
        tags=_split(dispatch.tags),
        platforms=_split(dispatch.platforms),
        status=dispatch.status.value if hasattr(dispatch.status, "value") else dispatch.status,
        failure_kind=dispatch.failure_kind.value if dispatch.failure_kind else None,
        error_message=dispatch.error_message,
        sha=dispatch.sha,
        run_id=dispatch.run_id,
        run_url=dispatch.run_url,
        image_reference=dispatch.image_reference,
        digest=dispatch.digest,
        triggered_by=dispatch.triggered_by,
        duration_seconds=dispatch.duration_seconds,
        created_at=format_local_datetime(dispatch.created_at),
        started_at=format_local_datetime(dispatch.started_at) if dispatch.started_at else None,
        finished_at=format_local_datetime(dispatch.finished_at) if dispatch.finished_at else None,
    )
