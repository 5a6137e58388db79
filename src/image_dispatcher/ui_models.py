from pydantic import BaseModel


class DispatchElement(BaseModel):
    id: int
    repository: str
    branch: str
    image_name: str
    tags: list[str]
    platforms: list[str]
    status: str
    failure_kind: str | None = None
    error_message: str | None = None
    sha: str | None = None
    run_id: int | None = None
    run_url: str | None = None
    image_reference: str | None = None
    digest: str | None = None
    triggered_by: str | None = None
    duration_seconds: float | None = None
    created_at: str
    started_at: str | None = None
    finished_at: str | None = None
