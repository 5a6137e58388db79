"""Application models"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field as PydanticField, field_validator, model_validator
from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel

from .time_utils import utcnow


class DispatchStatus(str, Enum):
    """Lifecycle of a dispatch"""
    queued = "queued"
    running = "running"
    success = "success"
    failed = "failed"


class FailureKind(str, Enum):
    """Distinct reasons a dispatch can fail"""
    checkout = "checkout"
    build = "build"
    registry_auth = "registry_auth"
    registry_push = "registry_push"
    cancelled = "cancelled"
    timeout = "timeout"
    dispatch = "dispatch"


def _split_csv(value):
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    return value


class BuildRequest(BaseModel):
    """Everything needed to trigger one remote build-and-publish run."""

    repository: str
    branch: str
    image_name: str | None = None
    tags: list[str] = PydanticField(default_factory=lambda: ["latest"])
    platforms: list[str] = PydanticField(default_factory=list)
    dockerfile: str = "Dockerfile"
    context: str = "."

    @field_validator("repository", "branch", "dockerfile", "context")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be empty")
        return value

    @field_validator("repository")
    @classmethod
    def _owner_and_name(cls, value: str) -> str:
        parts = value.split("/")
        if len(parts) != 2 or not all(parts):
            raise ValueError("repository must look like 'owner/name'")
        return value

    @field_validator("tags", "platforms", mode="before")
    @classmethod
    def _csv_lists(cls, value):
        return _split_csv(value)

    @field_validator("tags")
    @classmethod
    def _tags_present(cls, value: list[str]) -> list[str]:
        cleaned = [tag.strip() for tag in value if tag and tag.strip()]
        if not cleaned:
            raise ValueError("at least one tag is required")
        return cleaned

    @model_validator(mode="after")
    def _default_image_name(self) -> "BuildRequest":
        if self.image_name is None or not self.image_name.strip():
            self.image_name = self.repo_name
        self.image_name = self.image_name.strip().lower()
        return self

    @property
    def owner(self) -> str:
        return self.repository.split("/", 1)[0]

    @property
    def repo_name(self) -> str:
        return self.repository.split("/", 1)[1]


class BuildResult(BaseModel):
    """Outcome of a single dispatch."""

    dispatch_id: int | None = None
    success: bool
    image_reference: str | None = None
    image_references: list[str] = PydanticField(default_factory=list)
    digest: str | None = None
    failure_kind: FailureKind | None = None
    error: str | None = None
    run_id: int | None = None
    run_url: str | None = None
    log_path: str | None = None


class Dispatch(SQLModel, table=True):
    """Persisted record of one build request and its outcome"""
    id: Optional[int] = Field(default=None, primary_key=True)
    repository: str
    branch: str
    image_name: str
    tags: str  # comma separated
    platforms: str  # comma separated
    dockerfile: str = "Dockerfile"
    context: str = "."
    correlation_id: str = Field(index=True)
    status: DispatchStatus = Field(default=DispatchStatus.queued)
    failure_kind: Optional[FailureKind] = None
    error_message: Optional[str] = None
    sha: Optional[str] = None
    run_id: Optional[int] = None
    run_url: Optional[str] = None
    image_reference: Optional[str] = None
    digest: Optional[str] = None
    log_path: Optional[str] = None
    triggered_by: str = Field(default="cli")  # cli or api
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))
    started_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    finished_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    duration_seconds: Optional[float] = None

    def to_request(self) -> BuildRequest:
        return BuildRequest(
            repository=self.repository,
            branch=self.branch,
            image_name=self.image_name,
            tags=self.tags,
            platforms=self.platforms,
            dockerfile=self.dockerfile,
            context=self.context,
        )
