"""Workspace metadata and immutable version snapshots."""

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


def _utcnow() -> datetime:
    return datetime.now(UTC)


class AppStatus(str, Enum):
    """Publication state of a workspace app."""

    DRAFT = "draft"
    PUBLISHED = "published"


class ComponentCode(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    code: str


class WorkspaceVersion(BaseModel):
    """Snapshot of the three declarative artifacts. Never mutated after creation."""

    model_config = ConfigDict(frozen=True)

    id: str
    workspace_id: str
    version_tag: str
    ui_schema: dict[str, Any] | None = None
    logic_code: str = ""
    component_codes: tuple[ComponentCode, ...] = ()
    created_by: str = ""
    created_at: datetime = Field(default_factory=_utcnow)


class Workspace(BaseModel):
    id: str
    name: str
    owner_id: str
    slug: str = ""
    current_version_id: str | None = None
    app_status: AppStatus = AppStatus.DRAFT
    published_version_id: str | None = None
    published_at: datetime | None = None
    created_at: datetime = Field(default_factory=_utcnow)
