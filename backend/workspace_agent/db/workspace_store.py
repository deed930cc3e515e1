"""Store: workspace metadata, versions and components.

The agent core talks to persistence only through the ``Store`` protocol.
``InMemoryStore`` is the process-local implementation used by the dev server
and the test suite.

Every artifact mutation appends a new ``WorkspaceVersion`` (copying forward the
artifacts it does not touch) and advances ``current_version_id`` under one lock,
so readers never observe a half-advanced workspace.
"""

from __future__ import annotations

import asyncio
import copy
import re
import uuid
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any, Protocol, runtime_checkable

import structlog

from workspace_agent.core.exceptions import StoreError, WorkspaceNotFoundError
from workspace_agent.schemas.workspace import AppStatus, ComponentCode, Workspace, WorkspaceVersion
from workspace_agent.vm.pool import code_digest

logger = structlog.get_logger(__name__)


@runtime_checkable
class Store(Protocol):
    async def get_workspace(self, workspace_id: str) -> Workspace: ...

    async def get_current_version(self, workspace_id: str) -> WorkspaceVersion | None: ...

    async def get_logic_code(self, workspace_id: str) -> tuple[str, str]: ...

    async def update_ui_schema(
        self, workspace_id: str, user_id: str, ui_schema: dict[str, Any]
    ) -> WorkspaceVersion: ...

    async def update_logic_code(self, workspace_id: str, user_id: str, code: str) -> WorkspaceVersion: ...

    async def upsert_component(
        self, workspace_id: str, user_id: str, name: str, code: str
    ) -> WorkspaceVersion: ...

    async def publish(self, workspace_id: str, user_id: str) -> Workspace: ...


def _slugify(name: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-") or "app"


class InMemoryStore:
    """Dict-backed Store. ``auto_create`` materializes unknown workspaces on first access."""

    def __init__(self, auto_create: bool = False) -> None:
        self._auto_create = auto_create
        self._workspaces: dict[str, Workspace] = {}
        self._versions: dict[str, list[WorkspaceVersion]] = {}
        self._lock = asyncio.Lock()

    async def create_workspace(
        self,
        name: str,
        owner_id: str,
        workspace_id: str | None = None,
    ) -> Workspace:
        async with self._lock:
            return self._create_locked(name, owner_id, workspace_id or str(uuid.uuid4()))

    def _create_locked(self, name: str, owner_id: str, workspace_id: str) -> Workspace:
        if workspace_id in self._workspaces:
            raise StoreError(f"workspace '{workspace_id}' already exists")
        workspace = Workspace(id=workspace_id, name=name, owner_id=owner_id, slug=_slugify(name))
        self._workspaces[workspace_id] = workspace
        self._versions[workspace_id] = []
        logger.info("workspace_created", workspace_id=workspace_id, owner_id=owner_id)
        return workspace

    def _require(self, workspace_id: str) -> Workspace:
        workspace = self._workspaces.get(workspace_id)
        if workspace is None:
            if not self._auto_create:
                raise WorkspaceNotFoundError(workspace_id)
            workspace = self._create_locked("Untitled App", "", workspace_id)
        return workspace

    def _current_locked(self, workspace_id: str) -> WorkspaceVersion | None:
        versions = self._versions.get(workspace_id) or []
        return versions[-1] if versions else None

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_workspace(self, workspace_id: str) -> Workspace:
        async with self._lock:
            return self._require(workspace_id).model_copy()

    async def get_current_version(self, workspace_id: str) -> WorkspaceVersion | None:
        async with self._lock:
            self._require(workspace_id)
            current = self._current_locked(workspace_id)
        return current.model_copy(deep=True) if current is not None else None

    async def list_versions(self, workspace_id: str) -> list[WorkspaceVersion]:
        async with self._lock:
            self._require(workspace_id)
            return [v.model_copy(deep=True) for v in self._versions[workspace_id]]

    async def get_logic_code(self, workspace_id: str) -> tuple[str, str]:
        current = await self.get_current_version(workspace_id)
        code = current.logic_code if current is not None else ""
        return code, code_digest(code)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def _append_version(
        self,
        workspace_id: str,
        user_id: str,
        mutate: Callable[[WorkspaceVersion | None], dict[str, Any]],
    ) -> WorkspaceVersion:
        async with self._lock:
            workspace = self._require(workspace_id)
            current = self._current_locked(workspace_id)
            fields: dict[str, Any] = {
                "ui_schema": copy.deepcopy(current.ui_schema) if current else None,
                "logic_code": current.logic_code if current else "",
                "component_codes": current.component_codes if current else (),
            }
            changes = mutate(current)
            fields.update(changes)
            number = len(self._versions[workspace_id]) + 1
            version = WorkspaceVersion(
                id=str(uuid.uuid4()),
                workspace_id=workspace_id,
                version_tag=f"v{number}",
                created_by=user_id,
                **fields,
            )
            self._versions[workspace_id].append(version)
            workspace.current_version_id = version.id
        logger.info(
            "workspace_version_created",
            workspace_id=workspace_id,
            version_tag=version.version_tag,
            changed=sorted(changes),
        )
        return version.model_copy(deep=True)

    async def update_ui_schema(
        self, workspace_id: str, user_id: str, ui_schema: dict[str, Any]
    ) -> WorkspaceVersion:
        snapshot = copy.deepcopy(ui_schema)
        return await self._append_version(workspace_id, user_id, lambda _: {"ui_schema": snapshot})

    async def update_logic_code(self, workspace_id: str, user_id: str, code: str) -> WorkspaceVersion:
        return await self._append_version(workspace_id, user_id, lambda _: {"logic_code": code})

    async def upsert_component(
        self, workspace_id: str, user_id: str, name: str, code: str
    ) -> WorkspaceVersion:
        def replace(current: WorkspaceVersion | None) -> dict[str, Any]:
            existing = current.component_codes if current else ()
            kept = tuple(c for c in existing if c.name != name)
            return {"component_codes": kept + (ComponentCode(name=name, code=code),)}

        return await self._append_version(workspace_id, user_id, replace)

    async def publish(self, workspace_id: str, user_id: str) -> Workspace:
        async with self._lock:
            workspace = self._require(workspace_id)
            if workspace.current_version_id is None:
                raise StoreError(f"workspace '{workspace_id}' has no version to publish")
            workspace.app_status = AppStatus.PUBLISHED
            workspace.published_version_id = workspace.current_version_id
            workspace.published_at = datetime.now(UTC)
            published = workspace.model_copy()
        logger.info("workspace_published", workspace_id=workspace_id, user_id=user_id)
        return published
