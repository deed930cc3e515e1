"""Process-wide wiring: one VMStore, one VMPool, registries and the engine.

Built once in the FastAPI lifespan and stored on ``app.state.container``.
Tests build their own with explicit collaborators.
"""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass

import structlog

from workspace_agent.agent.engine import Engine, EngineConfig
from workspace_agent.agent.llm import AnthropicLLMClient, LLMClient
from workspace_agent.agent.personas import PersonaRegistry
from workspace_agent.agent.session import SessionManager
from workspace_agent.agent.tools.catalog import build_registry
from workspace_agent.agent.tools.registry import ToolRegistry
from workspace_agent.core.config import Settings
from workspace_agent.db.workspace_store import InMemoryStore, Store
from workspace_agent.vm.pool import VMPool, quickjs_factory
from workspace_agent.vm.store import VMStore

logger = structlog.get_logger(__name__)


@dataclass
class Container:
    settings: Settings
    vm_store: VMStore
    store: Store
    pool: VMPool
    sessions: SessionManager
    personas: PersonaRegistry
    registry: ToolRegistry
    engine: Engine
    reaper: asyncio.Task | None = None

    def start(self) -> None:
        """Start background housekeeping. Needs a running event loop."""
        if self.reaper is None:
            self.reaper = asyncio.create_task(
                self.sessions.run_reaper(self.settings.session_reap_interval_seconds),
                name="session-reaper",
            )

    async def close(self) -> None:
        if self.reaper is not None:
            self.reaper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self.reaper
            self.reaper = None
        await self.pool.close()
        await self.vm_store.close()
        logger.info("container_closed")


def build_container(
    settings: Settings,
    llm: LLMClient | None = None,
    store: Store | None = None,
) -> Container:
    vm_store = VMStore(settings.vm_root)
    store = store or InMemoryStore(auto_create=True)
    pool = VMPool(
        store,
        quickjs_factory(vm_store, settings.vm_call_time_limit_seconds, settings.vm_memory_limit_bytes),
        max_size=settings.vm_pool_size,
    )
    sessions = SessionManager(settings.session_ttl_seconds, settings.session_max_history)
    personas = PersonaRegistry()
    registry, task_tool = build_registry(
        vm_store,
        store,
        pool,
        sessions,
        personas,
        batch_max_calls=settings.batch_max_calls,
        task_timeout_seconds=settings.task_timeout_seconds,
        max_task_depth=settings.max_task_depth,
    )
    llm = llm or AnthropicLLMClient(
        api_key=settings.anthropic_api_key or None,
        model=settings.agent_model,
        max_tokens=settings.agent_max_tokens,
        temperature=settings.agent_temperature,
    )
    engine = Engine(llm, registry, sessions, personas, EngineConfig.from_settings(settings))
    task_tool.runner = engine

    logger.info(
        "container_built",
        vm_root=str(settings.vm_root),
        tools=len(registry.list_all()),
        personas=len(personas.list_all()),
        plan_mode=settings.plan_mode,
    )
    return Container(
        settings=settings,
        vm_store=vm_store,
        store=store,
        pool=pool,
        sessions=sessions,
        personas=personas,
        registry=registry,
        engine=engine,
    )
