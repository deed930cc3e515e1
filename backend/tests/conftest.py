"""Shared test fixtures for all test groups."""

import pytest
from tenacity import wait_none

from workspace_agent.agent.context import ToolContext
from workspace_agent.agent.engine import Engine, EngineConfig
from workspace_agent.agent.personas import PersonaRegistry
from workspace_agent.agent.session import SessionManager
from workspace_agent.agent.tools.catalog import build_registry
from workspace_agent.db.workspace_store import InMemoryStore
from workspace_agent.vm.pool import VMPool
from workspace_agent.vm.store import VMStore


class FakeVM:
    """Stand-in for a QuickJS VMInstance; records whether the pool closed it."""

    def __init__(self, workspace_id: str, code: str, code_hash: str) -> None:
        self.workspace_id = workspace_id
        self.code = code
        self.code_hash = code_hash
        self.closed = False

    def close(self) -> None:
        self.closed = True


class FakeVMFactory:
    def __init__(self) -> None:
        self.built: list[FakeVM] = []

    async def __call__(self, workspace_id: str, code: str, code_hash: str) -> FakeVM:
        vm = FakeVM(workspace_id, code, code_hash)
        self.built.append(vm)
        return vm


@pytest.fixture
async def vm_store(tmp_path):
    """VMStore rooted in a per-test temp dir."""
    store = VMStore(tmp_path / "vm")
    yield store
    await store.close()


@pytest.fixture
def workspace_store():
    return InMemoryStore(auto_create=True)


@pytest.fixture
def vm_factory():
    return FakeVMFactory()


@pytest.fixture
def pool(workspace_store, vm_factory):
    return VMPool(workspace_store, vm_factory, max_size=4)


@pytest.fixture
def sessions():
    return SessionManager(ttl_seconds=1800, max_history=200)


@pytest.fixture
def personas():
    return PersonaRegistry()


@pytest.fixture
def tool_registry(vm_store, workspace_store, pool, sessions, personas):
    registry, _ = build_registry(vm_store, workspace_store, pool, sessions, personas)
    return registry


@pytest.fixture
def ctx():
    return ToolContext(workspace_id="ws-test", user_id="user-001", session_id="sess-001")


@pytest.fixture
def build_engine(vm_store, workspace_store, pool, sessions, personas):
    """Factory: ``build_engine(llm, **EngineConfig overrides)`` wired to the shared fixtures."""

    def _build(llm, task_timeout_seconds: float = 300.0, **overrides) -> Engine:
        registry, task_tool = build_registry(
            vm_store,
            workspace_store,
            pool,
            sessions,
            personas,
            task_timeout_seconds=task_timeout_seconds,
        )
        engine = Engine(llm, registry, sessions, personas, EngineConfig(**overrides), llm_wait=wait_none())
        task_tool.runner = engine
        return engine

    return _build
