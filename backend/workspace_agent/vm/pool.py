"""VMPool: LRU cache of JS runtimes keyed by (workspace_id, code_hash).

The pool never watches the Store. The only invalidation trigger is an explicit
``invalidate(workspace_id)`` issued after a logic deploy; it drops every cached
entry for the workspace and bumps a per-workspace generation so that builds
already in flight are closed instead of cached, and their waiters reload the
code and try again.

Concurrent ``get_or_create`` calls for the same key share a single build
(singleflight via a shared future). The build runs as its own task, so a
caller that is cancelled while waiting never takes the build down with it.
"""

from __future__ import annotations

import asyncio
import hashlib
from collections import OrderedDict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

import structlog

from workspace_agent.core.exceptions import VMRuntimeError

if TYPE_CHECKING:
    from workspace_agent.vm.runtime import VMInstance
    from workspace_agent.vm.store import VMStore

logger = structlog.get_logger(__name__)

VMFactory = Callable[[str, str, str], Awaitable[Any]]


def code_digest(code: str) -> str:
    """sha256 hex digest used as the cache key component for *code*."""
    return hashlib.sha256(code.encode("utf-8")).hexdigest()


@runtime_checkable
class VMCodeLoader(Protocol):
    """Supplies the currently-deployed logic for a workspace."""

    async def get_logic_code(self, workspace_id: str) -> tuple[str, str]:
        """Return ``(code, sha256_hex)``; empty code means no logic deployed."""
        ...


@dataclass
class PoolStats:
    size: int
    capacity: int
    hits: int
    misses: int
    builds: int
    evictions: int


def quickjs_factory(store: VMStore, time_limit: float = 10.0, memory_limit: int = 64 * 1024 * 1024) -> VMFactory:
    """Default factory: QuickJS instances bridged to *store*."""

    async def build(workspace_id: str, code: str, code_hash: str) -> VMInstance:
        from workspace_agent.vm.runtime import VMInstance  # keep quickjs out of pool imports

        return await VMInstance.create(
            workspace_id,
            code,
            code_hash,
            store,
            time_limit=time_limit,
            memory_limit=memory_limit,
        )

    return build


class _StaleBuild(Exception):
    """The build finished after an invalidate; waiters reload and retry."""


class VMPool:
    def __init__(self, loader: VMCodeLoader, factory: VMFactory, max_size: int = 10) -> None:
        if max_size < 1:
            raise ValueError("max_size must be >= 1")
        self._loader = loader
        self._factory = factory
        self._max_size = max_size
        self._cache: OrderedDict[tuple[str, str], Any] = OrderedDict()
        self._inflight: dict[tuple[str, str], asyncio.Future] = {}
        self._build_tasks: set[asyncio.Task] = set()
        self._generations: dict[str, int] = {}
        self._lock = asyncio.Lock()
        self._hits = 0
        self._misses = 0
        self._builds = 0
        self._evictions = 0

    async def get_or_create(self, workspace_id: str) -> Any:
        while True:
            code, code_hash = await self._loader.get_logic_code(workspace_id)
            code = code or ""
            code_hash = code_hash or code_digest(code)
            key = (workspace_id, code_hash)

            async with self._lock:
                instance = self._cache.get(key)
                if instance is not None:
                    self._cache.move_to_end(key)
                    self._hits += 1
                    return instance
                self._misses += 1
                shared = self._inflight.get(key)
                if shared is None:
                    shared = asyncio.get_running_loop().create_future()
                    self._inflight[key] = shared
                    generation = self._generations.get(workspace_id, 0)
                    task = asyncio.create_task(
                        self._build(key, code, generation, shared),
                        name=f"vm-build-{workspace_id}",
                    )
                    self._build_tasks.add(task)
                    task.add_done_callback(self._build_tasks.discard)

            try:
                # shield: a cancelled caller leaves the build running for the others
                return await asyncio.shield(shared)
            except _StaleBuild:
                logger.debug("vm_build_stale_retry", workspace_id=workspace_id)

    async def _build(self, key: tuple[str, str], code: str, generation: int, shared: asyncio.Future) -> None:
        workspace_id, code_hash = key
        try:
            instance = await self._factory(workspace_id, code, code_hash)
        except BaseException as exc:
            async with self._lock:
                self._inflight.pop(key, None)
            if isinstance(exc, asyncio.CancelledError):
                _fail(shared, VMRuntimeError(f"VM build for workspace '{workspace_id}' was cancelled"))
                raise
            _fail(shared, exc)
            logger.warning("vm_build_failed", workspace_id=workspace_id, error=str(exc))
            return

        evicted: list[Any] = []
        stale = False
        async with self._lock:
            self._inflight.pop(key, None)
            self._builds += 1
            if self._generations.get(workspace_id, 0) == generation:
                self._cache[key] = instance
                self._cache.move_to_end(key)
                while len(self._cache) > self._max_size:
                    old_key, old = self._cache.popitem(last=False)
                    self._evictions += 1
                    evicted.append(old)
                    logger.debug("vm_pool_evicted", workspace_id=old_key[0], code_hash=old_key[1][:12])
            else:
                stale = True

        if stale:
            _close_instance(instance)
            logger.info("vm_build_discarded", workspace_id=workspace_id, code_hash=code_hash[:12])
            _fail(shared, _StaleBuild())
        else:
            shared.set_result(instance)
        for old in evicted:
            _close_instance(old)

    async def invalidate(self, workspace_id: str) -> int:
        """Drop every cached VM for *workspace_id*; returns how many were removed."""
        async with self._lock:
            self._generations[workspace_id] = self._generations.get(workspace_id, 0) + 1
            keys = [k for k in self._cache if k[0] == workspace_id]
            removed = [self._cache.pop(k) for k in keys]
        for instance in removed:
            _close_instance(instance)
        logger.info("vm_pool_invalidated", workspace_id=workspace_id, removed=len(removed))
        return len(removed)

    def stats(self) -> PoolStats:
        return PoolStats(
            size=len(self._cache),
            capacity=self._max_size,
            hits=self._hits,
            misses=self._misses,
            builds=self._builds,
            evictions=self._evictions,
        )

    async def close(self) -> None:
        pending = list(self._build_tasks)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        async with self._lock:
            instances = list(self._cache.values())
            self._cache.clear()
        for instance in instances:
            _close_instance(instance)


def _close_instance(instance: Any) -> None:
    close = getattr(instance, "close", None)
    if callable(close):
        close()


def _fail(shared: asyncio.Future, exc: BaseException) -> None:
    if shared.done():
        return
    shared.set_exception(exc)
    # Marks the exception retrieved when every waiter has gone away
    shared.exception()
