"""VMInstance: a QuickJS runtime hosting one workspace's deployed logic.

A workspace script registers HTTP-style handlers on ``exports.routes``::

    exports.routes = {
        "GET /tasks": function (ctx) { return db.query("SELECT * FROM tasks"); },
        "POST /tasks": function (ctx) {
            return { status: 201, body: db.insert("tasks", ctx.body) };
        },
        "GET /tasks/:id": function (ctx) {
            return db.queryOne("SELECT * FROM tasks WHERE id = ?", [ctx.params.id]);
        },
    };

Globals installed before the script runs:
- ``db``: query / queryOne / exec / insert / update / delete, bridged to VMStore
- ``console``: log / info / warn / error / debug, routed to structlog
- ``exports`` / ``module.exports``

QuickJS contexts are not thread-safe, so every instance owns a single worker
thread: the context is created there and every evaluation runs there. Handler
calls are therefore serialized per VM. Host ``db`` calls hop back onto the
event loop with ``asyncio.run_coroutine_threadsafe``.
"""

from __future__ import annotations

import asyncio
import json
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING, Any

import quickjs
import structlog
from pydantic import BaseModel, Field

from workspace_agent.core.exceptions import VMRuntimeError

if TYPE_CHECKING:
    from workspace_agent.vm.store import VMStore

logger = structlog.get_logger(__name__)

_PRELUDE = """
var exports = {};
var module = { exports: exports };

function __fmt(value) {
  if (typeof value === "string") { return value; }
  try { return JSON.stringify(value); } catch (e) { return String(value); }
}
function __log(level, args) {
  __host_console(level, Array.prototype.map.call(args, __fmt).join(" "));
}
var console = {
  log: function () { __log("info", arguments); },
  info: function () { __log("info", arguments); },
  warn: function () { __log("warning", arguments); },
  error: function () { __log("error", arguments); },
  debug: function () { __log("debug", arguments); }
};

function __host_call(op, args) {
  var res = JSON.parse(__host_db(op, JSON.stringify(args)));
  if (res.error !== undefined) { throw new Error(res.error); }
  return res.result;
}
var db = {
  query: function (sql, params) { return __host_call("query", [sql, params || []]); },
  queryOne: function (sql, params) {
    var rows = db.query(sql, params);
    return rows.length > 0 ? rows[0] : null;
  },
  exec: function (sql, params) { return __host_call("exec", [sql, params || []]); },
  insert: function (table, row) { return __host_call("insert", [table, row || {}]); },
  update: function (table, data, where) { return __host_call("update", [table, data || {}, where || {}]); },
  "delete": function (table, where) { return __host_call("delete", [table, where || {}]); }
};

function __routes() {
  return (module.exports && module.exports.routes) || exports.routes || {};
}
function __route_keys() {
  return JSON.stringify(Object.keys(__routes()));
}
function __invoke(key, ctxJson) {
  var out = __routes()[key](JSON.parse(ctxJson));
  return JSON.stringify(out === undefined ? null : out);
}
"""


class VMRequest(BaseModel):
    method: str = "GET"
    path: str = "/"
    query: dict[str, Any] = Field(default_factory=dict)
    headers: dict[str, str] = Field(default_factory=dict)
    body: Any = None


class VMResponse(BaseModel):
    status: int = 200
    body: Any = None
    headers: dict[str, str] = Field(default_factory=dict)


def match_route(route_keys: list[str], method: str, path: str) -> tuple[str, dict[str, str]] | None:
    """Find the handler key for *method* + *path*.

    Keys look like ``"GET /tasks/:id"``. Literal routes win over parameterized ones;
    otherwise declaration order decides.
    """
    method = method.upper()
    segments = [s for s in path.split("?", 1)[0].split("/") if s]
    fallback: tuple[str, dict[str, str]] | None = None

    for key in route_keys:
        route_method, _, route_path = key.strip().partition(" ")
        if route_method.upper() != method:
            continue
        pattern = [s for s in route_path.strip().split("/") if s]
        if len(pattern) != len(segments):
            continue
        params: dict[str, str] = {}
        for expected, actual in zip(pattern, segments):
            if expected.startswith(":"):
                params[expected[1:]] = actual
            elif expected != actual:
                break
        else:
            if not params:
                return key, params
            if fallback is None:
                fallback = (key, params)
    return fallback


class VMInstance:
    """One compiled workspace script plus its ``db`` binding."""

    def __init__(
        self,
        workspace_id: str,
        code: str,
        code_hash: str,
        store: VMStore,
        time_limit: float = 10.0,
        memory_limit: int = 64 * 1024 * 1024,
    ) -> None:
        self.workspace_id = workspace_id
        self.code = code
        self.code_hash = code_hash
        self._store = store
        self._time_limit = time_limit
        self._memory_limit = memory_limit
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"vm-{workspace_id[:12]}")
        self._loop: asyncio.AbstractEventLoop | None = None
        self._context: quickjs.Context | None = None
        self._route_keys: list[str] = []
        self._closed = False

    @classmethod
    async def create(
        cls,
        workspace_id: str,
        code: str,
        code_hash: str,
        store: VMStore,
        time_limit: float = 10.0,
        memory_limit: int = 64 * 1024 * 1024,
    ) -> VMInstance:
        """Build the runtime, evaluate *code* and capture its routes.

        Raises:
            VMRuntimeError: when the script fails to compile or throws on load.
        """
        instance = cls(workspace_id, code, code_hash, store, time_limit, memory_limit)
        instance._loop = asyncio.get_running_loop()
        try:
            await instance._loop.run_in_executor(instance._executor, instance._boot)
        except quickjs.JSException as exc:
            instance.close()
            raise VMRuntimeError(f"failed to load logic for workspace {workspace_id}: {exc}") from exc
        logger.info(
            "vm_instance_built",
            workspace_id=workspace_id,
            code_hash=code_hash[:12],
            routes=len(instance._route_keys),
        )
        return instance

    @property
    def routes(self) -> list[str]:
        return list(self._route_keys)

    # ------------------------------------------------------------------
    # Worker-thread side
    # ------------------------------------------------------------------

    def _boot(self) -> None:
        context = quickjs.Context()
        context.set_memory_limit(self._memory_limit)
        context.set_time_limit(self._time_limit)
        context.add_callable("__host_db", self._host_db)
        context.add_callable("__host_console", self._host_console)
        context.eval(_PRELUDE)
        if self.code.strip():
            context.eval(self.code)
        self._route_keys = json.loads(context.eval("__route_keys()"))
        self._context = context

    def _invoke(self, key: str, ctx_json: str) -> str:
        assert self._context is not None
        return self._context.eval(f"__invoke({json.dumps(key)}, {json.dumps(ctx_json)})")

    def _host_console(self, level: str, message: str) -> None:
        log = getattr(logger, level, logger.info)
        log("vm_console", workspace_id=self.workspace_id, message=message)

    def _host_db(self, op: str, args_json: str) -> str:
        """Synchronous bridge called from JS; returns ``{"result"}`` or ``{"error"}`` JSON."""
        assert self._loop is not None
        future = asyncio.run_coroutine_threadsafe(self._db_call(op, json.loads(args_json)), self._loop)
        try:
            result = future.result(timeout=self._time_limit)
        except Exception as exc:
            future.cancel()
            return json.dumps({"error": str(exc) or type(exc).__name__})
        return json.dumps({"result": result}, default=str)

    # ------------------------------------------------------------------
    # Event-loop side
    # ------------------------------------------------------------------

    async def _db_call(self, op: str, args: list[Any]) -> Any:
        ws = self.workspace_id
        if op == "query":
            return (await self._store.execute_sql(ws, args[0], args[1])).rows
        if op == "exec":
            result = await self._store.execute_sql(ws, args[0], args[1])
            return {"affected_rows": result.affected_rows, "last_insert_id": result.last_insert_id}
        if op == "insert":
            inserted = await self._store.insert_row(ws, args[0], args[1])
            return {"id": inserted.last_insert_id, "affected_rows": inserted.affected_rows}
        if op == "update":
            updated = await self._store.update_row(ws, args[0], args[1], args[2])
            return {"affected_rows": updated.affected_rows}
        if op == "delete":
            deleted = await self._store.delete_where(ws, args[0], args[1])
            return {"affected_rows": deleted.affected_rows}
        raise VMRuntimeError(f"unknown db operation '{op}'")

    async def handle(self, request: VMRequest) -> VMResponse:
        """Route *request* to a script handler and shape its return value."""
        if self._closed or self._loop is None:
            raise VMRuntimeError(f"VM for workspace {self.workspace_id} is closed")

        matched = match_route(self._route_keys, request.method, request.path)
        if matched is None:
            return VMResponse(status=404, body={"error": "route not found"})
        key, params = matched

        ctx_json = json.dumps(
            {
                "method": request.method.upper(),
                "path": request.path,
                "params": params,
                "query": request.query,
                "headers": request.headers,
                "body": request.body,
            },
            default=str,
        )
        try:
            raw = await self._loop.run_in_executor(self._executor, self._invoke, key, ctx_json)
        except quickjs.JSException as exc:
            logger.warning("vm_handler_error", workspace_id=self.workspace_id, route=key, error=str(exc))
            return VMResponse(status=500, body={"error": str(exc)})

        out = json.loads(raw)
        if isinstance(out, dict) and isinstance(out.get("status"), int):
            return VMResponse(
                status=out["status"],
                body=out.get("body"),
                headers={str(k): str(v) for k, v in (out.get("headers") or {}).items()},
            )
        return VMResponse(status=200, body=out)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        # Pending handler calls are allowed to finish
        self._executor.shutdown(wait=False)
