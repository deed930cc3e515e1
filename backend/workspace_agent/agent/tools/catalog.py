"""Default tool catalog wiring."""

from workspace_agent.agent.personas import PersonaRegistry
from workspace_agent.agent.session import SessionManager
from workspace_agent.agent.tools.batch import BatchTool
from workspace_agent.agent.tools.completion import AttemptCompletionTool
from workspace_agent.agent.tools.data import (
    AlterTableTool,
    CreateTableTool,
    DeleteDataTool,
    DeleteTableTool,
    GetWorkspaceInfoTool,
    InsertDataTool,
    QueryDataTool,
    QueryVMDataTool,
    UpdateDataTool,
)
from workspace_agent.agent.tools.logic import (
    DeployComponentTool,
    DeployLogicTool,
    GetLogicTool,
    ListComponentsTool,
    PublishAppTool,
)
from workspace_agent.agent.tools.persona import CreatePersonaTool
from workspace_agent.agent.tools.plan import CreatePlanTool, UpdatePlanTool
from workspace_agent.agent.tools.registry import ToolRegistry
from workspace_agent.agent.tools.task import TaskTool
from workspace_agent.agent.tools.ui import GenerateUISchemaTool, GetBlockSpecTool, GetUISchemaTool, ModifyUISchemaTool
from workspace_agent.db.workspace_store import Store
from workspace_agent.vm.pool import VMPool
from workspace_agent.vm.store import VMStore


def build_registry(
    vm_store: VMStore,
    store: Store,
    pool: VMPool,
    sessions: SessionManager,
    personas: PersonaRegistry,
    batch_max_calls: int = 25,
    task_timeout_seconds: float = 300.0,
    max_task_depth: int = 2,
) -> tuple[ToolRegistry, TaskTool]:
    """Register every tool. The TaskTool is returned so the engine can be attached as its runner."""
    registry = ToolRegistry()
    task = TaskTool(personas, timeout_seconds=task_timeout_seconds, max_depth=max_task_depth)
    tools = [
        CreateTableTool(vm_store),
        AlterTableTool(vm_store),
        DeleteTableTool(vm_store),
        InsertDataTool(vm_store),
        UpdateDataTool(vm_store),
        DeleteDataTool(vm_store),
        QueryDataTool(vm_store),
        QueryVMDataTool(vm_store),
        GetWorkspaceInfoTool(vm_store, store),
        GenerateUISchemaTool(store),
        ModifyUISchemaTool(store),
        GetUISchemaTool(store),
        GetBlockSpecTool(),
        DeployLogicTool(store, pool),
        GetLogicTool(store),
        DeployComponentTool(store),
        ListComponentsTool(store),
        PublishAppTool(store),
        CreatePlanTool(sessions),
        UpdatePlanTool(sessions),
        BatchTool(registry, max_calls=batch_max_calls),
        task,
        AttemptCompletionTool(store, vm_store),
        CreatePersonaTool(personas),
    ]
    for tool in tools:
        registry.register(tool)
    return registry, task
