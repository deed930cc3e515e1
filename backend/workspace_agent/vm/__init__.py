from workspace_agent.vm.pool import VMCodeLoader, VMPool, code_digest, quickjs_factory
from workspace_agent.vm.store import VMStore

__all__ = ["VMCodeLoader", "VMPool", "VMStore", "code_digest", "quickjs_factory"]
