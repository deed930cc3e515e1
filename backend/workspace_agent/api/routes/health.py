from dataclasses import asdict

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

router = APIRouter()


@router.get("/health")
async def health_check(request: Request):
    """Liveness plus a VM pool snapshot. Returns 503 while shutting down."""
    if getattr(request.app.state, "shutting_down", False):
        return JSONResponse(
            status_code=503,
            content={"status": "shutting_down", "service": "workspace-agent"},
        )
    container = getattr(request.app.state, "container", None)
    pool = asdict(container.pool.stats()) if container is not None else None
    return {"status": "healthy", "service": "workspace-agent", "vm_pool": pool}
