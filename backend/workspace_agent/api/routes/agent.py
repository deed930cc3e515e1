"""Agent API routes: run a turn over SSE, inspect and steer sessions."""

from collections.abc import AsyncGenerator

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from workspace_agent.core.container import Container
from workspace_agent.core.exceptions import SessionBusyError, SessionNotFoundError

logger = structlog.get_logger(__name__)

router = APIRouter()


def get_container(request: Request) -> Container:
    return request.app.state.container


# ---------- Request / Response ----------


class RunRequest(BaseModel):
    workspace_id: str = Field(min_length=1)
    user_id: str = Field(min_length=1)
    message: str
    session_id: str | None = None
    persona_id: str | None = None


class ActionDecision(BaseModel):
    approved: bool


# ---------- Endpoints ----------


@router.post("/run")
async def run(request: RunRequest, container: Container = Depends(get_container)):
    """Start a turn and stream its events as SSE frames."""
    stream = container.engine.run(
        workspace_id=request.workspace_id,
        user_id=request.user_id,
        prompt=request.message,
        session_id=request.session_id,
        persona_id=request.persona_id,
    )

    async def generate_events() -> AsyncGenerator[str, None]:
        try:
            async for event in stream:
                yield event.to_sse()
        finally:
            # Cancels the turn when the client disconnects mid-stream
            await stream.aclose()

    return StreamingResponse(
        generate_events(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive", "X-Session-Id": stream.session_id},
    )


@router.get("/sessions/{session_id}")
async def get_session(session_id: str, container: Container = Depends(get_container)):
    session = container.sessions.get(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return session.snapshot()


@router.post("/sessions/{session_id}/confirm-plan")
async def confirm_plan(session_id: str, container: Container = Depends(get_container)):
    """Move a drafted plan to confirmed so the next turn executes it."""
    session = container.sessions.get(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    if not session.confirm_plan():
        raise HTTPException(status_code=409, detail=f"No draft plan to confirm (phase: {session.phase})")
    logger.info("plan_confirmed", session_id=session_id)
    return session.snapshot()


@router.post("/sessions/{session_id}/actions/{action_id}")
async def resolve_action(
    session_id: str,
    action_id: str,
    decision: ActionDecision,
    container: Container = Depends(get_container),
):
    """Approve or decline a tool call that is waiting for confirmation."""
    try:
        result = await container.engine.confirm(session_id, action_id, decision.approved)
    except SessionNotFoundError:
        raise HTTPException(status_code=404, detail="Session not found")
    except SessionBusyError:
        raise HTTPException(status_code=409, detail="Session is running a turn")
    if result is None:
        raise HTTPException(status_code=404, detail="Pending action not found")
    return {"action_id": action_id, "approved": decision.approved, **result.to_event_data()}


@router.post("/sessions/{session_id}/cancel")
async def cancel(session_id: str, container: Container = Depends(get_container)):
    if container.sessions.get(session_id) is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return {"session_id": session_id, "cancelled": container.engine.cancel(session_id)}


@router.get("/personas")
async def list_personas(container: Container = Depends(get_container)):
    return [
        persona.model_dump(include={"id", "name", "description", "tool_filter", "enabled", "suggestions", "builtin"})
        for persona in container.personas.list_all()
    ]
