"""Application factory and lifespan: injected container, exception handlers, shutdown."""

import pytest
from fastapi.testclient import TestClient

from workspace_agent.agent.llm_fake import ScriptedLLMClient
from workspace_agent.core.config import Settings
from workspace_agent.core.container import build_container
from workspace_agent.main import create_app

pytestmark = pytest.mark.unit


@pytest.fixture
def app_and_container(tmp_path):
    app = create_app()
    container = build_container(Settings(data_root=tmp_path), llm=ScriptedLLMClient())
    app.state.container = container
    return app, container


def test_lifespan_starts_and_closes_injected_container(app_and_container):
    app, container = app_and_container

    with TestClient(app) as client:
        assert container.reaper is not None
        assert not container.reaper.done()
        assert client.get("/api/health").json()["status"] == "healthy"

    assert container.reaper is None
    assert app.state.shutting_down is True


def test_http_errors_carry_debug_id(app_and_container):
    app, _ = app_and_container

    with TestClient(app) as client:
        response = client.get("/api/agent/sessions/unknown")

    assert response.status_code == 404
    body = response.json()
    assert body["detail"] == "Session not found"
    assert body["debug_id"]


def test_docs_hidden_outside_debug(app_and_container):
    app, _ = app_and_container
    with TestClient(app) as client:
        assert client.get("/docs").status_code == 404
