"""Log processors: credential masking and value clipping."""

import pytest

from workspace_agent.core.logging import REDACTED, redact_sensitive_values, truncate_long_values

pytestmark = pytest.mark.unit


def test_credential_keys_are_masked():
    event = {"event": "llm_client_ready", "anthropic_api_key": "sk-ant-123", "Authorization": "Bearer x", "model": "m"}

    result = redact_sensitive_values(None, "info", event)

    assert result["anthropic_api_key"] == REDACTED
    assert result["Authorization"] == REDACTED
    assert result["model"] == "m"


def test_long_values_are_clipped():
    processor = truncate_long_values(10)
    event = {"event": "x" * 50, "error": "e" * 25, "tool": "execute_sql", "count": 12345678901234}

    result = processor(None, "warning", event)

    assert result["error"] == "eeeeeeeeee... [15 chars truncated]"
    assert result["event"] == "x" * 50
    assert result["tool"] == "execute_sql"
    assert result["count"] == 12345678901234
