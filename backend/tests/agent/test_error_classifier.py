"""Unit tests for tool exception classification and LLM retry decisions."""

import sqlite3

import anthropic
import httpx
import jsonschema
import pytest

from workspace_agent.agent.error.classifier import ErrorKind, classify_tool_exception, is_retryable_llm_error
from workspace_agent.core.exceptions import ColumnExistsError, InvalidSchemaError, LLMError, TableNotFoundError

pytestmark = pytest.mark.unit

REQUEST = httpx.Request("POST", "https://api.anthropic.com/v1/messages")


def status_error(code: int) -> anthropic.APIStatusError:
    response = httpx.Response(code, request=REQUEST)
    return anthropic.APIStatusError(f"status {code}", response=response, body=None)


# ---------------------------------------------------------------------------
# ErrorKind
# ---------------------------------------------------------------------------


def test_error_kinds_are_strings():
    assert ErrorKind.SQL_ERROR == "sql_error"
    assert ErrorKind.STEP_LIMIT_EXCEEDED == "step_limit_exceeded"
    assert isinstance(ErrorKind.INTERNAL, str)


# ---------------------------------------------------------------------------
# classify_tool_exception
# ---------------------------------------------------------------------------


class TestClassifyToolException:
    def test_sqlite_errors(self):
        assert classify_tool_exception(sqlite3.OperationalError("no such table: x")) == ErrorKind.SQL_ERROR
        assert classify_tool_exception(sqlite3.IntegrityError("UNIQUE constraint failed")) == ErrorKind.SQL_ERROR

    def test_schema_problems_are_invalid_parameters(self):
        assert classify_tool_exception(InvalidSchemaError("bad")) == ErrorKind.INVALID_PARAMETERS
        assert classify_tool_exception(ColumnExistsError("tasks", "title")) == ErrorKind.INVALID_PARAMETERS
        assert classify_tool_exception(jsonschema.ValidationError("wrong type")) == ErrorKind.INVALID_PARAMETERS

    def test_everything_else_is_tool_error(self):
        assert classify_tool_exception(TableNotFoundError("tasks")) == ErrorKind.TOOL_ERROR
        assert classify_tool_exception(RuntimeError("boom")) == ErrorKind.TOOL_ERROR


# ---------------------------------------------------------------------------
# is_retryable_llm_error
# ---------------------------------------------------------------------------


class TestRetryableLLMError:
    def test_llm_error_carries_its_own_flag(self):
        assert is_retryable_llm_error(LLMError("x", retryable=True)) is True
        assert is_retryable_llm_error(LLMError("x")) is False

    def test_connection_and_timeout(self):
        assert is_retryable_llm_error(anthropic.APIConnectionError(request=REQUEST)) is True
        assert is_retryable_llm_error(TimeoutError()) is True

    @pytest.mark.parametrize("code,expected", [(429, True), (500, True), (529, True), (400, False), (401, False)])
    def test_status_codes(self, code, expected):
        assert is_retryable_llm_error(status_error(code)) is expected

    def test_message_patterns(self):
        assert is_retryable_llm_error(anthropic.AnthropicError("Server Overloaded")) is True
        assert is_retryable_llm_error(anthropic.AnthropicError("prompt too long")) is False

    def test_unrelated_exceptions(self):
        assert is_retryable_llm_error(ValueError("bad json")) is False
