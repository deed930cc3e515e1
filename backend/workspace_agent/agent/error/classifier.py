"""Error kinds surfaced to clients, plus exception classification.

Provides:
- ErrorKind enum: the stable error vocabulary of tool results and error events
- classify_tool_exception(): exception raised inside a tool -> ErrorKind
- is_retryable_llm_error(): predicate used by the tenacity retry around LLM calls

Tool failures are soft (they go back to the LLM as a failed tool_result).
Engine failures are hard (error event + done).
"""

import sqlite3
from enum import StrEnum

import anthropic
import jsonschema

from workspace_agent.core.exceptions import ColumnExistsError, InvalidSchemaError, LLMError


class ErrorKind(StrEnum):
    INVALID_PARAMETERS = "invalid_parameters"
    UNKNOWN_TOOL = "unknown_tool"
    PERSONA_DENIED = "persona_denied"
    SQL_ERROR = "sql_error"
    VALIDATION_FAILED = "validation_failed"
    TOOL_ERROR = "tool_error"
    LLM_ERROR = "llm_error"
    STEP_LIMIT_EXCEEDED = "step_limit_exceeded"
    SESSION_BUSY = "session_busy"
    CANCELLED = "cancelled"
    INTERNAL = "internal"


# Provider messages that indicate a transient failure.
# Matched case-insensitively against str(exc).
_RETRYABLE_LLM_PATTERNS: tuple[str, ...] = (
    "overloaded",
    "rate limit",
    "timeout",
    "timed out",
    "connection reset",
    "connection refused",
    "temporary failure",
    "service unavailable",
)


def classify_tool_exception(exc: BaseException) -> ErrorKind:
    """Map an exception raised by a tool to an ErrorKind. Defaults to TOOL_ERROR."""
    if isinstance(exc, sqlite3.Error):
        return ErrorKind.SQL_ERROR
    if isinstance(exc, (InvalidSchemaError, ColumnExistsError, jsonschema.ValidationError)):
        return ErrorKind.INVALID_PARAMETERS
    return ErrorKind.TOOL_ERROR


def is_retryable_llm_error(exc: BaseException) -> bool:
    """True for connection failures, timeouts, 429 and 5xx responses."""
    if isinstance(exc, LLMError):
        return exc.retryable
    if isinstance(exc, (anthropic.APIConnectionError, TimeoutError)):
        return True
    if isinstance(exc, anthropic.APIStatusError):
        return exc.status_code == 429 or exc.status_code >= 500
    if isinstance(exc, anthropic.AnthropicError):
        message = str(exc).lower()
        return any(pattern in message for pattern in _RETRYABLE_LLM_PATTERNS)
    return False
