"""Classification of execution failures and the recovery chosen for each."""

from __future__ import annotations

import asyncio
import re
from typing import Any, Literal

import structlog
from pydantic import BaseModel, ConfigDict

from conductor.exceptions import OperationAborted

logger = structlog.get_logger()

ErrorType = Literal[
    "rate_limit",
    "auth",
    "network",
    "timeout",
    "invalid_request",
    "server_error",
    "model_not_found",
    "context_length",
    "content_filter",
    "unknown",
]

UNKNOWN_TOOL_PATTERN = re.compile(r"^Tool (.+) not found$")

CONVERSATION_ORDER_MARKERS = (
    "must end with a user message",
    "final message must be a user message",
    "conversation must end with a user",
    "assistant message prefill",
    "does not support assistant prefill",
)

CONTINUATION_MESSAGE = "[System] Continue from where you left off."


class ParsedError(BaseModel):
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    message: str
    error_type: ErrorType
    retryable: bool
    retry_delay: float | None = None
    original: BaseException


class AbortRecovery(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["aborted"] = "aborted"


class UnknownToolRecovery(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["unknown_tool"] = "unknown_tool"
    tool_name: str

    @property
    def warning(self) -> str:
        return (
            f'Unknown tool "{self.tool_name}". '
            "Shell commands must be run via execute_command."
        )

    @property
    def follow_up(self) -> str:
        return (
            f'[System] Your previous tool call used "{self.tool_name}" which is not '
            "a valid tool. Shell commands like git, npm, etc. must be run via the "
            "execute_command tool. Please retry with the correct tool name."
        )


class ConversationOrderRecovery(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["conversation_order"] = "conversation_order"
    detail: str
    continuation: str = CONTINUATION_MESSAGE


class SurfaceError(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["surface"] = "surface"
    parsed: ParsedError


Recovery = AbortRecovery | UnknownToolRecovery | ConversationOrderRecovery | SurfaceError


def _status(error: BaseException) -> int | None:
    for attr in ("status_code", "status"):
        value = getattr(error, attr, None)
        if isinstance(value, int):
            return value
    return None


def _retry_after(error: BaseException) -> float | None:
    headers = getattr(error, "headers", None) or {}
    value: Any = getattr(error, "retry_after", None)
    if value is None and hasattr(headers, "get"):
        value = headers.get("retry-after")
    if isinstance(value, int | float):
        return float(value)
    if isinstance(value, str):
        try:
            return float(int(value))
        except ValueError:
            return None
    return None


def _detail(error: BaseException) -> str:
    body = getattr(error, "body", None)
    if isinstance(body, dict):
        inner = body.get("error")
        if isinstance(inner, dict) and inner.get("message"):
            return str(inner["message"])
    message = re.sub(r"^(error|exception|failed):\s*", "", str(error), flags=re.I)
    if len(message) > 200:
        message = message[:200] + "..."
    return message or "An unknown error occurred"


def _has(message: str, *needles: str) -> bool:
    return any(n in message for n in needles)


def parse_error(error: BaseException) -> ParsedError:
    """Map an arbitrary exception to a user-facing category and retry hint."""
    message = str(error).lower()
    status = _status(error)

    def parsed(
        text: str, error_type: ErrorType, retryable: bool, delay: float | None = None
    ) -> ParsedError:
        return ParsedError(
            message=text,
            error_type=error_type,
            retryable=retryable,
            retry_delay=delay,
            original=error,
        )

    if _has(message, "rate limit", "rate_limit", "429") or status == 429:
        return parsed(
            "Rate limited. Please wait a moment before trying again.",
            "rate_limit",
            True,
            _retry_after(error) or 5.0,
        )
    if (
        _has(
            message,
            "unauthorized",
            "authentication",
            "invalid api key",
            "invalid_api_key",
            "api key",
        )
        or status == 401
    ):
        return parsed(
            "Authentication failed. Please check your API key or log in again.",
            "auth",
            False,
        )
    if status == 403:
        return parsed(
            "Access denied. You may not have permission to use this model.",
            "auth",
            False,
        )
    if isinstance(error, ConnectionError) or _has(
        message, "network", "econnrefused", "enotfound", "fetch failed", "connection"
    ):
        return parsed(
            "Network error. Please check your internet connection.",
            "network",
            True,
            2.0,
        )
    if isinstance(error, TimeoutError) or _has(
        message, "timeout", "timed out", "etimedout"
    ):
        return parsed(
            "Request timed out. The server may be overloaded.", "timeout", True, 3.0
        )
    if _has(
        message, "model not found", "model_not_found", "does not exist", "invalid model"
    ):
        return parsed(
            "Model not found. Please select a different model.",
            "model_not_found",
            False,
        )
    if _has(
        message,
        "context length",
        "context_length",
        "too many tokens",
        "maximum context",
        "token limit",
    ):
        return parsed(
            "Message too long. Try starting a new thread.", "context_length", False
        )
    if _has(
        message,
        "content filter",
        "content_filter",
        "content policy",
        "safety",
        "prohibited",
    ):
        return parsed(
            "Content was filtered by the model's safety system.",
            "content_filter",
            False,
        )
    if _has(message, "internal server", "server error") or status in (500, 502, 503):
        return parsed(
            "Server error. The API may be experiencing issues.",
            "server_error",
            True,
            5.0,
        )
    if _has(message, "invalid request", "bad request") or status == 400:
        return parsed(f"Invalid request: {_detail(error)}", "invalid_request", False)
    return parsed(_detail(error), "unknown", False)


def decide_recovery(error: BaseException, *, aborted: bool) -> Recovery:
    """Choose how the controller reacts to a failed operation.

    *aborted* is whether the operation's cancel handle fired; any failure
    after cancellation is reported as an abort rather than an error.
    """
    if aborted or isinstance(error, OperationAborted | asyncio.CancelledError):
        return AbortRecovery()

    match = UNKNOWN_TOOL_PATTERN.match(str(error))
    if match:
        return UnknownToolRecovery(tool_name=match.group(1))

    lowered = str(error).lower()
    if _has(lowered, *CONVERSATION_ORDER_MARKERS):
        return ConversationOrderRecovery(detail=str(error))

    parsed = parse_error(error)
    logger.info(
        "execution_error_classified",
        error_type=parsed.error_type,
        retryable=parsed.retryable,
        retry_delay=parsed.retry_delay,
    )
    return SurfaceError(parsed=parsed)
