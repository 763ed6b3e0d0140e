"""Typed execution-stream events, normalized from the wire at ingestion.

The execution service speaks camelCase dicts shaped like
``{"type": ..., "runId": ..., "payload": {...}}`` while observational-memory
parts arrive as ``{"type": ..., "data": {...}}``. ``parse_chunk`` flattens
both into one of the models below so nothing downstream handles raw dicts.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal

import structlog
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
    model_validator,
)
from pydantic.alias_generators import to_camel

logger = structlog.get_logger()

OMOperationType = Literal["observation", "reflection"]
BufferedStatus = Literal["idle", "running", "complete"]


class _WireModel(BaseModel):
    model_config = ConfigDict(
        frozen=True, alias_generator=to_camel, populate_by_name=True, extra="ignore"
    )


class _StreamEvent(_WireModel):
    run_id: str | None = None


class TextStart(_StreamEvent):
    type: Literal["text-start"] = "text-start"
    id: str


class TextDelta(_StreamEvent):
    type: Literal["text-delta"] = "text-delta"
    id: str
    text: str = ""


class ReasoningStart(_StreamEvent):
    type: Literal["reasoning-start"] = "reasoning-start"
    id: str


class ReasoningDelta(_StreamEvent):
    type: Literal["reasoning-delta"] = "reasoning-delta"
    id: str
    text: str = ""


class ToolCall(_StreamEvent):
    type: Literal["tool-call"] = "tool-call"
    tool_call_id: str
    tool_name: str
    args: Any = None


class ToolResult(_StreamEvent):
    type: Literal["tool-result"] = "tool-result"
    tool_call_id: str
    tool_name: str
    result: Any = None
    is_error: bool = False


class ToolError(_StreamEvent):
    type: Literal["tool-error"] = "tool-error"
    tool_call_id: str
    tool_name: str = ""
    error: Any = None


class ToolCallApproval(_StreamEvent):
    """The service has paused and will not continue until resumed."""

    type: Literal["tool-call-approval"] = "tool-call-approval"
    tool_call_id: str
    tool_name: str
    args: Any = None


class StreamError(_StreamEvent):
    type: Literal["error"] = "error"
    error: str = "Unknown error"

    @model_validator(mode="before")
    @classmethod
    def _stringify(cls, data: Any) -> Any:
        if isinstance(data, dict) and "error" in data and not isinstance(
            data["error"], str
        ):
            data = {**data, "error": str(data["error"])}
        return data


class StepUsage(_WireModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0


class StepFinish(_StreamEvent):
    type: Literal["step-finish"] = "step-finish"
    usage: StepUsage | None = None


class Finish(_StreamEvent):
    type: Literal["finish"] = "finish"
    reason: str | None = None


# -- observational memory ---------------------------------------------------


class BufferedObservations(_WireModel):
    status: BufferedStatus = "idle"
    chunks: int = 0
    message_tokens: int = 0
    projected_message_removal: int = 0
    observation_tokens: int = 0


class BufferedReflection(_WireModel):
    status: BufferedStatus = "idle"
    input_observation_tokens: int = 0
    observation_tokens: int = 0


class BufferedWindow(_WireModel):
    observations: BufferedObservations = Field(default_factory=BufferedObservations)
    reflection: BufferedReflection = Field(default_factory=BufferedReflection)


class OMStatus(_StreamEvent):
    """Status snapshot; accepts the windowed shape and the legacy flat one."""

    type: Literal["data-om-status", "data-om-progress"] = "data-om-status"
    message_tokens: int = 0
    message_threshold: int = 0
    observation_tokens: int = 0
    observation_threshold: int = 0
    buffered: BufferedWindow | None = None
    step_number: int = 0
    generation_count: int = 0

    @model_validator(mode="before")
    @classmethod
    def _normalize(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        windows = data.get("windows")
        if windows:
            active = windows.get("active", {})
            messages = active.get("messages", {})
            observations = active.get("observations", {})
            return {
                "type": data.get("type", "data-om-status"),
                "runId": data.get("runId"),
                "messageTokens": messages.get("tokens", 0),
                "messageThreshold": messages.get("threshold", 0),
                "observationTokens": observations.get("tokens", 0),
                "observationThreshold": observations.get("threshold", 0),
                "buffered": windows.get("buffered"),
                "stepNumber": data.get("stepNumber", 0),
                "generationCount": data.get("generationCount", 0),
            }
        if "pendingTokens" in data:
            return {
                "type": data.get("type", "data-om-progress"),
                "runId": data.get("runId"),
                "messageTokens": data["pendingTokens"],
                "messageThreshold": data.get("messageTokens")
                or data.get("threshold", 0),
                "observationTokens": data.get("observationTokens", 0),
                "observationThreshold": data.get("observationTokensThreshold")
                or data.get("reflectionThreshold", 0),
            }
        return data


def _operation_type(data: dict[str, Any], reflection_type: str) -> OMOperationType:
    if data.get("type") == reflection_type:
        return "reflection"
    given = data.get("operationType", data.get("operation_type"))
    return "reflection" if given == "reflection" else "observation"


def _without(data: dict[str, Any], *keys: str) -> dict[str, Any]:
    return {k: v for k, v in data.items() if k not in keys}


class OMCycleStart(_StreamEvent):
    type: Literal["data-om-observation-start", "data-om-reflection-start"]
    cycle_id: str = "unknown"
    operation_type: OMOperationType = "observation"
    tokens: int = 0

    @model_validator(mode="before")
    @classmethod
    def _normalize(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        tokens = (
            data.get("tokensToObserve")
            or data.get("tokensToReflect")
            or data.get("tokens")
            or 0
        )
        return {
            **_without(data, "operation_type"),
            "operationType": _operation_type(data, "data-om-reflection-start"),
            "tokens": tokens,
        }


class OMCycleEnd(_StreamEvent):
    type: Literal["data-om-observation-end", "data-om-reflection-end"]
    cycle_id: str = "unknown"
    operation_type: OMOperationType = "observation"
    duration_ms: int = 0
    tokens_observed: int = 0
    observation_tokens: int = 0
    compressed_tokens: int | None = None

    @model_validator(mode="before")
    @classmethod
    def _normalize(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        # Reflection ends are recognized by their compressed size.
        operation_type = _operation_type(data, "data-om-reflection-end")
        if data.get("compressedTokens", data.get("compressed_tokens")) is not None:
            operation_type = "reflection"
        return {**_without(data, "operation_type"), "operationType": operation_type}


class OMCycleFailed(_StreamEvent):
    type: Literal["data-om-observation-failed", "data-om-reflection-failed"]
    cycle_id: str = "unknown"
    operation_type: OMOperationType = "observation"
    error: str = "Unknown error"
    duration_ms: int = 0

    @model_validator(mode="before")
    @classmethod
    def _normalize(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        return {
            **_without(data, "operation_type"),
            "operationType": _operation_type(data, "data-om-reflection-failed"),
            "error": data.get("error") or "Unknown error",
        }


class OMBufferingStart(_StreamEvent):
    type: Literal["data-om-buffering-start"] = "data-om-buffering-start"
    cycle_id: str = "unknown"
    operation_type: OMOperationType = "observation"
    tokens_to_buffer: int = 0


class OMBufferingEnd(_StreamEvent):
    type: Literal["data-om-buffering-end"] = "data-om-buffering-end"
    cycle_id: str = "unknown"
    operation_type: OMOperationType = "observation"
    tokens_buffered: int = 0
    buffered_tokens: int = 0


class OMBufferingFailed(_StreamEvent):
    type: Literal["data-om-buffering-failed"] = "data-om-buffering-failed"
    cycle_id: str = "unknown"
    operation_type: OMOperationType = "observation"
    error: str = "Unknown error"


class OMActivation(_StreamEvent):
    type: Literal["data-om-activation"] = "data-om-activation"
    cycle_id: str = "unknown"
    operation_type: OMOperationType = "observation"
    chunks_activated: int = 0
    tokens_activated: int = 0
    observation_tokens: int = 0
    messages_activated: int = 0
    generation_count: int = 0


OMEvent = (
    OMStatus
    | OMCycleStart
    | OMCycleEnd
    | OMCycleFailed
    | OMBufferingStart
    | OMBufferingEnd
    | OMBufferingFailed
    | OMActivation
)

StreamEvent = Annotated[
    TextStart
    | TextDelta
    | ReasoningStart
    | ReasoningDelta
    | ToolCall
    | ToolResult
    | ToolError
    | ToolCallApproval
    | StreamError
    | StepFinish
    | Finish
    | OMEvent,
    Field(discriminator="type"),
]

_adapter: TypeAdapter[StreamEvent] = TypeAdapter(StreamEvent)

_KNOWN_TYPES = frozenset(
    {
        "text-start",
        "text-delta",
        "reasoning-start",
        "reasoning-delta",
        "tool-call",
        "tool-result",
        "tool-error",
        "tool-call-approval",
        "error",
        "step-finish",
        "finish",
        "data-om-status",
        "data-om-progress",
        "data-om-observation-start",
        "data-om-observation-end",
        "data-om-observation-failed",
        "data-om-reflection-start",
        "data-om-reflection-end",
        "data-om-reflection-failed",
        "data-om-buffering-start",
        "data-om-buffering-end",
        "data-om-buffering-failed",
        "data-om-activation",
    }
)


def parse_chunk(raw: dict[str, Any]) -> StreamEvent | None:
    """Flatten and validate one wire chunk; None for unknown or malformed ones."""
    kind = raw.get("type")
    if kind not in _KNOWN_TYPES:
        return None
    body: dict[str, Any] = {
        **(raw.get("payload") or {}),
        **(raw.get("data") or {}),
        "type": kind,
    }
    if raw.get("runId"):
        body["runId"] = raw["runId"]
    if kind == "step-finish":
        body["usage"] = (body.get("output") or {}).get("usage")
    elif kind == "finish":
        body["reason"] = (body.get("stepResult") or {}).get("reason")
    try:
        return _adapter.validate_python(body)
    except ValidationError as e:
        logger.warning("stream_chunk_invalid", chunk_type=kind, error=str(e))
        return None
