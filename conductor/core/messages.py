"""Assembled message model and conversion of stored history."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Annotated, Any, Literal

from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from conductor.storage.base import StoredMessage

StopReason = Literal["complete", "tool_use", "aborted", "error"]
OMOperationType = Literal["observation", "reflection"]


class TextContent(BaseModel):
    type: Literal["text"] = "text"
    text: str = ""


class ThinkingContent(BaseModel):
    type: Literal["thinking"] = "thinking"
    thinking: str = ""


class ToolCallContent(BaseModel):
    type: Literal["tool_call"] = "tool_call"
    id: str
    name: str
    args: Any = None


class ToolResultContent(BaseModel):
    type: Literal["tool_result"] = "tool_result"
    id: str
    name: str
    result: Any = None
    is_error: bool = False


class OMObservationStartContent(BaseModel):
    type: Literal["om_observation_start"] = "om_observation_start"
    tokens_to_observe: int = 0
    operation_type: OMOperationType = "observation"


class OMObservationEndContent(BaseModel):
    type: Literal["om_observation_end"] = "om_observation_end"
    tokens_observed: int = 0
    observation_tokens: int = 0
    duration_ms: int = 0
    operation_type: OMOperationType = "observation"


class OMObservationFailedContent(BaseModel):
    type: Literal["om_observation_failed"] = "om_observation_failed"
    error: str = "Unknown error"
    tokens_attempted: int = 0
    operation_type: OMOperationType = "observation"


MessageContent = Annotated[
    TextContent
    | ThinkingContent
    | ToolCallContent
    | ToolResultContent
    | OMObservationStartContent
    | OMObservationEndContent
    | OMObservationFailedContent,
    Field(discriminator="type"),
]


# Mutable while the assembler builds it; callers only ever see deep copies.
class Message(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    role: Literal["user", "assistant", "system"] = "assistant"
    content: list[MessageContent] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    stop_reason: StopReason | None = None
    error_message: str | None = None

    @property
    def text(self) -> str:
        return "".join(c.text for c in self.content if isinstance(c, TextContent))

    def find_tool_call(self, tool_call_id: str) -> ToolCallContent | None:
        for c in self.content:
            if isinstance(c, ToolCallContent) and c.id == tool_call_id:
                return c
        return None


def _om_operation_type(data: dict[str, Any]) -> OMOperationType:
    return "reflection" if data.get("operationType") == "reflection" else "observation"


def _convert_part(part: dict[str, Any]) -> list[MessageContent]:
    kind = part.get("type")
    data = part.get("data") or {}

    if kind == "text" and part.get("text"):
        return [TextContent(text=part["text"])]
    if kind == "reasoning" and part.get("reasoning"):
        return [ThinkingContent(thinking=part["reasoning"])]
    if kind == "tool-invocation":
        inv = part.get("toolInvocation")
        if inv:
            out: list[MessageContent] = [
                ToolCallContent(
                    id=inv["toolCallId"], name=inv["toolName"], args=inv.get("args")
                )
            ]
            if inv.get("state") == "result" and inv.get("result") is not None:
                out.append(
                    ToolResultContent(
                        id=inv["toolCallId"],
                        name=inv["toolName"],
                        result=inv["result"],
                        is_error=inv.get("isError", False),
                    )
                )
            return out
        kind = "tool-call"
    if kind == "tool-call" and part.get("toolCallId") and part.get("toolName"):
        return [
            ToolCallContent(
                id=part["toolCallId"], name=part["toolName"], args=part.get("args")
            )
        ]
    if kind == "tool-result" and part.get("toolCallId") and part.get("toolName"):
        return [
            ToolResultContent(
                id=part["toolCallId"],
                name=part["toolName"],
                result=part.get("result"),
                is_error=part.get("isError", False),
            )
        ]
    if kind == "data-om-observation-start":
        return [
            OMObservationStartContent(
                tokens_to_observe=data.get("tokensToObserve", 0),
                operation_type=_om_operation_type(data),
            )
        ]
    if kind == "data-om-observation-end":
        return [
            OMObservationEndContent(
                tokens_observed=data.get("tokensObserved", 0),
                observation_tokens=data.get("observationTokens", 0),
                duration_ms=data.get("durationMs", 0),
                operation_type=_om_operation_type(data),
            )
        ]
    if kind == "data-om-observation-failed":
        return [
            OMObservationFailedContent(
                error=data.get("error") or "Unknown error",
                tokens_attempted=data.get("tokensAttempted", 0),
                operation_type=_om_operation_type(data),
            )
        ]
    # step-start, status snapshots and unknown parts carry nothing to render
    return []


def convert_stored_message(stored: StoredMessage) -> Message:
    """Render a stored message for history replay.

    OM lifecycle parts become inline content entries instead of being
    forwarded to the progress aggregator.
    """
    content: list[MessageContent] = []
    for part in stored.parts:
        content.extend(_convert_part(part))
    return Message(
        id=stored.id,
        role=stored.role,
        content=content,
        created_at=stored.created_at,
    )
