"""Execution-service protocol and the request handed to it."""

from __future__ import annotations

from collections.abc import AsyncIterator, Awaitable, Callable
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field

from conductor.core.interactions import PlanDecision
from conductor.core.session import OperationHandle

if TYPE_CHECKING:
    from conductor.agents.events import StreamEvent


class ImageInput(BaseModel):
    model_config = ConfigDict(frozen=True)

    data: str
    mime_type: str


class ToolContext(BaseModel):
    """Callbacks tools use to reach back into the running session."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    thread_id: str | None
    resource_id: str
    mode_id: str
    ask_question: Callable[[str, list[str]], Awaitable[str]]
    request_plan_approval: Callable[[str, str], Awaitable[PlanDecision]]
    emit: Callable[[str, dict[str, Any]], Awaitable[None]]
    get_state: Callable[[], dict[str, Any]]
    set_state: Callable[[dict[str, Any]], Awaitable[None]]


class StreamRequest(BaseModel):
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    content: str
    images: list[ImageInput] = Field(default_factory=list)
    thread_id: str
    resource_id: str
    mode_id: str
    model_id: str
    handle: OperationHandle
    max_steps: int = 1000
    provider_options: dict[str, Any] | None = None
    context: ToolContext | None = None


@runtime_checkable
class ExecutionService(Protocol):
    """Turns a conversation into an ordered stream of execution events.

    Each call returns an async iterator of ``StreamEvent`` models or raw wire
    dicts. After a ``tool-call-approval`` event the stream ends and nothing
    more happens until one of the resume calls is made for that run.
    """

    async def stream(
        self, request: StreamRequest
    ) -> AsyncIterator[StreamEvent | dict[str, Any]]: ...

    async def resume_with_approval(
        self, run_id: str, tool_call_id: str, request: StreamRequest
    ) -> AsyncIterator[StreamEvent | dict[str, Any]]: ...

    async def resume_with_decline(
        self, run_id: str, tool_call_id: str, request: StreamRequest
    ) -> AsyncIterator[StreamEvent | dict[str, Any]]: ...
