"""Hook protocol invoked at fixed points of an operation."""

from __future__ import annotations

from enum import StrEnum
from typing import Any, Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field


class HookEvent(StrEnum):
    PRE_TOOL_USE = "PreToolUse"
    POST_TOOL_USE = "PostToolUse"
    STOP = "Stop"
    USER_PROMPT_SUBMIT = "UserPromptSubmit"
    SESSION_START = "SessionStart"
    SESSION_END = "SessionEnd"
    NOTIFICATION = "Notification"


BLOCKING_EVENTS = frozenset(
    {HookEvent.PRE_TOOL_USE, HookEvent.STOP, HookEvent.USER_PROMPT_SUBMIT}
)


class HookResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    allowed: bool = True
    block_reason: str | None = None
    additional_context: str | None = None
    warnings: list[str] = Field(default_factory=list)


@runtime_checkable
class HookManager(Protocol):
    async def run_user_prompt_submit(self, user_message: str) -> HookResult: ...

    async def run_pre_tool_use(self, tool_name: str, tool_input: Any) -> HookResult: ...

    async def run_post_tool_use(
        self, tool_name: str, tool_input: Any, tool_output: Any, is_error: bool
    ) -> HookResult: ...

    async def run_stop(
        self, assistant_message: str | None, stop_reason: str
    ) -> HookResult: ...

    async def run_session_start(self) -> HookResult: ...

    async def run_session_end(self) -> HookResult: ...

    async def run_notification(
        self, reason: str, message: str | None = ...
    ) -> HookResult: ...
