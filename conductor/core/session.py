"""In-memory session entity owned by the engine."""

from __future__ import annotations

import asyncio
import uuid
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from conductor.core.safety.grants import SessionGrants
from conductor.core.safety.permissions import PermissionRules
from conductor.exceptions import OperationAborted


class TokenUsage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def add(self, prompt_tokens: int, completion_tokens: int) -> TokenUsage:
        """Accumulate one step's usage and return the step delta."""
        delta = TokenUsage(
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=prompt_tokens + completion_tokens,
        )
        self.prompt_tokens += delta.prompt_tokens
        self.completion_tokens += delta.completion_tokens
        self.total_tokens += delta.total_tokens
        return delta


class OperationHandle:
    """Cooperative cancel handle for one operation."""

    def __init__(self, operation_id: int) -> None:
        self.operation_id = operation_id
        self.user_aborted = False
        self._cancelled = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self, *, user: bool = False) -> None:
        self.user_aborted = self.user_aborted or user
        self._cancelled.set()

    async def wait_cancelled(self) -> None:
        await self._cancelled.wait()

    async def wait_for(self, future: asyncio.Future) -> Any:
        """Await *future*, raising OperationAborted if cancelled first.

        There is no timeout; an abandoned future is simply never awaited again.
        """
        if self.cancelled:
            raise OperationAborted(f"operation {self.operation_id} cancelled")
        cancelled = asyncio.ensure_future(self._cancelled.wait())
        try:
            await asyncio.wait(
                {future, cancelled}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            cancelled.cancel()
        if future.done():
            return future.result()
        raise OperationAborted(f"operation {self.operation_id} cancelled")


class PendingApproval(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    tool_call_id: str
    tool_name: str
    args: Any = None
    operation_id: int
    future: asyncio.Future


class PendingQuestion(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    question_id: str
    question: str
    options: list[str] = Field(default_factory=list)
    future: asyncio.Future


class PendingPlan(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    plan_id: str
    title: str
    plan: str
    future: asyncio.Future


class SessionState(BaseModel):
    """Thread-scoped flags restored from, and persisted to, thread metadata."""

    yolo: bool = False
    thinking_level: str = "off"
    observation_threshold: int = 30_000
    reflection_threshold: int = 40_000
    observer_model_id: str | None = None
    reflector_model_id: str | None = None
    todos: list[dict[str, Any]] = Field(default_factory=list)
    extra: dict[str, Any] = Field(default_factory=dict)


# Mutable; only the Engine updates fields, in place.
class Session(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    session_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    resource_id: str
    mode_id: str
    thread_id: str | None = None
    model_id: str = ""
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    token_usage: TokenUsage = Field(default_factory=TokenUsage)

    # Operation epoch; ids only ever increase.
    operation_id: int = 0
    handle: OperationHandle | None = None
    run_id: str | None = None
    follow_ups: list[str] = Field(default_factory=list)

    pending_approvals: dict[str, PendingApproval] = Field(default_factory=dict)
    pending_questions: dict[str, PendingQuestion] = Field(default_factory=dict)
    pending_plans: dict[str, PendingPlan] = Field(default_factory=dict)

    state: SessionState = Field(default_factory=SessionState)
    permission_rules: PermissionRules = Field(default_factory=PermissionRules.defaults)
    grants: SessionGrants = Field(default_factory=SessionGrants)

    @property
    def is_running(self) -> bool:
        return self.handle is not None and not self.handle.cancelled

    def is_current(self, operation_id: int) -> bool:
        return operation_id == self.operation_id

    def next_operation(self) -> OperationHandle:
        """Allocate a new operation id, superseding whatever was running."""
        self.operation_id += 1
        self.handle = OperationHandle(self.operation_id)
        return self.handle
