"""Stream assembler: builds one assistant message from an execution stream."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import TYPE_CHECKING, Any

import structlog

from conductor.agents.events import (
    Finish,
    OMActivation,
    OMBufferingEnd,
    OMBufferingFailed,
    OMBufferingStart,
    OMCycleEnd,
    OMCycleFailed,
    OMCycleStart,
    OMStatus,
    ReasoningDelta,
    ReasoningStart,
    StepFinish,
    StreamError,
    TextDelta,
    TextStart,
    ToolCall,
    ToolCallApproval,
    ToolError,
    ToolResult,
    parse_chunk,
)
from conductor.core.events import (
    ERROR,
    MESSAGE_END,
    MESSAGE_START,
    MESSAGE_UPDATE,
    TOOL_END,
    TOOL_START,
    USAGE_UPDATE,
)
from conductor.core.messages import (
    Message,
    StopReason,
    TextContent,
    ThinkingContent,
    ToolCallContent,
    ToolResultContent,
)
from conductor.exceptions import AgentError, OperationAborted

if TYPE_CHECKING:
    from conductor.agents.base import ExecutionService, StreamRequest
    from conductor.agents.events import StreamEvent
    from conductor.core.memory import OMProgressTracker
    from conductor.core.safety.approvals import ApprovalCoordinator
    from conductor.core.session import Session
    from conductor.hooks.base import HookManager

logger = structlog.get_logger()

Emit = Callable[[str, dict[str, Any]], Awaitable[None]]

_OM_EVENTS = (
    OMStatus,
    OMCycleStart,
    OMCycleEnd,
    OMCycleFailed,
    OMBufferingStart,
    OMBufferingEnd,
    OMBufferingFailed,
    OMActivation,
)


def map_finish_reason(reason: str | None) -> StopReason:
    """Unrecognized reasons count as a normal completion, never as an error."""
    if reason == "tool-calls":
        return "tool_use"
    return "complete"


class StreamAssembler:
    def __init__(
        self,
        *,
        session: Session,
        service: ExecutionService,
        request: StreamRequest,
        approvals: ApprovalCoordinator,
        tracker: OMProgressTracker,
        emit: Emit,
        hooks: HookManager | None = None,
        persist_usage: Callable[[], Awaitable[None]] | None = None,
    ) -> None:
        self.session = session
        self._service = service
        self._request = request
        self._handle = request.handle
        self._approvals = approvals
        self._tracker = tracker
        self._emit = emit
        self._hooks = hooks
        self._persist_usage = persist_usage
        self._message = Message()
        self._spans: dict[str, int] = {}
        self._background: set[asyncio.Task] = set()
        self._finalized = False

    async def run(
        self, stream: AsyncIterator[StreamEvent | dict[str, Any]]
    ) -> Message:
        """Consume *stream* (and any resumed streams) and return the final message."""
        if self._finalized:
            raise AgentError("stream assembler already finalized")
        await self._consume(stream)
        if self._handle.cancelled:
            raise OperationAborted(f"operation {self._handle.operation_id} cancelled")
        self._finalized = True
        if self._message.stop_reason is None:
            self._message.stop_reason = "complete"
        final = self._message.model_copy(deep=True)
        await self._emit(MESSAGE_END, {"message": final.model_dump()})
        logger.debug(
            "message_assembled",
            message_id=final.id,
            parts=len(final.content),
            stop_reason=final.stop_reason,
        )
        return final

    async def _consume(
        self, stream: AsyncIterator[StreamEvent | dict[str, Any]]
    ) -> None:
        async for item in stream:
            if self._handle.cancelled:
                raise OperationAborted(f"operation {self._handle.operation_id} cancelled")
            event = parse_chunk(item) if isinstance(item, dict) else item
            if event is None:
                continue
            if event.run_id:
                self.session.run_id = event.run_id
            await self._dispatch(event)

    async def _dispatch(self, event: StreamEvent) -> None:
        message = self._message
        match event:
            case TextStart() | ReasoningStart():
                self._spans[event.id] = len(message.content)
                if isinstance(event, TextStart):
                    message.content.append(TextContent())
                    await self._emit(MESSAGE_START, self._snapshot())
                else:
                    message.content.append(ThinkingContent())
                    await self._emit(MESSAGE_UPDATE, self._snapshot())
            case TextDelta() | ReasoningDelta():
                index = self._spans.get(event.id)
                if index is None:
                    return
                span = message.content[index]
                if isinstance(span, TextContent) and isinstance(event, TextDelta):
                    span.text += event.text
                elif isinstance(span, ThinkingContent) and isinstance(
                    event, ReasoningDelta
                ):
                    span.thinking += event.text
                else:
                    return
                await self._emit(MESSAGE_UPDATE, self._snapshot())
            case ToolCall():
                message.content.append(
                    ToolCallContent(
                        id=event.tool_call_id, name=event.tool_name, args=event.args
                    )
                )
                await self._emit(
                    TOOL_START,
                    {
                        "tool_call_id": event.tool_call_id,
                        "tool_name": event.tool_name,
                        "args": event.args,
                    },
                )
                await self._emit(MESSAGE_UPDATE, self._snapshot())
            case ToolResult() | ToolError():
                await self._tool_finished(event)
            case ToolCallApproval():
                await self._suspend_for_approval(event)
            case StepFinish():
                if event.usage is not None:
                    await self._record_usage(
                        event.usage.prompt_tokens, event.usage.completion_tokens
                    )
            case Finish():
                message.stop_reason = map_finish_reason(event.reason)
            case StreamError():
                await self._emit(ERROR, {"message": event.error, "retryable": False})
            case _ if isinstance(event, _OM_EVENTS):
                name, data = self._tracker.apply(event)
                await self._emit(name, data)

    async def _tool_finished(self, event: ToolResult | ToolError) -> None:
        if isinstance(event, ToolResult):
            result, is_error = event.result, event.is_error
        else:
            result, is_error = event.error, True
        call = self._message.find_tool_call(event.tool_call_id)
        name = event.tool_name or (call.name if call else "")
        self._message.content.append(
            ToolResultContent(
                id=event.tool_call_id, name=name, result=result, is_error=is_error
            )
        )
        await self._emit(
            TOOL_END,
            {"tool_call_id": event.tool_call_id, "result": result, "is_error": is_error},
        )
        await self._emit(MESSAGE_UPDATE, self._snapshot())
        if self._hooks is not None and call is not None:
            self._spawn(
                self._hooks.run_post_tool_use(call.name, call.args, result, is_error),
                "post_tool_hook",
            )

    async def _suspend_for_approval(self, event: ToolCallApproval) -> None:
        approved = await self._approvals.decide(event, self._handle)
        if self._handle.cancelled:
            raise OperationAborted(f"operation {self._handle.operation_id} cancelled")
        run_id = self.session.run_id or ""
        logger.info(
            "tool_call_resuming",
            tool_call_id=event.tool_call_id,
            approved=approved,
            run_id=run_id,
        )
        if approved:
            resumed = await self._service.resume_with_approval(
                run_id, event.tool_call_id, self._request
            )
        else:
            resumed = await self._service.resume_with_decline(
                run_id, event.tool_call_id, self._request
            )
        await self._consume(resumed)

    async def _record_usage(self, prompt_tokens: int, completion_tokens: int) -> None:
        delta = self.session.token_usage.add(prompt_tokens, completion_tokens)
        if self._persist_usage is not None:
            self._spawn(self._persist_usage(), "persist_usage")
        await self._emit(USAGE_UPDATE, {"usage": delta.model_dump()})

    def _spawn(self, coro: Awaitable[Any], label: str) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)

        def _done(t: asyncio.Task) -> None:
            self._background.discard(t)
            if not t.cancelled() and t.exception() is not None:
                logger.warning(
                    "background_task_failed", task=label, error=str(t.exception())
                )

        task.add_done_callback(_done)

    def _snapshot(self) -> dict[str, Any]:
        return {"message": self._message.model_dump()}
