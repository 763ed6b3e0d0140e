"""Approval suspension: decide, or wait for the user to decide, on a paused tool call."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from enum import StrEnum
from typing import TYPE_CHECKING, Any

import structlog

from conductor.core.events import ERROR, TOOL_APPROVAL_REQUIRED, TOOL_END
from conductor.core.safety.permissions import (
    PermissionPolicy,
    get_tool_category,
    resolve_permission,
)
from conductor.core.session import PendingApproval

if TYPE_CHECKING:
    from conductor.agents.events import ToolCallApproval
    from conductor.core.session import OperationHandle, Session
    from conductor.hooks.base import HookManager

logger = structlog.get_logger()

Emit = Callable[[str, dict[str, Any]], Awaitable[None]]


class ApprovalDecision(StrEnum):
    APPROVE = "approve"
    DECLINE = "decline"
    ALWAYS_ALLOW_CATEGORY = "always_allow_category"


class ApprovalCoordinator:
    def __init__(
        self,
        session: Session,
        emit: Emit,
        hooks: HookManager | None = None,
    ) -> None:
        self.session = session
        self._emit = emit
        self._hooks = hooks

    async def decide(self, request: ToolCallApproval, handle: OperationHandle) -> bool:
        """Return True to resume with approval, False to resume with decline.

        Runs the pre-tool hook, then the permission rules and session grants,
        and only then suspends on the user. Raises OperationAborted if the
        operation is cancelled while waiting.
        """
        tool_name = request.tool_name

        if self._hooks is not None:
            hook = await self._hooks.run_pre_tool_use(tool_name, request.args)
            for warning in hook.warnings:
                await self._emit(
                    ERROR, {"message": f"[hook] {warning}", "retryable": False}
                )
            if not hook.allowed:
                reason = hook.block_reason or "Policy violation"
                logger.info("tool_blocked_by_hook", tool_name=tool_name, reason=reason)
                await self._emit(
                    TOOL_END,
                    {
                        "tool_call_id": request.tool_call_id,
                        "result": f"Blocked by hook: {reason}",
                        "is_error": True,
                    },
                )
                return False

        policy = resolve_permission(
            tool_name, self.session.permission_rules, yolo=self.session.state.yolo
        )
        if policy == PermissionPolicy.ASK and self.session.grants.is_granted(tool_name):
            policy = PermissionPolicy.ALLOW
        logger.debug("tool_permission_resolved", tool_name=tool_name, policy=policy)

        if policy == PermissionPolicy.ALLOW:
            return True
        if policy == PermissionPolicy.DENY:
            await self._emit(
                TOOL_END,
                {
                    "tool_call_id": request.tool_call_id,
                    "result": f"Denied by permission rules: {tool_name}",
                    "is_error": True,
                },
            )
            return False

        decision = await self._wait_for_user(request, handle)

        if decision == ApprovalDecision.ALWAYS_ALLOW_CATEGORY:
            category = get_tool_category(tool_name)
            if category is None:
                self.session.grants.grant_tool(tool_name)
            else:
                self.session.grants.grant_category(category)
            return True
        return decision == ApprovalDecision.APPROVE

    async def _wait_for_user(
        self, request: ToolCallApproval, handle: OperationHandle
    ) -> ApprovalDecision:
        future: asyncio.Future[ApprovalDecision] = (
            asyncio.get_running_loop().create_future()
        )
        self.session.pending_approvals[request.tool_call_id] = PendingApproval(
            tool_call_id=request.tool_call_id,
            tool_name=request.tool_name,
            args=request.args,
            operation_id=handle.operation_id,
            future=future,
        )
        category = get_tool_category(request.tool_name)
        logger.info(
            "approval_requested",
            tool_call_id=request.tool_call_id,
            tool_name=request.tool_name,
            operation_id=handle.operation_id,
        )
        await self._emit(
            TOOL_APPROVAL_REQUIRED,
            {
                "tool_call_id": request.tool_call_id,
                "tool_name": request.tool_name,
                "args": request.args,
                "category": category.value if category else None,
            },
        )
        try:
            decision = await handle.wait_for(future)
        finally:
            self.session.pending_approvals.pop(request.tool_call_id, None)
        logger.info(
            "approval_resolved",
            tool_call_id=request.tool_call_id,
            decision=decision.value,
        )
        return decision

    def resolve(
        self, decision: ApprovalDecision, tool_call_id: str | None = None
    ) -> bool:
        """Deliver *decision* to the named (or the only) pending approval."""
        pending = self.session.pending_approvals
        if tool_call_id is None:
            if len(pending) != 1:
                logger.warning("approval_ambiguous", pending_count=len(pending))
                return False
            tool_call_id = next(iter(pending))

        entry = pending.get(tool_call_id)
        if entry is None or entry.future.done():
            logger.warning("approval_not_found", tool_call_id=tool_call_id)
            return False
        entry.future.set_result(decision)
        return True

    @property
    def pending_count(self) -> int:
        return len(self.session.pending_approvals)
