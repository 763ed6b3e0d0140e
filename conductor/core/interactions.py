"""Interaction coordinator: questions and plan approvals raised by tools."""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any, Literal

import structlog
from pydantic import BaseModel, ConfigDict

from conductor.core.events import ASK_QUESTION, PLAN_APPROVAL_REQUIRED, PLAN_APPROVED
from conductor.core.session import PendingPlan, PendingQuestion

if TYPE_CHECKING:
    from conductor.core.session import OperationHandle, Session

logger = structlog.get_logger()

Emit = Callable[[str, dict[str, Any]], Awaitable[None]]


class PlanDecision(BaseModel):
    model_config = ConfigDict(frozen=True)

    action: Literal["approved", "rejected"]
    feedback: str | None = None


class InteractionCoordinator:
    def __init__(
        self,
        session: Session,
        emit: Emit,
        *,
        on_plan_approved: Callable[[], Awaitable[None]] | None = None,
    ) -> None:
        self.session = session
        self._emit = emit
        self._on_plan_approved = on_plan_approved

    async def ask_question(
        self,
        question: str,
        options: list[str] | None = None,
        *,
        handle: OperationHandle | None = None,
    ) -> str:
        """Show *question* to the user and wait, without timeout, for the answer."""
        question_id = str(uuid.uuid4())
        future: asyncio.Future[str] = asyncio.get_running_loop().create_future()
        self.session.pending_questions[question_id] = PendingQuestion(
            question_id=question_id,
            question=question,
            options=options or [],
            future=future,
        )
        logger.info("question_requested", question_id=question_id)
        await self._emit(
            ASK_QUESTION,
            {"question_id": question_id, "question": question, "options": options or []},
        )
        try:
            if handle is None:
                return await future
            return await handle.wait_for(future)
        finally:
            self.session.pending_questions.pop(question_id, None)

    async def respond_to_question(self, question_id: str, answer: str) -> bool:
        pending = self.session.pending_questions.pop(question_id, None)
        if not pending:
            logger.warning("question_not_found", question_id=question_id)
            return False
        if not pending.future.done():
            pending.future.set_result(answer)
        logger.info("question_answered", question_id=question_id)
        return True

    async def request_plan_approval(
        self,
        title: str,
        plan: str,
        *,
        handle: OperationHandle | None = None,
    ) -> PlanDecision:
        plan_id = str(uuid.uuid4())
        future: asyncio.Future[PlanDecision] = (
            asyncio.get_running_loop().create_future()
        )
        self.session.pending_plans[plan_id] = PendingPlan(
            plan_id=plan_id, title=title, plan=plan, future=future
        )
        logger.info("plan_approval_requested", plan_id=plan_id, title=title)
        await self._emit(
            PLAN_APPROVAL_REQUIRED,
            {"plan_id": plan_id, "title": title, "plan": plan},
        )
        try:
            if handle is None:
                return await future
            return await handle.wait_for(future)
        finally:
            self.session.pending_plans.pop(plan_id, None)

    async def respond_to_plan_approval(
        self, plan_id: str, decision: PlanDecision
    ) -> bool:
        """Resolve a pending plan; approval switches mode before the tool resumes."""
        pending = self.session.pending_plans.pop(plan_id, None)
        if not pending:
            logger.warning("plan_not_found", plan_id=plan_id)
            return False

        if decision.action == "approved":
            if self._on_plan_approved:
                await self._on_plan_approved()
            await self._emit(PLAN_APPROVED, {"plan_id": plan_id})

        if not pending.future.done():
            pending.future.set_result(decision)
        logger.info(
            "plan_approval_resolved",
            plan_id=plan_id,
            action=decision.action,
            has_feedback=decision.feedback is not None,
        )
        return True
