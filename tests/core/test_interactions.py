"""Tests for questions and plan approvals raised by tools."""

from __future__ import annotations

import asyncio

import pytest

from conductor.core.interactions import InteractionCoordinator, PlanDecision
from conductor.core.session import Session
from conductor.exceptions import OperationAborted
from tests.conftest import wait_until


class _Emits:
    def __init__(self):
        self.events: list[tuple[str, dict]] = []

    async def __call__(self, name, data):
        self.events.append((name, data))

    def last(self, name):
        return [d for n, d in self.events if n == name][-1]


@pytest.fixture
def session():
    return Session(resource_id="r", mode_id="plan")


@pytest.fixture
def emits():
    return _Emits()


class TestQuestions:
    @pytest.mark.asyncio
    async def test_answer_resolves_waiting_tool(self, session, emits):
        coordinator = InteractionCoordinator(session, emits)
        task = asyncio.create_task(coordinator.ask_question("Which db?", ["pg", "sqlite"]))
        await wait_until(lambda: session.pending_questions)

        request = emits.last("ask_question")
        assert request["options"] == ["pg", "sqlite"]
        assert await coordinator.respond_to_question(request["question_id"], "pg")
        assert await task == "pg"
        assert session.pending_questions == {}

    @pytest.mark.asyncio
    async def test_unknown_question(self, session, emits):
        coordinator = InteractionCoordinator(session, emits)
        assert await coordinator.respond_to_question("nope", "x") is False

    @pytest.mark.asyncio
    async def test_cancel_abandons_question(self, session, emits):
        coordinator = InteractionCoordinator(session, emits)
        handle = session.next_operation()
        task = asyncio.create_task(coordinator.ask_question("?", handle=handle))
        await wait_until(lambda: session.pending_questions)

        handle.cancel(user=True)
        with pytest.raises(OperationAborted):
            await task
        assert session.pending_questions == {}


class TestPlanApproval:
    @pytest.mark.asyncio
    async def test_approval_runs_hook_before_tool_resumes(self, session, emits):
        order = []

        async def on_approved():
            order.append("mode_switched")

        coordinator = InteractionCoordinator(session, emits, on_plan_approved=on_approved)

        async def tool():
            decision = await coordinator.request_plan_approval("Refactor", "1. do it")
            order.append("tool_resumed")
            return decision

        task = asyncio.create_task(tool())
        await wait_until(lambda: session.pending_plans)
        plan_id = emits.last("plan_approval_required")["plan_id"]

        assert await coordinator.respond_to_plan_approval(
            plan_id, PlanDecision(action="approved")
        )
        decision = await task

        assert decision.action == "approved"
        assert order == ["mode_switched", "tool_resumed"]
        assert emits.last("plan_approved") == {"plan_id": plan_id}

    @pytest.mark.asyncio
    async def test_rejection_carries_feedback(self, session, emits):
        switched = []

        async def on_approved():
            switched.append(True)

        coordinator = InteractionCoordinator(session, emits, on_plan_approved=on_approved)
        task = asyncio.create_task(coordinator.request_plan_approval("T", "P"))
        await wait_until(lambda: session.pending_plans)
        plan_id = next(iter(session.pending_plans))

        await coordinator.respond_to_plan_approval(
            plan_id, PlanDecision(action="rejected", feedback="add tests")
        )
        decision = await task

        assert decision.feedback == "add tests"
        assert switched == []
        assert "plan_approved" not in [n for n, _ in emits.events]

    @pytest.mark.asyncio
    async def test_unknown_plan(self, session, emits):
        coordinator = InteractionCoordinator(session, emits)
        assert not await coordinator.respond_to_plan_approval(
            "nope", PlanDecision(action="approved")
        )
