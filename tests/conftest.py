"""Shared fixtures and a scripted execution service for testing."""

from __future__ import annotations

import asyncio
import os
from typing import Any

import pytest

from conductor.agents.events import (
    Finish,
    StepFinish,
    StepUsage,
    TextDelta,
    TextStart,
    ToolCall,
    ToolCallApproval,
    ToolResult,
)
from conductor.core.config import ConductorConfig, ModeConfig
from conductor.core.events import WILDCARD, Event, EventBus
from conductor.storage.memory import MemoryThreadStore
from conductor.storage.preferences import MemoryPreferenceStore


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch):
    """Prevent .env file and shell env from leaking into tests."""
    monkeypatch.setitem(ConductorConfig.model_config, "env_file", None)
    for key in list(os.environ):
        if key.startswith("CONDUCTOR_"):
            monkeypatch.delenv(key, raising=False)


# Script items understood by FakeExecutionService besides stream events.
HOLD = object()


def reply(text: str, *, span: str = "t1", run_id: str = "run-1") -> list[Any]:
    return [
        TextStart(id=span, run_id=run_id),
        TextDelta(id=span, text=text),
        StepFinish(usage=StepUsage(prompt_tokens=10, completion_tokens=5)),
        Finish(reason="stop"),
    ]


def approval_request(
    tool_name: str, args: Any = None, *, tool_call_id: str = "call-1"
) -> list[Any]:
    return [
        ToolCall(tool_call_id=tool_call_id, tool_name=tool_name, args=args, run_id="run-1"),
        ToolCallApproval(tool_call_id=tool_call_id, tool_name=tool_name, args=args),
    ]


def tool_done(tool_name: str, result: Any, *, tool_call_id: str = "call-1") -> list[Any]:
    return [
        ToolResult(tool_call_id=tool_call_id, tool_name=tool_name, result=result),
        *reply("done", span="t2"),
    ]


class FakeExecutionService:
    """Plays one scripted stream per call.

    A script is a list of events, raw wire dicts, exceptions (raised when
    reached), ``asyncio.Event`` gates, ``HOLD`` (parks until the operation
    is cancelled) and async callables taking the request and returning
    more events.
    """

    def __init__(
        self,
        scripts: list[list[Any]] | None = None,
        resumes: list[list[Any]] | None = None,
    ) -> None:
        self.scripts = list(scripts or [])
        self.resume_scripts = list(resumes or [])
        self.requests: list[Any] = []
        self.resumes: list[tuple[str, str, str]] = []

    async def stream(self, request):
        self.requests.append(request)
        script = self.scripts.pop(0) if self.scripts else reply("ok")
        return self._play(script, request)

    async def resume_with_approval(self, run_id, tool_call_id, request):
        self.resumes.append(("approve", run_id, tool_call_id))
        return self._play(self._next_resume(), request)

    async def resume_with_decline(self, run_id, tool_call_id, request):
        self.resumes.append(("decline", run_id, tool_call_id))
        return self._play(self._next_resume(), request)

    def _next_resume(self) -> list[Any]:
        return self.resume_scripts.pop(0) if self.resume_scripts else reply("resumed")

    async def _play(self, script, request):
        for item in script:
            if item is HOLD:
                await request.handle.wait_cancelled()
                continue
            if isinstance(item, asyncio.Event):
                await item.wait()
                continue
            if isinstance(item, BaseException):
                raise item
            if callable(item):
                for produced in await item(request) or []:
                    yield produced
                continue
            yield item


class EventRecorder:
    def __init__(self, bus: EventBus) -> None:
        self.events: list[Event] = []
        bus.subscribe(WILDCARD, self._record)

    async def _record(self, event: Event) -> None:
        self.events.append(event)

    def names(self) -> list[str]:
        return [e.name for e in self.events]

    def named(self, name: str) -> list[Event]:
        return [e for e in self.events if e.name == name]


async def wait_until(predicate, *, attempts: int = 200) -> None:
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition never became true")


@pytest.fixture
def modes():
    return [
        ModeConfig(id="build", name="Build", default=True, default_model_id="anthropic/claude-sonnet"),
        ModeConfig(id="plan", name="Plan", default_model_id="openai/gpt-plan"),
        ModeConfig(id="fast", name="Fast"),
    ]


@pytest.fixture
def config(modes, tmp_path):
    return ConductorConfig(modes=modes, preferences_path=None, lock_dir=None)


@pytest.fixture
def event_bus():
    return EventBus()


@pytest.fixture
def recorder(event_bus):
    return EventRecorder(event_bus)


@pytest.fixture
def store():
    return MemoryThreadStore()


@pytest.fixture
def preferences():
    return MemoryPreferenceStore()
