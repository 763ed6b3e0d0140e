"""Shared fixtures for engine tests."""

from __future__ import annotations

import pytest

from conductor.core.engine import Engine
from conductor.hooks.base import HookResult
from tests.conftest import FakeExecutionService


class ScriptedHooks:
    """Hook manager returning queued results per hook point, allowing by default."""

    def __init__(self, **results: list[HookResult]) -> None:
        self.results = {name: list(queue) for name, queue in results.items()}
        self.calls: list[tuple[str, tuple]] = []

    def _next(self, name: str, *args) -> HookResult:
        self.calls.append((name, args))
        queue = self.results.get(name)
        return queue.pop(0) if queue else HookResult()

    async def run_user_prompt_submit(self, user_message):
        return self._next("prompt", user_message)

    async def run_pre_tool_use(self, tool_name, tool_input):
        return self._next("pre_tool", tool_name, tool_input)

    async def run_post_tool_use(self, tool_name, tool_input, tool_output, is_error):
        return self._next("post_tool", tool_name, tool_output, is_error)

    async def run_stop(self, assistant_message, stop_reason):
        return self._next("stop", assistant_message, stop_reason)

    async def run_session_start(self):
        return self._next("session_start")

    async def run_session_end(self):
        return self._next("session_end")

    async def run_notification(self, reason, message=None):
        return self._next("notification", reason, message)


@pytest.fixture
def service():
    return FakeExecutionService()


@pytest.fixture
def make_engine(config, store, event_bus, preferences):
    async def _make(service=None, **kwargs):
        engine = Engine(
            kwargs.pop("config", config),
            service or FakeExecutionService(),
            store,
            event_bus,
            preferences=preferences,
            **kwargs,
        )
        await engine.init()
        return engine

    return _make


@pytest.fixture
async def engine(make_engine, service):
    return await make_engine(service)
