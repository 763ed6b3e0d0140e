"""Engine tests: modes, models, thread-scoped state and construction."""

from __future__ import annotations

import pytest

from conductor.core import settings as keys
from conductor.core.engine import Engine
from conductor.core.events import EventBus
from conductor.exceptions import ConfigError, ModeNotFoundError, StorageError
from tests.conftest import FakeExecutionService


async def _metadata(engine, store):
    return (await store.get_thread(engine.session.thread_id)).metadata


class TestConstruction:
    def test_requires_a_store(self, config):
        with pytest.raises(StorageError):
            Engine(config, FakeExecutionService(), None, EventBus())

    def test_requires_modes(self, config, store):
        config = config.model_copy(update={"modes": []})
        with pytest.raises(ConfigError):
            Engine(config, FakeExecutionService(), store, EventBus())

    def test_starts_in_default_mode(self, config, store):
        engine = Engine(config, FakeExecutionService(), store, EventBus())
        assert engine.session.mode_id == "build"
        assert engine.session.model_id == "anthropic/claude-sonnet"
        assert engine.session.state.observation_threshold == 30_000
        assert not engine.is_running

    def test_permission_files_are_loaded(self, config, store, tmp_path):
        rules = tmp_path / "rules.yaml"
        rules.write_text("tools:\n  execute_command: deny\n")
        config = config.model_copy(update={"permission_files": [rules]})
        engine = Engine(config, FakeExecutionService(), store, EventBus())
        assert engine.session.permission_rules.tools == {"execute_command": "deny"}


class TestSwitchMode:
    @pytest.mark.asyncio
    async def test_unknown_mode(self, engine):
        with pytest.raises(ModeNotFoundError):
            await engine.switch_mode("nope")

    @pytest.mark.asyncio
    async def test_switch_saves_outgoing_model_and_loads_incoming(
        self, engine, store, recorder
    ):
        await engine.create_thread()
        await engine.switch_model("anthropic/custom")

        await engine.switch_mode("plan")

        meta = await _metadata(engine, store)
        assert meta[keys.mode_model_key("build")] == "anthropic/custom"
        assert meta[keys.CURRENT_MODE] == "plan"
        assert engine.session.model_id == "openai/gpt-plan"
        names = recorder.names()
        assert names[-2:] == ["model_changed", "mode_changed"]
        assert recorder.named("model_changed")[-1].data == {"model_id": "openai/gpt-plan"}

    @pytest.mark.asyncio
    async def test_switching_back_restores_thread_model(self, engine):
        await engine.create_thread()
        await engine.switch_model("anthropic/custom")
        await engine.switch_mode("plan")
        await engine.switch_mode("build")
        assert engine.session.model_id == "anthropic/custom"

    @pytest.mark.asyncio
    async def test_mode_without_model_keeps_current(self, engine):
        await engine.switch_mode("fast")
        assert engine.session.model_id == "anthropic/claude-sonnet"


class TestSwitchModel:
    @pytest.mark.asyncio
    async def test_persists_thread_and_global(self, engine, store, preferences, recorder):
        await engine.create_thread()
        await engine.switch_model("openai/gpt-5")

        meta = await _metadata(engine, store)
        assert meta[keys.CURRENT_MODEL] == "openai/gpt-5"
        assert meta[keys.mode_model_key("build")] == "openai/gpt-5"
        assert preferences.get_last_model_id() == "openai/gpt-5"
        assert preferences.get_mode_model_id("build") == "openai/gpt-5"
        assert recorder.named("model_changed")[-1].data == {"model_id": "openai/gpt-5"}

    @pytest.mark.asyncio
    async def test_global_mode_model_used_by_new_threads(self, engine):
        await engine.create_thread()
        await engine.switch_model("openai/gpt-5")
        await engine.switch_mode("plan")
        await engine.create_thread()
        await engine.switch_mode("build")
        assert engine.session.model_id == "openai/gpt-5"

    @pytest.mark.asyncio
    async def test_om_models(self, engine, store, recorder):
        await engine.create_thread()
        await engine.switch_observer_model("google/obs")
        await engine.switch_reflector_model("google/refl")

        meta = await _metadata(engine, store)
        assert meta[keys.OBSERVER_MODEL] == "google/obs"
        assert meta[keys.REFLECTOR_MODEL] == "google/refl"
        assert [e.data for e in recorder.named("om_model_changed")] == [
            {"role": "observer", "model_id": "google/obs"},
            {"role": "reflector", "model_id": "google/refl"},
        ]

    @pytest.mark.asyncio
    async def test_subagent_models(self, engine, preferences, recorder):
        await engine.create_thread()
        await engine.set_subagent_model("fast/sub", "explore")
        await engine.set_subagent_model("global/sub", scope="global")

        assert await engine.get_subagent_model("explore") == "fast/sub"
        assert await engine.get_subagent_model() == "global/sub"
        assert preferences.get_subagent_model_id() == "global/sub"
        assert recorder.named("subagent_model_changed")[0].data == {
            "model_id": "fast/sub",
            "scope": "thread",
            "agent_type": "explore",
        }


class TestThreadState:
    @pytest.mark.asyncio
    async def test_set_state_reports_changed_keys(self, engine, recorder):
        await engine.set_state({"yolo": True, "custom_flag": 1})

        state = engine.get_state()
        assert state["yolo"] is True
        assert state["extra"] == {"custom_flag": 1}
        change = recorder.named("state_changed")[0].data
        assert change["changed_keys"] == ["yolo", "custom_flag"]

    @pytest.mark.asyncio
    async def test_todos_are_persisted(self, engine, store):
        await engine.create_thread()
        await engine.set_state({"todos": [{"title": "ship"}]})
        assert (await _metadata(engine, store))[keys.TODOS] == [{"title": "ship"}]

    @pytest.mark.asyncio
    async def test_scalar_settings_are_thread_scoped(self, engine, store):
        await engine.create_thread()
        await engine.set_thinking_level("high")
        await engine.set_observation_threshold(20_000)
        await engine.set_reflection_threshold(50_000)
        await engine.set_yolo(True)

        meta = await _metadata(engine, store)
        assert meta[keys.THINKING_LEVEL] == "high"
        assert meta[keys.OBSERVATION_THRESHOLD] == 20_000
        assert meta[keys.REFLECTION_THRESHOLD] == 50_000
        assert meta[keys.YOLO] is True

    @pytest.mark.asyncio
    async def test_unknown_thinking_level(self, engine):
        with pytest.raises(ConfigError):
            await engine.set_thinking_level("ludicrous")

    @pytest.mark.asyncio
    async def test_session_snapshot(self, engine):
        await engine.send_message("hi")
        info = engine.get_session()
        assert info.thread_id == engine.session.thread_id
        assert info.mode_id == "build"
        assert info.is_running is False
        assert info.follow_up_count == 0
        assert info.token_usage.total_tokens == 15
