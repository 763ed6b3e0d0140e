"""Thread-scoped settings kept in thread metadata, with global fallbacks.

Writes are best-effort: a failing store never interrupts the caller.
Read-modify-write cycles on one thread are serialized.
Reads of model selections walk a fallback chain from the thread to the
global preferences to built-in defaults. Plain scalars are thread-only.
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from conductor.core.config import ConductorConfig
    from conductor.storage.base import ThreadStore
    from conductor.storage.preferences import PreferenceStore

logger = structlog.get_logger()

CURRENT_MODE = "current_mode_id"
CURRENT_MODEL = "current_model_id"
TOKEN_USAGE = "token_usage"
THINKING_LEVEL = "thinking_level"
OBSERVATION_THRESHOLD = "observation_threshold"
REFLECTION_THRESHOLD = "reflection_threshold"
OBSERVER_MODEL = "observer_model_id"
REFLECTOR_MODEL = "reflector_model_id"
YOLO = "yolo"
TODOS = "todos"


def mode_model_key(mode_id: str) -> str:
    return f"mode_model_id.{mode_id}"


def subagent_model_key(agent_type: str | None) -> str:
    return f"subagent_model_id.{agent_type}" if agent_type else "subagent_model_id"


class ThreadSettings:
    def __init__(
        self,
        store: ThreadStore,
        preferences: PreferenceStore,
        config: ConductorConfig,
    ) -> None:
        self._store = store
        self._preferences = preferences
        self._config = config
        self._write_locks: dict[str, asyncio.Lock] = {}

    def _write_lock(self, thread_id: str) -> asyncio.Lock:
        return self._write_locks.setdefault(thread_id, asyncio.Lock())

    async def load(self, thread_id: str | None) -> dict[str, Any]:
        """Metadata of *thread_id*; empty when absent or unreadable."""
        if not thread_id:
            return {}
        try:
            thread = await self._store.get_thread(thread_id)
        except Exception:
            logger.debug("thread_settings_read_failed", thread_id=thread_id, exc_info=True)
            return {}
        return dict(thread.metadata) if thread else {}

    async def persist(self, thread_id: str | None, key: str, value: Any) -> None:
        await self.persist_many(thread_id, {key: value})

    async def persist_many(self, thread_id: str | None, values: dict[str, Any]) -> None:
        if not thread_id:
            return
        try:
            async with self._write_lock(thread_id):
                thread = await self._store.get_thread(thread_id)
                if thread is None:
                    return
                thread.metadata = {**thread.metadata, **values}
                thread.updated_at = datetime.now(UTC)
                await self._store.save_thread(thread)
        except Exception:
            logger.debug(
                "thread_setting_persist_failed",
                thread_id=thread_id,
                keys=list(values),
                exc_info=True,
            )

    async def remove(self, thread_id: str | None, key: str) -> None:
        if not thread_id:
            return
        try:
            async with self._write_lock(thread_id):
                thread = await self._store.get_thread(thread_id)
                if thread is None or key not in thread.metadata:
                    return
                thread.metadata = {
                    k: v for k, v in thread.metadata.items() if k != key
                }
                thread.updated_at = datetime.now(UTC)
                await self._store.save_thread(thread)
        except Exception:
            logger.debug(
                "thread_setting_remove_failed",
                thread_id=thread_id,
                key=key,
                exc_info=True,
            )

    async def get(self, thread_id: str | None, key: str, default: Any = None) -> Any:
        """Thread-only scalar lookup; no global fallback."""
        return (await self.load(thread_id)).get(key, default)

    async def model_for_mode(self, thread_id: str | None, mode_id: str) -> str | None:
        """Resolve the model for *mode_id* on *thread_id*.

        Thread per-mode value, then global per-mode value, then the mode's
        built-in default, then the last model used anywhere. ``None`` means
        keep the current model.
        """
        meta = await self.load(thread_id)
        if meta.get(mode_model_key(mode_id)):
            return meta[mode_model_key(mode_id)]

        global_value = self._preferences.get_mode_model_id(mode_id)
        if global_value:
            return global_value

        mode = self._config.get_mode(mode_id)
        if mode and mode.default_model_id:
            return mode.default_model_id

        return self._preferences.get_last_model_id()

    async def subagent_model(
        self, thread_id: str | None, agent_type: str | None = None
    ) -> str | None:
        """Thread value, then global preference, then the configured default."""
        meta = await self.load(thread_id)
        key = subagent_model_key(agent_type)
        if meta.get(key):
            return meta[key]

        global_value = self._preferences.get_subagent_model_id(agent_type)
        if global_value:
            return global_value

        if agent_type:
            return self._config.subagent_default_models.get(agent_type)
        return None

    async def set_subagent_model(
        self,
        thread_id: str | None,
        model_id: str,
        agent_type: str | None = None,
        *,
        scope: str = "thread",
    ) -> None:
        if scope == "global":
            self._preferences.set_subagent_model_id(model_id, agent_type)
            return
        await self.persist(thread_id, subagent_model_key(agent_type), model_id)

    def remember_model(self, mode_id: str, model_id: str) -> None:
        """Record *model_id* as the global last model and the mode's global model."""
        self._preferences.set_last_model_id(model_id)
        self._preferences.set_mode_model_id(mode_id, model_id)
