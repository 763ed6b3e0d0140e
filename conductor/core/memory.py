"""Observational-memory progress: one snapshot built from every OM event shape."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any, Literal

import structlog
from pydantic import BaseModel, Field

from conductor.agents.events import (
    BufferedWindow,
    OMActivation,
    OMBufferingEnd,
    OMBufferingFailed,
    OMBufferingStart,
    OMCycleEnd,
    OMCycleFailed,
    OMCycleStart,
    OMEvent,
    OMOperationType,
    OMStatus,
    parse_chunk,
)
from conductor.core import events

if TYPE_CHECKING:
    from conductor.storage.base import MemoryRecord, StoredMessage, ThreadStore

logger = structlog.get_logger()

CHARS_PER_TOKEN = 4
DEFAULT_OBSERVATION_THRESHOLD = 30_000
DEFAULT_REFLECTION_THRESHOLD = 40_000

CycleStatus = Literal["idle", "running", "complete", "failed"]


class CycleState(BaseModel):
    status: CycleStatus = "idle"
    cycle_id: str | None = None
    tokens: int = 0
    duration_ms: int | None = None
    output_tokens: int | None = None
    error: str | None = None


class ActiveWindow(BaseModel):
    message_tokens: int = 0
    message_threshold: int = DEFAULT_OBSERVATION_THRESHOLD
    observation_tokens: int = 0
    observation_threshold: int = DEFAULT_REFLECTION_THRESHOLD

    @property
    def message_percent(self) -> float:
        if self.message_threshold <= 0:
            return 0.0
        return self.message_tokens / self.message_threshold * 100

    @property
    def observation_percent(self) -> float:
        if self.observation_threshold <= 0:
            return 0.0
        return self.observation_tokens / self.observation_threshold * 100


class OMProgress(BaseModel):
    active: ActiveWindow = Field(default_factory=ActiveWindow)
    buffered: BufferedWindow = Field(default_factory=BufferedWindow)
    observation: CycleState = Field(default_factory=CycleState)
    reflection: CycleState = Field(default_factory=CycleState)
    step_number: int = 0
    generation_count: int = 0

    def cycle(self, operation_type: OMOperationType) -> CycleState:
        return self.reflection if operation_type == "reflection" else self.observation


_CYCLE_EVENTS = {
    ("observation", "start"): events.OM_OBSERVATION_START,
    ("observation", "end"): events.OM_OBSERVATION_END,
    ("observation", "failed"): events.OM_OBSERVATION_FAILED,
    ("reflection", "start"): events.OM_REFLECTION_START,
    ("reflection", "end"): events.OM_REFLECTION_END,
    ("reflection", "failed"): events.OM_REFLECTION_FAILED,
}


class OMProgressTracker:
    """Folds normalized OM stream events into an ``OMProgress`` snapshot."""

    def __init__(self, progress: OMProgress | None = None) -> None:
        self.progress = progress or OMProgress()

    def reset(self, progress: OMProgress | None = None) -> None:
        self.progress = progress or OMProgress()

    def snapshot(self) -> OMProgress:
        return self.progress.model_copy(deep=True)

    def apply(self, event: OMEvent) -> tuple[str, dict[str, Any]]:
        """Update the snapshot and return the UI event describing the change."""
        p = self.progress
        match event:
            case OMStatus():
                p.active = ActiveWindow(
                    message_tokens=event.message_tokens,
                    message_threshold=event.message_threshold,
                    observation_tokens=event.observation_tokens,
                    observation_threshold=event.observation_threshold,
                )
                if event.buffered is not None:
                    p.buffered = event.buffered
                p.step_number = event.step_number or p.step_number
                p.generation_count = event.generation_count or p.generation_count
                name, data = events.OM_STATUS, {}
            case OMCycleStart():
                state = p.cycle(event.operation_type)
                state.status = "running"
                state.cycle_id = event.cycle_id
                state.tokens = event.tokens
                state.duration_ms = state.output_tokens = state.error = None
                name = _CYCLE_EVENTS[(event.operation_type, "start")]
                data = {"cycle_id": event.cycle_id, "tokens": event.tokens}
            case OMCycleEnd():
                state = p.cycle(event.operation_type)
                state.status = "complete"
                state.cycle_id = event.cycle_id
                state.duration_ms = event.duration_ms
                if event.operation_type == "reflection":
                    state.output_tokens = event.compressed_tokens
                    if event.compressed_tokens is not None:
                        p.active.observation_tokens = event.compressed_tokens
                else:
                    state.output_tokens = event.observation_tokens
                    p.active.observation_tokens = event.observation_tokens
                    p.active.message_tokens = max(
                        0, p.active.message_tokens - event.tokens_observed
                    )
                name = _CYCLE_EVENTS[(event.operation_type, "end")]
                data = {
                    "cycle_id": event.cycle_id,
                    "duration_ms": event.duration_ms,
                    "output_tokens": state.output_tokens,
                }
            case OMCycleFailed():
                state = p.cycle(event.operation_type)
                state.status = "failed"
                state.cycle_id = event.cycle_id
                state.duration_ms = event.duration_ms
                state.error = event.error
                name = _CYCLE_EVENTS[(event.operation_type, "failed")]
                data = {"cycle_id": event.cycle_id, "error": event.error}
            case OMBufferingStart():
                self._set_buffered(event.operation_type, status="running")
                name = events.OM_BUFFERING_START
                data = {
                    "cycle_id": event.cycle_id,
                    "operation_type": event.operation_type,
                    "tokens": event.tokens_to_buffer,
                }
            case OMBufferingEnd():
                if event.operation_type == "reflection":
                    self._set_buffered(
                        "reflection",
                        status="complete",
                        input_observation_tokens=event.tokens_buffered,
                        observation_tokens=event.buffered_tokens,
                    )
                else:
                    obs = p.buffered.observations
                    self._set_buffered(
                        "observation",
                        status="complete",
                        chunks=obs.chunks + 1,
                        message_tokens=obs.message_tokens + event.tokens_buffered,
                        observation_tokens=event.buffered_tokens,
                    )
                name = events.OM_BUFFERING_END
                data = {
                    "cycle_id": event.cycle_id,
                    "operation_type": event.operation_type,
                    "tokens_buffered": event.tokens_buffered,
                }
            case OMBufferingFailed():
                self._set_buffered(event.operation_type, status="idle")
                name = events.OM_BUFFERING_FAILED
                data = {
                    "cycle_id": event.cycle_id,
                    "operation_type": event.operation_type,
                    "error": event.error,
                }
            case OMActivation():
                p.buffered = BufferedWindow(
                    reflection=p.buffered.reflection
                    if event.operation_type == "observation"
                    else BufferedWindow().reflection,
                    observations=p.buffered.observations
                    if event.operation_type == "reflection"
                    else BufferedWindow().observations,
                )
                p.active.observation_tokens = event.observation_tokens
                p.generation_count = event.generation_count or p.generation_count
                name = events.OM_ACTIVATION
                data = {
                    "cycle_id": event.cycle_id,
                    "operation_type": event.operation_type,
                    "tokens_activated": event.tokens_activated,
                    "messages_activated": event.messages_activated,
                }
            case _:
                raise TypeError(f"not an OM event: {type(event).__name__}")
        return name, {**data, "progress": p.model_dump()}

    def _set_buffered(self, operation_type: OMOperationType, **update: Any) -> None:
        buffered = self.progress.buffered
        if operation_type == "reflection":
            buffered = buffered.model_copy(
                update={"reflection": buffered.reflection.model_copy(update=update)}
            )
        else:
            buffered = buffered.model_copy(
                update={"observations": buffered.observations.model_copy(update=update)}
            )
        self.progress.buffered = buffered


def _threshold(value: Any, fallback: int) -> int:
    if isinstance(value, dict):
        return int(value.get("max") or fallback)
    if isinstance(value, int | float) and value:
        return int(value)
    return fallback


def estimate_tokens(messages: list[StoredMessage]) -> int:
    chars = sum(len(json.dumps(m.parts, default=str)) for m in messages)
    return round(chars / CHARS_PER_TOKEN)


def _embedded_status(message: StoredMessage) -> OMStatus | None:
    for part in reversed(message.parts):
        if part.get("type") in ("data-om-status", "data-om-progress"):
            parsed = parse_chunk(part)
            if isinstance(parsed, OMStatus):
                return parsed
    return None


def progress_from_record(
    record: MemoryRecord | None,
    messages: list[StoredMessage],
    *,
    observation_threshold: int = DEFAULT_OBSERVATION_THRESHOLD,
    reflection_threshold: int = DEFAULT_REFLECTION_THRESHOLD,
) -> OMProgress:
    """Snapshot from stored counters, estimating unobserved tokens when absent."""
    if record is not None:
        observation_threshold = _threshold(
            record.config.get("observation_threshold"), observation_threshold
        )
        reflection_threshold = _threshold(
            record.config.get("reflection_threshold"), reflection_threshold
        )
    pending = record.pending_message_tokens if record else 0
    if not pending:
        last = record.last_observed_at if record else None
        unobserved = [m for m in messages if last is None or m.created_at > last]
        pending = estimate_tokens(unobserved)
    return OMProgress(
        active=ActiveWindow(
            message_tokens=pending,
            message_threshold=observation_threshold,
            observation_tokens=record.observation_token_count if record else 0,
            observation_threshold=reflection_threshold,
        )
    )


async def reconstruct_progress(
    store: ThreadStore,
    thread_id: str,
    resource_id: str | None = None,
    *,
    observation_threshold: int = DEFAULT_OBSERVATION_THRESHOLD,
    reflection_threshold: int = DEFAULT_REFLECTION_THRESHOLD,
) -> OMProgress:
    """Rebuild the last known snapshot for a thread being loaded.

    Prefers a status payload embedded in the newest assistant message, then
    the stored memory counters, then a character-count estimate.
    """
    messages = await store.list_messages(thread_id)
    for message in reversed(messages):
        if message.role != "assistant":
            continue
        status = _embedded_status(message)
        if status is not None:
            tracker = OMProgressTracker()
            tracker.apply(status)
            logger.debug("om_progress_from_message", thread_id=thread_id)
            return tracker.progress
        break

    record = await store.get_memory_record(thread_id, resource_id)
    logger.debug(
        "om_progress_from_record", thread_id=thread_id, has_record=record is not None
    )
    return progress_from_record(
        record,
        messages,
        observation_threshold=observation_threshold,
        reflection_threshold=reflection_threshold,
    )
