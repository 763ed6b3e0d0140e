"""Event bus delivering orchestration events to UI subscribers."""

from collections.abc import Callable, Coroutine
from datetime import UTC, datetime
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict, Field

logger = structlog.get_logger()

# Event name constants
MODE_CHANGED = "mode_changed"
MODEL_CHANGED = "model_changed"
THREAD_CHANGED = "thread_changed"
THREAD_CREATED = "thread_created"
STATE_CHANGED = "state_changed"
AGENT_START = "agent_start"
AGENT_END = "agent_end"
MESSAGE_START = "message_start"
MESSAGE_UPDATE = "message_update"
MESSAGE_END = "message_end"
TOOL_START = "tool_start"
TOOL_END = "tool_end"
TOOL_APPROVAL_REQUIRED = "tool_approval_required"
USAGE_UPDATE = "usage_update"
INFO = "info"
ERROR = "error"
FOLLOW_UP_QUEUED = "follow_up_queued"
ASK_QUESTION = "ask_question"
PLAN_APPROVAL_REQUIRED = "plan_approval_required"
PLAN_APPROVED = "plan_approved"
OM_STATUS = "om_status"
OM_OBSERVATION_START = "om_observation_start"
OM_OBSERVATION_END = "om_observation_end"
OM_OBSERVATION_FAILED = "om_observation_failed"
OM_REFLECTION_START = "om_reflection_start"
OM_REFLECTION_END = "om_reflection_end"
OM_REFLECTION_FAILED = "om_reflection_failed"
OM_BUFFERING_START = "om_buffering_start"
OM_BUFFERING_END = "om_buffering_end"
OM_BUFFERING_FAILED = "om_buffering_failed"
OM_ACTIVATION = "om_activation"
OM_MODEL_CHANGED = "om_model_changed"
SUBAGENT_MODEL_CHANGED = "subagent_model_changed"

WILDCARD = "*"


class Event(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    data: dict[str, Any] = Field(default_factory=dict)
    operation_id: int | None = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))


EventHandler = Callable[[Event], Coroutine[Any, Any, None]]


class EventBus:
    def __init__(self) -> None:
        self._handlers: dict[str, list[EventHandler]] = {}

    def subscribe(self, event_name: str, handler: EventHandler) -> None:
        """Register *handler* for *event_name*, or for every event with ``"*"``."""
        self._handlers.setdefault(event_name, []).append(handler)

    def unsubscribe(self, event_name: str, handler: EventHandler) -> None:
        handlers = self._handlers.get(event_name, [])
        if handler in handlers:
            handlers.remove(handler)

    async def emit(self, event: Event) -> None:
        handlers = [
            *self._handlers.get(event.name, []),
            *self._handlers.get(WILDCARD, []),
        ]
        for handler in handlers:
            try:
                await handler(event)
            except Exception:
                logger.exception(
                    "event_handler_error",
                    event_name=event.name,
                    handler_name=getattr(handler, "__name__", repr(handler)),
                )
