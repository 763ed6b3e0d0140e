"""Central orchestrator: one live operation per session, guarded by an epoch."""

from __future__ import annotations

import asyncio
import uuid
from datetime import UTC, datetime
from functools import partial
from typing import TYPE_CHECKING, Any

import structlog
from pydantic import BaseModel, ConfigDict

from conductor.agents.base import ImageInput, StreamRequest, ToolContext
from conductor.core import settings as keys
from conductor.core.config import THINKING_LEVELS
from conductor.core.events import (
    AGENT_END,
    AGENT_START,
    ASK_QUESTION,
    ERROR,
    FOLLOW_UP_QUEUED,
    MODE_CHANGED,
    MODEL_CHANGED,
    OM_MODEL_CHANGED,
    OM_STATUS,
    PLAN_APPROVAL_REQUIRED,
    STATE_CHANGED,
    SUBAGENT_MODEL_CHANGED,
    THREAD_CHANGED,
    THREAD_CREATED,
    TOOL_APPROVAL_REQUIRED,
    Event,
)
from conductor.core.interactions import InteractionCoordinator, PlanDecision
from conductor.core.memory import OMProgress, OMProgressTracker, reconstruct_progress
from conductor.core.messages import Message, convert_stored_message
from conductor.core.recovery import (
    AbortRecovery,
    ConversationOrderRecovery,
    SurfaceError,
    UnknownToolRecovery,
    decide_recovery,
)
from conductor.core.safety.approvals import ApprovalCoordinator, ApprovalDecision
from conductor.core.safety.permissions import (
    PermissionPolicy,
    ToolCategory,
    load_permission_rules,
)
from conductor.core.session import OperationHandle, Session, SessionState, TokenUsage
from conductor.core.settings import ThreadSettings
from conductor.core.stream import StreamAssembler
from conductor.exceptions import (
    ApprovalError,
    ConfigError,
    ModeNotFoundError,
    StorageError,
    ThreadNotFoundError,
)
from conductor.storage.base import StoredThread
from conductor.storage.preferences import MemoryPreferenceStore

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from conductor.agents.base import ExecutionService
    from conductor.core.config import ConductorConfig
    from conductor.core.events import EventBus
    from conductor.hooks.base import HookManager, HookResult
    from conductor.storage.base import ThreadLock, ThreadStore
    from conductor.storage.preferences import PreferenceStore

logger = structlog.get_logger()

_STOP_HOOK_CONTINUE = "A hook has requested that you continue working."

# UI events that fire Notification hooks, with the reason passed to them.
_NOTIFY_REASONS = {
    AGENT_END: "agent_done",
    TOOL_APPROVAL_REQUIRED: "tool_approval",
    ASK_QUESTION: "ask_question",
    PLAN_APPROVAL_REQUIRED: "plan_approval",
}


class SessionInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    session_id: str
    resource_id: str
    thread_id: str | None
    mode_id: str
    model_id: str
    is_running: bool
    follow_up_count: int
    token_usage: TokenUsage


class Engine:
    def __init__(
        self,
        config: ConductorConfig,
        service: ExecutionService,
        store: ThreadStore | None,
        event_bus: EventBus,
        *,
        preferences: PreferenceStore | None = None,
        hooks: HookManager | None = None,
        thread_lock: ThreadLock | None = None,
        session_id: str | None = None,
    ) -> None:
        if not config.modes:
            raise ConfigError("at least one mode must be configured")
        if store is None:
            raise StorageError("no thread store configured")

        self.config = config
        self.service = service
        self.store = store
        self.event_bus = event_bus
        self.hooks = hooks
        self.thread_lock = thread_lock
        self.preferences = preferences or MemoryPreferenceStore()

        self.session = Session(
            session_id=session_id or str(uuid.uuid4()),
            resource_id=config.resource_id,
            mode_id=config.default_mode.id,
            model_id=config.default_mode.default_model_id or "",
            state=SessionState(
                yolo=config.yolo,
                thinking_level=config.thinking_level,
                observation_threshold=config.observation_threshold,
                reflection_threshold=config.reflection_threshold,
            ),
            permission_rules=load_permission_rules(config.permission_files),
        )
        self.settings = ThreadSettings(store, self.preferences, config)
        self.tracker = OMProgressTracker()
        self.approvals = ApprovalCoordinator(self.session, self._emit, hooks)
        self.interactions = InteractionCoordinator(
            self.session, self._emit, on_plan_approved=self._enter_approved_mode
        )
        self._notification_tasks: set[asyncio.Task] = set()
        if hooks is not None:
            for event_name in _NOTIFY_REASONS:
                event_bus.subscribe(event_name, self._notify_hooks)

    # -- events ---------------------------------------------------------------

    async def _emit(self, name: str, data: dict[str, Any] | None = None) -> None:
        await self.event_bus.emit(
            Event(name=name, data=data or {}, operation_id=self.session.operation_id)
        )

    def _emitter(
        self, operation_id: int
    ) -> Callable[[str, dict[str, Any]], Awaitable[None]]:
        """Emitter that drops everything once *operation_id* is superseded."""

        async def emit(name: str, data: dict[str, Any] | None = None) -> None:
            if not self.session.is_current(operation_id):
                logger.debug(
                    "stale_event_dropped", event_name=name, operation_id=operation_id
                )
                return
            await self.event_bus.emit(
                Event(name=name, data=data or {}, operation_id=operation_id)
            )

        return emit

    async def _emit_hook_warnings(self, result: HookResult) -> None:
        for warning in result.warnings:
            await self._emit(ERROR, {"message": f"[hook] {warning}", "retryable": False})

    async def _notify_hooks(self, event: Event) -> None:
        if event.name == AGENT_END and event.data.get("reason") != "complete":
            return
        message = (
            event.data.get("tool_name")
            or event.data.get("question")
            or event.data.get("title")
        )
        # Notification hooks never hold up the operation that triggered them.
        task = asyncio.create_task(
            self._run_notification(_NOTIFY_REASONS[event.name], message)
        )
        self._notification_tasks.add(task)
        task.add_done_callback(self._notification_tasks.discard)

    async def _run_notification(self, reason: str, message: str | None) -> None:
        assert self.hooks is not None
        result = await self.hooks.run_notification(reason, message)
        await self._emit_hook_warnings(result)

    # -- lifecycle ------------------------------------------------------------

    async def init(self) -> None:
        """Open the store and run session-start hooks; call once after construction."""
        await self.store.setup()
        if self.hooks is not None:
            await self._emit_hook_warnings(await self.hooks.run_session_start())
        logger.info(
            "engine_started",
            session_id=self.session.session_id,
            resource_id=self.session.resource_id,
            mode_id=self.session.mode_id,
        )

    async def shutdown(self) -> None:
        self.abort()
        if self._notification_tasks:
            await asyncio.gather(*self._notification_tasks, return_exceptions=True)
        if self.hooks is not None:
            await self._emit_hook_warnings(await self.hooks.run_session_end())
        if self.thread_lock is not None and self.session.thread_id:
            self.thread_lock.release(self.session.thread_id)
        await self.store.teardown()
        logger.info("engine_stopped", session_id=self.session.session_id)

    # -- operations -----------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self.session.is_running

    @property
    def follow_up_count(self) -> int:
        return len(self.session.follow_ups)

    async def send_message(
        self, content: str, *, images: list[ImageInput] | None = None
    ) -> None:
        """Start a new operation for *content* and drive it to completion.

        Every side effect is tagged with this operation's id and skipped
        once a newer operation has been started.
        """
        if self.hooks is not None:
            hook = await self.hooks.run_user_prompt_submit(content)
            await self._emit_hook_warnings(hook)
            if not hook.allowed:
                reason = hook.block_reason or "Policy violation"
                logger.info("message_blocked_by_hook", reason=reason)
                await self._emit(
                    ERROR,
                    {
                        "message": f"Message blocked by hook: {reason}",
                        "error_type": "hook_blocked",
                        "retryable": False,
                    },
                )
                return

        if self.session.thread_id is None:
            await self.create_thread()

        handle = self.session.next_operation()
        operation_id = handle.operation_id
        emit = self._emitter(operation_id)
        logger.info(
            "operation_started",
            operation_id=operation_id,
            thread_id=self.session.thread_id,
            mode_id=self.session.mode_id,
        )
        await emit(AGENT_START, {})

        try:
            request = self._build_request(content, images or [], handle, emit)
            stream = await self.service.stream(request)
            assembler = StreamAssembler(
                session=self.session,
                service=self.service,
                request=request,
                approvals=ApprovalCoordinator(self.session, emit, self.hooks),
                tracker=self.tracker,
                emit=emit,
                hooks=self.hooks,
                persist_usage=partial(self._persist_usage, self.session.thread_id),
            )
            message = await assembler.run(stream)
            await self._run_stop_hook(message, operation_id)
            await emit(AGENT_END, {"reason": "complete"})
            logger.info("operation_completed", operation_id=operation_id)
        except Exception as e:
            if self.session.is_current(operation_id):
                await self._recover(e, handle, emit)
            else:
                logger.debug("superseded_operation_failed", operation_id=operation_id)
        finally:
            if self.session.is_current(operation_id):
                self.session.handle = None
                if self.session.follow_ups:
                    next_message = self.session.follow_ups.pop(0)
                    logger.info(
                        "follow_up_dequeued",
                        operation_id=operation_id,
                        remaining=len(self.session.follow_ups),
                    )
                    await self.send_message(next_message)

    async def _run_stop_hook(self, message: Message, operation_id: int) -> None:
        if self.hooks is None or not self.session.is_current(operation_id):
            return
        result = await self.hooks.run_stop(message.text or None, "complete")
        if not self.session.is_current(operation_id):
            logger.debug("stale_stop_hook_result", operation_id=operation_id)
            return
        await self._emit_hook_warnings(result)
        if not result.allowed:
            # Agent keeps working: the hook's reason runs next.
            self.session.follow_ups.insert(0, result.block_reason or _STOP_HOOK_CONTINUE)
            logger.info("stop_hook_continue", operation_id=operation_id)

    async def _recover(
        self,
        error: Exception,
        handle: OperationHandle,
        emit: Callable[[str, dict[str, Any]], Awaitable[None]],
    ) -> None:
        action = decide_recovery(error, aborted=handle.cancelled)
        match action:
            case AbortRecovery():
                logger.info("operation_aborted", operation_id=handle.operation_id)
                await emit(AGENT_END, {"reason": "aborted"})
            case UnknownToolRecovery():
                logger.warning(
                    "unknown_tool_called",
                    operation_id=handle.operation_id,
                    tool_name=action.tool_name,
                )
                await emit(
                    ERROR,
                    {
                        "message": action.warning,
                        "error_type": "unknown_tool",
                        "retryable": True,
                    },
                )
                self.session.follow_ups.append(action.follow_up)
                await emit(AGENT_END, {"reason": "error"})
            case ConversationOrderRecovery():
                logger.warning(
                    "conversation_order_recovered",
                    operation_id=handle.operation_id,
                    detail=action.detail,
                )
                self.session.follow_ups.insert(0, action.continuation)
                await emit(
                    ERROR,
                    {
                        "message": "Conversation ended on an assistant turn; continuing.",
                        "error_type": "conversation_order",
                        "retryable": True,
                        "diagnostic": True,
                    },
                )
                await emit(AGENT_END, {"reason": "error"})
            case SurfaceError(parsed=parsed):
                logger.error(
                    "operation_failed",
                    operation_id=handle.operation_id,
                    error_type=parsed.error_type,
                    error=str(parsed.original),
                )
                await emit(
                    ERROR,
                    {
                        "message": parsed.message,
                        "error_type": parsed.error_type,
                        "retryable": parsed.retryable,
                        "retry_delay": parsed.retry_delay,
                    },
                )
                await emit(AGENT_END, {"reason": "error"})

    def abort(self) -> None:
        """Cancel the live operation, if any, without starting another."""
        handle = self.session.handle
        if handle is not None and not handle.cancelled:
            handle.cancel(user=True)
            logger.info("operation_abort_requested", operation_id=handle.operation_id)

    async def steer(self, content: str) -> None:
        """Replace the running operation with *content*, dropping queued follow-ups."""
        self.abort()
        self.session.follow_ups.clear()
        await self.send_message(content)

    async def follow_up(self, content: str) -> None:
        if self.is_running:
            self.session.follow_ups.append(content)
            await self._emit(FOLLOW_UP_QUEUED, {"count": len(self.session.follow_ups)})
            return
        await self.send_message(content)

    def _build_request(
        self,
        content: str,
        images: list[ImageInput],
        handle: OperationHandle,
        emit: Callable[[str, dict[str, Any]], Awaitable[None]],
    ) -> StreamRequest:
        interactions = InteractionCoordinator(
            self.session, emit, on_plan_approved=self._enter_approved_mode
        )
        assert self.session.thread_id is not None
        return StreamRequest(
            content=content,
            images=images,
            thread_id=self.session.thread_id,
            resource_id=self.session.resource_id,
            mode_id=self.session.mode_id,
            model_id=self.session.model_id,
            handle=handle,
            max_steps=self.config.max_steps,
            provider_options=self.thinking_provider_options(),
            context=ToolContext(
                thread_id=self.session.thread_id,
                resource_id=self.session.resource_id,
                mode_id=self.session.mode_id,
                ask_question=partial(interactions.ask_question, handle=handle),
                request_plan_approval=partial(
                    interactions.request_plan_approval, handle=handle
                ),
                emit=emit,
                get_state=self.get_state,
                set_state=self.set_state,
            ),
        )

    async def _persist_usage(self, thread_id: str | None) -> None:
        await self.settings.persist(
            thread_id, keys.TOKEN_USAGE, self.session.token_usage.model_dump()
        )

    # -- user decisions -------------------------------------------------------

    async def resolve_approval(
        self, decision: ApprovalDecision | str, tool_call_id: str | None = None
    ) -> bool:
        try:
            decision = ApprovalDecision(decision)
        except ValueError as e:
            raise ApprovalError(f"Unknown approval decision: {decision}") from e
        return self.approvals.resolve(decision, tool_call_id)

    async def respond_to_question(self, question_id: str, answer: str) -> bool:
        return await self.interactions.respond_to_question(question_id, answer)

    async def respond_to_plan_approval(
        self, plan_id: str, action: str, feedback: str | None = None
    ) -> bool:
        decision = PlanDecision(action=action, feedback=feedback)
        return await self.interactions.respond_to_plan_approval(plan_id, decision)

    async def _enter_approved_mode(self) -> None:
        target = self.config.plan_approved_mode
        if self.config.get_mode(target) is None:
            logger.warning("plan_approved_mode_missing", mode_id=target)
            return
        if target != self.session.mode_id:
            await self.switch_mode(target, abort=False)

    # -- threads --------------------------------------------------------------

    async def create_thread(self, title: str | None = None) -> StoredThread:
        mode = self.config.get_mode(self.session.mode_id) or self.config.default_mode
        model_id = (
            self.session.model_id
            or mode.default_model_id
            or self.preferences.get_last_model_id()
        )
        metadata: dict[str, Any] = {keys.CURRENT_MODE: self.session.mode_id}
        if model_id:
            metadata[keys.CURRENT_MODEL] = model_id
            metadata[keys.mode_model_key(self.session.mode_id)] = model_id

        now = datetime.now(UTC)
        thread = StoredThread(
            id=str(uuid.uuid4()),
            resource_id=self.session.resource_id,
            title=title or "New Thread",
            created_at=now,
            updated_at=now,
            metadata=metadata,
        )
        await self.store.save_thread(thread)
        self._take_thread_lock(thread.id)

        self.session.thread_id = thread.id
        if model_id and not self.session.model_id:
            self.session.model_id = model_id
        self.session.token_usage = TokenUsage()
        self.tracker.reset()
        logger.info("thread_created", thread_id=thread.id, model_id=model_id)
        await self._emit(THREAD_CREATED, {"thread": thread.model_dump(mode="json")})
        return thread

    async def switch_thread(self, thread_id: str) -> None:
        self.abort()
        thread = await self.store.get_thread(thread_id)
        if thread is None:
            raise ThreadNotFoundError(f"Thread not found: {thread_id}")

        self._take_thread_lock(thread_id)
        previous = self.session.thread_id
        self.session.thread_id = thread_id
        await self._load_thread_metadata()
        logger.info("thread_switched", thread_id=thread_id, previous_thread_id=previous)
        await self._emit(
            THREAD_CHANGED, {"thread_id": thread_id, "previous_thread_id": previous}
        )

    def _take_thread_lock(self, thread_id: str) -> None:
        if self.thread_lock is None:
            return
        # Acquire first so a locked thread leaves the current one untouched.
        self.thread_lock.acquire(thread_id)
        previous = self.session.thread_id
        if previous and previous != thread_id:
            self.thread_lock.release(previous)

    async def list_threads(self, *, all_resources: bool = False) -> list[StoredThread]:
        resource_id = None if all_resources else self.session.resource_id
        return await self.store.list_threads(resource_id=resource_id)

    async def select_or_create_thread(self) -> StoredThread:
        """Resume the most recently updated thread of this resource, or start one."""
        threads = await self.list_threads()
        if not threads:
            return await self.create_thread()
        latest = max(threads, key=lambda t: t.updated_at)
        await self.switch_thread(latest.id)
        return latest

    def set_resource_id(self, resource_id: str) -> None:
        if self.thread_lock is not None and self.session.thread_id:
            self.thread_lock.release(self.session.thread_id)
        self.session.resource_id = resource_id
        self.session.thread_id = None

    async def _load_thread_metadata(self) -> None:
        thread_id = self.session.thread_id
        meta = await self.settings.load(thread_id)
        self.session.token_usage = TokenUsage.model_validate(
            meta.get(keys.TOKEN_USAGE) or {}
        )

        saved_mode = meta.get(keys.CURRENT_MODE)
        if (
            saved_mode
            and saved_mode != self.session.mode_id
            and self.config.get_mode(saved_mode) is not None
        ):
            previous_mode = self.session.mode_id
            self.session.mode_id = saved_mode
            await self._emit(
                MODE_CHANGED, {"mode_id": saved_mode, "previous_mode_id": previous_mode}
            )

        model_id = await self.settings.model_for_mode(thread_id, self.session.mode_id)
        if model_id:
            self.session.model_id = model_id

        state = self.session.state
        state.thinking_level = meta.get(keys.THINKING_LEVEL, state.thinking_level)
        state.observation_threshold = meta.get(
            keys.OBSERVATION_THRESHOLD, state.observation_threshold
        )
        state.reflection_threshold = meta.get(
            keys.REFLECTION_THRESHOLD, state.reflection_threshold
        )
        state.observer_model_id = meta.get(keys.OBSERVER_MODEL, state.observer_model_id)
        state.reflector_model_id = meta.get(
            keys.REFLECTOR_MODEL, state.reflector_model_id
        )
        state.yolo = meta.get(keys.YOLO, state.yolo)
        state.todos = list(meta.get(keys.TODOS) or [])

        await self.load_om_progress()

    async def get_messages(self) -> list[Message]:
        if not self.session.thread_id:
            return []
        return await self.get_messages_for_thread(self.session.thread_id)

    async def get_messages_for_thread(self, thread_id: str) -> list[Message]:
        stored = await self.store.list_messages(thread_id)
        return [convert_stored_message(m) for m in stored]

    def get_session(self) -> SessionInfo:
        s = self.session
        return SessionInfo(
            session_id=s.session_id,
            resource_id=s.resource_id,
            thread_id=s.thread_id,
            mode_id=s.mode_id,
            model_id=s.model_id,
            is_running=s.is_running,
            follow_up_count=len(s.follow_ups),
            token_usage=s.token_usage.model_copy(),
        )

    # -- modes and models -----------------------------------------------------

    async def switch_mode(self, mode_id: str, *, abort: bool = True) -> None:
        if self.config.get_mode(mode_id) is None:
            raise ModeNotFoundError(f"Mode not found: {mode_id}")
        if abort:
            self.abort()

        thread_id = self.session.thread_id
        if self.session.model_id:
            await self.settings.persist(
                thread_id, keys.mode_model_key(self.session.mode_id), self.session.model_id
            )

        previous = self.session.mode_id
        self.session.mode_id = mode_id
        await self.settings.persist(thread_id, keys.CURRENT_MODE, mode_id)

        model_id = await self.settings.model_for_mode(thread_id, mode_id)
        if model_id:
            self.session.model_id = model_id
            await self._emit(MODEL_CHANGED, {"model_id": model_id})
        logger.info("mode_switched", mode_id=mode_id, previous_mode_id=previous)
        await self._emit(MODE_CHANGED, {"mode_id": mode_id, "previous_mode_id": previous})

    async def switch_model(self, model_id: str) -> None:
        self.session.model_id = model_id
        await self.settings.persist_many(
            self.session.thread_id,
            {
                keys.CURRENT_MODEL: model_id,
                keys.mode_model_key(self.session.mode_id): model_id,
            },
        )
        self.settings.remember_model(self.session.mode_id, model_id)
        await self._emit(MODEL_CHANGED, {"model_id": model_id})

    async def switch_observer_model(self, model_id: str) -> None:
        self.session.state.observer_model_id = model_id
        await self.settings.persist(self.session.thread_id, keys.OBSERVER_MODEL, model_id)
        await self._emit(OM_MODEL_CHANGED, {"role": "observer", "model_id": model_id})

    async def switch_reflector_model(self, model_id: str) -> None:
        self.session.state.reflector_model_id = model_id
        await self.settings.persist(
            self.session.thread_id, keys.REFLECTOR_MODEL, model_id
        )
        await self._emit(OM_MODEL_CHANGED, {"role": "reflector", "model_id": model_id})

    async def get_subagent_model(self, agent_type: str | None = None) -> str | None:
        return await self.settings.subagent_model(self.session.thread_id, agent_type)

    async def set_subagent_model(
        self, model_id: str, agent_type: str | None = None, *, scope: str = "thread"
    ) -> None:
        await self.settings.set_subagent_model(
            self.session.thread_id, model_id, agent_type, scope=scope
        )
        await self._emit(
            SUBAGENT_MODEL_CHANGED,
            {"model_id": model_id, "scope": scope, "agent_type": agent_type},
        )

    # -- thread-scoped state --------------------------------------------------

    def get_state(self) -> dict[str, Any]:
        return self.session.state.model_dump()

    async def set_state(self, updates: dict[str, Any]) -> None:
        state = self.session.state
        known = set(SessionState.model_fields) - {"extra"}
        changed = []
        for key, value in updates.items():
            if key in known:
                setattr(state, key, value)
            else:
                state.extra[key] = value
            changed.append(key)
        if keys.TODOS in updates:
            await self.settings.persist(self.session.thread_id, keys.TODOS, state.todos)
        await self._emit(STATE_CHANGED, {"state": self.get_state(), "changed_keys": changed})

    async def set_thinking_level(self, level: str) -> None:
        if level not in THINKING_LEVELS:
            raise ConfigError(f"unknown thinking level: {level}")
        self.session.state.thinking_level = level
        await self.settings.persist(self.session.thread_id, keys.THINKING_LEVEL, level)

    def thinking_provider_options(self) -> dict[str, Any] | None:
        """Extended-thinking budget for Anthropic models, else None."""
        budget = THINKING_LEVELS.get(self.session.state.thinking_level)
        if not budget or not self.session.model_id.startswith("anthropic/"):
            return None
        return {"anthropic": {"thinking": {"type": "enabled", "budget_tokens": budget}}}

    async def set_observation_threshold(self, value: int) -> None:
        self.session.state.observation_threshold = value
        await self.settings.persist(
            self.session.thread_id, keys.OBSERVATION_THRESHOLD, value
        )

    async def set_reflection_threshold(self, value: int) -> None:
        self.session.state.reflection_threshold = value
        await self.settings.persist(
            self.session.thread_id, keys.REFLECTION_THRESHOLD, value
        )

    async def set_yolo(self, enabled: bool) -> None:
        self.session.state.yolo = enabled
        await self.settings.persist(self.session.thread_id, keys.YOLO, enabled)

    # -- permissions ----------------------------------------------------------

    def set_category_policy(
        self, category: ToolCategory | str, policy: PermissionPolicy | str
    ) -> None:
        rules = self.session.permission_rules
        rules.categories[ToolCategory(category)] = PermissionPolicy(policy)

    def set_tool_policy(self, tool_name: str, policy: PermissionPolicy | str) -> None:
        self.session.permission_rules.tools[tool_name] = PermissionPolicy(policy)

    def grant_category(self, category: ToolCategory | str) -> None:
        self.session.grants.grant_category(ToolCategory(category))

    def grant_tool(self, tool_name: str) -> None:
        self.session.grants.grant_tool(tool_name)

    def reset_grants(self) -> None:
        self.session.grants.reset()

    def get_grants(self) -> dict[str, list[str]]:
        return self.session.grants.snapshot()

    # -- observational memory -------------------------------------------------

    async def load_om_progress(self) -> OMProgress | None:
        """Rebuild the OM snapshot for the current thread and announce it."""
        thread_id = self.session.thread_id
        if not thread_id:
            return None
        try:
            progress = await reconstruct_progress(
                self.store,
                thread_id,
                self.session.resource_id,
                observation_threshold=self.session.state.observation_threshold,
                reflection_threshold=self.session.state.reflection_threshold,
            )
        except Exception:
            logger.debug("om_progress_unavailable", thread_id=thread_id, exc_info=True)
            return None
        self.tracker.reset(progress)
        await self._emit(OM_STATUS, {"progress": progress.model_dump()})
        return self.tracker.snapshot()
