"""Shell-command hooks configured in global and project YAML/JSON files.

Each hook receives a JSON payload on stdin. On blocking events an exit code
of 2 blocks the action; any other non-zero exit or a timeout is reported as
a warning. Stdout may carry ``{"reason": ..., "additionalContext": ...}``.
"""

from __future__ import annotations

import asyncio
import json
import os
import re
import time
from pathlib import Path
from typing import Any

import structlog
import yaml
from pydantic import BaseModel, ConfigDict, ValidationError

from conductor.exceptions import HookError
from conductor.hooks.base import BLOCKING_EVENTS, HookEvent, HookResult

logger = structlog.get_logger()

BLOCK_EXIT_CODE = 2


class HookMatcher(BaseModel):
    model_config = ConfigDict(frozen=True)

    tool_name: str | None = None


class HookDefinition(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: str = "command"
    command: str
    matcher: HookMatcher | None = None
    timeout: float | None = None
    description: str | None = None

    def matches(self, tool_name: str | None) -> bool:
        if not self.matcher or not self.matcher.tool_name:
            return True
        if not tool_name:
            return False
        try:
            return re.search(self.matcher.tool_name, tool_name) is not None
        except re.error:
            logger.warning("hook_matcher_invalid", pattern=self.matcher.tool_name)
            return False

    @property
    def label(self) -> str:
        return self.description or self.command


class HookRun(BaseModel):
    model_config = ConfigDict(frozen=True)

    exit_code: int
    stdout: dict[str, Any] | None = None
    stderr: str | None = None
    timed_out: bool = False
    duration_ms: int = 0


HooksConfig = dict[HookEvent, list[HookDefinition]]


def load_hooks_file(path: Path) -> HooksConfig:
    """Parse one hooks file; missing files yield an empty config."""
    if not path.exists():
        return {}
    try:
        raw = yaml.safe_load(path.read_text()) or {}
    except (OSError, yaml.YAMLError) as e:
        raise HookError(f"Cannot read hooks config {path}: {e}") from e
    if not isinstance(raw, dict):
        raise HookError(f"Hooks config {path} must be a mapping")

    config: HooksConfig = {}
    for event in HookEvent:
        entries = raw.get(event.value)
        if not isinstance(entries, list):
            continue
        hooks = []
        for entry in entries:
            try:
                hook = HookDefinition.model_validate(entry)
            except ValidationError:
                logger.warning(
                    "hook_definition_invalid", path=str(path), hook_event=event.value
                )
                continue
            if hook.type == "command":
                hooks.append(hook)
        if hooks:
            config[event] = hooks
    logger.debug("hooks_loaded", path=str(path), events=[e.value for e in config])
    return config


def merge_hooks(*configs: HooksConfig) -> HooksConfig:
    merged: HooksConfig = {}
    for config in configs:
        for event, hooks in config.items():
            merged.setdefault(event, []).extend(hooks)
    return merged


class CommandHookManager:
    def __init__(
        self,
        *,
        session_id: str,
        cwd: Path | None = None,
        global_path: Path | None = None,
        project_path: Path | None = None,
        default_timeout: float = 10.0,
    ) -> None:
        self.session_id = session_id
        self._cwd = cwd or Path.cwd()
        self._global_path = global_path
        self._project_path = project_path
        self._default_timeout = default_timeout
        self.config: HooksConfig = {}
        self.reload()

    def reload(self) -> None:
        """Re-read hook files; global hooks run before project hooks."""
        configs = [
            load_hooks_file(p)
            for p in (self._global_path, self._project_path)
            if p is not None
        ]
        self.config = merge_hooks(*configs)

    def has_hooks(self) -> bool:
        return bool(self.config)

    async def run_user_prompt_submit(self, user_message: str) -> HookResult:
        return await self._run(
            HookEvent.USER_PROMPT_SUBMIT, {"user_message": user_message}
        )

    async def run_pre_tool_use(self, tool_name: str, tool_input: Any) -> HookResult:
        return await self._run(
            HookEvent.PRE_TOOL_USE,
            {"tool_name": tool_name, "tool_input": tool_input},
            tool_name=tool_name,
        )

    async def run_post_tool_use(
        self, tool_name: str, tool_input: Any, tool_output: Any, is_error: bool
    ) -> HookResult:
        return await self._run(
            HookEvent.POST_TOOL_USE,
            {
                "tool_name": tool_name,
                "tool_input": tool_input,
                "tool_output": tool_output,
                "tool_error": is_error,
            },
            tool_name=tool_name,
        )

    async def run_stop(
        self, assistant_message: str | None, stop_reason: str
    ) -> HookResult:
        payload: dict[str, Any] = {"stop_reason": stop_reason}
        if assistant_message is not None:
            payload["assistant_message"] = assistant_message
        return await self._run(HookEvent.STOP, payload)

    async def run_session_start(self) -> HookResult:
        return await self._run(HookEvent.SESSION_START, {})

    async def run_session_end(self) -> HookResult:
        return await self._run(HookEvent.SESSION_END, {})

    async def run_notification(
        self, reason: str, message: str | None = None
    ) -> HookResult:
        payload = {"reason": reason}
        if message is not None:
            payload["message"] = message
        return await self._run(HookEvent.NOTIFICATION, payload)

    async def _run(
        self,
        event: HookEvent,
        payload: dict[str, Any],
        *,
        tool_name: str | None = None,
    ) -> HookResult:
        applicable = [h for h in self.config.get(event, []) if h.matches(tool_name)]
        if not applicable:
            return HookResult()

        stdin = {
            "session_id": self.session_id,
            "cwd": str(self._cwd),
            "hook_event_name": event.value,
            **payload,
        }
        blocking = event in BLOCKING_EVENTS
        warnings: list[str] = []
        contexts: list[str] = []

        for hook in applicable:
            run = await self._execute(hook, event, stdin)
            extra = (run.stdout or {}).get("additionalContext")
            if extra:
                contexts.append(extra)

            if run.timed_out:
                warnings.append(
                    f"Hook timed out after {self._timeout(hook)}s: {hook.command}"
                )
                continue

            if run.exit_code == BLOCK_EXIT_CODE and blocking:
                reason = (
                    (run.stdout or {}).get("reason")
                    or run.stderr
                    or f"Blocked by hook: {hook.label}"
                )
                logger.info("hook_blocked", hook_event=event.value, hook=hook.label)
                return HookResult(
                    allowed=False,
                    block_reason=reason,
                    additional_context="\n".join(contexts) or None,
                    warnings=warnings,
                )

            if run.exit_code != 0:
                detail = run.stderr or f"Hook exited with code {run.exit_code}"
                warnings.append(f"{hook.label}: {detail}")

        return HookResult(
            allowed=True,
            additional_context="\n".join(contexts) or None,
            warnings=warnings,
        )

    def _timeout(self, hook: HookDefinition) -> float:
        return hook.timeout if hook.timeout is not None else self._default_timeout

    async def _execute(
        self, hook: HookDefinition, event: HookEvent, stdin: dict[str, Any]
    ) -> HookRun:
        start = time.monotonic()
        try:
            proc = await asyncio.create_subprocess_shell(
                hook.command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self._cwd,
                env={**os.environ, "CONDUCTOR_HOOK_EVENT": event.value},
            )
        except OSError as e:
            logger.warning("hook_spawn_failed", hook=hook.label, error=str(e))
            return HookRun(exit_code=1, stderr=str(e))

        try:
            out, err = await asyncio.wait_for(
                proc.communicate(json.dumps(stdin, default=str).encode()),
                timeout=self._timeout(hook),
            )
        except TimeoutError:
            proc.kill()
            await proc.wait()
            logger.warning("hook_timeout", hook=hook.label, hook_event=event.value)
            return HookRun(
                exit_code=-1,
                timed_out=True,
                duration_ms=int((time.monotonic() - start) * 1000),
            )

        parsed: dict[str, Any] | None = None
        text = out.decode(errors="replace").strip()
        if text:
            try:
                loaded = json.loads(text)
            except json.JSONDecodeError:
                loaded = None
            parsed = loaded if isinstance(loaded, dict) else None

        run = HookRun(
            exit_code=proc.returncode if proc.returncode is not None else 1,
            stdout=parsed,
            stderr=err.decode(errors="replace").strip() or None,
            duration_ms=int((time.monotonic() - start) * 1000),
        )
        logger.debug(
            "hook_executed",
            hook=hook.label,
            hook_event=event.value,
            exit_code=run.exit_code,
            duration_ms=run.duration_ms,
        )
        return run
