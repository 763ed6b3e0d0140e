"""Bootstrap: wires all components together."""

from __future__ import annotations

import logging
import logging.handlers
import uuid
from pathlib import Path
from typing import TYPE_CHECKING

import structlog

from conductor.core.config import ConductorConfig
from conductor.core.engine import Engine
from conductor.core.events import EventBus
from conductor.hooks.command import CommandHookManager
from conductor.storage.lock import FileThreadLock
from conductor.storage.memory import MemoryThreadStore
from conductor.storage.preferences import MemoryPreferenceStore, YamlPreferenceStore
from conductor.storage.sqlite import SqliteThreadStore

if TYPE_CHECKING:
    from conductor.agents.base import ExecutionService
    from conductor.storage.base import ThreadStore
    from conductor.storage.preferences import PreferenceStore

logger = structlog.get_logger()

HOOKS_FILE_NAME = "hooks.yaml"


def configure_logging(config: ConductorConfig, *, log_dir: Path | None = None) -> None:
    """Set up structlog with console output and optional rotating JSON file handler."""
    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
    ]

    root_logger = logging.getLogger()
    root_logger.setLevel(config.log_level)
    root_logger.handlers.clear()

    # Console handler: colored dev-friendly output
    console_handler = logging.StreamHandler()
    console_handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processor=structlog.dev.ConsoleRenderer(),
        )
    )
    root_logger.addHandler(console_handler)

    # File handler: JSON lines for machine parsing
    if log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            log_dir / "conductor.log",
            maxBytes=config.log_max_bytes,
            backupCount=config.log_backup_count,
        )
        file_handler.setFormatter(
            structlog.stdlib.ProcessorFormatter(
                processor=structlog.processors.JSONRenderer(),
            )
        )
        root_logger.addHandler(file_handler)

    logging.getLogger("aiosqlite").setLevel(logging.WARNING)

    structlog.configure(
        processors=shared_processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _build_store(config: ConductorConfig) -> ThreadStore:
    if config.storage_backend == "sqlite":
        config.storage_path.parent.mkdir(parents=True, exist_ok=True)
        return SqliteThreadStore(config.storage_path)
    return MemoryThreadStore()


def _build_preferences(config: ConductorConfig) -> PreferenceStore:
    if config.preferences_path is not None:
        return YamlPreferenceStore(config.preferences_path)
    return MemoryPreferenceStore()


def build_engine(
    service: ExecutionService,
    config: ConductorConfig | None = None,
    *,
    cwd: Path | None = None,
    configure_logs: bool = True,
) -> Engine:
    """Assemble an ``Engine`` for *service*; call ``await engine.init()`` next."""
    if config is None:
        config = ConductorConfig()  # type: ignore[call-arg]  # pydantic-settings loads from env
    cwd = cwd or Path.cwd()

    if configure_logs:
        configure_logging(config, log_dir=config.log_dir)

    logger.info(
        "engine_building",
        storage_backend=config.storage_backend,
        modes=[m.id for m in config.modes],
        permission_file_count=len(config.permission_files),
        log_level=config.log_level,
    )

    session_id = str(uuid.uuid4())
    project_hooks = (
        config.hooks_project_dir / HOOKS_FILE_NAME
        if config.hooks_project_dir is not None
        else None
    )
    hooks = CommandHookManager(
        session_id=session_id,
        cwd=cwd,
        global_path=config.hooks_global_path,
        project_path=project_hooks,
        default_timeout=config.hook_timeout_seconds,
    )
    thread_lock = FileThreadLock(config.lock_dir) if config.lock_dir else None

    engine = Engine(
        config,
        service,
        _build_store(config),
        EventBus(),
        preferences=_build_preferences(config),
        hooks=hooks if hooks.has_hooks() else None,
        thread_lock=thread_lock,
        session_id=session_id,
    )

    logger.info(
        "engine_built",
        session_id=session_id,
        has_hooks=hooks.has_hooks(),
        has_thread_lock=thread_lock is not None,
    )
    return engine
