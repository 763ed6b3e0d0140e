"""Shared exception types for Conductor."""


class ConductorError(Exception):
    """Base exception for all Conductor errors."""


class ConfigError(ConductorError):
    """Configuration is invalid or missing."""


class AgentError(ConductorError):
    """Error from the agent-execution service."""


class OperationAborted(ConductorError):
    """The active operation was cancelled or superseded."""


class HookError(ConductorError):
    """A hook configuration could not be loaded."""


class StorageError(ConductorError):
    """Persistent storage error."""


class ThreadNotFoundError(StorageError):
    """Requested thread does not exist."""


class ThreadLockError(ConductorError):
    """Thread is locked by another process."""


class ModeNotFoundError(ConfigError):
    """Requested mode is not configured."""


class ApprovalError(ConductorError):
    """An approval or interaction could not be resolved."""
