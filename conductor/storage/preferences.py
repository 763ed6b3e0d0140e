"""Global (cross-thread) model preferences."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Protocol, runtime_checkable

import structlog
import yaml

from conductor.exceptions import StorageError

logger = structlog.get_logger()

_LAST_MODEL = "last_model_id"
_MODE_MODELS = "mode_models"
_SUBAGENT_MODELS = "subagent_models"
_ANY_AGENT = "*"


@runtime_checkable
class PreferenceStore(Protocol):
    def get_last_model_id(self) -> str | None: ...

    def set_last_model_id(self, model_id: str) -> None: ...

    def get_mode_model_id(self, mode_id: str) -> str | None: ...

    def set_mode_model_id(self, mode_id: str, model_id: str) -> None: ...

    def get_subagent_model_id(self, agent_type: str | None = ...) -> str | None: ...

    def set_subagent_model_id(
        self, model_id: str, agent_type: str | None = ...
    ) -> None: ...


class MemoryPreferenceStore:
    def __init__(self, data: dict[str, Any] | None = None) -> None:
        self._data: dict[str, Any] = data or {}

    def _save(self) -> None:
        pass

    def get_last_model_id(self) -> str | None:
        return self._data.get(_LAST_MODEL)

    def set_last_model_id(self, model_id: str) -> None:
        self._data[_LAST_MODEL] = model_id
        self._save()

    def get_mode_model_id(self, mode_id: str) -> str | None:
        return self._data.get(_MODE_MODELS, {}).get(mode_id)

    def set_mode_model_id(self, mode_id: str, model_id: str) -> None:
        self._data.setdefault(_MODE_MODELS, {})[mode_id] = model_id
        self._save()

    def get_subagent_model_id(self, agent_type: str | None = None) -> str | None:
        return self._data.get(_SUBAGENT_MODELS, {}).get(agent_type or _ANY_AGENT)

    def set_subagent_model_id(
        self, model_id: str, agent_type: str | None = None
    ) -> None:
        self._data.setdefault(_SUBAGENT_MODELS, {})[agent_type or _ANY_AGENT] = model_id
        self._save()


class YamlPreferenceStore(MemoryPreferenceStore):
    """Preferences persisted to a YAML file, rewritten on every change."""

    def __init__(self, path: Path) -> None:
        self._path = path
        data: dict[str, Any] = {}
        if path.exists():
            try:
                data = yaml.safe_load(path.read_text()) or {}
            except yaml.YAMLError as e:
                raise StorageError(f"Invalid preferences file {path}: {e}") from e
            if not isinstance(data, dict):
                raise StorageError(f"Preferences file {path} must be a mapping")
        super().__init__(data)
        logger.debug("preferences_loaded", path=str(path), keys=list(data))

    def _save(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text(yaml.safe_dump(self._data, sort_keys=True))
