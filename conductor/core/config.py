"""Unified configuration via pydantic-settings."""

from pathlib import Path

from pydantic import BaseModel, ConfigDict, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ModeConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str | None = None
    default: bool = False
    default_model_id: str | None = None
    color: str | None = None


def _split_csv(v: str) -> list[str]:
    return [p.strip() for p in v.split(",") if p.strip()]


class ConductorConfig(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="CONDUCTOR_",
        env_file=".env",
        env_file_encoding="utf-8",
    )

    # Required
    modes: list[ModeConfig]

    # Identity
    resource_id: str = "default"

    # Modes
    plan_approved_mode: str = "build"

    # Safety settings
    permission_files: list[Path] = []
    yolo: bool = False

    # Hooks
    hooks_project_dir: Path | None = None
    hooks_global_path: Path | None = None
    hook_timeout_seconds: float = 10.0

    # Agent settings
    max_steps: int = 1000
    thinking_level: str = "off"
    subagent_default_models: dict[str, str] = {}

    # Observational memory
    observation_threshold: int = 30_000
    reflection_threshold: int = 40_000

    # Storage
    storage_backend: str = "memory"  # "memory" or "sqlite"
    storage_path: Path = Path("conductor.db")
    preferences_path: Path | None = None
    lock_dir: Path | None = None

    # Logging
    log_level: str = "INFO"
    log_dir: Path | None = None
    log_max_bytes: int = 10_485_760
    log_backup_count: int = 5

    @field_validator("modes", mode="before")
    @classmethod
    def parse_modes(cls, v: list | str) -> list:
        if isinstance(v, str):
            return [{"id": m} for m in _split_csv(v)]
        return v

    @field_validator("modes")
    @classmethod
    def require_default_mode(cls, v: list[ModeConfig]) -> list[ModeConfig]:
        if not v:
            raise ValueError("modes must not be empty")
        ids = [m.id for m in v]
        if len(set(ids)) != len(ids):
            raise ValueError(f"duplicate mode ids: {ids}")
        return v

    @field_validator("permission_files", mode="before")
    @classmethod
    def parse_permission_files(cls, v: list[Path] | str) -> list[Path]:
        if isinstance(v, str):
            return [Path(p) for p in _split_csv(v)]
        return v

    @field_validator("thinking_level")
    @classmethod
    def check_thinking_level(cls, v: str) -> str:
        if v not in THINKING_LEVELS:
            raise ValueError(f"unknown thinking level: {v}")
        return v

    @property
    def default_mode(self) -> ModeConfig:
        for mode in self.modes:
            if mode.default:
                return mode
        return self.modes[0]

    def get_mode(self, mode_id: str) -> ModeConfig | None:
        for mode in self.modes:
            if mode.id == mode_id:
                return mode
        return None


THINKING_LEVELS: dict[str, int | None] = {
    "off": None,
    "minimal": 1024,
    "low": 4096,
    "medium": 10240,
    "high": 32768,
}
