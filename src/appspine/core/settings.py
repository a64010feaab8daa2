"""
Engine settings.

:class:`EngineSettings` is the single validated source of truth for the
tunables of the reconciliation engine.  Values come from ``APPSPINE_*``
environment variables or a ``.env`` file; the hosting process may also build
an instance directly and hand it to :class:`~appspine.controller.manager.ControllerManager`.

Tags:
    app-spine, configuration, settings, pydantic
"""

from __future__ import annotations

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class EngineSettings(BaseSettings):
    """Reconciliation engine configuration."""

    model_config = SettingsConfigDict(
        env_prefix="APPSPINE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Revisions ────────────────────────────────────────────────
    revision_history_limit: int = Field(
        default=10,
        description="Unreferenced revisions kept per Application; <= 0 keeps all",
    )

    # ── Workers ──────────────────────────────────────────────────
    concurrent_reconciles: int = Field(default=4, ge=1)
    dispatch_parallelism: int = Field(default=8, ge=1)
    resync_period_seconds: float = Field(
        default=300.0, description="Periodic re-enqueue of every Application; <= 0 disables"
    )

    # ── Retry / backoff ──────────────────────────────────────────
    backoff_base_seconds: float = Field(default=0.5, gt=0)
    backoff_max_seconds: float = Field(default=300.0, gt=0)
    degraded_requeue_ceiling_seconds: float = Field(default=60.0, gt=0)
    stall_threshold: int = Field(default=5, ge=1)
    apply_conflict_retries: int = Field(default=3, ge=0)

    # ── Events ───────────────────────────────────────────────────
    event_buffer_size: int = Field(default=1000, ge=1)

    # ── Logging ──────────────────────────────────────────────────
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="json")

    @model_validator(mode="after")
    def _check_backoff_bounds(self) -> EngineSettings:
        if self.backoff_base_seconds > self.backoff_max_seconds:
            raise ValueError("backoff_base_seconds must not exceed backoff_max_seconds")
        return self

    @property
    def pruning_enabled(self) -> bool:
        return self.revision_history_limit > 0


_settings_cache: dict[str, EngineSettings] = {}


def get_settings(*, _force_reload: bool = False) -> EngineSettings:
    """Load, validate, and cache the process-wide :class:`EngineSettings`."""
    if not _force_reload and "default" in _settings_cache:
        return _settings_cache["default"]
    settings = EngineSettings()
    _settings_cache["default"] = settings
    return settings


def clear_settings_cache() -> None:
    """Clear the settings cache (primarily for testing)."""
    _settings_cache.clear()
