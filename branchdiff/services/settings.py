from __future__ import annotations

import logging
import tempfile
import threading
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from branchdiff.constants import (
    DEFAULT_BASELINE_REF,
    DEFAULT_BUILD_TIMEOUT_SECONDS,
    DEFAULT_CLONE_HOST,
    DEFAULT_CLONE_TIMEOUT_SECONDS,
    DEFAULT_DIFF_THRESHOLD,
    DEFAULT_DISK_CEILING_MB,
    DEFAULT_GITHUB_API_URL,
    DEFAULT_INSTALL_TIMEOUT_SECONDS,
    DEFAULT_LOG_RETENTION_CHARS,
    DEFAULT_NAVIGATION_TIMEOUT_MS,
    DEFAULT_OVERALL_TIMEOUT_SECONDS,
    DEFAULT_PROBE_INTERVAL_SECONDS,
    DEFAULT_PROBE_REQUEST_TIMEOUT_SECONDS,
    DEFAULT_READINESS_TIMEOUT_SECONDS,
    DEFAULT_VIEWPORT,
)

LOGGER = logging.getLogger("branchdiff.settings")

ENV_PREFIX = "BRANCHDIFF_"


def _default_workspace_root() -> Path:
    return Path(tempfile.gettempdir())


class PipelineSettings(BaseSettings):
    """Immutable snapshot of the knobs that govern one pipeline run.

    Every field can be set from a ``BRANCHDIFF_<FIELD>`` environment variable. The token
    falls back to the plain ``GITHUB_TOKEN`` variable when the prefixed one is unset.
    """

    github_token: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("BRANCHDIFF_GITHUB_TOKEN", "GITHUB_TOKEN", "github_token"),
    )
    github_api_url: str = DEFAULT_GITHUB_API_URL
    clone_host: str = DEFAULT_CLONE_HOST
    disk_ceiling_mb: int = Field(default=DEFAULT_DISK_CEILING_MB, gt=0)
    overall_timeout_seconds: float = Field(default=DEFAULT_OVERALL_TIMEOUT_SECONDS, gt=0)
    clone_timeout_seconds: float = Field(default=DEFAULT_CLONE_TIMEOUT_SECONDS, gt=0)
    install_timeout_seconds: float = Field(default=DEFAULT_INSTALL_TIMEOUT_SECONDS, gt=0)
    build_timeout_seconds: float = Field(default=DEFAULT_BUILD_TIMEOUT_SECONDS, gt=0)
    readiness_timeout_seconds: float = Field(default=DEFAULT_READINESS_TIMEOUT_SECONDS, gt=0)
    probe_interval_seconds: float = Field(default=DEFAULT_PROBE_INTERVAL_SECONDS, gt=0)
    probe_request_timeout_seconds: float = Field(default=DEFAULT_PROBE_REQUEST_TIMEOUT_SECONDS, gt=0)
    navigation_timeout_ms: int = Field(default=DEFAULT_NAVIGATION_TIMEOUT_MS, gt=0)
    viewport_width: int = Field(default=DEFAULT_VIEWPORT["width"], gt=0)
    viewport_height: int = Field(default=DEFAULT_VIEWPORT["height"], gt=0)
    log_retention_chars: int = Field(default=DEFAULT_LOG_RETENTION_CHARS, gt=0)
    diff_threshold: float = Field(default=DEFAULT_DIFF_THRESHOLD, ge=0, le=1)
    default_baseline_ref: str = DEFAULT_BASELINE_REF
    workspace_root: Path = Field(default_factory=_default_workspace_root)
    clamp_stage_timeouts: bool = True

    model_config = SettingsConfigDict(
        env_prefix=ENV_PREFIX,
        env_ignore_empty=True,
        populate_by_name=True,
        frozen=True,
    )

    @field_validator("github_token")
    @classmethod
    def blank_token_is_none(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        stripped = value.strip()
        return stripped or None

    @field_validator("default_baseline_ref")
    @classmethod
    def validate_ref(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("Default baseline ref cannot be blank.")
        return stripped

    @property
    def disk_ceiling_bytes(self) -> int:
        return self.disk_ceiling_mb * 1024 * 1024


class SettingsStore:
    """Holds the active settings and applies validated runtime overrides."""

    def __init__(self, settings: Optional[PipelineSettings] = None) -> None:
        self._settings = settings or PipelineSettings()
        self._lock = threading.Lock()

    def get(self) -> PipelineSettings:
        with self._lock:
            return self._settings

    def update(self, changes: Mapping[str, Any]) -> PipelineSettings:
        cleaned = {key: value for key, value in changes.items() if value is not None}
        if not cleaned:
            return self.get()
        with self._lock:
            merged = self._settings.model_dump()
            merged.update(cleaned)
            # pydantic's ValidationError is a ValueError; the previous snapshot stays active
            updated = PipelineSettings.model_validate(merged)
            self._settings = updated
        LOGGER.info("Updated pipeline settings: %s", ", ".join(sorted(cleaned)))
        return updated

    def view(self) -> Dict[str, Any]:
        settings = self.get()
        payload = settings.model_dump(exclude={"github_token", "github_api_url", "clone_host"})
        payload["workspace_root"] = str(settings.workspace_root)
        payload["github_token_configured"] = settings.github_token is not None
        return payload


_settings_store: Optional[SettingsStore] = None


def get_settings_store() -> SettingsStore:
    global _settings_store
    if _settings_store is None:
        _settings_store = SettingsStore()
    return _settings_store
