from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, model_validator
from pydantic.alias_generators import to_camel


class RunMode(str, Enum):
    build_then_start = "build_then_start"
    dev_server = "dev_server"


class JobState(str, Enum):
    pending = "pending"
    cloning = "cloning"
    installing = "installing"
    building = "building"
    starting = "starting"
    awaiting_ready = "awaiting_ready"
    captured = "captured"
    done = "done"
    failed = "failed"


class DiffRequest(BaseModel):
    """Inbound diff request. Identifiers are optional here so the endpoint can answer 400 itself."""

    repository_owner: Optional[str] = None
    repository_name: Optional[str] = None
    candidate_ref: Optional[str] = None
    baseline_ref: Optional[str] = None
    auth_token: Optional[str] = None

    model_config = {"alias_generator": to_camel, "populate_by_name": True}


class DiffResult(BaseModel):
    success: bool
    baseline_image: Optional[str] = None
    candidate_image: Optional[str] = None
    diff_image: Optional[str] = None
    changed_pixel_count: Optional[int] = Field(default=None, ge=0)
    total_pixel_count: Optional[int] = Field(default=None, ge=0)
    error_message: Optional[str] = None
    error_kind: Optional[str] = None
    combined_log: str = ""

    model_config = {"alias_generator": to_camel, "populate_by_name": True, "frozen": True}

    @model_validator(mode="after")
    def check_outcome(self) -> "DiffResult":
        payload = (
            self.baseline_image,
            self.candidate_image,
            self.diff_image,
            self.changed_pixel_count,
            self.total_pixel_count,
        )
        if self.success:
            if any(value is None for value in payload):
                raise ValueError("Successful results must carry all images and pixel counts.")
            if self.changed_pixel_count > self.total_pixel_count:
                raise ValueError("changed_pixel_count cannot exceed total_pixel_count.")
        else:
            if not self.error_message:
                raise ValueError("Failed results must carry an error message.")
            if any(value is not None for value in payload):
                raise ValueError("Failed results cannot carry images or pixel counts.")
        return self


class SettingsView(BaseModel):
    disk_ceiling_mb: int
    overall_timeout_seconds: float
    clone_timeout_seconds: float
    install_timeout_seconds: float
    build_timeout_seconds: float
    readiness_timeout_seconds: float
    probe_interval_seconds: float
    probe_request_timeout_seconds: float
    navigation_timeout_ms: int
    viewport_width: int
    viewport_height: int
    log_retention_chars: int
    diff_threshold: float
    default_baseline_ref: str
    workspace_root: str
    clamp_stage_timeouts: bool
    github_token_configured: bool


class SettingsUpdate(BaseModel):
    disk_ceiling_mb: Optional[int] = None
    overall_timeout_seconds: Optional[float] = None
    clone_timeout_seconds: Optional[float] = None
    install_timeout_seconds: Optional[float] = None
    build_timeout_seconds: Optional[float] = None
    readiness_timeout_seconds: Optional[float] = None
    probe_interval_seconds: Optional[float] = None
    probe_request_timeout_seconds: Optional[float] = None
    navigation_timeout_ms: Optional[int] = None
    viewport_width: Optional[int] = None
    viewport_height: Optional[int] = None
    log_retention_chars: Optional[int] = None
    diff_threshold: Optional[float] = None
    default_baseline_ref: Optional[str] = None
    clamp_stage_timeouts: Optional[bool] = None
