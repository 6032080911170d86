from __future__ import annotations


class PipelineError(RuntimeError):
    """Base class for failures raised while building or diffing a ref."""

    kind = "internal"


class CloneError(PipelineError):
    kind = "clone"


class QuotaExceededError(PipelineError):
    kind = "quota_exceeded"


class UnsupportedProjectError(PipelineError):
    kind = "unsupported_project"


class InstallError(PipelineError):
    kind = "install"


class BuildError(PipelineError):
    kind = "build"


class ReadinessTimeoutError(PipelineError):
    kind = "readiness_timeout"


class CaptureError(PipelineError):
    kind = "capture"


class OverallTimeoutError(PipelineError):
    kind = "overall_timeout"


class JobCancelledError(PipelineError):
    """A stage tried to spawn a process after its job was torn down."""

    kind = "cancelled"


class BadRequestError(ValueError):
    """Request is missing identifiers required to start a diff."""


class RepositoryLookupError(RuntimeError):
    """Repository metadata could not be fetched."""
