from __future__ import annotations

import logging
import shutil
import threading
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional

from branchdiff.schemas import JobState, RunMode
from branchdiff.services.errors import JobCancelledError, PipelineError
from branchdiff.services.logbuffer import LogBuffer

LOGGER = logging.getLogger("branchdiff.jobs")

_STATE_ORDER = [
    JobState.pending,
    JobState.cloning,
    JobState.installing,
    JobState.building,
    JobState.starting,
    JobState.awaiting_ready,
    JobState.captured,
    JobState.done,
]
_TERMINAL_STATES = {JobState.done, JobState.failed}


def new_request_id() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True)
class ProjectPlan:
    """How a provisioned sandbox is built and served."""

    run_mode: RunMode
    start_command: List[str]
    build_command: Optional[List[str]] = None
    environment: Dict[str, str] = field(default_factory=dict)


class BuildJob:
    """One ref's journey through the pipeline.

    The job owns its working directory and every process spawned on its
    behalf. ``teardown`` releases both and may be called from another thread
    while a stage is still running.
    """

    def __init__(
        self,
        label: str,
        ref: str,
        work_dir: Path,
        *,
        deadline: float,
        log_limit: int,
        clamp_stage_timeouts: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.label = label
        self.ref = ref
        self.work_dir = work_dir
        self.deadline = deadline
        self.log = LogBuffer(log_limit)
        self.port: Optional[int] = None
        self.screenshot: Optional[bytes] = None
        self.error: Optional[PipelineError] = None
        self._clamp = clamp_stage_timeouts
        self._clock = clock
        self._state = JobState.pending
        self._handles: List[object] = []
        self._closed = False
        self._lock = threading.Lock()

    def __repr__(self) -> str:
        return f"BuildJob(label={self.label!r}, ref={self.ref!r}, state={self._state.value})"

    @property
    def state(self) -> JobState:
        return self._state

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def process(self):
        with self._lock:
            return self._handles[-1] if self._handles else None

    @property
    def handles(self) -> List[object]:
        with self._lock:
            return list(self._handles)

    @property
    def succeeded(self) -> bool:
        return self._state in {JobState.captured, JobState.done}

    @property
    def expired(self) -> bool:
        return self._clock() >= self.deadline

    def advance(self, state: JobState) -> None:
        if state is JobState.failed:
            raise ValueError("Use fail() to move a job into the failed state.")
        with self._lock:
            current = self._state
            if current in _TERMINAL_STATES:
                raise ValueError(f"Job {self.label} is already {current.value}.")
            if _STATE_ORDER.index(state) <= _STATE_ORDER.index(current):
                raise ValueError(f"Illegal transition {current.value} -> {state.value} for job {self.label}.")
            self._state = state
        LOGGER.info("Job %s (%s): %s -> %s", self.label, self.ref, current.value, state.value)

    def fail(self, error: PipelineError) -> bool:
        """Record ``error`` unless the job already reached a terminal state."""
        with self._lock:
            if self._state in _TERMINAL_STATES:
                return False
            previous = self._state
            self._state = JobState.failed
            self.error = error
        LOGGER.warning(
            "Job %s (%s) failed while %s: %s",
            self.label,
            self.ref,
            previous.value,
            error,
        )
        self.log.append_line(f"[branchdiff] {self.label} failed: {error}")
        return True

    def stage_timeout(self, budget: float) -> float:
        if not self._clamp:
            return budget
        remaining = self.deadline - self._clock()
        return max(0.0, min(budget, remaining))

    def launch(self, handle):
        """Start ``handle`` and take ownership of it, unless the job was already torn down."""
        with self._lock:
            if self._closed:
                raise JobCancelledError(f"Job {self.label} was torn down before its process could start.")
            handle.start()
            self._handles.append(handle)
        return handle

    def is_alive(self) -> bool:
        return any(handle.is_alive() for handle in self.handles)

    def teardown(self) -> None:
        with self._lock:
            self._closed = True
            handles = list(self._handles)
        for handle in handles:
            try:
                handle.terminate()
            except Exception as exc:  # pragma: no cover
                LOGGER.warning("Failed to terminate process for job %s: %s", self.label, exc)
        if self.work_dir.exists():
            shutil.rmtree(self.work_dir, ignore_errors=True)
        if self.work_dir.exists():
            LOGGER.error("Working directory %s for job %s could not be removed", self.work_dir, self.label)
        else:
            LOGGER.debug("Job %s torn down (%s removed)", self.label, self.work_dir)
