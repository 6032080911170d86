from __future__ import annotations

import base64
import logging
import queue
import threading
import time
from typing import Callable, List, Optional

from branchdiff.constants import JOB_LABELS
from branchdiff.schemas import DiffResult, JobState
from branchdiff.services.capture import DiffEngine, ScreenshotCapturer
from branchdiff.services.errors import OverallTimeoutError, PipelineError
from branchdiff.services.jobs import BuildJob, new_request_id
from branchdiff.services.logbuffer import tail
from branchdiff.services.ports import allocate_port
from branchdiff.services.readiness import ReadinessProber
from branchdiff.services.sandbox import RepositorySpec, SandboxProvisioner
from branchdiff.services.settings import PipelineSettings, get_settings_store
from branchdiff.services.supervisor import ProcessSupervisor

LOGGER = logging.getLogger("branchdiff.orchestrator")


def _overall_timeout(budget: float) -> OverallTimeoutError:
    return OverallTimeoutError(f"Request exceeded the overall {budget:g}s budget")


def _encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


class BuildOrchestrator:
    """Builds, serves and screenshots two refs side by side, then diffs the captures.

    Each ref runs on its own worker thread. The calling thread waits for both
    tracks on a completion queue against the overall deadline and always tears
    both jobs down before returning.
    """

    def __init__(
        self,
        settings: Optional[PipelineSettings] = None,
        *,
        provisioner: Optional[SandboxProvisioner] = None,
        supervisor: Optional[ProcessSupervisor] = None,
        prober: Optional[ReadinessProber] = None,
        capturer: Optional[ScreenshotCapturer] = None,
        diff_engine: Optional[DiffEngine] = None,
        clock: Callable[[], float] = time.monotonic,
        join_grace_seconds: float = 5.0,
    ) -> None:
        self._settings = settings or get_settings_store().get()
        self._supervisor = supervisor or ProcessSupervisor(build_timeout=self._settings.build_timeout_seconds)
        self._provisioner = provisioner or SandboxProvisioner.from_settings(self._settings, self._supervisor)
        self._prober = prober or ReadinessProber(
            interval=self._settings.probe_interval_seconds,
            request_timeout=self._settings.probe_request_timeout_seconds,
        )
        self._capturer = capturer or ScreenshotCapturer.from_settings(self._settings)
        self._diff_engine = diff_engine or DiffEngine(self._settings.diff_threshold)
        self._clock = clock
        self._join_grace = join_grace_seconds

    @property
    def settings(self) -> PipelineSettings:
        return self._settings

    def run(
        self,
        repository: RepositorySpec,
        baseline_ref: str,
        candidate_ref: str,
        overall_timeout: Optional[float] = None,
    ) -> DiffResult:
        settings = self._settings
        budget = overall_timeout if overall_timeout is not None else settings.overall_timeout_seconds
        request_id = new_request_id()
        deadline = self._clock() + budget
        jobs = [
            BuildJob(
                label,
                ref,
                settings.workspace_root / f"branchdiff-{request_id}-{label}",
                deadline=deadline,
                log_limit=settings.log_retention_chars,
                clamp_stage_timeouts=settings.clamp_stage_timeouts,
                clock=self._clock,
            )
            for label, ref in zip(JOB_LABELS, (baseline_ref, candidate_ref))
        ]
        completion_queue: "queue.Queue[str]" = queue.Queue()
        threads: List[threading.Thread] = []
        LOGGER.info(
            "Diff request %s for %s: %s vs %s (budget %ss)",
            request_id,
            repository.full_name,
            baseline_ref,
            candidate_ref,
            budget,
        )
        try:
            for job in jobs:
                thread = threading.Thread(
                    target=self._track,
                    args=(repository, job, completion_queue, budget),
                    name=f"branchdiff-{job.label}-{request_id[:8]}",
                    daemon=True,
                )
                threads.append(thread)
                thread.start()
            self._await_tracks(jobs, completion_queue, deadline, budget)
            result = self._merge(jobs)
        except Exception as exc:
            LOGGER.exception("Diff request %s failed unexpectedly", request_id)
            result = DiffResult(
                success=False,
                error_message=f"Internal error: {exc}",
                error_kind=PipelineError.kind,
                combined_log=self._combined_log(jobs),
            )
        finally:
            for job in jobs:
                job.teardown()
            for thread in threads:
                thread.join(timeout=self._join_grace)
                if thread.is_alive():
                    LOGGER.warning("Track thread %s still running after teardown", thread.name)
        LOGGER.info(
            "Diff request %s finished: success=%s kind=%s",
            request_id,
            result.success,
            result.error_kind,
        )
        return result

    def _track(
        self,
        repository: RepositorySpec,
        job: BuildJob,
        completion_queue: "queue.Queue[str]",
        budget: float,
    ) -> None:
        try:
            plan = self._provisioner.provision(repository, job)
            job.port = allocate_port()
            handle = self._supervisor.start(job, plan, job.port)
            job.advance(JobState.awaiting_ready)
            self._prober.wait_ready(
                job.port,
                job.stage_timeout(self._settings.readiness_timeout_seconds),
                is_alive=handle.is_alive,
            )
            job.screenshot = self._capturer.capture(f"http://localhost:{job.port}/")
            job.advance(JobState.captured)
        except PipelineError as exc:
            if job.expired and not isinstance(exc, OverallTimeoutError):
                # a clamped stage budget ran out together with the request budget
                timeout = _overall_timeout(budget)
                timeout.__cause__ = exc
                job.fail(timeout)
            else:
                job.fail(exc)
        except Exception as exc:
            if job.closed or job.state is JobState.failed:
                LOGGER.debug("Track %s stopped after its job ended: %s", job.label, exc)
            else:
                LOGGER.exception("Unexpected error in %s track", job.label)
                job.fail(PipelineError(f"Unexpected error: {exc}"))
        finally:
            completion_queue.put(job.label)

    def _await_tracks(
        self,
        jobs: List[BuildJob],
        completion_queue: "queue.Queue[str]",
        deadline: float,
        budget: float,
    ) -> None:
        pending = {job.label for job in jobs}
        while pending:
            remaining = deadline - self._clock()
            if remaining <= 0:
                break
            try:
                label = completion_queue.get(timeout=min(remaining, 1.0))
            except queue.Empty:
                continue
            pending.discard(label)
        if not pending:
            return

        error = _overall_timeout(budget)
        for job in jobs:
            if job.label in pending:
                job.fail(error)

    def _merge(self, jobs: List[BuildJob]) -> DiffResult:
        failed = [job for job in jobs if not job.succeeded]
        if failed:
            timed_out = [job for job in failed if isinstance(job.error, OverallTimeoutError)]
            culprit = (timed_out or failed)[0]
            error = culprit.error or PipelineError("Job ended without a result")
            return DiffResult(
                success=False,
                error_message=f"{culprit.label} ({culprit.ref}): {error}",
                error_kind=error.kind,
                combined_log=self._combined_log(jobs),
            )

        baseline, candidate = jobs
        try:
            comparison = self._diff_engine.compare(baseline.screenshot, candidate.screenshot)
        except PipelineError as exc:
            LOGGER.warning("Comparison failed: %s", exc)
            return DiffResult(
                success=False,
                error_message=f"Comparison failed: {exc}",
                error_kind=exc.kind,
                combined_log=self._combined_log(jobs),
            )
        for job in jobs:
            job.advance(JobState.done)
        LOGGER.info(
            "Changed %s of %s pixels (%s%%)",
            comparison.changed_pixel_count,
            comparison.total_pixel_count,
            comparison.percentage,
        )
        return DiffResult(
            success=True,
            baseline_image=_encode(baseline.screenshot),
            candidate_image=_encode(candidate.screenshot),
            diff_image=_encode(comparison.diff_image),
            changed_pixel_count=comparison.changed_pixel_count,
            total_pixel_count=comparison.total_pixel_count,
            combined_log=self._combined_log(jobs),
        )

    def _combined_log(self, jobs: List[BuildJob]) -> str:
        sections = [f"\n--- {job.label} ({job.ref}) ---\n{job.log.text()}" for job in jobs]
        return tail("".join(sections), self._settings.log_retention_chars)


_orchestrator: Optional[BuildOrchestrator] = None


def get_orchestrator() -> BuildOrchestrator:
    """Return the shared orchestrator, rebuilt whenever the active settings change."""
    global _orchestrator
    settings = get_settings_store().get()
    if _orchestrator is None or _orchestrator.settings is not settings:
        _orchestrator = BuildOrchestrator(settings)
    return _orchestrator
