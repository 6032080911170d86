from __future__ import annotations

import logging
import os
import signal
import subprocess
import threading
from pathlib import Path
from typing import Dict, Iterable, Mapping, Optional, Sequence, Type

from branchdiff.constants import DEFAULT_BUILD_TIMEOUT_SECONDS
from branchdiff.schemas import JobState, RunMode
from branchdiff.services.errors import BuildError, PipelineError
from branchdiff.services.jobs import BuildJob, ProjectPlan
from branchdiff.services.logbuffer import LogBuffer

LOGGER = logging.getLogger("branchdiff.supervisor")

# credentials the service holds that build scripts from the branch under test must not see
SCRUBBED_ENV_KEYS = ("GITHUB_TOKEN", "GH_TOKEN", "BRANCHDIFF_GITHUB_TOKEN")


def _redact(command: Sequence[str], secrets: Iterable[str]) -> str:
    text = " ".join(command)
    for secret in secrets:
        if secret:
            text = text.replace(secret, "***")
    return text


def _group_exists(pgid: int) -> bool:
    try:
        os.killpg(pgid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class ProcessHandle:
    """Owns exactly one OS process and streams its merged output into a log buffer."""

    def __init__(
        self,
        command: Sequence[str],
        *,
        cwd: Path,
        log: LogBuffer,
        env: Optional[Mapping[str, str]] = None,
        name: str = "process",
    ) -> None:
        self._command = list(command)
        self._cwd = cwd
        self._env = dict(env) if env is not None else None
        self._log = log
        self._name = name
        self._process: Optional[subprocess.Popen] = None
        self._reader: Optional[threading.Thread] = None
        self._terminated = False
        self._lock = threading.Lock()

    @property
    def name(self) -> str:
        return self._name

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process is not None else None

    @property
    def returncode(self) -> Optional[int]:
        if self._process is None:
            return None
        return self._process.poll()

    def start(self) -> "ProcessHandle":
        with self._lock:
            if self._process is not None:
                raise RuntimeError(f"Process {self._name} already started")
            popen_kwargs: Dict[str, object] = {
                "cwd": str(self._cwd),
                "env": self._env,
                "stdin": subprocess.DEVNULL,
                "stdout": subprocess.PIPE,
                "stderr": subprocess.STDOUT,
            }
            if os.name == "posix":
                # own process group so the whole tree can be killed at once
                popen_kwargs["start_new_session"] = True
            self._process = subprocess.Popen(self._command, **popen_kwargs)
            self._reader = threading.Thread(
                target=self._stream,
                name=f"branchdiff-log-{self._name}",
                daemon=True,
            )
            self._reader.start()
        LOGGER.debug("Started %s (pid=%s)", self._name, self._process.pid)
        return self

    def _stream(self) -> None:
        process = self._process
        if process is None or process.stdout is None:
            return
        try:
            for line in iter(process.stdout.readline, b""):
                if not line:
                    break
                self._log.append(line.decode("utf-8", errors="ignore"))
        except (OSError, ValueError) as exc:
            LOGGER.debug("Log stream for %s interrupted: %s", self._name, exc)
        finally:
            try:
                process.stdout.close()
            except OSError:
                pass

    def is_alive(self) -> bool:
        return self._process is not None and self._process.poll() is None

    def wait(self, timeout: Optional[float] = None) -> Optional[int]:
        """Wait for exit; returns the exit code, or ``None`` if ``timeout`` elapsed first."""
        if self._process is None:
            return None
        try:
            code = self._process.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            return None
        self._join_reader(timeout=2)
        return code

    def terminate(self) -> None:
        """Kill the process group immediately. Safe to call repeatedly or before ``start``."""
        with self._lock:
            process = self._process
            if process is None or self._terminated:
                return
            self._terminated = True
        if hasattr(os, "killpg"):
            if process.poll() is not None and not _group_exists(process.pid):
                # leader already reaped and nothing left in its group; the pid may be reused
                self._join_reader(timeout=2)
                LOGGER.debug("Process %s (pid=%s) had already exited", self._name, process.pid)
                return
            try:
                os.killpg(process.pid, signal.SIGKILL)
            except ProcessLookupError:
                pass
            except OSError as exc:
                LOGGER.debug("killpg failed for %s (pid=%s): %s", self._name, process.pid, exc)
                self._kill_leader(process)
        else:
            self._kill_leader(process)
        try:
            process.wait(timeout=5)
        except subprocess.TimeoutExpired:
            LOGGER.warning("Process %s (pid=%s) did not exit after SIGKILL", self._name, process.pid)
        self._join_reader(timeout=2)
        LOGGER.debug("Terminated %s (pid=%s)", self._name, process.pid)

    @staticmethod
    def _kill_leader(process: subprocess.Popen) -> None:
        try:
            process.kill()
        except ProcessLookupError:
            pass

    def _join_reader(self, timeout: float) -> None:
        reader = self._reader
        if reader is not None and reader is not threading.current_thread():
            reader.join(timeout=timeout)


class ProcessSupervisor:
    """Runs build/start commands for a provisioned sandbox on behalf of a job."""

    def __init__(
        self,
        *,
        build_timeout: float = DEFAULT_BUILD_TIMEOUT_SECONDS,
        base_env: Optional[Mapping[str, str]] = None,
    ) -> None:
        self._build_timeout = build_timeout
        self._base_env = dict(base_env) if base_env is not None else None

    def _environment(self, extra: Optional[Mapping[str, str]]) -> Dict[str, str]:
        env = dict(os.environ if self._base_env is None else self._base_env)
        for key in SCRUBBED_ENV_KEYS:
            env.pop(key, None)
        if extra:
            env.update(extra)
        return env

    def spawn(
        self,
        job: BuildJob,
        command: Sequence[str],
        *,
        stage: str,
        error_cls: Type[PipelineError],
        env: Optional[Mapping[str, str]] = None,
        cwd: Optional[Path] = None,
        secrets: Iterable[str] = (),
    ) -> ProcessHandle:
        handle = ProcessHandle(
            command,
            cwd=cwd or job.work_dir,
            env=self._environment(env),
            log=job.log,
            name=f"{job.label}-{stage}",
        )
        display = _redact(command, secrets)
        job.log.append_line(f"$ {display}")
        LOGGER.info("Job %s (%s) %s: %s", job.label, job.ref, stage, display)
        try:
            return job.launch(handle)
        except OSError as exc:
            raise error_cls(f"Could not run {command[0]}: {exc}") from exc

    def run_to_completion(
        self,
        job: BuildJob,
        command: Sequence[str],
        *,
        stage: str,
        timeout: float,
        error_cls: Type[PipelineError],
        env: Optional[Mapping[str, str]] = None,
        cwd: Optional[Path] = None,
        secrets: Iterable[str] = (),
    ) -> int:
        handle = self.spawn(
            job,
            command,
            stage=stage,
            error_cls=error_cls,
            env=env,
            cwd=cwd,
            secrets=secrets,
        )
        code = handle.wait(timeout)
        if code is None:
            handle.terminate()
            raise error_cls(f"{stage.capitalize()} timed out after {timeout:g}s")
        if code != 0:
            raise error_cls(f"{stage.capitalize()} failed with exit code {code}")
        return code

    def start(self, job: BuildJob, plan: ProjectPlan, port: int) -> ProcessHandle:
        env = dict(plan.environment)
        env["PORT"] = str(port)
        if plan.run_mode is RunMode.build_then_start:
            if not plan.build_command:
                raise BuildError("Build-then-start project has no build command")
            job.advance(JobState.building)
            self.run_to_completion(
                job,
                plan.build_command,
                stage="build",
                timeout=job.stage_timeout(self._build_timeout),
                error_cls=BuildError,
                env=env,
            )
        job.advance(JobState.starting)
        return self.spawn(job, plan.start_command, stage="server", error_cls=BuildError, env=env)

    def terminate(self, handle: Optional[ProcessHandle]) -> None:
        if handle is None:
            return
        handle.terminate()

