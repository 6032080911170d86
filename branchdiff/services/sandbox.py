from __future__ import annotations

import json
import logging
import os
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence

from branchdiff.constants import (
    DEFAULT_CLONE_HOST,
    DEFAULT_CLONE_TIMEOUT_SECONDS,
    DEFAULT_DISK_CEILING_MB,
    DEFAULT_INSTALL_TIMEOUT_SECONDS,
    INSTALL_COMMAND,
)
from branchdiff.schemas import JobState, RunMode
from branchdiff.services.errors import (
    CloneError,
    InstallError,
    QuotaExceededError,
    UnsupportedProjectError,
)
from branchdiff.services.jobs import BuildJob, ProjectPlan
from branchdiff.services.settings import PipelineSettings
from branchdiff.services.supervisor import ProcessSupervisor

LOGGER = logging.getLogger("branchdiff.sandbox")

_MB = 1024 * 1024


@dataclass(frozen=True)
class RepositorySpec:
    owner: str
    name: str
    token: Optional[str] = None
    clone_url: Optional[str] = None

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    def resolve_clone_url(self, host: str = DEFAULT_CLONE_HOST) -> str:
        if self.clone_url:
            return self.clone_url
        if self.token:
            return f"https://{self.token}:x-oauth-basic@{host}/{self.owner}/{self.name}.git"
        return f"https://{host}/{self.owner}/{self.name}.git"


def directory_size(root: Path) -> int:
    """Total size in bytes of regular files under ``root``; symlinks are not followed."""
    total = 0
    for dirpath, _dirnames, filenames in os.walk(root, followlinks=False):
        for filename in filenames:
            path = os.path.join(dirpath, filename)
            if os.path.islink(path):
                continue
            try:
                total += os.lstat(path).st_size
            except OSError:
                continue
    return total


def _has_script(scripts: dict, name: str) -> bool:
    value = scripts.get(name)
    return isinstance(value, str) and bool(value.strip())


def detect_project(work_dir: Path) -> ProjectPlan:
    """Decide how to run the checkout from the scripts declared in its package.json."""
    manifest = work_dir / "package.json"
    if not manifest.exists():
        raise UnsupportedProjectError("No package.json found; cannot build")
    try:
        data = json.loads(manifest.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise UnsupportedProjectError(f"package.json could not be parsed: {exc}") from exc
    scripts = data.get("scripts") if isinstance(data, dict) else None
    if not isinstance(scripts, dict):
        scripts = {}

    if _has_script(scripts, "build") and (_has_script(scripts, "start") or _has_script(scripts, "dev")):
        start_script = "start" if _has_script(scripts, "start") else "dev"
        return ProjectPlan(
            run_mode=RunMode.build_then_start,
            build_command=["npm", "run", "build"],
            start_command=["npm", "run", start_script],
            environment={"NODE_ENV": "production"},
        )
    if _has_script(scripts, "dev"):
        return ProjectPlan(run_mode=RunMode.dev_server, start_command=["npm", "run", "dev"])
    raise UnsupportedProjectError("No build, dev, or start script found in package.json")


class SandboxProvisioner:
    """Materializes one ref into an isolated working directory ready to be started."""

    def __init__(
        self,
        supervisor: ProcessSupervisor,
        *,
        disk_ceiling_bytes: int = DEFAULT_DISK_CEILING_MB * _MB,
        clone_timeout: float = DEFAULT_CLONE_TIMEOUT_SECONDS,
        install_timeout: float = DEFAULT_INSTALL_TIMEOUT_SECONDS,
        clone_host: str = DEFAULT_CLONE_HOST,
        install_command: Sequence[str] = INSTALL_COMMAND,
        git_executable: str = "git",
    ) -> None:
        self._supervisor = supervisor
        self._disk_ceiling_bytes = disk_ceiling_bytes
        self._clone_timeout = clone_timeout
        self._install_timeout = install_timeout
        self._clone_host = clone_host
        self._install_command: List[str] = list(install_command)
        self._git = git_executable

    @classmethod
    def from_settings(cls, settings: PipelineSettings, supervisor: ProcessSupervisor) -> "SandboxProvisioner":
        return cls(
            supervisor,
            disk_ceiling_bytes=settings.disk_ceiling_bytes,
            clone_timeout=settings.clone_timeout_seconds,
            install_timeout=settings.install_timeout_seconds,
            clone_host=settings.clone_host,
        )

    def provision(self, repository: RepositorySpec, job: BuildJob) -> ProjectPlan:
        job.advance(JobState.cloning)
        self.clone(repository, job)
        self.enforce_quota(job)
        plan = detect_project(job.work_dir)
        job.log.append_line(f"[branchdiff] {job.label} run mode: {plan.run_mode.value}")
        job.advance(JobState.installing)
        self.install(job)
        return plan

    def clone(self, repository: RepositorySpec, job: BuildJob) -> None:
        url = repository.resolve_clone_url(self._clone_host)
        job.work_dir.parent.mkdir(parents=True, exist_ok=True)
        command = [
            self._git,
            "clone",
            "--depth=1",
            "--single-branch",
            "--branch",
            job.ref,
            url,
            str(job.work_dir),
        ]
        self._supervisor.run_to_completion(
            job,
            command,
            stage="clone",
            timeout=job.stage_timeout(self._clone_timeout),
            error_cls=CloneError,
            env={"GIT_TERMINAL_PROMPT": "0"},
            cwd=job.work_dir.parent,
            secrets=[repository.token] if repository.token else (),
        )
        if not job.work_dir.is_dir():
            raise CloneError(f"Clone of {job.ref} produced no working directory")

    def enforce_quota(self, job: BuildJob) -> int:
        size = directory_size(job.work_dir)
        if size > self._disk_ceiling_bytes:
            shutil.rmtree(job.work_dir, ignore_errors=True)
            raise QuotaExceededError(
                f"Clone too large: {size / _MB:.0f}MB (max {self._disk_ceiling_bytes / _MB:.0f}MB)"
            )
        job.log.append_line(f"[branchdiff] {job.label} checkout size: {size / _MB:.1f}MB")
        LOGGER.debug("Job %s checkout is %s bytes", job.label, size)
        return size

    def install(self, job: BuildJob) -> None:
        self._supervisor.run_to_completion(
            job,
            self._install_command,
            stage="install",
            timeout=job.stage_timeout(self._install_timeout),
            error_cls=InstallError,
        )
