from __future__ import annotations

import socket
from pathlib import Path
from typing import List

import pytest

from branchdiff.schemas import JobState
from branchdiff.services.errors import BuildError, CloneError, JobCancelledError
from branchdiff.services.jobs import BuildJob, new_request_id
from branchdiff.services.logbuffer import LogBuffer, tail
from branchdiff.services.ports import allocate_port


class FakeClock:
    def __init__(self, now: float = 100.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class StubHandle:
    def __init__(self) -> None:
        self.started = False
        self.terminate_calls = 0

    def start(self) -> "StubHandle":
        self.started = True
        return self

    def is_alive(self) -> bool:
        return self.started and self.terminate_calls == 0

    def terminate(self) -> None:
        self.terminate_calls += 1


def _job(tmp_path: Path, clock: FakeClock, *, clamp: bool = True) -> BuildJob:
    work_dir = tmp_path / "branchdiff-test-baseline"
    work_dir.mkdir()
    return BuildJob(
        "baseline",
        "main",
        work_dir,
        deadline=clock() + 30.0,
        log_limit=200,
        clamp_stage_timeouts=clamp,
        clock=clock,
    )


@pytest.mark.unit
def test_job_states_only_move_forward(tmp_path: Path) -> None:
    job = _job(tmp_path, FakeClock())
    assert job.state is JobState.pending

    job.advance(JobState.cloning)
    job.advance(JobState.installing)
    # dev-server projects skip the build stage
    job.advance(JobState.starting)
    assert job.state is JobState.starting

    with pytest.raises(ValueError):
        job.advance(JobState.installing)
    with pytest.raises(ValueError):
        job.advance(JobState.failed)


@pytest.mark.unit
def test_job_fail_is_terminal_and_first_error_wins(tmp_path: Path) -> None:
    job = _job(tmp_path, FakeClock())
    job.advance(JobState.cloning)

    assert job.fail(CloneError("Remote branch nope not found"))
    assert not job.fail(BuildError("late failure"))
    assert job.state is JobState.failed
    assert isinstance(job.error, CloneError)
    assert "Remote branch nope not found" in job.log.text()
    with pytest.raises(ValueError):
        job.advance(JobState.installing)


@pytest.mark.unit
def test_stage_timeout_is_clamped_to_remaining_budget(tmp_path: Path) -> None:
    clock = FakeClock()
    job = _job(tmp_path, clock)

    assert job.stage_timeout(60.0) == pytest.approx(30.0)
    assert job.stage_timeout(10.0) == pytest.approx(10.0)
    clock.now += 45.0
    assert job.stage_timeout(10.0) == 0.0


@pytest.mark.unit
def test_stage_timeout_unclamped_keeps_independent_budgets(tmp_path: Path) -> None:
    job = _job(tmp_path, FakeClock(), clamp=False)
    assert job.stage_timeout(60.0) == 60.0


@pytest.mark.unit
def test_teardown_kills_handles_and_removes_directory(tmp_path: Path) -> None:
    job = _job(tmp_path, FakeClock())
    (job.work_dir / "node_modules").mkdir()
    (job.work_dir / "node_modules" / "left-pad.js").write_text("module.exports = 1;")
    handles: List[StubHandle] = [job.launch(StubHandle()), job.launch(StubHandle())]
    assert job.is_alive()
    assert job.process is handles[-1]

    job.teardown()
    job.teardown()

    assert not job.work_dir.exists()
    assert not job.is_alive()
    assert all(handle.terminate_calls == 2 for handle in handles)


@pytest.mark.unit
def test_launch_after_teardown_is_refused(tmp_path: Path) -> None:
    job = _job(tmp_path, FakeClock())
    job.teardown()
    handle = StubHandle()

    with pytest.raises(JobCancelledError):
        job.launch(handle)
    assert not handle.started
    assert job.handles == []


@pytest.mark.unit
def test_log_buffer_keeps_most_recent_characters() -> None:
    log = LogBuffer(limit=10)
    log.append("0123456789")
    log.append("abcdef")
    assert log.text() == "6789abcdef"
    assert len(log) == 10

    log.append_line("xyz")
    assert log.text().endswith("xyz\n")
    assert len(log) == 10

    with pytest.raises(ValueError):
        LogBuffer(limit=0)


@pytest.mark.unit
def test_tail_slices_from_the_end() -> None:
    assert tail("abcdef", 3) == "def"
    assert tail("abc", 10) == "abc"
    assert tail("abc", 0) == ""


@pytest.mark.unit
def test_allocate_port_returns_bindable_port() -> None:
    port = allocate_port()
    assert 0 < port < 65536
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind(("127.0.0.1", port))


@pytest.mark.unit
def test_request_ids_are_unique() -> None:
    ids = {new_request_id() for _ in range(50)}
    assert len(ids) == 50
