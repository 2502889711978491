import json
import signal
import sys
import threading
from pathlib import Path
from typing import Any, Callable

import pytest

from batch_app_factory.invoker import BuildInvoker, ResultSlot, spawn_detached
from batch_app_factory.models import BuildStatus


class FakeProcess:
    """Stands in for a detached build; ``wait`` blocks until finished or terminated."""

    def __init__(self, exit_code: int | None = None) -> None:
        self.pid = 4242
        self.exit_code = exit_code if exit_code is not None else 0
        self.terminated = False
        self._done = threading.Event()
        if exit_code is not None:
            self._done.set()

    def wait(self) -> int:
        self._done.wait()
        return self.exit_code

    def finish(self, code: int = 0) -> None:
        self.exit_code = code
        self._done.set()

    def terminate_group(self) -> None:
        self.terminated = True
        self.finish(-signal.SIGTERM)


def write_status(path: Path, **fields: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(fields), encoding="utf-8")


def make_invoker(
    tmp_path: Path,
    process: FakeProcess,
    *,
    on_spawn: Callable[[], None] | None = None,
    timeout_sec: float = 5.0,
    idle_grace_sec: float = 0.0,
) -> tuple[BuildInvoker, list[dict[str, Any]]]:
    calls: list[dict[str, Any]] = []

    def spawner(command: list[str], *, cwd: Path, env: dict[str, str]) -> FakeProcess:
        calls.append({"command": command, "cwd": cwd, "env": env})
        if on_spawn is not None:
            on_spawn()
        return process

    invoker = BuildInvoker(
        command=["run_build.sh", "--force"],
        cwd=tmp_path,
        status_path=tmp_path / "data" / "build_status.json",
        poll_interval_sec=0.01,
        timeout_sec=timeout_sec,
        idle_grace_sec=idle_grace_sec,
        exit_settle_sec=0.0,
        spawner=spawner,
    )
    return invoker, calls


def test_result_slot_first_settle_wins() -> None:
    slot: ResultSlot[str] = ResultSlot()
    assert not slot.settled
    assert slot.wait(0.01) is False
    assert slot.settle("first") is True
    assert slot.settle("second") is False
    assert slot.settled
    assert slot.value == "first"


def test_complete_status_settles_success(tmp_path: Path) -> None:
    process = FakeProcess()
    status_path = tmp_path / "data" / "build_status.json"
    invoker, calls = make_invoker(
        tmp_path, process, on_spawn=lambda: write_status(status_path, status="complete", outId="proj-1")
    )
    try:
        outcome = invoker.run("job_1", "idea-1")
    finally:
        process.finish()

    assert outcome.ok
    assert outcome.out_id == "proj-1"
    assert outcome.source == "status"
    assert calls[0]["command"] == ["run_build.sh", "--force"]
    assert calls[0]["env"]["BATCH_JOB_ID"] == "job_1"
    assert calls[0]["env"]["BATCH_IDEA_ID"] == "idea-1"


def test_error_status_settles_failure(tmp_path: Path) -> None:
    process = FakeProcess()
    status_path = tmp_path / "data" / "build_status.json"
    invoker, _ = make_invoker(
        tmp_path, process, on_spawn=lambda: write_status(status_path, status="error", error="compile failed")
    )
    try:
        outcome = invoker.run("job_1", "idea-1")
    finally:
        process.finish()

    assert not outcome.ok
    assert outcome.error == "compile failed"
    assert outcome.source == "status"


def test_stale_terminal_status_is_ignored_until_exit(tmp_path: Path) -> None:
    status_path = tmp_path / "data" / "build_status.json"
    write_status(status_path, status="complete", outId="old-project", updatedAt="2026-01-01T00:00:00Z")
    process = FakeProcess(exit_code=1)
    invoker, _ = make_invoker(tmp_path, process)

    outcome = invoker.run("job_1", "idea-1")

    assert not outcome.ok
    assert outcome.error == "exit code 1"
    assert outcome.source == "exit"


def test_idle_after_active_settles_with_out_id(tmp_path: Path) -> None:
    status_path = tmp_path / "data" / "build_status.json"
    process = FakeProcess()
    invoker, _ = make_invoker(
        tmp_path, process, on_spawn=lambda: write_status(status_path, status="running", stage="scaffold", progress=40)
    )
    seen: list[BuildStatus] = []

    def on_progress(status: BuildStatus) -> None:
        seen.append(status)
        if status.status == "running":
            write_status(status_path, status="idle", stage="done", outId="proj-7")

    try:
        outcome = invoker.run("job_1", "idea-1", on_progress=on_progress)
    finally:
        process.finish()

    assert outcome.ok
    assert outcome.out_id == "proj-7"
    assert outcome.source == "idle"
    assert seen[0].stage == "scaffold"
    assert seen[0].progress == 40


def test_idle_with_aborted_stage_is_failure(tmp_path: Path) -> None:
    status_path = tmp_path / "data" / "build_status.json"
    process = FakeProcess()
    invoker, _ = make_invoker(
        tmp_path, process, on_spawn=lambda: write_status(status_path, status="idle", stage="aborted")
    )
    try:
        outcome = invoker.run("job_1", "idea-1")
    finally:
        process.finish()

    assert not outcome.ok
    assert outcome.error == "Build was aborted"


def test_idle_waits_for_grace_period(tmp_path: Path) -> None:
    status_path = tmp_path / "data" / "build_status.json"
    process = FakeProcess()
    invoker, _ = make_invoker(
        tmp_path,
        process,
        on_spawn=lambda: write_status(status_path, status="idle", stage="done", outId="p"),
        idle_grace_sec=60.0,
    )
    timer = threading.Timer(0.1, process.finish, args=(0,))
    timer.start()
    try:
        outcome = invoker.run("job_1", "idea-1")
    finally:
        timer.cancel()
        process.finish()

    # The grace period had not elapsed, so the process exit decided the build.
    assert outcome.ok
    assert outcome.source == "exit"
    assert outcome.out_id == "p"


def test_process_exit_zero_uses_status_out_id(tmp_path: Path) -> None:
    status_path = tmp_path / "data" / "build_status.json"
    write_status(status_path, status="idle", outId="proj-9")
    invoker, _ = make_invoker(tmp_path, FakeProcess(exit_code=0))

    outcome = invoker.run("job_1", "idea-1")

    assert outcome.ok
    assert outcome.out_id == "proj-9"
    assert outcome.source == "exit"


def test_process_exit_with_error_status(tmp_path: Path) -> None:
    status_path = tmp_path / "data" / "build_status.json"
    write_status(status_path, status="error", error="")
    invoker, _ = make_invoker(tmp_path, FakeProcess(exit_code=2))

    outcome = invoker.run("job_1", "idea-1")

    assert not outcome.ok
    assert outcome.error == "Build exited with code 2"
    assert outcome.source == "exit"


def test_timeout_terminates_process_group(tmp_path: Path) -> None:
    process = FakeProcess()
    invoker, _ = make_invoker(tmp_path, process, timeout_sec=0.05)

    outcome = invoker.run("job_1", "idea-1")

    assert not outcome.ok
    assert outcome.timed_out
    assert outcome.error == "timeout"
    assert outcome.source == "timeout"
    assert process.terminated


def test_malformed_status_document_is_treated_as_idle(tmp_path: Path) -> None:
    process = FakeProcess()
    status_path = tmp_path / "data" / "build_status.json"
    invoker, _ = make_invoker(
        tmp_path,
        process,
        on_spawn=lambda: write_status(status_path, status=["running"], stage="x"),
        timeout_sec=0.05,
        idle_grace_sec=10.0,
    )

    outcome = invoker.run("job_1", "idea-1")

    assert outcome.timed_out
    assert process.terminated


def test_monitoring_failure_terminates_build_and_propagates(tmp_path: Path) -> None:
    process = FakeProcess()
    invoker, _ = make_invoker(tmp_path, process)

    def broken_progress(status: BuildStatus) -> None:
        raise RuntimeError("subscriber exploded")

    with pytest.raises(RuntimeError, match="subscriber exploded"):
        invoker.run("job_1", "idea-1", on_progress=broken_progress)
    assert process.terminated


def test_spawn_failure_is_reported(tmp_path: Path) -> None:
    def broken_spawner(command: list[str], *, cwd: Path, env: dict[str, str]) -> FakeProcess:
        raise FileNotFoundError("run_build.sh")

    invoker = BuildInvoker(
        command=["run_build.sh"],
        cwd=tmp_path,
        status_path=tmp_path / "build_status.json",
        poll_interval_sec=0.01,
        spawner=broken_spawner,
    )
    outcome = invoker.run("job_1", "idea-1")
    assert not outcome.ok
    assert outcome.source == "spawn"
    assert "run_build.sh" in (outcome.error or "")


def test_empty_command_is_rejected(tmp_path: Path) -> None:
    with pytest.raises(ValueError):
        BuildInvoker(command=[], cwd=tmp_path, status_path=tmp_path / "s.json")


@pytest.mark.skipif(sys.platform == "win32", reason="process groups are POSIX only")
def test_spawn_detached_runs_in_own_process_group(tmp_path: Path) -> None:
    finished = spawn_detached([sys.executable, "-c", "raise SystemExit(3)"], cwd=tmp_path)
    assert finished.wait() == 3
    finished.terminate_group()  # already gone; must not raise

    sleeper = spawn_detached([sys.executable, "-c", "import time; time.sleep(30)"], cwd=tmp_path)
    sleeper.terminate_group()
    assert sleeper.wait() == -signal.SIGTERM
