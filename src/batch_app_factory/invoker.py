from __future__ import annotations

import logging
import os
import signal
import subprocess
import threading
import time
from pathlib import Path
from typing import Callable, Generic, Mapping, Protocol, Sequence, TypeVar

from .atomic_fs import read_safe
from .models import BuildOutcome, BuildStatus
from .settings import RuntimeSettings

logger = logging.getLogger(__name__)

T = TypeVar("T")

ProgressCallback = Callable[[BuildStatus], None]


class ResultSlot(Generic[T]):
    """Single-assignment result shared by competing producers.

    The first ``settle`` wins; later calls return False and change nothing.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._event = threading.Event()
        self._value: T | None = None

    def settle(self, value: T) -> bool:
        with self._lock:
            if self._event.is_set():
                return False
            self._value = value
            self._event.set()
            return True

    @property
    def settled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float | None = None) -> bool:
        return self._event.wait(timeout)

    @property
    def value(self) -> T | None:
        return self._value


# ---------------------------------------------------------------------------
# Detached build processes
# ---------------------------------------------------------------------------

class BuildProcess(Protocol):
    pid: int

    def wait(self) -> int: ...

    def terminate_group(self) -> None: ...


class SubprocessBuildProcess:
    """A build running in its own session, so its whole process group can be signalled."""

    def __init__(self, popen: subprocess.Popen) -> None:
        self._popen = popen
        self.pid = popen.pid

    def wait(self) -> int:
        return self._popen.wait()

    def terminate_group(self) -> None:
        try:
            os.killpg(self.pid, signal.SIGTERM)
        except (ProcessLookupError, PermissionError) as exc:
            logger.debug("Process group %s already gone: %s", self.pid, exc)


Spawner = Callable[..., BuildProcess]


def spawn_detached(command: Sequence[str], *, cwd: Path, env: Mapping[str, str] | None = None) -> SubprocessBuildProcess:
    """Start *command* as a session leader with stdio detached."""
    popen = subprocess.Popen(
        list(command),
        cwd=str(cwd),
        env=dict(env) if env is not None else None,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        start_new_session=True,
    )
    return SubprocessBuildProcess(popen)


# ---------------------------------------------------------------------------
# Invoker
# ---------------------------------------------------------------------------

class BuildInvoker:
    """Run one build and decide how it ended.

    Three signals can settle a build, and whichever arrives first wins:

    * the status document reports ``complete`` or ``error`` (only counted once
      it no longer matches what was there before launch);
    * the status document is back to ``idle`` after the build was seen active
      (or with a fresh non-empty stage) and the idle grace period has passed;
    * the process exits; after a short settle delay the status document is
      read once more and combined with the exit code.

    When ``timeout_sec`` passes first, the process group is sent SIGTERM and
    the outcome is a timeout failure.
    """

    def __init__(
        self,
        *,
        command: Sequence[str],
        cwd: Path,
        status_path: Path,
        poll_interval_sec: float = 3.0,
        timeout_sec: float = 600.0,
        idle_grace_sec: float = 5.0,
        exit_settle_sec: float = 1.0,
        spawner: Spawner = spawn_detached,
        extra_env: Mapping[str, str] | None = None,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        if not command:
            raise ValueError("command must be non-empty")
        self.command = list(command)
        self.cwd = cwd
        self.status_path = status_path
        self.poll_interval_sec = poll_interval_sec
        self.timeout_sec = timeout_sec
        self.idle_grace_sec = idle_grace_sec
        self.exit_settle_sec = exit_settle_sec
        self._spawner = spawner
        self._extra_env = dict(extra_env or {})
        self._monotonic = monotonic

    @classmethod
    def from_settings(cls, settings: RuntimeSettings, *, spawner: Spawner = spawn_detached) -> "BuildInvoker":
        return cls(
            command=settings.build_argv,
            cwd=settings.lab_root_path,
            status_path=settings.build_status_path,
            poll_interval_sec=settings.poll_interval_sec,
            timeout_sec=settings.build_timeout_sec,
            idle_grace_sec=settings.idle_grace_sec,
            exit_settle_sec=settings.exit_settle_sec,
            spawner=spawner,
        )

    def read_status(self) -> BuildStatus:
        return BuildStatus.from_raw(read_safe(self.status_path, fallback=None))

    def run(self, job_id: str, idea_id: str, on_progress: ProgressCallback | None = None) -> BuildOutcome:
        baseline = self.read_status()
        env = {**os.environ, **self._extra_env, "BATCH_JOB_ID": job_id, "BATCH_IDEA_ID": idea_id}
        try:
            process = self._spawner(self.command, cwd=self.cwd, env=env)
        except OSError as exc:
            logger.error("Failed to spawn build for %s/%s: %s", job_id, idea_id, exc)
            return BuildOutcome(ok=False, error=f"spawn failed: {exc}", source="spawn")

        logger.info("Build for %s/%s started (pid %s)", job_id, idea_id, process.pid)
        slot: ResultSlot[BuildOutcome] = ResultSlot()
        watcher = threading.Thread(
            target=self._watch_exit,
            args=(process, slot),
            name=f"build-exit-{process.pid}",
            daemon=True,
        )
        watcher.start()

        try:
            self._poll(process, slot, baseline, job_id=job_id, idea_id=idea_id, on_progress=on_progress)
        except Exception:
            logger.exception("Monitoring build for %s/%s failed; terminating", job_id, idea_id)
            slot.settle(BuildOutcome(ok=False, error="build monitoring failed", source="exception"))
            process.terminate_group()
            raise

        result = slot.value
        if result is None:
            raise RuntimeError(f"build for {job_id}/{idea_id} stopped without an outcome")
        logger.info(
            "Build for %s/%s finished: ok=%s source=%s error=%s", job_id, idea_id, result.ok, result.source, result.error
        )
        return result

    def _poll(
        self,
        process: BuildProcess,
        slot: ResultSlot[BuildOutcome],
        baseline: BuildStatus,
        *,
        job_id: str,
        idea_id: str,
        on_progress: ProgressCallback | None,
    ) -> None:
        started = self._monotonic()
        seen_active = False
        while not slot.settled:
            status = self.read_status()
            if on_progress is not None:
                on_progress(status)
            if status.status == "running":
                seen_active = True

            elapsed = self._monotonic() - started
            outcome = self._evaluate(status, baseline, seen_active=seen_active, elapsed=elapsed)
            if outcome is not None:
                slot.settle(outcome)
                break
            if elapsed >= self.timeout_sec:
                if slot.settle(BuildOutcome(ok=False, error="timeout", timed_out=True, source="timeout")):
                    logger.warning("Build for %s/%s timed out after %.0fs; terminating", job_id, idea_id, elapsed)
                    process.terminate_group()
                break
            slot.wait(self.poll_interval_sec)

    def _evaluate(
        self,
        status: BuildStatus,
        baseline: BuildStatus,
        *,
        seen_active: bool,
        elapsed: float,
    ) -> BuildOutcome | None:
        fresh = seen_active or status != baseline
        if status.status == "complete" and fresh:
            return BuildOutcome(ok=True, out_id=status.out_id or None, source="status")
        if status.status == "error" and fresh:
            return BuildOutcome(ok=False, error=status.error or "Build error", source="status")
        if status.is_idle and elapsed >= self.idle_grace_sec and (seen_active or (status.stage and fresh)):
            if status.stage == "aborted":
                return BuildOutcome(ok=False, error="Build was aborted", source="idle")
            return BuildOutcome(ok=True, out_id=status.out_id or None, source="idle")
        return None

    def _watch_exit(self, process: BuildProcess, slot: ResultSlot[BuildOutcome]) -> None:
        code = process.wait()
        if slot.settled:
            return
        # Give the build a moment to write its final status.
        if self.exit_settle_sec > 0:
            slot.wait(self.exit_settle_sec)
        if slot.settled:
            return
        status = self.read_status()
        if status.status == "error":
            outcome = BuildOutcome(ok=False, error=status.error or f"Build exited with code {code}", source="exit")
        else:
            outcome = BuildOutcome(
                ok=code == 0,
                out_id=status.out_id or None,
                error=None if code == 0 else f"exit code {code}",
                source="exit",
            )
        slot.settle(outcome)
