from __future__ import annotations

import os
import shlex
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv


@dataclass(frozen=True)
class RuntimeSettings:
    """Runtime settings loaded from environment with fail-fast validation."""

    runtime_root: str = "runtime"
    lab_root: str = ""
    build_command: str = "core/scripts/run_idle_job.sh --force"
    poll_interval_sec: float = 3.0
    build_timeout_sec: float = 600.0
    idle_grace_sec: float = 5.0
    exit_settle_sec: float = 1.0
    lock_stale_sec: float = 30.0
    lock_max_wait_sec: float = 10.0
    lease_ttl_sec: float = 900.0
    recursion_limit: int = 10_000
    event_log_dir: str = ""

    @classmethod
    def from_env(cls, *, env_file: Path | None = None) -> "RuntimeSettings":
        if env_file is not None and env_file.is_file():
            load_dotenv(env_file, override=False)
        return cls(
            runtime_root=os.getenv("BATCH_RUNTIME_ROOT", "runtime"),
            lab_root=os.getenv("BATCH_LAB_ROOT", ""),
            build_command=os.getenv("BATCH_BUILD_COMMAND", "core/scripts/run_idle_job.sh --force"),
            poll_interval_sec=_get_env_float("BATCH_POLL_INTERVAL_SEC", default=3.0, minimum=0.01),
            build_timeout_sec=_get_env_float("BATCH_BUILD_TIMEOUT_SEC", default=600.0, minimum=1.0),
            idle_grace_sec=_get_env_float("BATCH_IDLE_GRACE_SEC", default=5.0, minimum=0.0),
            exit_settle_sec=_get_env_float("BATCH_EXIT_SETTLE_SEC", default=1.0, minimum=0.0),
            lock_stale_sec=_get_env_float("BATCH_LOCK_STALE_SEC", default=30.0, minimum=1.0),
            lock_max_wait_sec=_get_env_float("BATCH_LOCK_MAX_WAIT_SEC", default=10.0, minimum=0.1),
            lease_ttl_sec=_get_env_float("BATCH_LEASE_TTL_SEC", default=900.0, minimum=1.0),
            recursion_limit=_get_env_int("BATCH_RECURSION_LIMIT", default=10_000, minimum=25),
            event_log_dir=os.getenv("BATCH_EVENT_LOG_DIR", ""),
        ).normalized()

    def normalized(self) -> "RuntimeSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""
        if not self.runtime_root.strip():
            raise ValueError("BATCH_RUNTIME_ROOT must be non-empty")
        build_command = self.build_command.strip()
        if not build_command:
            raise ValueError("BATCH_BUILD_COMMAND must be non-empty")
        try:
            shlex.split(build_command)
        except ValueError as exc:
            raise ValueError(f"BATCH_BUILD_COMMAND is not a valid command line: {exc}") from exc

        # A build must get at least one poll before the ceiling fires.
        if self.build_timeout_sec <= self.poll_interval_sec:
            raise ValueError(
                "BATCH_BUILD_TIMEOUT_SEC must be greater than BATCH_POLL_INTERVAL_SEC, "
                f"got: {self.build_timeout_sec} <= {self.poll_interval_sec}"
            )
        if self.recursion_limit > 1_000_000:
            raise ValueError(f"BATCH_RECURSION_LIMIT must be <= 1000000, got: {self.recursion_limit}")

        # A lease that expires mid-build would let a second runner claim the job.
        lease_ttl_sec = max(self.lease_ttl_sec, self.build_timeout_sec + self.exit_settle_sec + self.poll_interval_sec)
        return RuntimeSettings(
            runtime_root=self.runtime_root.strip(),
            lab_root=self.lab_root.strip(),
            build_command=build_command,
            poll_interval_sec=self.poll_interval_sec,
            build_timeout_sec=self.build_timeout_sec,
            idle_grace_sec=self.idle_grace_sec,
            exit_settle_sec=self.exit_settle_sec,
            lock_stale_sec=self.lock_stale_sec,
            lock_max_wait_sec=self.lock_max_wait_sec,
            lease_ttl_sec=lease_ttl_sec,
            recursion_limit=self.recursion_limit,
            event_log_dir=self.event_log_dir.strip(),
        )

    @property
    def runtime_root_path(self) -> Path:
        return Path(self.runtime_root)

    @property
    def lab_root_path(self) -> Path:
        """Working directory for the build subprocess, defaulting to cwd if unset."""
        return Path(self.lab_root) if self.lab_root else Path.cwd()

    @property
    def build_argv(self) -> list[str]:
        return shlex.split(self.build_command)

    @property
    def data_dir(self) -> Path:
        return self.runtime_root_path / "data"

    @property
    def batch_jobs_path(self) -> Path:
        return self.data_dir / "batch_jobs.json"

    @property
    def leases_path(self) -> Path:
        return self.data_dir / "batch_leases.json"

    @property
    def idea_backlog_path(self) -> Path:
        return self.data_dir / "idea_backlog.json"

    @property
    def build_status_path(self) -> Path:
        return self.data_dir / "build_status.json"

    @property
    def event_log_path(self) -> Path | None:
        """Directory for the JSONL event journal, or None when journaling is disabled."""
        return Path(self.event_log_dir) if self.event_log_dir else None


def _get_env_int(name: str, default: int, minimum: int, maximum: int = 10_000_000) -> int:
    """Parse an integer from an environment variable with bounds checking.

    Args:
        name: Environment variable name.
        default: Value to return if the variable is unset.
        minimum: Inclusive lower bound.
        maximum: Inclusive upper bound.

    Returns:
        The parsed integer, guaranteed to be within [minimum, maximum].

    Raises:
        ValueError: If the value is not an integer or is outside bounds.
    """
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed


def _get_env_float(name: str, default: float, minimum: float, maximum: float = 86_400.0) -> float:
    """Parse a float number of seconds from an environment variable with bounds checking."""
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got: {raw!r}") from exc
    if parsed != parsed or parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed
