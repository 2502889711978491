from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Callable, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from .errors import BuildFailureError, BuildTimeoutError

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(UTC)


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    PAUSED = "paused"
    CANCELLED = "cancelled"


class ItemStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    BUILT = "built"
    FAILED = "failed"
    SKIPPED = "skipped"


JOB_STATUS_VALUES: frozenset[str] = frozenset(status.value for status in JobStatus)
ITEM_STATUS_VALUES: frozenset[str] = frozenset(status.value for status in ItemStatus)
TERMINAL_ITEM_STATUSES: frozenset[ItemStatus] = frozenset({ItemStatus.BUILT, ItemStatus.FAILED, ItemStatus.SKIPPED})
ACTIVE_JOB_STATUSES: frozenset[JobStatus] = frozenset({JobStatus.PENDING, JobStatus.RUNNING, JobStatus.PAUSED})

MIN_CONCURRENCY = 1
MAX_CONCURRENCY = 4


def clamp_concurrency(value: Any) -> int:
    """Clamp to [1, 4]; anything non-numeric (or zero) counts as 1."""
    try:
        number = int(float(value))
    except (TypeError, ValueError, OverflowError):
        return MIN_CONCURRENCY
    if number == 0:
        return MIN_CONCURRENCY
    return max(MIN_CONCURRENCY, min(MAX_CONCURRENCY, number))


class _DocumentModel(BaseModel):
    """Frozen value object persisted with camelCase keys."""

    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class BatchItem(_DocumentModel):
    idea_id: str
    status: ItemStatus = ItemStatus.QUEUED
    project_id: str | None = None
    error: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @field_validator("idea_id", mode="before")
    @classmethod
    def _coerce_idea_id(cls, value: Any) -> str:
        text = str(value).strip() if value is not None else ""
        if not text:
            raise ValueError("ideaId must be non-empty")
        return text

    @field_validator("status", mode="before")
    @classmethod
    def _heal_status(cls, value: Any) -> Any:
        value = value.value if isinstance(value, Enum) else value
        return value if isinstance(value, str) and value in ITEM_STATUS_VALUES else ItemStatus.QUEUED.value


class BatchJob(_DocumentModel):
    job_id: str
    campaign_id: str
    created_at: datetime
    concurrency: int = MIN_CONCURRENCY
    status: JobStatus = JobStatus.PENDING
    items: tuple[BatchItem, ...] = ()

    @field_validator("status", mode="before")
    @classmethod
    def _heal_status(cls, value: Any) -> Any:
        value = value.value if isinstance(value, Enum) else value
        return value if isinstance(value, str) and value in JOB_STATUS_VALUES else JobStatus.PENDING.value

    @field_validator("concurrency", mode="before")
    @classmethod
    def _clamp_concurrency(cls, value: Any) -> int:
        return clamp_concurrency(value)

    def find_item(self, idea_id: str) -> BatchItem | None:
        for item in self.items:
            if item.idea_id == idea_id:
                return item
        return None

    @property
    def idea_ids(self) -> tuple[str, ...]:
        return tuple(item.idea_id for item in self.items)


class BatchJobList(_DocumentModel):
    """The single persisted container document: ``{updatedAt, jobs[]}``."""

    updated_at: datetime = Field(default_factory=utc_now)
    jobs: tuple[BatchJob, ...] = ()

    @classmethod
    def from_raw(cls, raw: Any, *, clock: Clock = utc_now) -> "BatchJobList":
        """Normalize an arbitrary decoded document into a container.

        Non-object input yields an empty container; job entries without a
        ``jobId`` or that fail validation are dropped.
        """
        if not isinstance(raw, dict):
            raw = {}
        entries = raw.get("jobs")
        if not isinstance(entries, list):
            entries = []

        jobs: list[BatchJob] = []
        seen: set[str] = set()
        for entry in entries:
            if not isinstance(entry, dict) or not entry.get("jobId"):
                continue
            try:
                job = BatchJob.model_validate(entry)
            except ValidationError as exc:
                logger.warning("Dropping invalid batch job entry %r: %s", entry.get("jobId"), exc)
                continue
            if job.job_id in seen:
                logger.warning("Dropping duplicate batch job entry %s", job.job_id)
                continue
            seen.add(job.job_id)
            jobs.append(job)

        updated_at = raw.get("updatedAt")
        try:
            stamp = datetime.fromisoformat(updated_at) if isinstance(updated_at, str) else clock()
        except ValueError:
            stamp = clock()
        return cls(updated_at=stamp, jobs=tuple(jobs))


class JobStats(_DocumentModel):
    total: int = 0
    queued: int = 0
    running: int = 0
    built: int = 0
    failed: int = 0
    skipped: int = 0


class RunLease(_DocumentModel):
    """Record that one runner holds exclusive execution rights for a job."""

    job_id: str
    holder_id: str
    acquired_at: datetime
    renewed_at: datetime

    def is_expired(self, now: datetime, ttl_sec: float) -> bool:
        return (now - self.renewed_at).total_seconds() > ttl_sec


class LeaseTable(_DocumentModel):
    updated_at: datetime = Field(default_factory=utc_now)
    leases: tuple[RunLease, ...] = ()

    @classmethod
    def from_raw(cls, raw: Any) -> "LeaseTable":
        if not isinstance(raw, dict):
            return cls()
        leases: list[RunLease] = []
        for entry in raw.get("leases") or []:
            try:
                leases.append(RunLease.model_validate(entry))
            except ValidationError as exc:
                logger.warning("Dropping invalid lease entry: %s", exc)
        return cls(leases=tuple(leases))

    def find(self, job_id: str) -> RunLease | None:
        for lease in self.leases:
            if lease.job_id == job_id:
                return lease
        return None

    def without(self, job_id: str) -> tuple[RunLease, ...]:
        return tuple(lease for lease in self.leases if lease.job_id != job_id)


BuildState = Literal["idle", "running", "error", "complete"]
_BUILD_STATES = frozenset({"idle", "running", "error", "complete"})


class BuildStatus(_DocumentModel):
    """Snapshot of the build status document written by the build subprocess."""

    status: BuildState = "idle"
    stage: str = ""
    progress: float = 0.0
    title: str = ""
    out_id: str = ""
    run_id: str = ""
    attempt: int = 0
    error: str | None = None
    updated_at: str | None = None

    @classmethod
    def from_raw(cls, raw: Any) -> "BuildStatus":
        if not isinstance(raw, dict):
            return cls()
        try:
            progress = float(raw.get("progress") or 0)
        except (TypeError, ValueError, OverflowError):
            progress = 0.0
        try:
            attempt = int(raw.get("attempt") or 0)
        except (TypeError, ValueError, OverflowError):
            attempt = 0
        error = raw.get("error")
        updated_at = raw.get("updatedAt")
        status = raw.get("status")
        return cls(
            status=status if isinstance(status, str) and status in _BUILD_STATES else "idle",
            stage=str(raw.get("stage") or ""),
            progress=max(0.0, min(100.0, progress)),
            title=str(raw.get("title") or ""),
            out_id=str(raw.get("outId") or ""),
            run_id=str(raw.get("runId") or ""),
            attempt=attempt,
            error=str(error) if error else None,
            updated_at=str(updated_at) if updated_at else None,
        )

    @property
    def is_idle(self) -> bool:
        return self.status == "idle"


@dataclass(frozen=True)
class TransitionResult:
    """Outcome of validating one status transition. Never mutates anything."""

    ok: bool
    status: str
    error: str | None = None


@dataclass(frozen=True)
class BuildOutcome:
    ok: bool
    out_id: str | None = None
    error: str | None = None
    timed_out: bool = False
    # Which detection path settled the build: status, idle, exit, timeout or spawn.
    source: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "outId": self.out_id,
            "error": self.error,
            "timedOut": self.timed_out,
            "source": self.source,
        }

    def to_error(self) -> BuildFailureError | None:
        if self.ok:
            return None
        message = self.error or "build failed"
        if self.timed_out:
            return BuildTimeoutError(message)
        return BuildFailureError(message)


@dataclass(frozen=True)
class RunResult:
    ok: bool
    job_id: str
    status: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class CommandResult:
    """Structured command outcome; ``to_dict`` gives the ``{ok, ...}`` wire shape."""

    ok: bool
    error: str | None = None
    error_type: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def success(cls, **payload: Any) -> "CommandResult":
        return cls(ok=True, payload=payload)

    @classmethod
    def failure(cls, message: str, *, error_type: str, **payload: Any) -> "CommandResult":
        return cls(ok=False, error=message, error_type=error_type, payload=payload)

    def to_dict(self) -> dict[str, Any]:
        if self.ok:
            return {"ok": True, **self.payload}
        return {"ok": False, "error": self.error, "errorType": self.error_type, **self.payload}
