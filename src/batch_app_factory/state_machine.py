from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from .canonical import canonical_digest
from .errors import BatchValidationError, IllegalTransitionError, NotFoundError
from .models import (
    ACTIVE_JOB_STATUSES,
    ITEM_STATUS_VALUES,
    JOB_STATUS_VALUES,
    TERMINAL_ITEM_STATUSES,
    BatchItem,
    BatchJob,
    BatchJobList,
    Clock,
    ItemStatus,
    JobStats,
    JobStatus,
    TransitionResult,
    clamp_concurrency,
    utc_now,
)

# ---------------------------------------------------------------------------
# Transition tables
# ---------------------------------------------------------------------------
#   pending -> running -> done
#                      -> paused -> running (resume)
#   pending | running | paused -> cancelled
JOB_TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"running", "cancelled"}),
    "running": frozenset({"done", "paused", "cancelled"}),
    "paused": frozenset({"running", "cancelled"}),
    "done": frozenset(),
    "cancelled": frozenset(),
}

#   queued -> running -> built
#                     -> failed -> queued (retry)
#   queued -> skipped
ITEM_TRANSITIONS: dict[str, frozenset[str]] = {
    "queued": frozenset({"running", "skipped"}),
    "running": frozenset({"built", "failed"}),
    "failed": frozenset({"queued"}),
    "built": frozenset(),
    "skipped": frozenset(),
}

# Item fields a transition may write alongside the new status.
_ITEM_TRANSITION_FIELDS = frozenset({"project_id", "error", "started_at", "finished_at"})


def _status_text(value: Any) -> str:
    if isinstance(value, (JobStatus, ItemStatus)):
        return value.value
    return str(value) if value is not None else ""


def _validate_transition(
    kind: str,
    current: Any,
    target: Any,
    *,
    known: frozenset[str],
    table: dict[str, frozenset[str]],
    fallback: str,
) -> TransitionResult:
    current_text = _status_text(current)
    cur = current_text if current_text in known else fallback
    tgt = _status_text(target).strip().lower()

    if tgt not in known:
        return TransitionResult(ok=False, status=cur, error=f'unknown {kind} status: "{_status_text(target)}"')
    if cur == tgt:
        return TransitionResult(ok=True, status=cur)
    if tgt not in table[cur]:
        return TransitionResult(ok=False, status=cur, error=f"illegal {kind} transition: {cur} -> {tgt}")
    return TransitionResult(ok=True, status=tgt)


def validate_job_transition(current: Any, target: Any) -> TransitionResult:
    """Check ``current -> target`` against the job table.

    Unknown current values are treated as ``pending``; the target is matched
    case-insensitively after trimming.  Staying in the same state is allowed.
    """
    return _validate_transition(
        "job", current, target, known=JOB_STATUS_VALUES, table=JOB_TRANSITIONS, fallback=JobStatus.PENDING.value
    )


def validate_item_transition(current: Any, target: Any) -> TransitionResult:
    """Item counterpart of :func:`validate_job_transition`; unknown current is ``queued``."""
    return _validate_transition(
        "item", current, target, known=ITEM_STATUS_VALUES, table=ITEM_TRANSITIONS, fallback=ItemStatus.QUEUED.value
    )


# ---------------------------------------------------------------------------
# Job construction
# ---------------------------------------------------------------------------

def build_job_id(campaign_id: str, created_at: datetime) -> str:
    """Return ``job_<YYYYMMDDTHHMM>_<hex6>``, deterministic for campaign and timestamp."""
    stamp = created_at.astimezone(UTC) if created_at.tzinfo else created_at
    digest = canonical_digest({"campaignId": campaign_id, "createdAt": created_at}, length=6)
    return f"job_{stamp.strftime('%Y%m%dT%H%M')}_{digest}"


def create_job(
    campaign_id: Any,
    idea_ids: Any,
    concurrency: Any = 1,
    *,
    clock: Clock | None = None,
) -> BatchJob:
    """Build a new ``pending`` job with every item ``queued`` in the given order.

    Raises:
        BatchValidationError: If ``campaign_id`` is empty or ``idea_ids`` is not
            a non-empty list.
    """
    campaign = str(campaign_id).strip() if campaign_id is not None else ""
    if not campaign:
        raise BatchValidationError("campaignId is required")
    if not isinstance(idea_ids, (list, tuple)) or not idea_ids:
        raise BatchValidationError("ideaIds must be a non-empty array")

    ids = [str(idea_id).strip() if idea_id is not None else "" for idea_id in idea_ids]
    if any(not idea_id for idea_id in ids):
        raise BatchValidationError("ideaIds must not contain empty values")

    created_at = (clock or utc_now)()
    return BatchJob(
        job_id=build_job_id(campaign, created_at),
        campaign_id=campaign,
        created_at=created_at,
        concurrency=clamp_concurrency(concurrency),
        status=JobStatus.PENDING,
        items=tuple(BatchItem(idea_id=idea_id) for idea_id in ids),
    )


# ---------------------------------------------------------------------------
# Job queries and updates
# ---------------------------------------------------------------------------

def next_queued_item(job: BatchJob | None) -> BatchItem | None:
    if job is None:
        return None
    for item in job.items:
        if item.status is ItemStatus.QUEUED:
            return item
    return None


def update_item_status(job: BatchJob, idea_id: str, target: Any, **fields: Any) -> BatchJob:
    """Return a copy of *job* with one item moved to *target*.

    ``fields`` may set ``project_id``, ``error``, ``started_at`` and
    ``finished_at`` on the same item. A same-state move returns *job*
    unchanged and ignores ``fields``.

    Raises:
        NotFoundError: If no item has ``idea_id``.
        IllegalTransitionError: If the item's state machine refuses the move.
    """
    unknown = set(fields) - _ITEM_TRANSITION_FIELDS
    if unknown:
        raise TypeError(f"unsupported item fields: {sorted(unknown)}")

    for index, item in enumerate(job.items):
        if item.idea_id == idea_id:
            break
    else:
        raise NotFoundError(f"item not found: {idea_id}")

    result = validate_item_transition(item.status, target)
    if not result.ok:
        raise IllegalTransitionError(result.error or "illegal item transition", current=result.status, target=_status_text(target))
    if item.status.value == result.status:
        return job

    updated = item.model_copy(update={"status": ItemStatus(result.status), **fields})
    items = job.items[:index] + (updated,) + job.items[index + 1 :]
    return job.model_copy(update={"items": items})


def update_job_status(job: BatchJob, target: Any) -> BatchJob:
    result = validate_job_transition(job.status, target)
    if not result.ok:
        raise IllegalTransitionError(result.error or "illegal job transition", current=result.status, target=_status_text(target))
    return job.model_copy(update={"status": JobStatus(result.status)})


def compute_stats(job: BatchJob | None) -> JobStats:
    if job is None:
        return JobStats()
    counts = {status.value: 0 for status in ItemStatus}
    for item in job.items:
        counts[item.status.value] += 1
    return JobStats(total=len(job.items), **counts)


def is_complete(job: BatchJob | None) -> bool:
    """True once the job has items and every one of them is built, failed or skipped."""
    if job is None or not job.items:
        return False
    return all(item.status in TERMINAL_ITEM_STATUSES for item in job.items)


# ---------------------------------------------------------------------------
# Container helpers
# ---------------------------------------------------------------------------

def normalize_job_list(raw: Any, *, clock: Clock = utc_now) -> BatchJobList:
    return BatchJobList.from_raw(raw, clock=clock)


def upsert_job(container: BatchJobList, job: BatchJob, *, clock: Clock = utc_now) -> BatchJobList:
    """Replace the job with the same ``jobId`` in place, or append it.

    Raises:
        IllegalTransitionError: If the replacement changes the item id sequence.
    """
    jobs = list(container.jobs)
    for index, existing in enumerate(jobs):
        if existing.job_id != job.job_id:
            continue
        if existing.idea_ids != job.idea_ids:
            raise IllegalTransitionError(
                f"items of job {job.job_id} are fixed; refusing to change them",
                current=existing.status.value,
                target=job.status.value,
            )
        jobs[index] = job
        break
    else:
        jobs.append(job)
    return BatchJobList(updated_at=clock(), jobs=tuple(jobs))


def find_job(container: BatchJobList | None, job_id: str) -> BatchJob | None:
    if container is None:
        return None
    for job in container.jobs:
        if job.job_id == job_id:
            return job
    return None


def find_active_jobs_by_campaign(container: BatchJobList | None, campaign_id: str) -> list[BatchJob]:
    if container is None:
        return []
    return [job for job in container.jobs if job.campaign_id == campaign_id and job.status in ACTIVE_JOB_STATUSES]
