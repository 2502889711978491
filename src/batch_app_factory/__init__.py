from importlib.metadata import version

from .atomic_fs import file_lock, read_safe, with_lock, write_atomic
from .canonical import canonical_digest, to_canonical_json
from .errors import (
    BatchError,
    BatchValidationError,
    BuildFailureError,
    BuildTimeoutError,
    ConflictError,
    IllegalTransitionError,
    LeaseHeldError,
    LockTimeoutError,
    NotFoundError,
)
from .events import EVENT_NAMES, BatchEvent, EventBroadcaster, EventJournal, Subscription
from .ideas import IdeaBacklog, IdeaTracker
from .invoker import BuildInvoker, BuildProcess, ResultSlot, SubprocessBuildProcess, spawn_detached
from .models import (
    BatchItem,
    BatchJob,
    BatchJobList,
    BuildOutcome,
    BuildStatus,
    CommandResult,
    ItemStatus,
    JobStats,
    JobStatus,
    RunLease,
    RunResult,
    TransitionResult,
)
from .runner import BatchRunner
from .service import BatchJobService
from .settings import RuntimeSettings
from .state_machine import (
    build_job_id,
    compute_stats,
    create_job,
    find_active_jobs_by_campaign,
    find_job,
    is_complete,
    next_queued_item,
    normalize_job_list,
    update_item_status,
    update_job_status,
    upsert_job,
    validate_item_transition,
    validate_job_transition,
)
from .state_store import BatchStateStore


def get_version() -> str:
    try:
        return version("batch-app-factory")
    except Exception:
        return "0.0.0"


__all__ = [
    "BatchError",
    "BatchEvent",
    "BatchItem",
    "BatchJob",
    "BatchJobList",
    "BatchJobService",
    "BatchRunner",
    "BatchStateStore",
    "BatchValidationError",
    "BuildFailureError",
    "BuildInvoker",
    "BuildOutcome",
    "BuildProcess",
    "BuildStatus",
    "BuildTimeoutError",
    "CommandResult",
    "ConflictError",
    "EVENT_NAMES",
    "EventBroadcaster",
    "EventJournal",
    "IdeaBacklog",
    "IdeaTracker",
    "IllegalTransitionError",
    "ItemStatus",
    "JobStats",
    "JobStatus",
    "LeaseHeldError",
    "LockTimeoutError",
    "NotFoundError",
    "ResultSlot",
    "RunLease",
    "RunResult",
    "RuntimeSettings",
    "Subscription",
    "SubprocessBuildProcess",
    "TransitionResult",
    "build_job_id",
    "canonical_digest",
    "compute_stats",
    "create_job",
    "file_lock",
    "find_active_jobs_by_campaign",
    "find_job",
    "get_version",
    "is_complete",
    "next_queued_item",
    "normalize_job_list",
    "read_safe",
    "spawn_detached",
    "to_canonical_json",
    "update_item_status",
    "update_job_status",
    "upsert_job",
    "validate_item_transition",
    "validate_job_transition",
    "with_lock",
    "write_atomic",
]
