from __future__ import annotations

import functools
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable

from .errors import BatchError, ConflictError, IllegalTransitionError, NotFoundError
from .events import EventBroadcaster, EventJournal
from .ideas import IdeaTracker
from .invoker import BuildInvoker
from .models import BatchJob, BatchJobList, Clock, CommandResult, ItemStatus, JobStatus, RunResult, utc_now
from .runner import BatchRunner
from .settings import RuntimeSettings
from .state_machine import (
    compute_stats,
    create_job,
    find_active_jobs_by_campaign,
    find_job,
    update_item_status,
    update_job_status,
    upsert_job,
    validate_job_transition,
)
from .state_store import BatchStateStore

logger = logging.getLogger(__name__)


def _as_command_result(method: Callable[..., CommandResult]) -> Callable[..., CommandResult]:
    """Turn domain errors raised by a command into a structured failure."""

    @functools.wraps(method)
    def wrapper(self: "BatchJobService", *args: Any, **kwargs: Any) -> CommandResult:
        try:
            return method(self, *args, **kwargs)
        except BatchError as exc:
            logger.info("%s refused: %s", method.__name__, exc)
            extra: dict[str, Any] = {}
            if isinstance(exc, ConflictError) and exc.active_job_id:
                extra["activeJobId"] = exc.active_job_id
            return CommandResult.failure(str(exc), error_type=exc.code, **extra)

    return wrapper


def _job_view(job: BatchJob) -> dict[str, Any]:
    return {"job": job.to_document(), "stats": compute_stats(job).to_document()}


class BatchJobService:
    """Operator commands over the batch container.

    Every command is one locked read-modify-write.  Runs execute on a
    single-worker executor, and only one job runs at a time per service.
    """

    def __init__(
        self,
        *,
        store: BatchStateStore,
        runner: BatchRunner,
        broadcaster: EventBroadcaster,
        clock: Clock = utc_now,
    ) -> None:
        self.store = store
        self.runner = runner
        self.broadcaster = broadcaster
        self.clock = clock
        self._guard = threading.Lock()
        self._active_job: str | None = None
        self._active_future: Future[RunResult] | None = None
        # Set when resume lands while this job's runner is still winding down.
        self._resume_pending: str | None = None
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="batch-runner")

    @classmethod
    def from_settings(
        cls,
        settings: RuntimeSettings,
        *,
        broadcaster: EventBroadcaster | None = None,
        invoker: BuildInvoker | None = None,
        ideas: IdeaTracker | None = None,
        clock: Clock = utc_now,
    ) -> "BatchJobService":
        broadcaster = broadcaster or EventBroadcaster(clock=clock)
        if settings.event_log_path is not None:
            EventJournal(settings.event_log_path).attach(broadcaster)
        store = BatchStateStore.from_settings(settings, clock=clock)
        runner = BatchRunner.from_settings(
            settings, broadcaster=broadcaster, store=store, invoker=invoker, ideas=ideas, clock=clock
        )
        return cls(store=store, runner=runner, broadcaster=broadcaster, clock=clock)

    # ------------------------------------------------------------------
    # Job lifecycle
    # ------------------------------------------------------------------

    @_as_command_result
    def create(self, campaign_id: Any, idea_ids: Any, concurrency: Any = 1) -> CommandResult:
        job = create_job(campaign_id, idea_ids, concurrency, clock=self.clock)

        def _insert(container: BatchJobList) -> tuple[BatchJobList, BatchJob]:
            active = find_active_jobs_by_campaign(container, job.campaign_id)
            if active:
                raise ConflictError(
                    "An active batch job already exists for this campaign",
                    active_job_id=active[0].job_id,
                )
            if find_job(container, job.job_id) is not None:
                raise ConflictError(f"job already exists: {job.job_id}", active_job_id=job.job_id)
            return upsert_job(container, job, clock=self.clock), job

        created = self.store.transact(_insert)
        logger.info("Created batch job %s for campaign %s (%d items)", created.job_id, created.campaign_id, len(created.items))
        return CommandResult.success(jobId=created.job_id, stats=compute_stats(created).to_document())

    @_as_command_result
    def start(self, job_id: str, background: bool = True) -> CommandResult:
        with self._guard:
            self._ensure_idle()
            job = self._require_job(job_id)
            transition = validate_job_transition(job.status, JobStatus.RUNNING)
            if not transition.ok:
                raise IllegalTransitionError(
                    transition.error or "illegal job transition", current=transition.status, target="running"
                )
            future = self._launch(job_id, background=background)
        if future is None:
            return self._run_inline(job_id)
        return CommandResult.success(jobId=job_id, message=f"Batch job {job_id} started")

    @_as_command_result
    def pause(self, job_id: str) -> CommandResult:
        job = self.store.update_job(job_id, lambda job: update_job_status(job, JobStatus.PAUSED))
        logger.info("Paused batch job %s", job_id)
        return CommandResult.success(jobId=job_id, status=job.status.value)

    @_as_command_result
    def resume(self, job_id: str, background: bool = True) -> CommandResult:
        with self._guard:
            active = self._running_job_id()
            if active is not None and active != job_id:
                raise ConflictError(f"Another job is running: {active}", active_job_id=active)
            job = self.store.update_job(job_id, lambda job: update_job_status(job, JobStatus.RUNNING))
            logger.info("Resumed batch job %s", job_id)
            if active == job_id:
                # The live runner either sees "running" at its next refresh or
                # runs the job again once it stops.
                self._resume_pending = job_id
                future = None
            else:
                future = self._launch(job_id, background=background)
            inline = active is None and not background
        if inline:
            return self._run_inline(job_id)
        return CommandResult.success(jobId=job_id, status=job.status.value, relaunched=future is not None)

    @_as_command_result
    def cancel(self, job_id: str) -> CommandResult:
        job = self.store.update_job(job_id, lambda job: update_job_status(job, JobStatus.CANCELLED))
        logger.info("Cancelled batch job %s", job_id)
        return CommandResult.success(jobId=job_id, status=job.status.value)

    # ------------------------------------------------------------------
    # Item commands
    # ------------------------------------------------------------------

    @_as_command_result
    def retry_item(self, job_id: str, idea_id: str) -> CommandResult:
        job = self.store.update_job(
            job_id,
            lambda job: update_item_status(
                job, idea_id, ItemStatus.QUEUED, error=None, project_id=None, started_at=None, finished_at=None
            ),
        )
        return CommandResult.success(jobId=job_id, ideaId=idea_id, stats=compute_stats(job).to_document())

    @_as_command_result
    def skip_item(self, job_id: str, idea_id: str) -> CommandResult:
        now = self.clock()
        job = self.store.update_job(
            job_id, lambda job: update_item_status(job, idea_id, ItemStatus.SKIPPED, finished_at=now)
        )
        return CommandResult.success(jobId=job_id, ideaId=idea_id, stats=compute_stats(job).to_document())

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @_as_command_result
    def status(self, job_id: str) -> CommandResult:
        return CommandResult.success(**_job_view(self._require_job(job_id)))

    @_as_command_result
    def list_jobs(self, campaign_id: str | None = None) -> CommandResult:
        jobs = [
            _job_view(job)
            for job in self.store.read().jobs
            if campaign_id is None or job.campaign_id == campaign_id
        ]
        return CommandResult.success(jobs=jobs)

    # ------------------------------------------------------------------
    # Background execution
    # ------------------------------------------------------------------

    @property
    def active_job_id(self) -> str | None:
        with self._guard:
            return self._running_job_id()

    def wait(self, timeout: float | None = None) -> RunResult | None:
        """Block until the background run (if any) finishes and return its result."""
        with self._guard:
            future = self._active_future
        if future is None:
            return None
        return future.result(timeout=timeout)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    def _require_job(self, job_id: str) -> BatchJob:
        job = self.store.get_job(job_id)
        if job is None:
            raise NotFoundError(f"Job not found: {job_id}")
        return job

    def _running_job_id(self) -> str | None:
        if self._active_job is None:
            return None
        if self._active_future is not None and self._active_future.done():
            return None
        return self._active_job

    def _ensure_idle(self) -> None:
        active = self._running_job_id()
        if active is not None:
            raise ConflictError(f"Another job is running: {active}", active_job_id=active)

    def _launch(self, job_id: str, *, background: bool) -> Future[RunResult] | None:
        # Caller holds self._guard.
        self._active_job = job_id
        if not background:
            self._active_future = None
            return None
        self._active_future = self._executor.submit(self._run_and_clear, job_id)
        return self._active_future

    def _run_and_clear(self, job_id: str) -> RunResult:
        released = False
        try:
            while True:
                result = self.runner.run(job_id)
                with self._guard:
                    rerun = self._resume_pending == job_id and self._job_is_running(job_id)
                    self._resume_pending = None
                    if not rerun:
                        self._release_active(job_id)
                        released = True
                if released:
                    return result
                logger.info("Batch job %s was resumed while its runner was stopping; running it again", job_id)
        finally:
            if not released:
                with self._guard:
                    self._release_active(job_id)

    def _job_is_running(self, job_id: str) -> bool:
        job = self.store.get_job(job_id)
        return job is not None and job.status is JobStatus.RUNNING

    def _release_active(self, job_id: str) -> None:
        # Caller holds self._guard.
        if self._active_job == job_id:
            self._active_job = None

    def _run_inline(self, job_id: str) -> CommandResult:
        result = self._run_and_clear(job_id)
        payload = {"jobId": job_id, "status": result.status}
        if result.ok:
            return CommandResult.success(**payload)
        return CommandResult.failure(result.error or "batch run failed", error_type="run_failed", **payload)
