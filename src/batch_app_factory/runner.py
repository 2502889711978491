from __future__ import annotations

import logging
import os
import socket
import uuid
from typing import Any, TypedDict

from langgraph.errors import GraphRecursionError
from langgraph.graph import END, START, StateGraph

from .errors import BatchError
from .events import (
    ITEM_BUILT,
    ITEM_FAILED,
    ITEM_PROGRESS,
    ITEM_RUNNING,
    JOB_CANCELLED,
    JOB_DONE,
    JOB_ERROR,
    JOB_PAUSED,
    JOB_STARTED,
    EventBroadcaster,
)
from .ideas import IdeaBacklog, IdeaTracker
from .invoker import BuildInvoker
from .models import BatchJob, BatchJobList, BuildOutcome, BuildStatus, Clock, ItemStatus, JobStatus, RunResult, utc_now
from .settings import RuntimeSettings
from .state_machine import (
    compute_stats,
    find_job,
    is_complete,
    next_queued_item,
    update_item_status,
    update_job_status,
    upsert_job,
)
from .state_store import BatchStateStore

logger = logging.getLogger(__name__)

INTERRUPTED_ERROR = "interrupted: runner exited during build"

# refresh, claim, prepare, build and record for one item.
STEPS_PER_ITEM = 5


class RunnerGraphState(TypedDict, total=False):
    job_id: str
    current_idea_id: str | None
    halt_reason: str | None
    error: str | None
    build_outcome: dict[str, Any] | None
    prepare_error: str | None
    iterations: int


def default_holder_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


class BatchRunner:
    """Sequential batch execution loop implemented as a LangGraph dispatch cycle.

    ``refresh -> claim -> prepare -> build -> record -> refresh`` until the job
    is done, paused, cancelled or gone.  Every step re-reads the container, so
    pause and cancel commands take effect at the next iteration boundary.  The
    job's run lease is held for the whole run and renewed on each refresh.
    """

    def __init__(
        self,
        *,
        store: BatchStateStore,
        invoker: BuildInvoker,
        ideas: IdeaTracker,
        broadcaster: EventBroadcaster,
        recursion_limit: int = 10_000,
        holder_id: str | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self.store = store
        self.invoker = invoker
        self.ideas = ideas
        self.broadcaster = broadcaster
        self.recursion_limit = recursion_limit
        self.holder_id = holder_id or default_holder_id()
        self.clock = clock
        self.graph = self._build_graph().compile()

    @classmethod
    def from_settings(
        cls,
        settings: RuntimeSettings,
        *,
        broadcaster: EventBroadcaster,
        store: BatchStateStore | None = None,
        invoker: BuildInvoker | None = None,
        ideas: IdeaTracker | None = None,
        clock: Clock = utc_now,
    ) -> "BatchRunner":
        return cls(
            store=store or BatchStateStore.from_settings(settings, clock=clock),
            invoker=invoker or BuildInvoker.from_settings(settings),
            ideas=ideas or IdeaBacklog.from_settings(settings, clock=clock),
            broadcaster=broadcaster,
            recursion_limit=settings.recursion_limit,
            clock=clock,
        )

    def _build_graph(self) -> StateGraph:
        graph = StateGraph(RunnerGraphState)
        graph.add_node("refresh", self._refresh_node)
        graph.add_node("claim", self._claim_node)
        graph.add_node("prepare", self._prepare_node)
        graph.add_node("build", self._build_node)
        graph.add_node("record", self._record_node)

        graph.add_edge(START, "refresh")
        graph.add_conditional_edges(
            "refresh",
            self._refresh_route,
            {
                "claim": "claim",
                "end": END,
            },
        )
        graph.add_conditional_edges(
            "claim",
            self._claim_route,
            {
                "prepare": "prepare",
                "refresh": "refresh",
                "end": END,
            },
        )
        graph.add_conditional_edges(
            "prepare",
            self._prepare_route,
            {
                "build": "build",
                "refresh": "refresh",
            },
        )
        graph.add_edge("build", "record")
        graph.add_edge("record", "refresh")
        return graph

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def run(self, job_id: str) -> RunResult:
        """Drive ``job_id`` until it stops; domain errors come back as a failed result."""
        emit = self.broadcaster.emitter_for(job_id)
        try:
            self.store.acquire_lease(job_id, self.holder_id)
        except BatchError as exc:
            logger.warning("Not running job %s: %s", job_id, exc)
            return RunResult(ok=False, job_id=job_id, error=str(exc))

        try:
            job = self._start(job_id)
            logger.info("Batch job %s started with %d item(s)", job_id, len(job.items))
            emit(JOB_STARTED, stats=compute_stats(job).to_document())
            limit = self.recursion_limit_for(job)
            final = self.graph.invoke(
                {"job_id": job_id, "current_idea_id": None, "halt_reason": None, "iterations": 0},
                config={"recursion_limit": limit},
            )
        except GraphRecursionError:
            error = f"runner stopped after reaching recursion limit {limit}"
            logger.error("Batch job %s: %s", job_id, error)
            emit(JOB_ERROR, error=error)
            return RunResult(ok=False, job_id=job_id, status=self._current_status(job_id), error=error)
        except (BatchError, OSError) as exc:
            logger.error("Batch job %s failed: %s", job_id, exc)
            emit(JOB_ERROR, error=str(exc))
            return RunResult(ok=False, job_id=job_id, status=self._current_status(job_id), error=str(exc))
        finally:
            try:
                self.store.release_lease(job_id, self.holder_id)
            except BatchError as exc:
                logger.warning("Could not release lease on %s: %s", job_id, exc)

        halt_reason = final.get("halt_reason")
        logger.info("Batch job %s stopped: %s", job_id, halt_reason)
        return RunResult(
            ok=halt_reason != "error",
            job_id=job_id,
            status=self._current_status(job_id),
            error=final.get("error"),
        )

    def recursion_limit_for(self, job: BatchJob) -> int:
        """Graph step budget for one run: never below what every item of *job* needs."""
        return max(self.recursion_limit, len(job.items) * STEPS_PER_ITEM + 10)

    def _current_status(self, job_id: str) -> str | None:
        job = self.store.get_job(job_id)
        return job.status.value if job is not None else None

    def _start(self, job_id: str) -> BatchJob:
        now = self.clock()

        def _enter_running(job: BatchJob) -> BatchJob:
            job = update_job_status(job, JobStatus.RUNNING)
            # We hold the lease, so nothing else can be building these.
            for item in job.items:
                if item.status is ItemStatus.RUNNING:
                    logger.warning("Recovering orphaned item %s in job %s", item.idea_id, job_id)
                    job = update_item_status(job, item.idea_id, ItemStatus.FAILED, error=INTERRUPTED_ERROR, finished_at=now)
            return job

        return self.store.update_job(job_id, _enter_running)

    # ------------------------------------------------------------------
    # Nodes
    # ------------------------------------------------------------------

    def _refresh_node(self, state: RunnerGraphState) -> dict[str, Any]:
        job_id = state["job_id"]
        emit = self.broadcaster.emitter_for(job_id)
        self.store.renew_lease(job_id, self.holder_id)

        job = self.store.get_job(job_id)
        if job is None:
            error = f"job not found: {job_id}"
            emit(JOB_ERROR, error=error)
            return {"halt_reason": "error", "error": error}
        if job.status is JobStatus.PAUSED:
            emit(JOB_PAUSED, stats=compute_stats(job).to_document())
            return {"halt_reason": "paused"}
        if job.status is JobStatus.CANCELLED:
            emit(JOB_CANCELLED, stats=compute_stats(job).to_document())
            return {"halt_reason": "cancelled"}
        if job.status is JobStatus.DONE:
            return {"halt_reason": "done"}
        return {
            "halt_reason": None,
            "current_idea_id": None,
            "build_outcome": None,
            "prepare_error": None,
            "iterations": state.get("iterations", 0) + 1,
        }

    def _refresh_route(self, state: RunnerGraphState) -> str:
        if state.get("halt_reason"):
            return "end"
        return "claim"

    def _claim_node(self, state: RunnerGraphState) -> dict[str, Any]:
        job_id = state["job_id"]
        emit = self.broadcaster.emitter_for(job_id)
        now = self.clock()

        def _claim(container: BatchJobList) -> tuple[BatchJobList | None, tuple[str, BatchJob | None, str | None]]:
            job = find_job(container, job_id)
            if job is None or job.status is not JobStatus.RUNNING:
                # Let refresh report the new status.
                return None, ("recheck", job, None)
            item = next_queued_item(job)
            if item is None:
                if not is_complete(job):
                    return None, ("stalled", job, None)
                done = update_job_status(job, JobStatus.DONE)
                return upsert_job(container, done, clock=self.clock), ("done", done, None)
            claimed = update_item_status(job, item.idea_id, ItemStatus.RUNNING, started_at=now)
            return upsert_job(container, claimed, clock=self.clock), ("claimed", claimed, item.idea_id)

        outcome, job, idea_id = self.store.transact(_claim)
        if outcome == "recheck":
            return {"current_idea_id": None}
        stats = compute_stats(job).to_document()
        if outcome == "done":
            emit(JOB_DONE, stats=stats)
            return {"current_idea_id": None, "halt_reason": "done"}
        if outcome == "stalled":
            error = "job has no queued items but is not complete"
            emit(JOB_ERROR, error=error, stats=stats)
            return {"current_idea_id": None, "halt_reason": "error", "error": error}

        logger.info("Batch job %s: building %s", job_id, idea_id)
        emit(ITEM_RUNNING, ideaId=idea_id, stats=stats)
        return {"current_idea_id": idea_id}

    def _claim_route(self, state: RunnerGraphState) -> str:
        if state.get("halt_reason"):
            return "end"
        if state.get("current_idea_id"):
            return "prepare"
        return "refresh"

    def _prepare_node(self, state: RunnerGraphState) -> dict[str, Any]:
        job_id = state["job_id"]
        idea_id = state["current_idea_id"]
        try:
            self.ideas.mark_building(idea_id)
        except Exception as exc:
            logger.warning("Batch job %s: could not prepare %s: %s", job_id, idea_id, exc, exc_info=not isinstance(exc, BatchError))
            error = str(exc) or type(exc).__name__
            self._finish_item(job_id, idea_id, BuildOutcome(ok=False, error=error, source="prepare"))
            return {"prepare_error": error, "current_idea_id": None}
        return {"prepare_error": None}

    def _prepare_route(self, state: RunnerGraphState) -> str:
        if state.get("prepare_error"):
            return "refresh"
        return "build"

    def _build_node(self, state: RunnerGraphState) -> dict[str, Any]:
        job_id = state["job_id"]
        idea_id = state["current_idea_id"]
        emit = self.broadcaster.emitter_for(job_id)

        def _on_progress(status: BuildStatus) -> None:
            emit(ITEM_PROGRESS, ideaId=idea_id, stage=status.stage, progress=status.progress, title=status.title)

        try:
            outcome = self.invoker.run(job_id, idea_id, on_progress=_on_progress)
        except Exception as exc:
            logger.exception("Batch job %s: build invoker failed for %s", job_id, idea_id)
            outcome = BuildOutcome(ok=False, error=str(exc) or type(exc).__name__, source="exception")
        return {"build_outcome": outcome.to_dict()}

    def _record_node(self, state: RunnerGraphState) -> dict[str, Any]:
        raw = state.get("build_outcome") or {}
        outcome = BuildOutcome(
            ok=bool(raw.get("ok")),
            out_id=raw.get("outId"),
            error=raw.get("error"),
            timed_out=bool(raw.get("timedOut")),
            source=str(raw.get("source") or ""),
        )
        self._finish_item(state["job_id"], state["current_idea_id"], outcome)
        return {"current_idea_id": None, "build_outcome": None}

    def _finish_item(self, job_id: str, idea_id: str, outcome: BuildOutcome) -> None:
        emit = self.broadcaster.emitter_for(job_id)
        now = self.clock()
        if outcome.ok:
            job = self.store.update_job(
                job_id,
                lambda job: update_item_status(
                    job, idea_id, ItemStatus.BUILT, project_id=outcome.out_id, finished_at=now
                ),
            )
            emit(ITEM_BUILT, ideaId=idea_id, projectId=outcome.out_id, stats=compute_stats(job).to_document())
            return

        failure = outcome.to_error()
        error = str(failure)
        job = self.store.update_job(
            job_id,
            lambda job: update_item_status(job, idea_id, ItemStatus.FAILED, error=error, finished_at=now),
        )
        emit(
            ITEM_FAILED,
            ideaId=idea_id,
            error=error,
            errorType=failure.code,
            stats=compute_stats(job).to_document(),
        )
