import threading
from pathlib import Path

import pytest

from batch_app_factory.events import EventBroadcaster
from batch_app_factory.models import BuildOutcome, BuildStatus, ItemStatus, JobStatus
from batch_app_factory.runner import BatchRunner
from batch_app_factory.service import BatchJobService
from batch_app_factory.state_machine import update_item_status
from batch_app_factory.state_store import BatchStateStore


class GatedInvoker:
    """Succeeds every build, optionally holding each one until ``gate`` is set."""

    def __init__(self) -> None:
        self.calls: list[str] = []
        self.gate = threading.Event()
        self.gate.set()
        self.entered = threading.Event()

    def run(self, job_id: str, idea_id: str, on_progress=None) -> BuildOutcome:
        self.calls.append(idea_id)
        self.entered.set()
        self.gate.wait(5.0)
        return BuildOutcome(ok=True, out_id=f"proj-{idea_id}", source="status")


class NoopIdeas:
    def mark_building(self, idea_id: str) -> None:
        return None


@pytest.fixture
def invoker() -> GatedInvoker:
    return GatedInvoker()


@pytest.fixture
def service(tmp_path: Path, invoker: GatedInvoker):
    store = BatchStateStore(tmp_path / "data" / "batch_jobs.json", tmp_path / "data" / "batch_leases.json")
    broadcaster = EventBroadcaster()
    runner = BatchRunner(store=store, invoker=invoker, ideas=NoopIdeas(), broadcaster=broadcaster)
    svc = BatchJobService(store=store, runner=runner, broadcaster=broadcaster)
    yield svc
    invoker.gate.set()
    svc.shutdown()


def test_create_returns_job_id_and_stats(service: BatchJobService) -> None:
    result = service.create("camp", ["a", "b"], concurrency=7)

    assert result.ok
    payload = result.to_dict()
    assert payload["ok"] is True
    assert payload["jobId"].startswith("job_")
    assert payload["stats"]["total"] == 2
    assert payload["stats"]["queued"] == 2
    assert service.store.get_job(payload["jobId"]).concurrency == 4


def test_create_validation_failure(service: BatchJobService) -> None:
    result = service.create("", ["a"])
    assert not result.ok
    assert result.to_dict() == {"ok": False, "error": "campaignId is required", "errorType": "validation"}

    result = service.create("camp", [])
    assert result.error_type == "validation"


def test_create_conflicts_with_active_campaign_job(service: BatchJobService) -> None:
    first = service.create("camp", ["a"])
    second = service.create("camp", ["b"])

    assert not second.ok
    assert second.error_type == "conflict"
    assert second.to_dict()["activeJobId"] == first.payload["jobId"]

    assert service.create("other-camp", ["b"]).ok
    service.cancel(first.payload["jobId"])
    assert service.create("camp", ["b"]).ok


def test_start_inline_runs_to_completion(service: BatchJobService) -> None:
    job_id = service.create("camp", ["a", "b"]).payload["jobId"]

    result = service.start(job_id, background=False)

    assert result.ok
    assert result.payload["status"] == "done"
    assert service.active_job_id is None


def test_start_background_and_single_active_job(service: BatchJobService, invoker: GatedInvoker) -> None:
    job_a = service.create("camp-a", ["a"]).payload["jobId"]
    job_b = service.create("camp-b", ["b"]).payload["jobId"]
    invoker.gate.clear()

    started = service.start(job_a)
    assert started.ok
    assert invoker.entered.wait(5.0)
    assert service.active_job_id == job_a

    refused = service.start(job_b)
    assert not refused.ok
    assert refused.error_type == "conflict"
    assert refused.to_dict()["activeJobId"] == job_a

    invoker.gate.set()
    run = service.wait(timeout=10.0)
    assert run is not None and run.ok
    assert service.store.get_job(job_a).status is JobStatus.DONE
    assert service.start(job_b, background=False).ok


def test_start_unknown_or_terminal_job(service: BatchJobService) -> None:
    missing = service.start("job_nope")
    assert missing.error_type == "not_found"

    job_id = service.create("camp", ["a"]).payload["jobId"]
    service.cancel(job_id)
    terminal = service.start(job_id)
    assert terminal.error_type == "illegal_transition"


def test_pause_resume_cancel_transitions(service: BatchJobService) -> None:
    job_id = service.create("camp", ["a", "b"]).payload["jobId"]

    assert service.pause(job_id).error_type == "illegal_transition"
    service.store.update_job(job_id, lambda job: job.model_copy(update={"status": JobStatus.RUNNING}))

    paused = service.pause(job_id)
    assert paused.ok and paused.payload["status"] == "paused"

    resumed = service.resume(job_id, background=False)
    assert resumed.ok
    assert resumed.payload["status"] == "done"

    assert service.cancel(job_id).error_type == "illegal_transition"
    assert service.cancel("job_nope").error_type == "not_found"


def test_resume_while_runner_is_stopping_runs_the_rest(service: BatchJobService, invoker: GatedInvoker) -> None:
    job_id = service.create("camp", ["a", "b"]).payload["jobId"]
    resumed: list[dict] = []

    def on_event(event) -> None:
        if event.name == "item:built" and event.payload["ideaId"] == "a":
            service.pause(job_id)
        elif event.name == "job:paused":
            resumed.append(service.resume(job_id).to_dict())

    service.broadcaster.subscribe(job_id, on_event)

    assert service.start(job_id).ok
    run = service.wait(timeout=10.0)

    assert resumed[0]["ok"] is True
    assert resumed[0]["relaunched"] is False
    assert run is not None and run.ok
    assert invoker.calls == ["a", "b"]
    job = service.store.get_job(job_id)
    assert job.status is JobStatus.DONE
    assert [item.status for item in job.items] == [ItemStatus.BUILT, ItemStatus.BUILT]
    assert service.active_job_id is None


def test_retry_only_from_failed(service: BatchJobService) -> None:
    job_id = service.create("camp", ["a", "b"]).payload["jobId"]

    def fail_a_build_b(job):
        job = update_item_status(job, "a", "running")
        job = update_item_status(job, "a", "failed", error="boom", finished_at=job.created_at)
        job = update_item_status(job, "b", "running")
        return update_item_status(job, "b", "built", project_id="proj-b")

    service.store.update_job(job_id, fail_a_build_b)

    retried = service.retry_item(job_id, "a")
    assert retried.ok
    assert retried.payload["stats"]["queued"] == 1
    item = service.store.get_job(job_id).find_item("a")
    assert item.status is ItemStatus.QUEUED
    assert item.error is None and item.finished_at is None and item.started_at is None

    assert service.retry_item(job_id, "a").ok
    assert service.store.get_job(job_id).find_item("a").status is ItemStatus.QUEUED

    refused = service.retry_item(job_id, "b")
    assert refused.error_type == "illegal_transition"
    assert service.retry_item(job_id, "zzz").error_type == "not_found"


def test_skip_only_from_queued(service: BatchJobService) -> None:
    job_id = service.create("camp", ["a", "b"]).payload["jobId"]

    skipped = service.skip_item(job_id, "b")
    assert skipped.ok
    assert skipped.payload["stats"]["skipped"] == 1
    first_finished = service.store.get_job(job_id).find_item("b").finished_at
    assert first_finished is not None

    again = service.skip_item(job_id, "b")
    assert again.ok
    assert service.store.get_job(job_id).find_item("b").finished_at == first_finished

    service.store.update_job(job_id, lambda job: update_item_status(job, "a", "running"))
    assert service.skip_item(job_id, "a").error_type == "illegal_transition"


def test_status_and_list(service: BatchJobService) -> None:
    job_a = service.create("camp-a", ["a"]).payload["jobId"]
    service.create("camp-b", ["b", "c"])

    status = service.status(job_a)
    assert status.ok
    assert status.payload["job"]["jobId"] == job_a
    assert status.payload["job"]["items"][0]["ideaId"] == "a"
    assert status.payload["stats"]["total"] == 1
    assert service.status("job_nope").error_type == "not_found"

    assert len(service.list_jobs().payload["jobs"]) == 2
    only_b = service.list_jobs("camp-b").payload["jobs"]
    assert [view["stats"]["total"] for view in only_b] == [2]


def test_progress_events_reach_subscribers(tmp_path: Path) -> None:
    class ProgressInvoker:
        def run(self, job_id: str, idea_id: str, on_progress=None) -> BuildOutcome:
            on_progress(BuildStatus(status="running", stage="tests", progress=80, title="demo"))
            return BuildOutcome(ok=True, out_id="p", source="status")

    store = BatchStateStore(tmp_path / "jobs.json", tmp_path / "leases.json")
    broadcaster = EventBroadcaster()
    runner = BatchRunner(store=store, invoker=ProgressInvoker(), ideas=NoopIdeas(), broadcaster=broadcaster)
    svc = BatchJobService(store=store, runner=runner, broadcaster=broadcaster)
    try:
        job_id = svc.create("camp", ["a"]).payload["jobId"]
        progress: list[dict] = []
        broadcaster.subscribe(job_id, lambda event: event.name == "item:progress" and progress.append(event.payload))
        assert svc.start(job_id, background=False).ok
    finally:
        svc.shutdown()

    assert progress == [{"ideaId": "a", "stage": "tests", "progress": 80.0, "title": "demo"}]
