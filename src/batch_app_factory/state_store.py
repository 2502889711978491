from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable, TypeVar

from .atomic_fs import file_lock, read_safe, write_atomic
from .errors import ConflictError, LeaseHeldError, NotFoundError
from .models import BatchJob, BatchJobList, Clock, LeaseTable, RunLease, utc_now
from .settings import RuntimeSettings
from .state_machine import find_job, normalize_job_list, upsert_job

logger = logging.getLogger(__name__)

T = TypeVar("T")

# A transaction returns the container to persist (None = unchanged) and a result.
Transaction = Callable[[BatchJobList], tuple[BatchJobList | None, T]]


class BatchStateStore:
    """Persistence for the batch job container and the run lease table.

    The container document is the only source of truth: nothing is cached
    between calls.  Every read-modify-write runs under the container's
    advisory lock, and the lease table is only touched while that same lock is
    held, so a lease check and the container update it guards are serialized
    with every other writer.
    """

    def __init__(
        self,
        jobs_path: Path,
        leases_path: Path,
        *,
        lock_max_wait_sec: float = 10.0,
        lock_stale_sec: float = 30.0,
        lease_ttl_sec: float = 900.0,
        clock: Clock = utc_now,
    ) -> None:
        self.jobs_path = jobs_path
        self.leases_path = leases_path
        self.lock_max_wait_sec = lock_max_wait_sec
        self.lock_stale_sec = lock_stale_sec
        self.lease_ttl_sec = lease_ttl_sec
        self.clock = clock

    @classmethod
    def from_settings(cls, settings: RuntimeSettings, *, clock: Clock = utc_now) -> "BatchStateStore":
        return cls(
            settings.batch_jobs_path,
            settings.leases_path,
            lock_max_wait_sec=settings.lock_max_wait_sec,
            lock_stale_sec=settings.lock_stale_sec,
            lease_ttl_sec=settings.lease_ttl_sec,
            clock=clock,
        )

    # ------------------------------------------------------------------
    # Container
    # ------------------------------------------------------------------

    def _locked(self):
        return file_lock(self.jobs_path, max_wait_sec=self.lock_max_wait_sec, stale_sec=self.lock_stale_sec)

    def _read_container(self) -> BatchJobList:
        return normalize_job_list(read_safe(self.jobs_path, fallback=None), clock=self.clock)

    def _write_container(self, container: BatchJobList) -> None:
        write_atomic(self.jobs_path, container.to_document())

    def read(self) -> BatchJobList:
        """Return the current container. Missing or corrupt state reads as empty."""
        return self._read_container()

    def get_job(self, job_id: str) -> BatchJob | None:
        return find_job(self._read_container(), job_id)

    def transact(self, fn: Transaction[T]) -> T:
        """Run ``fn(container)`` under the lock and persist what it returns.

        Args:
            fn: Receives the freshly read container and returns
                ``(new_container_or_None, result)``.

        Returns:
            The ``result`` half of ``fn``'s return value.

        Raises:
            LockTimeoutError: If the lock cannot be acquired.
            Whatever ``fn`` raises; nothing is written in that case.
        """
        with self._locked():
            updated, result = fn(self._read_container())
            if updated is not None:
                self._write_container(updated)
            return result

    def insert_job(self, job: BatchJob) -> BatchJob:
        def _insert(container: BatchJobList) -> tuple[BatchJobList, BatchJob]:
            if find_job(container, job.job_id) is not None:
                raise ConflictError(f"job already exists: {job.job_id}", active_job_id=job.job_id)
            return upsert_job(container, job, clock=self.clock), job

        return self.transact(_insert)

    def update_job(self, job_id: str, fn: Callable[[BatchJob], BatchJob]) -> BatchJob:
        """Apply ``fn`` to one job under the lock and persist the result.

        Raises:
            NotFoundError: If the job does not exist.
        """

        def _update(container: BatchJobList) -> tuple[BatchJobList | None, BatchJob]:
            job = find_job(container, job_id)
            if job is None:
                raise NotFoundError(f"job not found: {job_id}")
            updated = fn(job)
            if updated == job:
                return None, job
            return upsert_job(container, updated, clock=self.clock), updated

        return self.transact(_update)

    # ------------------------------------------------------------------
    # Run leases
    # ------------------------------------------------------------------

    def _read_leases(self) -> LeaseTable:
        return LeaseTable.from_raw(read_safe(self.leases_path, fallback=None))

    def _write_leases(self, leases: tuple[RunLease, ...]) -> None:
        table = LeaseTable(updated_at=self.clock(), leases=leases)
        write_atomic(self.leases_path, table.to_document())

    def get_lease(self, job_id: str) -> RunLease | None:
        return self._read_leases().find(job_id)

    def acquire_lease(self, job_id: str, holder_id: str) -> RunLease:
        """Take the execution lease for ``job_id``.

        An expired lease, or one already held by ``holder_id``, is taken over.

        Raises:
            LeaseHeldError: If another holder's lease is still live.
        """
        with self._locked():
            now = self.clock()
            table = self._read_leases()
            current = table.find(job_id)
            if current is not None and current.holder_id != holder_id:
                if not current.is_expired(now, self.lease_ttl_sec):
                    raise LeaseHeldError(
                        f"job {job_id} is already being run by {current.holder_id}",
                        job_id=job_id,
                        holder_id=current.holder_id,
                    )
                logger.warning("Taking over expired lease on %s from %s", job_id, current.holder_id)
            lease = RunLease(job_id=job_id, holder_id=holder_id, acquired_at=now, renewed_at=now)
            self._write_leases(table.without(job_id) + (lease,))
            return lease

    def renew_lease(self, job_id: str, holder_id: str) -> RunLease:
        """Refresh ``renewedAt`` on our lease.

        Raises:
            LeaseHeldError: If the lease is gone or now belongs to someone else.
        """
        with self._locked():
            table = self._read_leases()
            current = table.find(job_id)
            if current is None or current.holder_id != holder_id:
                raise LeaseHeldError(
                    f"lease on job {job_id} was lost",
                    job_id=job_id,
                    holder_id=current.holder_id if current is not None else "",
                )
            lease = current.model_copy(update={"renewed_at": self.clock()})
            self._write_leases(table.without(job_id) + (lease,))
            return lease

    def release_lease(self, job_id: str, holder_id: str) -> bool:
        """Drop our lease. Returns False if we did not hold it."""
        with self._locked():
            table = self._read_leases()
            current = table.find(job_id)
            if current is None or current.holder_id != holder_id:
                return False
            self._write_leases(table.without(job_id))
            return True
