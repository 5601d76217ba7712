"""
Stored queue document — what the object-storage provider keeps in one object.

    StoredQueue
      version          incremented on every committed mutation
      paused           queue-level intake flag
      completed_total  lifetime counters for get_health()
      failed_total
      next_seq         insertion counter (FIFO tie-break)
      jobs             tuple[StoredJob, ...]

    StoredJob
      job              Job without data/metadata (those live in `body`)
      body             payload envelope
      seq, ready_at    ordering keys
      lease_token      set while checked out
      lease_expires_at visibility deadline; expired leases are reclaimed
      remove_on_complete / remove_on_fail / backoff
                       backend options captured at add time

Pure value types: every mutation returns a new instance.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from jobport.domain.errors import JobNotFoundError
from jobport.domain.models import BackoffPolicy, Job, JobStatus


class StoredJob(BaseModel):
    model_config = ConfigDict(frozen=True)

    job: Job
    body: dict[str, Any] = Field(default_factory=dict)
    seq: int = 0
    ready_at: datetime
    lease_token: str | None = None
    lease_expires_at: datetime | None = None
    remove_on_complete: bool | int = False
    remove_on_fail: bool | int = False
    backoff: BackoffPolicy | None = None

    @property
    def id(self) -> str:
        return self.job.id

    @property
    def status(self) -> JobStatus:
        return self.job.status

    def is_ready(self, now: datetime) -> bool:
        return self.lease_token is None and self.job.is_ready(now)

    def lease_expired(self, now: datetime) -> bool:
        return (
            self.lease_token is not None
            and self.lease_expires_at is not None
            and self.lease_expires_at <= now
        )

    def leased(self, token: str, at: datetime, until: datetime) -> StoredJob:
        return self.model_copy(
            update={
                "job": self.job.mark_active(at),
                "lease_token": token,
                "lease_expires_at": until,
            }
        )

    def released(self, job: Job, ready_at: datetime | None = None) -> StoredJob:
        update: dict[str, Any] = {"job": job, "lease_token": None, "lease_expires_at": None}
        if ready_at is not None:
            update["ready_at"] = ready_at
        return self.model_copy(update=update)


class StoredQueue(BaseModel):
    model_config = ConfigDict(frozen=True)

    version: int = 0
    paused: bool = False
    completed_total: int = 0
    failed_total: int = 0
    next_seq: int = 0
    jobs: tuple[StoredJob, ...] = ()

    # ------------------------------------------------------------------ #
    # Queries                                                              #
    # ------------------------------------------------------------------ #

    def find(self, job_id: str) -> StoredJob | None:
        return next((s for s in self.jobs if s.id == job_id), None)

    def ready(self, now: datetime) -> tuple[StoredJob, ...]:
        """Dispatch order: highest priority, then earliest ready_at, then insertion."""
        return tuple(
            sorted(
                (s for s in self.jobs if s.is_ready(now)),
                key=lambda s: (-s.job.effective_priority, s.ready_at, s.seq),
            )
        )

    def with_status(self, status: JobStatus) -> tuple[StoredJob, ...]:
        return tuple(s for s in self.jobs if s.status == status)

    def live_leases(self, now: datetime) -> int:
        return sum(
            1 for s in self.jobs if s.lease_token is not None and not s.lease_expired(now)
        )

    # ------------------------------------------------------------------ #
    # Mutations — each returns a new StoredQueue                           #
    # ------------------------------------------------------------------ #

    def _bump(self, **update: Any) -> StoredQueue:
        return self.model_copy(update={**update, "version": self.version + 1})

    def with_job_added(self, stored: StoredJob) -> StoredQueue:
        stored = stored.model_copy(update={"seq": self.next_seq})
        return self._bump(jobs=self.jobs + (stored,), next_seq=self.next_seq + 1)

    def with_job_replaced(self, updated: StoredJob) -> StoredQueue:
        if self.find(updated.id) is None:
            raise JobNotFoundError(updated.id)
        return self._bump(
            jobs=tuple(updated if s.id == updated.id else s for s in self.jobs)
        )

    def with_jobs_removed(self, job_ids: set[str]) -> StoredQueue:
        if not job_ids:
            return self
        return self._bump(jobs=tuple(s for s in self.jobs if s.id not in job_ids))

    def with_paused(self, paused: bool) -> StoredQueue:
        return self._bump(paused=paused)

    def with_counters(self, *, completed: int = 0, failed: int = 0) -> StoredQueue:
        return self._bump(
            completed_total=self.completed_total + completed,
            failed_total=self.failed_total + failed,
        )

    def retained(self, stored: StoredJob, policy: bool | int) -> StoredQueue:
        """
        Apply a remove-on-complete/fail policy after `stored` was finalized.

        True drops the job, False keeps it, an int keeps only the newest N
        jobs in the same terminal status.
        """
        if policy is True:
            return self.with_jobs_removed({stored.id})
        if isinstance(policy, bool):
            return self
        finished = sorted(self.with_status(stored.status), key=lambda s: s.seq)
        stale = finished[: max(len(finished) - policy, 0)]
        return self.with_jobs_removed({s.id for s in stale})
