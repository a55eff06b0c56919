"""Pure state transitions for sync jobs.

    pending ──start──▶ running ──complete──▶ completed
       ▲                  │
       └──retry_or_fail───┤ (retry_count < max_retries)
                          └──retry_or_fail / fail──▶ failed

``completed`` and ``failed`` are terminal.  Every function returns a new
``SyncJob``; persistence is the caller's job.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta
from uuid import UUID

from src.integrations.base import DataType, ProviderName
from src.integrations.records import (
    PRIORITY_NORMAL,
    JobStatus,
    JobTrigger,
    SyncJob,
)


class InvalidTransitionError(ValueError):
    """A transition was attempted from a status that does not allow it."""


def _require(job: SyncJob, *allowed: JobStatus) -> None:
    if job.status not in allowed:
        raise InvalidTransitionError(
            f"Job {job.id} is {job.status.value}; expected {', '.join(s.value for s in allowed)}"
        )


def new_job(
    *,
    user_id: UUID,
    integration_id: UUID,
    provider: ProviderName,
    data_types: list[DataType] | tuple[DataType, ...],
    now: datetime,
    scheduled_for: datetime | None = None,
    max_retries: int = 3,
    priority: int = PRIORITY_NORMAL,
    trigger: JobTrigger = JobTrigger.SCHEDULED,
    from_date: datetime | None = None,
    to_date: datetime | None = None,
) -> SyncJob:
    return SyncJob(
        user_id=user_id,
        integration_id=integration_id,
        provider=provider,
        data_types=tuple(data_types),
        scheduled_for=scheduled_for or now,
        max_retries=max_retries,
        priority=priority,
        trigger=trigger,
        from_date=from_date,
        to_date=to_date,
        created_at=now,
        updated_at=now,
    )


def start(job: SyncJob, now: datetime) -> SyncJob:
    _require(job, JobStatus.PENDING)
    return replace(job, status=JobStatus.RUNNING, started_at=now, updated_at=now)


def complete(job: SyncJob, now: datetime) -> SyncJob:
    _require(job, JobStatus.RUNNING)
    return replace(
        job, status=JobStatus.COMPLETED, completed_at=now, updated_at=now, last_error=None
    )


def fail(job: SyncJob, now: datetime, error: str) -> SyncJob:
    """Terminal failure with no retry."""
    _require(job, JobStatus.RUNNING)
    return replace(
        job, status=JobStatus.FAILED, last_error=error, completed_at=now, updated_at=now
    )


def backoff_delay(retry_count: int) -> timedelta:
    """Exponential backoff: 2^retry_count minutes."""
    return timedelta(minutes=2 ** retry_count)


def retry_or_fail(
    job: SyncJob,
    now: datetime,
    error: str,
    retry_after: float | None = None,
) -> SyncJob:
    """Reschedule a failed attempt, or fail it once retries are spent.

    Args:
        job:         The running job whose attempt failed.
        now:         Current time.
        error:       Error message recorded on the job.
        retry_after: Provider-requested wait in seconds; used when longer
                     than the backoff.
    """
    _require(job, JobStatus.RUNNING)
    if job.retry_count >= job.max_retries:
        return fail(job, now, error)

    retry_count = job.retry_count + 1
    delay = backoff_delay(retry_count)
    if retry_after is not None and retry_after > delay.total_seconds():
        delay = timedelta(seconds=retry_after)
    return replace(
        job,
        status=JobStatus.PENDING,
        retry_count=retry_count,
        scheduled_for=now + delay,
        last_error=error,
        started_at=None,
        updated_at=now,
    )


def reclaim(job: SyncJob, now: datetime) -> SyncJob:
    """Return an orphaned running job to the queue without spending a retry."""
    _require(job, JobStatus.RUNNING)
    return replace(
        job,
        status=JobStatus.PENDING,
        scheduled_for=now,
        started_at=None,
        updated_at=now,
        last_error="Reclaimed after worker timeout",
    )
