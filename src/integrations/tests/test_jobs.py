"""Tests for the pure sync job transitions."""

from __future__ import annotations

from dataclasses import replace
from datetime import timedelta
from uuid import uuid4

import pytest

from src.integrations.base import DataType, ProviderName
from src.integrations.records import JobStatus, JobTrigger
from src.integrations.sync import jobs
from src.integrations.tests.conftest import T0, TEST_USER_ID


def _running(retry_count: int = 0, max_retries: int = 3):
    job = jobs.new_job(
        user_id=TEST_USER_ID,
        integration_id=uuid4(),
        provider=ProviderName.FITBIT,
        data_types=[DataType.STEPS],
        now=T0,
        max_retries=max_retries,
    )
    return jobs.start(replace(job, retry_count=retry_count), T0)


class TestBackoff:
    def test_doubles_each_retry(self) -> None:
        assert [jobs.backoff_delay(n) for n in (1, 2, 3)] == [
            timedelta(minutes=2),
            timedelta(minutes=4),
            timedelta(minutes=8),
        ]


class TestTransitions:
    def test_new_job_defaults(self) -> None:
        job = jobs.new_job(
            user_id=TEST_USER_ID,
            integration_id=uuid4(),
            provider=ProviderName.FITBIT,
            data_types=[DataType.STEPS, DataType.SLEEP],
            now=T0,
            trigger=JobTrigger.MANUAL,
        )
        assert job.status == JobStatus.PENDING
        assert job.scheduled_for == T0
        assert job.retry_count == 0
        assert job.data_types == (DataType.STEPS, DataType.SLEEP)

    def test_start_and_complete(self) -> None:
        job = _running()
        assert job.status == JobStatus.RUNNING
        assert job.started_at == T0

        done = jobs.complete(job, T0 + timedelta(seconds=5))
        assert done.status == JobStatus.COMPLETED
        assert done.completed_at == T0 + timedelta(seconds=5)

    def test_terminal_jobs_cannot_restart(self) -> None:
        failed = jobs.fail(_running(), T0, "boom")
        completed = jobs.complete(_running(), T0)

        for job in (failed, completed):
            with pytest.raises(jobs.InvalidTransitionError):
                jobs.start(job, T0)

    def test_pending_job_cannot_complete(self) -> None:
        pending = jobs.new_job(
            user_id=TEST_USER_ID,
            integration_id=uuid4(),
            provider=ProviderName.FITBIT,
            data_types=[DataType.STEPS],
            now=T0,
        )
        with pytest.raises(jobs.InvalidTransitionError):
            jobs.complete(pending, T0)


class TestRetryOrFail:
    def test_first_retry_waits_two_minutes(self) -> None:
        retried = jobs.retry_or_fail(_running(), T0, "Fitbit API error: 500")

        assert retried.status == JobStatus.PENDING
        assert retried.retry_count == 1
        assert retried.scheduled_for == T0 + timedelta(minutes=2)
        assert retried.last_error == "Fitbit API error: 500"
        assert retried.started_at is None

    def test_retry_after_longer_than_backoff_wins(self) -> None:
        retried = jobs.retry_or_fail(_running(), T0, "rate limited", retry_after=900)
        assert retried.scheduled_for == T0 + timedelta(seconds=900)

    def test_retry_after_shorter_than_backoff_is_ignored(self) -> None:
        retried = jobs.retry_or_fail(_running(), T0, "rate limited", retry_after=10)
        assert retried.scheduled_for == T0 + timedelta(minutes=2)

    def test_fails_once_retries_are_spent(self) -> None:
        job = _running(retry_count=3)
        failed = jobs.retry_or_fail(job, T0, "still broken")

        assert failed.status == JobStatus.FAILED
        assert failed.retry_count == 3
        assert failed.completed_at == T0

    def test_retry_count_never_exceeds_max(self) -> None:
        job = _running(max_retries=2)
        for _ in range(5):
            job = jobs.retry_or_fail(job, T0, "error")
            if job.status == JobStatus.FAILED:
                break
            job = jobs.start(job, T0)
        assert job.status == JobStatus.FAILED
        assert job.retry_count == 2


class TestReclaim:
    def test_reclaim_keeps_retry_budget(self) -> None:
        job = _running()
        reclaimed = jobs.reclaim(job, T0 + timedelta(minutes=20))

        assert reclaimed.status == JobStatus.PENDING
        assert reclaimed.retry_count == 0
        assert reclaimed.scheduled_for == T0 + timedelta(minutes=20)
        assert reclaimed.last_error == "Reclaimed after worker timeout"
