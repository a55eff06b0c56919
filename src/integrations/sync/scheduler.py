"""Background job scheduler for integration syncs.

Owns the job queue (persisted in the store) and four background loops:

1. Poller          - claims the most urgent due job and runs it through the engine
2. Periodic sweep  - enqueues jobs for connected integrations past their cadence
3. Reaper          - returns orphaned running jobs to the queue
4. Cleanup         - deletes terminal jobs past retention and expired OAuth states

Usage::

    scheduler = SyncScheduler(store, engine, config.scheduler)
    await scheduler.schedule_job(integration, trigger=JobTrigger.MANUAL)
    scheduler.start()          # background loops
    ...
    await scheduler.stop()
"""

from __future__ import annotations

import asyncio
import logging
import random
from datetime import datetime, timedelta
from typing import Awaitable, Callable
from uuid import UUID

from src.integrations.base import DataType, utc_now
from src.integrations.config_loader import SchedulerConfig
from src.integrations.errors import IntegrationError
from src.integrations.oauth import OAuthFlowManager
from src.integrations.records import (
    PRIORITY_IMMEDIATE,
    PRIORITY_NORMAL,
    Integration,
    JobStatus,
    JobTrigger,
    SyncJob,
)
from src.integrations.store import SyncStore
from src.integrations.sync import jobs
from src.integrations.sync.engine import SyncEngine

logger = logging.getLogger("healthsync.integrations.sync.scheduler")


class SyncScheduler:
    """Schedule and execute integration sync jobs.

    Args:
        store:  Job and integration persistence.
        engine: Runs one sync for a claimed job.
        config: Scheduler section of sync_config.yaml.
        oauth:  Used to sweep expired OAuth states during cleanup.
        clock:  Returns the current UTC time.
        rng:    Random source for periodic jitter.
    """

    def __init__(
        self,
        store: SyncStore,
        engine: SyncEngine,
        config: SchedulerConfig,
        oauth: OAuthFlowManager | None = None,
        clock: Callable[[], datetime] = utc_now,
        rng: random.Random | None = None,
    ) -> None:
        self._store = store
        self._engine = engine
        self._config = config
        self._oauth = oauth
        self._clock = clock
        self._rng = rng or random.Random()
        self._tasks: list[asyncio.Task] = []
        self._stopping = asyncio.Event()

    # ------------------------------------------------------------------
    # Enqueue
    # ------------------------------------------------------------------

    async def schedule_job(
        self,
        integration: Integration,
        *,
        trigger: JobTrigger = JobTrigger.SCHEDULED,
        priority: int = PRIORITY_NORMAL,
        data_types: list[DataType] | None = None,
        from_date: datetime | None = None,
        to_date: datetime | None = None,
        delay: timedelta = timedelta(0),
    ) -> SyncJob:
        now = self._clock()
        job = jobs.new_job(
            user_id=integration.user_id,
            integration_id=integration.id,
            provider=integration.provider,
            data_types=data_types or integration.data_types,
            now=now,
            scheduled_for=now + delay,
            max_retries=self._config.max_retries,
            priority=priority,
            trigger=trigger,
            from_date=from_date,
            to_date=to_date,
        )
        await self._store.create_job(job)
        logger.debug(
            "Enqueued %s job %s for %s integration %s (priority=%d, at %s)",
            trigger.value,
            job.id,
            integration.provider.value,
            integration.id,
            priority,
            job.scheduled_for.isoformat(),
        )
        return job

    async def schedule_initial_sync(self, integration: Integration) -> SyncJob:
        """Immediate job covering the initial look-back after a new connection."""
        now = self._clock()
        return await self.schedule_job(
            integration,
            trigger=JobTrigger.INITIAL,
            priority=PRIORITY_IMMEDIATE,
            from_date=now - timedelta(days=self._config.initial_lookback_days),
            to_date=None,
        )

    async def schedule_periodic_sync(self) -> list[SyncJob]:
        """Enqueue jittered jobs for due connected integrations without an open job."""
        now = self._clock()
        scheduled = []
        for integration in await self._store.list_connected_integrations():
            if not integration.is_due(now):
                continue
            if await self._store.has_open_job(integration.id):
                continue
            jitter = timedelta(seconds=self._rng.uniform(0, self._config.jitter_max_minutes * 60))
            scheduled.append(await self.schedule_job(integration, delay=jitter))
        if scheduled:
            logger.info("Periodic sweep scheduled %d sync jobs", len(scheduled))
        return scheduled

    # ------------------------------------------------------------------
    # Execute
    # ------------------------------------------------------------------

    async def process_next(self) -> SyncJob | None:
        """Claim and run the most urgent due job.  Returns it in its final state."""
        job = await self._store.claim_next_job(self._clock())
        if job is None:
            return None
        return await self._execute(job)

    async def run_pending(self, limit: int | None = None) -> list[SyncJob]:
        """Drain due jobs one after another (tests, one-shot workers)."""
        processed = []
        while limit is None or len(processed) < limit:
            job = await self.process_next()
            if job is None:
                break
            processed.append(job)
        return processed

    async def _execute(self, job: SyncJob) -> SyncJob:
        logger.info(
            "Running %s job %s for %s integration %s (attempt %d/%d)",
            job.trigger.value,
            job.id,
            job.provider.value,
            job.integration_id,
            job.retry_count + 1,
            job.max_retries + 1,
        )
        try:
            await self._engine.run(
                job.integration_id,
                data_types=list(job.data_types),
                from_date=job.from_date,
                to_date=job.to_date,
            )
        except IntegrationError as exc:
            return await self._record_failure(
                job, exc.message, exc.retryable, getattr(exc, "retry_after", None)
            )
        except Exception as exc:
            logger.exception("Unexpected error running job %s", job.id)
            return await self._record_failure(job, f"Unexpected error: {exc}", True, None)

        updated = jobs.complete(job, self._clock())
        if not await self._store.update_job(updated, expected_status=JobStatus.RUNNING):
            logger.warning("Job %s changed while running; completion dropped", job.id)
        return updated

    async def _record_failure(
        self, job: SyncJob, message: str, retryable: bool, retry_after: float | None
    ) -> SyncJob:
        now = self._clock()
        if retryable:
            updated = jobs.retry_or_fail(job, now, message, retry_after)
        else:
            updated = jobs.fail(job, now, message)

        if not await self._store.update_job(updated, expected_status=JobStatus.RUNNING):
            logger.warning("Job %s changed while running; result dropped", job.id)
            return updated

        if updated.status == JobStatus.FAILED:
            logger.error(
                "Job %s for %s integration %s failed permanently: %s",
                job.id,
                job.provider.value,
                job.integration_id,
                message,
            )
            if retryable:
                await self._engine.mark_sync_error(job.integration_id, message)
        else:
            logger.info(
                "Job %s retry %d/%d scheduled for %s",
                job.id,
                updated.retry_count,
                updated.max_retries,
                updated.scheduled_for.isoformat(),
            )
        return updated

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    async def reap_stale_jobs(self) -> list[SyncJob]:
        """Return running jobs past their liveness timeout to pending."""
        now = self._clock()
        reclaimed = []
        for job in await self._store.list_jobs(status=JobStatus.RUNNING):
            timeout = self._config.reaper_timeout(len(job.data_types))
            if job.started_at is None or now - job.started_at < timeout:
                continue
            updated = jobs.reclaim(job, now)
            if await self._store.update_job(updated, expected_status=JobStatus.RUNNING):
                logger.warning(
                    "Reclaimed job %s for integration %s (running since %s)",
                    job.id,
                    job.integration_id,
                    job.started_at.isoformat(),
                )
                reclaimed.append(updated)
        return reclaimed

    async def cleanup_old_jobs(self) -> int:
        """Delete terminal jobs older than the retention window."""
        deleted = await self._store.delete_terminal_jobs(self._clock() - self._config.job_retention)
        if deleted:
            logger.info("Deleted %d finished jobs past retention", deleted)
        if self._oauth is not None:
            await self._oauth.sweep_expired_states()
        return deleted

    async def cancel_job(self, job_id: UUID, user_id: UUID | None = None) -> bool:
        """Cancel a pending job.  Running and finished jobs cannot be cancelled."""
        job = await self._store.get_job(job_id)
        if job is None or (user_id is not None and job.user_id != user_id):
            return False
        cancelled = await self._store.delete_pending_job(job_id)
        if cancelled:
            logger.info("Cancelled job %s", job_id)
        return cancelled

    async def get_job(self, job_id: UUID) -> SyncJob | None:
        return await self._store.get_job(job_id)

    async def get_stats(self) -> dict[str, int]:
        counts = await self._store.job_counts()
        stats = {status.value: counts.get(status, 0) for status in JobStatus}
        stats["total"] = sum(stats.values())
        return stats

    # ------------------------------------------------------------------
    # Background loops
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the poller(s) and housekeeping loops on the running event loop."""
        if self._tasks:
            return
        self._stopping.clear()
        poll = self._config.poll_interval_seconds
        for n in range(self._config.worker_concurrency):
            self._tasks.append(
                asyncio.create_task(self._loop(self._poll_once, poll), name=f"sync-worker-{n}")
            )
        self._tasks += [
            asyncio.create_task(
                self._loop(self.schedule_periodic_sync, self._config.periodic_sync_interval_minutes * 60),
                name="sync-periodic",
            ),
            asyncio.create_task(
                self._loop(self.reap_stale_jobs, self._config.reaper_interval_minutes * 60),
                name="sync-reaper",
            ),
            asyncio.create_task(
                self._loop(self.cleanup_old_jobs, self._config.cleanup_interval_minutes * 60),
                name="sync-cleanup",
            ),
        ]
        logger.info("Sync scheduler started (%d workers)", self._config.worker_concurrency)

    async def stop(self) -> None:
        self._stopping.set()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        logger.info("Sync scheduler stopped")

    async def _poll_once(self) -> None:
        # Keep draining while work is due; sleep only when the queue is empty.
        while not self._stopping.is_set() and await self.process_next() is not None:
            pass

    async def _loop(self, step: Callable[[], Awaitable[object]], interval: float) -> None:
        while not self._stopping.is_set():
            try:
                await step()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Scheduler task %s failed", getattr(step, "__name__", step))
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
