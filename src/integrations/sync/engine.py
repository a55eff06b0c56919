"""Sync engine: one sync run for one integration.

    ensure tokens → adapter.sync_data → bind → dedup → persist → update status

The engine raises on failure so the scheduler can decide between retry and
terminal failure; ``sync_now`` wraps it for the manual-sync endpoint and
reports failures in the result instead.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable
from uuid import UUID

from src.integrations.base import DataType, HealthDataPoint, ProviderAdapter, ProviderName, utc_now
from src.integrations.config_loader import SchedulerConfig
from src.integrations.dedup import DeduplicationEngine
from src.integrations.errors import (
    IntegrationError,
    IntegrationInactiveError,
    IntegrationNotFoundError,
    PartialSyncError,
    ProviderRateLimitError,
    SyncFailedError,
)
from src.integrations.oauth import OAuthFlowManager
from src.integrations.records import Integration, SyncStatus
from src.integrations.store import SyncStore

logger = logging.getLogger("healthsync.integrations.sync.engine")


@dataclass
class SyncResult:
    """Outcome of one sync run.

    Attributes:
        success:            False only when the run failed outright.
        synced_point_count: Points persisted after deduplication.
        fetched_point_count: Points returned by the provider.
        errors:             Human-readable per-type or run-level errors.
        failed_types:       Data types that failed in a partial sync.
        last_sync_time:     ``last_sync_at`` after the run.
    """

    integration_id: UUID
    success: bool
    synced_point_count: int = 0
    fetched_point_count: int = 0
    errors: list[str] = field(default_factory=list)
    failed_types: list[DataType] = field(default_factory=list)
    last_sync_time: datetime | None = None
    from_date: datetime | None = None
    to_date: datetime | None = None


class SyncEngine:
    """Fetch, deduplicate and persist provider data for integrations.

    Args:
        store:    Persistence.
        oauth:    Supplies valid access tokens (refreshing when needed).
        adapters: Provider adapters keyed by provider.
        dedup:    Deduplication engine over the same store.
        config:   Scheduler section of sync_config.yaml.
        clock:    Returns the current UTC time.
    """

    def __init__(
        self,
        store: SyncStore,
        oauth: OAuthFlowManager,
        adapters: dict[ProviderName, ProviderAdapter],
        dedup: DeduplicationEngine,
        config: SchedulerConfig,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._oauth = oauth
        self._adapters = adapters
        self._dedup = dedup
        self._config = config
        self._clock = clock

    def default_window_start(self, integration: Integration, now: datetime) -> datetime:
        """Incremental window: overlap the last sync; first sync looks back further."""
        if integration.last_sync_at is not None:
            return integration.last_sync_at - timedelta(hours=self._config.incremental_overlap_hours)
        return now - timedelta(days=self._config.initial_lookback_days)

    async def run(
        self,
        integration_id: UUID,
        data_types: list[DataType] | None = None,
        from_date: datetime | None = None,
        to_date: datetime | None = None,
    ) -> SyncResult:
        """Sync one integration.

        Args:
            integration_id: Integration to sync.
            data_types:     Types to fetch; the integration's enabled types by default.
            from_date:      Window start; incremental default when None.
            to_date:        Window end; now when None.

        Returns:
            SyncResult with ``success=True``; partial failures are listed in it.

        Raises:
            IntegrationNotFoundError:     No such integration.
            IntegrationInactiveError:     Integration not connected.
            ReauthorizationRequiredError: Tokens cannot be refreshed.
            TokenRefreshError:            Transient refresh failure.
            ProviderRateLimitError:       Rate limited before any type succeeded.
            SyncFailedError:              Every requested type failed.
        """
        integration = await self._load_active(integration_id)
        adapter = self._oauth.adapter(integration.provider)
        provider = integration.provider.value

        now = self._clock()
        to_date = to_date or now
        from_date = from_date or self.default_window_start(integration, now)
        requested = list(data_types or integration.data_types or adapter.supported_data_types)

        previous_status = integration.last_sync_status
        await self._store.update_integration(
            integration_id, {"last_sync_status": SyncStatus.SYNCING, "updated_at": now}
        )

        try:
            access_token = await self._oauth.ensure_valid_tokens(integration)
            batch = await adapter.sync_data(access_token, requested, from_date, to_date)

            attempted = {dt for dt in requested if dt in adapter.supported_data_types}
            if attempted and attempted <= set(batch.errors):
                summary = "; ".join(f"{dt.value}: {msg}" for dt, msg in batch.errors.items())
                if batch.rate_limited:
                    raise ProviderRateLimitError(
                        f"Rate limited before any data type completed ({summary})",
                        provider=provider,
                        retry_after=batch.retry_after,
                    )
                raise SyncFailedError(f"All data types failed ({summary})", provider=provider)

            synced = await self.persist_points(integration, batch.points)
        except IntegrationError as exc:
            logger.warning(
                "Sync of %s integration %s (%s → %s, types=%s) failed: %s",
                provider,
                integration_id,
                from_date.isoformat(),
                to_date.isoformat(),
                ",".join(dt.value for dt in requested),
                exc.message,
            )
            await self._restore_status(integration_id, previous_status, exc.message)
            raise
        except Exception as exc:
            logger.exception("Unexpected error syncing %s integration %s", provider, integration_id)
            await self._restore_status(integration_id, previous_status, f"Unexpected error: {exc}")
            raise

        if batch.is_partial:
            partial = PartialSyncError(
                f"{len(batch.errors)} of {len(attempted)} data types failed",
                provider=provider,
                failed_types=[dt.value for dt in batch.failed_types],
            )
            logger.warning(
                "Partial sync of %s integration %s (%s → %s): %s %s",
                provider,
                integration_id,
                from_date.isoformat(),
                to_date.isoformat(),
                partial.message,
                partial.failed_types,
            )

        completed_at = self._clock()
        await self._store.update_integration(
            integration_id,
            {
                "last_sync_at": completed_at,
                "last_sync_status": SyncStatus.COMPLETED,
                "last_error": (
                    "; ".join(f"{dt.value}: {msg}" for dt, msg in batch.errors.items())
                    if batch.is_partial
                    else None
                ),
                "updated_at": completed_at,
            },
        )

        logger.info(
            "Synced %s integration %s: %d fetched, %d new (%s → %s)",
            provider,
            integration_id,
            len(batch.points),
            synced,
            from_date.isoformat(),
            to_date.isoformat(),
        )
        return SyncResult(
            integration_id=integration_id,
            success=True,
            synced_point_count=synced,
            fetched_point_count=len(batch.points),
            errors=[f"{dt.value}: {msg}" for dt, msg in batch.errors.items()],
            failed_types=batch.failed_types,
            last_sync_time=completed_at,
            from_date=from_date,
            to_date=to_date,
        )

    async def sync_now(
        self,
        user_id: UUID,
        integration_id: UUID,
        from_date: datetime | None = None,
        to_date: datetime | None = None,
    ) -> SyncResult:
        """Manual sync for the API.  Defaults to the last ``manual_sync_default_days``.

        Raises:
            IntegrationNotFoundError: The integration does not exist or belongs
                to another user.
            IntegrationInactiveError: The integration is not connected.
        """
        integration = await self._store.get_integration(integration_id)
        if integration is None or integration.user_id != user_id:
            raise IntegrationNotFoundError(f"Integration {integration_id} not found")
        if not integration.is_active:
            raise IntegrationInactiveError(
                f"Integration {integration_id} is {integration.status.value}",
                provider=integration.provider.value,
            )

        now = self._clock()
        to_date = to_date or now
        from_date = from_date or now - timedelta(days=self._config.manual_sync_default_days)
        if from_date > to_date:
            raise ValueError("from_date must not be after to_date")

        try:
            return await self.run(integration_id, from_date=from_date, to_date=to_date)
        except (IntegrationNotFoundError, IntegrationInactiveError):
            raise
        except IntegrationError as exc:
            updated = await self.mark_sync_error(integration_id, exc.message)
            return SyncResult(
                integration_id=integration_id,
                success=False,
                errors=[exc.message],
                last_sync_time=updated.last_sync_at if updated else integration.last_sync_at,
                from_date=from_date,
                to_date=to_date,
            )

    async def persist_points(
        self, integration: Integration, points: list[HealthDataPoint]
    ) -> int:
        """Bind, deduplicate and insert points in batches.  Returns rows inserted."""
        if not points:
            return 0
        bound = [p.bind(integration.user_id, integration.id) for p in points]
        fresh = await self._dedup.deduplicate(bound)
        size = self._config.persist_batch_size
        inserted = 0
        for offset in range(0, len(fresh), size):
            inserted += await self._store.insert_points(fresh[offset:offset + size])
        return inserted

    async def mark_sync_error(self, integration_id: UUID, message: str) -> Integration | None:
        """Record a failed sync without touching the connection status."""
        return await self._store.update_integration(
            integration_id,
            {
                "last_sync_status": SyncStatus.ERROR,
                "last_error": message,
                "updated_at": self._clock(),
            },
        )

    async def _load_active(self, integration_id: UUID) -> Integration:
        integration = await self._store.get_integration(integration_id)
        if integration is None:
            raise IntegrationNotFoundError(f"Integration {integration_id} not found")
        if not integration.is_active:
            raise IntegrationInactiveError(
                f"Integration {integration_id} is {integration.status.value}",
                provider=integration.provider.value,
            )
        return integration

    async def _restore_status(
        self, integration_id: UUID, previous: SyncStatus, message: str
    ) -> None:
        integration = await self._store.get_integration(integration_id)
        if integration is None:
            return
        changes: dict = {"updated_at": self._clock()}
        # Leave an error recorded by the OAuth manager (reauthorization) in place.
        if integration.last_sync_status == SyncStatus.SYNCING:
            changes["last_sync_status"] = previous
        if integration.is_active:
            changes["last_error"] = message
        await self._store.update_integration(integration_id, changes)
