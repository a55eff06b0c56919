"""Webhook ingestion: verify, resolve, persist inline data, enqueue follow-up syncs.

Nothing from an unverified payload is parsed or stored.  Verified
notifications are resolved to integrations by (provider, external user id);
notifications for the same integration in one delivery are merged into a
single immediate-priority job.
"""

from __future__ import annotations

import hmac
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable
from uuid import UUID

from src.integrations.base import (
    DataType,
    ProviderAdapter,
    ProviderName,
    WebhookNotification,
    utc_now,
)
from src.integrations.errors import (
    WebhookNotSupportedError,
    WebhookVerificationError,
)
from src.integrations.oauth import OAuthFlowManager
from src.integrations.records import (
    PRIORITY_IMMEDIATE,
    Integration,
    IntegrationStatus,
    JobTrigger,
)
from src.integrations.store import SyncStore
from src.integrations.sync.engine import SyncEngine
from src.integrations.sync.scheduler import SyncScheduler

logger = logging.getLogger("healthsync.integrations.sync.webhooks")


@dataclass
class WebhookOutcome:
    """What one webhook delivery did."""

    provider: ProviderName
    notifications: int = 0
    points_persisted: int = 0
    jobs_scheduled: list[UUID] = field(default_factory=list)
    revoked: list[UUID] = field(default_factory=list)
    unresolved: list[str] = field(default_factory=list)


@dataclass
class _PendingSync:
    integration: Integration
    data_types: set[DataType] = field(default_factory=set)
    from_date: datetime | None = None
    to_date: datetime | None = None

    def merge(self, note: WebhookNotification) -> None:
        self.data_types.update(note.data_types)
        if note.from_date and (self.from_date is None or note.from_date < self.from_date):
            self.from_date = note.from_date
        if note.to_date and (self.to_date is None or note.to_date > self.to_date):
            self.to_date = note.to_date


class WebhookIngestion:
    """Entry point for provider push notifications.

    Args:
        store:              Integration lookup.
        engine:             Persists inline points through the dedup path.
        scheduler:          Enqueues follow-up sync jobs.
        oauth:              Disconnects integrations on revocation notices.
        adapters:           Provider adapters keyed by provider.
        verification_codes: Subscriber verification code per provider.
        clock:              Returns the current UTC time.
    """

    def __init__(
        self,
        store: SyncStore,
        engine: SyncEngine,
        scheduler: SyncScheduler,
        oauth: OAuthFlowManager,
        adapters: dict[ProviderName, ProviderAdapter],
        verification_codes: dict[ProviderName, str] | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._engine = engine
        self._scheduler = scheduler
        self._oauth = oauth
        self._adapters = adapters
        self._verification_codes = verification_codes or {}
        self._clock = clock

    def _webhook_adapter(self, provider: ProviderName) -> ProviderAdapter:
        adapter = self._adapters.get(provider)
        if adapter is None or not adapter.supports_webhooks:
            raise WebhookNotSupportedError(
                f"Provider '{provider.value}' does not send webhooks", provider=provider.value
            )
        return adapter

    def verify_subscriber(self, provider: ProviderName, code: str | None) -> bool:
        """Answer a provider's subscriber-endpoint verification challenge.

        Raises:
            WebhookNotSupportedError: The provider has no webhooks.
        """
        self._webhook_adapter(provider)
        expected = self._verification_codes.get(provider)
        if not expected or not code:
            return False
        return hmac.compare_digest(expected, code)

    async def handle_webhook(
        self, provider: ProviderName, payload: bytes, signature: str | None
    ) -> WebhookOutcome:
        """Verify and process one webhook delivery.

        Raises:
            WebhookNotSupportedError: The provider has no webhooks.
            WebhookVerificationError: Signature missing or invalid.
            WebhookPayloadError:      Verified body could not be interpreted.
        """
        adapter = self._webhook_adapter(provider)
        if not adapter.verify_webhook(payload, signature):
            logger.warning(
                "Rejected %s webhook: %s signature (%d bytes)",
                provider.value,
                "missing" if not signature else "invalid",
                len(payload),
            )
            raise WebhookVerificationError("Invalid webhook signature", provider=provider.value)

        notifications = adapter.handle_webhook(payload)
        outcome = WebhookOutcome(provider=provider, notifications=len(notifications))
        pending: dict[UUID, _PendingSync] = {}

        for note in notifications:
            integration = await self._store.find_integration_by_subject(
                provider, note.external_user_id
            )
            if integration is None:
                logger.warning(
                    "No %s integration for webhook subject %s; skipping",
                    provider.value,
                    note.external_user_id,
                )
                outcome.unresolved.append(note.external_user_id)
                continue

            if note.revoked:
                if integration.status != IntegrationStatus.DISCONNECTED:
                    await self._oauth.disconnect_integration(
                        integration, reason="Access revoked at provider"
                    )
                    outcome.revoked.append(integration.id)
                pending.pop(integration.id, None)
                continue

            if not integration.is_active:
                logger.info(
                    "Ignoring %s webhook for %s integration %s",
                    provider.value,
                    integration.status.value,
                    integration.id,
                )
                continue

            if note.points:
                outcome.points_persisted += await self._engine.persist_points(
                    integration, note.points
                )

            enabled = set(integration.data_types) or set(note.data_types)
            wanted = [dt for dt in note.data_types if dt in enabled]
            if wanted:
                entry = pending.setdefault(integration.id, _PendingSync(integration))
                entry.merge(WebhookNotification(
                    external_user_id=note.external_user_id,
                    data_types=wanted,
                    from_date=note.from_date,
                    to_date=note.to_date,
                ))

        for entry in pending.values():
            job = await self._scheduler.schedule_job(
                entry.integration,
                trigger=JobTrigger.WEBHOOK,
                priority=PRIORITY_IMMEDIATE,
                data_types=sorted(entry.data_types, key=lambda dt: dt.value),
                from_date=entry.from_date,
                to_date=entry.to_date,
            )
            outcome.jobs_scheduled.append(job.id)

        logger.info(
            "%s webhook: %d notifications, %d jobs, %d points, %d revoked, %d unresolved",
            provider.value,
            outcome.notifications,
            len(outcome.jobs_scheduled),
            outcome.points_persisted,
            len(outcome.revoked),
            len(outcome.unresolved),
        )
        return outcome
