"""Tests for webhook ingestion."""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

import pytest

from src.integrations.base import DataType, ProviderName
from src.integrations.errors import WebhookNotSupportedError, WebhookVerificationError
from src.integrations.records import PRIORITY_IMMEDIATE, IntegrationStatus, JobStatus, JobTrigger
from src.integrations.sync.webhooks import WebhookIngestion
from src.integrations.tests.conftest import (
    EXTERNAL_USER_ID,
    TEST_USER_ID,
    WEBHOOK_SIGNATURE,
    add_connected_integration,
)


def _payload(*entries: dict) -> bytes:
    return json.dumps(list(entries)).encode()


def _note(date: str = "2026-02-22", owner: str = EXTERNAL_USER_ID, **extra) -> dict:
    return {"ownerId": owner, "collectionType": "activities", "date": date, **extra}


class TestVerification:
    @pytest.mark.asyncio
    async def test_bad_signature_is_rejected_before_parsing(
        self, ingestion: WebhookIngestion, store, vault, clock, fake_adapter
    ) -> None:
        integration = await add_connected_integration(store, vault, clock)
        body = _payload(_note(points=[{"value": 50, "at": "2026-02-22T08:00:00+00:00"}]))

        with pytest.raises(WebhookVerificationError):
            await ingestion.handle_webhook(ProviderName.FITBIT, body, "forged")
        with pytest.raises(WebhookVerificationError):
            await ingestion.handle_webhook(ProviderName.FITBIT, body, None)

        assert fake_adapter.handled_payloads == []
        assert await store.list_jobs() == []
        assert await store.fetch_points(
            TEST_USER_ID, integration.id, clock() - timedelta(days=7), clock()
        ) == []

    @pytest.mark.asyncio
    async def test_provider_without_webhooks(self, ingestion) -> None:
        with pytest.raises(WebhookNotSupportedError):
            await ingestion.handle_webhook(ProviderName.GOOGLE_FIT, b"[]", WEBHOOK_SIGNATURE)

    def test_subscriber_verification(self, ingestion) -> None:
        assert ingestion.verify_subscriber(ProviderName.FITBIT, "verify-me")
        assert not ingestion.verify_subscriber(ProviderName.FITBIT, "wrong")
        assert not ingestion.verify_subscriber(ProviderName.FITBIT, None)
        with pytest.raises(WebhookNotSupportedError):
            ingestion.verify_subscriber(ProviderName.GOOGLE_FIT, "verify-me")


class TestIngestion:
    @pytest.mark.asyncio
    async def test_notifications_merge_into_one_immediate_job(
        self, ingestion, store, vault, clock
    ) -> None:
        integration = await add_connected_integration(store, vault, clock)
        body = _payload(
            _note("2026-02-21", types=["steps"]),
            _note("2026-02-22", types=["sleep"]),
        )

        outcome = await ingestion.handle_webhook(ProviderName.FITBIT, body, WEBHOOK_SIGNATURE)

        assert outcome.notifications == 2
        assert len(outcome.jobs_scheduled) == 1
        job = await store.get_job(outcome.jobs_scheduled[0])
        assert job.integration_id == integration.id
        assert job.trigger == JobTrigger.WEBHOOK
        assert job.priority == PRIORITY_IMMEDIATE
        assert job.status == JobStatus.PENDING
        assert job.data_types == (DataType.SLEEP, DataType.STEPS)
        assert job.from_date == datetime(2026, 2, 21, tzinfo=timezone.utc)
        assert job.to_date == datetime(2026, 2, 22, 23, 59, 59, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_inline_points_are_persisted_once(self, ingestion, store, vault, clock) -> None:
        integration = await add_connected_integration(store, vault, clock)
        body = _payload(
            _note(points=[
                {"value": 50, "at": "2026-02-22T08:00:00+00:00"},
                {"value": 75, "at": "2026-02-22T09:00:00+00:00"},
            ])
        )

        first = await ingestion.handle_webhook(ProviderName.FITBIT, body, WEBHOOK_SIGNATURE)
        second = await ingestion.handle_webhook(ProviderName.FITBIT, body, WEBHOOK_SIGNATURE)

        assert first.points_persisted == 2
        assert second.points_persisted == 0
        stored = await store.fetch_points(
            TEST_USER_ID, integration.id, clock() - timedelta(days=7), clock()
        )
        assert [p.value for p in stored] == [50, 75]

    @pytest.mark.asyncio
    async def test_unknown_subject_is_skipped(self, ingestion, store, vault, clock) -> None:
        await add_connected_integration(store, vault, clock)
        body = _payload(_note(owner="SOMEONE-ELSE"))

        outcome = await ingestion.handle_webhook(ProviderName.FITBIT, body, WEBHOOK_SIGNATURE)

        assert outcome.unresolved == ["SOMEONE-ELSE"]
        assert outcome.jobs_scheduled == []

    @pytest.mark.asyncio
    async def test_inactive_integration_is_ignored(self, ingestion, store, vault, clock) -> None:
        await add_connected_integration(store, vault, clock, status=IntegrationStatus.ERROR)

        outcome = await ingestion.handle_webhook(
            ProviderName.FITBIT, _payload(_note()), WEBHOOK_SIGNATURE
        )

        assert outcome.jobs_scheduled == []
        assert outcome.unresolved == []

    @pytest.mark.asyncio
    async def test_types_not_enabled_schedule_nothing(self, ingestion, store, vault, clock) -> None:
        await add_connected_integration(store, vault, clock, data_types=[DataType.STEPS])

        outcome = await ingestion.handle_webhook(
            ProviderName.FITBIT, _payload(_note(types=["sleep"])), WEBHOOK_SIGNATURE
        )

        assert outcome.jobs_scheduled == []

    @pytest.mark.asyncio
    async def test_revocation_disconnects(self, ingestion, scheduler, store, vault, clock) -> None:
        integration = await add_connected_integration(store, vault, clock)
        queued = await scheduler.schedule_job(integration)
        body = _payload(
            _note(types=["steps"]),
            {"ownerId": EXTERNAL_USER_ID, "collectionType": "userRevokedAccess"},
        )

        outcome = await ingestion.handle_webhook(ProviderName.FITBIT, body, WEBHOOK_SIGNATURE)

        assert outcome.revoked == [integration.id]
        assert outcome.jobs_scheduled == []
        stored = await store.get_integration(integration.id)
        assert stored.status == IntegrationStatus.DISCONNECTED
        assert stored.access_token is None
        assert stored.refresh_token is None
        assert await store.get_job(queued.id) is None
