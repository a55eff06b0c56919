"""Shared fixtures for integration sync tests.

Everything runs against ``InMemorySyncStore``, a fixed clock and
``FakeAdapter``; provider-specific HTTP behaviour is covered separately with
``httpx.MockTransport`` in the adapter tests.
"""

from __future__ import annotations

import asyncio
import json
import random
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from urllib.parse import urlencode
from uuid import UUID, uuid4

import pytest

from src.integrations.base import (
    CANONICAL_UNITS,
    DataType,
    HealthDataPoint,
    OAuthTokens,
    ProviderAdapter,
    ProviderName,
    ProviderUserInfo,
    SyncBatch,
    WebhookNotification,
)
from src.integrations.config_loader import SchedulerConfig, SyncConfig, load_sync_config
from src.integrations.dedup import DeduplicationEngine
from src.integrations.errors import ProviderRateLimitError
from src.integrations.oauth import OAuthFlowManager
from src.integrations.records import Integration, IntegrationStatus
from src.integrations.store import InMemorySyncStore
from src.integrations.sync.engine import SyncEngine
from src.integrations.sync.scheduler import SyncScheduler
from src.integrations.sync.webhooks import WebhookIngestion
from src.integrations.vault import CredentialVault

# Canonical test identities
TEST_USER_ID = UUID("12345678-1234-5678-1234-567812345678")
OTHER_USER_ID = UUID("87654321-4321-8765-4321-876543218765")
EXTERNAL_USER_ID = "FB-USER-1"
T0 = datetime(2026, 2, 23, 12, 0, tzinfo=timezone.utc)

WEBHOOK_SIGNATURE = "good-signature"


class FixedClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = T0) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


def steps_points(count: int, start: datetime = T0 - timedelta(days=1)) -> list[HealthDataPoint]:
    """``count`` unbound step points one minute apart."""
    return [
        HealthDataPoint(
            data_type=DataType.STEPS,
            value=100 + i,
            unit=CANONICAL_UNITS[DataType.STEPS],
            timestamp=start + timedelta(minutes=i),
            metadata={"source": "fitbit"},
        )
        for i in range(count)
    ]


class FakeAdapter(ProviderAdapter):
    """Scriptable in-process adapter.

    Set ``points`` / ``errors`` / ``rate_limited`` to shape what ``sync_data``
    returns (points are copied with new ids on every call), and ``refresh_error`` / ``exchange_error`` to make the token
    calls fail.  Every call is recorded on the instance.
    """

    DISPLAY_NAME = "Fake Fitbit"

    def __init__(
        self,
        clock: FixedClock,
        provider: ProviderName = ProviderName.FITBIT,
        configured: bool = True,
        webhooks: bool = True,
    ) -> None:
        self.PROVIDER = provider
        self._clock = clock
        self._configured = configured
        self._webhooks = webhooks
        self.points: list[HealthDataPoint] = []
        self.errors: dict[DataType, str] = {}
        self.rate_limited = False
        self.retry_after: float | None = None
        self.sync_error: Exception | None = None
        self.valid = True
        self.exchange_error: Exception | None = None
        self.refresh_error: Exception | None = None
        self.user_info_error: Exception | None = None
        self.webhook_error: Exception | None = None
        self.token_counter = 0
        self.exchange_calls: list[dict] = []
        self.refresh_calls: list[str] = []
        self.sync_calls: list[dict] = []
        self.webhook_subscriptions: list[str] = []
        self.handled_payloads: list[bytes] = []

    @property
    def is_configured(self) -> bool:
        return self._configured

    @property
    def requires_pkce(self) -> bool:
        return True

    @property
    def default_scopes(self) -> list[str]:
        return ["activity", "sleep"]

    @property
    def supported_data_types(self) -> list[DataType]:
        return [DataType.STEPS, DataType.HEART_RATE, DataType.SLEEP]

    @property
    def supports_webhooks(self) -> bool:
        return self._webhooks

    @property
    def webhook_signature_header(self) -> str | None:
        return "X-Fitbit-Signature" if self._webhooks else None

    def build_authorization_url(
        self,
        state: str,
        redirect_uri: str,
        scopes: list[str],
        code_challenge: str | None = None,
    ) -> str:
        params = {
            "state": state,
            "redirect_uri": redirect_uri,
            "scope": " ".join(scopes),
            "code_challenge": code_challenge or "",
        }
        return f"https://fake.example/oauth2/authorize?{urlencode(params)}"

    def _tokens(self, refresh_token: str | None = "refresh-token") -> OAuthTokens:
        self.token_counter += 1
        return OAuthTokens(
            access_token=f"access-{self.token_counter}",
            refresh_token=refresh_token,
            expires_at=self._clock() + timedelta(hours=8),
            scope=["activity", "sleep"],
        )

    async def exchange_code(
        self, code: str, redirect_uri: str, code_verifier: str | None = None
    ) -> OAuthTokens:
        self.exchange_calls.append(
            {"code": code, "redirect_uri": redirect_uri, "code_verifier": code_verifier}
        )
        if self.exchange_error:
            raise self.exchange_error
        return self._tokens()

    async def refresh_token(self, refresh_token: str) -> OAuthTokens:
        self.refresh_calls.append(refresh_token)
        await asyncio.sleep(0)
        if self.refresh_error:
            raise self.refresh_error
        return self._tokens(refresh_token=f"refresh-{self.token_counter + 1}")

    async def sync_data(
        self,
        access_token: str,
        data_types: list[DataType],
        from_date: datetime,
        to_date: datetime,
    ) -> SyncBatch:
        self.sync_calls.append(
            {
                "access_token": access_token,
                "data_types": list(data_types),
                "from_date": from_date,
                "to_date": to_date,
            }
        )
        if self.sync_error:
            raise self.sync_error
        wanted = set(data_types)
        return SyncBatch(
            # Fresh objects per fetch, as a real provider response would be.
            points=[replace(p, id=uuid4()) for p in self.points if p.data_type in wanted],
            errors={dt: msg for dt, msg in self.errors.items() if dt in wanted},
            rate_limited=self.rate_limited,
            retry_after=self.retry_after,
        )

    async def validate_token(self, access_token: str) -> bool:
        return self.valid

    async def get_user_info(self, access_token: str) -> ProviderUserInfo:
        if self.user_info_error:
            raise self.user_info_error
        return ProviderUserInfo(id=EXTERNAL_USER_ID, name="Test User")

    async def setup_webhook(self, access_token: str, subscription_id: str) -> None:
        if self.webhook_error:
            raise self.webhook_error
        self.webhook_subscriptions.append(subscription_id)

    def verify_webhook(self, payload: bytes, signature: str | None) -> bool:
        return signature == WEBHOOK_SIGNATURE

    def handle_webhook(self, payload: bytes) -> list[WebhookNotification]:
        self.handled_payloads.append(payload)
        notifications = []
        for entry in json.loads(payload):
            if entry.get("collectionType") == "userRevokedAccess":
                notifications.append(
                    WebhookNotification(external_user_id=entry["ownerId"], revoked=True)
                )
                continue
            day = datetime.fromisoformat(entry["date"]).replace(tzinfo=timezone.utc)
            notifications.append(
                WebhookNotification(
                    external_user_id=entry["ownerId"],
                    data_types=[DataType(t) for t in entry.get("types", ["steps"])],
                    from_date=day,
                    to_date=day + timedelta(days=1) - timedelta(seconds=1),
                    points=[
                        HealthDataPoint(
                            data_type=DataType.STEPS,
                            value=p["value"],
                            unit="steps",
                            timestamp=datetime.fromisoformat(p["at"]),
                        )
                        for p in entry.get("points", [])
                    ],
                )
            )
        return notifications


# ---------------------------------------------------------------------------
# Config fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def sync_config() -> SyncConfig:
    """Load the real sync config for tests."""
    return load_sync_config()


@pytest.fixture
def scheduler_config(sync_config: SyncConfig) -> SchedulerConfig:
    return sync_config.scheduler


# ---------------------------------------------------------------------------
# Core fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def store() -> InMemorySyncStore:
    return InMemorySyncStore()


@pytest.fixture
def vault() -> CredentialVault:
    return CredentialVault([CredentialVault.generate_key()])


@pytest.fixture
def fake_adapter(clock: FixedClock) -> FakeAdapter:
    return FakeAdapter(clock)


@pytest.fixture
def oauth(
    store: InMemorySyncStore, vault: CredentialVault, fake_adapter: FakeAdapter, clock: FixedClock
) -> OAuthFlowManager:
    return OAuthFlowManager(
        store,
        vault,
        {ProviderName.FITBIT: fake_adapter},
        redirect_base_url="https://api.example.com",
        clock=clock,
    )


@pytest.fixture
def engine(
    store: InMemorySyncStore,
    oauth: OAuthFlowManager,
    fake_adapter: FakeAdapter,
    scheduler_config: SchedulerConfig,
    clock: FixedClock,
) -> SyncEngine:
    return SyncEngine(
        store,
        oauth,
        {ProviderName.FITBIT: fake_adapter},
        DeduplicationEngine(store),
        scheduler_config,
        clock=clock,
    )


@pytest.fixture
def scheduler(
    store: InMemorySyncStore,
    engine: SyncEngine,
    scheduler_config: SchedulerConfig,
    oauth: OAuthFlowManager,
    clock: FixedClock,
) -> SyncScheduler:
    scheduler = SyncScheduler(
        store, engine, scheduler_config, oauth=oauth, clock=clock, rng=random.Random(7)
    )
    oauth.on_connected = scheduler.schedule_initial_sync
    return scheduler


@pytest.fixture
def ingestion(
    store: InMemorySyncStore,
    engine: SyncEngine,
    scheduler: SyncScheduler,
    oauth: OAuthFlowManager,
    fake_adapter: FakeAdapter,
    clock: FixedClock,
) -> WebhookIngestion:
    return WebhookIngestion(
        store,
        engine,
        scheduler,
        oauth,
        {ProviderName.FITBIT: fake_adapter},
        verification_codes={ProviderName.FITBIT: "verify-me"},
        clock=clock,
    )


async def add_connected_integration(
    store: InMemorySyncStore,
    vault: CredentialVault,
    clock: FixedClock,
    user_id: UUID = TEST_USER_ID,
    **overrides: object,
) -> Integration:
    """Persist a connected Fitbit integration with valid encrypted tokens."""
    fields: dict = {
        "user_id": user_id,
        "provider": ProviderName.FITBIT,
        "status": IntegrationStatus.CONNECTED,
        "access_token": vault.encrypt("access-0"),
        "refresh_token": vault.encrypt("refresh-0"),
        "token_expires_at": clock() + timedelta(hours=8),
        "data_types": [DataType.STEPS, DataType.HEART_RATE, DataType.SLEEP],
        "external_user_id": EXTERNAL_USER_ID if user_id == TEST_USER_ID else f"FB-{user_id}",
        "created_at": clock(),
        "updated_at": clock(),
    }
    fields.update(overrides)
    return await store.save_integration(Integration(**fields))


def rate_limit_error(retry_after: float = 600.0) -> ProviderRateLimitError:
    return ProviderRateLimitError("Fake rate limit", provider="fitbit", retry_after=retry_after)
