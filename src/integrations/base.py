"""Base classes and canonical data models for the HealthSync integration core.

Every provider adapter must subclass ProviderAdapter and return canonical
HealthDataPoint records.  These types are the single source of truth consumed
by the deduplication engine, the sync engine, the store and the API layer.
"""

from __future__ import annotations

import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any
from uuid import UUID

logger = logging.getLogger("healthsync.integrations")


def utc_now() -> datetime:
    """Timezone-aware UTC now.  The default clock for every component."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC; convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class ProviderName(str, Enum):
    """Providers with a registered adapter."""

    FITBIT = "fitbit"
    GOOGLE_FIT = "google_fit"


class DataType(str, Enum):
    STEPS = "steps"
    HEART_RATE = "heart_rate"
    SLEEP = "sleep"
    WEIGHT = "weight"
    CALORIES = "calories"
    EXERCISE = "exercise"
    BLOOD_PRESSURE = "blood_pressure"


#: Canonical unit for each data type.  Adapters convert provider-native units to these.
CANONICAL_UNITS: dict[DataType, str] = {
    DataType.STEPS: "steps",
    DataType.HEART_RATE: "bpm",
    DataType.SLEEP: "minutes",
    DataType.WEIGHT: "kg",
    DataType.CALORIES: "kcal",
    DataType.EXERCISE: "minutes",
    DataType.BLOOD_PRESSURE: "mmHg",
}


# ---------------------------------------------------------------------------
# OAuth / Auth tokens
# ---------------------------------------------------------------------------


@dataclass
class OAuthTokens:
    """OAuth token pair returned after a code exchange or refresh.

    Attributes:
        access_token:  Bearer token for API calls.
        refresh_token: Long-lived token used to obtain a new access_token.
        expires_at:    UTC datetime when the access_token expires.
        token_type:    Token type, typically "Bearer".
        scope:         Granted OAuth scopes.
        extra:         Any additional fields returned by the provider (e.g. user_id).
    """

    access_token: str
    refresh_token: str | None = None
    expires_at: datetime | None = None
    token_type: str = "Bearer"
    scope: list[str] = field(default_factory=list)
    extra: dict = field(default_factory=dict)

    @classmethod
    def from_token_response(
        cls,
        data: dict,
        now: datetime,
        fallback_refresh_token: str | None = None,
    ) -> "OAuthTokens":
        """Build tokens from a standard RFC 6749 token endpoint response.

        Providers that rotate refresh tokens return a new one; the rest omit
        it, in which case ``fallback_refresh_token`` is kept.

        Raises:
            KeyError: If the response has no access_token.
        """
        expires_in = data.get("expires_in")
        expires_at = now + timedelta(seconds=int(expires_in)) if expires_in else None
        scope = data.get("scope") or ""
        known = {"access_token", "refresh_token", "expires_in", "token_type", "scope"}
        return cls(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token") or fallback_refresh_token,
            expires_at=expires_at,
            token_type=data.get("token_type", "Bearer"),
            scope=scope.split() if isinstance(scope, str) else list(scope),
            extra={k: v for k, v in data.items() if k not in known},
        )


@dataclass
class ProviderUserInfo:
    """Identity of the account on the provider side."""

    id: str
    name: str | None = None
    email: str | None = None


# ---------------------------------------------------------------------------
# Canonical data point
# ---------------------------------------------------------------------------


@dataclass
class HealthDataPoint:
    """Canonical, provider-agnostic measurement.

    Adapters produce points without ``user_id`` / ``integration_id``; the sync
    engine binds them before deduplication and persistence.  Once persisted a
    point is never updated.

    Attributes:
        data_type:      Canonical data type.
        value:          Numeric value in the canonical unit.
        unit:           Canonical unit string (see CANONICAL_UNITS).
        timestamp:      UTC timestamp of the measurement (start time for
                        interval data such as sleep or exercise).
        user_id:        Internal user UUID.
        integration_id: Integration the point was synced through.
        metadata:       Provenance: ``source``, ``confidence``, ``device``,
                        ``duration``, ``raw_ref`` (content hash of the raw
                        provider record) and free-form ``additional``.
        id:             Row id.
    """

    data_type: DataType
    value: float
    unit: str
    timestamp: datetime
    user_id: UUID | None = None
    integration_id: UUID | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    id: UUID = field(default_factory=uuid.uuid4)

    def __post_init__(self) -> None:
        self.data_type = DataType(self.data_type)
        self.value = float(self.value)
        self.timestamp = ensure_utc(self.timestamp)

    @property
    def timestamp_ms(self) -> int:
        return int(round(self.timestamp.timestamp() * 1000))

    @property
    def source(self) -> str | None:
        return self.metadata.get("source")

    def bind(self, user_id: UUID, integration_id: UUID) -> "HealthDataPoint":
        """Return a copy attached to a user and integration."""
        return replace(self, user_id=user_id, integration_id=integration_id)


# ---------------------------------------------------------------------------
# Adapter results
# ---------------------------------------------------------------------------


@dataclass
class SyncBatch:
    """Outcome of one ``sync_data`` call.

    ``sync_data`` never raises for a single data type: failures are recorded
    in ``errors`` and the remaining types are still fetched.  When the
    provider (or the adapter's own request budget) rate-limits the run, the
    loop stops early and ``rate_limited`` / ``retry_after`` are set.
    """

    points: list[HealthDataPoint] = field(default_factory=list)
    errors: dict[DataType, str] = field(default_factory=dict)
    rate_limited: bool = False
    retry_after: float | None = None
    requests_made: int = 0

    @property
    def failed_types(self) -> list[DataType]:
        return list(self.errors)

    @property
    def is_partial(self) -> bool:
        return bool(self.errors)


@dataclass
class WebhookNotification:
    """One provider push notification, resolved to a provider-side subject.

    Attributes:
        external_user_id: Provider's id for the affected account.
        data_types:       Canonical data types the notification covers.
        from_date:        Start of the changed window (UTC).
        to_date:          End of the changed window (UTC).
        points:           Data included inline in the payload, if any.
        revoked:          True when the user revoked access on the provider side.
        subscription_id:  Provider subscription id, when the provider echoes one.
    """

    external_user_id: str
    data_types: list[DataType] = field(default_factory=list)
    from_date: datetime | None = None
    to_date: datetime | None = None
    points: list[HealthDataPoint] = field(default_factory=list)
    revoked: bool = False
    subscription_id: str | None = None


# ---------------------------------------------------------------------------
# Abstract base adapter
# ---------------------------------------------------------------------------


class ProviderAdapter(ABC):
    """Abstract base class for all provider adapters.

    Each adapter hides one provider's OAuth and data API behind a uniform
    surface used by the OAuth flow manager, the sync engine and webhook
    ingestion.  State, PKCE material and persistence are owned by the OAuth
    flow manager; adapters only speak HTTP to their provider.

    Subclasses must implement:
        - build_authorization_url()
        - exchange_code()
        - refresh_token()
        - sync_data()
        - validate_token()
        - get_user_info()

    Optional overrides (webhook-capable providers):
        - setup_webhook()
        - verify_webhook()
        - handle_webhook()
    """

    #: Registry key.
    PROVIDER: ProviderName

    #: Human-readable name for logging and UI.
    DISPLAY_NAME: str = "Unknown Provider"

    @property
    @abstractmethod
    def is_configured(self) -> bool:
        """True when usable client credentials are present."""

    @property
    @abstractmethod
    def requires_pkce(self) -> bool:
        """True when the authorization request must carry a PKCE challenge."""

    @property
    @abstractmethod
    def default_scopes(self) -> list[str]:
        """Scopes requested when the caller does not pass any."""

    @property
    @abstractmethod
    def supported_data_types(self) -> list[DataType]:
        """Data types this provider can return."""

    @abstractmethod
    def build_authorization_url(
        self,
        state: str,
        redirect_uri: str,
        scopes: list[str],
        code_challenge: str | None = None,
    ) -> str:
        """Return the fully-formed provider authorization URL."""

    @abstractmethod
    async def exchange_code(
        self, code: str, redirect_uri: str, code_verifier: str | None = None
    ) -> OAuthTokens:
        """Exchange an authorization code for tokens.

        Raises:
            TokenExchangeError: If the provider rejects the exchange.
        """

    @abstractmethod
    async def refresh_token(self, refresh_token: str) -> OAuthTokens:
        """Obtain a new access token.

        Raises:
            ReauthorizationRequiredError: The refresh token was rejected
                (``invalid_grant`` and friends).
            TokenRefreshError: Transient failure; worth retrying.
        """

    @abstractmethod
    async def sync_data(
        self,
        access_token: str,
        data_types: list[DataType],
        from_date: datetime,
        to_date: datetime,
    ) -> SyncBatch:
        """Fetch canonical points for ``data_types`` in ``[from_date, to_date]``.

        Must not raise for a per-type failure; see SyncBatch.
        """

    @abstractmethod
    async def validate_token(self, access_token: str) -> bool:
        """Cheap authenticated liveness probe."""

    @abstractmethod
    async def get_user_info(self, access_token: str) -> ProviderUserInfo:
        """Return the provider-side account identity."""

    # ------------------------------------------------------------------
    # Optional webhook support
    # ------------------------------------------------------------------

    @property
    def supports_webhooks(self) -> bool:
        return False

    @property
    def webhook_signature_header(self) -> str | None:
        """Request header carrying the webhook signature."""
        return None

    async def setup_webhook(self, access_token: str, subscription_id: str) -> None:
        """Register push notifications for the connected account."""
        raise NotImplementedError(f"{self.DISPLAY_NAME} does not support webhooks")

    def verify_webhook(self, payload: bytes, signature: str | None) -> bool:
        """Return True if ``signature`` authenticates ``payload``."""
        return False

    def handle_webhook(self, payload: bytes) -> list[WebhookNotification]:
        """Interpret a verified webhook body.

        Raises:
            WebhookPayloadError: If the body cannot be interpreted.
        """
        raise NotImplementedError(f"{self.DISPLAY_NAME} does not support webhooks")

    # ------------------------------------------------------------------
    # Shared helpers available to all adapters
    # ------------------------------------------------------------------

    @staticmethod
    def _safe_int(value: object) -> int | None:
        """Safely coerce a value to int, returning None on failure."""
        if value is None:
            return None
        try:
            return int(value)
        except (TypeError, ValueError):
            return None

    @staticmethod
    def _safe_float(value: object) -> float | None:
        """Safely coerce a value to float, returning None on failure."""
        if value is None:
            return None
        try:
            return float(value)
        except (TypeError, ValueError):
            return None

    @staticmethod
    def _parse_iso_datetime(value: str | None) -> datetime | None:
        """Parse an ISO-8601 date or datetime string to an aware UTC datetime.

        Naive values are assumed to be UTC.  Returns None if the value is None
        or unparseable.
        """
        if not value:
            return None
        try:
            return ensure_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
        except (ValueError, AttributeError):
            logger.warning("Could not parse datetime string: %r", value)
            return None
