"""Persistent domain records: integrations, OAuth flow states and sync jobs."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from uuid import UUID

from src.integrations.base import DataType, ProviderName, utc_now


class IntegrationStatus(str, Enum):
    CONNECTED = "connected"
    PENDING = "pending"
    DISCONNECTED = "disconnected"
    ERROR = "error"


class SyncStatus(str, Enum):
    IDLE = "idle"
    SYNCING = "syncing"
    COMPLETED = "completed"
    ERROR = "error"


class SyncFrequency(str, Enum):
    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"

    @property
    def interval(self) -> timedelta:
        return {
            SyncFrequency.HOURLY: timedelta(hours=1),
            SyncFrequency.DAILY: timedelta(days=1),
            SyncFrequency.WEEKLY: timedelta(weeks=1),
        }[self]


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class JobTrigger(str, Enum):
    SCHEDULED = "scheduled"
    MANUAL = "manual"
    WEBHOOK = "webhook"
    INITIAL = "initial"


PRIORITY_IMMEDIATE = 1
PRIORITY_NORMAL = 5


# ---------------------------------------------------------------------------
# Integration
# ---------------------------------------------------------------------------


@dataclass
class Integration:
    """One user's connection to one provider.

    At most one row exists per (user_id, provider).  Reconnecting re-uses the
    row; revocation soft-disables it (status ``disconnected``, tokens wiped).

    Attributes:
        access_token:     Vault ciphertext, never plaintext.
        refresh_token:    Vault ciphertext, never plaintext.
        external_user_id: Provider subject id, used to route webhooks.
        refresh_failures: Consecutive transient refresh failures.
    """

    user_id: UUID
    provider: ProviderName
    status: IntegrationStatus = IntegrationStatus.PENDING
    access_token: str | None = None
    refresh_token: str | None = None
    token_expires_at: datetime | None = None
    scopes: list[str] = field(default_factory=list)
    data_types: list[DataType] = field(default_factory=list)
    sync_frequency: SyncFrequency = SyncFrequency.HOURLY
    last_sync_at: datetime | None = None
    last_sync_status: SyncStatus = SyncStatus.IDLE
    last_error: str | None = None
    external_user_id: str | None = None
    refresh_failures: int = 0
    id: UUID = field(default_factory=uuid.uuid4)
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    @property
    def is_active(self) -> bool:
        return self.status == IntegrationStatus.CONNECTED

    def token_expired(self, now: datetime, skew: timedelta = timedelta(seconds=60)) -> bool:
        """True when the stored access token is past (or within ``skew`` of) expiry."""
        if self.token_expires_at is None:
            return False
        return self.token_expires_at - skew <= now

    def is_due(self, now: datetime) -> bool:
        """True when the cadence interval has elapsed since the last sync."""
        if self.last_sync_at is None:
            return True
        return now - self.last_sync_at >= self.sync_frequency.interval


# ---------------------------------------------------------------------------
# OAuth flow state
# ---------------------------------------------------------------------------


@dataclass
class OAuthFlowState:
    """Single-use record tying an authorization callback back to its user."""

    state: str
    user_id: UUID
    provider: ProviderName
    expires_at: datetime
    code_verifier: str | None = None
    scopes: list[str] = field(default_factory=list)
    redirect_url: str | None = None
    created_at: datetime = field(default_factory=utc_now)

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


# ---------------------------------------------------------------------------
# Sync job
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SyncJob:
    """A unit of scheduled sync work.

    Jobs are immutable values; state changes go through the pure transition
    functions in ``src.integrations.sync.jobs`` and are persisted by the store.
    """

    user_id: UUID
    integration_id: UUID
    provider: ProviderName
    data_types: tuple[DataType, ...]
    scheduled_for: datetime
    status: JobStatus = JobStatus.PENDING
    retry_count: int = 0
    max_retries: int = 3
    priority: int = PRIORITY_NORMAL
    trigger: JobTrigger = JobTrigger.SCHEDULED
    from_date: datetime | None = None
    to_date: datetime | None = None
    last_error: str | None = None
    id: UUID = field(default_factory=uuid.uuid4)
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def sort_key(self) -> tuple[int, datetime]:
        return (self.priority, self.scheduled_for)
