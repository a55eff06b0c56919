"""Pydantic models for the integrations API."""

from __future__ import annotations

import uuid
from datetime import datetime

from pydantic import Field, model_validator

from src.integrations.base import DataType, ProviderName
from src.integrations.records import (
    IntegrationStatus,
    JobStatus,
    JobTrigger,
    SyncFrequency,
    SyncStatus,
)
from src.models.base import HealthSyncBase


# ---------- Authorization ----------

class AuthorizeRequest(HealthSyncBase):
    scopes: list[str] | None = None
    redirect_url: str | None = None


class AuthorizeResponse(HealthSyncBase):
    auth_url: str
    state: str
    expires_at: datetime


# ---------- Integrations ----------

class IntegrationRead(HealthSyncBase):
    """An integration as shown to its owner.  Tokens are never included."""

    id: uuid.UUID
    provider: ProviderName
    status: IntegrationStatus
    scopes: list[str] = Field(default_factory=list)
    data_types: list[DataType] = Field(default_factory=list)
    sync_frequency: SyncFrequency
    last_sync_at: datetime | None = None
    last_sync_status: SyncStatus
    last_error: str | None = None
    external_user_id: str | None = None
    token_expires_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class ProviderStatus(HealthSyncBase):
    provider: ProviderName
    display_name: str
    configured: bool
    supports_webhooks: bool
    supported_data_types: list[DataType]
    connected: bool
    integration: IntegrationRead | None = None


class IntegrationUpdate(HealthSyncBase):
    data_types: list[DataType] | None = Field(default=None, min_length=1)
    sync_frequency: SyncFrequency | None = None


# ---------- Sync ----------

class ManualSyncRequest(HealthSyncBase):
    from_date: datetime | None = None
    to_date: datetime | None = None

    @model_validator(mode="after")
    def _check_range(self) -> "ManualSyncRequest":
        if self.from_date and self.to_date and self.from_date > self.to_date:
            raise ValueError("from_date must not be after to_date")
        return self


class SyncResultResponse(HealthSyncBase):
    success: bool
    synced_point_count: int
    fetched_point_count: int = 0
    errors: list[str] = Field(default_factory=list)
    failed_types: list[DataType] = Field(default_factory=list)
    last_sync_time: datetime | None = None


class SyncJobRead(HealthSyncBase):
    id: uuid.UUID
    integration_id: uuid.UUID
    provider: ProviderName
    data_types: list[DataType]
    status: JobStatus
    trigger: JobTrigger
    priority: int
    retry_count: int
    max_retries: int
    scheduled_for: datetime
    from_date: datetime | None = None
    to_date: datetime | None = None
    last_error: str | None = None
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None


class SyncStats(HealthSyncBase):
    pending: int = 0
    running: int = 0
    completed: int = 0
    failed: int = 0
    total: int = 0
