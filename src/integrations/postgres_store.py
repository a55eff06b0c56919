"""asyncpg-backed ``SyncStore``.

Tables are defined in ``schema.sql`` next to this module; call
``PostgresSyncStore.apply_schema()`` once at startup (it is idempotent).
Job claims use ``FOR UPDATE SKIP LOCKED`` so any number of workers can poll
the same table.  Point inserts skip rows matching the unique dedup index, and
``update_integration`` writes single columns under a status guard.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Iterable
from uuid import UUID

import asyncpg

from src.integrations.base import DataType, HealthDataPoint, ProviderName
from src.integrations.records import (
    Integration,
    IntegrationStatus,
    JobStatus,
    JobTrigger,
    OAuthFlowState,
    SyncFrequency,
    SyncJob,
    SyncStatus,
)
from src.integrations.store import DuplicateIntegrationError, SyncStore

logger = logging.getLogger("healthsync.integrations.store.postgres")

_SCHEMA_PATH = Path(__file__).parent / "schema.sql"

_INTEGRATION_COLUMNS = (
    "id, user_id, provider, status, access_token, refresh_token, token_expires_at, "
    "scopes, data_types, sync_frequency, last_sync_at, last_sync_status, last_error, "
    "external_user_id, refresh_failures, created_at, updated_at"
)

# Columns an update may touch; identity columns are fixed at insert.
_UPDATABLE_INTEGRATION_COLUMNS = frozenset(_INTEGRATION_COLUMNS.split(", ")) - {
    "id",
    "user_id",
    "provider",
    "created_at",
}

_JOB_COLUMNS = (
    "id, user_id, integration_id, provider, data_types, scheduled_for, status, "
    "retry_count, max_retries, priority, trigger, from_date, to_date, last_error, "
    "created_at, updated_at, started_at, completed_at"
)


# ---------------------------------------------------------------------------
# Row mapping
# ---------------------------------------------------------------------------


def _integration_from_row(row: asyncpg.Record) -> Integration:
    return Integration(
        id=row["id"],
        user_id=row["user_id"],
        provider=ProviderName(row["provider"]),
        status=IntegrationStatus(row["status"]),
        access_token=row["access_token"],
        refresh_token=row["refresh_token"],
        token_expires_at=row["token_expires_at"],
        scopes=list(row["scopes"] or []),
        data_types=[DataType(dt) for dt in row["data_types"] or []],
        sync_frequency=SyncFrequency(row["sync_frequency"]),
        last_sync_at=row["last_sync_at"],
        last_sync_status=SyncStatus(row["last_sync_status"]),
        last_error=row["last_error"],
        external_user_id=row["external_user_id"],
        refresh_failures=row["refresh_failures"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _column_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, list):
        return [v.value if isinstance(v, Enum) else v for v in value]
    return value


def _state_from_row(row: asyncpg.Record) -> OAuthFlowState:
    return OAuthFlowState(
        state=row["state"],
        user_id=row["user_id"],
        provider=ProviderName(row["provider"]),
        code_verifier=row["code_verifier"],
        scopes=list(row["scopes"] or []),
        redirect_url=row["redirect_url"],
        created_at=row["created_at"],
        expires_at=row["expires_at"],
    )


def _point_from_row(row: asyncpg.Record) -> HealthDataPoint:
    metadata = row["metadata"]
    if isinstance(metadata, str):
        metadata = json.loads(metadata)
    return HealthDataPoint(
        id=row["id"],
        user_id=row["user_id"],
        integration_id=row["integration_id"],
        data_type=DataType(row["data_type"]),
        value=row["value"],
        unit=row["unit"],
        timestamp=row["timestamp"],
        metadata=metadata or {},
    )


def _job_from_row(row: asyncpg.Record) -> SyncJob:
    return SyncJob(
        id=row["id"],
        user_id=row["user_id"],
        integration_id=row["integration_id"],
        provider=ProviderName(row["provider"]),
        data_types=tuple(DataType(dt) for dt in row["data_types"]),
        scheduled_for=row["scheduled_for"],
        status=JobStatus(row["status"]),
        retry_count=row["retry_count"],
        max_retries=row["max_retries"],
        priority=row["priority"],
        trigger=JobTrigger(row["trigger"]),
        from_date=row["from_date"],
        to_date=row["to_date"],
        last_error=row["last_error"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        started_at=row["started_at"],
        completed_at=row["completed_at"],
    )


def _job_args(job: SyncJob) -> tuple:
    return (
        job.id,
        job.user_id,
        job.integration_id,
        job.provider.value,
        [dt.value for dt in job.data_types],
        job.scheduled_for,
        job.status.value,
        job.retry_count,
        job.max_retries,
        job.priority,
        job.trigger.value,
        job.from_date,
        job.to_date,
        job.last_error,
        job.created_at,
        job.updated_at,
        job.started_at,
        job.completed_at,
    )


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class PostgresSyncStore(SyncStore):
    """SyncStore over an asyncpg pool."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def apply_schema(self) -> None:
        sql = _SCHEMA_PATH.read_text(encoding="utf-8")
        async with self._pool.acquire() as conn:
            await conn.execute(sql)
        logger.info("Applied integration schema")

    # -- Integrations -----------------------------------------------------

    async def get_integration(self, integration_id: UUID) -> Integration | None:
        row = await self._pool.fetchrow(
            f"SELECT {_INTEGRATION_COLUMNS} FROM integrations WHERE id = $1", integration_id
        )
        return _integration_from_row(row) if row else None

    async def find_integration(
        self, user_id: UUID, provider: ProviderName
    ) -> Integration | None:
        row = await self._pool.fetchrow(
            f"SELECT {_INTEGRATION_COLUMNS} FROM integrations "
            "WHERE user_id = $1 AND provider = $2",
            user_id,
            provider.value,
        )
        return _integration_from_row(row) if row else None

    async def find_integration_by_subject(
        self, provider: ProviderName, external_user_id: str
    ) -> Integration | None:
        row = await self._pool.fetchrow(
            f"SELECT {_INTEGRATION_COLUMNS} FROM integrations "
            "WHERE provider = $1 AND external_user_id = $2 "
            "ORDER BY (status = 'connected') DESC, updated_at DESC LIMIT 1",
            provider.value,
            external_user_id,
        )
        return _integration_from_row(row) if row else None

    async def list_integrations(self, user_id: UUID) -> list[Integration]:
        rows = await self._pool.fetch(
            f"SELECT {_INTEGRATION_COLUMNS} FROM integrations "
            "WHERE user_id = $1 ORDER BY created_at",
            user_id,
        )
        return [_integration_from_row(r) for r in rows]

    async def list_connected_integrations(self) -> list[Integration]:
        rows = await self._pool.fetch(
            f"SELECT {_INTEGRATION_COLUMNS} FROM integrations WHERE status = 'connected'"
        )
        return [_integration_from_row(r) for r in rows]

    async def save_integration(self, integration: Integration) -> Integration:
        try:
            await self._pool.execute(
                f"INSERT INTO integrations ({_INTEGRATION_COLUMNS}) "
                "VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15, $16, $17) "
                "ON CONFLICT (id) DO UPDATE SET "
                "status = EXCLUDED.status, access_token = EXCLUDED.access_token, "
                "refresh_token = EXCLUDED.refresh_token, "
                "token_expires_at = EXCLUDED.token_expires_at, scopes = EXCLUDED.scopes, "
                "data_types = EXCLUDED.data_types, sync_frequency = EXCLUDED.sync_frequency, "
                "last_sync_at = EXCLUDED.last_sync_at, "
                "last_sync_status = EXCLUDED.last_sync_status, "
                "last_error = EXCLUDED.last_error, external_user_id = EXCLUDED.external_user_id, "
                "refresh_failures = EXCLUDED.refresh_failures, updated_at = EXCLUDED.updated_at",
                integration.id,
                integration.user_id,
                integration.provider.value,
                integration.status.value,
                integration.access_token,
                integration.refresh_token,
                integration.token_expires_at,
                integration.scopes,
                [dt.value for dt in integration.data_types],
                integration.sync_frequency.value,
                integration.last_sync_at,
                integration.last_sync_status.value,
                integration.last_error,
                integration.external_user_id,
                integration.refresh_failures,
                integration.created_at,
                integration.updated_at,
            )
        except asyncpg.UniqueViolationError as exc:
            raise DuplicateIntegrationError(
                f"User {integration.user_id} already has a "
                f"{integration.provider.value} integration"
            ) from exc
        return integration

    async def update_integration(
        self,
        integration_id: UUID,
        changes: dict[str, Any],
        unless_status: Iterable[IntegrationStatus] = (),
    ) -> Integration | None:
        unknown = set(changes) - _UPDATABLE_INTEGRATION_COLUMNS
        if not changes or unknown:
            raise ValueError(f"Cannot update integration fields: {sorted(unknown) or 'none given'}")
        columns = list(changes)
        assignments = ", ".join(f"{col} = ${i}" for i, col in enumerate(columns, start=3))
        row = await self._pool.fetchrow(
            f"UPDATE integrations SET {assignments} "
            "WHERE id = $1 AND NOT (status = ANY($2::text[])) "
            f"RETURNING {_INTEGRATION_COLUMNS}",
            integration_id,
            [s.value for s in unless_status],
            *(_column_value(changes[col]) for col in columns),
        )
        return _integration_from_row(row) if row else None

    # -- OAuth flow states ------------------------------------------------

    async def create_oauth_state(self, flow_state: OAuthFlowState) -> None:
        await self._pool.execute(
            "INSERT INTO oauth_states "
            "(state, user_id, provider, code_verifier, scopes, redirect_url, created_at, expires_at) "
            "VALUES ($1, $2, $3, $4, $5, $6, $7, $8)",
            flow_state.state,
            flow_state.user_id,
            flow_state.provider.value,
            flow_state.code_verifier,
            flow_state.scopes,
            flow_state.redirect_url,
            flow_state.created_at,
            flow_state.expires_at,
        )

    async def get_oauth_state(self, state: str) -> OAuthFlowState | None:
        row = await self._pool.fetchrow("SELECT * FROM oauth_states WHERE state = $1", state)
        return _state_from_row(row) if row else None

    async def consume_oauth_state(self, state: str) -> bool:
        deleted = await self._pool.fetchval(
            "DELETE FROM oauth_states WHERE state = $1 RETURNING state", state
        )
        return deleted is not None

    async def delete_expired_oauth_states(self, now: datetime) -> int:
        rows = await self._pool.fetch(
            "DELETE FROM oauth_states WHERE expires_at <= $1 RETURNING state", now
        )
        return len(rows)

    # -- Data points ------------------------------------------------------

    async def insert_points(self, points: list[HealthDataPoint]) -> int:
        if not points:
            return 0
        # health_data_points_dedup_idx rejects points already stored by another sync.
        rows = await self._pool.fetch(
            "INSERT INTO health_data_points "
            "(id, user_id, integration_id, data_type, value, unit, timestamp, metadata) "
            "SELECT u.id, u.user_id, u.integration_id, u.data_type, u.value, u.unit, "
            "u.timestamp, u.metadata::jsonb "
            "FROM unnest($1::uuid[], $2::uuid[], $3::uuid[], $4::text[], $5::float8[], "
            "$6::text[], $7::timestamptz[], $8::text[]) "
            "AS u(id, user_id, integration_id, data_type, value, unit, timestamp, metadata) "
            "ON CONFLICT DO NOTHING RETURNING id",
            [p.id for p in points],
            [p.user_id for p in points],
            [p.integration_id for p in points],
            [p.data_type.value for p in points],
            [p.value for p in points],
            [p.unit for p in points],
            [p.timestamp for p in points],
            [json.dumps(p.metadata, default=str) for p in points],
        )
        skipped = len(points) - len(rows)
        if skipped:
            logger.debug("Skipped %d points already stored", skipped)
        return len(rows)

    async def fetch_points(
        self,
        user_id: UUID,
        integration_id: UUID,
        start: datetime,
        end: datetime,
        data_types: Iterable[DataType] | None = None,
    ) -> list[HealthDataPoint]:
        query = (
            "SELECT id, user_id, integration_id, data_type, value, unit, timestamp, metadata "
            "FROM health_data_points "
            "WHERE user_id = $1 AND integration_id = $2 AND timestamp BETWEEN $3 AND $4"
        )
        args: list = [user_id, integration_id, start, end]
        if data_types is not None:
            query += " AND data_type = ANY($5::text[])"
            args.append([dt.value for dt in data_types])
        rows = await self._pool.fetch(query + " ORDER BY timestamp", *args)
        return [_point_from_row(r) for r in rows]

    # -- Jobs -------------------------------------------------------------

    async def create_job(self, job: SyncJob) -> SyncJob:
        await self._pool.execute(
            f"INSERT INTO sync_jobs ({_JOB_COLUMNS}) "
            "VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15, $16, $17, $18)",
            *_job_args(job),
        )
        return job

    async def get_job(self, job_id: UUID) -> SyncJob | None:
        row = await self._pool.fetchrow(
            f"SELECT {_JOB_COLUMNS} FROM sync_jobs WHERE id = $1", job_id
        )
        return _job_from_row(row) if row else None

    async def update_job(self, job: SyncJob, expected_status: JobStatus | None = None) -> bool:
        query = (
            "UPDATE sync_jobs SET scheduled_for = $2, status = $3, retry_count = $4, "
            "priority = $5, last_error = $6, updated_at = $7, started_at = $8, "
            "completed_at = $9 WHERE id = $1"
        )
        args: list = [
            job.id,
            job.scheduled_for,
            job.status.value,
            job.retry_count,
            job.priority,
            job.last_error,
            job.updated_at,
            job.started_at,
            job.completed_at,
        ]
        if expected_status is not None:
            query += " AND status = $10"
            args.append(expected_status.value)
        result = await self._pool.execute(query, *args)
        return result.endswith(" 1")

    async def claim_next_job(self, now: datetime) -> SyncJob | None:
        row = await self._pool.fetchrow(
            "UPDATE sync_jobs SET status = 'running', started_at = $1, updated_at = $1 "
            "WHERE id = ("
            "  SELECT id FROM sync_jobs "
            "  WHERE status = 'pending' AND scheduled_for <= $1 "
            "  ORDER BY priority, scheduled_for "
            "  LIMIT 1 FOR UPDATE SKIP LOCKED"
            f") RETURNING {_JOB_COLUMNS}",
            now,
        )
        return _job_from_row(row) if row else None

    async def list_jobs(
        self,
        status: JobStatus | None = None,
        integration_id: UUID | None = None,
    ) -> list[SyncJob]:
        clauses: list[str] = []
        args: list = []
        if status is not None:
            args.append(status.value)
            clauses.append(f"status = ${len(args)}")
        if integration_id is not None:
            args.append(integration_id)
            clauses.append(f"integration_id = ${len(args)}")
        where = f"WHERE {' AND '.join(clauses)} " if clauses else ""
        rows = await self._pool.fetch(
            f"SELECT {_JOB_COLUMNS} FROM sync_jobs {where}ORDER BY priority, scheduled_for",
            *args,
        )
        return [_job_from_row(r) for r in rows]

    async def has_open_job(self, integration_id: UUID) -> bool:
        return await self._pool.fetchval(
            "SELECT EXISTS (SELECT 1 FROM sync_jobs "
            "WHERE integration_id = $1 AND status IN ('pending', 'running'))",
            integration_id,
        )

    async def delete_pending_job(self, job_id: UUID) -> bool:
        deleted = await self._pool.fetchval(
            "DELETE FROM sync_jobs WHERE id = $1 AND status = 'pending' RETURNING id", job_id
        )
        return deleted is not None

    async def cancel_pending_jobs(self, integration_id: UUID) -> int:
        rows = await self._pool.fetch(
            "DELETE FROM sync_jobs WHERE integration_id = $1 AND status = 'pending' RETURNING id",
            integration_id,
        )
        return len(rows)

    async def delete_terminal_jobs(self, older_than: datetime) -> int:
        rows = await self._pool.fetch(
            "DELETE FROM sync_jobs WHERE status IN ('completed', 'failed') "
            "AND updated_at < $1 RETURNING id",
            older_than,
        )
        return len(rows)

    async def job_counts(self) -> dict[JobStatus, int]:
        rows = await self._pool.fetch(
            "SELECT status, COUNT(*) AS n FROM sync_jobs GROUP BY status"
        )
        counts = {JobStatus(r["status"]): r["n"] for r in rows}
        return {status: counts.get(status, 0) for status in JobStatus}
