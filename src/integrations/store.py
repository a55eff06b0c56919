"""Persistence interface for integrations, OAuth flow states, data points and jobs.

``SyncStore`` is the seam between the sync core and its database.  Two
implementations ship: ``InMemorySyncStore`` (tests, single-process dev) and
``PostgresSyncStore`` in ``postgres_store.py``.

Every job state change made by a worker goes through ``update_job`` with the
status the worker expects to find, so two workers (or a worker and the
reaper) can never both win the same transition.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from abc import ABC, abstractmethod
from collections import Counter
from dataclasses import replace
from datetime import datetime
from typing import Any, Iterable
from uuid import UUID

from src.integrations.base import DataType, HealthDataPoint, ProviderName
from src.integrations.records import (
    Integration,
    IntegrationStatus,
    JobStatus,
    OAuthFlowState,
    SyncJob,
)
from src.integrations.sync.jobs import start as start_job

logger = logging.getLogger("healthsync.integrations.store")


class DuplicateIntegrationError(ValueError):
    """A second Integration row for the same (user, provider) pair."""


class SyncStore(ABC):
    """Abstract persistence for the sync core."""

    # ------------------------------------------------------------------
    # Integrations
    # ------------------------------------------------------------------

    @abstractmethod
    async def get_integration(self, integration_id: UUID) -> Integration | None: ...

    @abstractmethod
    async def find_integration(
        self, user_id: UUID, provider: ProviderName
    ) -> Integration | None: ...

    @abstractmethod
    async def find_integration_by_subject(
        self, provider: ProviderName, external_user_id: str
    ) -> Integration | None:
        """Look up the integration a provider-side account id belongs to."""

    @abstractmethod
    async def list_integrations(self, user_id: UUID) -> list[Integration]: ...

    @abstractmethod
    async def list_connected_integrations(self) -> list[Integration]: ...

    @abstractmethod
    async def save_integration(self, integration: Integration) -> Integration:
        """Insert or update an integration.

        Raises:
            DuplicateIntegrationError: If a different row already exists for
                the same (user_id, provider).
        """

    @abstractmethod
    async def update_integration(
        self,
        integration_id: UUID,
        changes: dict[str, Any],
        unless_status: Iterable[IntegrationStatus] = (),
    ) -> Integration | None:
        """Write only the named fields of a stored integration.

        The check against ``unless_status`` and the write happen atomically,
        so a row that was disconnected while the caller awaited the network
        is left alone.

        Returns:
            The updated integration, or None if it does not exist or its
            current status is in ``unless_status``.
        """

    # ------------------------------------------------------------------
    # OAuth flow states
    # ------------------------------------------------------------------

    @abstractmethod
    async def create_oauth_state(self, flow_state: OAuthFlowState) -> None: ...

    @abstractmethod
    async def get_oauth_state(self, state: str) -> OAuthFlowState | None: ...

    @abstractmethod
    async def consume_oauth_state(self, state: str) -> bool:
        """Delete a flow state.  Returns False if it was already gone."""

    @abstractmethod
    async def delete_expired_oauth_states(self, now: datetime) -> int: ...

    # ------------------------------------------------------------------
    # Data points
    # ------------------------------------------------------------------

    @abstractmethod
    async def insert_points(self, points: list[HealthDataPoint]) -> int:
        """Insert points, skipping any whose dedup key is already stored.

        The key is (user_id, integration_id, data_type, value, timestamp).
        Returns the number of rows actually inserted.
        """

    @abstractmethod
    async def fetch_points(
        self,
        user_id: UUID,
        integration_id: UUID,
        start: datetime,
        end: datetime,
        data_types: Iterable[DataType] | None = None,
    ) -> list[HealthDataPoint]:
        """Return persisted points with ``start <= timestamp <= end``."""

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    @abstractmethod
    async def create_job(self, job: SyncJob) -> SyncJob: ...

    @abstractmethod
    async def get_job(self, job_id: UUID) -> SyncJob | None: ...

    @abstractmethod
    async def update_job(self, job: SyncJob, expected_status: JobStatus | None = None) -> bool:
        """Persist ``job``.

        When ``expected_status`` is given the write only happens if the stored
        job is still in that status.  Returns whether the write happened.
        """

    @abstractmethod
    async def claim_next_job(self, now: datetime) -> SyncJob | None:
        """Atomically move the most urgent due pending job to ``running``.

        Most urgent is the lowest ``(priority, scheduled_for)``.
        """

    @abstractmethod
    async def list_jobs(
        self,
        status: JobStatus | None = None,
        integration_id: UUID | None = None,
    ) -> list[SyncJob]: ...

    @abstractmethod
    async def has_open_job(self, integration_id: UUID) -> bool:
        """True if a pending or running job exists for the integration."""

    @abstractmethod
    async def delete_pending_job(self, job_id: UUID) -> bool:
        """Delete a job only if it is still pending."""

    @abstractmethod
    async def cancel_pending_jobs(self, integration_id: UUID) -> int: ...

    @abstractmethod
    async def delete_terminal_jobs(self, older_than: datetime) -> int: ...

    @abstractmethod
    async def job_counts(self) -> dict[JobStatus, int]: ...

    async def close(self) -> None:
        """Release resources.  No-op by default."""


# ---------------------------------------------------------------------------
# In-memory implementation
# ---------------------------------------------------------------------------


def _point_key(point: HealthDataPoint) -> tuple:
    return (
        point.user_id,
        point.integration_id,
        point.data_type,
        point.value,
        point.timestamp_ms,
    )


class InMemorySyncStore(SyncStore):
    """Process-local store guarded by a single ``asyncio.Lock``.

    Integrations are copied on the way in and out so callers never share
    mutable state with the store.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._integrations: dict[UUID, Integration] = {}
        self._states: dict[str, OAuthFlowState] = {}
        self._points: dict[UUID, HealthDataPoint] = {}
        self._point_keys: set[tuple] = set()
        self._jobs: dict[UUID, SyncJob] = {}

    async def get_integration(self, integration_id: UUID) -> Integration | None:
        async with self._lock:
            found = self._integrations.get(integration_id)
            return copy.deepcopy(found) if found else None

    async def find_integration(
        self, user_id: UUID, provider: ProviderName
    ) -> Integration | None:
        async with self._lock:
            for integration in self._integrations.values():
                if integration.user_id == user_id and integration.provider == provider:
                    return copy.deepcopy(integration)
            return None

    async def find_integration_by_subject(
        self, provider: ProviderName, external_user_id: str
    ) -> Integration | None:
        async with self._lock:
            matches = [
                i
                for i in self._integrations.values()
                if i.provider == provider and i.external_user_id == external_user_id
            ]
            # A subject can be linked to several users over time; prefer the live one.
            matches.sort(key=lambda i: (not i.is_active, -i.updated_at.timestamp()))
            return copy.deepcopy(matches[0]) if matches else None

    async def list_integrations(self, user_id: UUID) -> list[Integration]:
        async with self._lock:
            rows = [i for i in self._integrations.values() if i.user_id == user_id]
            return [copy.deepcopy(i) for i in sorted(rows, key=lambda i: i.created_at)]

    async def list_connected_integrations(self) -> list[Integration]:
        async with self._lock:
            return [
                copy.deepcopy(i)
                for i in self._integrations.values()
                if i.status == IntegrationStatus.CONNECTED
            ]

    async def save_integration(self, integration: Integration) -> Integration:
        async with self._lock:
            for other in self._integrations.values():
                if (
                    other.id != integration.id
                    and other.user_id == integration.user_id
                    and other.provider == integration.provider
                ):
                    raise DuplicateIntegrationError(
                        f"User {integration.user_id} already has a "
                        f"{integration.provider.value} integration"
                    )
            self._integrations[integration.id] = copy.deepcopy(integration)
            return copy.deepcopy(integration)

    async def update_integration(
        self,
        integration_id: UUID,
        changes: dict[str, Any],
        unless_status: Iterable[IntegrationStatus] = (),
    ) -> Integration | None:
        async with self._lock:
            current = self._integrations.get(integration_id)
            if current is None or current.status in set(unless_status):
                return None
            updated = replace(current, **copy.deepcopy(changes))
            self._integrations[integration_id] = updated
            return copy.deepcopy(updated)

    # -- OAuth flow states ------------------------------------------------

    async def create_oauth_state(self, flow_state: OAuthFlowState) -> None:
        async with self._lock:
            if flow_state.state in self._states:
                raise ValueError("OAuth state collision")
            self._states[flow_state.state] = copy.deepcopy(flow_state)

    async def get_oauth_state(self, state: str) -> OAuthFlowState | None:
        async with self._lock:
            found = self._states.get(state)
            return copy.deepcopy(found) if found else None

    async def consume_oauth_state(self, state: str) -> bool:
        async with self._lock:
            return self._states.pop(state, None) is not None

    async def delete_expired_oauth_states(self, now: datetime) -> int:
        async with self._lock:
            expired = [s for s, fs in self._states.items() if fs.is_expired(now)]
            for s in expired:
                del self._states[s]
            return len(expired)

    # -- Data points ------------------------------------------------------

    async def insert_points(self, points: list[HealthDataPoint]) -> int:
        async with self._lock:
            inserted = 0
            for point in points:
                key = _point_key(point)
                if point.id in self._points or key in self._point_keys:
                    continue
                self._points[point.id] = copy.deepcopy(point)
                self._point_keys.add(key)
                inserted += 1
            return inserted

    async def fetch_points(
        self,
        user_id: UUID,
        integration_id: UUID,
        start: datetime,
        end: datetime,
        data_types: Iterable[DataType] | None = None,
    ) -> list[HealthDataPoint]:
        wanted = set(data_types) if data_types is not None else None
        async with self._lock:
            rows = [
                p
                for p in self._points.values()
                if p.user_id == user_id
                and p.integration_id == integration_id
                and start <= p.timestamp <= end
                and (wanted is None or p.data_type in wanted)
            ]
            return [copy.deepcopy(p) for p in sorted(rows, key=lambda p: p.timestamp)]

    # -- Jobs -------------------------------------------------------------

    async def create_job(self, job: SyncJob) -> SyncJob:
        async with self._lock:
            self._jobs[job.id] = job
            return job

    async def get_job(self, job_id: UUID) -> SyncJob | None:
        async with self._lock:
            return self._jobs.get(job_id)

    async def update_job(self, job: SyncJob, expected_status: JobStatus | None = None) -> bool:
        async with self._lock:
            current = self._jobs.get(job.id)
            if current is None:
                return False
            if expected_status is not None and current.status != expected_status:
                return False
            self._jobs[job.id] = job
            return True

    async def claim_next_job(self, now: datetime) -> SyncJob | None:
        async with self._lock:
            due = [
                j
                for j in self._jobs.values()
                if j.status == JobStatus.PENDING and j.scheduled_for <= now
            ]
            if not due:
                return None
            job = min(due, key=lambda j: j.sort_key)
            claimed = start_job(job, now)
            self._jobs[job.id] = claimed
            return claimed

    async def list_jobs(
        self,
        status: JobStatus | None = None,
        integration_id: UUID | None = None,
    ) -> list[SyncJob]:
        async with self._lock:
            rows = [
                j
                for j in self._jobs.values()
                if (status is None or j.status == status)
                and (integration_id is None or j.integration_id == integration_id)
            ]
            return sorted(rows, key=lambda j: j.sort_key)

    async def has_open_job(self, integration_id: UUID) -> bool:
        async with self._lock:
            return any(
                j.integration_id == integration_id and not j.status.is_terminal
                for j in self._jobs.values()
            )

    async def delete_pending_job(self, job_id: UUID) -> bool:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status != JobStatus.PENDING:
                return False
            del self._jobs[job_id]
            return True

    async def cancel_pending_jobs(self, integration_id: UUID) -> int:
        async with self._lock:
            doomed = [
                j.id
                for j in self._jobs.values()
                if j.integration_id == integration_id and j.status == JobStatus.PENDING
            ]
            for job_id in doomed:
                del self._jobs[job_id]
            return len(doomed)

    async def delete_terminal_jobs(self, older_than: datetime) -> int:
        async with self._lock:
            doomed = [
                j.id
                for j in self._jobs.values()
                if j.status.is_terminal and j.updated_at < older_than
            ]
            for job_id in doomed:
                del self._jobs[job_id]
            return len(doomed)

    async def job_counts(self) -> dict[JobStatus, int]:
        async with self._lock:
            counts = Counter(j.status for j in self._jobs.values())
            return {status: counts.get(status, 0) for status in JobStatus}
