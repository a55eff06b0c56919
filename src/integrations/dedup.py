"""Deduplication of canonical data points before persistence.

The same measurement reaches us through overlapping sync windows, retries,
webhook pushes and manual syncs.  A point is a duplicate when a persisted
point for the same user and integration has the same key:

    (data_type, value, timestamp in epoch milliseconds)

Existing points are looked up in the span of the incoming batch widened by
the dedup window on each side.
"""

from __future__ import annotations

import hashlib
import json
import logging
from collections import defaultdict
from datetime import timedelta
from uuid import UUID

from src.integrations.base import DataType, HealthDataPoint
from src.integrations.store import SyncStore

logger = logging.getLogger("healthsync.integrations.dedup")

DEFAULT_WINDOW = timedelta(minutes=5)

DedupKey = tuple[DataType, float, int]


def dedup_key(point: HealthDataPoint) -> DedupKey:
    """Identity of a point within one user/integration stream."""
    return (point.data_type, point.value, point.timestamp_ms)


def payload_content_hash(payload: dict) -> str:
    """Compute a content hash of a raw provider record.

    Stored as ``metadata["raw_ref"]`` so a persisted point can be traced
    back to the provider payload it came from.

    Args:
        payload: The raw API record.

    Returns:
        SHA-256 hex digest of the canonicalized JSON.
    """
    # Sort keys for deterministic serialization
    canonical = json.dumps(payload, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


class DeduplicationEngine:
    """Filter out points that are already persisted or repeated in a batch.

    Usage::

        engine = DeduplicationEngine(store)
        fresh = await engine.deduplicate(points)
        await store.insert_points(fresh)

    Errors raised by the store while reading existing points propagate; a
    batch is never inserted unchecked.
    """

    def __init__(self, store: SyncStore, window: timedelta = DEFAULT_WINDOW) -> None:
        self._store = store
        self._window = window

    async def deduplicate(self, points: list[HealthDataPoint]) -> list[HealthDataPoint]:
        """Return the subset of ``points`` not already stored, order preserved.

        Every point must be bound to a user and integration.

        Raises:
            ValueError: If a point has no user_id or integration_id.
        """
        if not points:
            return []

        groups: dict[tuple[UUID, UUID], list[HealthDataPoint]] = defaultdict(list)
        for point in points:
            if point.user_id is None or point.integration_id is None:
                raise ValueError("Cannot deduplicate a point without user_id/integration_id")
            groups[(point.user_id, point.integration_id)].append(point)

        keep: set[int] = set()
        for (user_id, integration_id), group in groups.items():
            start = min(p.timestamp for p in group) - self._window
            end = max(p.timestamp for p in group) + self._window
            data_types = {p.data_type for p in group}
            existing = await self._store.fetch_points(
                user_id, integration_id, start, end, data_types
            )
            seen: set[DedupKey] = {dedup_key(p) for p in existing}

            for point in group:
                key = dedup_key(point)
                if key in seen:
                    continue
                seen.add(key)
                keep.add(id(point))

        fresh = [p for p in points if id(p) in keep]
        dropped = len(points) - len(fresh)
        if dropped:
            logger.debug("Dedup dropped %d of %d points", dropped, len(points))
        return fresh
