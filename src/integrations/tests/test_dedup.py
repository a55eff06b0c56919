"""Tests for DeduplicationEngine."""

from __future__ import annotations

from datetime import timedelta
from uuid import uuid4

import pytest

from src.integrations.base import DataType, HealthDataPoint
from src.integrations.dedup import DeduplicationEngine, dedup_key, payload_content_hash
from src.integrations.tests.conftest import T0, TEST_USER_ID, steps_points


def _bound(points: list[HealthDataPoint], integration_id) -> list[HealthDataPoint]:
    return [p.bind(TEST_USER_ID, integration_id) for p in points]


class TestDedupKey:
    def test_key_ignores_source_and_unit_metadata(self) -> None:
        a = HealthDataPoint(DataType.STEPS, 120, "steps", T0, metadata={"source": "fitbit"})
        b = HealthDataPoint(DataType.STEPS, 120.0, "steps", T0, metadata={"source": "other"})
        assert dedup_key(a) == dedup_key(b)

    def test_millisecond_resolution(self) -> None:
        a = HealthDataPoint(DataType.STEPS, 1, "steps", T0)
        b = HealthDataPoint(DataType.STEPS, 1, "steps", T0 + timedelta(milliseconds=1))
        assert dedup_key(a) != dedup_key(b)

    def test_payload_hash_is_key_order_independent(self) -> None:
        assert payload_content_hash({"a": 1, "b": 2}) == payload_content_hash({"b": 2, "a": 1})


class TestDeduplicate:
    @pytest.mark.asyncio
    async def test_overlapping_batches_are_idempotent(self, store) -> None:
        integration_id = uuid4()
        dedup = DeduplicationEngine(store)

        first = await dedup.deduplicate(_bound(steps_points(10), integration_id))
        await store.insert_points(first)
        # Second window overlaps the first by five points.
        second = await dedup.deduplicate(_bound(steps_points(15)[5:], integration_id))

        assert len(first) == 10
        assert len(second) == 5

    @pytest.mark.asyncio
    async def test_in_batch_duplicates_collapse(self, store) -> None:
        integration_id = uuid4()
        batch = _bound(steps_points(3) + steps_points(3), integration_id)

        fresh = await DeduplicationEngine(store).deduplicate(batch)

        assert [p.value for p in fresh] == [100, 101, 102]
        assert fresh == batch[:3]

    @pytest.mark.asyncio
    async def test_other_integration_is_not_a_duplicate(self, store) -> None:
        dedup = DeduplicationEngine(store)
        await store.insert_points(_bound(steps_points(3), uuid4()))

        fresh = await dedup.deduplicate(_bound(steps_points(3), uuid4()))

        assert len(fresh) == 3

    @pytest.mark.asyncio
    async def test_same_timestamp_different_value_is_kept(self, store) -> None:
        integration_id = uuid4()
        await store.insert_points(_bound(steps_points(1), integration_id))
        changed = HealthDataPoint(DataType.STEPS, 999, "steps", T0 - timedelta(days=1))

        fresh = await DeduplicationEngine(store).deduplicate(_bound([changed], integration_id))

        assert len(fresh) == 1

    @pytest.mark.asyncio
    async def test_unbound_points_are_rejected(self, store) -> None:
        with pytest.raises(ValueError):
            await DeduplicationEngine(store).deduplicate(steps_points(1))

    @pytest.mark.asyncio
    async def test_empty_batch(self, store) -> None:
        assert await DeduplicationEngine(store).deduplicate([]) == []
