"""Tests for the Google Fit adapter."""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs

import httpx
import pytest

from src.integrations.adapters.google_fit import DATA_SOURCES, GoogleFitAdapter
from src.integrations.base import DataType, ProviderName
from src.integrations.config_loader import load_sync_config
from src.integrations.errors import ProviderAPIError
from src.integrations.tests.conftest import T0, FixedClock

START = datetime(2026, 2, 22, 22, 0, tzinfo=timezone.utc)


def ns(value: datetime) -> str:
    return str(int(value.timestamp()) * 1_000_000_000)


def segment(offset_minutes: int, length_minutes: int, **value) -> dict:
    begin = START + timedelta(minutes=offset_minutes)
    return {
        "startTimeNanos": ns(begin),
        "endTimeNanos": ns(begin + timedelta(minutes=length_minutes)),
        "dataTypeName": "com.google.test",
        "value": [value],
    }


def make_adapter(handler=None) -> GoogleFitAdapter:
    config = replace(load_sync_config().provider(ProviderName.GOOGLE_FIT), request_delay_ms=0)
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler)) if handler else None
    return GoogleFitAdapter(
        config, "google-client", "google-secret", http_client=client, clock=FixedClock()
    )


class TestGoogleFitNormalization:
    def test_steps_use_int_values(self) -> None:
        data = {"dataSourceId": DATA_SOURCES[DataType.STEPS], "point": [
            segment(0, 15, intVal=420),
            segment(15, 15, intVal=0),
        ]}

        points = make_adapter().normalize_dataset(data, DataType.STEPS)

        assert [(p.value, p.timestamp) for p in points] == [(420, START)]
        assert points[0].metadata["source"] == "google_fit"
        assert points[0].metadata["duration"] == 15
        assert points[0].metadata["additional"]["data_source_id"] == DATA_SOURCES[DataType.STEPS]

    def test_heart_rate_uses_float_values(self) -> None:
        data = {"point": [segment(0, 0, fpVal=61.5)]}
        points = make_adapter().normalize_dataset(data, DataType.HEART_RATE)
        assert [(p.value, p.unit) for p in points] == [(61.5, "bpm")]

    def test_sleep_counts_segments_but_not_awake_time(self) -> None:
        data = {"point": [
            segment(0, 60, intVal=4),    # light
            segment(60, 10, intVal=1),   # awake
            segment(70, 30, intVal=5),   # deep
            segment(100, 5, intVal=3),   # out of bed
        ]}

        points = make_adapter().normalize_dataset(data, DataType.SLEEP)

        assert [p.value for p in points] == [60, 30]
        assert all(p.unit == "minutes" for p in points)

    def test_exercise_excludes_still_and_sleep(self) -> None:
        data = {"point": [
            segment(0, 45, intVal=8),     # running
            segment(45, 120, intVal=3),   # still
            segment(165, 400, intVal=72), # sleeping
        ]}
        points = make_adapter().normalize_dataset(data, DataType.EXERCISE)
        assert [p.value for p in points] == [45]

    def test_points_without_start_are_dropped(self) -> None:
        data = {"point": [{"endTimeNanos": ns(START), "value": [{"intVal": 10}]}]}
        assert make_adapter().normalize_dataset(data, DataType.STEPS) == []


class TestGoogleFitOAuth:
    def test_authorization_url_requests_offline_access(self) -> None:
        url = httpx.URL(
            make_adapter().build_authorization_url(
                "state-1", "https://api.example.com/cb", ["scope-a"], "challenge"
            )
        )
        assert url.host == "accounts.google.com"
        assert url.params["access_type"] == "offline"
        assert url.params["prompt"] == "consent"
        assert url.params["code_challenge_method"] == "S256"

    @pytest.mark.asyncio
    async def test_exchange_sends_credentials_in_body(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"access_token": "ya29", "expires_in": 3599})

        tokens = await make_adapter(handler).exchange_code("code", "https://api.example.com/cb", "v")

        form = parse_qs(seen[0].content.decode())
        assert form["client_id"] == ["google-client"]
        assert form["client_secret"] == ["google-secret"]
        assert "Authorization" not in seen[0].headers
        assert tokens.refresh_token is None
        assert tokens.expires_at == T0 + timedelta(seconds=3599)


class TestGoogleFitSync:
    @pytest.mark.asyncio
    async def test_dataset_url_uses_nanosecond_range(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"point": [segment(0, 15, intVal=99)]})

        from_date = T0 - timedelta(days=1)
        batch = await make_adapter(handler).sync_data("token", [DataType.STEPS], from_date, T0)

        assert seen[0].url.path == (
            f"/fitness/v1/users/me/dataSources/{DATA_SOURCES[DataType.STEPS]}"
            f"/datasets/{ns(from_date)}-{ns(T0)}"
        )
        assert [p.value for p in batch.points] == [99]

    @pytest.mark.asyncio
    async def test_user_info(self) -> None:
        seen: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(str(request.url))
            return httpx.Response(200, json={"id": "1098", "name": "Sam", "email": "sam@test.dev"})

        info = await make_adapter(handler).get_user_info("token")

        assert seen == ["https://www.googleapis.com/oauth2/v2/userinfo"]
        assert (info.id, info.email) == ("1098", "sam@test.dev")

    @pytest.mark.asyncio
    async def test_user_info_without_id(self) -> None:
        with pytest.raises(ProviderAPIError):
            await make_adapter(lambda r: httpx.Response(200, json={})).get_user_info("token")

    def test_no_webhooks(self) -> None:
        adapter = make_adapter()
        assert not adapter.supports_webhooks
        assert adapter.webhook_signature_header is None
