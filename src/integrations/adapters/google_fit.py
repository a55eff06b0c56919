"""Google Fit REST API adapter (pull only).

Environment variables:
    GOOGLE_FIT_CLIENT_ID     - OAuth2 client ID
    GOOGLE_FIT_CLIENT_SECRET - OAuth2 client secret

API base: https://www.googleapis.com/fitness/v1

Endpoints used:
    /users/me/dataSources                                  - Token probe
    /users/me/dataSources/{id}/datasets/{startNs}-{endNs}  - Raw datasets
    https://www.googleapis.com/oauth2/v2/userinfo          - Account identity

Offline access (a refresh token) requires ``access_type=offline`` and
``prompt=consent`` on the authorization request; both come from
sync_config.yaml.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from urllib.parse import quote

from src.integrations.adapters.oauth2 import OAuth2Adapter
from src.integrations.base import (
    CANONICAL_UNITS,
    DataType,
    HealthDataPoint,
    ProviderName,
    ProviderUserInfo,
    SyncBatch,
)
from src.integrations.dedup import payload_content_hash
from src.integrations.errors import ProviderAPIError

logger = logging.getLogger("healthsync.integrations.google_fit")

_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"

# Canonical data type → merged data source id
DATA_SOURCES: dict[DataType, str] = {
    DataType.STEPS: "derived:com.google.step_count.delta:com.google.android.gms:estimated_steps",
    DataType.HEART_RATE: "derived:com.google.heart_rate.bpm:com.google.android.gms:merge_heart_rate_bpm",
    DataType.CALORIES: "derived:com.google.calories.expended:com.google.android.gms:merge_calories_expended",
    DataType.WEIGHT: "derived:com.google.weight:com.google.android.gms:merge_weight",
    DataType.SLEEP: "derived:com.google.sleep.segment:com.google.android.gms:merged",
    DataType.EXERCISE: "derived:com.google.activity.segment:com.google.android.gms:merge_activity_segments",
}

# Activity segment types that are not exercise (still, sleeping, unknown)
_NON_EXERCISE_ACTIVITIES = {3, 4, 72, 109, 110, 111, 112}

# Sleep segment stages that are not sleep (awake, out-of-bed)
_AWAKE_SLEEP_STAGES = {1, 3}


def _to_nanos(value: datetime) -> int:
    return int(value.timestamp()) * 1_000_000_000 + value.microsecond * 1_000


def _from_nanos(value: str | int | None) -> datetime | None:
    try:
        nanos = int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None
    return datetime.fromtimestamp(nanos / 1_000_000_000, tz=timezone.utc)


class GoogleFitAdapter(OAuth2Adapter):
    """Google Fit adapter.  One dataset request per data type; no webhooks."""

    PROVIDER = ProviderName.GOOGLE_FIT
    DISPLAY_NAME = "Google Fit"

    async def _fetch_data_type(
        self,
        access_token: str,
        data_type: DataType,
        from_date: datetime,
        to_date: datetime,
        batch: SyncBatch,
    ) -> list[HealthDataPoint]:
        source_id = DATA_SOURCES.get(data_type)
        if source_id is None:
            raise ProviderAPIError(
                f"Google Fit has no data source for {data_type.value}",
                provider=self.PROVIDER.value,
            )
        url = (
            f"{self._config.api_base_url}/users/me/dataSources/{quote(source_id, safe='')}"
            f"/datasets/{_to_nanos(from_date)}-{_to_nanos(to_date)}"
        )
        data = await self._get_json(url, access_token, batch)
        return self.normalize_dataset(data, data_type)

    def normalize_dataset(self, data: dict, data_type: DataType) -> list[HealthDataPoint]:
        """Convert a dataset response into canonical points.

        Args:
            data:      ``{"dataSourceId": ..., "point": [...]}`` response body.
            data_type: Data type the dataset was requested for.

        Returns:
            Points with a positive value; other points are dropped.
        """
        points = []
        for raw in data.get("point", []):
            start = _from_nanos(raw.get("startTimeNanos"))
            end = _from_nanos(raw.get("endTimeNanos"))
            values = raw.get("value") or [{}]
            first = values[0] if values else {}
            if start is None:
                continue

            duration = (end - start).total_seconds() / 60 if end else None
            if data_type == DataType.STEPS:
                value = self._safe_float(first.get("intVal"))
            elif data_type in (DataType.HEART_RATE, DataType.CALORIES, DataType.WEIGHT):
                value = self._safe_float(first.get("fpVal"))
            elif data_type == DataType.SLEEP:
                # intVal is the sleep stage; the segment length is the measurement
                value = duration if first.get("intVal") not in _AWAKE_SLEEP_STAGES else None
            elif data_type == DataType.EXERCISE:
                value = duration if first.get("intVal") not in _NON_EXERCISE_ACTIVITIES else None
            else:
                value = None

            if not value or value <= 0:
                continue

            metadata: dict = {
                "source": self.PROVIDER.value,
                "confidence": 1.0,
                "raw_ref": payload_content_hash(raw),
                "additional": {
                    "data_source_id": data.get("dataSourceId"),
                    "data_type_name": raw.get("dataTypeName"),
                    "origin_data_source_id": raw.get("originDataSourceId"),
                },
            }
            if duration is not None:
                metadata["duration"] = duration
            points.append(
                HealthDataPoint(
                    data_type=data_type,
                    value=value,
                    unit=CANONICAL_UNITS[data_type],
                    timestamp=start,
                    metadata=metadata,
                )
            )
        return points

    async def validate_token(self, access_token: str) -> bool:
        return await self._probe(f"{self._config.api_base_url}/users/me/dataSources", access_token)

    async def get_user_info(self, access_token: str) -> ProviderUserInfo:
        url = self._config.userinfo_url or _USERINFO_URL
        data = await self._get_json(url, access_token)
        if not data.get("id"):
            raise ProviderAPIError("Google userinfo has no id", provider=self.PROVIDER.value)
        return ProviderUserInfo(id=str(data["id"]), name=data.get("name"), email=data.get("email"))
