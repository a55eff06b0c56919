"""Fitbit Web API adapter.

OAuth 2.0 authorization code flow with PKCE; client credentials go to the
token endpoint as HTTP Basic auth.

Environment variables:
    FITBIT_CLIENT_ID                     - OAuth2 client ID
    FITBIT_CLIENT_SECRET                 - OAuth2 client secret (also the webhook signing key)
    FITBIT_SUBSCRIBER_VERIFICATION_CODE  - Subscriber endpoint verification code

API base: https://api.fitbit.com

Endpoints used:
    /1/user/-/activities/steps/date/{start}/{end}.json     - Daily steps
    /1/user/-/activities/heart/date/{start}/{end}.json     - Daily resting heart rate
    /1/user/-/activities/calories/date/{start}/{end}.json  - Daily calories burned
    /1/user/-/body/weight/date/{start}/{end}.json          - Weight (kg, metric locale)
    /1.2/user/-/sleep/date/{start}/{end}.json              - Sleep logs
    /1/user/-/activities/list.json                         - Logged exercise
    /1/user/-/profile.json                                 - Token probe / user id
    /1/user/-/{collection}/apiSubscriptions/{id}.json      - Webhook subscriptions

Rate limit: 150 requests per hour per user token.
"""

from __future__ import annotations

import asyncio
import base64
import hashlib
import hmac
import json
import logging
from datetime import datetime, time, timedelta, timezone

import httpx

from src.integrations.adapters.oauth2 import OAuth2Adapter
from src.integrations.base import (
    CANONICAL_UNITS,
    DataType,
    HealthDataPoint,
    ProviderName,
    ProviderUserInfo,
    SyncBatch,
    WebhookNotification,
)
from src.integrations.dedup import payload_content_hash
from src.integrations.errors import IntegrationError, ProviderAPIError, WebhookPayloadError

logger = logging.getLogger("healthsync.integrations.fitbit")

# Daily time series resources and the response key that holds them
_TIME_SERIES: dict[DataType, tuple[str, str]] = {
    DataType.STEPS: ("activities/steps", "activities-steps"),
    DataType.CALORIES: ("activities/calories", "activities-calories"),
    DataType.WEIGHT: ("body/weight", "body-weight"),
}

# Subscription collection → data types a notification for it affects
_COLLECTION_TYPES: dict[str, list[DataType]] = {
    "activities": [DataType.STEPS, DataType.CALORIES, DataType.HEART_RATE, DataType.EXERCISE],
    "sleep": [DataType.SLEEP],
    "body": [DataType.WEIGHT],
    "foods": [],
}

_REVOCATION_TYPES = {"userRevokedAccess", "deleteUser"}


class FitbitAdapter(OAuth2Adapter):
    """Fitbit adapter: the reference implementation, including webhooks.

    Fitbit's subscriber API pushes a lightweight "something changed"
    notification (collection + date + owner); the data itself is fetched by
    a follow-up sync job.
    """

    PROVIDER = ProviderName.FITBIT
    DISPLAY_NAME = "Fitbit"

    # ------------------------------------------------------------------
    # Data fetch
    # ------------------------------------------------------------------

    async def _fetch_data_type(
        self,
        access_token: str,
        data_type: DataType,
        from_date: datetime,
        to_date: datetime,
        batch: SyncBatch,
    ) -> list[HealthDataPoint]:
        start = from_date.date().isoformat()
        end = to_date.date().isoformat()
        base = self._config.api_base_url

        if data_type in _TIME_SERIES:
            resource, key = _TIME_SERIES[data_type]
            data = await self._get_json(
                f"{base}/1/user/-/{resource}/date/{start}/{end}.json", access_token, batch
            )
            return self.normalize_time_series(data.get(key, []), data_type)

        if data_type == DataType.HEART_RATE:
            data = await self._get_json(
                f"{base}/1/user/-/activities/heart/date/{start}/{end}.json", access_token, batch
            )
            return self.normalize_heart_rate(data.get("activities-heart", []))

        if data_type == DataType.SLEEP:
            data = await self._get_json(
                f"{base}/1.2/user/-/sleep/date/{start}/{end}.json", access_token, batch
            )
            return self.normalize_sleep(data.get("sleep", []))

        if data_type == DataType.EXERCISE:
            return await self._fetch_exercise(access_token, from_date, to_date, batch)

        raise ProviderAPIError(
            f"Fitbit has no endpoint for {data_type.value}", provider=self.PROVIDER.value
        )

    async def _fetch_exercise(
        self, access_token: str, from_date: datetime, to_date: datetime, batch: SyncBatch
    ) -> list[HealthDataPoint]:
        """Walk the paginated activity log forward from ``from_date``."""
        url: str | None = f"{self._config.api_base_url}/1/user/-/activities/list.json"
        params: dict | None = {
            "afterDate": from_date.date().isoformat(),
            "sort": "asc",
            "offset": 0,
            "limit": 100,
        }
        points: list[HealthDataPoint] = []
        while url:
            data = await self._get_json(url, access_token, batch, params=params)
            activities = data.get("activities", [])
            page = self.normalize_exercise(activities)
            points.extend(p for p in page if p.timestamp <= to_date)
            if not activities or any(p.timestamp > to_date for p in page):
                break
            url = (data.get("pagination") or {}).get("next") or None
            params = None  # the next link carries its own query
        return points

    # ------------------------------------------------------------------
    # Normalization
    # ------------------------------------------------------------------

    def _day_start(self, value: str | None) -> datetime | None:
        """Fitbit daily series are keyed by ``yyyy-MM-dd``; pin them to 00:00 UTC."""
        if not value:
            return None
        try:
            day = datetime.strptime(value, "%Y-%m-%d").date()
        except ValueError:
            logger.warning("Could not parse Fitbit date: %r", value)
            return None
        return datetime.combine(day, time.min, tzinfo=timezone.utc)

    def _point(
        self,
        data_type: DataType,
        value: float,
        timestamp: datetime,
        raw: dict,
        **extra: object,
    ) -> HealthDataPoint:
        metadata: dict = {
            "source": self.PROVIDER.value,
            "confidence": 1.0,
            "raw_ref": payload_content_hash(raw),
        }
        if "duration" in extra:
            metadata["duration"] = extra.pop("duration")
        if extra:
            metadata["additional"] = extra
        return HealthDataPoint(
            data_type=data_type,
            value=value,
            unit=CANONICAL_UNITS[data_type],
            timestamp=timestamp,
            metadata=metadata,
        )

    def normalize_time_series(self, entries: list[dict], data_type: DataType) -> list[HealthDataPoint]:
        """Convert ``[{"dateTime": ..., "value": "1234"}]`` series; zero days are skipped."""
        points = []
        for entry in entries:
            value = self._safe_float(entry.get("value"))
            timestamp = self._day_start(entry.get("dateTime"))
            if not value or value <= 0 or timestamp is None:
                continue
            if data_type == DataType.STEPS:
                value = float(int(value))
            points.append(self._point(data_type, value, timestamp, entry))
        return points

    def normalize_heart_rate(self, entries: list[dict]) -> list[HealthDataPoint]:
        """Daily resting heart rate; days without a resting value are skipped."""
        points = []
        for entry in entries:
            value = entry.get("value") or {}
            resting = self._safe_float(value.get("restingHeartRate"))
            timestamp = self._day_start(entry.get("dateTime"))
            if not resting or timestamp is None:
                continue
            points.append(
                self._point(
                    DataType.HEART_RATE,
                    resting,
                    timestamp,
                    entry,
                    measurement="resting",
                    zones=value.get("heartRateZones", []),
                )
            )
        return points

    def normalize_sleep(self, logs: list[dict]) -> list[HealthDataPoint]:
        """One point per sleep log: total duration in minutes at the log's start time."""
        points = []
        for log in logs:
            duration_ms = self._safe_int(log.get("duration"))
            start = self._parse_iso_datetime(log.get("startTime"))
            if not duration_ms or duration_ms <= 0 or start is None:
                continue
            minutes = duration_ms / 60_000
            points.append(
                self._point(
                    DataType.SLEEP,
                    minutes,
                    start,
                    log,
                    duration=minutes,
                    log_id=log.get("logId"),
                    efficiency=log.get("efficiency"),
                    minutes_asleep=log.get("minutesAsleep"),
                    is_main_sleep=log.get("isMainSleep"),
                    stages=(log.get("levels") or {}).get("summary"),
                )
            )
        return points

    def normalize_exercise(self, activities: list[dict]) -> list[HealthDataPoint]:
        """One point per logged activity: duration in minutes at its start time."""
        points = []
        for activity in activities:
            duration_ms = self._safe_int(activity.get("duration"))
            start = self._parse_iso_datetime(activity.get("startTime"))
            if start is None and activity.get("startDate"):
                start = self._parse_iso_datetime(
                    f"{activity['startDate']}T{activity.get('startTime', '00:00')}"
                )
            if not duration_ms or duration_ms <= 0 or start is None:
                continue
            minutes = duration_ms / 60_000
            points.append(
                self._point(
                    DataType.EXERCISE,
                    minutes,
                    start,
                    activity,
                    duration=minutes,
                    log_id=activity.get("logId"),
                    activity_name=activity.get("activityName"),
                    calories=activity.get("calories"),
                    steps=activity.get("steps"),
                    distance=activity.get("distance"),
                )
            )
        return points

    # ------------------------------------------------------------------
    # Identity
    # ------------------------------------------------------------------

    async def validate_token(self, access_token: str) -> bool:
        return await self._probe(f"{self._config.api_base_url}/1/user/-/profile.json", access_token)

    async def get_user_info(self, access_token: str) -> ProviderUserInfo:
        data = await self._get_json(f"{self._config.api_base_url}/1/user/-/profile.json", access_token)
        user = data.get("user") or {}
        if not user.get("encodedId"):
            raise ProviderAPIError("Fitbit profile has no user id", provider=self.PROVIDER.value)
        return ProviderUserInfo(
            id=user["encodedId"],
            name=user.get("displayName") or user.get("fullName"),
        )

    def _retry_after(self, response: httpx.Response) -> float | None:
        # Fitbit reports the reset in its own header and usually omits Retry-After.
        retry_after = super()._retry_after(response)
        if retry_after is not None:
            return retry_after
        reset = response.headers.get("Fitbit-Rate-Limit-Reset")
        try:
            return float(reset) if reset else None
        except ValueError:
            return None

    # ------------------------------------------------------------------
    # Webhooks (Fitbit Subscriber API)
    # ------------------------------------------------------------------

    async def setup_webhook(self, access_token: str, subscription_id: str) -> None:
        """Subscribe to every configured collection for the connected user.

        A 409 means the subscription already exists and counts as success.

        Raises:
            ProviderAPIError: If no collection could be subscribed.
        """
        collections = self._config.webhooks.collections
        delay = self._config.webhooks.subscription_delay_ms / 1000.0
        subscribed = 0
        for index, collection in enumerate(collections):
            if index and delay:
                await asyncio.sleep(delay)
            url = (
                f"{self._config.api_base_url}/1/user/-/{collection}"
                f"/apiSubscriptions/{subscription_id}-{collection}.json"
            )
            try:
                await self._api_request("POST", url, access_token)
            except ProviderAPIError as exc:
                if exc.status_code == 409:
                    subscribed += 1
                    continue
                logger.warning("Fitbit %s subscription failed: %s", collection, exc)
                continue
            except IntegrationError as exc:
                logger.warning("Fitbit %s subscription failed: %s", collection, exc)
                continue
            subscribed += 1
            logger.info("Fitbit subscription created for %s (%s)", collection, subscription_id)

        if collections and not subscribed:
            raise ProviderAPIError(
                "Fitbit webhook subscription failed for every collection",
                provider=self.PROVIDER.value,
            )

    def verify_webhook(self, payload: bytes, signature: str | None) -> bool:
        """Check ``X-Fitbit-Signature``: base64(HMAC-SHA1(client_secret + "&", body))."""
        if not signature or not self._client_secret:
            return False
        key = f"{self._client_secret}&".encode("utf-8")
        expected = base64.b64encode(hmac.new(key, payload, hashlib.sha1).digest()).decode("ascii")
        return hmac.compare_digest(expected, signature.strip())

    def handle_webhook(self, payload: bytes) -> list[WebhookNotification]:
        """Parse a Fitbit notification list.

        Format::

            [{"collectionType": "activities", "date": "2024-01-01",
              "ownerId": "ABC123", "ownerType": "user", "subscriptionId": "..."}]
        """
        try:
            body = json.loads(payload)
        except (ValueError, UnicodeDecodeError) as exc:
            raise WebhookPayloadError("Fitbit webhook body is not JSON", provider=self.PROVIDER.value) from exc

        entries = body if isinstance(body, list) else [body]
        notifications = []
        for entry in entries:
            if not isinstance(entry, dict):
                raise WebhookPayloadError(
                    "Fitbit webhook entry is not an object", provider=self.PROVIDER.value
                )
            owner = entry.get("ownerId") or entry.get("userId") or entry.get("user_id")
            if not owner:
                raise WebhookPayloadError(
                    "Fitbit webhook entry has no ownerId", provider=self.PROVIDER.value
                )
            collection = entry.get("collectionType", "")
            subscription_id = entry.get("subscriptionId")

            if collection in _REVOCATION_TYPES:
                notifications.append(
                    WebhookNotification(
                        external_user_id=str(owner), revoked=True, subscription_id=subscription_id
                    )
                )
                continue

            data_types = _COLLECTION_TYPES.get(collection)
            if data_types is None:
                logger.info("Ignoring Fitbit notification for collection %r", collection)
                continue
            supported = [dt for dt in data_types if dt in self.supported_data_types]
            if not supported:
                continue

            day = self._day_start(entry.get("date"))
            notifications.append(
                WebhookNotification(
                    external_user_id=str(owner),
                    data_types=supported,
                    from_date=day,
                    to_date=day + timedelta(days=1) - timedelta(seconds=1) if day else None,
                    subscription_id=subscription_id,
                )
            )
        return notifications
