"""Shared OAuth 2.0 / REST plumbing for provider adapters.

``OAuth2Adapter`` implements everything the providers have in common:
authorization URLs, token endpoint calls, error classification, request
budgets, inter-request pacing and the per-data-type sync loop.  Concrete
adapters supply endpoint mapping and payload normalization through
``_fetch_data_type``, ``validate_token`` and ``get_user_info``.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import time
from abc import abstractmethod
from collections import deque
from datetime import datetime, timedelta
from email.utils import parsedate_to_datetime
from typing import Any, Callable

import httpx

from src.integrations.base import (
    DataType,
    HealthDataPoint,
    OAuthTokens,
    ProviderAdapter,
    SyncBatch,
    utc_now,
)
from src.integrations.config_loader import ProviderConfig, is_valid_credential
from src.integrations.errors import (
    IntegrationError,
    ProviderAPIError,
    ProviderRateLimitError,
    ReauthorizationRequiredError,
    TokenExchangeError,
    TokenRefreshError,
)

logger = logging.getLogger("healthsync.integrations.adapters")

# Token endpoint error codes meaning the grant is gone for good.
REAUTH_ERROR_CODES = frozenset({"invalid_grant", "invalid_token", "unauthorized_client"})


class RequestBudget:
    """Sliding one-hour request window per access token.

    Tokens are tracked by SHA-256 digest so plaintext never sits in memory
    longer than a request.
    """

    def __init__(
        self,
        limit: int,
        window: timedelta = timedelta(hours=1),
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._limit = limit
        self._window = window
        self._clock = clock
        self._calls: dict[str, deque[datetime]] = {}

    @staticmethod
    def _key(access_token: str) -> str:
        return hashlib.sha256(access_token.encode("utf-8")).hexdigest()

    def acquire(self, access_token: str) -> float | None:
        """Record a request.  Returns None if allowed, else seconds to wait."""
        now = self._clock()
        calls = self._calls.setdefault(self._key(access_token), deque())
        while calls and now - calls[0] >= self._window:
            calls.popleft()
        if len(calls) >= self._limit:
            return max((calls[0] + self._window - now).total_seconds(), 1.0)
        calls.append(now)
        return None

    def remaining(self, access_token: str) -> int:
        now = self._clock()
        calls = self._calls.get(self._key(access_token), deque())
        return self._limit - sum(1 for t in calls if now - t < self._window)


class OAuth2Adapter(ProviderAdapter):
    """Base class for OAuth 2.0 authorization-code providers.

    Args:
        config:        Provider block from sync_config.yaml.
        client_id:     OAuth client id.
        client_secret: OAuth client secret.
        http_client:   Optional pre-configured httpx client (for testing).
        timeout:       Per-request timeout in seconds.
        clock:         Returns the current UTC time.
    """

    def __init__(
        self,
        config: ProviderConfig,
        client_id: str | None,
        client_secret: str | None,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._config = config
        self._client_id = client_id or ""
        self._client_secret = client_secret or ""
        self._http_client = http_client
        self._timeout = httpx.Timeout(timeout)
        self._clock = clock
        self._budget = RequestBudget(config.requests_per_hour, clock=clock)
        self._request_delay = config.request_delay_ms / 1000.0
        self._last_request_at: float | None = None

    # ------------------------------------------------------------------
    # Static capabilities
    # ------------------------------------------------------------------

    @property
    def is_configured(self) -> bool:
        return is_valid_credential(self._client_id) and is_valid_credential(self._client_secret)

    @property
    def requires_pkce(self) -> bool:
        return self._config.requires_pkce

    @property
    def default_scopes(self) -> list[str]:
        return list(self._config.scopes)

    @property
    def supported_data_types(self) -> list[DataType]:
        return list(self._config.supported_data_types)

    @property
    def supports_webhooks(self) -> bool:
        return self._config.webhooks.supported

    @property
    def webhook_signature_header(self) -> str | None:
        return self._config.webhooks.signature_header

    # ------------------------------------------------------------------
    # OAuth
    # ------------------------------------------------------------------

    def build_authorization_url(
        self,
        state: str,
        redirect_uri: str,
        scopes: list[str],
        code_challenge: str | None = None,
    ) -> str:
        params: dict[str, str] = {
            "response_type": "code",
            "client_id": self._client_id,
            "redirect_uri": redirect_uri,
            "scope": " ".join(scopes),
            "state": state,
        }
        if code_challenge:
            params["code_challenge"] = code_challenge
            params["code_challenge_method"] = "S256"
        params.update(self._config.extra_auth_params)
        return str(httpx.URL(self._config.auth_url, params=params))

    async def exchange_code(
        self, code: str, redirect_uri: str, code_verifier: str | None = None
    ) -> OAuthTokens:
        data = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
        }
        if code_verifier:
            data["code_verifier"] = code_verifier

        try:
            response = await self._token_request(data)
        except httpx.HTTPError as exc:
            raise TokenExchangeError(
                f"{self.DISPLAY_NAME} token endpoint unreachable: {exc}",
                provider=self.PROVIDER.value,
            ) from exc

        if response.status_code >= 400:
            error, description = self._token_error(response)
            logger.warning(
                "%s code exchange rejected (%d %s)", self.DISPLAY_NAME, response.status_code, error
            )
            raise TokenExchangeError(
                f"{self.DISPLAY_NAME} rejected the authorization code: {error}",
                provider=self.PROVIDER.value,
                description=description,
                status_code=response.status_code,
            )
        return self._parse_tokens(response, TokenExchangeError)

    async def refresh_token(self, refresh_token: str) -> OAuthTokens:
        data = {"grant_type": "refresh_token", "refresh_token": refresh_token}
        try:
            response = await self._token_request(data)
        except httpx.HTTPError as exc:
            raise TokenRefreshError(
                f"{self.DISPLAY_NAME} token endpoint unreachable: {exc}",
                provider=self.PROVIDER.value,
            ) from exc

        if response.status_code >= 400:
            error, description = self._token_error(response)
            if response.status_code in (400, 401) and error in REAUTH_ERROR_CODES:
                raise ReauthorizationRequiredError(
                    f"{self.DISPLAY_NAME} refresh token rejected: {error}",
                    provider=self.PROVIDER.value,
                    description=description,
                    status_code=response.status_code,
                )
            raise TokenRefreshError(
                f"{self.DISPLAY_NAME} token refresh failed: {response.status_code} {error}",
                provider=self.PROVIDER.value,
                description=description,
                status_code=response.status_code,
            )
        return self._parse_tokens(response, TokenRefreshError, fallback_refresh_token=refresh_token)

    async def _token_request(self, data: dict[str, str]) -> httpx.Response:
        data = {**data, "client_id": self._client_id}
        auth: httpx.Auth | None = None
        if self._config.token_auth_method == "basic":
            auth = httpx.BasicAuth(self._client_id, self._client_secret)
        elif self._client_secret:
            data["client_secret"] = self._client_secret
        return await self._send(
            "POST",
            self._config.token_url,
            data=data,
            auth=auth,
            headers={"Accept": "application/json"},
        )

    @staticmethod
    def _token_error(response: httpx.Response) -> tuple[str, str | None]:
        """Pull the RFC 6749 error code (or a provider variant) out of an error body."""
        try:
            body = response.json()
        except ValueError:
            return "unknown_error", response.text[:200] or None
        if not isinstance(body, dict):
            return "unknown_error", None
        if body.get("error"):
            return str(body["error"]), body.get("error_description")
        errors = body.get("errors")
        if isinstance(errors, list) and errors and isinstance(errors[0], dict):
            return str(errors[0].get("errorType", "unknown_error")), errors[0].get("message")
        return "unknown_error", None

    def _parse_tokens(
        self,
        response: httpx.Response,
        error_cls: type[IntegrationError],
        fallback_refresh_token: str | None = None,
    ) -> OAuthTokens:
        try:
            return OAuthTokens.from_token_response(
                response.json(), self._clock(), fallback_refresh_token
            )
        except (ValueError, KeyError, TypeError) as exc:
            raise error_cls(
                f"{self.DISPLAY_NAME} returned a malformed token response",
                provider=self.PROVIDER.value,
            ) from exc

    # ------------------------------------------------------------------
    # Data sync
    # ------------------------------------------------------------------

    async def sync_data(
        self,
        access_token: str,
        data_types: list[DataType],
        from_date: datetime,
        to_date: datetime,
    ) -> SyncBatch:
        batch = SyncBatch()
        supported = set(self.supported_data_types)

        for index, data_type in enumerate(data_types):
            if data_type not in supported:
                logger.info("%s does not provide %s; skipping", self.DISPLAY_NAME, data_type.value)
                continue
            try:
                points = await self._fetch_data_type(
                    access_token, data_type, from_date, to_date, batch
                )
            except ProviderRateLimitError as exc:
                logger.warning(
                    "%s rate limited while fetching %s (%s → %s); retry after %s s",
                    self.DISPLAY_NAME,
                    data_type.value,
                    from_date.isoformat(),
                    to_date.isoformat(),
                    exc.retry_after,
                )
                batch.rate_limited = True
                batch.retry_after = exc.retry_after
                batch.errors[data_type] = exc.message
                for skipped in data_types[index + 1:]:
                    if skipped in supported:
                        batch.errors.setdefault(skipped, "Skipped: rate limited")
                break
            except (IntegrationError, KeyError, TypeError, ValueError) as exc:
                logger.warning(
                    "%s fetch of %s (%s → %s) failed: %s",
                    self.DISPLAY_NAME,
                    data_type.value,
                    from_date.isoformat(),
                    to_date.isoformat(),
                    exc,
                )
                batch.errors[data_type] = str(exc)
                continue
            batch.points.extend(points)

        logger.info(
            "%s sync fetched %d points (%d types failed, %d requests)",
            self.DISPLAY_NAME,
            len(batch.points),
            len(batch.errors),
            batch.requests_made,
        )
        return batch

    @abstractmethod
    async def _fetch_data_type(
        self,
        access_token: str,
        data_type: DataType,
        from_date: datetime,
        to_date: datetime,
        batch: SyncBatch,
    ) -> list[HealthDataPoint]:
        """Fetch one data type over [from_date, to_date], recording request counts on ``batch``."""

    # ------------------------------------------------------------------
    # HTTP helpers
    # ------------------------------------------------------------------

    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        if self._http_client:
            return await self._http_client.request(method, url, timeout=self._timeout, **kwargs)
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            return await client.request(method, url, **kwargs)

    async def _pace(self) -> None:
        """Sleep so consecutive provider requests are ``request_delay_ms`` apart."""
        if self._request_delay <= 0:
            return
        if self._last_request_at is not None:
            elapsed = time.monotonic() - self._last_request_at
            if elapsed < self._request_delay:
                await asyncio.sleep(self._request_delay - elapsed)
        self._last_request_at = time.monotonic()

    def _retry_after(self, response: httpx.Response) -> float | None:
        """Seconds to wait from a 429 response's ``Retry-After`` header."""
        value = response.headers.get("Retry-After")
        if not value:
            return None
        try:
            return float(value)
        except ValueError:
            pass
        try:
            when = parsedate_to_datetime(value)
        except (TypeError, ValueError):
            return None
        return max((when - self._clock()).total_seconds(), 0.0)

    async def _api_request(
        self,
        method: str,
        url: str,
        access_token: str,
        batch: SyncBatch | None = None,
        **kwargs: Any,
    ) -> httpx.Response:
        """Authenticated provider call with budget, pacing and error mapping.

        Raises:
            ProviderRateLimitError: 429 from the provider or the hourly budget
                for this token is spent.
            ProviderAPIError:       Transport failure or any other non-2xx.
        """
        wait = self._budget.acquire(access_token)
        if wait is not None:
            raise ProviderRateLimitError(
                f"{self.DISPLAY_NAME} request budget exhausted "
                f"({self._config.requests_per_hour}/hour)",
                provider=self.PROVIDER.value,
                retry_after=wait,
            )

        await self._pace()
        headers = {
            "Authorization": f"Bearer {access_token}",
            "Accept": "application/json",
            **kwargs.pop("headers", {}),
        }
        if batch is not None:
            batch.requests_made += 1

        try:
            response = await self._send(method, url, headers=headers, **kwargs)
        except httpx.HTTPError as exc:
            raise ProviderAPIError(
                f"{self.DISPLAY_NAME} request failed: {exc.__class__.__name__}",
                provider=self.PROVIDER.value,
            ) from exc

        if response.status_code == 429:
            raise ProviderRateLimitError(
                f"{self.DISPLAY_NAME} rate limit exceeded",
                provider=self.PROVIDER.value,
                retry_after=self._retry_after(response),
            )
        if response.status_code >= 400:
            raise ProviderAPIError(
                f"{self.DISPLAY_NAME} API error: {response.status_code}",
                provider=self.PROVIDER.value,
                status_code=response.status_code,
            )
        return response

    async def _get_json(
        self,
        url: str,
        access_token: str,
        batch: SyncBatch | None = None,
        params: dict | None = None,
    ) -> dict:
        response = await self._api_request("GET", url, access_token, batch, params=params)
        return response.json() if response.content else {}

    async def _probe(self, url: str, access_token: str) -> bool:
        """Authenticated GET used by ``validate_token``.  Any failure means invalid."""
        try:
            await self._api_request("GET", url, access_token)
        except IntegrationError as exc:
            logger.debug("%s token probe failed: %s", self.DISPLAY_NAME, exc)
            return False
        return True
