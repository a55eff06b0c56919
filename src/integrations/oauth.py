"""OAuth connection lifecycle: authorize, callback, refresh, validate, disconnect.

The flow manager owns flow-state records, PKCE material and token storage.
Provider adapters only build URLs and speak to token endpoints.

Flow::

    request = await oauth.begin_authorization(user_id, ProviderName.FITBIT)
    # user is redirected to request.auth_url, provider calls back with code+state
    integration = await oauth.connect(code, state, ProviderName.FITBIT)
"""

from __future__ import annotations

import asyncio
import base64
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Awaitable, Callable
from uuid import UUID

import httpx
from authlib.oauth2.rfc7636 import create_s256_code_challenge

from src.integrations.base import OAuthTokens, ProviderAdapter, ProviderName, utc_now
from src.integrations.errors import (
    ConfigurationError,
    ExpiredStateError,
    IntegrationError,
    IntegrationInactiveError,
    IntegrationNotFoundError,
    InvalidStateError,
    ReauthorizationRequiredError,
    TokenRefreshError,
)
from src.integrations.records import (
    Integration,
    IntegrationStatus,
    OAuthFlowState,
    SyncStatus,
)
from src.integrations.store import SyncStore
from src.integrations.vault import CredentialVault

logger = logging.getLogger("healthsync.integrations.oauth")

ConnectedCallback = Callable[[Integration], Awaitable[object]]


# ---------------------------------------------------------------------------
# PKCE / state helpers
# ---------------------------------------------------------------------------


def generate_state() -> str:
    """32 random bytes, hex encoded."""
    return secrets.token_hex(32)


def generate_code_verifier() -> str:
    """32 random bytes, base64url without padding (43 chars)."""
    return base64.urlsafe_b64encode(secrets.token_bytes(32)).rstrip(b"=").decode("ascii")


def code_challenge_for(verifier: str) -> str:
    """S256 challenge: base64url(sha256(verifier)) without padding."""
    return create_s256_code_challenge(verifier)


@dataclass(frozen=True)
class AuthorizationRequest:
    auth_url: str
    state: str
    expires_at: datetime


# ---------------------------------------------------------------------------
# Flow manager
# ---------------------------------------------------------------------------


class OAuthFlowManager:
    """Drive OAuth 2.0 connections for every registered provider.

    Args:
        store:                Persistence for flow states and integrations.
        vault:                Encrypts tokens before they are stored.
        adapters:             Provider adapters keyed by provider.
        redirect_base_url:    Public base URL; callbacks land on
                              ``{base}/api/v1/integrations/{provider}/callback``.
        state_ttl:            Lifetime of an authorization request.
        max_refresh_failures: Consecutive transient refresh failures after
                              which the integration needs re-authorization.
        clock:                Returns the current UTC time.
        on_connected:         Awaited with the saved integration after a
                              successful connect (schedules the initial sync).
    """

    def __init__(
        self,
        store: SyncStore,
        vault: CredentialVault,
        adapters: dict[ProviderName, ProviderAdapter],
        *,
        redirect_base_url: str,
        state_ttl: timedelta = timedelta(minutes=10),
        max_refresh_failures: int = 3,
        clock: Callable[[], datetime] = utc_now,
        on_connected: ConnectedCallback | None = None,
    ) -> None:
        self._store = store
        self._vault = vault
        self._adapters = adapters
        self._redirect_base_url = redirect_base_url.rstrip("/")
        self._state_ttl = state_ttl
        self._max_refresh_failures = max_refresh_failures
        self._clock = clock
        self.on_connected = on_connected
        self._refresh_locks: dict[UUID, asyncio.Lock] = {}

    def adapter(self, provider: ProviderName) -> ProviderAdapter:
        try:
            return self._adapters[provider]
        except KeyError:
            raise ConfigurationError(
                f"No adapter registered for provider '{provider}'", provider=str(provider)
            ) from None

    def redirect_uri(self, provider: ProviderName) -> str:
        return f"{self._redirect_base_url}/api/v1/integrations/{provider.value}/callback"

    # ------------------------------------------------------------------
    # Authorization
    # ------------------------------------------------------------------

    async def begin_authorization(
        self,
        user_id: UUID,
        provider: ProviderName,
        scopes: list[str] | None = None,
        redirect_url: str | None = None,
    ) -> AuthorizationRequest:
        """Create a flow state and return the provider authorization URL.

        Args:
            user_id:      Internal user UUID.
            provider:     Provider to connect.
            scopes:       Scopes to request; the provider defaults when None.
            redirect_url: Where the user lands after the callback completes.

        Raises:
            ConfigurationError: The provider's client credentials are missing
                or placeholders.
        """
        adapter = self.adapter(provider)
        if not adapter.is_configured:
            raise ConfigurationError(
                f"{adapter.DISPLAY_NAME} client credentials are not configured",
                provider=provider.value,
            )

        now = self._clock()
        state = generate_state()
        verifier = generate_code_verifier() if adapter.requires_pkce else None
        challenge = code_challenge_for(verifier) if verifier else None
        requested = list(scopes) if scopes else list(adapter.default_scopes)

        flow_state = OAuthFlowState(
            state=state,
            user_id=user_id,
            provider=provider,
            code_verifier=verifier,
            scopes=requested,
            redirect_url=redirect_url,
            created_at=now,
            expires_at=now + self._state_ttl,
        )
        await self._store.create_oauth_state(flow_state)

        auth_url = adapter.build_authorization_url(
            state=state,
            redirect_uri=self.redirect_uri(provider),
            scopes=requested,
            code_challenge=challenge,
        )
        logger.info("Started %s authorization for user %s", provider.value, user_id)
        return AuthorizationRequest(auth_url=auth_url, state=state, expires_at=flow_state.expires_at)

    async def complete_authorization(
        self, code: str, state: str, provider: ProviderName | None = None
    ) -> tuple[OAuthFlowState, OAuthTokens]:
        """Validate the callback state and exchange the code for tokens.

        The state record is consumed before the exchange, so a replayed
        callback fails with ``InvalidStateError`` even if the first one is
        still in flight.

        Raises:
            InvalidStateError:  Unknown, already-used, or wrong-provider state.
            ExpiredStateError:  The state outlived its TTL.
            TokenExchangeError: The provider rejected the code.
        """
        flow_state = await self._store.get_oauth_state(state)
        if flow_state is None:
            logger.warning("OAuth callback with unknown state")
            raise InvalidStateError(
                "Invalid or expired OAuth state", provider=provider.value if provider else None
            )

        if flow_state.is_expired(self._clock()):
            await self._store.consume_oauth_state(state)
            logger.warning(
                "OAuth state for user %s (%s) expired", flow_state.user_id, flow_state.provider.value
            )
            raise ExpiredStateError("OAuth state expired", provider=flow_state.provider.value)

        if provider is not None and flow_state.provider != provider:
            await self._store.consume_oauth_state(state)
            logger.warning(
                "OAuth state issued for %s used on %s callback",
                flow_state.provider.value,
                provider.value,
            )
            raise InvalidStateError("OAuth state/provider mismatch", provider=provider.value)

        if not await self._store.consume_oauth_state(state):
            raise InvalidStateError("OAuth state already used", provider=flow_state.provider.value)

        adapter = self.adapter(flow_state.provider)
        tokens = await adapter.exchange_code(
            code,
            redirect_uri=self.redirect_uri(flow_state.provider),
            code_verifier=flow_state.code_verifier,
        )
        return flow_state, tokens

    async def connect(
        self, code: str, state: str, provider: ProviderName | None = None
    ) -> Integration:
        """Finish an authorization and persist the connected integration.

        Re-uses the existing row for the (user, provider) pair.  Webhook
        registration failures are logged and do not fail the connection.
        """
        flow_state, tokens = await self.complete_authorization(code, state, provider)
        adapter = self.adapter(flow_state.provider)

        external_user_id = tokens.extra.get("user_id")
        try:
            info = await adapter.get_user_info(tokens.access_token)
            external_user_id = info.id
        except IntegrationError as exc:
            logger.warning(
                "Could not fetch %s user info for user %s: %s",
                flow_state.provider.value,
                flow_state.user_id,
                exc,
            )

        now = self._clock()
        integration = await self._store.find_integration(flow_state.user_id, flow_state.provider)
        if integration is None:
            integration = Integration(
                user_id=flow_state.user_id,
                provider=flow_state.provider,
                data_types=list(adapter.supported_data_types),
                created_at=now,
            )

        integration.status = IntegrationStatus.CONNECTED
        integration.access_token = self._vault.encrypt(tokens.access_token)
        integration.refresh_token = self._vault.encrypt_optional(tokens.refresh_token)
        integration.token_expires_at = tokens.expires_at
        integration.scopes = tokens.scope or flow_state.scopes
        integration.external_user_id = (
            str(external_user_id) if external_user_id else integration.external_user_id
        )
        integration.refresh_failures = 0
        integration.last_error = None
        if integration.last_sync_status == SyncStatus.ERROR:
            integration.last_sync_status = SyncStatus.IDLE
        if not integration.data_types:
            integration.data_types = list(adapter.supported_data_types)
        integration.updated_at = now

        saved = await self._store.save_integration(integration)
        logger.info(
            "Connected %s for user %s (integration %s)",
            saved.provider.value,
            saved.user_id,
            saved.id,
        )

        if adapter.supports_webhooks:
            try:
                await adapter.setup_webhook(tokens.access_token, str(saved.id))
            except IntegrationError as exc:
                logger.warning(
                    "Webhook registration failed for %s integration %s: %s",
                    saved.provider.value,
                    saved.id,
                    exc,
                )

        if self.on_connected is not None:
            await self.on_connected(saved)
        return saved

    # ------------------------------------------------------------------
    # Token lifecycle
    # ------------------------------------------------------------------

    async def refresh(
        self, integration_id: UUID, seen_access_token: str | None = None
    ) -> OAuthTokens:
        """Refresh an integration's tokens, one refresh at a time per integration.

        Args:
            integration_id:    Integration to refresh.
            seen_access_token: The stored (encrypted) access token the caller
                               judged stale.  If another refresh replaced it
                               while this call waited for the lock, the
                               current tokens are returned without calling
                               the provider again.

        Raises:
            IntegrationNotFoundError:     No such integration.
            IntegrationInactiveError:     The integration is disconnected, or was
                                          disconnected while the provider call
                                          was in flight.
            ReauthorizationRequiredError: The refresh token is dead, or
                                          transient failures hit the limit.
            TokenRefreshError:            Transient failure.
        """
        lock = self._refresh_locks.setdefault(integration_id, asyncio.Lock())
        async with lock:
            integration = await self._store.get_integration(integration_id)
            if integration is None:
                raise IntegrationNotFoundError(f"Integration {integration_id} not found")
            if integration.status == IntegrationStatus.DISCONNECTED:
                raise IntegrationInactiveError(
                    f"Integration {integration_id} is disconnected",
                    provider=integration.provider.value,
                )

            now = self._clock()
            if (
                seen_access_token is not None
                and integration.access_token
                and integration.access_token != seen_access_token
                and not integration.token_expired(now)
            ):
                logger.debug("Integration %s already refreshed concurrently", integration_id)
                return self._stored_tokens(integration)

            provider = integration.provider.value
            refresh_token = self._vault.decrypt_optional(integration.refresh_token)
            if not refresh_token:
                await self._require_reauthorization(integration, "No refresh token stored")
                raise ReauthorizationRequiredError(
                    "No refresh token stored; reconnect required", provider=provider
                )

            adapter = self.adapter(integration.provider)
            try:
                tokens = await adapter.refresh_token(refresh_token)
            except ReauthorizationRequiredError as exc:
                await self._require_reauthorization(integration, exc.message)
                raise
            except TokenRefreshError as exc:
                failures = integration.refresh_failures + 1
                logger.warning(
                    "Token refresh failed for %s integration %s (%d/%d): %s",
                    provider,
                    integration_id,
                    failures,
                    self._max_refresh_failures,
                    exc,
                )
                if failures >= self._max_refresh_failures:
                    await self._require_reauthorization(
                        integration, f"Token refresh failed {failures} times"
                    )
                    raise ReauthorizationRequiredError(
                        "Token refresh keeps failing; reconnect required", provider=provider
                    ) from exc
                await self._store.update_integration(
                    integration_id,
                    {
                        "refresh_failures": failures,
                        "last_error": exc.message,
                        "updated_at": self._clock(),
                    },
                    unless_status=(IntegrationStatus.DISCONNECTED,),
                )
                raise

            changes = {
                "access_token": self._vault.encrypt(tokens.access_token),
                "token_expires_at": tokens.expires_at,
                "refresh_failures": 0,
                "status": IntegrationStatus.CONNECTED,
                "updated_at": self._clock(),
            }
            if tokens.refresh_token:
                changes["refresh_token"] = self._vault.encrypt(tokens.refresh_token)
            if tokens.scope:
                changes["scopes"] = list(tokens.scope)
            # A disconnect that landed during the provider call wins.
            updated = await self._store.update_integration(
                integration_id, changes, unless_status=(IntegrationStatus.DISCONNECTED,)
            )
            if updated is None:
                logger.info(
                    "Discarding refreshed tokens for %s integration %s: disconnected meanwhile",
                    provider,
                    integration_id,
                )
                raise IntegrationInactiveError(
                    f"Integration {integration_id} was disconnected during token refresh",
                    provider=provider,
                )
            logger.info("Refreshed tokens for %s integration %s", provider, integration_id)
            return tokens

    async def validate(self, access_token: str, provider: ProviderName) -> bool:
        """Cheap authenticated probe.  Network failures count as invalid."""
        try:
            return await self.adapter(provider).validate_token(access_token)
        except (IntegrationError, httpx.HTTPError) as exc:
            logger.info("Token validation for %s failed: %s", provider.value, exc)
            return False

    async def ensure_valid_tokens(self, integration: Integration) -> str:
        """Return a usable plaintext access token, refreshing when needed.

        Raises:
            IntegrationInactiveError:     The integration is not connected.
            ReauthorizationRequiredError: Refresh is impossible.
            TokenRefreshError:            Transient refresh failure.
        """
        if not integration.is_active:
            raise IntegrationInactiveError(
                f"Integration {integration.id} is {integration.status.value}",
                provider=integration.provider.value,
            )

        access_token = self._vault.decrypt_optional(integration.access_token)
        if access_token and not integration.token_expired(self._clock()):
            if await self.validate(access_token, integration.provider):
                return access_token
            logger.info(
                "Stored %s token for integration %s failed validation; refreshing",
                integration.provider.value,
                integration.id,
            )

        tokens = await self.refresh(integration.id, seen_access_token=integration.access_token)
        return tokens.access_token

    # ------------------------------------------------------------------
    # Disconnect / housekeeping
    # ------------------------------------------------------------------

    async def disconnect(self, user_id: UUID, provider: ProviderName) -> Integration:
        """Soft-disable a user's integration; stored data points are kept.

        Raises:
            IntegrationNotFoundError: The user has no such integration.
        """
        integration = await self._store.find_integration(user_id, provider)
        if integration is None:
            raise IntegrationNotFoundError(
                f"No {provider.value} integration for user {user_id}", provider=provider.value
            )
        return await self.disconnect_integration(integration)

    async def disconnect_integration(
        self, integration: Integration, reason: str | None = None
    ) -> Integration:
        changes = {
            "status": IntegrationStatus.DISCONNECTED,
            "access_token": None,
            "refresh_token": None,
            "token_expires_at": None,
            "refresh_failures": 0,
            "last_error": reason,
            "updated_at": self._clock(),
        }
        saved = await self._store.update_integration(integration.id, changes)
        if saved is None:
            raise IntegrationNotFoundError(
                f"Integration {integration.id} not found", provider=integration.provider.value
            )
        cancelled = await self._store.cancel_pending_jobs(integration.id)
        logger.info(
            "Disconnected %s integration %s (%d pending jobs cancelled)",
            integration.provider.value,
            integration.id,
            cancelled,
        )
        return saved

    async def sweep_expired_states(self) -> int:
        deleted = await self._store.delete_expired_oauth_states(self._clock())
        if deleted:
            logger.info("Deleted %d expired OAuth states", deleted)
        return deleted

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _stored_tokens(self, integration: Integration) -> OAuthTokens:
        return OAuthTokens(
            access_token=self._vault.decrypt(integration.access_token or ""),
            refresh_token=self._vault.decrypt_optional(integration.refresh_token),
            expires_at=integration.token_expires_at,
            scope=list(integration.scopes),
        )

    async def _require_reauthorization(self, integration: Integration, reason: str) -> None:
        updated = await self._store.update_integration(
            integration.id,
            {
                "status": IntegrationStatus.ERROR,
                "last_sync_status": SyncStatus.ERROR,
                "last_error": f"Reauthorization required: {reason}",
                "updated_at": self._clock(),
            },
            unless_status=(IntegrationStatus.DISCONNECTED,),
        )
        if updated is None:
            return
        await self._store.cancel_pending_jobs(integration.id)
        logger.warning(
            "%s integration %s needs reauthorization: %s",
            integration.provider.value,
            integration.id,
            reason,
        )
