"""Error hierarchy for the health integration sync core.

Every error carries the provider it relates to (when known) and a
``retryable`` flag that the job scheduler uses to decide between backoff and
terminal failure.

    IntegrationError
    ├── ConfigurationError            missing/placeholder client credentials (fatal)
    ├── CredentialVaultError          stored credential cannot be decrypted (fatal)
    ├── OAuthError
    │   ├── InvalidStateError         unknown / consumed / mismatched callback state
    │   ├── ExpiredStateError         callback arrived after the state TTL
    │   ├── TokenExchangeError        provider rejected the code exchange
    │   ├── TokenRefreshError         transient refresh failure (retryable)
    │   └── ReauthorizationRequiredError  refresh token dead (terminal per integration)
    ├── ProviderAPIError              non-2xx from a provider data endpoint
    ├── ProviderRateLimitError        429 or exhausted request budget (retryable)
    ├── PartialSyncError              some data types failed, others succeeded
    ├── SyncFailedError               every requested data type failed (retryable)
    ├── WebhookVerificationError      signature missing or invalid
    ├── WebhookPayloadError           verified body that cannot be interpreted
    ├── WebhookNotSupportedError      provider has no push notifications
    ├── IntegrationNotFoundError
    └── IntegrationInactiveError      integration is not in the connected state
"""

from __future__ import annotations

from typing import Iterable


class IntegrationError(Exception):
    """Base class for all sync-core errors."""

    retryable: bool = False
    code: str = "integration_error"

    def __init__(self, message: str, provider: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.provider = provider


class ConfigurationError(IntegrationError):
    code = "configuration_error"


class CredentialVaultError(IntegrationError):
    code = "credential_error"


# ---------------------------------------------------------------------------
# OAuth
# ---------------------------------------------------------------------------


class OAuthError(IntegrationError):
    """OAuth flow failure.  ``description`` holds the provider's error body."""

    code = "oauth_error"

    def __init__(
        self,
        message: str,
        provider: str | None = None,
        description: str | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message, provider)
        self.description = description
        self.status_code = status_code


class InvalidStateError(OAuthError):
    code = "invalid_state"


class ExpiredStateError(OAuthError):
    code = "state_expired"


class TokenExchangeError(OAuthError):
    code = "token_exchange_failed"


class TokenRefreshError(OAuthError):
    code = "token_refresh_failed"
    retryable = True


class ReauthorizationRequiredError(OAuthError):
    code = "reauthorization_required"


# ---------------------------------------------------------------------------
# Provider data calls
# ---------------------------------------------------------------------------


class ProviderAPIError(IntegrationError):
    code = "provider_api_error"

    def __init__(
        self, message: str, provider: str | None = None, status_code: int | None = None
    ) -> None:
        super().__init__(message, provider)
        self.status_code = status_code
        # Client errors will not fix themselves on retry; 5xx and transport errors might.
        self.retryable = status_code is None or status_code >= 500


class ProviderRateLimitError(IntegrationError):
    code = "rate_limited"
    retryable = True

    def __init__(
        self, message: str, provider: str | None = None, retry_after: float | None = None
    ) -> None:
        super().__init__(message, provider)
        self.retry_after = retry_after


class PartialSyncError(IntegrationError):
    """Raised for logging only; a partial sync is still a successful sync."""

    code = "partial_sync"

    def __init__(
        self, message: str, provider: str | None = None, failed_types: Iterable[str] = ()
    ) -> None:
        super().__init__(message, provider)
        self.failed_types = list(failed_types)


class SyncFailedError(IntegrationError):
    code = "sync_failed"
    retryable = True


# ---------------------------------------------------------------------------
# Webhooks / lookups
# ---------------------------------------------------------------------------


class WebhookVerificationError(IntegrationError):
    code = "invalid_signature"


class WebhookPayloadError(IntegrationError):
    code = "invalid_payload"


class WebhookNotSupportedError(IntegrationError):
    code = "webhooks_not_supported"


class IntegrationNotFoundError(IntegrationError):
    code = "not_found"


class IntegrationInactiveError(IntegrationError):
    code = "integration_inactive"
