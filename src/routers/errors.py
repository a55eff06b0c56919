"""Map sync-core errors onto HTTP responses."""

from __future__ import annotations

from fastapi import HTTPException

from src.integrations.errors import (
    ConfigurationError,
    IntegrationError,
    IntegrationInactiveError,
    IntegrationNotFoundError,
    OAuthError,
    ProviderRateLimitError,
    ReauthorizationRequiredError,
    WebhookNotSupportedError,
    WebhookPayloadError,
    WebhookVerificationError,
)

_STATUS_BY_ERROR: list[tuple[type[IntegrationError], int]] = [
    (IntegrationNotFoundError, 404),
    (WebhookNotSupportedError, 404),
    (IntegrationInactiveError, 409),
    (ReauthorizationRequiredError, 409),
    (ConfigurationError, 503),
    (WebhookVerificationError, 400),
    (WebhookPayloadError, 400),
    (OAuthError, 400),
    (ProviderRateLimitError, 429),
]


def to_http_exception(exc: IntegrationError) -> HTTPException:
    """Translate an ``IntegrationError``; anything unlisted is a 502."""
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            break
    else:
        status_code = 502

    headers = None
    retry_after = getattr(exc, "retry_after", None)
    if status_code == 429 and retry_after:
        headers = {"Retry-After": str(int(retry_after))}
    return HTTPException(
        status_code=status_code,
        detail={"error": exc.message, "code": exc.code},
        headers=headers,
    )
