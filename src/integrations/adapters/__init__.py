"""Provider adapters for HealthSync.

Each adapter implements the ProviderAdapter ABC and handles:
- OAuth authorization URLs, code exchange and token refresh
- Fetching data for a date range from the provider API
- Normalizing provider JSON into canonical HealthDataPoint records
- Webhook verification and parsing, where the provider pushes

Available adapters:
    FitbitAdapter     - Fitbit Web API (OAuth2 + PKCE, subscriber webhooks)
    GoogleFitAdapter  - Google Fit REST API (OAuth2 + PKCE, pull only)
"""

from __future__ import annotations

import httpx

from src.integrations.adapters.fitbit import FitbitAdapter
from src.integrations.adapters.google_fit import GoogleFitAdapter
from src.integrations.adapters.oauth2 import OAuth2Adapter
from src.integrations.base import ProviderAdapter, ProviderName
from src.integrations.config_loader import SyncConfig

__all__ = [
    "FitbitAdapter",
    "GoogleFitAdapter",
    "ADAPTER_REGISTRY",
    "get_adapter",
    "build_adapters",
]

# Registry: provider → adapter class
ADAPTER_REGISTRY: dict[ProviderName, type[OAuth2Adapter]] = {
    ProviderName.FITBIT: FitbitAdapter,
    ProviderName.GOOGLE_FIT: GoogleFitAdapter,
}


def get_adapter(provider: ProviderName | str) -> type[OAuth2Adapter]:
    """Return the adapter class for a provider.

    Args:
        provider: e.g. ProviderName.FITBIT or 'google_fit'

    Raises:
        KeyError: If the provider is not registered.
    """
    try:
        return ADAPTER_REGISTRY[ProviderName(provider)]
    except (KeyError, ValueError):
        raise KeyError(
            f"No adapter registered for provider '{provider}'. "
            f"Available: {[p.value for p in ADAPTER_REGISTRY]}"
        ) from None


def build_adapters(
    config: SyncConfig,
    credentials: dict[ProviderName, tuple[str | None, str | None]],
    http_client: httpx.AsyncClient | None = None,
) -> dict[ProviderName, ProviderAdapter]:
    """Instantiate one adapter per configured provider.

    Args:
        config:      Loaded sync configuration.
        credentials: ``(client_id, client_secret)`` per provider.  Missing or
                     placeholder values leave the adapter unconfigured; it is
                     still registered so status endpoints can report it.
        http_client: Shared client, mainly for tests.
    """
    adapters: dict[ProviderName, ProviderAdapter] = {}
    for provider, provider_config in config.providers.items():
        client_id, client_secret = credentials.get(provider, (None, None))
        adapters[provider] = get_adapter(provider)(
            provider_config,
            client_id,
            client_secret,
            http_client=http_client,
            timeout=config.scheduler.http_timeout_seconds,
        )
    return adapters
