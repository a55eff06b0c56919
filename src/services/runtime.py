"""Process-wide wiring of the sync core.

``init_runtime`` is called from the FastAPI lifespan.  It builds, in order:

    store → vault → adapters → OAuth manager → dedup → engine → scheduler → webhooks

and wires the OAuth manager's connect hook to the scheduler so every new
connection gets an initial sync.  Route handlers reach the pieces through
``get_runtime`` (see ``src.dependencies.RuntimeDep``).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

import httpx

from src.config import Settings, get_settings
from src.integrations.adapters import build_adapters
from src.integrations.base import ProviderAdapter, ProviderName
from src.integrations.config_loader import SyncConfig, get_sync_config, load_sync_config
from src.integrations.dedup import DeduplicationEngine
from src.integrations.errors import ConfigurationError
from src.integrations.oauth import OAuthFlowManager
from src.integrations.postgres_store import PostgresSyncStore
from src.integrations.store import InMemorySyncStore, SyncStore
from src.integrations.sync.engine import SyncEngine
from src.integrations.sync.scheduler import SyncScheduler
from src.integrations.sync.webhooks import WebhookIngestion
from src.integrations.vault import CredentialVault
from src.services import database

logger = logging.getLogger("healthsync.runtime")


@dataclass
class Runtime:
    settings: Settings
    config: SyncConfig
    store: SyncStore
    vault: CredentialVault
    adapters: dict[ProviderName, ProviderAdapter]
    oauth: OAuthFlowManager
    engine: SyncEngine
    scheduler: SyncScheduler
    webhooks: WebhookIngestion
    http_client: httpx.AsyncClient | None = None


_runtime: Runtime | None = None


def _build_vault(settings: Settings) -> CredentialVault:
    if settings.token_encryption_key:
        return CredentialVault.from_key_string(settings.token_encryption_key)
    if settings.environment == "production":
        raise ConfigurationError("TOKEN_ENCRYPTION_KEY must be set in production")
    logger.warning(
        "TOKEN_ENCRYPTION_KEY not set; using an ephemeral key. "
        "Stored tokens will be unreadable after a restart."
    )
    return CredentialVault([CredentialVault.generate_key()])


def build_runtime(
    settings: Settings,
    store: SyncStore,
    config: SyncConfig | None = None,
    http_client: httpx.AsyncClient | None = None,
    adapters: dict[ProviderName, ProviderAdapter] | None = None,
    vault: CredentialVault | None = None,
) -> Runtime:
    """Assemble the sync core around an existing store.

    Args:
        settings:    Application settings.
        store:       Persistence backend.
        config:      Sync config; the global singleton when None.
        http_client: Shared client for provider calls.
        adapters:    Pre-built adapters (tests); built from ``config`` when None.
        vault:       Token vault; built from ``settings`` when None.
    """
    config = config or get_sync_config()
    sched_config = config.scheduler
    vault = vault or _build_vault(settings)
    if adapters is None:
        adapters = build_adapters(config, settings.provider_credentials(), http_client=http_client)

    oauth = OAuthFlowManager(
        store,
        vault,
        adapters,
        redirect_base_url=settings.public_base_url,
        state_ttl=sched_config.oauth_state_ttl,
        max_refresh_failures=sched_config.max_refresh_failures,
    )
    dedup = DeduplicationEngine(store, window=sched_config.dedup_window)
    engine = SyncEngine(store, oauth, adapters, dedup, sched_config)
    scheduler = SyncScheduler(store, engine, sched_config, oauth=oauth)
    oauth.on_connected = scheduler.schedule_initial_sync
    webhooks = WebhookIngestion(
        store,
        engine,
        scheduler,
        oauth,
        adapters,
        verification_codes=settings.webhook_verification_codes(),
    )
    return Runtime(
        settings=settings,
        config=config,
        store=store,
        vault=vault,
        adapters=adapters,
        oauth=oauth,
        engine=engine,
        scheduler=scheduler,
        webhooks=webhooks,
        http_client=http_client,
    )


async def init_runtime(settings: Settings | None = None) -> Runtime:
    """Build the process runtime and start the scheduler. Call once at startup."""
    global _runtime
    s = settings or get_settings()
    config = load_sync_config(Path(s.sync_config_path)) if s.sync_config_path else get_sync_config()

    if s.use_in_memory_store:
        logger.warning("Using in-memory store; data is lost on restart")
        store: SyncStore = InMemorySyncStore()
    else:
        pool = await database.init_pool(s)
        store = PostgresSyncStore(pool)
        await store.apply_schema()

    http_client = httpx.AsyncClient(timeout=config.scheduler.http_timeout_seconds)
    _runtime = build_runtime(s, store, config=config, http_client=http_client)

    configured = [p.value for p, a in _runtime.adapters.items() if a.is_configured]
    logger.info("Providers configured: %s", ", ".join(configured) or "none")

    if s.scheduler_enabled:
        _runtime.scheduler.start()
    return _runtime


async def close_runtime() -> None:
    """Stop background work and release connections. Call at shutdown."""
    global _runtime
    if _runtime is None:
        return
    await _runtime.scheduler.stop()
    await _runtime.store.close()
    if _runtime.http_client is not None:
        await _runtime.http_client.aclose()
    if database.pool_ready():
        await database.close_pool()
    _runtime = None


def get_runtime() -> Runtime:
    if _runtime is None:
        raise RuntimeError("Runtime not initialized; call init_runtime() first")
    return _runtime


def set_runtime(runtime: Runtime | None) -> None:
    """Install a prebuilt runtime (tests)."""
    global _runtime
    _runtime = runtime
