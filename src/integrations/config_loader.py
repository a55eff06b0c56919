"""Load, validate, and hot-reload the HealthSync integration configuration.

The config lives in ``sync_config.yaml`` alongside this module.  At startup
it is loaded once and cached.  Call ``reload_sync_config()`` to re-read from
disk after an edit; no restart required.

Usage::

    from src.integrations.config_loader import get_sync_config

    config = get_sync_config()
    fitbit = config.provider("fitbit")
    fitbit.requests_per_hour          # 150
    config.scheduler.max_retries      # 3
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path

import yaml

from src.integrations.base import DataType, ProviderName

logger = logging.getLogger("healthsync.integrations.config")

# Path to the YAML file sitting next to this module
_CONFIG_PATH = Path(__file__).parent / "sync_config.yaml"

_PLACEHOLDER_PREFIXES = ("your-", "your_", "REPLACE_")
_PLACEHOLDER_MARKERS = ("placeholder", "example")


def is_valid_credential(value: str | None) -> bool:
    """Return False for empty or obviously-placeholder credential values.

    Args:
        value: Client id or secret as read from the environment.

    Returns:
        True if the value looks like a real credential.
    """
    if not value:
        return False
    value = value.strip()
    if not value or value.startswith("#"):
        return False
    if value.startswith(_PLACEHOLDER_PREFIXES):
        return False
    lowered = value.lower()
    return not any(marker in lowered for marker in _PLACEHOLDER_MARKERS)


# ---------------------------------------------------------------------------
# Typed config sections
# ---------------------------------------------------------------------------


@dataclass
class WebhookConfig:
    supported: bool = False
    signature_header: str | None = None
    collections: list[str] = field(default_factory=list)
    subscription_delay_ms: int = 0


@dataclass
class ProviderConfig:
    """Endpoints, OAuth options and rate limits for one provider.

    Attributes:
        token_auth_method: ``basic`` sends client credentials as HTTP Basic
                           auth; ``body`` sends them as form fields.
        requests_per_hour: Request budget per access token.
        request_delay_ms:  Pause between consecutive provider requests.
    """

    name: ProviderName
    display_name: str
    auth_url: str
    token_url: str
    api_base_url: str
    scopes: list[str]
    requires_pkce: bool = True
    token_auth_method: str = "body"
    extra_auth_params: dict[str, str] = field(default_factory=dict)
    userinfo_url: str | None = None
    requests_per_hour: int = 150
    request_delay_ms: int = 100
    supported_data_types: list[DataType] = field(default_factory=list)
    webhooks: WebhookConfig = field(default_factory=WebhookConfig)


@dataclass
class SchedulerConfig:
    """Job scheduler, sync engine and OAuth timing settings."""

    poll_interval_seconds: float = 5.0
    max_retries: int = 3
    periodic_sync_interval_minutes: int = 60
    jitter_max_minutes: int = 10
    job_retention_hours: int = 24
    reaper_timeout_floor_minutes: int = 10
    reaper_interval_minutes: int = 5
    cleanup_interval_minutes: int = 60
    worker_concurrency: int = 1
    initial_lookback_days: int = 30
    manual_sync_default_days: int = 30
    incremental_overlap_hours: int = 24
    persist_batch_size: int = 1000
    dedup_window_minutes: int = 5
    oauth_state_ttl_minutes: int = 10
    max_refresh_failures: int = 3
    http_timeout_seconds: float = 30.0

    @property
    def dedup_window(self) -> timedelta:
        return timedelta(minutes=self.dedup_window_minutes)

    @property
    def oauth_state_ttl(self) -> timedelta:
        return timedelta(minutes=self.oauth_state_ttl_minutes)

    @property
    def job_retention(self) -> timedelta:
        return timedelta(hours=self.job_retention_hours)

    def reaper_timeout(self, data_type_count: int) -> timedelta:
        """Liveness timeout for a running job.

        Twice the HTTP timeout per data type, never below the configured floor.
        """
        computed = timedelta(seconds=2 * self.http_timeout_seconds * max(data_type_count, 1))
        return max(computed, timedelta(minutes=self.reaper_timeout_floor_minutes))


@dataclass
class SyncConfig:
    """Complete, validated integration configuration.

    This is the single in-memory representation of sync_config.yaml.
    Adapters, the OAuth flow manager, the sync engine and the scheduler all
    read from this object.
    """

    version: str
    providers: dict[ProviderName, ProviderConfig]
    scheduler: SchedulerConfig
    _raw: dict = field(default_factory=dict, repr=False)

    def provider(self, name: ProviderName | str) -> ProviderConfig:
        """Return the config block for a provider.

        Raises:
            KeyError: If the provider is not configured.
        """
        return self.providers[ProviderName(name)]


# ---------------------------------------------------------------------------
# Loader / validation
# ---------------------------------------------------------------------------


class ConfigValidationError(ValueError):
    """Raised when sync_config.yaml fails validation."""


def _load_yaml(path: Path) -> dict:
    """Read and parse a YAML file.

    Raises:
        FileNotFoundError: If the file does not exist.
        ConfigValidationError: If the YAML is malformed.
    """
    if not path.exists():
        raise FileNotFoundError(f"Sync config not found: {path}")

    with path.open("r", encoding="utf-8") as fh:
        try:
            return yaml.safe_load(fh) or {}
        except yaml.YAMLError as exc:
            raise ConfigValidationError(f"YAML parse error in {path}: {exc}") from exc


def _build_provider(key: str, raw: dict, errors: list[str]) -> ProviderConfig | None:
    try:
        name = ProviderName(key)
    except ValueError:
        errors.append(f"providers.{key}: unknown provider")
        return None

    missing = [k for k in ("auth_url", "token_url", "api_base_url") if not raw.get(k)]
    for k in missing:
        errors.append(f"Missing required key '{k}' in section 'providers.{key}'")
    if missing:
        return None

    data_types: list[DataType] = []
    for dt in raw.get("supported_data_types", []) or []:
        try:
            data_types.append(DataType(dt))
        except ValueError:
            errors.append(f"providers.{key}.supported_data_types: unknown data type {dt!r}")

    auth_method = raw.get("token_auth_method", "body")
    if auth_method not in ("basic", "body"):
        errors.append(
            f"providers.{key}.token_auth_method must be 'basic' or 'body', got {auth_method!r}"
        )

    rph = raw.get("requests_per_hour", 150)
    if not isinstance(rph, int) or rph <= 0:
        errors.append(f"providers.{key}.requests_per_hour must be a positive integer")

    wh_raw = raw.get("webhooks") or {}
    webhooks = WebhookConfig(
        supported=bool(wh_raw.get("supported", False)),
        signature_header=wh_raw.get("signature_header"),
        collections=list(wh_raw.get("collections", []) or []),
        subscription_delay_ms=int(wh_raw.get("subscription_delay_ms", 0)),
    )

    return ProviderConfig(
        name=name,
        display_name=raw.get("display_name", key),
        auth_url=raw["auth_url"],
        token_url=raw["token_url"],
        api_base_url=raw["api_base_url"].rstrip("/"),
        scopes=list(raw.get("scopes", []) or []),
        requires_pkce=bool(raw.get("requires_pkce", True)),
        token_auth_method=auth_method,
        extra_auth_params={k: str(v) for k, v in (raw.get("extra_auth_params") or {}).items()},
        userinfo_url=raw.get("userinfo_url"),
        requests_per_hour=rph if isinstance(rph, int) else 150,
        request_delay_ms=int(raw.get("request_delay_ms", 100)),
        supported_data_types=data_types,
        webhooks=webhooks,
    )


def _build_scheduler(raw: dict, errors: list[str]) -> SchedulerConfig:
    defaults = SchedulerConfig()
    values = {}
    for name, default in vars(defaults).items():
        if name not in raw:
            continue
        try:
            values[name] = type(default)(raw[name])
        except (TypeError, ValueError):
            errors.append(f"scheduler.{name} must be a number, got {raw[name]!r}")
            continue
        if values[name] < 0:
            errors.append(f"scheduler.{name} must not be negative")

    unknown = set(raw) - set(vars(defaults))
    for name in sorted(unknown):
        logger.warning("Ignoring unknown scheduler setting %r", name)

    config = SchedulerConfig(**values)
    if config.worker_concurrency < 1:
        errors.append("scheduler.worker_concurrency must be at least 1")
    if config.persist_batch_size < 1:
        errors.append("scheduler.persist_batch_size must be at least 1")
    return config


def _validate_and_build(raw: dict) -> SyncConfig:
    """Validate the raw YAML dict and construct a SyncConfig.

    Raises:
        ConfigValidationError: If required fields are missing or invalid.
    """
    errors: list[str] = []

    providers_raw = raw.get("providers") or {}
    if not providers_raw:
        errors.append("'providers' section is missing or empty")

    providers: dict[ProviderName, ProviderConfig] = {}
    for key, section in providers_raw.items():
        if not isinstance(section, dict):
            errors.append(f"providers.{key} must be a mapping")
            continue
        built = _build_provider(key, section, errors)
        if built is not None:
            providers[built.name] = built

    scheduler = _build_scheduler(raw.get("scheduler") or {}, errors)

    if errors:
        raise ConfigValidationError(
            f"sync_config.yaml has {len(errors)} validation error(s):\n"
            + "\n".join(f"  • {e}" for e in errors)
        )

    return SyncConfig(
        version=str(raw.get("version", "1.0")),
        providers=providers,
        scheduler=scheduler,
        _raw=raw,
    )


def load_sync_config(path: Path | None = None) -> SyncConfig:
    """Load and validate the sync config from disk.

    Args:
        path: Override path to YAML. Uses the bundled sync_config.yaml by default.
    """
    target = path or _CONFIG_PATH
    raw = _load_yaml(target)
    config = _validate_and_build(raw)
    logger.info("Loaded sync config v%s from %s", config.version, target)
    return config


# ---------------------------------------------------------------------------
# Global singleton with hot-reload support
# ---------------------------------------------------------------------------

_config: SyncConfig | None = None
_config_lock = threading.Lock()


def get_sync_config() -> SyncConfig:
    """Return the global SyncConfig singleton, loading it on first call.

    Thread-safe.  Use ``reload_sync_config()`` to refresh after YAML changes.
    """
    global _config
    if _config is None:
        with _config_lock:
            if _config is None:  # double-checked locking
                _config = load_sync_config()
    return _config


def reload_sync_config(path: Path | None = None) -> SyncConfig:
    """Reload the sync config from disk and replace the global singleton.

    If validation fails, the old config is retained and the error is re-raised.

    Raises:
        ConfigValidationError: If the new config is invalid.
        FileNotFoundError:     If the config file is missing.
    """
    global _config
    new_config = load_sync_config(path)  # validate before acquiring lock
    with _config_lock:
        old_version = _config.version if _config else "none"
        _config = new_config
    logger.info("Reloaded sync config: %s → %s", old_version, new_config.version)
    return new_config
