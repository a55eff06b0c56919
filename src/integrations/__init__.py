"""HealthSync integration core.

Modules:
    base          - Canonical data models and the ProviderAdapter ABC
    records       - Integration, OAuth flow state and sync job records
    errors        - Error hierarchy shared by every component
    config_loader - sync_config.yaml loader with hot-reload support
    vault         - Fernet encryption of stored OAuth tokens
    oauth         - OAuth connection lifecycle
    dedup         - Duplicate filtering before persistence
    store         - Persistence interface and in-memory store
    adapters/     - Provider adapters (Fitbit, Google Fit)
    sync/         - Sync engine, job scheduler and webhook ingestion
"""
