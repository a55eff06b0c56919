"""Background sync: job transitions, sync engine, scheduler and webhook ingestion.

Modules:
    jobs      - Pure SyncJob state transitions and backoff
    engine    - One sync run: tokens → adapter → dedup → persist
    scheduler - Job queue poller, periodic sweep, reaper and retention cleanup
    webhooks  - Provider push notification ingestion
"""
