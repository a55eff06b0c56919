"""Provider connections: OAuth authorize/callback, status, settings, manual sync, jobs."""

from __future__ import annotations

import logging
import uuid
from typing import Any
from urllib.parse import urlencode

from fastapi import APIRouter, HTTPException, Query
from fastapi.responses import RedirectResponse

from src.dependencies import CurrentUser, RuntimeDep
from src.integrations.base import ProviderName, utc_now
from src.integrations.errors import IntegrationError
from src.models.integrations import (
    AuthorizeRequest,
    AuthorizeResponse,
    IntegrationRead,
    IntegrationUpdate,
    ManualSyncRequest,
    ProviderStatus,
    SyncJobRead,
    SyncResultResponse,
    SyncStats,
)
from src.routers.errors import to_http_exception
from src.services.runtime import Runtime

router = APIRouter(prefix="/integrations", tags=["integrations"])
logger = logging.getLogger("healthsync.integrations.api")


def _provider(value: str, runtime: Runtime) -> ProviderName:
    try:
        name = ProviderName(value)
    except ValueError:
        name = None
    if name is None or name not in runtime.adapters:
        raise HTTPException(status_code=404, detail=f"Unknown provider '{value}'")
    return name


async def _provider_status(
    runtime: Runtime, user_id: uuid.UUID, provider: ProviderName
) -> ProviderStatus:
    adapter = runtime.oauth.adapter(provider)
    integration = await runtime.store.find_integration(user_id, provider)
    return ProviderStatus(
        provider=provider,
        display_name=adapter.DISPLAY_NAME,
        configured=adapter.is_configured,
        supports_webhooks=adapter.supports_webhooks,
        supported_data_types=list(adapter.supported_data_types),
        connected=integration is not None and integration.is_active,
        integration=IntegrationRead.model_validate(integration) if integration else None,
    )


# ---------- Status & settings ----------

@router.get("", response_model=list[ProviderStatus])
async def list_integrations(user: CurrentUser, runtime: RuntimeDep) -> Any:
    return [
        await _provider_status(runtime, user.user_id, provider)
        for provider in runtime.adapters
    ]


@router.get("/sync/stats", response_model=SyncStats)
async def sync_stats(user: CurrentUser, runtime: RuntimeDep) -> Any:
    return await runtime.scheduler.get_stats()


@router.get("/jobs/{job_id}", response_model=SyncJobRead)
async def get_job(job_id: uuid.UUID, user: CurrentUser, runtime: RuntimeDep) -> Any:
    job = await runtime.scheduler.get_job(job_id)
    if job is None or job.user_id != user.user_id:
        raise HTTPException(status_code=404, detail="Job not found")
    return SyncJobRead.model_validate(job)


@router.delete("/jobs/{job_id}", status_code=204)
async def cancel_job(job_id: uuid.UUID, user: CurrentUser, runtime: RuntimeDep) -> None:
    job = await runtime.scheduler.get_job(job_id)
    if job is None or job.user_id != user.user_id:
        raise HTTPException(status_code=404, detail="Job not found")
    if not await runtime.scheduler.cancel_job(job_id, user_id=user.user_id):
        raise HTTPException(
            status_code=409, detail=f"Job is {job.status.value}; only pending jobs can be cancelled"
        )


@router.get("/{provider}", response_model=ProviderStatus)
async def get_integration(provider: str, user: CurrentUser, runtime: RuntimeDep) -> Any:
    return await _provider_status(runtime, user.user_id, _provider(provider, runtime))


@router.patch("/{provider}", response_model=IntegrationRead)
async def update_integration(
    provider: str, body: IntegrationUpdate, user: CurrentUser, runtime: RuntimeDep
) -> Any:
    name = _provider(provider, runtime)
    integration = await runtime.store.find_integration(user.user_id, name)
    if integration is None:
        raise HTTPException(status_code=404, detail="Integration not found")

    changes: dict[str, Any] = {"updated_at": utc_now()}
    if body.data_types is not None:
        supported = set(runtime.oauth.adapter(name).supported_data_types)
        unsupported = [dt.value for dt in body.data_types if dt not in supported]
        if unsupported:
            raise HTTPException(
                status_code=400,
                detail=f"Unsupported data types for {name.value}: {', '.join(unsupported)}",
            )
        changes["data_types"] = list(dict.fromkeys(body.data_types))
    if body.sync_frequency is not None:
        changes["sync_frequency"] = body.sync_frequency

    saved = await runtime.store.update_integration(integration.id, changes)
    if saved is None:
        raise HTTPException(status_code=404, detail="Integration not found")
    logger.info("Updated %s integration %s settings", name.value, saved.id)
    return IntegrationRead.model_validate(saved)


@router.delete("/{provider}", response_model=IntegrationRead)
async def disconnect_integration(provider: str, user: CurrentUser, runtime: RuntimeDep) -> Any:
    try:
        integration = await runtime.oauth.disconnect(user.user_id, _provider(provider, runtime))
    except IntegrationError as exc:
        raise to_http_exception(exc) from exc
    return IntegrationRead.model_validate(integration)


# ---------- OAuth ----------

@router.post("/{provider}/authorize", response_model=AuthorizeResponse)
async def authorize(
    provider: str,
    user: CurrentUser,
    runtime: RuntimeDep,
    body: AuthorizeRequest | None = None,
) -> Any:
    body = body or AuthorizeRequest()
    try:
        request = await runtime.oauth.begin_authorization(
            user.user_id,
            _provider(provider, runtime),
            scopes=body.scopes,
            redirect_url=body.redirect_url,
        )
    except IntegrationError as exc:
        raise to_http_exception(exc) from exc
    return AuthorizeResponse(
        auth_url=request.auth_url, state=request.state, expires_at=request.expires_at
    )


@router.get("/{provider}/callback")
async def oauth_callback(
    provider: str,
    runtime: RuntimeDep,
    code: str | None = Query(default=None),
    state: str | None = Query(default=None),
    error: str | None = Query(default=None),
    error_description: str | None = Query(default=None),
) -> RedirectResponse:
    """Provider redirect target.  Always answers with a redirect to the frontend."""
    name = _provider(provider, runtime)
    dashboard = f"{runtime.settings.frontend_url.rstrip('/')}/dashboard"

    def _redirect(**params: str) -> RedirectResponse:
        return RedirectResponse(f"{dashboard}?{urlencode(params)}", status_code=302)

    if error:
        logger.info("%s authorization denied: %s (%s)", name.value, error, error_description)
        return _redirect(integration_error=error, provider=name.value)
    if not code or not state:
        return _redirect(integration_error="missing_parameters", provider=name.value)

    try:
        integration = await runtime.oauth.connect(code, state, name)
    except IntegrationError as exc:
        logger.warning("%s callback failed: %s", name.value, exc.message)
        return _redirect(integration_error=exc.code, provider=name.value)

    return _redirect(integration_success=integration.provider.value)


# ---------- Manual sync ----------

@router.post("/{integration_id}/sync", response_model=SyncResultResponse)
async def manual_sync(
    integration_id: uuid.UUID,
    user: CurrentUser,
    runtime: RuntimeDep,
    body: ManualSyncRequest | None = None,
) -> Any:
    body = body or ManualSyncRequest()
    try:
        result = await runtime.engine.sync_now(
            user.user_id, integration_id, from_date=body.from_date, to_date=body.to_date
        )
    except IntegrationError as exc:
        raise to_http_exception(exc) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    return SyncResultResponse(
        success=result.success,
        synced_point_count=result.synced_point_count,
        fetched_point_count=result.fetched_point_count,
        errors=result.errors,
        failed_types=result.failed_types,
        last_sync_time=result.last_sync_time,
    )
