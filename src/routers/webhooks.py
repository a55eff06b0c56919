"""Provider webhook endpoints.

``POST /webhooks/{provider}`` receives push notifications.  The signature is
checked against the raw body before anything is parsed; a bad signature is a
400 and nothing is stored.  ``GET /webhooks/{provider}?verify=`` answers the
subscriber verification handshake (Fitbit: 204 when the code matches, 404
otherwise).
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException, Query, Request, Response

from src.dependencies import RuntimeDep
from src.integrations.base import ProviderName
from src.integrations.errors import IntegrationError
from src.routers.errors import to_http_exception

router = APIRouter(prefix="/webhooks", tags=["webhooks"])
logger = logging.getLogger("healthsync.webhooks")


def _webhook_provider(value: str) -> ProviderName:
    try:
        return ProviderName(value)
    except ValueError:
        raise HTTPException(status_code=404, detail=f"Unknown provider '{value}'") from None


@router.get("/{provider}", status_code=204)
async def verify_subscriber(
    provider: str,
    runtime: RuntimeDep,
    verify: str | None = Query(default=None),
) -> Response:
    name = _webhook_provider(provider)
    try:
        ok = runtime.webhooks.verify_subscriber(name, verify)
    except IntegrationError as exc:
        raise to_http_exception(exc) from exc
    if not ok:
        logger.warning("Failed %s subscriber verification", name.value)
        raise HTTPException(status_code=404, detail="Verification code mismatch")
    return Response(status_code=204)


@router.post("/{provider}", status_code=204)
async def receive_webhook(provider: str, request: Request, runtime: RuntimeDep) -> Response:
    name = _webhook_provider(provider)
    adapter = runtime.adapters.get(name)
    header = adapter.webhook_signature_header if adapter else None
    signature = request.headers.get(header) if header else None
    body = await request.body()

    try:
        await runtime.webhooks.handle_webhook(name, body, signature)
    except IntegrationError as exc:
        raise to_http_exception(exc) from exc
    return Response(status_code=204)
