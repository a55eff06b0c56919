"""Bearer JWT verification middleware for FastAPI.

Validates the Bearer token on every request (except public routes),
extracts claims, and sets ``request.state.auth`` with the authenticated
user context that downstream route handlers consume via ``get_current_user``.

Provider callbacks and webhooks are public: the former are authenticated by
the OAuth ``state``, the latter by the provider signature.
"""

from __future__ import annotations

import logging
import re
import uuid
from typing import Any

import jwt as pyjwt
from fastapi import Request, Response
from jwt import PyJWKClient
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from src.config import Settings, get_settings
from src.dependencies import AuthContext

logger = logging.getLogger("healthsync.auth")

# Paths that do not require authentication
PUBLIC_PATHS: set[str] = {
    "/health",
    "/docs",
    "/openapi.json",
    "/redoc",
}

_PUBLIC_PATTERNS = (
    re.compile(r"^/api/v1/webhooks/[^/]+/?$"),
    re.compile(r"^/api/v1/integrations/[^/]+/callback/?$"),
)


def _is_public(path: str) -> bool:
    if path in PUBLIC_PATHS or path.startswith("/docs") or path.startswith("/redoc"):
        return True
    return any(p.match(path) for p in _PUBLIC_PATTERNS)


def _json_error(detail: str, status_code: int) -> Response:
    return Response(
        content=f'{{"detail":"{detail}"}}',
        status_code=status_code,
        media_type="application/json",
    )


class JWTAuthMiddleware(BaseHTTPMiddleware):
    """Verify RS256 JWTs against a JWKS endpoint and populate request.state.auth."""

    def __init__(self, app: Any, settings: Settings | None = None) -> None:
        super().__init__(app)
        self._settings = settings or get_settings()
        self._jwks_client: PyJWKClient | None = None
        if self._settings.jwt_jwks_url:
            self._jwks_client = PyJWKClient(
                self._settings.jwt_jwks_url,
                cache_keys=True,
                lifespan=3600,
            )

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        if not self._settings.auth_enabled or _is_public(request.url.path):
            return await call_next(request)

        # OPTIONS requests pass through (CORS preflight)
        if request.method == "OPTIONS":
            return await call_next(request)

        if self._jwks_client is None:
            logger.error("Auth is enabled but JWT_JWKS_URL is not set")
            return _json_error("Authentication not configured", 503)

        auth_header = request.headers.get("Authorization")
        if not auth_header or not auth_header.startswith("Bearer "):
            return _json_error("Missing or invalid Authorization header", 401)

        token = auth_header.removeprefix("Bearer ").strip()

        try:
            signing_key = self._jwks_client.get_signing_key_from_jwt(token)
            payload = pyjwt.decode(
                token,
                signing_key.key,
                algorithms=["RS256"],
                audience=self._settings.jwt_audience,
                options={"verify_aud": self._settings.jwt_audience is not None},
            )
        except pyjwt.ExpiredSignatureError:
            return _json_error("Token expired", 401)
        except pyjwt.PyJWTError as exc:
            logger.warning("JWT validation failed: %s", exc)
            return _json_error("Invalid token", 401)

        raw_user_id = payload.get(self._settings.jwt_user_id_claim)
        try:
            user_id = uuid.UUID(str(raw_user_id))
        except ValueError:
            logger.warning(
                "JWT claim %s is not a user UUID", self._settings.jwt_user_id_claim
            )
            return _json_error("Invalid token", 401)

        request.state.auth = AuthContext(
            user_id=user_id,
            subject=payload.get("sub"),
            email=payload.get("email"),
            session_id=payload.get("sid"),
        )

        return await call_next(request)
