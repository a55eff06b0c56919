"""Shared FastAPI dependencies injected into route handlers."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Annotated

from fastapi import Depends, HTTPException, Request

from src.services.runtime import Runtime, get_runtime


@dataclass(frozen=True)
class AuthContext:
    """Authenticated user context extracted from the bearer JWT."""

    user_id: uuid.UUID  # internal user UUID (the configured JWT claim)
    subject: str | None = None  # raw ``sub`` claim
    email: str | None = None
    session_id: str | None = None


async def get_current_user(request: Request) -> AuthContext:
    """Extract the authenticated user from the request state.

    The JWT auth middleware sets ``request.state.auth`` before routes run.
    """
    auth: AuthContext | None = getattr(request.state, "auth", None)
    if auth is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return auth


def runtime_dependency() -> Runtime:
    try:
        return get_runtime()
    except RuntimeError:
        raise HTTPException(status_code=503, detail="Service not ready") from None


# Annotated shortcuts for route signatures
CurrentUser = Annotated[AuthContext, Depends(get_current_user)]
RuntimeDep = Annotated[Runtime, Depends(runtime_dependency)]
