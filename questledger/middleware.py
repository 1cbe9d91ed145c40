"""
Auth dependencies.

Participant endpoints take a participant API key, admin endpoints the
admin key. Both as `Authorization: Bearer <key>`.
"""

import os
from typing import Annotated

from fastapi import Depends, Request

from questledger.api_errors import APIError
from questledger.auth import Participant


ADMIN_KEY = os.environ.get("QUEST_ADMIN_KEY", "")


def _get_bearer_token(request: Request) -> str | None:
    """Extract Bearer token from Authorization header."""
    auth = request.headers.get("authorization", "")
    if auth.startswith("Bearer "):
        return auth[7:]
    return None


async def require_participant(request: Request) -> Participant:
    """Require a valid participant API key."""
    token = _get_bearer_token(request)
    if not token:
        raise APIError(401, "auth_required", "Authorization header required")

    if token == ADMIN_KEY and ADMIN_KEY:
        raise APIError(401, "invalid_api_key",
                       "Admin key cannot be used for participant endpoints. "
                       "Register a wallet at /v1/participants/register.")

    participant = request.app.state.auth_store.authenticate(token)
    if participant is None:
        raise APIError(401, "invalid_api_key", "Invalid API key")
    return participant


async def require_admin(request: Request) -> None:
    """Require the admin API key."""
    if not ADMIN_KEY:
        raise APIError(500, "admin_required",
                       "QUEST_ADMIN_KEY not configured")
    token = _get_bearer_token(request)
    if not token:
        raise APIError(401, "auth_required", "Authorization header required")
    if token != ADMIN_KEY:
        raise APIError(403, "admin_required", "Admin API key required")


ParticipantDep = Annotated[Participant, Depends(require_participant)]
AdminDep = Annotated[None, Depends(require_admin)]
