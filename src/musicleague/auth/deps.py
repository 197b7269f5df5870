"""FastAPI dependencies for authentication — the principal from the session cookie.

Identity itself is established elsewhere (the login collaborator signs a
cookie with ``sign_session``); this module only verifies it.
"""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import Depends, HTTPException, Request
from itsdangerous import BadSignature, URLSafeTimedSerializer
from pydantic import BaseModel, ValidationError

from musicleague.config import Settings

logger = logging.getLogger(__name__)

# Session cookie lives for 7 days (seconds).
SESSION_MAX_AGE = 7 * 24 * 60 * 60
SESSION_COOKIE_NAME = "musicleague_session"
_SESSION_SALT = "musicleague-session"


class SessionPrincipal(BaseModel):
    """Minimal identity stored in the signed session cookie."""

    user_id: str
    display_name: str = ""


def _serializer(settings: Settings) -> URLSafeTimedSerializer:
    return URLSafeTimedSerializer(settings.session_secret_key, salt=_SESSION_SALT)


def sign_session(settings: Settings, principal: SessionPrincipal) -> str:
    """Produce a cookie value carrying *principal*."""
    return _serializer(settings).dumps(principal.model_dump())


async def get_current_principal(request: Request) -> SessionPrincipal | None:
    """Extract the principal from the signed session cookie.

    Returns None when the cookie is missing, tampered with, or expired.
    """
    raw = request.cookies.get(SESSION_COOKIE_NAME)
    if not raw:
        return None

    settings: Settings = request.app.state.settings
    try:
        data = _serializer(settings).loads(raw, max_age=SESSION_MAX_AGE)
        return SessionPrincipal.model_validate(data)
    except BadSignature:
        logger.debug("Invalid or expired session cookie; ignoring")
        return None
    except ValidationError:
        logger.debug("Malformed session payload; ignoring", exc_info=True)
        return None


OptionalPrincipal = Annotated[SessionPrincipal | None, Depends(get_current_principal)]


async def require_principal(principal: OptionalPrincipal) -> SessionPrincipal:
    """Reject unauthenticated requests with 401."""
    if principal is None:
        raise HTTPException(status_code=401, detail="Authentication required")
    return principal


PrincipalDep = Annotated[SessionPrincipal, Depends(require_principal)]
