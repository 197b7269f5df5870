"""Session routes for the signed login cookie.

Production identity comes from an upstream login service that sets the
signed session cookie. In development ``/auth/dev-login`` signs one
directly so the API can be exercised without that service.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from musicleague.api.deps import SettingsDep
from musicleague.auth.deps import (
    SESSION_COOKIE_NAME,
    SESSION_MAX_AGE,
    OptionalPrincipal,
    SessionPrincipal,
    sign_session,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])


class DevLoginRequest(BaseModel):
    user_id: str = Field(min_length=1, max_length=64)
    display_name: str = Field(default="", max_length=100)


@router.post("/dev-login")
async def dev_login(body: DevLoginRequest, settings: SettingsDep) -> JSONResponse:
    if settings.musicleague_env != "development":
        raise HTTPException(status_code=404, detail="Not found")
    principal = SessionPrincipal(user_id=body.user_id, display_name=body.display_name)
    response = JSONResponse({"data": principal.model_dump()})
    response.set_cookie(
        SESSION_COOKIE_NAME,
        sign_session(settings, principal),
        max_age=SESSION_MAX_AGE,
        httponly=True,
        samesite="lax",
    )
    logger.info("dev_login user=%s", body.user_id)
    return response


@router.get("/me")
async def me(principal: OptionalPrincipal) -> dict:
    return {"data": principal.model_dump() if principal else None}


@router.post("/logout")
async def logout() -> JSONResponse:
    """Clear the session cookie."""
    response = JSONResponse({"data": {"logged_out": True}})
    response.delete_cookie(SESSION_COOKIE_NAME)
    return response
