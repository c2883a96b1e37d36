"""Session dependency shared by routers and route guards."""
from __future__ import annotations

from typing import Any

from fastapi import Depends, HTTPException, Request, status

from ... import app_context
from ...config import CoreConfig
from ..entitlements.models import SessionUser


def get_session_user(
    request: Request,
    config: CoreConfig = Depends(app_context.get_config),
) -> SessionUser:
    session_token = request.cookies.get(config.session_cookie_name)
    resolved: Any = app_context.get_current_user(session_token=session_token)
    if resolved is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    if isinstance(resolved, SessionUser):
        return resolved
    if isinstance(resolved, dict):
        return SessionUser.model_validate(resolved)
    return SessionUser.model_validate(resolved, from_attributes=True)


__all__ = ["get_session_user"]
