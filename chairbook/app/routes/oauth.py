"""Processor account link endpoints."""
from __future__ import annotations

import logging
from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Cookie, Depends, Query
from fastapi.responses import RedirectResponse

from ... import app_context
from ...config import CoreConfig
from ..billing import OAuthLinkError, ProcessorLinkService
from ..billing.oauth import CSRF_COOKIE_NAME
from ..entitlements.models import SessionUser
from ..services.auth import get_session_user
from ..services.billing import get_processor_link_service

logger = logging.getLogger(__name__)

_COOKIE_PATH = "/api/mercadopago/oauth"

router = APIRouter(prefix="/api/mercadopago/oauth", tags=["billing"])


def _settings_redirect(config: CoreConfig, **params: str) -> RedirectResponse:
    url = f"{config.app_base_url.rstrip('/')}/dashboard/settings"
    if params:
        url = f"{url}?{urlencode(params)}"
    return RedirectResponse(url, status_code=302)


@router.get("/connect")
def connect_processor_account(
    current_user: SessionUser = Depends(get_session_user),
    service: ProcessorLinkService = Depends(get_processor_link_service),
    config: CoreConfig = Depends(app_context.get_config),
) -> RedirectResponse:
    try:
        link = service.begin_link(current_user.user_id)
    except OAuthLinkError as exc:
        return _settings_redirect(config, error=exc.code.value)

    response = RedirectResponse(link.authorization_url, status_code=302)
    response.set_cookie(
        CSRF_COOKIE_NAME,
        link.csrf_cookie,
        max_age=int(service.state_ttl.total_seconds()),
        path=_COOKIE_PATH,
        httponly=True,
        secure=config.session_cookie_secure,
        samesite="lax",
    )
    return response


@router.get("/callback")
def processor_oauth_callback(
    code: Optional[str] = Query(default=None),
    state: Optional[str] = Query(default=None),
    csrf_cookie: Optional[str] = Cookie(default=None, alias=CSRF_COOKIE_NAME),
    service: ProcessorLinkService = Depends(get_processor_link_service),
    config: CoreConfig = Depends(app_context.get_config),
) -> RedirectResponse:
    try:
        credentials = service.complete_link(code=code, state=state, cookie_value=csrf_cookie)
    except OAuthLinkError as exc:
        response = _settings_redirect(config, error=exc.code.value)
    else:
        logger.info("Processor OAuth callback completed", extra={"shop_id": credentials.shop_id})
        response = _settings_redirect(config, success="true")

    # Single use: the cookie is dropped whatever the outcome.
    response.delete_cookie(CSRF_COOKIE_NAME, path=_COOKIE_PATH)
    return response
