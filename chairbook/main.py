"""FastAPI application entry point for the payment and entitlement core."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

import psycopg2
from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, status
from fastapi.middleware.cors import CORSMiddleware
from jose import JWTError, jwt
from pydantic import ValidationError

from . import app_context
from .app.entitlements.models import SessionUser
from .app.routes.billing import router as billing_router
from .app.routes.cron import router as cron_router
from .app.routes.oauth import router as oauth_router
from .app.routes.session import router as session_router
from .app.routes.webhooks import router as webhooks_router
from .config import CoreConfig, load_core_config

logger = logging.getLogger("chairbook")

SESSION_TOKEN_TTL = timedelta(days=7)


def create_session_token(
    user: SessionUser,
    config: CoreConfig,
    *,
    expires_delta: Optional[timedelta] = None,
) -> str:
    """Encode the session claims handed to the core by the identity provider."""

    expire = datetime.now(timezone.utc) + (expires_delta or SESSION_TOKEN_TTL)
    payload: Dict[str, Any] = {
        "sub": user.user_id,
        "role": user.role.value,
        "exp": expire,
    }
    if user.shop_id:
        payload["shopId"] = user.shop_id
    if user.trial_ends_at:
        payload["trialEndsAt"] = user.trial_ends_at.isoformat()
    return jwt.encode(payload, config.jwt_secret_key, algorithm=config.jwt_algorithm)


def resolve_session_user(session_token: str, config: CoreConfig) -> Optional[SessionUser]:
    try:
        payload = jwt.decode(session_token, config.jwt_secret_key, algorithms=[config.jwt_algorithm])
    except JWTError:
        return None

    subject = payload.get("sub")
    if not subject:
        return None
    try:
        return SessionUser(
            id=str(subject),
            role=payload.get("role") or "OWNER",
            shopId=payload.get("shopId"),
            trialEndsAt=payload.get("trialEndsAt"),
        )
    except ValidationError:
        logger.warning("Session token carried malformed claims", extra={"user_id": subject})
        return None


def _session_resolver(config: CoreConfig) -> Callable[..., SessionUser]:
    def get_current_user(session_token: Optional[str] = None) -> SessionUser:
        if not session_token:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
        user = resolve_session_user(session_token, config)
        if user is None:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
        return user

    return get_current_user


def create_app(
    config: Optional[CoreConfig] = None,
    *,
    get_conn: Optional[Callable[[], Any]] = None,
) -> FastAPI:
    load_dotenv()
    resolved_config = config or load_core_config()

    def _connect() -> Any:
        return psycopg2.connect(**resolved_config.db_settings)

    app_context.configure(
        config=resolved_config,
        get_conn=get_conn or _connect,
        get_current_user=_session_resolver(resolved_config),
    )

    if not resolved_config.webhook_secret:
        logger.warning("MERCADOPAGO_WEBHOOK_SECRET is not set; every webhook delivery will be rejected")
    if not resolved_config.cron_secret:
        logger.warning("CRON_SECRET is not set; scheduled endpoints will refuse to run")

    application = FastAPI(title="Chairbook Payments API")
    application.add_middleware(
        CORSMiddleware,
        allow_origins=[resolved_config.app_base_url],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    application.include_router(webhooks_router)
    application.include_router(oauth_router)
    application.include_router(cron_router)
    application.include_router(session_router)
    application.include_router(billing_router)

    @application.get("/health")
    def health() -> Dict[str, str]:
        return {"status": "ok"}

    return application


__all__ = ["create_app", "create_session_token", "resolve_session_user"]
