"""Session level entitlement snapshot."""
from __future__ import annotations

from fastapi import APIRouter, Depends

from ..entitlements import EntitlementService
from ..entitlements.models import SessionUser
from ..schemas.session import EntitlementResponse
from ..services.auth import get_session_user
from ..services.entitlements import get_entitlement_service

router = APIRouter(prefix="/api/session", tags=["session"])


@router.get("/entitlement", response_model=EntitlementResponse)
def read_entitlement(
    current_user: SessionUser = Depends(get_session_user),
    service: EntitlementService = Depends(get_entitlement_service),
) -> EntitlementResponse:
    """Evaluate access against the freshest persisted trial and subscription."""

    return EntitlementResponse.from_decision(service.evaluate(current_user.user_id))
