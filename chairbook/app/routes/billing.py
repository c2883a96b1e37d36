"""API routes for starting a paid subscription."""
from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status

from ..billing import DiscountCodeError, ProcessorError, SubscriptionReconciler
from ..entitlements.models import AccountRole, SessionUser
from ..schemas.billing import CheckoutRequest, CheckoutResponse
from ..services.auth import get_session_user
from ..services.billing import get_subscription_reconciler

router = APIRouter(prefix="/api/billing", tags=["billing"])


@router.post("/checkout", response_model=CheckoutResponse)
def create_checkout(
    payload: CheckoutRequest,
    *,
    current_user: SessionUser = Depends(get_session_user),
    reconciler: SubscriptionReconciler = Depends(get_subscription_reconciler),
) -> CheckoutResponse:
    if current_user.role != AccountRole.OWNER:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Only shop owners can subscribe")

    try:
        session = reconciler.start_checkout(
            current_user.user_id,
            payload.payer_email,
            payload.discount_code,
        )
    except DiscountCodeError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": exc.reason.value, "message": str(exc)},
        ) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except ProcessorError as exc:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Payment processor unavailable",
        ) from exc
    return CheckoutResponse.from_checkout(session)
