"""Discount code validation and capped redemption."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional, Protocol

from pydantic import BaseModel, ConfigDict, Field, model_validator

logger = logging.getLogger(__name__)


class RedemptionFailureReason(str, Enum):
    """Why a discount code could not be applied."""

    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    NOT_YET_VALID = "not_yet_valid"
    EXHAUSTED = "exhausted"


FAILURE_MESSAGES = {
    RedemptionFailureReason.NOT_FOUND: "This discount code does not exist.",
    RedemptionFailureReason.EXPIRED: "This discount code has expired.",
    RedemptionFailureReason.NOT_YET_VALID: "This discount code is not valid yet.",
    RedemptionFailureReason.EXHAUSTED: "This discount code has reached its usage limit.",
}


class DiscountCode(BaseModel):
    """Promotional price override with a validity window and a usage cap."""

    code: str
    override_price: int = Field(ge=0)
    duration_months: int = Field(ge=1)
    valid_from: datetime
    valid_until: datetime
    max_uses: int = Field(ge=0)
    times_used: int = Field(default=0, ge=0)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @model_validator(mode="after")
    def _check_usage(self) -> "DiscountCode":
        if self.times_used > self.max_uses:
            raise ValueError("times_used cannot exceed max_uses")
        return self


class RedemptionResult(BaseModel):
    """Outcome of checking or redeeming a discount code."""

    ok: bool
    code: Optional[str] = None
    effective_price: Optional[int] = None
    duration_months: Optional[int] = None
    reason: Optional[RedemptionFailureReason] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @classmethod
    def success(cls, discount: DiscountCode) -> "RedemptionResult":
        return cls(
            ok=True,
            code=discount.code,
            effective_price=discount.override_price,
            duration_months=discount.duration_months,
        )

    @classmethod
    def failure(cls, code: str, reason: RedemptionFailureReason) -> "RedemptionResult":
        return cls(ok=False, code=code, reason=reason)

    @property
    def message(self) -> Optional[str]:
        return FAILURE_MESSAGES.get(self.reason) if self.reason else None


class DiscountCodeError(Exception):
    """Raised when a caller requires a usable discount code and it is not."""

    def __init__(self, reason: RedemptionFailureReason) -> None:
        self.reason = reason
        super().__init__(FAILURE_MESSAGES[reason])


class DiscountCodeRepository(Protocol):
    """Persistence operations required by the ledger."""

    def get_discount_code(self, code: str) -> Optional[DiscountCode]:
        ...

    def increment_discount_code_usage(self, code: str, now: datetime) -> Optional[DiscountCode]:
        """Atomically consume one use.

        Implementations must apply the increment as a single conditional write
        guarded by ``valid_from <= now <= valid_until`` and
        ``times_used < max_uses``, returning the updated code or ``None`` when
        the guard did not match.
        """


def normalize_code(code: Optional[str]) -> str:
    return (code or "").strip().upper()


def classify(discount: Optional[DiscountCode], now: datetime) -> Optional[RedemptionFailureReason]:
    """Return the reason ``discount`` is unusable at ``now``, or ``None`` when usable."""

    if discount is None:
        return RedemptionFailureReason.NOT_FOUND
    if now < discount.valid_from:
        return RedemptionFailureReason.NOT_YET_VALID
    if now > discount.valid_until:
        return RedemptionFailureReason.EXPIRED
    if discount.times_used >= discount.max_uses:
        return RedemptionFailureReason.EXHAUSTED
    return None


class DiscountCodeLedger:
    """Validates and redeems discount codes without ever exceeding their cap."""

    def __init__(
        self,
        repository: DiscountCodeRepository,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._repository = repository
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def check(self, code: str, now: Optional[datetime] = None) -> RedemptionResult:
        """Report whether ``code`` could be redeemed, without consuming a use."""

        current = now or self._clock()
        normalized = normalize_code(code)
        if not normalized:
            return RedemptionResult.failure(normalized, RedemptionFailureReason.NOT_FOUND)

        discount = self._repository.get_discount_code(normalized)
        reason = classify(discount, current)
        if reason is not None:
            return RedemptionResult.failure(normalized, reason)
        return RedemptionResult.success(discount)

    def redeem(self, code: str, now: Optional[datetime] = None) -> RedemptionResult:
        """Consume one use of ``code``.

        The guarded increment is attempted first; the code is only read back
        to explain a failure, so a stale read can never cause over-redemption.
        Not replay-safe: callers invoke it at most once per subscription.
        """

        current = now or self._clock()
        normalized = normalize_code(code)
        if not normalized:
            return RedemptionResult.failure(normalized, RedemptionFailureReason.NOT_FOUND)

        updated = self._repository.increment_discount_code_usage(normalized, current)
        if updated is not None:
            logger.info(
                "Discount code redeemed",
                extra={"discount_code": normalized, "times_used": updated.times_used},
            )
            return RedemptionResult.success(updated)

        discount = self._repository.get_discount_code(normalized)
        # A code that looks usable now lost the race to a concurrent redemption.
        reason = classify(discount, current) or RedemptionFailureReason.EXHAUSTED
        logger.info(
            "Discount code redemption refused",
            extra={"discount_code": normalized, "reason": reason.value},
        )
        return RedemptionResult.failure(normalized, reason)


__all__ = [
    "DiscountCode",
    "DiscountCodeError",
    "DiscountCodeLedger",
    "DiscountCodeRepository",
    "FAILURE_MESSAGES",
    "RedemptionFailureReason",
    "RedemptionResult",
    "classify",
    "normalize_code",
]
