"""Domain models for access decisions."""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class AccountRole(str, Enum):
    """Roles handed to the core by the identity provider."""

    OWNER = "OWNER"
    BARBER = "BARBER"
    CLIENT = "CLIENT"
    ADMIN = "ADMIN"


class SubscriptionSnapshot(BaseModel):
    """Subscription fields relevant to access decisions.

    The snapshot is deliberately loose: it mirrors what a session token or a
    database row may carry, so a partially populated snapshot is representable
    and simply evaluates to "no access".
    """

    status: Optional[str] = None
    current_period_end: Optional[datetime] = Field(default=None, alias="currentPeriodEnd")
    pending_since: Optional[datetime] = Field(default=None, alias="pendingSince")

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class Account(BaseModel):
    """Account record as persisted by the surrounding application."""

    user_id: str
    role: AccountRole = AccountRole.OWNER
    email: Optional[str] = None
    shop_id: Optional[str] = None
    trial_ends_at: Optional[datetime] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class SessionUser(BaseModel):
    """Shape of the authenticated principal resolved from the session token."""

    user_id: str = Field(alias="id")
    role: AccountRole = AccountRole.OWNER
    shop_id: Optional[str] = Field(default=None, alias="shopId")
    trial_ends_at: Optional[datetime] = Field(default=None, alias="trialEndsAt")
    subscription: Optional[SubscriptionSnapshot] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class EntitlementDecision(BaseModel):
    """Result of evaluating access for one account at one instant."""

    has_access: bool
    is_payment_failure: bool
    evaluated_at: datetime
    trial_ends_at: Optional[datetime] = None
    subscription_status: Optional[str] = None
    access_expires_at: Optional[datetime] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)
