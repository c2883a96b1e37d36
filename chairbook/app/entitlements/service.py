"""Service resolving the freshest persisted state into an access decision."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Callable, Optional, Protocol

from .engine import EntitlementEngine
from .models import Account, AccountRole, EntitlementDecision


class AccountRepository(Protocol):
    """Data access layer for accounts and shop ownership."""

    def get_account(self, user_id: str) -> Optional[Account]:
        ...

    def get_shop_owner_id(self, shop_id: str) -> Optional[str]:
        ...


class SubscriptionReader(Protocol):
    """Read-only access to the subscription owned by an account."""

    def get_subscription_for_owner(self, owner_id: str) -> Optional[Any]:
        ...


class EntitlementService:
    """Evaluates access for an account against persisted trial and subscription state."""

    def __init__(
        self,
        account_repository: AccountRepository,
        subscription_reader: SubscriptionReader,
        engine: EntitlementEngine,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._accounts = account_repository
        self._subscriptions = subscription_reader
        self._engine = engine
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def evaluate(self, user_id: str, *, now: Optional[datetime] = None) -> EntitlementDecision:
        """Return the access decision for ``user_id``.

        Team members inherit the entitlement of the shop owner. Unknown users
        receive a decision without access.
        """

        current = now or self._clock()
        owner = self._resolve_billing_owner(user_id)
        if owner is None:
            return self._engine.evaluate(None, None, current)

        subscription = self._subscriptions.get_subscription_for_owner(owner.user_id)
        return self._engine.evaluate(owner.trial_ends_at, subscription, current)

    def _resolve_billing_owner(self, user_id: str) -> Optional[Account]:
        account = self._accounts.get_account(user_id)
        if account is None:
            return None
        if account.role == AccountRole.OWNER or not account.shop_id:
            return account

        owner_id = self._accounts.get_shop_owner_id(account.shop_id)
        if not owner_id or owner_id == account.user_id:
            return account
        return self._accounts.get_account(owner_id)


__all__ = ["AccountRepository", "EntitlementService", "SubscriptionReader"]
