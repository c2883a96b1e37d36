"""Persistence layer for account lookups used by access checks."""
from __future__ import annotations

from typing import Optional

from ..persistence import PostgresRepository
from .models import Account, AccountRole


def _row_to_account(row: dict) -> Account:
    return Account(
        user_id=str(row["id"]),
        role=AccountRole(row.get("role") or AccountRole.OWNER.value),
        email=row.get("email"),
        shop_id=str(row["shop_id"]) if row.get("shop_id") else None,
        trial_ends_at=row.get("trial_ends_at"),
    )


class PostgresAccountRepository(PostgresRepository):
    """Reads accounts and the shop they own or work for."""

    def get_account(self, user_id: str) -> Optional[Account]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT u.id,
                       u.role,
                       u.email,
                       u.trial_ends_at,
                       COALESCE(owned.id, member.shop_id) AS shop_id
                FROM users AS u
                LEFT JOIN shops AS owned ON owned.owner_id = u.id
                LEFT JOIN team_members AS member ON member.user_id = u.id
                WHERE u.id = %s
                LIMIT 1
                """,
                (user_id,),
            )
            row = cursor.fetchone()
            return _row_to_account(row) if row else None

    def get_shop_owner_id(self, shop_id: str) -> Optional[str]:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT owner_id FROM shops WHERE id = %s LIMIT 1",
                (shop_id,),
            )
            row = cursor.fetchone()
            return str(row["owner_id"]) if row else None

    def find_user_id_by_email(self, email: str) -> Optional[str]:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT id FROM users WHERE lower(email) = lower(%s) LIMIT 1",
                (email,),
            )
            row = cursor.fetchone()
            return str(row["id"]) if row else None


__all__ = ["PostgresAccountRepository"]
