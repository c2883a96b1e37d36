"""Storage of web push endpoints."""
from __future__ import annotations

from typing import List

from ..persistence import PostgresRepository
from .models import PushSubscription


class PostgresPushSubscriptionRepository(PostgresRepository):
    def list_for_user(self, user_id: str) -> List[PushSubscription]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT user_id, endpoint, p256dh, auth
                FROM push_subscriptions
                WHERE user_id = %s
                ORDER BY created_at
                """,
                (user_id,),
            )
            rows = cursor.fetchall() or []
            return [
                PushSubscription(
                    user_id=str(row["user_id"]),
                    endpoint=row["endpoint"],
                    p256dh=row["p256dh"],
                    auth=row["auth"],
                )
                for row in rows
            ]

    def delete_endpoint(self, endpoint: str) -> bool:
        with self._cursor() as cursor:
            cursor.execute("DELETE FROM push_subscriptions WHERE endpoint = %s", (endpoint,))
            return cursor.rowcount > 0


__all__ = ["PostgresPushSubscriptionRepository"]
