"""PostgreSQL persistence for subscriptions and usage counters."""
from __future__ import annotations

from typing import Optional

import psycopg2
import psycopg2.errors

from ..db import PostgresRepository
from .exceptions import DuplicateRecordError
from .models import SubscriptionStatus, SubscriptionUsage, UserSubscription


def _row_to_subscription(row: dict) -> UserSubscription:
    return UserSubscription(
        id=str(row["id"]),
        user_id=row["user_id"],
        plan_id=row["plan_id"],
        status=SubscriptionStatus(row["status"]),
        external_subscription_id=row.get("external_subscription_id"),
        external_customer_id=row.get("external_customer_id"),
        current_period_start=row["current_period_start"],
        current_period_end=row["current_period_end"],
        cancelled_at=row.get("cancelled_at"),
        trial_end=row.get("trial_end"),
        last_event_at=row.get("last_event_at"),
        version=int(row["version"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_usage(row: dict) -> SubscriptionUsage:
    return SubscriptionUsage(
        user_id=row["user_id"],
        invoice_count=int(row["invoice_count"]),
        user_count=int(row["user_count"]),
        last_updated=row["last_updated"],
        version=int(row["version"]),
    )


def _subscription_params(subscription: UserSubscription) -> dict:
    return {
        "id": subscription.id,
        "user_id": subscription.user_id,
        "plan_id": subscription.plan_id,
        "status": subscription.status.value,
        "external_subscription_id": subscription.external_subscription_id,
        "external_customer_id": subscription.external_customer_id,
        "current_period_start": subscription.current_period_start,
        "current_period_end": subscription.current_period_end,
        "cancelled_at": subscription.cancelled_at,
        "trial_end": subscription.trial_end,
        "last_event_at": subscription.last_event_at,
        "created_at": subscription.created_at,
        "updated_at": subscription.updated_at,
    }


class PostgresSubscriptionRepository(PostgresRepository):
    """Concrete repository persisting user subscriptions in PostgreSQL."""

    def get_by_user_id(self, user_id: str) -> Optional[UserSubscription]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM billing_user_subscriptions
                WHERE user_id = %s
                LIMIT 1
                """,
                (user_id,),
            )
            row = cursor.fetchone()
            return _row_to_subscription(row) if row else None

    def get_by_external_id(self, external_subscription_id: str) -> Optional[UserSubscription]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM billing_user_subscriptions
                WHERE external_subscription_id = %s
                LIMIT 1
                """,
                (external_subscription_id,),
            )
            row = cursor.fetchone()
            return _row_to_subscription(row) if row else None

    def add(self, subscription: UserSubscription) -> UserSubscription:
        try:
            with self._cursor() as cursor:
                cursor.execute(
                    """
                    INSERT INTO billing_user_subscriptions (
                        id,
                        user_id,
                        plan_id,
                        status,
                        external_subscription_id,
                        external_customer_id,
                        current_period_start,
                        current_period_end,
                        cancelled_at,
                        trial_end,
                        last_event_at,
                        version,
                        created_at,
                        updated_at
                    )
                    VALUES (%(id)s, %(user_id)s, %(plan_id)s, %(status)s,
                            %(external_subscription_id)s, %(external_customer_id)s,
                            %(current_period_start)s, %(current_period_end)s,
                            %(cancelled_at)s, %(trial_end)s, %(last_event_at)s,
                            0, %(created_at)s, %(updated_at)s)
                    RETURNING *
                    """,
                    _subscription_params(subscription),
                )
                row = cursor.fetchone()
        except psycopg2.errors.UniqueViolation as exc:
            raise DuplicateRecordError(
                f"Subscription already exists for user {subscription.user_id}"
            ) from exc
        if not row:
            raise RuntimeError("Failed to persist subscription")
        return _row_to_subscription(row)

    def update(self, subscription: UserSubscription, *, expected_version: int) -> Optional[UserSubscription]:
        params = _subscription_params(subscription)
        params["expected_version"] = expected_version
        try:
            with self._cursor() as cursor:
                cursor.execute(
                    """
                    UPDATE billing_user_subscriptions
                    SET plan_id = %(plan_id)s,
                        status = %(status)s,
                        external_subscription_id = %(external_subscription_id)s,
                        external_customer_id = %(external_customer_id)s,
                        current_period_start = %(current_period_start)s,
                        current_period_end = %(current_period_end)s,
                        cancelled_at = %(cancelled_at)s,
                        trial_end = %(trial_end)s,
                        last_event_at = %(last_event_at)s,
                        version = version + 1,
                        updated_at = %(updated_at)s
                    WHERE id = %(id)s AND version = %(expected_version)s
                    RETURNING *
                    """,
                    params,
                )
                row = cursor.fetchone()
        except psycopg2.errors.UniqueViolation as exc:
            raise DuplicateRecordError(
                f"Subscription {subscription.external_subscription_id} is already linked to another user"
            ) from exc
        return _row_to_subscription(row) if row else None


class PostgresUsageRepository(PostgresRepository):
    """Concrete repository persisting usage counters in PostgreSQL."""

    def get(self, user_id: str) -> Optional[SubscriptionUsage]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM billing_subscription_usage
                WHERE user_id = %s
                LIMIT 1
                """,
                (user_id,),
            )
            row = cursor.fetchone()
            return _row_to_usage(row) if row else None

    def add(self, usage: SubscriptionUsage) -> SubscriptionUsage:
        try:
            with self._cursor() as cursor:
                cursor.execute(
                    """
                    INSERT INTO billing_subscription_usage (
                        user_id,
                        invoice_count,
                        user_count,
                        last_updated,
                        version
                    )
                    VALUES (%s, %s, %s, %s, 0)
                    RETURNING *
                    """,
                    (usage.user_id, usage.invoice_count, usage.user_count, usage.last_updated),
                )
                row = cursor.fetchone()
        except psycopg2.errors.UniqueViolation as exc:
            raise DuplicateRecordError(f"Usage already tracked for user {usage.user_id}") from exc
        if not row:
            raise RuntimeError("Failed to persist usage")
        return _row_to_usage(row)

    def update(self, usage: SubscriptionUsage, *, expected_version: int) -> Optional[SubscriptionUsage]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE billing_subscription_usage
                SET invoice_count = %s,
                    user_count = %s,
                    last_updated = %s,
                    version = version + 1
                WHERE user_id = %s AND version = %s
                RETURNING *
                """,
                (
                    usage.invoice_count,
                    usage.user_count,
                    usage.last_updated,
                    usage.user_id,
                    expected_version,
                ),
            )
            row = cursor.fetchone()
            return _row_to_usage(row) if row else None


__all__ = ["PostgresSubscriptionRepository", "PostgresUsageRepository"]
