"""Lazy provisioning of per-user subscription and usage records."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional, Tuple

from .exceptions import DuplicateRecordError, InvalidUserIdError
from .interfaces import SubscriptionRepository, UsageRepository
from .models import SubscriptionUsage, UserSubscription

logger = logging.getLogger("billing")


def normalize_user_id(user_id: object) -> str:
    """Return the user id as a non-blank string or raise :class:`InvalidUserIdError`."""

    if user_id is None:
        raise InvalidUserIdError("User id is required")
    value = str(user_id).strip()
    if not value:
        raise InvalidUserIdError("User id is required")
    return value


def ensure_subscription(
    repository: SubscriptionRepository,
    user_id: str,
    *,
    now: Optional[datetime] = None,
) -> Tuple[UserSubscription, bool]:
    """Return ``(subscription, was_created)``, provisioning a Free record when absent.

    A concurrent provisioner winning the insert is not an error; its record is
    returned instead.
    """

    existing = repository.get_by_user_id(user_id)
    if existing is not None:
        return existing, False
    try:
        created = repository.add(UserSubscription.create_free(user_id, now=now))
    except DuplicateRecordError:
        existing = repository.get_by_user_id(user_id)
        if existing is None:
            raise
        return existing, False
    logger.info("Provisioned free subscription %s for user %s", created.id, user_id)
    return created, True


def ensure_usage(
    repository: UsageRepository,
    user_id: str,
    *,
    now: Optional[datetime] = None,
) -> Tuple[SubscriptionUsage, bool]:
    """Return ``(usage, was_created)``, provisioning zeroed counters when absent."""

    existing = repository.get(user_id)
    if existing is not None:
        return existing, False
    try:
        created = repository.add(SubscriptionUsage.create(user_id, now=now))
    except DuplicateRecordError:
        existing = repository.get(user_id)
        if existing is None:
            raise
        return existing, False
    logger.info("Provisioned usage counters for user %s", user_id)
    return created, True


__all__ = ["ensure_subscription", "ensure_usage", "normalize_user_id"]
