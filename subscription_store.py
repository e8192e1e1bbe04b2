"""Subscription tiers and their quota limits.

The tier lives on the owner's ``user_profiles`` row. Reads prefer the remote
copy when it is reachable and refresh the local cache; offline reads use the
cache and default to the free tier.
"""

from __future__ import annotations

import logging

from clock import Clock, isoformat, system_clock
from errors import RemoteUnavailableError

logger = logging.getLogger(__name__)


# -1 means unlimited.
PLAN_LIMITS = {
    "free": {
        "questions_per_month": 100,
        "topics_per_subject": 5,
        "storage_bytes": 100 * 1024 * 1024,
    },
    "pro": {
        "questions_per_month": 1500,
        "topics_per_subject": -1,
        "storage_bytes": 5 * 1024 * 1024 * 1024,
    },
}

PLAN_ORDER = ["free", "pro"]

PLAN_DISPLAY = {
    "free": "Free",
    "pro": "Pro",
}


class SubscriptionStore:
    """Tier lookups and changes for one deployment."""

    def __init__(self, local, remote, state, queue=None, clock: Clock = system_clock,
                 limits: dict | None = None):
        self.local = local
        self.remote = remote
        self.state = state
        self.queue = queue
        self.clock = clock
        self.limits = limits or PLAN_LIMITS

    def plan_limits(self, tier: str) -> dict:
        """Limits for ``tier``; unknown tiers get the free limits."""
        return self.limits.get(tier) or self.limits[PLAN_ORDER[0]]

    def current_tier(self, owner_id: str) -> str:
        if self.state.is_online:
            try:
                row = self.remote.query_one(
                    "SELECT subscription_tier FROM user_profiles WHERE id = ?", (owner_id,)
                )
            except RemoteUnavailableError as exc:
                self.state.mark_offline(str(exc))
            else:
                if row and row.get("subscription_tier"):
                    self.local.execute(
                        "UPDATE user_profiles SET subscription_tier = ? WHERE id = ? AND is_dirty = 0",
                        (row["subscription_tier"], owner_id),
                    )
                    return row["subscription_tier"]
        tier = self.local.scalar(
            "SELECT subscription_tier FROM user_profiles WHERE id = ?", (owner_id,)
        )
        return tier or PLAN_ORDER[0]

    def set_tier(self, owner_id: str, tier: str) -> None:
        """Change the owner's tier (billing webhooks call this)."""
        if tier not in PLAN_ORDER:
            raise ValueError(f"Invalid plan: {tier}")
        now = isoformat(self.clock())
        if self.state.is_online:
            try:
                self.remote.execute(
                    "UPDATE user_profiles SET subscription_tier = ?, updated_at = ? WHERE id = ?",
                    (tier, now, owner_id),
                )
            except RemoteUnavailableError as exc:
                self.state.mark_offline(str(exc))
            else:
                self.local.execute(
                    "UPDATE user_profiles SET subscription_tier = ?, updated_at = ?, "
                    "synced_at = ?, is_dirty = 0 WHERE id = ?",
                    (tier, now, now, owner_id),
                )
                logger.info("Tier for %s set to %s", owner_id, tier)
                return

        with self.local.transaction():
            self.local.execute(
                "UPDATE user_profiles SET subscription_tier = ?, updated_at = ?, is_dirty = 1 "
                "WHERE id = ?",
                (tier, now, owner_id),
            )
            row = self.local.query_one(
                "SELECT id, email, full_name, subscription_tier, created_at, updated_at "
                "FROM user_profiles WHERE id = ?",
                (owner_id,),
            )
            if row and self.queue is not None:
                self.queue.enqueue("user_profiles", owner_id, "update", row)
        logger.info("Tier for %s set to %s locally; queued for sync", owner_id, tier)
