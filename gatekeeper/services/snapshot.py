"""
Entitlement Snapshot Builder - The single entry point for snapshot construction.

Every read of a user's entitlements goes through build_snapshot so that
period rollover is always applied before any check or consumption.
"""

import math
from datetime import datetime, timedelta

from structlog import get_logger

from gatekeeper.models.api import SubscriptionStatus, Tier
from gatekeeper.models.domain import EntitlementRecord, UserEntitlements
from gatekeeper.services.rollover import rollover
from gatekeeper.services.tier_catalog import limits_for

logger = get_logger(__name__)

_ENTITLED_STATUSES = frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING})


def resolve_tier(record: EntitlementRecord, now: datetime) -> Tier:
    """
    Effective tier for gating.

    Stored Pro counts only while the subscription is active or trialing and
    its current period has not ended. Cancelled, past due and expired Pro
    resolve to free.
    """
    if record.tier != Tier.PRO:
        return Tier.FREE

    if record.subscription_status not in _ENTITLED_STATUSES:
        return Tier.FREE

    if record.current_period_end is not None and record.current_period_end < now:
        logger.warning(
            "subscription_period_expired",
            user_id=record.user_id,
            status=record.subscription_status,
            current_period_end=record.current_period_end.isoformat(),
        )
        return Tier.FREE

    return Tier.PRO


def trial_days_remaining(record: EntitlementRecord, now: datetime) -> int | None:
    """Whole days left in a trial, rounded up; None when not trialing."""
    if record.subscription_status != SubscriptionStatus.TRIALING or record.trial_end is None:
        return None
    remaining = (record.trial_end - now) / timedelta(days=1)
    return max(0, math.ceil(remaining))


def build_snapshot(
    record: EntitlementRecord,
    now: datetime,
    default_time_zone: str = "UTC",
) -> tuple[UserEntitlements, EntitlementRecord]:
    """
    Resolve a stored record into a rollover-applied snapshot.

    Returns:
        (snapshot, rolled_record). rolled_record is the record after
        rollover; it differs from the input when a period ended and must be
        persisted by the caller before or together with any mutation.
    """
    tier = resolve_tier(record, now)
    billing_anchor = record.current_period_end if tier == Tier.PRO else None
    rolled = rollover(record, now, billing_anchor, default_time_zone)
    limits = limits_for(tier)

    snapshot = UserEntitlements(
        ai_meal_plans_per_month=limits.ai_meal_plans_per_month,
        ai_recipe_suggestions_per_month=limits.ai_recipe_suggestions_per_month,
        barcode_scans_per_day=limits.barcode_scans_per_day,
        food_database_tier=limits.food_database_tier,
        history_retention_days=limits.history_retention_days,
        achievements_available=limits.achievements_available,
        monthly_streak_shields=limits.monthly_streak_shields,
        pdf_exports_included=limits.pdf_exports_included,
        data_export_enabled=limits.data_export_enabled,
        family_sharing_slots=limits.family_sharing_slots,
        user_id=rolled.user_id,
        version=rolled.version,
        tier=tier,
        is_trialing=rolled.subscription_status == SubscriptionStatus.TRIALING,
        trial_days_remaining=trial_days_remaining(rolled, now),
        ai_meal_plans_used=rolled.ai_meal_plans_used,
        ai_recipe_suggestions_used=rolled.ai_recipe_suggestions_used,
        barcode_scans_today=rolled.barcode_scans_today,
        pdf_exports_used=rolled.pdf_exports_used,
        streak_shields_used=rolled.streak_shields_used,
        ai_tokens=rolled.ai_tokens,
        export_tokens=rolled.export_tokens,
        streak_shields=rolled.streak_shields,
        subscription_status=rolled.subscription_status,
        current_period_end=rolled.current_period_end,
        cancel_at_period_end=rolled.cancel_at_period_end,
    )
    return snapshot, rolled
