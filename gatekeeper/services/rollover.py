"""
Period Rollover - Lazy reset of daily and monthly usage counters.

Counters are reset on read when the stored period marker no longer matches
the current period. Token balances are never touched here.
"""

import calendar
from dataclasses import replace
from datetime import UTC, date, datetime
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from structlog import get_logger

from gatekeeper.models.domain import EntitlementRecord

logger = get_logger(__name__)


def _resolve_zone(time_zone: str | None, default_time_zone: str) -> ZoneInfo:
    """Get the user's zone, falling back to the default for unknown names."""
    name = time_zone or default_time_zone
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError, OSError):
        logger.warning("unknown_time_zone", time_zone=name, fallback=default_time_zone)
        return ZoneInfo(default_time_zone)


def local_day(now: datetime, zone: ZoneInfo) -> date:
    """Calendar date of `now` in the given zone."""
    return now.astimezone(zone).date()


def _shift_months(moment: datetime, months: int) -> datetime:
    """Move `moment` by whole months, clamping the day to the target month's length."""
    index = moment.year * 12 + (moment.month - 1) + months
    year, month = divmod(index, 12)
    month += 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def billing_window_start(now: datetime, billing_anchor: datetime) -> datetime:
    """
    Start of the monthly usage window containing `now`.

    Windows are whole months stepped back from the billing anchor on the
    anchor's day of month, so an annual period still resets monthly.
    Each step is taken from the anchor itself, which keeps a 31st anchor
    on the 31st in months long enough to hold it.
    """
    anchor = billing_anchor.astimezone(UTC)
    months_back = 0
    while _shift_months(anchor, -months_back) > now:
        months_back += 1
    while _shift_months(anchor, -(months_back - 1)) <= now:
        months_back -= 1
    return _shift_months(anchor, -months_back)


def monthly_period_key(now: datetime, zone: ZoneInfo, billing_anchor: datetime | None) -> str:
    """
    Key identifying the monthly usage period `now` falls in.

    Billing-cycle aligned when an anchor (the active subscription's
    current_period_end) is given: the key is the UTC start date of the
    monthly window within the billing period. Calendar month in the user's
    zone otherwise.
    """
    if billing_anchor is not None:
        return f"period-{billing_window_start(now, billing_anchor).date().isoformat()}"
    local = now.astimezone(zone)
    return f"{local.year:04d}-{local.month:02d}"


def rollover(
    record: EntitlementRecord,
    now: datetime,
    billing_anchor: datetime | None = None,
    default_time_zone: str = "UTC",
) -> EntitlementRecord:
    """
    Reset counters whose period has ended.

    Args:
        record: Stored entitlement record
        now: Current wall-clock time (timezone aware)
        billing_anchor: Period end of an active Pro subscription, or None
            to use calendar months
        default_time_zone: Zone used when the record has none

    Returns:
        The record unchanged if both markers are current, otherwise a copy
        with the stale counters zeroed and markers advanced.
    """
    if now.tzinfo is None:
        raise ValueError("now must be timezone aware")

    zone = _resolve_zone(record.time_zone, default_time_zone)
    today = local_day(now, zone)
    period_key = monthly_period_key(now, zone, billing_anchor)

    updated = record

    if record.daily_reset_day != today:
        updated = replace(updated, barcode_scans_today=0, daily_reset_day=today)

    if record.monthly_period_key != period_key:
        updated = replace(
            updated,
            ai_meal_plans_used=0,
            ai_recipe_suggestions_used=0,
            pdf_exports_used=0,
            streak_shields_used=0,
            monthly_period_key=period_key,
        )

    if updated is not record:
        logger.debug(
            "usage_period_rolled_over",
            user_id=record.user_id,
            daily_reset=record.daily_reset_day != today,
            monthly_reset=record.monthly_period_key != period_key,
            period_key=period_key,
        )

    return updated
