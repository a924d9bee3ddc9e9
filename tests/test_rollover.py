"""
Tests for Period Rollover.

Daily and monthly counter resets, time-zone handling and billing-period
anchoring.
"""

from datetime import UTC, date, datetime, timedelta

import pytest
from conftest import FIXED_NOW, make_record
from hypothesis import given
from hypothesis import strategies as st

from gatekeeper.models.api import Tier
from gatekeeper.services.rollover import billing_window_start, monthly_period_key, rollover
from gatekeeper.services.snapshot import build_snapshot


class TestDailyRollover:
    """barcode_scans_today resets on a new local day."""

    def test_yesterdays_scans_read_as_zero_today(self):
        """8 scans with yesterday's marker become 0 today."""
        record = make_record(barcode_scans_today=8, daily_reset_day=date(2026, 10, 16))

        rolled = rollover(record, FIXED_NOW)

        assert rolled.barcode_scans_today == 0
        assert rolled.daily_reset_day == date(2026, 10, 17)

    def test_same_day_returns_same_record(self):
        """Nothing changes while both markers are current."""
        record = make_record(barcode_scans_today=8)

        assert rollover(record, FIXED_NOW) is record

    def test_day_boundary_follows_user_time_zone(self):
        """At 23:30 UTC it is already tomorrow in Tokyo."""
        now = datetime(2026, 10, 17, 23, 30, tzinfo=UTC)
        record = make_record(barcode_scans_today=4, time_zone="Asia/Tokyo")

        rolled = rollover(record, now)

        assert rolled.daily_reset_day == date(2026, 10, 18)
        assert rolled.barcode_scans_today == 0

    def test_unknown_time_zone_falls_back_to_default(self):
        """A bad zone name uses the default zone."""
        record = make_record(barcode_scans_today=4, time_zone="Mars/Olympus")

        assert rollover(record, FIXED_NOW).barcode_scans_today == 4

    def test_naive_now_rejected(self):
        """Rollover needs an aware clock."""
        with pytest.raises(ValueError):
            rollover(make_record(), datetime(2026, 10, 17, 12, 0))


class TestMonthlyRollover:
    """Monthly counters reset when the period key changes."""

    def test_new_calendar_month_resets_monthly_counters(self):
        """All four monthly counters reset; tokens stay."""
        record = make_record(
            monthly_period_key="2026-09",
            ai_meal_plans_used=2,
            ai_recipe_suggestions_used=1,
            pdf_exports_used=1,
            streak_shields_used=1,
            ai_tokens=7,
            export_tokens=2,
            streak_shields=3,
        )

        rolled = rollover(record, FIXED_NOW)

        assert rolled.monthly_period_key == "2026-10"
        assert rolled.ai_meal_plans_used == 0
        assert rolled.ai_recipe_suggestions_used == 0
        assert rolled.pdf_exports_used == 0
        assert rolled.streak_shields_used == 0
        assert (rolled.ai_tokens, rolled.export_tokens, rolled.streak_shields) == (7, 2, 3)

    def test_billing_anchor_keys_on_window_start(self):
        """Pro periods are keyed by the monthly window ending on the anchor day."""
        anchor = datetime(2026, 11, 3, 8, 0, tzinfo=UTC)

        assert monthly_period_key(FIXED_NOW, UTC, anchor) == "period-2026-10-03"

    def test_renewal_moves_period(self):
        """A renewed period end starts a fresh usage period."""
        old_anchor = FIXED_NOW - timedelta(days=1)
        new_anchor = FIXED_NOW + timedelta(days=30)
        record = make_record(
            monthly_period_key=monthly_period_key(old_anchor - timedelta(days=1), UTC, old_anchor),
            ai_meal_plans_used=12,
        )

        rolled = rollover(record, FIXED_NOW, billing_anchor=new_anchor)

        assert rolled.ai_meal_plans_used == 0
        assert rolled.monthly_period_key == "period-2026-10-16"

    def test_short_month_clamps_window_start(self):
        """A 31st anchor opens February's window on its last day."""
        anchor = datetime(2027, 3, 31, 0, 0, tzinfo=UTC)
        now = datetime(2027, 2, 28, 12, 0, tzinfo=UTC)

        assert billing_window_start(now, anchor) == datetime(2027, 2, 28, 0, 0, tzinfo=UTC)
        assert monthly_period_key(now, UTC, anchor) == "period-2027-02-28"

    @given(
        scans=st.integers(min_value=0, max_value=50),
        tokens=st.integers(min_value=0, max_value=50),
        days=st.integers(min_value=0, max_value=400),
    )
    def test_tokens_never_reset(self, scans, tokens, days):
        """Any elapsed time leaves token balances untouched."""
        record = make_record(barcode_scans_today=scans, ai_tokens=tokens, export_tokens=tokens)

        rolled = rollover(record, FIXED_NOW + timedelta(days=days))

        assert rolled.ai_tokens == tokens
        assert rolled.export_tokens == tokens
        assert rolled.barcode_scans_today == (scans if days == 0 else 0)


class TestAnnualBillingPeriod:
    """Annual Pro periods still reset monthly counters every month."""

    ANNUAL_END = FIXED_NOW + timedelta(days=360)

    def make_annual_record(self, **overrides):
        return make_record(
            tier=Tier.PRO,
            current_period_end=self.ANNUAL_END,
            monthly_period_key=monthly_period_key(FIXED_NOW, UTC, self.ANNUAL_END),
            **overrides,
        )

    def test_windows_step_back_from_period_end(self):
        assert monthly_period_key(FIXED_NOW, UTC, self.ANNUAL_END) == "period-2026-10-12"
        later = FIXED_NOW + timedelta(days=35)
        assert monthly_period_key(later, UTC, self.ANNUAL_END) == "period-2026-11-12"

    def test_usage_resets_months_into_the_period(self):
        """30 meal plans used at signup read as 0 three months later."""
        record = self.make_annual_record(ai_meal_plans_used=30, pdf_exports_used=4)

        snapshot, rolled = build_snapshot(record, FIXED_NOW + timedelta(days=95))

        assert snapshot.is_pro is True
        assert snapshot.ai_meal_plans_used == 0
        assert snapshot.pdf_exports_used == 0
        assert rolled.monthly_period_key == "period-2027-01-12"

    def test_usage_kept_within_the_same_window(self):
        record = self.make_annual_record(ai_meal_plans_used=30)

        snapshot, rolled = build_snapshot(record, FIXED_NOW + timedelta(days=10))

        assert snapshot.ai_meal_plans_used == 30
        assert rolled.monthly_period_key == record.monthly_period_key

    @given(days=st.integers(min_value=0, max_value=359))
    def test_window_always_contains_now(self, days):
        now = FIXED_NOW + timedelta(days=days)

        start = billing_window_start(now, self.ANNUAL_END)

        assert start <= now
        assert now - start < timedelta(days=31)
        assert start.day == self.ANNUAL_END.day
