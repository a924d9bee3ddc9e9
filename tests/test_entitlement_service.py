"""
Tests for EntitlementService.

Uses the in-memory compare-and-swap store to cover persistence, billing
event idempotency and concurrent consumption.
"""

import asyncio
from datetime import date, timedelta

import pytest
from conftest import FIXED_NOW, InMemoryEntitlementStore, make_record

from gatekeeper.exceptions import (
    ConcurrentModificationError,
    InvalidTimeZoneError,
    LimitExceededError,
    ProductNotFoundError,
    UnknownFeatureError,
)
from gatekeeper.models.api import (
    FeatureType,
    SubscriptionStatus,
    Tier,
    TokenSource,
    TokenType,
    UpsellTrigger,
)
from gatekeeper.services.entitlements import EntitlementService


class TestGetEntitlements:
    """Reads resolve through the snapshot builder."""

    async def test_new_user_gets_free_snapshot(self, service: EntitlementService):
        snapshot = await service.get_entitlements("new-user")

        assert snapshot.user_id == "new-user"
        assert snapshot.tier == Tier.FREE
        assert snapshot.version == 0

    async def test_rollover_visible_without_write(
        self, service: EntitlementService, memory_store: InMemoryEntitlementStore
    ):
        """Stale counters read as reset; the read does not write."""
        memory_store.put(
            make_record(barcode_scans_today=9, daily_reset_day=date(2026, 10, 16))
        )

        snapshot = await service.get_entitlements("user-1")

        assert snapshot.barcode_scans_today == 0
        assert memory_store.save_calls == 0


class TestCheckFeature:
    """check_feature never writes."""

    async def test_check_does_not_debit(
        self, service: EntitlementService, memory_store: InMemoryEntitlementStore
    ):
        memory_store.put(make_record(ai_recipe_suggestions_used=1))

        decision = await service.check_feature("user-1", FeatureType.AI_RECIPE)

        assert decision.allowed is True
        assert memory_store.records["user-1"].ai_recipe_suggestions_used == 1
        assert memory_store.save_calls == 0

    async def test_strict_service_rejects_unknown(self, strict_service: EntitlementService):
        with pytest.raises(UnknownFeatureError):
            await strict_service.check_feature("user-1", "voice_logging")


class TestConsumeFeature:
    """Consumption persists counters, tokens and ledger in one save."""

    async def test_consume_persists_debit_and_bumps_version(
        self, service: EntitlementService, memory_store: InMemoryEntitlementStore
    ):
        memory_store.put(make_record(ai_meal_plans_used=1, ai_tokens=3))

        result = await service.consume_feature("user-1", FeatureType.AI_MEAL_PLAN, quantity=2)

        stored = memory_store.records["user-1"]
        assert result.tokens_used is True
        assert result.new_balance == 2
        assert stored.ai_meal_plans_used == 2
        assert stored.ai_tokens == 2
        assert stored.version == 1
        assert len(memory_store.transactions) == 1

    async def test_consume_persists_rollover_with_debit(
        self, service: EntitlementService, memory_store: InMemoryEntitlementStore
    ):
        """A new month resets the counter before the debit is applied."""
        memory_store.put(make_record(monthly_period_key="2026-09", ai_meal_plans_used=2))

        await service.consume_feature("user-1", FeatureType.AI_MEAL_PLAN)

        stored = memory_store.records["user-1"]
        assert stored.monthly_period_key == "2026-10"
        assert stored.ai_meal_plans_used == 1

    async def test_denied_consume_leaves_record_unchanged(
        self, service: EntitlementService, memory_store: InMemoryEntitlementStore
    ):
        record = make_record(ai_recipe_suggestions_used=2)
        memory_store.put(record)

        with pytest.raises(LimitExceededError) as exc_info:
            await service.consume_feature("user-1", FeatureType.AI_RECIPE)

        assert exc_info.value.decision.upsell_type == UpsellTrigger.AI_LIMIT
        assert memory_store.records["user-1"] == record
        assert memory_store.save_calls == 0

    async def test_unknown_feature_consumes_nothing(
        self, service: EntitlementService, memory_store: InMemoryEntitlementStore
    ):
        memory_store.put(make_record())

        result = await service.consume_feature("user-1", "voice_logging")

        assert result.success is True
        assert memory_store.save_calls == 0

    async def test_conflict_propagates(
        self, service: EntitlementService, memory_store: InMemoryEntitlementStore
    ):
        """The service does not retry version conflicts itself."""
        memory_store.put(make_record())
        memory_store.fail_next_saves = 1

        with pytest.raises(ConcurrentModificationError):
            await service.consume_feature("user-1", FeatureType.BARCODE_SCAN)

    async def test_concurrent_consumes_on_last_unit(
        self, service: EntitlementService, memory_store: InMemoryEntitlementStore
    ):
        """Exactly one of two concurrent consumes of the last unit succeeds."""
        memory_store.put(make_record(ai_meal_plans_used=1))

        results = await asyncio.gather(
            service.consume_feature("user-1", FeatureType.AI_MEAL_PLAN),
            service.consume_feature("user-1", FeatureType.AI_MEAL_PLAN),
            return_exceptions=True,
        )

        successes = [r for r in results if not isinstance(r, Exception)]
        failures = [r for r in results if isinstance(r, Exception)]
        assert len(successes) == 1
        assert len(failures) == 1
        assert isinstance(failures[0], (LimitExceededError, ConcurrentModificationError))
        assert memory_store.records["user-1"].ai_meal_plans_used == 2


class TestStreakShield:
    """Streak shield spending."""

    async def test_use_purchased_shield(
        self, service: EntitlementService, memory_store: InMemoryEntitlementStore
    ):
        memory_store.put(make_record(streak_shields=2))

        remaining = await service.use_streak_shield("user-1")

        assert remaining == 1
        assert memory_store.records["user-1"].streak_shields == 1

    async def test_no_shield_raises(self, service: EntitlementService):
        with pytest.raises(LimitExceededError):
            await service.use_streak_shield("user-1")


class TestAddTokens:
    """Non-purchase token credits."""

    async def test_reward_credit(
        self, service: EntitlementService, memory_store: InMemoryEntitlementStore
    ):
        balance = await service.add_tokens(
            "user-1", TokenType.AI_TOKENS, 3, TokenSource.REWARD, "achievement:first_week"
        )

        assert balance == 3
        (entry,) = memory_store.transactions
        assert entry.source == TokenSource.REWARD
        assert entry.source_reference == "achievement:first_week"

    async def test_usage_source_rejected(self, service: EntitlementService):
        with pytest.raises(ValueError):
            await service.add_tokens("user-1", TokenType.AI_TOKENS, 3, TokenSource.USAGE)


class TestTimeZone:
    """The stored zone drives daily and calendar-month resets."""

    async def test_zone_persisted_and_used_for_daily_reset(
        self, memory_store: InMemoryEntitlementStore
    ):
        """16:00 UTC is already the next day in Tokyo."""
        late = FIXED_NOW.replace(hour=16)
        service = EntitlementService(memory_store, clock=lambda: late)
        memory_store.put(make_record(barcode_scans_today=3))

        stored_zone = await service.set_time_zone("user-1", "Asia/Tokyo")

        stored = memory_store.records["user-1"]
        assert stored_zone == "Asia/Tokyo"
        assert stored.time_zone == "Asia/Tokyo"
        assert stored.barcode_scans_today == 3
        assert stored.version == 1

        snapshot = await service.get_entitlements("user-1")
        assert snapshot.barcode_scans_today == 0

    async def test_same_zone_is_not_rewritten(
        self, service: EntitlementService, memory_store: InMemoryEntitlementStore
    ):
        memory_store.put(make_record(time_zone="Europe/Berlin"))

        await service.set_time_zone("user-1", "Europe/Berlin")

        assert memory_store.save_calls == 0

    @pytest.mark.parametrize("time_zone", ["Mars/Olympus_Mons", "../etc/passwd", "Europe"])
    async def test_unknown_zone_rejected(
        self,
        service: EntitlementService,
        memory_store: InMemoryEntitlementStore,
        time_zone: str,
    ):
        with pytest.raises(InvalidTimeZoneError) as exc_info:
            await service.set_time_zone("user-1", time_zone)

        assert exc_info.value.time_zone == time_zone
        assert memory_store.save_calls == 0

    async def test_conflict_propagates(
        self, service: EntitlementService, memory_store: InMemoryEntitlementStore
    ):
        memory_store.put(make_record())
        memory_store.fail_next_saves = 1

        with pytest.raises(ConcurrentModificationError):
            await service.set_time_zone("user-1", "America/New_York")


class TestBillingEvents:
    """Subscription changes and purchases are idempotent by event id."""

    async def test_subscription_upgrade_applies_once(
        self, service: EntitlementService, memory_store: InMemoryEntitlementStore
    ):
        period_end = FIXED_NOW + timedelta(days=30)

        applied = await service.apply_subscription_change(
            user_id="user-1",
            event_id="evt_sub_1",
            tier=Tier.PRO,
            status=SubscriptionStatus.ACTIVE,
            current_period_end=period_end,
        )
        repeated = await service.apply_subscription_change(
            user_id="user-1",
            event_id="evt_sub_1",
            tier=Tier.PRO,
            status=SubscriptionStatus.ACTIVE,
            current_period_end=period_end,
        )

        assert applied is True
        assert repeated is False
        assert memory_store.records["user-1"].version == 1
        snapshot = await service.get_entitlements("user-1")
        assert snapshot.is_pro is True

    async def test_cancellation_downgrades(
        self, service: EntitlementService, memory_store: InMemoryEntitlementStore
    ):
        memory_store.put(make_record(tier=Tier.PRO))

        await service.apply_subscription_change(
            user_id="user-1",
            event_id="evt_cancel",
            tier=Tier.PRO,
            status=SubscriptionStatus.CANCELLED,
        )

        snapshot = await service.get_entitlements("user-1")
        assert snapshot.tier == Tier.FREE

    async def test_purchase_credits_tokens_once(
        self, service: EntitlementService, memory_store: InMemoryEntitlementStore
    ):
        assert await service.apply_product_purchase("user-1", "ai_tokens_15", "evt_p1") is True
        assert await service.apply_product_purchase("user-1", "ai_tokens_15", "evt_p1") is False

        stored = memory_store.records["user-1"]
        assert stored.ai_tokens == 15
        assert memory_store.transactions[0].source == TokenSource.PURCHASE
        assert memory_store.transactions[0].source_reference == "evt_p1"

    async def test_unknown_or_subscription_product_rejected(self, service: EntitlementService):
        with pytest.raises(ProductNotFoundError):
            await service.apply_product_purchase("user-1", "gems_100", "evt_p2")
        with pytest.raises(ProductNotFoundError):
            await service.apply_product_purchase("user-1", "pro_monthly", "evt_p3")
