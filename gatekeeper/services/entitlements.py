"""
Entitlement Service - Orchestrates store, snapshot builder, gate and coordinator.

NO DICTIONARIES - All operations use strongly typed domain models.

Each operation loads the user's record once, builds the rollover-applied
snapshot, evaluates or plans against it, and writes back with a version
check. Conflicts surface as ConcurrentModificationError; retrying is the
caller's decision.
"""

import time
from collections.abc import Callable
from dataclasses import replace
from datetime import UTC, datetime
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from structlog import get_logger

from gatekeeper.db.repository import BillingEventMarker, EntitlementStore
from gatekeeper.exceptions import InvalidTimeZoneError, LimitExceededError, ProductNotFoundError
from gatekeeper.models.api import FeatureType, SubscriptionStatus, Tier, TokenSource, TokenType
from gatekeeper.models.domain import (
    ConsumptionResult,
    EntitlementRecord,
    GateDecision,
    TokenTransactionData,
    UserEntitlements,
)
from gatekeeper.observability import metrics
from gatekeeper.observability.tracing import trace_operation
from gatekeeper.services.consumption import (
    STREAK_SHIELD_FEATURE,
    consume,
    credit_tokens,
    use_streak_shield,
)
from gatekeeper.services.gate import check
from gatekeeper.services.product_catalog import product_for
from gatekeeper.services.snapshot import build_snapshot

logger = get_logger(__name__)

SUBSCRIPTION_EVENT = "subscription"
PURCHASE_EVENT = "purchase"


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class EntitlementService:
    """Entitlement reads, gating and debits for one request."""

    def __init__(
        self,
        store: EntitlementStore,
        strict: bool = False,
        default_time_zone: str = "UTC",
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        """
        Initialize service.

        Args:
            store: Persistence collaborator
            strict: Raise UnknownFeatureError for unrecognized features
            default_time_zone: Rollover zone for users without one
            clock: Source of the current time
        """
        self.store = store
        self.strict = strict
        self.default_time_zone = default_time_zone
        self.clock = clock

    async def get_entitlements(self, user_id: str) -> UserEntitlements:
        """
        Resolve a user's current entitlements.

        Rollover is applied in the returned snapshot; the stored markers are
        brought forward by the next write for this user.
        """
        snapshot, _ = await self._load_snapshot(user_id)
        return snapshot

    async def check_feature(
        self, user_id: str, feature: str | FeatureType, quantity: int = 1
    ) -> GateDecision:
        """
        Evaluate a gated action without consuming it.

        Raises:
            UnknownFeatureError: Unrecognized feature in strict mode
            StorageUnavailableError: Store failure
        """
        feature_name = str(getattr(feature, "value", feature))
        snapshot, _ = await self._load_snapshot(user_id)
        decision = check(snapshot, feature, quantity, strict=self.strict)

        metrics.record_feature_check(feature_name, decision.allowed, decision.reason)
        logger.debug(
            "feature_checked",
            user_id=user_id,
            feature=feature_name,
            quantity=quantity,
            allowed=decision.allowed,
            reason=decision.reason,
            remaining=decision.remaining,
        )
        return decision

    async def consume_feature(
        self,
        user_id: str,
        feature: str | FeatureType,
        quantity: int = 1,
        prefer_tokens: bool = False,
    ) -> ConsumptionResult:
        """
        Debit quota or tokens for a gated action.

        Rollover, counter and token changes are written together in one
        compare-and-swap save.

        Raises:
            LimitExceededError: Quota and tokens cannot cover the quantity
            UnknownFeatureError: Unrecognized feature in strict mode
            ConcurrentModificationError: Record changed since it was loaded
            StorageUnavailableError: Store failure
        """
        feature_name = str(getattr(feature, "value", feature))
        started = time.perf_counter()

        with trace_operation(
            "feature_consume", user_id=user_id, feature=feature_name, quantity=quantity
        ) as span:
            snapshot, record = await self._load_snapshot(user_id)
            try:
                plan = consume(
                    snapshot,
                    record,
                    feature,
                    quantity,
                    prefer_tokens=prefer_tokens,
                    strict=self.strict,
                )
            except LimitExceededError as exc:
                metrics.record_consumption(
                    feature_name, False, False, time.perf_counter() - started
                )
                logger.info(
                    "feature_limit_reached",
                    user_id=user_id,
                    feature=feature_name,
                    quantity=quantity,
                    reason=exc.decision.reason,
                )
                raise

            await self._persist(user_id, record, plan.record, plan.transactions)

            span.set_attribute("tokens_used", plan.result.tokens_used)
            for transaction in plan.transactions:
                metrics.record_token_debit(transaction.token_type.value, -transaction.amount)
            metrics.record_consumption(
                feature_name, True, plan.result.tokens_used, time.perf_counter() - started
            )
            logger.info(
                "feature_consumed",
                user_id=user_id,
                feature=feature_name,
                quantity=quantity,
                quota_debited=plan.result.quota_debited,
                tokens_debited=plan.result.tokens_debited,
                tokens_used=plan.result.tokens_used,
                new_balance=plan.result.new_balance,
            )
            return plan.result

    async def use_streak_shield(self, user_id: str) -> int:
        """
        Spend one streak shield.

        Returns:
            Shields remaining afterwards

        Raises:
            LimitExceededError: No shield left
            ConcurrentModificationError: Record changed since it was loaded
        """
        with trace_operation("streak_shield_use", user_id=user_id):
            snapshot, record = await self._load_snapshot(user_id)
            try:
                plan, remaining = use_streak_shield(snapshot, record)
            except LimitExceededError:
                metrics.record_consumption(STREAK_SHIELD_FEATURE, False, False, 0.0)
                logger.info("streak_shield_unavailable", user_id=user_id)
                raise

            await self._persist(user_id, record, plan.record, plan.transactions)

            for transaction in plan.transactions:
                metrics.record_token_debit(transaction.token_type.value, -transaction.amount)
            logger.info(
                "streak_shield_used",
                user_id=user_id,
                from_purchased=plan.result.tokens_used,
                remaining=remaining,
            )
            return remaining

    async def add_tokens(
        self,
        user_id: str,
        token_type: TokenType,
        amount: int,
        source: TokenSource,
        source_reference: str | None = None,
    ) -> int:
        """
        Credit tokens outside a product purchase (rewards, adjustments).

        Returns:
            New balance of the credited pool

        Raises:
            ValueError: Non-positive amount or usage source
            ConcurrentModificationError: Record changed since it was loaded
        """
        if source == TokenSource.USAGE:
            raise ValueError("Usage is a debit source and cannot credit tokens")

        with trace_operation("tokens_add", user_id=user_id, token_type=token_type.value):
            _, record = await self._load_snapshot(user_id)
            updated, transactions = credit_tokens(
                record, [(token_type, amount)], source, source_reference
            )
            await self._persist(user_id, record, updated, transactions)
            self._record_credits(transactions)

            logger.info(
                "tokens_added",
                user_id=user_id,
                token_type=token_type.value,
                amount=amount,
                source=source.value,
                balance_after=updated.token_balance(token_type),
            )
            return updated.token_balance(token_type)

    async def set_time_zone(self, user_id: str, time_zone: str) -> str:
        """
        Store the IANA zone used for the user's daily and calendar-month resets.

        Counters due a reset are rolled over in the previous zone and written
        in the same save.

        Returns:
            The stored zone name

        Raises:
            InvalidTimeZoneError: Name not in the time-zone database
            ConcurrentModificationError: Record changed since it was loaded
        """
        try:
            ZoneInfo(time_zone)
        except (ZoneInfoNotFoundError, ValueError, OSError) as exc:
            raise InvalidTimeZoneError(time_zone) from exc

        with trace_operation("time_zone_set", user_id=user_id, time_zone=time_zone):
            _, record = await self._load_snapshot(user_id)
            updated = replace(record, time_zone=time_zone)
            await self._persist(user_id, record, updated, ())

            logger.info(
                "time_zone_updated",
                user_id=user_id,
                previous_time_zone=record.time_zone,
                time_zone=time_zone,
            )
            return time_zone

    async def apply_subscription_change(
        self,
        user_id: str,
        event_id: str,
        tier: Tier,
        status: SubscriptionStatus | None,
        current_period_end: datetime | None = None,
        trial_end: datetime | None = None,
        cancel_at_period_end: bool = False,
    ) -> bool:
        """
        Apply a subscription update from the billing collaborator.

        Counters reset through rollover when the billing period moves.

        Returns:
            False if the event was already applied, True otherwise
        """
        with trace_operation(
            "subscription_change_apply", user_id=user_id, event_id=event_id, tier=tier.value
        ):
            if await self.store.is_event_processed(event_id):
                logger.info("billing_event_duplicate", event_id=event_id, user_id=user_id)
                return False

            _, record = await self._load_snapshot(user_id)
            updated = replace(
                record,
                tier=tier,
                subscription_status=status,
                current_period_end=current_period_end,
                trial_end=trial_end,
                cancel_at_period_end=cancel_at_period_end,
            )
            await self.store.save_entitlements(
                user_id,
                updated,
                record.version,
                event=BillingEventMarker(event_id=event_id, event_type=SUBSCRIPTION_EVENT),
            )

            logger.info(
                "subscription_updated",
                user_id=user_id,
                event_id=event_id,
                previous_tier=record.tier.value,
                tier=tier.value,
                status=status.value if status else None,
                current_period_end=current_period_end.isoformat() if current_period_end else None,
                cancel_at_period_end=cancel_at_period_end,
            )
            return True

    async def apply_product_purchase(self, user_id: str, product_id: str, event_id: str) -> bool:
        """
        Credit the tokens granted by a purchased product.

        Returns:
            False if the event was already applied, True otherwise

        Raises:
            ProductNotFoundError: Unknown id, or a product that grants no tokens
        """
        product = product_for(product_id)
        if product.tokens is None:
            raise ProductNotFoundError(product_id)

        with trace_operation(
            "product_purchase_apply", user_id=user_id, event_id=event_id, product_id=product_id
        ):
            if await self.store.is_event_processed(event_id):
                logger.info("billing_event_duplicate", event_id=event_id, user_id=user_id)
                return False

            _, record = await self._load_snapshot(user_id)
            updated, transactions = credit_tokens(
                record, product.tokens.amounts(), TokenSource.PURCHASE, event_id
            )
            await self.store.save_entitlements(
                user_id,
                updated,
                record.version,
                transactions,
                event=BillingEventMarker(event_id=event_id, event_type=PURCHASE_EVENT),
            )
            self._record_credits(transactions)

            logger.info(
                "tokens_purchased",
                user_id=user_id,
                event_id=event_id,
                product_id=product_id,
                ai_tokens=updated.ai_tokens,
                export_tokens=updated.export_tokens,
                streak_shields=updated.streak_shields,
            )
            return True

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _load_snapshot(self, user_id: str) -> tuple[UserEntitlements, EntitlementRecord]:
        """Load the stored record and build its snapshot as of now."""
        record = await self.store.load_entitlements(user_id)
        return build_snapshot(record, self.clock(), self.default_time_zone)

    async def _persist(
        self,
        user_id: str,
        loaded: EntitlementRecord,
        updated: EntitlementRecord,
        transactions: tuple[TokenTransactionData, ...],
    ) -> None:
        """Save `updated` conditioned on the version `loaded` was read at."""
        if updated == loaded and not transactions:
            return
        await self.store.save_entitlements(user_id, updated, loaded.version, transactions)

    def _record_credits(self, transactions: tuple[TokenTransactionData, ...]) -> None:
        for transaction in transactions:
            metrics.record_token_credit(
                transaction.token_type.value, transaction.source.value, transaction.amount
            )
