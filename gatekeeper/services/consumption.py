"""
Feature Consumption Coordinator - Plans counter and token debits.

Pure functions: each takes the rollover-applied snapshot and record and
returns a ConsumptionPlan (updated record, ledger entries, result). The
entitlement service persists the plan with a version check.

Debit rules:
1. Re-check the gate; a denied check raises LimitExceededError and
   nothing is debited.
2. Quota first and tokens for the shortfall, or tokens first when
   prefer_tokens is set.
3. Tokens debited never exceed the held balance; if quota and tokens
   cannot cover the quantity the plan fails closed.
"""

from dataclasses import replace

from gatekeeper.exceptions import LimitExceededError
from gatekeeper.models.api import FeatureType, TokenSource, TokenType, UpsellTrigger
from gatekeeper.models.domain import (
    ConsumptionPlan,
    ConsumptionResult,
    EntitlementRecord,
    GateDecision,
    TokenTransactionData,
    UserEntitlements,
)
from gatekeeper.services.gate import (
    QUOTA_RULES,
    STREAK_SHIELD_REASON,
    check,
    parse_feature,
    quota_capacity,
    token_balance,
)

STREAK_SHIELD_FEATURE = "streak_shield"


def _usage_description(amount: int, token_type: TokenType) -> str:
    return f"Used {amount} {token_type.value.replace('_', ' ')}"


def _ensure_matches(snapshot: UserEntitlements, record: EntitlementRecord) -> None:
    if snapshot.user_id != record.user_id or snapshot.version != record.version:
        raise ValueError(
            f"Snapshot {snapshot.user_id}@{snapshot.version} does not match "
            f"record {record.user_id}@{record.version}"
        )


def consume(
    snapshot: UserEntitlements,
    record: EntitlementRecord,
    feature: str | FeatureType,
    quantity: int = 1,
    prefer_tokens: bool = False,
    strict: bool = False,
) -> ConsumptionPlan:
    """
    Plan the debit for using `quantity` units of `feature`.

    Args:
        snapshot: Snapshot built from `record`
        record: Rollover-applied record the snapshot was built from
        feature: Feature identifier
        quantity: Units to consume (>= 1)
        prefer_tokens: Spend tokens before the period quota
        strict: Raise UnknownFeatureError for unrecognized identifiers

    Raises:
        LimitExceededError: Quota and tokens together are insufficient
        UnknownFeatureError: Unrecognized feature in strict mode
    """
    _ensure_matches(snapshot, record)

    decision = check(snapshot, feature, quantity, strict=strict)
    if not decision.allowed:
        raise LimitExceededError(str(getattr(feature, "value", feature)), quantity, decision)

    parsed = parse_feature(feature, strict=strict)
    if parsed is None or parsed == FeatureType.HISTORY:
        # Capabilities without a counter consume nothing
        return ConsumptionPlan(
            record=record,
            result=ConsumptionResult(success=True, tokens_used=False),
        )

    rule = QUOTA_RULES[parsed]
    capacity = quota_capacity(snapshot, rule)
    tokens = token_balance(snapshot, rule)

    if capacity is None:
        # Unlimited: count usage, never touch tokens
        from_quota, from_tokens = quantity, 0
    elif prefer_tokens and rule.token_type is not None:
        from_tokens = min(tokens, quantity)
        from_quota = quantity - from_tokens
    else:
        from_quota = min(capacity, quantity)
        from_tokens = quantity - from_quota

    if (capacity is not None and from_quota > capacity) or from_tokens > tokens:
        raise LimitExceededError(
            parsed.value,
            quantity,
            GateDecision(
                allowed=False,
                reason=rule.reason,
                upsell_type=rule.upsell,
                remaining=0,
            ),
        )

    updated = replace(
        record, **{rule.used_field: getattr(record, rule.used_field) + from_quota}
    )

    transactions: tuple[TokenTransactionData, ...] = ()
    new_balance: int | None = None
    if rule.token_type is not None:
        new_balance = tokens - from_tokens
        if from_tokens > 0:
            updated = replace(updated, **{rule.token_type.value: new_balance})
            transactions = (
                TokenTransactionData(
                    user_id=record.user_id,
                    token_type=rule.token_type,
                    amount=-from_tokens,
                    balance_after=new_balance,
                    source=TokenSource.USAGE,
                    description=_usage_description(from_tokens, rule.token_type),
                ),
            )

    return ConsumptionPlan(
        record=updated,
        result=ConsumptionResult(
            success=True,
            tokens_used=from_tokens > 0,
            new_balance=new_balance,
            quota_debited=from_quota,
            tokens_debited=from_tokens,
        ),
        transactions=transactions,
    )


def streak_shields_available(snapshot: UserEntitlements) -> int:
    """Pro monthly shields left plus purchased shields."""
    monthly_left = 0
    if snapshot.is_pro:
        monthly_left = max(0, snapshot.monthly_streak_shields - snapshot.streak_shields_used)
    return monthly_left + snapshot.streak_shields


def use_streak_shield(
    snapshot: UserEntitlements, record: EntitlementRecord
) -> tuple[ConsumptionPlan, int]:
    """
    Plan spending one streak shield.

    Pro users draw from the monthly allowance before purchased shields.

    Returns:
        (plan, shields remaining afterwards)

    Raises:
        LimitExceededError: No monthly or purchased shield is left
    """
    _ensure_matches(snapshot, record)

    if snapshot.is_pro and snapshot.streak_shields_used < snapshot.monthly_streak_shields:
        updated = replace(record, streak_shields_used=record.streak_shields_used + 1)
        plan = ConsumptionPlan(
            record=updated,
            result=ConsumptionResult(
                success=True,
                tokens_used=False,
                new_balance=record.streak_shields,
                quota_debited=1,
            ),
        )
        return plan, streak_shields_available(snapshot) - 1

    if snapshot.streak_shields >= 1:
        new_balance = record.streak_shields - 1
        updated = replace(record, streak_shields=new_balance)
        plan = ConsumptionPlan(
            record=updated,
            result=ConsumptionResult(
                success=True,
                tokens_used=True,
                new_balance=new_balance,
                tokens_debited=1,
            ),
            transactions=(
                TokenTransactionData(
                    user_id=record.user_id,
                    token_type=TokenType.STREAK_SHIELDS,
                    amount=-1,
                    balance_after=new_balance,
                    source=TokenSource.USAGE,
                    description=_usage_description(1, TokenType.STREAK_SHIELDS),
                ),
            ),
        )
        return plan, streak_shields_available(snapshot) - 1

    raise LimitExceededError(
        STREAK_SHIELD_FEATURE,
        1,
        GateDecision(
            allowed=False,
            reason=STREAK_SHIELD_REASON,
            upsell_type=UpsellTrigger.STREAK_RISK,
            remaining=0,
        ),
    )


def credit_tokens(
    record: EntitlementRecord,
    grants: list[tuple[TokenType, int]],
    source: TokenSource,
    source_reference: str | None = None,
) -> tuple[EntitlementRecord, tuple[TokenTransactionData, ...]]:
    """
    Add token grants to a record.

    Returns:
        (updated record, one ledger entry per non-zero grant)
    """
    updated = record
    transactions: list[TokenTransactionData] = []
    for token_type, amount in grants:
        if amount <= 0:
            raise ValueError(f"Token grant must be positive: {token_type.value}={amount}")
        balance_after = updated.token_balance(token_type) + amount
        updated = replace(updated, **{token_type.value: balance_after})
        transactions.append(
            TokenTransactionData(
                user_id=record.user_id,
                token_type=token_type,
                amount=amount,
                balance_after=balance_after,
                source=source,
                source_reference=source_reference,
                description=f"Added {amount} {token_type.value.replace('_', ' ')}",
            )
        )
    return updated, tuple(transactions)
