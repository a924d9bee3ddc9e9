"""
Feature Gate Evaluator - Pure allow/deny decisions over a snapshot.

No I/O and no state: every input lives in the UserEntitlements snapshot.
Quota is always evaluated before the token fallback, and the decision
reports which pool a consumption would draw from first.
"""

from dataclasses import dataclass

from gatekeeper.exceptions import UnknownFeatureError
from gatekeeper.models.api import DebitSource, FeatureType, TokenType, UpsellTrigger
from gatekeeper.models.domain import UNLIMITED, GateDecision, UserEntitlements


@dataclass(frozen=True)
class QuotaRule:
    """How a counted feature maps onto snapshot limits, counters and tokens."""

    limit_field: str
    used_field: str
    token_type: TokenType | None
    pro_only_quota: bool
    reason: str
    upsell: UpsellTrigger


QUOTA_RULES: dict[FeatureType, QuotaRule] = {
    FeatureType.BARCODE_SCAN: QuotaRule(
        limit_field="barcode_scans_per_day",
        used_field="barcode_scans_today",
        token_type=None,
        pro_only_quota=False,
        reason="barcode_scan_limit_reached",
        upsell=UpsellTrigger.BARCODE_LIMIT,
    ),
    FeatureType.AI_MEAL_PLAN: QuotaRule(
        limit_field="ai_meal_plans_per_month",
        used_field="ai_meal_plans_used",
        token_type=TokenType.AI_TOKENS,
        pro_only_quota=False,
        reason="ai_meal_plan_limit_reached",
        upsell=UpsellTrigger.AI_LIMIT,
    ),
    FeatureType.AI_RECIPE: QuotaRule(
        limit_field="ai_recipe_suggestions_per_month",
        used_field="ai_recipe_suggestions_used",
        token_type=TokenType.AI_TOKENS,
        pro_only_quota=False,
        reason="ai_recipe_limit_reached",
        upsell=UpsellTrigger.AI_LIMIT,
    ),
    FeatureType.PDF_EXPORT: QuotaRule(
        limit_field="pdf_exports_included",
        used_field="pdf_exports_used",
        token_type=TokenType.EXPORT_TOKENS,
        pro_only_quota=True,
        reason="no_export_tokens",
        upsell=UpsellTrigger.SIDE_EFFECT_EXPORT,
    ),
}

HISTORY_REASON = "history_limit_reached"
STREAK_SHIELD_REASON = "no_streak_shields"

# User-facing texts per denial reason
FEATURE_LIMIT_MESSAGES: dict[str, str] = {
    "ai_meal_plan_limit_reached": (
        "You have reached your monthly meal plan limit. Upgrade to Pro or purchase tokens."
    ),
    "ai_recipe_limit_reached": (
        "You have reached your monthly recipe generation limit. "
        "Upgrade to Pro or purchase tokens."
    ),
    "barcode_scan_limit_reached": (
        "You have reached your daily barcode scan limit. Upgrade to Pro for unlimited scans."
    ),
    "no_export_tokens": "You need export tokens to export PDFs. Purchase tokens or upgrade to Pro.",
    HISTORY_REASON: "Your plan keeps a limited history. Upgrade to Pro for unlimited history.",
    STREAK_SHIELD_REASON: (
        "No streak shields available. Purchase more shields to protect your streak."
    ),
}


def message_for(reason: str | None) -> str:
    """User-facing message for a denial reason."""
    return FEATURE_LIMIT_MESSAGES.get(reason or "", "Feature limit reached")


def parse_feature(feature: str | FeatureType, strict: bool = False) -> FeatureType | None:
    """
    Normalize a feature identifier.

    Returns None for an unrecognized identifier unless strict, in which
    case UnknownFeatureError is raised.
    """
    try:
        return FeatureType(feature)
    except ValueError:
        if strict:
            raise UnknownFeatureError(str(feature)) from None
        return None


def quota_capacity(snapshot: UserEntitlements, rule: QuotaRule) -> int | None:
    """Units left in the period quota, or None when the quota is unlimited."""
    if rule.pro_only_quota and not snapshot.is_pro:
        return 0
    limit = getattr(snapshot, rule.limit_field)
    if limit == UNLIMITED:
        return None
    used = getattr(snapshot, rule.used_field)
    return max(0, limit - used)


def token_balance(snapshot: UserEntitlements, rule: QuotaRule) -> int:
    """Balance of the token pool backing a feature (0 if none)."""
    if rule.token_type is None:
        return 0
    return int(getattr(snapshot, rule.token_type.value))


def remaining(snapshot: UserEntitlements, feature: str | FeatureType) -> int | None:
    """
    Units still available for a feature.

    -1 for a genuinely unlimited feature, otherwise quota left plus the
    applicable token balance. None for an unrecognized feature.
    """
    parsed = parse_feature(feature)
    if parsed is None:
        return None

    if parsed == FeatureType.HISTORY:
        return UNLIMITED if snapshot.history_retention_days == UNLIMITED else 0

    rule = QUOTA_RULES[parsed]
    capacity = quota_capacity(snapshot, rule)
    if capacity is None:
        return UNLIMITED
    return capacity + token_balance(snapshot, rule)


def check(
    snapshot: UserEntitlements,
    feature: str | FeatureType,
    quantity: int = 1,
    strict: bool = False,
) -> GateDecision:
    """
    Decide whether `quantity` units of `feature` may be used now.

    Args:
        snapshot: Rollover-applied entitlements
        feature: Feature identifier
        quantity: Units requested (>= 1)
        strict: Raise UnknownFeatureError for unrecognized identifiers
            instead of allowing them

    Returns:
        GateDecision with the debit source that consumption would use first
    """
    if quantity < 1:
        raise ValueError(f"Quantity must be positive: {quantity}")

    parsed = parse_feature(feature, strict=strict)
    if parsed is None:
        # Unrecognized features are allowed unless strict
        return GateDecision(allowed=True)

    if parsed == FeatureType.HISTORY:
        if snapshot.history_retention_days == UNLIMITED:
            return GateDecision(
                allowed=True, remaining=UNLIMITED, debit_source=DebitSource.UNLIMITED
            )
        return GateDecision(
            allowed=False,
            reason=HISTORY_REASON,
            upsell_type=UpsellTrigger.HISTORY_LIMIT,
            remaining=0,
        )

    rule = QUOTA_RULES[parsed]
    capacity = quota_capacity(snapshot, rule)
    if capacity is None:
        return GateDecision(allowed=True, remaining=UNLIMITED, debit_source=DebitSource.UNLIMITED)

    tokens = token_balance(snapshot, rule)
    total = capacity + tokens

    if capacity >= quantity:
        return GateDecision(allowed=True, remaining=total, debit_source=DebitSource.QUOTA)

    if rule.token_type is not None and tokens >= quantity:
        return GateDecision(allowed=True, remaining=total, debit_source=DebitSource.TOKENS)

    return GateDecision(
        allowed=False,
        reason=rule.reason,
        upsell_type=rule.upsell,
        remaining=0,
    )
