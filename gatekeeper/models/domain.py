"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.
"""

from dataclasses import dataclass, field
from datetime import date, datetime

from gatekeeper.models.api import (
    DebitSource,
    FoodDatabaseTier,
    SubscriptionStatus,
    Tier,
    TokenSource,
    TokenType,
    UpsellTrigger,
)

UNLIMITED = -1


def _check_limit(name: str, value: int) -> None:
    if value < 0 and value != UNLIMITED:
        raise ValueError(f"{name} must be >= 0 or {UNLIMITED} (unlimited), got {value}")


def _check_non_negative(name: str, value: int) -> None:
    if value < 0:
        raise ValueError(f"{name} cannot be negative: {value}")


@dataclass(frozen=True)
class FeatureLimits:
    """Immutable per-tier catalog row."""

    ai_meal_plans_per_month: int
    ai_recipe_suggestions_per_month: int
    barcode_scans_per_day: int
    food_database_tier: FoodDatabaseTier
    history_retention_days: int
    achievements_available: int
    monthly_streak_shields: int
    pdf_exports_included: int
    data_export_enabled: bool
    family_sharing_slots: int

    def __post_init__(self) -> None:
        """Validate every numeric limit is non-negative or the unlimited sentinel."""
        _check_limit("ai_meal_plans_per_month", self.ai_meal_plans_per_month)
        _check_limit("ai_recipe_suggestions_per_month", self.ai_recipe_suggestions_per_month)
        _check_limit("barcode_scans_per_day", self.barcode_scans_per_day)
        _check_limit("history_retention_days", self.history_retention_days)
        _check_limit("achievements_available", self.achievements_available)
        _check_limit("monthly_streak_shields", self.monthly_streak_shields)
        _check_limit("pdf_exports_included", self.pdf_exports_included)
        _check_non_negative("family_sharing_slots", self.family_sharing_slots)


@dataclass(frozen=True)
class TokenGrant:
    """Tokens granted by a purchasable product."""

    ai_tokens: int = 0
    export_tokens: int = 0
    streak_shields: int = 0

    def __post_init__(self) -> None:
        """Validate grant amounts."""
        _check_non_negative("ai_tokens", self.ai_tokens)
        _check_non_negative("export_tokens", self.export_tokens)
        _check_non_negative("streak_shields", self.streak_shields)

    def amounts(self) -> list[tuple[TokenType, int]]:
        """Non-zero grant amounts by token type."""
        pairs = [
            (TokenType.AI_TOKENS, self.ai_tokens),
            (TokenType.EXPORT_TOKENS, self.export_tokens),
            (TokenType.STREAK_SHIELDS, self.streak_shields),
        ]
        return [(token_type, amount) for token_type, amount in pairs if amount > 0]


@dataclass(frozen=True)
class ProductConfig:
    """Immutable purchasable product."""

    id: str
    name: str
    description: str
    amount: int  # Minor currency units
    tokens: TokenGrant | None = None
    interval: str | None = None  # Subscription plans only
    stripe_price_id: str | None = None
    revenuecat_product_id: str | None = None

    def __post_init__(self) -> None:
        """Validate product configuration."""
        if not self.id:
            raise ValueError("Product ID required")
        if not self.name:
            raise ValueError("Name required")
        _check_non_negative("amount", self.amount)


@dataclass(frozen=True)
class EntitlementRecord:
    """
    Raw persisted entitlement row for one user.

    Holds the stored tier as written by billing events, the period counters
    with their markers, and token balances. The version is bumped on every
    successful save.
    """

    user_id: str
    version: int = 0
    tier: Tier = Tier.FREE
    subscription_status: SubscriptionStatus | None = None
    current_period_end: datetime | None = None
    trial_end: datetime | None = None
    cancel_at_period_end: bool = False
    time_zone: str | None = None

    ai_meal_plans_used: int = 0
    ai_recipe_suggestions_used: int = 0
    barcode_scans_today: int = 0
    pdf_exports_used: int = 0
    streak_shields_used: int = 0

    ai_tokens: int = 0
    export_tokens: int = 0
    streak_shields: int = 0

    daily_reset_day: date | None = None
    monthly_period_key: str | None = None

    def __post_init__(self) -> None:
        """Validate counters and balances."""
        if not self.user_id:
            raise ValueError("user_id cannot be empty")
        _check_non_negative("version", self.version)
        _check_non_negative("ai_meal_plans_used", self.ai_meal_plans_used)
        _check_non_negative("ai_recipe_suggestions_used", self.ai_recipe_suggestions_used)
        _check_non_negative("barcode_scans_today", self.barcode_scans_today)
        _check_non_negative("pdf_exports_used", self.pdf_exports_used)
        _check_non_negative("streak_shields_used", self.streak_shields_used)
        _check_non_negative("ai_tokens", self.ai_tokens)
        _check_non_negative("export_tokens", self.export_tokens)
        _check_non_negative("streak_shields", self.streak_shields)

    def token_balance(self, token_type: TokenType) -> int:
        """Current balance of one token pool."""
        return int(getattr(self, token_type.value))


@dataclass(frozen=True)
class UserEntitlements(FeatureLimits):
    """
    Fully resolved, rollover-applied entitlement snapshot.

    Built only by the snapshot builder. `tier` is the effective tier: a
    stored Pro subscription that is cancelled, past due or expired is
    resolved to free before the snapshot exists.
    """

    user_id: str = ""
    version: int = 0
    tier: Tier = Tier.FREE
    is_trialing: bool = False
    trial_days_remaining: int | None = None

    ai_meal_plans_used: int = 0
    ai_recipe_suggestions_used: int = 0
    barcode_scans_today: int = 0
    pdf_exports_used: int = 0
    streak_shields_used: int = 0

    ai_tokens: int = 0
    export_tokens: int = 0
    streak_shields: int = 0

    subscription_status: SubscriptionStatus | None = None
    current_period_end: datetime | None = None
    cancel_at_period_end: bool = False

    def __post_init__(self) -> None:
        """Validate limits, counters and balances."""
        super().__post_init__()
        _check_non_negative("ai_meal_plans_used", self.ai_meal_plans_used)
        _check_non_negative("ai_recipe_suggestions_used", self.ai_recipe_suggestions_used)
        _check_non_negative("barcode_scans_today", self.barcode_scans_today)
        _check_non_negative("pdf_exports_used", self.pdf_exports_used)
        _check_non_negative("streak_shields_used", self.streak_shields_used)
        _check_non_negative("ai_tokens", self.ai_tokens)
        _check_non_negative("export_tokens", self.export_tokens)
        _check_non_negative("streak_shields", self.streak_shields)
        if self.trial_days_remaining is not None:
            _check_non_negative("trial_days_remaining", self.trial_days_remaining)

    @property
    def is_pro(self) -> bool:
        """Whether Pro-only allowances apply."""
        return self.tier == Tier.PRO


@dataclass(frozen=True)
class GateDecision:
    """Result of evaluating one gated action against a snapshot."""

    allowed: bool
    reason: str | None = None
    upsell_type: UpsellTrigger | None = None
    remaining: int | None = None
    debit_source: DebitSource = DebitSource.NONE


@dataclass(frozen=True)
class TokenTransactionData:
    """Ledger entry for one token balance change."""

    user_id: str
    token_type: TokenType
    amount: int  # Signed: negative for usage
    balance_after: int
    source: TokenSource
    description: str
    source_reference: str | None = None

    def __post_init__(self) -> None:
        """Validate ledger entry."""
        if self.amount == 0:
            raise ValueError("Token transaction amount cannot be zero")
        _check_non_negative("balance_after", self.balance_after)


@dataclass(frozen=True)
class ConsumptionResult:
    """Outcome of a successful consumption."""

    success: bool
    tokens_used: bool
    new_balance: int | None = None
    quota_debited: int = 0
    tokens_debited: int = 0


@dataclass(frozen=True)
class ConsumptionPlan:
    """Updated record plus ledger entries to persist for one consumption."""

    record: EntitlementRecord
    result: ConsumptionResult
    transactions: tuple[TokenTransactionData, ...] = field(default_factory=tuple)
