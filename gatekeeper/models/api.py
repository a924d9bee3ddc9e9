"""
API Models - Enumerations and Pydantic models for request/response validation.

NO DICTIONARIES - All data structures are strongly typed.
"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field, field_validator


class Tier(str, Enum):
    """Subscription tier."""

    FREE = "free"
    PRO = "pro"


class SubscriptionStatus(str, Enum):
    """Subscription status as reported by the billing collaborator."""

    ACTIVE = "active"
    CANCELLED = "cancelled"
    PAST_DUE = "past_due"
    TRIALING = "trialing"


class FoodDatabaseTier(str, Enum):
    """Food database depth available to a tier."""

    BASIC = "basic"
    EXTENDED = "extended"
    PREMIUM = "premium"


class FeatureType(str, Enum):
    """Closed set of gated feature identifiers."""

    BARCODE_SCAN = "barcode_scan"
    AI_MEAL_PLAN = "ai_meal_plan"
    AI_RECIPE = "ai_recipe"
    PDF_EXPORT = "pdf_export"
    HISTORY = "history"


class UpsellTrigger(str, Enum):
    """Monetization prompt to show after a denial."""

    AI_LIMIT = "ai_limit"
    BARCODE_LIMIT = "barcode_limit"
    HISTORY_LIMIT = "history_limit"
    STREAK_RISK = "streak_risk"
    WEIGHT_MILESTONE = "weight_milestone"
    ACHIEVEMENT_UNLOCK = "achievement_unlock"
    SIDE_EFFECT_EXPORT = "side_effect_export"
    MONTHLY_RENEWAL = "monthly_renewal"


class TokenType(str, Enum):
    """Purchased token pools."""

    AI_TOKENS = "ai_tokens"
    EXPORT_TOKENS = "export_tokens"
    STREAK_SHIELDS = "streak_shields"


class TokenSource(str, Enum):
    """Origin of a token balance change."""

    USAGE = "usage"
    PURCHASE = "purchase"
    SUBSCRIPTION = "subscription"
    REWARD = "reward"
    ADJUSTMENT = "adjustment"


class DebitSource(str, Enum):
    """Which pool a permitted action draws from first."""

    QUOTA = "quota"
    TOKENS = "tokens"
    UNLIMITED = "unlimited"
    NONE = "none"


# ============================================================================
# Feature Check / Consume Models
# ============================================================================


class FeatureCheckResponse(BaseModel):
    """GET /v1/features/{feature}/check response."""

    allowed: bool
    reason: str | None = None
    upsell_type: UpsellTrigger | None = None
    remaining: int | None = None


class ConsumeFeatureRequest(BaseModel):
    """POST /v1/features/consume request body."""

    feature: FeatureType
    quantity: int = Field(default=1, ge=1, le=1000)
    use_tokens: bool = Field(
        default=False, description="Spend purchased tokens before the period quota"
    )


class ConsumeFeatureResponse(BaseModel):
    """POST /v1/features/consume response."""

    success: bool
    tokens_used: bool
    new_balance: int | None = None


class UpsellDetail(BaseModel):
    """Upsell hint attached to a feature limit error."""

    type: UpsellTrigger | None
    reason: str
    remaining: int = 0


class FeatureLimitError(BaseModel):
    """Error envelope for 402 responses."""

    code: str = "feature_limit_reached"
    message: str
    upsell: UpsellDetail


class FeatureLimitErrorResponse(BaseModel):
    """402 Payment Required body."""

    error: FeatureLimitError


# ============================================================================
# Entitlement / Balance Models
# ============================================================================


class EntitlementsResponse(BaseModel):
    """GET /v1/entitlements response."""

    user_id: str
    tier: Tier
    is_trialing: bool
    trial_days_remaining: int | None
    subscription_status: SubscriptionStatus | None
    current_period_end: datetime | None
    cancel_at_period_end: bool

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

    ai_meal_plans_used: int
    ai_recipe_suggestions_used: int
    barcode_scans_today: int
    pdf_exports_used: int
    streak_shields_used: int

    ai_tokens: int
    export_tokens: int
    streak_shields: int


class TimeZoneRequest(BaseModel):
    """PUT /v1/entitlements/time-zone request."""

    time_zone: str = Field(
        ..., min_length=1, max_length=64, description="IANA zone name, e.g. Europe/Berlin"
    )


class TimeZoneResponse(BaseModel):
    """PUT /v1/entitlements/time-zone response."""

    time_zone: str


class UsageCounts(BaseModel):
    """Usage or limit counts grouped for the balance screen."""

    ai_meal_plans: int
    ai_recipes: int
    pdf_exports: int


class TokenBalanceResponse(BaseModel):
    """GET /v1/tokens/balance response."""

    ai_tokens: int
    export_tokens: int
    streak_shields: int
    monthly_usage: UsageCounts
    monthly_limits: UsageCounts


class UseShieldResponse(BaseModel):
    """POST /v1/tokens/use-shield response."""

    success: bool
    remaining: int


class TokenGrantModel(BaseModel):
    """Tokens granted by a product."""

    ai_tokens: int = 0
    export_tokens: int = 0
    streak_shields: int = 0


class ProductResponse(BaseModel):
    """Single purchasable product."""

    id: str
    name: str
    description: str
    amount: int
    interval: str | None = None
    tokens: TokenGrantModel | None = None


class ProductListResponse(BaseModel):
    """GET /v1/products response."""

    subscriptions: list[ProductResponse]
    tokens: list[ProductResponse]


# ============================================================================
# Billing Collaborator Event Models
# ============================================================================


class SubscriptionEventRequest(BaseModel):
    """POST /v1/billing/events/subscription request body."""

    event_id: str = Field(..., min_length=1, max_length=255)
    user_id: str = Field(..., min_length=1, max_length=255)
    tier: Tier
    status: SubscriptionStatus | None = None
    current_period_end: datetime | None = None
    trial_end: datetime | None = None
    cancel_at_period_end: bool = False

    @field_validator("current_period_end", "trial_end")
    @classmethod
    def require_timezone(cls, v: datetime | None) -> datetime | None:
        """Reject naive timestamps so period comparisons stay in UTC."""
        if v is not None and v.tzinfo is None:
            raise ValueError("timestamp must include a timezone offset")
        return v


class PurchaseEventRequest(BaseModel):
    """POST /v1/billing/events/purchase request body."""

    event_id: str = Field(..., min_length=1, max_length=255)
    user_id: str = Field(..., min_length=1, max_length=255)
    product_id: str = Field(..., min_length=1, max_length=100)


class BillingEventResponse(BaseModel):
    """Billing event acknowledgement."""

    received: bool = True
    applied: bool


class HealthResponse(BaseModel):
    """GET /health response."""

    status: str
    database: str
    timestamp: str
