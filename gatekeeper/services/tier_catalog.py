"""
Tier catalog configuration.

Maps subscription tiers to their feature limits.
"""

from gatekeeper.models.api import FoodDatabaseTier, Tier
from gatekeeper.models.domain import UNLIMITED, FeatureLimits

TIER_LIMITS: dict[Tier, FeatureLimits] = {
    Tier.FREE: FeatureLimits(
        ai_meal_plans_per_month=2,
        ai_recipe_suggestions_per_month=2,
        barcode_scans_per_day=10,
        food_database_tier=FoodDatabaseTier.BASIC,
        history_retention_days=14,
        achievements_available=5,
        monthly_streak_shields=0,
        pdf_exports_included=0,
        data_export_enabled=False,
        family_sharing_slots=0,
    ),
    Tier.PRO: FeatureLimits(
        ai_meal_plans_per_month=30,
        ai_recipe_suggestions_per_month=100,
        barcode_scans_per_day=UNLIMITED,
        food_database_tier=FoodDatabaseTier.PREMIUM,
        history_retention_days=UNLIMITED,
        achievements_available=UNLIMITED,
        monthly_streak_shields=2,
        pdf_exports_included=5,
        data_export_enabled=True,
        family_sharing_slots=3,
    ),
}


def limits_for(tier: Tier) -> FeatureLimits:
    """Get the feature limits for a tier."""
    return TIER_LIMITS[Tier(tier)]
