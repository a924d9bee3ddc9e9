"""
Product catalog configuration.

Maps purchasable product IDs to token grants and prices. IDs must match
the Stripe and RevenueCat product configuration.
"""

from gatekeeper.exceptions import ProductNotFoundError
from gatekeeper.models.domain import ProductConfig, TokenGrant

SUBSCRIPTION_PRODUCTS: dict[str, ProductConfig] = {
    "pro_monthly": ProductConfig(
        id="pro_monthly",
        name="SemaSlim Pro Monthly",
        description="Full access to all Pro features, billed monthly",
        amount=999,
        interval="month",
    ),
    "pro_annual": ProductConfig(
        id="pro_annual",
        name="SemaSlim Pro Annual",
        description="Full access to all Pro features, save 33%",
        amount=7999,
        interval="year",
    ),
}

TOKEN_PRODUCTS: dict[str, ProductConfig] = {
    "ai_tokens_5": ProductConfig(
        id="ai_tokens_5",
        name="5 AI Tokens",
        description="Generate 5 AI meal plans or recipe suggestions",
        amount=499,
        tokens=TokenGrant(ai_tokens=5),
    ),
    "ai_tokens_15": ProductConfig(
        id="ai_tokens_15",
        name="15 AI Tokens",
        description="Save 20% - Best value for regular AI users",
        amount=1199,
        tokens=TokenGrant(ai_tokens=15),
    ),
    "ai_tokens_50": ProductConfig(
        id="ai_tokens_50",
        name="50 AI Tokens",
        description="Save 40% - For power users",
        amount=2999,
        tokens=TokenGrant(ai_tokens=50),
    ),
    "streak_shields_3": ProductConfig(
        id="streak_shields_3",
        name="3 Streak Shields",
        description="Protect your streak during busy days",
        amount=299,
        tokens=TokenGrant(streak_shields=3),
    ),
    "streak_shields_10": ProductConfig(
        id="streak_shields_10",
        name="10 Streak Shields",
        description="Save 20% - Never lose a streak again",
        amount=799,
        tokens=TokenGrant(streak_shields=10),
    ),
    "export_single": ProductConfig(
        id="export_single",
        name="Single PDF Export",
        description="Generate one healthcare provider report",
        amount=199,
        tokens=TokenGrant(export_tokens=1),
    ),
    "export_5": ProductConfig(
        id="export_5",
        name="5 PDF Exports",
        description="Perfect for quarterly doctor visits",
        amount=699,
        tokens=TokenGrant(export_tokens=5),
    ),
}


def product_for(product_id: str) -> ProductConfig:
    """
    Get product configuration by ID.

    Looks in token products first, then subscription plans.

    Raises:
        ProductNotFoundError: If product ID not found
    """
    product = TOKEN_PRODUCTS.get(product_id) or SUBSCRIPTION_PRODUCTS.get(product_id)
    if product is None:
        raise ProductNotFoundError(product_id)
    return product


def list_token_products() -> list[ProductConfig]:
    """Token products ordered by price."""
    return sorted(TOKEN_PRODUCTS.values(), key=lambda p: p.amount)
