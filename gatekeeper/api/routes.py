"""
API Routes - FastAPI endpoints for feature gating, tokens and billing events.

NO DICTIONARIES - All requests/responses use Pydantic models.
"""

from datetime import UTC, datetime

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from gatekeeper.api.dependencies import (
    get_entitlement_service,
    get_user_id,
    require_billing_secret,
    retry_on_conflict,
)
from gatekeeper.db.session import get_db
from gatekeeper.exceptions import (
    ConcurrentModificationError,
    InvalidTimeZoneError,
    LimitExceededError,
    ProductNotFoundError,
    StorageUnavailableError,
    SubscriptionRequiredError,
    UnknownFeatureError,
)
from gatekeeper.models.api import (
    BillingEventResponse,
    ConsumeFeatureRequest,
    ConsumeFeatureResponse,
    EntitlementsResponse,
    FeatureCheckResponse,
    FeatureLimitError,
    FeatureLimitErrorResponse,
    FeatureType,
    HealthResponse,
    ProductListResponse,
    ProductResponse,
    PurchaseEventRequest,
    SubscriptionEventRequest,
    TimeZoneRequest,
    TimeZoneResponse,
    TokenBalanceResponse,
    TokenGrantModel,
    UpsellDetail,
    UsageCounts,
    UseShieldResponse,
)
from gatekeeper.models.domain import ProductConfig, UserEntitlements
from gatekeeper.services.entitlements import EntitlementService
from gatekeeper.services.gate import message_for, parse_feature
from gatekeeper.services.product_catalog import SUBSCRIPTION_PRODUCTS, list_token_products

logger = get_logger(__name__)

router = APIRouter()

LIMIT_RESPONSES: dict[int | str, dict[str, object]] = {
    status.HTTP_402_PAYMENT_REQUIRED: {"model": FeatureLimitErrorResponse},
}


# ============================================================================
# Error Bodies
# ============================================================================


def feature_limit_response(exc: LimitExceededError) -> JSONResponse:
    """402 body with the upsell the client should show."""
    decision = exc.decision
    reason = decision.reason or "feature_limit_reached"
    body = FeatureLimitErrorResponse(
        error=FeatureLimitError(
            message=message_for(reason),
            upsell=UpsellDetail(
                type=decision.upsell_type,
                reason=reason,
                remaining=decision.remaining or 0,
            ),
        )
    )
    return JSONResponse(
        status_code=status.HTTP_402_PAYMENT_REQUIRED,
        content=body.model_dump(mode="json"),
    )


def subscription_required_response(exc: SubscriptionRequiredError) -> JSONResponse:
    """402 body for Pro-only routes."""
    body = FeatureLimitErrorResponse(
        error=FeatureLimitError(
            code="subscription_required",
            message="This feature requires a Pro subscription",
            upsell=UpsellDetail(type=None, reason="tier_restricted", remaining=0),
        )
    )
    return JSONResponse(
        status_code=status.HTTP_402_PAYMENT_REQUIRED,
        content=body.model_dump(mode="json"),
    )


def _storage_unavailable() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail="Entitlement storage unavailable",
    )


def _conflict() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_409_CONFLICT,
        detail="Entitlements changed concurrently, please retry",
    )


# ============================================================================
# Feature Gating
# ============================================================================


@router.get("/v1/features/{feature}/check", response_model=FeatureCheckResponse)
async def check_feature(
    feature: str,
    quantity: int = Query(1, ge=1, le=1000),
    user_id: str = Depends(get_user_id),
    service: EntitlementService = Depends(get_entitlement_service),
) -> FeatureCheckResponse:
    """
    Check whether the caller can use a feature right now.

    Read-only: nothing is debited.
    """
    try:
        feature_type = parse_feature(feature, strict=True)
        decision = await service.check_feature(user_id, feature_type or feature, quantity)
    except UnknownFeatureError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid feature type: {exc.feature}. "
            f"Valid features: {', '.join(f.value for f in FeatureType)}",
        ) from exc
    except StorageUnavailableError as exc:
        raise _storage_unavailable() from exc

    return FeatureCheckResponse(
        allowed=decision.allowed,
        reason=decision.reason,
        upsell_type=decision.upsell_type,
        remaining=decision.remaining,
    )


@router.post(
    "/v1/features/consume",
    response_model=ConsumeFeatureResponse,
    responses=LIMIT_RESPONSES,
)
async def consume_feature(
    request: ConsumeFeatureRequest,
    user_id: str = Depends(get_user_id),
    service: EntitlementService = Depends(get_entitlement_service),
) -> ConsumeFeatureResponse | JSONResponse:
    """
    Record usage of a feature, debiting quota or tokens.

    Version conflicts are retried with a fresh snapshot before answering 409.
    Returns 402 with an upsell when quota and tokens are exhausted.
    """
    try:
        result = await retry_on_conflict(
            lambda: service.consume_feature(
                user_id, request.feature, request.quantity, request.use_tokens
            ),
            "consume_feature",
        )
    except LimitExceededError as exc:
        return feature_limit_response(exc)
    except UnknownFeatureError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc
    except ConcurrentModificationError as exc:
        raise _conflict() from exc
    except StorageUnavailableError as exc:
        raise _storage_unavailable() from exc

    return ConsumeFeatureResponse(
        success=result.success,
        tokens_used=result.tokens_used,
        new_balance=result.new_balance,
    )


@router.get("/v1/entitlements", response_model=EntitlementsResponse)
async def get_entitlements(
    user_id: str = Depends(get_user_id),
    service: EntitlementService = Depends(get_entitlement_service),
) -> EntitlementsResponse:
    """Get the caller's resolved limits, usage and balances."""
    try:
        snapshot = await service.get_entitlements(user_id)
    except StorageUnavailableError as exc:
        raise _storage_unavailable() from exc

    return _entitlements_response(snapshot)


@router.put("/v1/entitlements/time-zone", response_model=TimeZoneResponse)
async def set_time_zone(
    request: TimeZoneRequest,
    user_id: str = Depends(get_user_id),
    service: EntitlementService = Depends(get_entitlement_service),
) -> TimeZoneResponse:
    """Set the zone the caller's daily and calendar-month limits reset in."""
    try:
        time_zone = await retry_on_conflict(
            lambda: service.set_time_zone(user_id, request.time_zone), "set_time_zone"
        )
    except InvalidTimeZoneError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc
    except ConcurrentModificationError as exc:
        raise _conflict() from exc
    except StorageUnavailableError as exc:
        raise _storage_unavailable() from exc

    return TimeZoneResponse(time_zone=time_zone)


# ============================================================================
# Tokens
# ============================================================================


@router.get("/v1/tokens/balance", response_model=TokenBalanceResponse)
async def get_token_balance(
    user_id: str = Depends(get_user_id),
    service: EntitlementService = Depends(get_entitlement_service),
) -> TokenBalanceResponse:
    """Get token balances with this period's usage and limits."""
    try:
        snapshot = await service.get_entitlements(user_id)
    except StorageUnavailableError as exc:
        raise _storage_unavailable() from exc

    return TokenBalanceResponse(
        ai_tokens=snapshot.ai_tokens,
        export_tokens=snapshot.export_tokens,
        streak_shields=snapshot.streak_shields,
        monthly_usage=UsageCounts(
            ai_meal_plans=snapshot.ai_meal_plans_used,
            ai_recipes=snapshot.ai_recipe_suggestions_used,
            pdf_exports=snapshot.pdf_exports_used,
        ),
        monthly_limits=UsageCounts(
            ai_meal_plans=snapshot.ai_meal_plans_per_month,
            ai_recipes=snapshot.ai_recipe_suggestions_per_month,
            pdf_exports=snapshot.pdf_exports_included,
        ),
    )


@router.post(
    "/v1/tokens/use-shield",
    response_model=UseShieldResponse,
    responses=LIMIT_RESPONSES,
)
async def use_streak_shield(
    user_id: str = Depends(get_user_id),
    service: EntitlementService = Depends(get_entitlement_service),
) -> UseShieldResponse | JSONResponse:
    """Spend one streak shield to protect the caller's streak."""
    try:
        remaining = await retry_on_conflict(
            lambda: service.use_streak_shield(user_id), "use_streak_shield"
        )
    except LimitExceededError as exc:
        return feature_limit_response(exc)
    except ConcurrentModificationError as exc:
        raise _conflict() from exc
    except StorageUnavailableError as exc:
        raise _storage_unavailable() from exc

    return UseShieldResponse(success=True, remaining=remaining)


@router.get("/v1/products", response_model=ProductListResponse)
async def list_products() -> ProductListResponse:
    """List subscription plans and token packs. Public."""
    return ProductListResponse(
        subscriptions=[_product_response(p) for p in SUBSCRIPTION_PRODUCTS.values()],
        tokens=[_product_response(p) for p in list_token_products()],
    )


# ============================================================================
# Billing Collaborator Events
# ============================================================================


@router.post(
    "/v1/billing/events/subscription",
    response_model=BillingEventResponse,
    dependencies=[Depends(require_billing_secret)],
)
async def subscription_event(
    request: SubscriptionEventRequest,
    service: EntitlementService = Depends(get_entitlement_service),
) -> BillingEventResponse:
    """
    Apply a subscription change reported by the billing collaborator.

    Repeated event ids are acknowledged without being applied again.
    """
    try:
        applied = await retry_on_conflict(
            lambda: service.apply_subscription_change(
                user_id=request.user_id,
                event_id=request.event_id,
                tier=request.tier,
                status=request.status,
                current_period_end=request.current_period_end,
                trial_end=request.trial_end,
                cancel_at_period_end=request.cancel_at_period_end,
            ),
            "subscription_event",
        )
    except ConcurrentModificationError as exc:
        raise _conflict() from exc
    except StorageUnavailableError as exc:
        raise _storage_unavailable() from exc

    return BillingEventResponse(applied=applied)


@router.post(
    "/v1/billing/events/purchase",
    response_model=BillingEventResponse,
    dependencies=[Depends(require_billing_secret)],
)
async def purchase_event(
    request: PurchaseEventRequest,
    service: EntitlementService = Depends(get_entitlement_service),
) -> BillingEventResponse:
    """
    Credit tokens for a completed product purchase.

    Repeated event ids are acknowledged without crediting again.
    """
    try:
        applied = await retry_on_conflict(
            lambda: service.apply_product_purchase(
                request.user_id, request.product_id, request.event_id
            ),
            "purchase_event",
        )
    except ProductNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(exc),
        ) from exc
    except ConcurrentModificationError as exc:
        raise _conflict() from exc
    except StorageUnavailableError as exc:
        raise _storage_unavailable() from exc

    return BillingEventResponse(applied=applied)


# ============================================================================
# Health
# ============================================================================


@router.get("/health", response_model=HealthResponse)
async def health_check(db: AsyncSession = Depends(get_db)) -> HealthResponse:
    """
    Health check for load balancer.

    Verifies database connectivity.
    """
    try:
        await db.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.error("health_check_failed", error=str(exc))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Database unavailable",
        ) from exc

    return HealthResponse(
        status="healthy",
        database="connected",
        timestamp=datetime.now(UTC).isoformat(),
    )


# ============================================================================
# Response Builders
# ============================================================================


def _product_response(product: ProductConfig) -> ProductResponse:
    tokens = None
    if product.tokens is not None:
        tokens = TokenGrantModel(
            ai_tokens=product.tokens.ai_tokens,
            export_tokens=product.tokens.export_tokens,
            streak_shields=product.tokens.streak_shields,
        )
    return ProductResponse(
        id=product.id,
        name=product.name,
        description=product.description,
        amount=product.amount,
        interval=product.interval,
        tokens=tokens,
    )


def _entitlements_response(snapshot: UserEntitlements) -> EntitlementsResponse:
    return EntitlementsResponse(
        user_id=snapshot.user_id,
        tier=snapshot.tier,
        is_trialing=snapshot.is_trialing,
        trial_days_remaining=snapshot.trial_days_remaining,
        subscription_status=snapshot.subscription_status,
        current_period_end=snapshot.current_period_end,
        cancel_at_period_end=snapshot.cancel_at_period_end,
        ai_meal_plans_per_month=snapshot.ai_meal_plans_per_month,
        ai_recipe_suggestions_per_month=snapshot.ai_recipe_suggestions_per_month,
        barcode_scans_per_day=snapshot.barcode_scans_per_day,
        food_database_tier=snapshot.food_database_tier,
        history_retention_days=snapshot.history_retention_days,
        achievements_available=snapshot.achievements_available,
        monthly_streak_shields=snapshot.monthly_streak_shields,
        pdf_exports_included=snapshot.pdf_exports_included,
        data_export_enabled=snapshot.data_export_enabled,
        family_sharing_slots=snapshot.family_sharing_slots,
        ai_meal_plans_used=snapshot.ai_meal_plans_used,
        ai_recipe_suggestions_used=snapshot.ai_recipe_suggestions_used,
        barcode_scans_today=snapshot.barcode_scans_today,
        pdf_exports_used=snapshot.pdf_exports_used,
        streak_shields_used=snapshot.streak_shields_used,
        ai_tokens=snapshot.ai_tokens,
        export_tokens=snapshot.export_tokens,
        streak_shields=snapshot.streak_shields,
    )
