"""
FastAPI Dependencies - Caller identity, service wiring and feature gates.

NO DICTIONARIES - All dependencies return typed objects.
"""

import hmac
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from gatekeeper.config import settings
from gatekeeper.db.repository import EntitlementStore, SqlEntitlementStore
from gatekeeper.db.session import get_db
from gatekeeper.exceptions import (
    ConcurrentModificationError,
    LimitExceededError,
    StorageUnavailableError,
    SubscriptionRequiredError,
    WebhookAuthenticationError,
)
from gatekeeper.models.api import FeatureType
from gatekeeper.models.domain import ConsumptionResult, GateDecision, UserEntitlements
from gatekeeper.services.entitlements import EntitlementService

logger = get_logger(__name__)

T = TypeVar("T")

# ============================================================================
# Caller Identity
# ============================================================================


async def get_user_id(
    x_user_id: str | None = Header(
        None, alias="X-User-ID", description="User id set by the identity gateway"
    ),
) -> str:
    """
    FastAPI dependency for the authenticated caller's user id.

    The identity provider's gateway verifies the session and forwards the
    user id; a request without it never reached an authenticated user.

    Raises:
        HTTPException 401 if the header is missing or blank
    """
    if x_user_id is None or not x_user_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
        )
    return x_user_id.strip()


# ============================================================================
# Service Wiring
# ============================================================================


async def get_store(db: AsyncSession = Depends(get_db)) -> EntitlementStore:
    """FastAPI dependency for the entitlement store."""
    return SqlEntitlementStore(db)


async def get_entitlement_service(
    store: EntitlementStore = Depends(get_store),
) -> EntitlementService:
    """FastAPI dependency for a configured entitlement service."""
    return EntitlementService(
        store,
        strict=settings.strict_feature_gate,
        default_time_zone=settings.default_time_zone,
    )


async def retry_on_conflict(operation: Callable[[], Awaitable[T]], operation_name: str) -> T:
    """
    Run `operation`, repeating it after a version conflict.

    Each attempt loads a fresh snapshot. Gives up after
    settings.consume_max_retries retries and re-raises the conflict.
    """
    attempt = 0
    while True:
        try:
            return await operation()
        except ConcurrentModificationError as exc:
            if attempt >= settings.consume_max_retries:
                logger.warning(
                    "conflict_retries_exhausted",
                    operation=operation_name,
                    user_id=exc.user_id,
                    attempts=attempt + 1,
                )
                raise
            attempt += 1
            logger.info(
                "conflict_retry",
                operation=operation_name,
                user_id=exc.user_id,
                attempt=attempt,
            )


# ============================================================================
# Billing Collaborator Authentication
# ============================================================================

# Bearer token scheme for billing events
bearer_scheme = HTTPBearer(auto_error=False)


def verify_billing_secret(token: str | None) -> None:
    """
    Compare a presented token with the configured billing events secret.

    Raises:
        WebhookAuthenticationError: Secret unset, token missing or mismatched
    """
    expected = settings.billing_events_secret
    if not expected:
        raise WebhookAuthenticationError("billing events secret is not configured")
    if token is None:
        raise WebhookAuthenticationError("missing bearer token")
    if not hmac.compare_digest(token.encode("utf-8"), expected.encode("utf-8")):
        raise WebhookAuthenticationError("invalid bearer token")


async def require_billing_secret(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> None:
    """
    FastAPI dependency guarding billing event routes.

    Accepts: Authorization: Bearer {BILLING_EVENTS_SECRET}

    Raises:
        HTTPException 401 if the secret does not match
    """
    try:
        verify_billing_secret(credentials.credentials if credentials else None)
    except WebhookAuthenticationError as exc:
        logger.warning("billing_event_auth_failed", reason=exc.message)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(exc),
            headers={"WWW-Authenticate": "Bearer"},
        ) from exc


# ============================================================================
# Feature Gates
# ============================================================================


@dataclass
class FeatureAccess:
    """Outcome of a passed feature gate."""

    user_id: str
    feature: FeatureType
    decision: GateDecision | None = None  # Set for check-only gates
    consumption: ConsumptionResult | None = None  # Set for consuming gates


def require_feature(
    feature: FeatureType,
    quantity: int = 1,
    consume: bool = False,
    prefer_tokens: bool = False,
) -> Callable[..., Awaitable[FeatureAccess]]:
    """
    FastAPI dependency factory gating a route on a feature.

    Usage:
        @router.post("/v1/meal-plans")
        async def generate_meal_plan(
            access: FeatureAccess = Depends(
                require_feature(FeatureType.AI_MEAL_PLAN, consume=True)
            )
        ):
            pass

    Args:
        feature: Feature the route provides
        quantity: Units the route uses
        consume: Debit before the handler runs instead of only checking
        prefer_tokens: Spend tokens before quota when consuming

    Returns:
        Dependency that raises LimitExceededError when the user is out of
        quota and tokens (rendered as 402 by the application)
    """

    async def feature_gate(
        user_id: str = Depends(get_user_id),
        service: EntitlementService = Depends(get_entitlement_service),
    ) -> FeatureAccess:
        """Check or consume the feature for the caller."""
        try:
            if consume:
                result = await retry_on_conflict(
                    lambda: service.consume_feature(user_id, feature, quantity, prefer_tokens),
                    "feature_gate_consume",
                )
                return FeatureAccess(user_id=user_id, feature=feature, consumption=result)

            decision = await service.check_feature(user_id, feature, quantity)
            if not decision.allowed:
                raise LimitExceededError(feature.value, quantity, decision)
            return FeatureAccess(user_id=user_id, feature=feature, decision=decision)

        except ConcurrentModificationError as exc:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="Entitlements changed concurrently, please retry",
            ) from exc
        except StorageUnavailableError as exc:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Entitlement check failed",
            ) from exc

    return feature_gate


def require_pro() -> Callable[..., Awaitable[UserEntitlements]]:
    """
    FastAPI dependency factory for Pro-only routes.

    Usage:
        @router.get("/v1/reports/advanced")
        async def advanced_report(
            entitlements: UserEntitlements = Depends(require_pro())
        ):
            pass

    Returns:
        Dependency yielding the caller's snapshot, or raising
        SubscriptionRequiredError (rendered as 402 by the application)
    """

    async def pro_gate(
        user_id: str = Depends(get_user_id),
        service: EntitlementService = Depends(get_entitlement_service),
    ) -> UserEntitlements:
        """Require an effective Pro tier."""
        try:
            entitlements = await service.get_entitlements(user_id)
        except StorageUnavailableError as exc:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Subscription check failed",
            ) from exc

        if not entitlements.is_pro:
            raise SubscriptionRequiredError(user_id)
        return entitlements

    return pro_gate
