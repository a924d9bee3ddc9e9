"""
Entitlement Store - Persistence boundary for entitlement records.

The service only talks to storage through the EntitlementStore protocol:
load a record, then save it back conditioned on the version it was loaded
at. SqlEntitlementStore implements it on PostgreSQL with a
compare-and-swap UPDATE.
"""

from dataclasses import dataclass, replace
from typing import Protocol

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from gatekeeper.db.models import (
    EntitlementAccount,
    ProcessedBillingEvent,
    TokenTransaction,
    utc_now,
)
from gatekeeper.exceptions import ConcurrentModificationError, StorageUnavailableError
from gatekeeper.models.api import SubscriptionStatus, Tier
from gatekeeper.models.domain import EntitlementRecord, TokenTransactionData
from gatekeeper.observability import metrics

logger = get_logger(__name__)


@dataclass(frozen=True)
class BillingEventMarker:
    """Billing event to record as processed in the same write."""

    event_id: str
    event_type: str


class EntitlementStore(Protocol):
    """Storage collaborator for entitlement records."""

    async def load_entitlements(self, user_id: str) -> EntitlementRecord:
        """Load a user's record, creating a free-tier record on first use."""
        ...

    async def save_entitlements(
        self,
        user_id: str,
        record: EntitlementRecord,
        expected_version: int,
        transactions: tuple[TokenTransactionData, ...] = (),
        event: BillingEventMarker | None = None,
    ) -> EntitlementRecord:
        """
        Write a record if the stored version still equals expected_version.

        Returns the record with its new version.

        Raises:
            ConcurrentModificationError: Stored version moved on
        """
        ...

    async def is_event_processed(self, event_id: str) -> bool:
        """Whether a billing event has already been applied."""
        ...


def _account_to_record(account: EntitlementAccount) -> EntitlementRecord:
    """Convert ORM account to domain record."""
    return EntitlementRecord(
        user_id=account.user_id,
        version=account.version,
        tier=Tier(account.tier),
        subscription_status=(
            SubscriptionStatus(account.subscription_status)
            if account.subscription_status
            else None
        ),
        current_period_end=account.current_period_end,
        trial_end=account.trial_end,
        cancel_at_period_end=account.cancel_at_period_end,
        time_zone=account.time_zone,
        ai_meal_plans_used=account.ai_meal_plans_used,
        ai_recipe_suggestions_used=account.ai_recipe_suggestions_used,
        barcode_scans_today=account.barcode_scans_today,
        pdf_exports_used=account.pdf_exports_used,
        streak_shields_used=account.streak_shields_used,
        ai_tokens=account.ai_tokens,
        export_tokens=account.export_tokens,
        streak_shields=account.streak_shields,
        daily_reset_day=account.daily_reset_day,
        monthly_period_key=account.monthly_period_key,
    )


def _record_values(record: EntitlementRecord) -> dict[str, object]:
    """Column values for an UPDATE, excluding identity and version."""
    return {
        "tier": record.tier.value,
        "subscription_status": (
            record.subscription_status.value if record.subscription_status else None
        ),
        "current_period_end": record.current_period_end,
        "trial_end": record.trial_end,
        "cancel_at_period_end": record.cancel_at_period_end,
        "time_zone": record.time_zone,
        "ai_meal_plans_used": record.ai_meal_plans_used,
        "ai_recipe_suggestions_used": record.ai_recipe_suggestions_used,
        "barcode_scans_today": record.barcode_scans_today,
        "pdf_exports_used": record.pdf_exports_used,
        "streak_shields_used": record.streak_shields_used,
        "ai_tokens": record.ai_tokens,
        "export_tokens": record.export_tokens,
        "streak_shields": record.streak_shields,
        "daily_reset_day": record.daily_reset_day,
        "monthly_period_key": record.monthly_period_key,
    }


class SqlEntitlementStore:
    """PostgreSQL entitlement store with version compare-and-swap writes."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize store with database session."""
        self.session = session

    async def load_entitlements(self, user_id: str) -> EntitlementRecord:
        """
        Load a user's record, creating it on first use.

        Raises:
            StorageUnavailableError: Database failure
        """
        try:
            account = await self._find_account(user_id)
            if account is not None:
                return _account_to_record(account)

            new_account = EntitlementAccount(
                user_id=user_id,
                version=0,
                tier=Tier.FREE.value,
                cancel_at_period_end=False,
                ai_meal_plans_used=0,
                ai_recipe_suggestions_used=0,
                barcode_scans_today=0,
                pdf_exports_used=0,
                streak_shields_used=0,
                ai_tokens=0,
                export_tokens=0,
                streak_shields=0,
            )
            self.session.add(new_account)
            try:
                await self.session.flush()
                await self.session.commit()
            except IntegrityError:
                # Race condition - account created by another request
                await self.session.rollback()
                account = await self._find_account(user_id)
                if account is None:
                    raise StorageUnavailableError(f"Account creation failed for {user_id}")
                return _account_to_record(account)

            logger.info("entitlement_account_created", user_id=user_id)
            return _account_to_record(new_account)

        except SQLAlchemyError as exc:
            await self._rollback_quietly()
            metrics.record_storage_error("load_entitlements")
            logger.error("entitlement_load_failed", user_id=user_id, error=str(exc))
            raise StorageUnavailableError(str(exc)) from exc

    async def save_entitlements(
        self,
        user_id: str,
        record: EntitlementRecord,
        expected_version: int,
        transactions: tuple[TokenTransactionData, ...] = (),
        event: BillingEventMarker | None = None,
    ) -> EntitlementRecord:
        """
        Conditionally write a record and its ledger entries in one transaction.

        Raises:
            ConcurrentModificationError: Stored version no longer matches
            StorageUnavailableError: Database failure
        """
        if record.user_id != user_id:
            raise ValueError(f"Record for {record.user_id} cannot be saved as {user_id}")

        new_version = expected_version + 1
        stmt = (
            update(EntitlementAccount)
            .where(
                EntitlementAccount.user_id == user_id,
                EntitlementAccount.version == expected_version,
            )
            .values(**_record_values(record), version=new_version, updated_at=utc_now())
        )

        try:
            result = await self.session.execute(stmt)
            if result.rowcount == 0:
                await self.session.rollback()
                metrics.record_concurrency_conflict()
                logger.warning(
                    "entitlement_version_conflict",
                    user_id=user_id,
                    expected_version=expected_version,
                )
                raise ConcurrentModificationError(user_id, expected_version)

            for transaction in transactions:
                self.session.add(
                    TokenTransaction(
                        user_id=transaction.user_id,
                        token_type=transaction.token_type.value,
                        amount=transaction.amount,
                        balance_after=transaction.balance_after,
                        source=transaction.source.value,
                        source_reference=transaction.source_reference,
                        description=transaction.description,
                    )
                )

            if event is not None:
                self.session.add(
                    ProcessedBillingEvent(
                        event_id=event.event_id,
                        event_type=event.event_type,
                        user_id=user_id,
                    )
                )

            await self.session.flush()
            await self.session.commit()

        except IntegrityError as exc:
            # Duplicate billing event committed by a concurrent request
            await self.session.rollback()
            logger.warning("entitlement_save_integrity_error", user_id=user_id, error=str(exc))
            raise ConcurrentModificationError(user_id, expected_version) from exc
        except SQLAlchemyError as exc:
            await self._rollback_quietly()
            metrics.record_storage_error("save_entitlements")
            logger.error("entitlement_save_failed", user_id=user_id, error=str(exc))
            raise StorageUnavailableError(str(exc)) from exc

        return replace(record, version=new_version)

    async def is_event_processed(self, event_id: str) -> bool:
        """
        Check the processed billing events table.

        Raises:
            StorageUnavailableError: Database failure
        """
        try:
            stmt = select(ProcessedBillingEvent).where(
                ProcessedBillingEvent.event_id == event_id
            )
            result = await self.session.execute(stmt)
            return result.scalar_one_or_none() is not None
        except SQLAlchemyError as exc:
            await self._rollback_quietly()
            metrics.record_storage_error("is_event_processed")
            raise StorageUnavailableError(str(exc)) from exc

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _find_account(self, user_id: str) -> EntitlementAccount | None:
        """Find account by user id."""
        stmt = select(EntitlementAccount).where(EntitlementAccount.user_id == user_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _rollback_quietly(self) -> None:
        """Roll back after a failure, keeping the original error as the one raised."""
        try:
            await self.session.rollback()
        except SQLAlchemyError as exc:
            logger.warning("entitlement_rollback_failed", error=str(exc))
