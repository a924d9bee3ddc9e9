"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations.
"""

from datetime import UTC, date, datetime
from uuid import UUID, uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Index,
    Integer,
    String,
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class EntitlementAccount(Base):
    """
    ORM model for entitlement_accounts table.

    One row per user: stored subscription state, period usage counters with
    their reset markers, and token balances. Writes are compare-and-swap on
    the version column.
    """

    __tablename__ = "entitlement_accounts"

    # Primary Key - user id issued by the identity provider
    user_id: Mapped[str] = mapped_column(String(255), primary_key=True)

    # Optimistic concurrency
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Subscription (written by billing events)
    tier: Mapped[str] = mapped_column(String(20), nullable=False, default="free")
    subscription_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    current_period_end: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    trial_end: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    time_zone: Mapped[str | None] = mapped_column(String(64), nullable=True)

    # Usage this period
    ai_meal_plans_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    ai_recipe_suggestions_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    barcode_scans_today: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    pdf_exports_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    streak_shields_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Period markers
    daily_reset_day: Mapped[date | None] = mapped_column(Date, nullable=True)
    monthly_period_key: Mapped[str | None] = mapped_column(String(32), nullable=True)

    # Token balances (never reset by rollover)
    ai_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    export_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    streak_shields: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Audit timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("tier IN ('free', 'pro')", name="ck_entitlement_tier"),
        CheckConstraint(
            "subscription_status IS NULL OR subscription_status IN "
            "('active', 'cancelled', 'past_due', 'trialing')",
            name="ck_entitlement_subscription_status",
        ),
        CheckConstraint("version >= 0", name="ck_entitlement_version_non_negative"),
        CheckConstraint("ai_meal_plans_used >= 0", name="ck_ai_meal_plans_used_non_negative"),
        CheckConstraint(
            "ai_recipe_suggestions_used >= 0", name="ck_ai_recipes_used_non_negative"
        ),
        CheckConstraint("barcode_scans_today >= 0", name="ck_barcode_scans_non_negative"),
        CheckConstraint("pdf_exports_used >= 0", name="ck_pdf_exports_used_non_negative"),
        CheckConstraint("streak_shields_used >= 0", name="ck_shields_used_non_negative"),
        CheckConstraint("ai_tokens >= 0", name="ck_ai_tokens_non_negative"),
        CheckConstraint("export_tokens >= 0", name="ck_export_tokens_non_negative"),
        CheckConstraint("streak_shields >= 0", name="ck_streak_shields_non_negative"),
        Index("idx_entitlement_accounts_tier", "tier"),
        Index("idx_entitlement_accounts_updated_at", "updated_at"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<EntitlementAccount(user_id={self.user_id}, tier={self.tier}, "
            f"version={self.version}, ai_tokens={self.ai_tokens})>"
        )


class TokenTransaction(Base):
    """
    ORM model for token_transactions table.

    Immutable ledger of every token balance change.
    """

    __tablename__ = "token_transactions"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)

    token_type: Mapped[str] = mapped_column(String(32), nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    balance_after: Mapped[int] = mapped_column(Integer, nullable=False)

    source: Mapped[str] = mapped_column(String(32), nullable=False)
    source_reference: Mapped[str | None] = mapped_column(String(255), nullable=True)
    description: Mapped[str] = mapped_column(String, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("amount <> 0", name="ck_token_transaction_amount_non_zero"),
        CheckConstraint("balance_after >= 0", name="ck_token_transaction_balance_non_negative"),
        CheckConstraint(
            "token_type IN ('ai_tokens', 'export_tokens', 'streak_shields')",
            name="ck_token_transaction_type",
        ),
        Index("idx_token_transactions_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<TokenTransaction(id={self.id}, user_id={self.user_id}, "
            f"token_type={self.token_type}, amount={self.amount})>"
        )


class ProcessedBillingEvent(Base):
    """
    ORM model for processed_billing_events table.

    One row per applied billing collaborator event; makes webhooks idempotent.
    """

    __tablename__ = "processed_billing_events"

    event_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    processed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<ProcessedBillingEvent(event_id={self.event_id}, type={self.event_type})>"
