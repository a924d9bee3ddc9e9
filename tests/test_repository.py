"""
Tests for SqlEntitlementStore.

Tests the compare-and-swap write and get-or-create load against a mocked
AsyncSession.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest
from conftest import create_mock_account, make_record
from sqlalchemy.exc import IntegrityError, OperationalError

from gatekeeper.db.models import EntitlementAccount, ProcessedBillingEvent, TokenTransaction
from gatekeeper.db.repository import BillingEventMarker, SqlEntitlementStore
from gatekeeper.exceptions import ConcurrentModificationError, StorageUnavailableError
from gatekeeper.models.api import TokenSource, TokenType
from gatekeeper.models.domain import TokenTransactionData


def _result(account=None, rowcount: int = 1) -> MagicMock:
    result = MagicMock()
    result.scalar_one_or_none = MagicMock(return_value=account)
    result.rowcount = rowcount
    return result


class TestLoadEntitlements:
    """Get-or-create load."""

    async def test_existing_account_is_converted(self, db_session: AsyncMock):
        db_session.execute = AsyncMock(
            return_value=_result(create_mock_account(version=4, tier="pro", ai_tokens=6))
        )
        store = SqlEntitlementStore(db_session)

        record = await store.load_entitlements("user-1")

        assert record.version == 4
        assert record.tier.value == "pro"
        assert record.ai_tokens == 6
        db_session.add.assert_not_called()

    async def test_missing_account_is_created_free(self, db_session: AsyncMock):
        store = SqlEntitlementStore(db_session)

        record = await store.load_entitlements("new-user")

        assert record.user_id == "new-user"
        assert record.version == 0
        assert record.tier.value == "free"
        added = db_session.add.call_args[0][0]
        assert isinstance(added, EntitlementAccount)
        db_session.commit.assert_awaited_once()

    async def test_creation_race_rereads(self, db_session: AsyncMock):
        """A concurrent insert is resolved by reading the winner's row."""
        db_session.execute = AsyncMock(
            side_effect=[_result(None), _result(create_mock_account(version=1))]
        )
        db_session.flush = AsyncMock(side_effect=IntegrityError("insert", {}, Exception()))
        store = SqlEntitlementStore(db_session)

        record = await store.load_entitlements("user-1")

        assert record.version == 1
        db_session.rollback.assert_awaited()

    async def test_database_error_is_storage_unavailable(self, db_session: AsyncMock):
        db_session.execute = AsyncMock(side_effect=OperationalError("select", {}, Exception()))
        store = SqlEntitlementStore(db_session)

        with pytest.raises(StorageUnavailableError):
            await store.load_entitlements("user-1")


class TestSaveEntitlements:
    """Compare-and-swap save."""

    async def test_save_bumps_version_and_writes_ledger(self, db_session: AsyncMock):
        store = SqlEntitlementStore(db_session)
        record = make_record(version=2, ai_tokens=4)
        entry = TokenTransactionData(
            user_id="user-1",
            token_type=TokenType.AI_TOKENS,
            amount=-1,
            balance_after=4,
            source=TokenSource.USAGE,
            description="Used 1 ai tokens",
        )

        saved = await store.save_entitlements(
            "user-1",
            record,
            expected_version=2,
            transactions=(entry,),
            event=BillingEventMarker(event_id="evt_1", event_type="purchase"),
        )

        assert saved.version == 3
        added = [call.args[0] for call in db_session.add.call_args_list]
        assert isinstance(added[0], TokenTransaction)
        assert added[0].amount == -1
        assert isinstance(added[1], ProcessedBillingEvent)
        db_session.commit.assert_awaited_once()

    async def test_zero_rows_updated_is_conflict(self, db_session: AsyncMock):
        db_session.execute = AsyncMock(return_value=_result(rowcount=0))
        store = SqlEntitlementStore(db_session)

        with pytest.raises(ConcurrentModificationError) as exc_info:
            await store.save_entitlements("user-1", make_record(version=5), expected_version=5)

        assert exc_info.value.expected_version == 5
        db_session.rollback.assert_awaited()
        db_session.commit.assert_not_awaited()

    async def test_duplicate_event_is_conflict(self, db_session: AsyncMock):
        """A billing event inserted concurrently surfaces as a conflict to retry."""
        db_session.flush = AsyncMock(side_effect=IntegrityError("insert", {}, Exception()))
        store = SqlEntitlementStore(db_session)

        with pytest.raises(ConcurrentModificationError):
            await store.save_entitlements(
                "user-1",
                make_record(),
                expected_version=0,
                event=BillingEventMarker(event_id="evt_dup", event_type="purchase"),
            )

    async def test_database_error_is_storage_unavailable(self, db_session: AsyncMock):
        db_session.execute = AsyncMock(side_effect=OperationalError("update", {}, Exception()))
        store = SqlEntitlementStore(db_session)

        with pytest.raises(StorageUnavailableError):
            await store.save_entitlements("user-1", make_record(), expected_version=0)

    async def test_user_mismatch_rejected(self, db_session: AsyncMock):
        store = SqlEntitlementStore(db_session)

        with pytest.raises(ValueError):
            await store.save_entitlements("user-2", make_record(), expected_version=0)


class TestIsEventProcessed:
    """Processed billing event lookup."""

    async def test_known_event(self, db_session: AsyncMock):
        db_session.execute = AsyncMock(return_value=_result(MagicMock()))

        assert await SqlEntitlementStore(db_session).is_event_processed("evt_1") is True

    async def test_unknown_event(self, db_session: AsyncMock):
        assert await SqlEntitlementStore(db_session).is_event_processed("evt_2") is False
