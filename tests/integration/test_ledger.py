"""Append-only ledger against a real database."""

from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import select

from ttg.db.models import PointTransaction
from ttg.errors import DuplicateEventError, ValidationError
from ttg.gamification import ledger

from factories import NOON


async def _earn(db, key, amount=10, user_id=1, at=NOON):
    return await ledger.append(
        db,
        user_id=user_id,
        amount=amount,
        transaction_type="earn",
        idempotency_key=key,
        reason="task completed",
        source_type="task_completed",
        occurred_at=at,
    )


class TestAppend:
    @pytest.mark.asyncio
    async def test_returns_entry_with_id(self, db):
        entry = await _earn(db, "action:a")
        await db.commit()
        assert entry.id is not None
        assert entry.amount == 10
        assert entry.transaction_type == "earn"

    @pytest.mark.asyncio
    async def test_duplicate_key_raises_with_existing(self, db):
        first = await _earn(db, "action:a")
        await db.commit()
        with pytest.raises(DuplicateEventError) as exc_info:
            await _earn(db, "action:a", amount=99)
        assert exc_info.value.existing.id == first.id
        assert await ledger.sum_for(db, 1) == 10

    @pytest.mark.asyncio
    async def test_unique_constraint_backstop(self, db):
        """A writer that slipped past the pre-check still cannot land twice."""
        await _earn(db, "action:race")
        await db.commit()

        with patch.object(ledger, "find_by_key", AsyncMock(return_value=None)):
            with pytest.raises(DuplicateEventError) as exc_info:
                await _earn(db, "action:race", amount=7)
        assert exc_info.value.existing is None
        assert await ledger.sum_for(db, 1) == 10

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "transaction_type,amount",
        [("earn", -5), ("bonus", 0), ("challenge-reward", -1), ("spend", 5), ("refund", 5)],
    )
    async def test_sign_rules(self, db, transaction_type, amount):
        with pytest.raises(ValidationError):
            await ledger.append(
                db, user_id=1, amount=amount, transaction_type=transaction_type, idempotency_key="k",
            )

    @pytest.mark.asyncio
    async def test_reason_is_truncated(self, db):
        entry = await ledger.append(
            db, user_id=1, amount=1, transaction_type="bonus", idempotency_key="k", reason="x" * 400,
        )
        assert len(entry.reason) == 256


class TestTotals:
    @pytest.mark.asyncio
    async def test_empty_user(self, db):
        totals = await ledger.totals_for(db, 42)
        assert (totals.balance, totals.earned, totals.spent) == (0, 0, 0)

    @pytest.mark.asyncio
    async def test_mixed_entries(self, db):
        await _earn(db, "action:a", 30)
        await ledger.append(db, user_id=1, amount=20, transaction_type="bonus", idempotency_key="achievement:1:1")
        await ledger.append(db, user_id=1, amount=-15, transaction_type="spend", idempotency_key="redeem:r1")
        await _earn(db, "action:other-user", 500, user_id=2)
        await db.commit()

        totals = await ledger.totals_for(db, 1)
        assert totals.earned == 50
        assert totals.spent == 15
        assert totals.balance == 35
        assert await ledger.sum_for(db, 1) == 35


class TestHistory:
    @pytest.mark.asyncio
    async def test_newest_first_and_paged(self, db):
        for i in range(5):
            await _earn(db, f"action:{i}", amount=i + 1, at=NOON + timedelta(minutes=i))
        await db.commit()

        page1, total = await ledger.history(db, 1, page=1, per_page=2)
        page3, _ = await ledger.history(db, 1, page=3, per_page=2)
        assert total == 5
        assert [e.amount for e in page1] == [5, 4]
        assert [e.amount for e in page3] == [1]

    @pytest.mark.asyncio
    async def test_same_timestamp_orders_by_id(self, db):
        await _earn(db, "action:x", amount=1)
        await _earn(db, "action:y", amount=2)
        await db.commit()
        entries, _ = await ledger.history(db, 1)
        assert [e.amount for e in entries] == [2, 1]

    @pytest.mark.asyncio
    async def test_page_size_is_clamped(self, db):
        await _earn(db, "action:a")
        await db.commit()
        entries, total = await ledger.history(db, 1, page=0, per_page=10_000)
        assert total == 1
        assert len(entries) == 1

    @pytest.mark.asyncio
    async def test_entries_are_never_rewritten(self, db):
        await _earn(db, "action:a")
        await db.commit()
        with pytest.raises(DuplicateEventError):
            await _earn(db, "action:a", amount=1)
        rows = (await db.execute(select(PointTransaction))).scalars().all()
        assert [r.amount for r in rows] == [10]
