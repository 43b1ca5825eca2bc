"""
Unit Tests for the Wallet Ledger
================================

Tests:
1. Lazy wallet creation (including concurrent first access)
2. Debit / credit balance and counter updates
3. Insufficient funds leaves everything unchanged
4. Idempotency keys: one transaction per key, ledger back-fill on replay
5. Balance vs ledger reconciliation
"""

import asyncio

import pytest

from settlement.errors import InsufficientFunds
from settlement.wallet_service import WalletService


class TestWalletCreation:

    @pytest.mark.asyncio
    async def test_wallet_created_lazily_with_zero_balance(self, wallet_service, db):
        wallet = await wallet_service.get_or_create_wallet("user-1")

        assert wallet["balance"] == 0.0
        assert wallet["applied_keys"] == []
        assert await db.user_wallets.count_documents({"user_id": "user-1"}) == 1

    @pytest.mark.asyncio
    async def test_concurrent_first_access_creates_one_wallet(self, wallet_service, db):
        wallets = await asyncio.gather(*[
            wallet_service.get_or_create_wallet("user-1") for _ in range(5)
        ])

        assert all(w["user_id"] == "user-1" for w in wallets)
        assert await db.user_wallets.count_documents({"user_id": "user-1"}) == 1


class TestDebitCredit:

    @pytest.mark.asyncio
    async def test_credit_then_debit(self, wallet_service, fund):
        await fund("user-1", 1000)

        result = await wallet_service.debit(
            "user-1", 100, "Ticket purchase", idempotency_key="ticket:t1", ticket_ref="t1"
        )

        assert result.balance_after == 900
        assert result.amount == -100
        assert result.type == "purchase"
        assert not result.duplicate

        wallet = await wallet_service.get_wallet_response("user-1")
        assert wallet.balance == 900
        assert wallet.total_spent == 100
        assert wallet.total_deposited == 1000

    @pytest.mark.asyncio
    async def test_win_credit_updates_total_won(self, wallet_service):
        await wallet_service.credit("user-1", 500, "win", "Ticket win", idempotency_key="ticket-win:t1")

        wallet = await wallet_service.get_wallet_response("user-1")
        assert wallet.balance == 500
        assert wallet.total_won == 500

    @pytest.mark.asyncio
    async def test_refund_does_not_count_as_win(self, wallet_service):
        await wallet_service.credit("user-1", 200, "refund", "70% rule", idempotency_key="ai-play-refund:p1")

        wallet = await wallet_service.get_wallet_response("user-1")
        assert wallet.balance == 200
        assert wallet.total_won == 0

    @pytest.mark.asyncio
    async def test_insufficient_funds_changes_nothing(self, wallet_service, fund, db):
        await fund("user-1", 50)

        with pytest.raises(InsufficientFunds) as exc_info:
            await wallet_service.debit("user-1", 100, "Ticket purchase", idempotency_key="ticket:t1")

        assert exc_info.value.details["balance"] == 50
        assert exc_info.value.to_dict()["error_code"] == "INSUFFICIENT_FUNDS"
        assert await wallet_service.get_balance("user-1") == 50
        assert await db.ticket_transactions.count_documents({"idempotency_key": "ticket:t1"}) == 0

    @pytest.mark.asyncio
    async def test_non_positive_amount_rejected(self, wallet_service):
        with pytest.raises(ValueError):
            await wallet_service.debit("user-1", 0, "bad", idempotency_key="k")
        with pytest.raises(ValueError):
            await wallet_service.credit("user-1", -5, "win", "bad", idempotency_key="k")

    @pytest.mark.asyncio
    async def test_unknown_credit_kind_rejected(self, wallet_service):
        with pytest.raises(ValueError):
            await wallet_service.credit("user-1", 10, "bonus", "bad", idempotency_key="k")

    @pytest.mark.asyncio
    async def test_concurrent_debits_never_go_negative(self, wallet_service, fund):
        await fund("user-1", 300)

        results = await asyncio.gather(*[
            wallet_service.debit("user-1", 100, "stake", idempotency_key=f"ticket:t{i}")
            for i in range(5)
        ], return_exceptions=True)

        succeeded = [r for r in results if not isinstance(r, Exception)]
        rejected = [r for r in results if isinstance(r, InsufficientFunds)]
        assert len(succeeded) == 3
        assert len(rejected) == 2
        assert await wallet_service.get_balance("user-1") == 0


class TestIdempotency:

    @pytest.mark.asyncio
    async def test_same_key_twice_is_one_transaction(self, wallet_service, db):
        first = await wallet_service.credit("user-1", 1000, "deposit", "Recharge", idempotency_key="payment:a1")
        second = await wallet_service.credit("user-1", 1000, "deposit", "Recharge", idempotency_key="payment:a1")

        assert not first.duplicate
        assert second.duplicate
        assert second.transaction_id == first.transaction_id
        assert await wallet_service.get_balance("user-1") == 1000
        assert await db.ticket_transactions.count_documents({"user_id": "user-1"}) == 1

    @pytest.mark.asyncio
    async def test_concurrent_replays_apply_once(self, wallet_service, db):
        await asyncio.gather(*[
            wallet_service.credit("user-1", 250, "win", "Win", idempotency_key="ticket-win:t1")
            for _ in range(4)
        ])

        assert await wallet_service.get_balance("user-1") == 250
        assert await db.ticket_transactions.count_documents({"idempotency_key": "ticket-win:t1"}) == 1

    @pytest.mark.asyncio
    async def test_replayed_debit_is_not_rejected_for_funds(self, wallet_service, fund):
        await fund("user-1", 100)
        await wallet_service.debit("user-1", 100, "stake", idempotency_key="ai-play:p1")

        replay = await wallet_service.debit("user-1", 100, "stake", idempotency_key="ai-play:p1")

        assert replay.duplicate
        assert await wallet_service.get_balance("user-1") == 0

    @pytest.mark.asyncio
    async def test_replay_backfills_missing_ledger_row(self, wallet_service, db):
        await wallet_service.credit("user-1", 300, "win", "Win", idempotency_key="ticket-win:t9")
        # Simulate a crash between the balance update and the ledger insert
        await db.ticket_transactions.delete_one({"idempotency_key": "ticket-win:t9"})

        replay = await wallet_service.credit("user-1", 300, "win", "Win", idempotency_key="ticket-win:t9")

        assert replay.duplicate
        assert await wallet_service.get_balance("user-1") == 300
        report = await wallet_service.reconcile("user-1")
        assert report.is_balanced


class TestReconciliation:

    @pytest.mark.asyncio
    async def test_balance_matches_ledger_after_mixed_operations(self, wallet_service, fund):
        await fund("user-1", 1000)
        await wallet_service.debit("user-1", 100, "stake", idempotency_key="ticket:t1")
        await wallet_service.credit("user-1", 200, "win", "win", idempotency_key="ticket-win:t1")
        with pytest.raises(InsufficientFunds):
            await wallet_service.debit("user-1", 5000, "stake", idempotency_key="ticket:t2")
        await wallet_service.credit("user-1", 200, "win", "win", idempotency_key="ticket-win:t1")

        report = await wallet_service.reconcile("user-1")

        assert report.balance == 1100
        assert report.ledger_sum == 1100
        assert report.transaction_count == 3
        assert report.is_balanced

    @pytest.mark.asyncio
    async def test_mismatch_detected(self, wallet_service, db):
        await wallet_service.credit("user-1", 100, "deposit", "Recharge", idempotency_key="payment:a1")
        await db.user_wallets.update_one({"user_id": "user-1"}, {"$inc": {"balance": 50}})

        report = await wallet_service.reconcile("user-1")

        assert not report.is_balanced
        assert report.difference == 50

    @pytest.mark.asyncio
    async def test_ledger_newest_first(self, db):
        service = WalletService(db)
        await service.credit("user-1", 100, "deposit", "first", idempotency_key="k1")
        await service.credit("user-1", 100, "deposit", "second", idempotency_key="k2")

        entries = await service.get_ledger("user-1", limit=10)

        assert len(entries) == 2
        assert entries[0]["created_at"] >= entries[1]["created_at"]
        assert {e["idempotency_key"] for e in entries} == {"k1", "k2"}
