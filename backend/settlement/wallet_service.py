"""
Wallet Ledger Service

Core wallet operations including:
- Lazy wallet creation (race-safe upsert)
- Balance queries and affordability checks
- Debits and credits (atomic, idempotent per external cause)
- Immutable ledger entries
- Balance vs ledger reconciliation

CRITICAL: Every balance mutation is a single MongoDB conditional update that
both checks and records the idempotency key (applied_keys), so a replayed
settlement can never move money twice and negative balances are impossible.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Optional, Dict, Any

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from .config import CREDIT_KINDS, RECONCILIATION_TOLERANCE
from .errors import InsufficientFunds
from .models import LedgerResult, ReconciliationReport, WalletResponse

logger = logging.getLogger(__name__)

# Wallet counters bumped for each credit kind (besides balance)
_CREDIT_COUNTERS = {
    "win": "total_won",
    "refund": None,
    "deposit": "total_deposited",
}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _money(amount: float) -> float:
    amount = round(float(amount), 2)
    if amount <= 0:
        raise ValueError(f"Amount must be positive, got {amount}")
    return amount


class WalletService:
    """Service for managing user wallets and the transaction ledger."""

    def __init__(self, db):
        self.db = db

    async def get_or_create_wallet(self, user_id: str) -> Dict[str, Any]:
        """
        Get existing wallet or create one lazily.

        Two early requests from a brand-new user may both get here; the upsert
        against the unique user_id index lets exactly one of them insert.
        """
        wallet = await self.db.user_wallets.find_one({"user_id": user_id}, {"_id": 0})
        if wallet:
            return wallet
        return await self._create_wallet(user_id)

    async def _create_wallet(self, user_id: str) -> Dict[str, Any]:
        now = _now()
        wallet_doc = {
            "user_id": user_id,
            "balance": 0.0,
            "total_won": 0.0,
            "total_spent": 0.0,
            "total_deposited": 0.0,
            "applied_keys": [],
            "created_at": now,
            "updated_at": now
        }

        try:
            await self.db.user_wallets.update_one(
                {"user_id": user_id},
                {"$setOnInsert": wallet_doc},
                upsert=True
            )
        except DuplicateKeyError:
            # Concurrent upsert inserted first
            logger.debug(f"Wallet for user {user_id} created concurrently")

        return await self.db.user_wallets.find_one({"user_id": user_id}, {"_id": 0})

    async def get_balance(self, user_id: str) -> float:
        wallet = await self.get_or_create_wallet(user_id)
        return float(wallet.get("balance", 0.0))

    async def can_afford(self, user_id: str, amount: float) -> bool:
        """Eligibility check for display; debit() is the authoritative check."""
        return await self.get_balance(user_id) >= round(float(amount), 2)

    async def get_wallet_response(self, user_id: str) -> WalletResponse:
        wallet = await self.get_or_create_wallet(user_id)
        return WalletResponse(
            user_id=user_id,
            balance=wallet.get("balance", 0.0),
            total_won=wallet.get("total_won", 0.0),
            total_spent=wallet.get("total_spent", 0.0),
            total_deposited=wallet.get("total_deposited", 0.0)
        )

    async def debit(
        self,
        user_id: str,
        amount: float,
        reason: str,
        idempotency_key: str,
        ticket_ref: Optional[str] = None
    ) -> LedgerResult:
        """
        Debit a stake from the wallet.

        Raises:
            InsufficientFunds: balance < amount (nothing is changed)

        Returns:
            LedgerResult; duplicate=True when the key was already applied
        """
        amount = _money(amount)
        await self.get_or_create_wallet(user_id)

        updated = await self.db.user_wallets.find_one_and_update(
            {
                "user_id": user_id,
                "balance": {"$gte": amount},
                "applied_keys": {"$ne": idempotency_key}
            },
            {
                "$inc": {"balance": -amount, "total_spent": amount},
                "$push": {"applied_keys": idempotency_key},
                "$set": {"updated_at": _now()}
            },
            return_document=ReturnDocument.AFTER
        )

        if not updated:
            wallet = await self.db.user_wallets.find_one({"user_id": user_id}, {"_id": 0})
            if idempotency_key in wallet.get("applied_keys", []):
                return await self._replay(wallet, "purchase", -amount, reason, idempotency_key, ticket_ref)

            balance = wallet.get("balance", 0.0)
            logger.info(f"Debit rejected for user {user_id}: balance={balance} required={amount}")
            raise InsufficientFunds(balance=balance, required=amount)

        balance_after = round(updated["balance"], 2)
        entry = await self._write_ledger_entry(
            user_id=user_id,
            tx_type="purchase",
            amount=-amount,
            idempotency_key=idempotency_key,
            ticket_ref=ticket_ref,
            description=reason,
            balance_after=balance_after
        )

        return LedgerResult(
            user_id=user_id,
            transaction_id=entry["id"],
            type="purchase",
            amount=-amount,
            idempotency_key=idempotency_key,
            balance_after=balance_after
        )

    async def credit(
        self,
        user_id: str,
        amount: float,
        kind: str,
        reason: str,
        idempotency_key: str,
        ticket_ref: Optional[str] = None
    ) -> LedgerResult:
        """
        Credit a win, refund or deposit to the wallet.

        Args:
            user_id: User to credit
            amount: Positive amount
            kind: 'win', 'refund' or 'deposit'
            reason: Human readable ledger description
            idempotency_key: External cause (payment attempt, ticket, play)
            ticket_ref: Optional ticket/play reference for the ledger

        Returns:
            LedgerResult; duplicate=True when the key was already applied
        """
        if kind not in CREDIT_KINDS:
            raise ValueError(f"Invalid credit kind: {kind}")
        amount = _money(amount)
        await self.get_or_create_wallet(user_id)

        increments = {"balance": amount}
        counter = _CREDIT_COUNTERS[kind]
        if counter:
            increments[counter] = amount

        updated = await self.db.user_wallets.find_one_and_update(
            {"user_id": user_id, "applied_keys": {"$ne": idempotency_key}},
            {
                "$inc": increments,
                "$push": {"applied_keys": idempotency_key},
                "$set": {"updated_at": _now()}
            },
            return_document=ReturnDocument.AFTER
        )

        if not updated:
            wallet = await self.db.user_wallets.find_one({"user_id": user_id}, {"_id": 0})
            return await self._replay(wallet, kind, amount, reason, idempotency_key, ticket_ref)

        balance_after = round(updated["balance"], 2)
        entry = await self._write_ledger_entry(
            user_id=user_id,
            tx_type=kind,
            amount=amount,
            idempotency_key=idempotency_key,
            ticket_ref=ticket_ref,
            description=reason,
            balance_after=balance_after
        )

        logger.info(f"Credited {amount} to user {user_id} (kind={kind}, key={idempotency_key})")
        return LedgerResult(
            user_id=user_id,
            transaction_id=entry["id"],
            type=kind,
            amount=amount,
            idempotency_key=idempotency_key,
            balance_after=balance_after
        )

    async def _replay(
        self,
        wallet: Dict[str, Any],
        tx_type: str,
        amount: float,
        reason: str,
        idempotency_key: str,
        ticket_ref: Optional[str]
    ) -> LedgerResult:
        """
        The key was already applied to the balance. Back-fill the ledger row
        if a previous call died between the balance update and the insert.
        """
        user_id = wallet["user_id"]
        logger.info(f"Idempotent replay for user {user_id} (key={idempotency_key})")

        entry = await self._write_ledger_entry(
            user_id=user_id,
            tx_type=tx_type,
            amount=amount,
            idempotency_key=idempotency_key,
            ticket_ref=ticket_ref,
            description=reason,
            balance_after=None
        )
        if abs(entry["amount"] - amount) > RECONCILIATION_TOLERANCE:
            logger.warning(
                f"Replay amount mismatch for key {idempotency_key}: "
                f"ledger={entry['amount']} requested={amount}"
            )

        return LedgerResult(
            user_id=user_id,
            transaction_id=entry["id"],
            type=entry["type"],
            amount=entry["amount"],
            idempotency_key=idempotency_key,
            balance_after=round(wallet.get("balance", 0.0), 2),
            duplicate=True
        )

    async def _write_ledger_entry(
        self,
        user_id: str,
        tx_type: str,
        amount: float,
        idempotency_key: str,
        ticket_ref: Optional[str],
        description: str,
        balance_after: Optional[float]
    ) -> Dict[str, Any]:
        """Insert-or-get the immutable ledger entry for an idempotency key."""
        entry = {
            "id": str(uuid.uuid4()),
            "user_id": user_id,
            "type": tx_type,
            "amount": amount,
            "idempotency_key": idempotency_key,
            "ticket_ref": ticket_ref,
            "description": description,
            "balance_after": balance_after,
            "created_at": _now()
        }

        try:
            await self.db.ticket_transactions.update_one(
                {"idempotency_key": idempotency_key},
                {"$setOnInsert": entry},
                upsert=True
            )
        except DuplicateKeyError:
            pass

        return await self.db.ticket_transactions.find_one(
            {"idempotency_key": idempotency_key},
            {"_id": 0}
        )

    async def get_ledger(self, user_id: str, limit: int = 50) -> list:
        """Get recent ledger entries for user."""
        cursor = self.db.ticket_transactions.find(
            {"user_id": user_id},
            {"_id": 0}
        ).sort("created_at", -1).limit(limit)

        return await cursor.to_list(length=limit)

    async def reconcile(self, user_id: str) -> ReconciliationReport:
        """Compare the wallet balance with the signed sum of its ledger."""
        wallet = await self.get_or_create_wallet(user_id)
        entries = await self.db.ticket_transactions.find(
            {"user_id": user_id},
            {"_id": 0, "amount": 1}
        ).to_list(length=None)

        ledger_sum = round(sum(e.get("amount", 0.0) for e in entries), 2)
        balance = round(wallet.get("balance", 0.0), 2)
        difference = round(balance - ledger_sum, 2)
        is_balanced = abs(difference) <= RECONCILIATION_TOLERANCE

        if not is_balanced:
            logger.error(
                f"RECONCILIATION_MISMATCH | user={user_id} | balance={balance} | "
                f"ledger_sum={ledger_sum} | difference={difference}"
            )

        return ReconciliationReport(
            user_id=user_id,
            balance=balance,
            ledger_sum=ledger_sum,
            difference=difference,
            transaction_count=len(entries),
            is_balanced=is_balanced
        )
