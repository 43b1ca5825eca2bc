"""
Ticket Service

Purchase, activation and reveal of instant tickets:
- Electronic/premium tickets bought with the wallet (allocation + stake debit)
- Electronic/premium tickets bought through a completed mobile-money payment
- Physical scratch codes activated by a user
- Reveal (scratch) with at-most-once prize credit

Allocation and the stake debit form one unit: the outcome is reserved first and
released again if the debit is rejected, so a failed purchase leaves the batch
counters, the wallet and the ledger exactly as they were.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Optional, Dict, Any

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from .batch_allocator import BatchAllocator
from .config import MIN_TICKET_CODE_LENGTH
from .errors import (
    InsufficientFunds,
    InvalidPaymentRequest,
    TicketAlreadyUsed,
    TicketClosed,
    TicketNotFound,
)
from .models import Outcome, RevealResult, TicketPurchaseResult
from .wallet_service import WalletService

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class TicketService:
    """Service for selling and revealing tickets."""

    def __init__(
        self,
        db,
        allocator: Optional[BatchAllocator] = None,
        wallet_service: Optional[WalletService] = None
    ):
        self.db = db
        self.allocator = allocator or BatchAllocator(db)
        self.wallet_service = wallet_service or WalletService(db)

    def _collection(self, kind: str):
        if kind == "physical":
            return self.db.physical_tickets
        return self.db.electronic_tickets

    def _ticket_doc(self, ticket_id: str, user_id: str, outcome: Outcome, **extra) -> Dict[str, Any]:
        now = _now()
        doc = {
            "id": ticket_id,
            "batch_id": outcome.batch_id,
            "user_id": user_id,
            "ticket_type": outcome.ticket_type,
            "is_winner": outcome.is_winner,
            "prize_amount": outcome.prize_amount,
            "predefined_result": "win" if outcome.is_winner else "lose",
            "status": "sold",
            "payment_attempt_id": None,
            "activated_at": now,
            "used_at": None,
            "claimed_at": None,
            "created_at": now
        }
        doc.update(extra)
        return doc

    # ==================== PURCHASE ====================

    async def purchase_with_wallet(self, user_id: str, batch_id: str) -> TicketPurchaseResult:
        """
        Buy one ticket from a batch, paying from the wallet.

        Raises:
            InsufficientFunds, BatchExhausted, BatchNotFound
        """
        batch = await self.allocator.get_batch(batch_id)

        # Cheap rejection before touching the batch; debit() re-checks atomically
        balance = await self.wallet_service.get_balance(user_id)
        if balance < batch["price"]:
            raise InsufficientFunds(balance=balance, required=batch["price"])

        outcome = await self.allocator.allocate(batch_id)
        ticket_id = str(uuid.uuid4())

        try:
            ledger = await self.wallet_service.debit(
                user_id=user_id,
                amount=outcome.price,
                reason=f"Ticket purchase {outcome.ticket_type} - {batch['name']}",
                idempotency_key=f"ticket:{ticket_id}",
                ticket_ref=ticket_id
            )
        except Exception:
            await self.allocator.release(outcome)
            raise

        ticket = self._ticket_doc(ticket_id, user_id, outcome)
        try:
            await self.db.electronic_tickets.insert_one(ticket)
        except Exception as e:
            logger.error(f"Ticket insert failed after debit for user {user_id}: {e}")
            await self.wallet_service.credit(
                user_id=user_id,
                amount=outcome.price,
                kind="refund",
                reason=f"Refund failed ticket purchase {ticket_id}",
                idempotency_key=f"ticket-refund:{ticket_id}",
                ticket_ref=ticket_id
            )
            await self.allocator.release(outcome)
            raise

        logger.info(f"User {user_id} bought ticket {ticket_id} from batch {batch_id}")
        return TicketPurchaseResult(
            ticket_id=ticket_id,
            batch_id=batch_id,
            price=outcome.price,
            balance_after=ledger.balance_after
        )

    async def purchase_with_payment(self, attempt: Dict[str, Any]) -> TicketPurchaseResult:
        """
        Issue the ticket paid by a completed mobile-money attempt.

        Exactly one ticket per attempt: the unique payment_attempt_id index
        rejects a racing duplicate, whose allocation is released.

        Raises:
            InsufficientFunds: the attempt paid less than the batch price
            BatchExhausted, BatchNotFound
        """
        if attempt.get("status") != "completed" or attempt.get("purpose") != "ticket_purchase":
            raise InvalidPaymentRequest("Attempt is not a completed ticket purchase", attempt_id=attempt.get("id"))

        existing = await self.db.electronic_tickets.find_one(
            {"payment_attempt_id": attempt["id"]}, {"_id": 0}
        )
        if existing:
            return TicketPurchaseResult(
                ticket_id=existing["id"],
                batch_id=existing["batch_id"],
                price=attempt["amount"],
                duplicate=True
            )

        batch_id = (attempt.get("metadata") or {}).get("batch_id")
        if not batch_id:
            raise InvalidPaymentRequest("Ticket purchase attempt has no batch", attempt_id=attempt["id"])

        batch = await self.allocator.get_batch(batch_id)
        if attempt["amount"] < batch["price"]:
            raise InsufficientFunds(
                "Payment is below the ticket price",
                paid=attempt["amount"],
                required=batch["price"]
            )

        outcome = await self.allocator.allocate(batch_id)
        ticket_id = str(uuid.uuid4())
        ticket = self._ticket_doc(ticket_id, attempt["user_id"], outcome, payment_attempt_id=attempt["id"])

        try:
            await self.db.electronic_tickets.insert_one(ticket)
        except DuplicateKeyError:
            await self.allocator.release(outcome)
            existing = await self.db.electronic_tickets.find_one(
                {"payment_attempt_id": attempt["id"]}, {"_id": 0}
            )
            return TicketPurchaseResult(
                ticket_id=existing["id"],
                batch_id=existing["batch_id"],
                price=attempt["amount"],
                duplicate=True
            )

        logger.info(f"Issued ticket {ticket_id} for payment {attempt['id']}")
        return TicketPurchaseResult(ticket_id=ticket_id, batch_id=batch_id, price=attempt["amount"])

    async def void_paid_ticket(self, attempt_id: str) -> bool:
        """
        Withdraw the unrevealed ticket issued for a payment attempt and put its
        outcome back in the batch. Returns False if there is nothing to withdraw.
        """
        ticket = await self.db.electronic_tickets.find_one(
            {"payment_attempt_id": attempt_id, "status": "sold"}, {"_id": 0}
        )
        if not ticket:
            return False

        removed = await self.db.electronic_tickets.delete_one({"id": ticket["id"], "status": "sold"})
        if not removed.deleted_count:
            return False

        await self.allocator.release(Outcome(
            batch_id=ticket["batch_id"],
            is_winner=ticket["is_winner"],
            prize_amount=ticket["prize_amount"],
            price=0.0,
            ticket_type=ticket["ticket_type"]
        ))
        logger.warning(f"Voided ticket {ticket['id']} of payment {attempt_id}")
        return True

    # ==================== PHYSICAL ACTIVATION ====================

    async def activate_physical(self, user_id: str, ticket_code: str) -> Dict[str, Any]:
        """Bind an available physical code to the user (prepaid, no debit)."""
        code = (ticket_code or "").strip().upper()
        if len(code) < MIN_TICKET_CODE_LENGTH:
            raise TicketNotFound("Invalid ticket code", ticket_code=code)

        ticket = await self.db.physical_tickets.find_one({"ticket_code": code}, {"_id": 0})
        if not ticket:
            raise TicketNotFound(ticket_code=code)

        if ticket.get("user_id") and ticket["user_id"] != user_id:
            raise TicketClosed("This ticket belongs to another user", ticket_code=code)
        if ticket["status"] == "used":
            raise TicketAlreadyUsed(ticket_code=code)
        if ticket["status"] == "expired":
            raise TicketClosed("This ticket has expired", ticket_code=code)
        if ticket["status"] == "sold":
            return ticket

        updated = await self.db.physical_tickets.find_one_and_update(
            {"id": ticket["id"], "status": "available"},
            {"$set": {"user_id": user_id, "status": "sold", "activated_at": _now()}},
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER
        )
        if not updated:
            # Someone else activated it between our read and write
            raise TicketClosed("This ticket was just activated by another user", ticket_code=code)

        logger.info(f"User {user_id} activated physical ticket {ticket['id']}")
        return updated

    # ==================== REVEAL ====================

    async def reveal(self, user_id: str, ticket_id: str, kind: str = "electronic") -> RevealResult:
        """
        Scratch a sold ticket: sold -> used, then credit the prize once.

        A retry after a crash between the status change and the credit resumes
        the credit (the ledger key makes it at-most-once).
        """
        collection = self._collection(kind)
        ticket = await collection.find_one({"id": ticket_id, "user_id": user_id}, {"_id": 0})
        if not ticket:
            raise TicketNotFound(ticket_id=ticket_id)

        now = _now()
        updated = await collection.find_one_and_update(
            {"id": ticket_id, "user_id": user_id, "status": "sold"},
            {"$set": {"status": "used", "used_at": now}},
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER
        )

        if not updated:
            current = await collection.find_one({"id": ticket_id}, {"_id": 0})
            unclaimed_win = (
                current.get("status") == "used"
                and current.get("is_winner")
                and current.get("prize_amount", 0) > 0
                and not current.get("claimed_at")
            )
            if not unclaimed_win:
                if current.get("status") == "used":
                    raise TicketAlreadyUsed(ticket_id=ticket_id)
                raise TicketClosed(f"Ticket is {current.get('status')}", ticket_id=ticket_id)
            updated = current

        balance_after = None
        if updated.get("is_winner") and updated.get("prize_amount", 0) > 0:
            ledger = await self.wallet_service.credit(
                user_id=user_id,
                amount=updated["prize_amount"],
                kind="win",
                reason=f"Ticket win {kind}: +{updated['prize_amount']} FC",
                idempotency_key=f"ticket-win:{ticket_id}",
                ticket_ref=ticket_id
            )
            balance_after = ledger.balance_after
            await collection.update_one(
                {"id": ticket_id, "claimed_at": None},
                {"$set": {"claimed_at": now}}
            )
            logger.info(f"Ticket {ticket_id} won {updated['prize_amount']} for user {user_id}")

        return RevealResult(
            ticket_id=ticket_id,
            is_winner=bool(updated.get("is_winner")),
            prize_amount=updated.get("prize_amount", 0.0) if updated.get("is_winner") else 0.0,
            balance_after=balance_after
        )

    async def get_user_tickets(self, user_id: str, kind: str = "electronic", limit: int = 100) -> list:
        cursor = self._collection(kind).find(
            {"user_id": user_id},
            {"_id": 0}
        ).sort("created_at", -1).limit(limit)
        return await cursor.to_list(length=limit)
