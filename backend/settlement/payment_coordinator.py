"""
Payment Coordinator

Caller side of a mobile-money collection: polls the attempt and, once it is
completed, applies its downstream effect exactly once.

- wallet_recharge: deposit credited to the wallet (ledger key payment:<attempt_id>)
- ticket_purchase: one ticket issued for the attempt; if the batch sold out in
  the meantime (or the payment is below the price) the paid amount goes to
  the wallet instead. The choice is recorded once in `fulfillment`.

A failed attempt moves no money. Running out of polling budget is not a
failure: the attempt stays pending and is picked up by reconcile_pending().
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional, Dict, Any

from .config import POLL_SETTINGS
from .errors import BatchExhausted, BatchNotFound, InsufficientFunds, SettlementError
from .models import PaymentSettlement
from .momo_service import MoMoCollectionService
from .ticket_service import TicketService
from .wallet_service import WalletService

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class PaymentCoordinator:
    """Turns completed payment attempts into wallet credits or tickets."""

    def __init__(
        self,
        db,
        momo_service: MoMoCollectionService,
        wallet_service: Optional[WalletService] = None,
        ticket_service: Optional[TicketService] = None
    ):
        self.db = db
        self.momo_service = momo_service
        self.wallet_service = wallet_service or WalletService(db)
        self.ticket_service = ticket_service or TicketService(db, wallet_service=self.wallet_service)

    async def settle(self, attempt_id: str, user_id: Optional[str] = None) -> PaymentSettlement:
        """Poll once and apply the effect of a completed attempt."""
        status = await self.momo_service.poll(attempt_id, user_id)
        attempt = await self.momo_service.get_attempt(attempt_id)

        if status.status == "pending":
            return PaymentSettlement(
                attempt_id=attempt_id,
                status="pending",
                purpose=attempt["purpose"],
                message="Waiting for payment approval"
            )

        if status.status == "failed":
            return PaymentSettlement(
                attempt_id=attempt_id,
                status="failed",
                purpose=attempt["purpose"],
                reason=status.reason,
                message=f"Payment failed: {status.reason}"
            )

        return await self._apply(attempt)

    async def _apply(self, attempt: Dict[str, Any]) -> PaymentSettlement:
        attempt_id = attempt["id"]

        if attempt["purpose"] == "wallet_recharge":
            ledger = await self.wallet_service.credit(
                user_id=attempt["user_id"],
                amount=attempt["amount"],
                kind="deposit",
                reason=f"Wallet recharge via MTN MoMo ({attempt['provider_reference'][:8]})",
                idempotency_key=f"payment:{attempt_id}"
            )
            await self._mark_credited(attempt_id)
            return PaymentSettlement(
                attempt_id=attempt_id,
                status="completed",
                purpose="wallet_recharge",
                balance_after=ledger.balance_after,
                message=f"Wallet recharged with {attempt['amount']} FC"
            )

        # A payment is either a ticket or a wallet credit; the first settle to
        # claim `fulfillment` decides and every later settle follows it
        if attempt.get("fulfillment") == "wallet":
            return await self._refund_to_wallet(attempt)

        try:
            purchase = await self.ticket_service.purchase_with_payment(attempt)
        except (BatchExhausted, BatchNotFound, InsufficientFunds) as e:
            logger.warning(f"Ticket unavailable for paid attempt {attempt_id} ({e.code}), crediting wallet")
            if not await self._claim_fulfillment(attempt_id, "wallet"):
                current = await self.momo_service.get_attempt(attempt_id)
                return self._ticket_settlement(attempt_id, current["ticket_id"])
            return await self._refund_to_wallet(attempt)

        if not await self._claim_fulfillment(attempt_id, "ticket", ticket_id=purchase.ticket_id):
            # Another settle already refunded this payment
            await self.ticket_service.void_paid_ticket(attempt_id)
            return await self._refund_to_wallet(attempt)

        await self._mark_credited(attempt_id, ticket_id=purchase.ticket_id)
        return self._ticket_settlement(attempt_id, purchase.ticket_id)

    def _ticket_settlement(self, attempt_id: str, ticket_id: str) -> PaymentSettlement:
        return PaymentSettlement(
            attempt_id=attempt_id,
            status="completed",
            purpose="ticket_purchase",
            ticket_id=ticket_id,
            message="Ticket purchased"
        )

    async def _refund_to_wallet(self, attempt: Dict[str, Any]) -> PaymentSettlement:
        ledger = await self.wallet_service.credit(
            user_id=attempt["user_id"],
            amount=attempt["amount"],
            kind="refund",
            reason="Ticket unavailable, payment credited to wallet",
            idempotency_key=f"payment-refund:{attempt['id']}"
        )
        await self._mark_credited(attempt["id"])
        return PaymentSettlement(
            attempt_id=attempt["id"],
            status="completed",
            purpose="ticket_purchase",
            balance_after=ledger.balance_after,
            message="Ticket unavailable, the amount was added to your wallet"
        )

    async def _claim_fulfillment(self, attempt_id: str, kind: str, ticket_id: Optional[str] = None) -> bool:
        update = {"fulfillment": kind}
        if ticket_id:
            update["ticket_id"] = ticket_id
        result = await self.db.payment_attempts.update_one(
            {"id": attempt_id, "fulfillment": {"$in": [None, kind]}},
            {"$set": update}
        )
        return result.matched_count > 0

    async def _mark_credited(self, attempt_id: str, ticket_id: Optional[str] = None) -> None:
        update = {"credited": True, "credited_at": _now()}
        if ticket_id:
            update["ticket_id"] = ticket_id
        await self.db.payment_attempts.update_one(
            {"id": attempt_id, "credited": False},
            {"$set": update}
        )

    async def await_completion(
        self,
        attempt_id: str,
        user_id: Optional[str] = None,
        interval: Optional[float] = None,
        max_attempts: Optional[int] = None,
        timeout: Optional[float] = None
    ) -> PaymentSettlement:
        """
        Poll until the attempt is terminal or the budget runs out.

        Budget exhaustion returns timed_out=True with status pending; the
        attempt is never inferred failed. Cancelling the caller stops polling.
        """
        interval = POLL_SETTINGS["interval_seconds"] if interval is None else interval
        max_attempts = max_attempts or POLL_SETTINGS["max_attempts"]
        timeout = POLL_SETTINGS["timeout_seconds"] if timeout is None else timeout

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        polls = 0
        result = None

        while polls < max_attempts:
            result = await self.settle(attempt_id, user_id)
            polls += 1
            if result.status != "pending":
                result.polls = polls
                return result
            if loop.time() + interval > deadline:
                break
            await asyncio.sleep(interval)

        logger.info(f"Payment {attempt_id} still pending after {polls} polls")
        return PaymentSettlement(
            attempt_id=attempt_id,
            status="pending",
            purpose=result.purpose if result else "",
            timed_out=True,
            polls=polls,
            message="Payment confirmation timed out, check again later"
        )

    # ==================== SCHEDULED RECONCILIATION ====================

    async def reconcile_pending(
        self,
        older_than_seconds: Optional[int] = None,
        limit: Optional[int] = None
    ) -> Dict[str, int]:
        """
        Scheduler job: settle stale pending attempts and finish completed
        attempts whose effect was never applied.
        """
        summary = {"checked": 0, "completed": 0, "failed": 0, "pending": 0, "errors": 0}

        stale = await self.momo_service.list_stale_pending(older_than_seconds, limit)
        uncredited = await self.db.payment_attempts.find(
            {"status": "completed", "credited": False},
            {"_id": 0, "id": 1}
        ).to_list(length=limit or POLL_SETTINGS["reconcile_batch_size"])

        attempt_ids = [a["id"] for a in stale] + [a["id"] for a in uncredited]
        for attempt_id in attempt_ids:
            summary["checked"] += 1
            try:
                result = await self.settle(attempt_id)
            except SettlementError as e:
                summary["errors"] += 1
                logger.warning(f"Reconcile failed for attempt {attempt_id}: {e.code} {e.message}")
                continue
            summary[result.status] += 1

        if summary["checked"]:
            logger.info(f"PAYMENT_RECONCILE | {summary}")
        return summary
