"""
Batch Allocator

Assigns a win/lose outcome to each ticket sold from a finite batch.

A batch is created with fixed winner/loser counts. Each sale draws a winner
with probability winners_remaining / (winners_remaining + losers_remaining)
(sampling without replacement), so a batch of N winners among M tickets yields
exactly N winners after M sales regardless of order.

CRITICAL: The draw is committed with a compare-and-swap on the batch document
(filter on the exact counters that were read). Concurrent sales that read the
same counters cannot both commit; the loser re-reads and draws again.
"""

import logging
import random
import uuid
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List

from pymongo import ReturnDocument

from .config import (
    ALLOCATION_MAX_RETRIES,
    BULK_GENERATION_LIMIT,
    PHYSICAL_CODE_PREFIX,
    TICKET_TYPES,
    WIN_PRIZE_MULTIPLIER,
)
from .errors import AllocationContention, BatchExhausted, BatchNotFound, InvalidBatchConfig
from .models import BatchStats, Outcome

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def assign_winning_positions(total: int, winning: int, rng: Optional[random.Random] = None) -> List[bool]:
    """
    Static allocation: exactly `winning` True flags placed uniformly at random
    among `total` positions.
    """
    if winning < 0 or winning > total:
        raise InvalidBatchConfig(f"Cannot place {winning} winners among {total} tickets")
    rng = rng or random.SystemRandom()
    positions = set(rng.sample(range(total), winning))
    return [i in positions for i in range(total)]


class BatchAllocator:
    """Owns ticket batches and draws outcomes from them."""

    def __init__(self, db, rng: Optional[random.Random] = None, max_retries: int = ALLOCATION_MAX_RETRIES):
        self.db = db
        self.rng = rng or random.SystemRandom()
        self.max_retries = max_retries

    # ==================== BATCH LIFECYCLE ====================

    async def create_batch(
        self,
        name: str,
        price: float,
        total_tickets: int,
        winning_tickets: int,
        losing_tickets: Optional[int] = None,
        prize_amount: Optional[float] = None,
        ticket_type: str = "electronic"
    ) -> Dict[str, Any]:
        """
        Create a batch. losing_tickets defaults to total - winning; the two must
        add up to total_tickets so every ticket has a predetermined outcome.
        """
        if losing_tickets is None:
            losing_tickets = total_tickets - winning_tickets

        if ticket_type not in TICKET_TYPES:
            raise InvalidBatchConfig(f"Unknown ticket type: {ticket_type}")
        if price <= 0 or total_tickets <= 0:
            raise InvalidBatchConfig("Price and total_tickets must be positive")
        if winning_tickets < 0 or losing_tickets < 0:
            raise InvalidBatchConfig("Winner/loser counts cannot be negative")
        if winning_tickets + losing_tickets != total_tickets:
            raise InvalidBatchConfig(
                f"winning ({winning_tickets}) + losing ({losing_tickets}) "
                f"must equal total ({total_tickets})"
            )

        if prize_amount is None:
            prize_amount = price * WIN_PRIZE_MULTIPLIER

        now = _now()
        batch = {
            "id": str(uuid.uuid4()),
            "name": name,
            "ticket_type": ticket_type,
            "price": round(float(price), 2),
            "prize_amount": round(float(prize_amount), 2),
            "total_tickets": total_tickets,
            "winning_tickets": winning_tickets,
            "losing_tickets": losing_tickets,
            "winners_remaining": winning_tickets,
            "losers_remaining": losing_tickets,
            "sold_tickets": 0,
            "is_active": True,
            "deactivated_reason": None,
            "created_at": now,
            "updated_at": now
        }
        await self.db.ticket_batches.insert_one(dict(batch))

        logger.info(
            f"Created batch {batch['id']} '{name}': total={total_tickets} "
            f"winners={winning_tickets} losers={losing_tickets} price={price}"
        )
        return batch

    async def get_batch(self, batch_id: str) -> Dict[str, Any]:
        batch = await self.db.ticket_batches.find_one({"id": batch_id}, {"_id": 0})
        if not batch:
            raise BatchNotFound(batch_id=batch_id)
        return batch

    async def list_active_batches(self, ticket_type: Optional[str] = None) -> list:
        query = {"is_active": True}
        if ticket_type:
            query["ticket_type"] = ticket_type
        return await self.db.ticket_batches.find(query, {"_id": 0}).sort("created_at", -1).to_list(length=100)

    async def deactivate_batch(self, batch_id: str) -> Dict[str, Any]:
        """Manual operator deactivation."""
        await self.get_batch(batch_id)
        await self.db.ticket_batches.update_one(
            {"id": batch_id},
            {"$set": {"is_active": False, "deactivated_reason": "manual", "updated_at": _now()}}
        )
        logger.info(f"Batch {batch_id} deactivated by operator")
        return await self.get_batch(batch_id)

    async def activate_batch(self, batch_id: str) -> Dict[str, Any]:
        batch = await self.get_batch(batch_id)
        result = await self.db.ticket_batches.update_one(
            {"id": batch_id, "sold_tickets": {"$lt": batch["total_tickets"]}},
            {"$set": {"is_active": True, "deactivated_reason": None, "updated_at": _now()}}
        )
        if result.matched_count == 0:
            raise BatchExhausted(batch_id=batch_id)
        return await self.get_batch(batch_id)

    async def get_batch_stats(self, batch_id: str) -> BatchStats:
        batch = await self.get_batch(batch_id)
        return BatchStats(
            batch_id=batch_id,
            total_tickets=batch["total_tickets"],
            sold_tickets=batch["sold_tickets"],
            remaining_tickets=batch["total_tickets"] - batch["sold_tickets"],
            winners_issued=batch["winning_tickets"] - batch["winners_remaining"],
            losers_issued=batch["losing_tickets"] - batch["losers_remaining"],
            winners_remaining=batch["winners_remaining"],
            losers_remaining=batch["losers_remaining"],
            is_active=batch["is_active"]
        )

    # ==================== ALLOCATION ====================

    async def allocate(self, batch_id: str) -> Outcome:
        """
        Draw one outcome from the batch and commit it atomically.

        Raises:
            BatchNotFound: unknown batch
            BatchExhausted: batch inactive or sold out (no state change)
            AllocationContention: CAS lost max_retries times in a row
        """
        for attempt in range(self.max_retries):
            batch = await self.get_batch(batch_id)

            sold = batch["sold_tickets"]
            winners_left = batch["winners_remaining"]
            losers_left = batch["losers_remaining"]
            remaining = winners_left + losers_left

            if not batch.get("is_active") or sold >= batch["total_tickets"] or remaining <= 0:
                raise BatchExhausted(batch_id=batch_id, sold_tickets=sold)

            is_winner = self.rng.randrange(remaining) < winners_left
            counter = "winners_remaining" if is_winner else "losers_remaining"

            now = _now()
            update = {
                "$inc": {"sold_tickets": 1, counter: -1},
                "$set": {"updated_at": now}
            }
            if sold + 1 >= batch["total_tickets"]:
                update["$set"]["is_active"] = False
                update["$set"]["deactivated_reason"] = "exhausted"

            updated = await self.db.ticket_batches.find_one_and_update(
                {
                    "id": batch_id,
                    "is_active": True,
                    "sold_tickets": sold,
                    "winners_remaining": winners_left,
                    "losers_remaining": losers_left
                },
                update,
                return_document=ReturnDocument.AFTER
            )

            if updated:
                if not updated["is_active"]:
                    logger.info(f"Batch {batch_id} exhausted after {updated['sold_tickets']} sales")
                return Outcome(
                    batch_id=batch_id,
                    is_winner=is_winner,
                    prize_amount=batch["prize_amount"] if is_winner else 0.0,
                    price=batch["price"],
                    ticket_type=batch.get("ticket_type", "electronic")
                )

            logger.debug(f"Allocation CAS conflict on batch {batch_id} (attempt {attempt + 1})")

        logger.warning(f"Allocation gave up on batch {batch_id} after {self.max_retries} conflicts")
        raise AllocationContention(batch_id=batch_id, retries=self.max_retries)

    async def release(self, outcome: Outcome) -> None:
        """
        Undo one allocation (the paired debit failed). Restores the counters
        exactly; a batch deactivated by exhaustion becomes active again.
        """
        counter = "winners_remaining" if outcome.is_winner else "losers_remaining"
        restore = {"sold_tickets": -1, counter: 1}

        # Counters and reactivation go in one write
        reopened = await self.db.ticket_batches.update_one(
            {"id": outcome.batch_id, "sold_tickets": {"$gt": 0}, "deactivated_reason": "exhausted"},
            {"$inc": restore, "$set": {"is_active": True, "deactivated_reason": None, "updated_at": _now()}}
        )
        if not reopened.matched_count:
            await self.db.ticket_batches.update_one(
                {"id": outcome.batch_id, "sold_tickets": {"$gt": 0}, "deactivated_reason": {"$ne": "exhausted"}},
                {"$inc": restore, "$set": {"updated_at": _now()}}
            )
        logger.info(f"Released allocation on batch {outcome.batch_id} (winner={outcome.is_winner})")

    # ==================== PHYSICAL BULK GENERATION ====================

    async def generate_physical_tickets(
        self,
        count: int,
        winning_count: int,
        prize_amount: float
    ) -> Dict[str, Any]:
        """
        Operator tool: create `count` physical ticket codes with exactly
        `winning_count` winners placed at random. Runs once before any sale.
        """
        if count <= 0 or count > BULK_GENERATION_LIMIT:
            raise InvalidBatchConfig(f"Invalid count (1-{BULK_GENERATION_LIMIT})")

        flags = assign_winning_positions(count, winning_count, self.rng)
        now = _now()
        tickets = [
            {
                "id": str(uuid.uuid4()),
                "ticket_code": f"{PHYSICAL_CODE_PREFIX}-{uuid.uuid4().hex[:10].upper()}",
                "ticket_type": "physical",
                "user_id": None,
                "is_winner": is_winner,
                "prize_amount": round(float(prize_amount), 2) if is_winner else 0.0,
                "status": "available",
                "activated_at": None,
                "used_at": None,
                "claimed_at": None,
                "created_at": now
            }
            for is_winner in flags
        ]

        await self.db.physical_tickets.insert_many(tickets)

        logger.info(f"Generated {count} physical tickets ({winning_count} winners)")
        return {
            "count": count,
            "winners": winning_count,
            "codes": [t["ticket_code"] for t in tickets]
        }
