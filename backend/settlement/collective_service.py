"""
Collective (AI) Ticket Service

Plays on AI-proposed football tickets and their settlement.

Settlement rules:
- won: every active play is paid its potential_win
- lost: every active play is lost; if at least 70% of the plays kept the
  proposal unchanged, those identical plays are refunded their stake

Settlement is re-runnable. The first call claims the outcome on the ticket
(pending_result); a retry after a partial failure resumes with the same outcome.
Each play is moved to its terminal status before it is credited, and every
credit carries a per-play ledger key, so no play is ever paid twice.

A play whose stake was debited after the resolver claimed the ticket is voided
and its stake returned (ledger key ai-play-void:<play_id>).
"""

import logging
import math
import random
import uuid
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from utils.environment import allow_sandbox_tools

from .config import (
    COLLECTIVE_REFUND_THRESHOLD_PCT,
    MIN_STAKE_AMOUNT,
    PLAYABLE_AI_TICKET_STATUSES,
    SIMULATED_WIN_PROBABILITY,
    TERMINAL_AI_TICKET_STATUSES,
)
from .errors import AlreadyPlayed, SettlementConflict, TicketClosed, TicketNotFound
from .models import AITicketStats, PlayResult, Prediction, SettlementSummary
from .wallet_service import WalletService

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _normalize_selections(selections) -> List[Dict[str, Any]]:
    return [
        (s if isinstance(s, Prediction) else Prediction(**s)).model_dump()
        for s in selections
    ]


def is_identical(selections: List[Dict[str, Any]], proposal: List[Dict[str, Any]]) -> bool:
    """A play is identical when its selections exactly match the proposal."""
    return _normalize_selections(selections) == _normalize_selections(proposal)


def identical_percentage(identical_plays: int, total_plays: int) -> float:
    if total_plays <= 0:
        return 0.0
    return round(identical_plays / total_plays * 100, 2)


class CollectiveService:
    """Service for collective AI tickets: proposal, plays and settlement."""

    def __init__(self, db, wallet_service: Optional[WalletService] = None):
        self.db = db
        self.wallet_service = wallet_service or WalletService(db)

    async def get_ticket(self, ticket_id: str) -> Dict[str, Any]:
        ticket = await self.db.ai_football_tickets.find_one({"id": ticket_id}, {"_id": 0})
        if not ticket:
            raise TicketNotFound(ticket_id=ticket_id)
        return ticket

    # ==================== PROPOSAL ====================

    async def propose_ticket(
        self,
        name: str,
        description: Optional[str],
        predictions: list,
        total_odds: Optional[float] = None,
        win_multiplier: Optional[float] = None
    ) -> Dict[str, Any]:
        """
        Seed a collective ticket from the prediction source output.

        total_odds defaults to the product of the prediction odds and
        win_multiplier defaults to total_odds.
        """
        normalized = _normalize_selections(predictions)
        if not normalized:
            raise ValueError("A ticket needs at least one prediction")

        if total_odds is None:
            total_odds = round(math.prod(p["odds"] for p in normalized), 2)
        if win_multiplier is None:
            win_multiplier = total_odds

        now = _now()
        ticket = {
            "id": str(uuid.uuid4()),
            "ticket_name": name,
            "ticket_description": description,
            "predictions": normalized,
            "is_combo": len(normalized) > 1,
            "total_odds": total_odds,
            "win_multiplier": win_multiplier,
            "status": "proposed",
            "total_players": 0,
            "total_stake": 0.0,
            "pending_result": None,
            "result": None,
            "created_at": now,
            "updated_at": now
        }
        await self.db.ai_football_tickets.insert_one(dict(ticket))

        logger.info(f"Proposed AI ticket {ticket['id']} '{name}' odds={total_odds}")
        return ticket

    # ==================== PLAY ====================

    async def play(
        self,
        user_id: str,
        ticket_id: str,
        stake_amount: float,
        custom_selections: Optional[list] = None
    ) -> PlayResult:
        """
        Stake on a collective ticket.

        The play is claimed (unique per ticket/user) before any money moves;
        if the debit is rejected the claim is dropped and nothing changes.
        The ticket is re-checked with a conditional write after the debit; a
        ticket closed in between voids the play and returns the stake.

        Raises:
            TicketNotFound, TicketClosed, AlreadyPlayed, InsufficientFunds
        """
        stake_amount = round(float(stake_amount), 2)
        if stake_amount < MIN_STAKE_AMOUNT:
            raise ValueError(f"Minimum stake is {MIN_STAKE_AMOUNT} FC")

        ticket = await self.get_ticket(ticket_id)
        if ticket["status"] not in PLAYABLE_AI_TICKET_STATUSES or ticket.get("pending_result"):
            raise TicketClosed(ticket_id=ticket_id, status=ticket["status"])

        proposal = ticket["predictions"]
        if custom_selections is None:
            selections = proposal
            identical = True
        else:
            selections = _normalize_selections(custom_selections)
            identical = is_identical(selections, proposal)

        multiplier = ticket.get("win_multiplier") or ticket["total_odds"]
        potential_win = round(stake_amount * multiplier, 2)

        now = _now()
        play = {
            "id": str(uuid.uuid4()),
            "ai_ticket_id": ticket_id,
            "user_id": user_id,
            "stake_amount": stake_amount,
            "predicted_selections": selections,
            "is_identical_to_proposal": identical,
            "potential_win": potential_win,
            "actual_win": 0.0,
            "status": "pending",
            "created_at": now,
            "updated_at": now
        }

        try:
            await self.db.ai_ticket_plays.insert_one(dict(play))
        except DuplicateKeyError:
            raise AlreadyPlayed(ticket_id=ticket_id)

        try:
            ledger = await self.wallet_service.debit(
                user_id=user_id,
                amount=stake_amount,
                reason=f"AI ticket play: {ticket['ticket_name']}",
                idempotency_key=f"ai-play:{play['id']}",
                ticket_ref=play["id"]
            )
        except Exception:
            await self.db.ai_ticket_plays.delete_one({"id": play["id"], "status": "pending"})
            raise

        await self.db.ai_ticket_plays.update_one(
            {"id": play["id"], "status": "pending"},
            {"$set": {"status": "active", "updated_at": _now()}}
        )

        # The ticket may have been claimed by the resolver since it was read
        opened = await self.db.ai_football_tickets.update_one(
            {
                "id": ticket_id,
                "status": {"$in": list(PLAYABLE_AI_TICKET_STATUSES)},
                "pending_result": None
            },
            {
                "$inc": {"total_players": 1, "total_stake": stake_amount},
                "$set": {"status": "active", "updated_at": _now()}
            }
        )
        if not opened.matched_count:
            await self._void_late_play(play, ticket)

        logger.info(
            f"User {user_id} played AI ticket {ticket_id}: stake={stake_amount} "
            f"identical={identical} potential_win={potential_win}"
        )
        return PlayResult(
            play_id=play["id"],
            ai_ticket_id=ticket_id,
            stake=stake_amount,
            potential_win=potential_win,
            is_identical=identical,
            balance_after=ledger.balance_after
        )

    async def _void_late_play(self, play: Dict[str, Any], ticket: Dict[str, Any]) -> None:
        """
        The ticket closed between the open check and the stake debit.

        If the resolver has not taken the play, it is voided and the stake
        returned, then TicketClosed is raised. If the resolver already settled
        it, the play stands and only the ticket totals are updated.
        """
        voided = await self.db.ai_ticket_plays.update_one(
            {"id": play["id"], "status": "active"},
            {"$set": {"status": "void", "updated_at": _now()}}
        )
        if not voided.matched_count:
            await self.db.ai_football_tickets.update_one(
                {"id": ticket["id"]},
                {"$inc": {"total_players": 1, "total_stake": play["stake_amount"]}}
            )
            return

        await self.wallet_service.credit(
            user_id=play["user_id"],
            amount=play["stake_amount"],
            kind="refund",
            reason=f"AI ticket closed before play: {ticket['ticket_name']}",
            idempotency_key=f"ai-play-void:{play['id']}",
            ticket_ref=play["id"]
        )
        logger.warning(f"Voided late play {play['id']} on closed AI ticket {ticket['id']}")
        raise TicketClosed("This ticket closed before the play was placed", ticket_id=ticket["id"])

    async def list_open_tickets(self, limit: int = 50) -> list:
        return await self.db.ai_football_tickets.find(
            {"status": {"$in": list(PLAYABLE_AI_TICKET_STATUSES)}},
            {"_id": 0}
        ).sort("created_at", -1).limit(limit).to_list(length=limit)

    async def get_user_plays(self, user_id: str, limit: int = 100) -> list:
        cursor = self.db.ai_ticket_plays.find(
            {"user_id": user_id, "status": {"$ne": "pending"}},
            {"_id": 0}
        ).sort("created_at", -1).limit(limit)
        return await cursor.to_list(length=limit)

    async def get_ticket_stats(self, ticket_id: str) -> AITicketStats:
        ticket = await self.get_ticket(ticket_id)
        plays = await self._settled_plays(ticket_id)
        identical_count = sum(
            1 for p in plays if is_identical(p["predicted_selections"], ticket["predictions"])
        )
        return AITicketStats(
            ticket_id=ticket_id,
            status=ticket["status"],
            total_players=ticket.get("total_players", 0),
            total_stake=ticket.get("total_stake", 0.0),
            identical_plays=identical_count,
            identical_percentage=identical_percentage(identical_count, len(plays))
        )

    async def _settled_plays(self, ticket_id: str) -> list:
        """Plays whose stake was taken (pending claims and voided late plays excluded)."""
        return await self.db.ai_ticket_plays.find(
            {"ai_ticket_id": ticket_id, "status": {"$nin": ["pending", "void"]}},
            {"_id": 0}
        ).to_list(length=None)

    # ==================== SETTLEMENT ====================

    async def set_result(self, ticket_id: str, outcome: str) -> SettlementSummary:
        """
        Settle a collective ticket once its outcome is known.

        Re-invoking on a terminal ticket is a successful no-op; re-invoking after
        a partial failure finishes the remaining plays.

        Raises:
            ValueError: outcome not in (won, lost)
            TicketNotFound
            SettlementConflict: a different outcome was already claimed
        """
        if outcome not in ("won", "lost"):
            raise ValueError(f"Invalid result: {outcome}")

        ticket = await self.get_ticket(ticket_id)

        if ticket["status"] in TERMINAL_AI_TICKET_STATUSES:
            logger.info(f"AI ticket {ticket_id} already settled ({ticket['status']}), skipping")
            return self._stored_summary(ticket)

        claimed = await self.db.ai_football_tickets.find_one_and_update(
            {
                "id": ticket_id,
                "status": {"$in": list(PLAYABLE_AI_TICKET_STATUSES)},
                "pending_result": {"$in": [None, outcome]}
            },
            {"$set": {"pending_result": outcome, "updated_at": _now()}},
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER
        )

        if not claimed:
            current = await self.get_ticket(ticket_id)
            if current["status"] in TERMINAL_AI_TICKET_STATUSES:
                return self._stored_summary(current)
            raise SettlementConflict(
                ticket_id=ticket_id,
                pending_result=current.get("pending_result"),
                requested=outcome
            )

        if outcome == "won":
            summary = await self._distribute_wins(claimed)
        else:
            summary = await self._settle_loss(claimed)

        await self.db.ai_football_tickets.update_one(
            {"id": ticket_id},
            {
                "$set": {
                    "status": summary.status,
                    "result": outcome,
                    "refund_applied": summary.refund_applied,
                    "identical_percentage": summary.identical_percentage,
                    "winners_count": summary.winners_count,
                    "total_distributed": summary.total_distributed,
                    "refunded_count": summary.refunded_count,
                    "total_refunded": summary.total_refunded,
                    "total_plays": summary.total_plays,
                    "identical_plays": summary.identical_plays,
                    "settled_at": _now(),
                    "updated_at": _now()
                }
            }
        )

        logger.info(
            f"SETTLEMENT | ticket={ticket_id} | outcome={outcome} | status={summary.status} | "
            f"winners={summary.winners_count} | distributed={summary.total_distributed} | "
            f"identical_pct={summary.identical_percentage} | refunded={summary.refunded_count}"
        )
        return summary

    async def _distribute_wins(self, ticket: Dict[str, Any]) -> SettlementSummary:
        ticket_id = ticket["id"]
        plays = await self._settled_plays(ticket_id)

        winners_count = 0
        total_distributed = 0.0
        for play in plays:
            if play["status"] == "active":
                claimed = await self.db.ai_ticket_plays.update_one(
                    {"id": play["id"], "status": "active"},
                    {"$set": {"status": "won", "actual_win": play["potential_win"], "updated_at": _now()}}
                )
                if not claimed.matched_count:
                    continue  # voided late play
            elif play["status"] != "won":
                continue

            # Replayed for plays already marked won; the ledger key makes it a no-op
            await self.wallet_service.credit(
                user_id=play["user_id"],
                amount=play["potential_win"],
                kind="win",
                reason=f"AI ticket win: {ticket['ticket_name']}",
                idempotency_key=f"ai-play-win:{play['id']}",
                ticket_ref=play["id"]
            )
            winners_count += 1
            total_distributed += play["potential_win"]

        return SettlementSummary(
            ticket_id=ticket_id,
            outcome="won",
            status="won",
            winners_count=winners_count,
            total_distributed=round(total_distributed, 2),
            total_plays=winners_count
        )

    async def _settle_loss(self, ticket: Dict[str, Any]) -> SettlementSummary:
        ticket_id = ticket["id"]

        await self.db.ai_ticket_plays.update_many(
            {"ai_ticket_id": ticket_id, "status": "active"},
            {"$set": {"status": "lost", "actual_win": 0.0, "updated_at": _now()}}
        )

        # Plays turned active after the sweep are voided by their own play() call
        plays = [p for p in await self._settled_plays(ticket_id) if p["status"] in ("lost", "refunded")]
        identical = [p for p in plays if is_identical(p["predicted_selections"], ticket["predictions"])]
        pct = identical_percentage(len(identical), len(plays))
        refund_applied = pct >= COLLECTIVE_REFUND_THRESHOLD_PCT

        refunded_count = 0
        total_refunded = 0.0
        if refund_applied:
            for play in identical:
                if play["status"] == "lost":
                    await self.db.ai_ticket_plays.update_one(
                        {"id": play["id"], "status": "lost"},
                        {"$set": {"status": "refunded", "actual_win": play["stake_amount"], "updated_at": _now()}}
                    )

                await self.wallet_service.credit(
                    user_id=play["user_id"],
                    amount=play["stake_amount"],
                    kind="refund",
                    reason=f"70% rule refund: {ticket['ticket_name']}",
                    idempotency_key=f"ai-play-refund:{play['id']}",
                    ticket_ref=play["id"]
                )
                refunded_count += 1
                total_refunded += play["stake_amount"]

        return SettlementSummary(
            ticket_id=ticket_id,
            outcome="lost",
            status="refunded" if refund_applied else "lost",
            total_plays=len(plays),
            identical_plays=len(identical),
            identical_percentage=pct,
            refund_applied=refund_applied,
            refunded_count=refunded_count,
            total_refunded=round(total_refunded, 2)
        )

    def _stored_summary(self, ticket: Dict[str, Any]) -> SettlementSummary:
        return SettlementSummary(
            ticket_id=ticket["id"],
            outcome=ticket.get("result") or ("won" if ticket["status"] == "won" else "lost"),
            status=ticket["status"],
            already_settled=True,
            winners_count=ticket.get("winners_count", 0),
            total_distributed=ticket.get("total_distributed", 0.0),
            total_plays=ticket.get("total_plays", 0),
            identical_plays=ticket.get("identical_plays", 0),
            identical_percentage=ticket.get("identical_percentage") or 0.0,
            refund_applied=bool(ticket.get("refund_applied")),
            refunded_count=ticket.get("refunded_count", 0),
            total_refunded=ticket.get("total_refunded", 0.0)
        )

    async def simulate_result(self, ticket_id: str, rng: Optional[random.Random] = None) -> SettlementSummary:
        """Sandbox helper: settle with a random outcome (40% win)."""
        if not allow_sandbox_tools():
            raise PermissionError("Simulated results are disabled in production")
        rng = rng or random.Random()
        outcome = "won" if rng.random() < SIMULATED_WIN_PROBABILITY else "lost"
        logger.info(f"Simulating result for AI ticket {ticket_id}: {outcome}")
        return await self.set_result(ticket_id, outcome)
