"""
Settlement API Routes

Endpoints:
- GET /api/settlement/wallet - Wallet balance and totals
- GET /api/settlement/wallet/ledger - Transaction history
- GET /api/settlement/batches - Active ticket batches
- POST /api/settlement/tickets/purchase - Buy a batch ticket with the wallet
- POST /api/settlement/tickets/{ticket_id}/reveal - Scratch a ticket
- POST /api/settlement/tickets/physical/activate - Activate a physical code
- POST /api/settlement/ai-tickets/{ticket_id}/play - Stake on a collective ticket
- POST /api/settlement/payments/initiate - Start an MTN MoMo collection
- GET /api/settlement/payments/{attempt_id} - Poll and settle a collection
- /api/settlement/admin/* - Batch, physical ticket, AI ticket and payment operations
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from database import db
from utils.auth import get_current_user, get_admin_user
from settlement.batch_allocator import BatchAllocator
from settlement.collective_service import CollectiveService
from settlement.config import ERROR_HTTP_STATUS, MIN_PAYMENT_AMOUNT, MIN_STAKE_AMOUNT, CURRENCY
from settlement.errors import SettlementError
from settlement.momo_service import MoMoCollectionService
from settlement.payment_coordinator import PaymentCoordinator
from settlement.ticket_service import TicketService
from settlement.token_manager import MoMoTokenManager
from settlement.wallet_service import WalletService
from settlement.models import (
    AITicketStats,
    BatchCreateRequest,
    BatchStats,
    BulkGenerateRequest,
    PaymentAttemptResponse,
    PaymentInitiateRequest,
    PaymentSettlement,
    PhysicalActivateRequest,
    PlayRequest,
    PlayResult,
    ProposeTicketRequest,
    ReconciliationReport,
    RevealResult,
    SetResultRequest,
    SettlementSummary,
    TicketPurchaseRequest,
    TicketPurchaseResult,
    WalletResponse,
)

logger = logging.getLogger(__name__)

settlement_router = APIRouter(prefix="/settlement", tags=["Settlement"])

# One token cache per process; started/stopped by server.py
momo_token_manager = MoMoTokenManager()


def _http_error(e: SettlementError) -> HTTPException:
    status_code = ERROR_HTTP_STATUS.get(e.code, 400)
    if status_code >= 500:
        logger.warning(f"{e.code}: {e.message} {e.details}")
    return HTTPException(status_code=status_code, detail=e.to_dict())


def _payment_coordinator() -> PaymentCoordinator:
    momo_service = MoMoCollectionService(db, momo_token_manager)
    return PaymentCoordinator(db, momo_service)


# ==================== WALLET ENDPOINTS ====================

@settlement_router.get("/wallet", response_model=WalletResponse)
async def get_wallet(user: dict = Depends(get_current_user)):
    """Get current user's wallet (created on first access)."""
    return await WalletService(db).get_wallet_response(user["id"])


@settlement_router.get("/wallet/ledger")
async def get_ledger(
    limit: int = Query(50, ge=1, le=200),
    user: dict = Depends(get_current_user)
):
    """Get the user's purchase/win/refund/deposit history."""
    entries = await WalletService(db).get_ledger(user["id"], limit)
    return {
        "entries": entries,
        "count": len(entries)
    }


@settlement_router.get("/wallet/reconcile", response_model=ReconciliationReport)
async def reconcile_wallet(user: dict = Depends(get_current_user)):
    return await WalletService(db).reconcile(user["id"])


# ==================== TICKET ENDPOINTS ====================

@settlement_router.get("/batches")
async def list_batches(ticket_type: Optional[str] = Query(None)):
    batches = await BatchAllocator(db).list_active_batches(ticket_type)
    return {"batches": batches, "count": len(batches)}


@settlement_router.get("/batches/{batch_id}/stats", response_model=BatchStats)
async def get_batch_stats(batch_id: str):
    try:
        return await BatchAllocator(db).get_batch_stats(batch_id)
    except SettlementError as e:
        raise _http_error(e)


@settlement_router.post("/tickets/purchase", response_model=TicketPurchaseResult)
async def purchase_ticket(
    body: TicketPurchaseRequest,
    user: dict = Depends(get_current_user)
):
    """
    Buy one ticket from a batch, paid from the wallet.

    Fails with 402 when the balance is too low and 409 when the batch is
    sold out; in both cases nothing is debited.
    """
    try:
        return await TicketService(db).purchase_with_wallet(user["id"], body.batch_id)
    except SettlementError as e:
        raise _http_error(e)


@settlement_router.get("/tickets")
async def get_my_tickets(
    kind: str = Query("electronic", pattern="^(electronic|physical)$"),
    user: dict = Depends(get_current_user)
):
    tickets = await TicketService(db).get_user_tickets(user["id"], kind)
    return {"tickets": tickets, "count": len(tickets)}


@settlement_router.post("/tickets/physical/activate")
async def activate_physical_ticket(
    body: PhysicalActivateRequest,
    user: dict = Depends(get_current_user)
):
    try:
        ticket = await TicketService(db).activate_physical(user["id"], body.ticket_code)
    except SettlementError as e:
        raise _http_error(e)
    return {"ticket": ticket, "message": "Ticket activated"}


@settlement_router.post("/tickets/{ticket_id}/reveal", response_model=RevealResult)
async def reveal_ticket(
    ticket_id: str,
    kind: str = Query("electronic", pattern="^(electronic|physical)$"),
    user: dict = Depends(get_current_user)
):
    """Scratch a ticket. A winning ticket credits its prize to the wallet once."""
    try:
        return await TicketService(db).reveal(user["id"], ticket_id, kind)
    except SettlementError as e:
        raise _http_error(e)


# ==================== AI TICKET ENDPOINTS ====================

@settlement_router.get("/ai-tickets")
async def list_ai_tickets():
    tickets = await CollectiveService(db).list_open_tickets()
    return {
        "tickets": tickets,
        "count": len(tickets),
        "min_stake": MIN_STAKE_AMOUNT
    }


@settlement_router.get("/ai-tickets/plays")
async def get_my_plays(user: dict = Depends(get_current_user)):
    plays = await CollectiveService(db).get_user_plays(user["id"])
    return {"plays": plays, "count": len(plays)}


@settlement_router.get("/ai-tickets/{ticket_id}/stats", response_model=AITicketStats)
async def get_ai_ticket_stats(ticket_id: str):
    try:
        return await CollectiveService(db).get_ticket_stats(ticket_id)
    except SettlementError as e:
        raise _http_error(e)


@settlement_router.post("/ai-tickets/{ticket_id}/play", response_model=PlayResult)
async def play_ai_ticket(
    ticket_id: str,
    body: PlayRequest,
    user: dict = Depends(get_current_user)
):
    """
    Stake on a collective ticket, either as proposed or with custom selections.

    Only plays identical to the proposal are covered by the 70% refund rule.
    """
    try:
        return await CollectiveService(db).play(
            user_id=user["id"],
            ticket_id=ticket_id,
            stake_amount=body.stake_amount,
            custom_selections=body.custom_selections
        )
    except SettlementError as e:
        raise _http_error(e)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


# ==================== PAYMENT ENDPOINTS ====================

@settlement_router.post("/payments/initiate", response_model=PaymentAttemptResponse)
async def initiate_payment(
    body: PaymentInitiateRequest,
    user: dict = Depends(get_current_user)
):
    """
    Start an MTN MoMo collection. The user approves it on their phone;
    the client then polls GET /payments/{attempt_id}.
    """
    metadata = {"batch_id": body.batch_id} if body.batch_id else {}
    momo_service = MoMoCollectionService(db, momo_token_manager)
    try:
        return await momo_service.initiate(
            user_id=user["id"],
            amount=body.amount,
            phone=body.phone,
            purpose=body.purpose,
            metadata=metadata
        )
    except SettlementError as e:
        raise _http_error(e)


@settlement_router.get("/payments/{attempt_id}", response_model=PaymentSettlement)
async def get_payment_status(
    attempt_id: str,
    wait: bool = Query(False, description="Keep polling until terminal or timeout"),
    user: dict = Depends(get_current_user)
):
    """Poll the provider once (or until the poll budget runs out) and settle."""
    coordinator = _payment_coordinator()
    try:
        if wait:
            return await coordinator.await_completion(attempt_id, user["id"])
        return await coordinator.settle(attempt_id, user["id"])
    except SettlementError as e:
        raise _http_error(e)


@settlement_router.get("/payments-config")
async def get_payment_config():
    return {
        "currency": CURRENCY,
        "min_amount": MIN_PAYMENT_AMOUNT,
        "token": momo_token_manager.status().model_dump()
    }


# ==================== ADMIN ENDPOINTS ====================

@settlement_router.post("/admin/batches")
async def create_batch(body: BatchCreateRequest, admin: dict = Depends(get_admin_user)):
    try:
        batch = await BatchAllocator(db).create_batch(
            name=body.name,
            price=body.price,
            total_tickets=body.total_tickets,
            winning_tickets=body.winning_tickets,
            losing_tickets=body.losing_tickets,
            prize_amount=body.prize_amount,
            ticket_type=body.ticket_type
        )
    except SettlementError as e:
        raise _http_error(e)
    logger.info(f"Admin {admin.get('email')} created batch {batch['id']}")
    return batch


@settlement_router.post("/admin/batches/{batch_id}/deactivate")
async def deactivate_batch(batch_id: str, admin: dict = Depends(get_admin_user)):
    try:
        return await BatchAllocator(db).deactivate_batch(batch_id)
    except SettlementError as e:
        raise _http_error(e)


@settlement_router.post("/admin/batches/{batch_id}/activate")
async def activate_batch(batch_id: str, admin: dict = Depends(get_admin_user)):
    try:
        return await BatchAllocator(db).activate_batch(batch_id)
    except SettlementError as e:
        raise _http_error(e)


@settlement_router.post("/admin/physical/generate")
async def generate_physical_tickets(body: BulkGenerateRequest, admin: dict = Depends(get_admin_user)):
    try:
        return await BatchAllocator(db).generate_physical_tickets(
            count=body.count,
            winning_count=body.winning_count,
            prize_amount=body.prize_amount
        )
    except SettlementError as e:
        raise _http_error(e)


@settlement_router.post("/admin/ai-tickets")
async def propose_ai_ticket(body: ProposeTicketRequest, admin: dict = Depends(get_admin_user)):
    """Publish a collective ticket from the prediction source output."""
    return await CollectiveService(db).propose_ticket(
        name=body.name,
        description=body.description,
        predictions=body.predictions,
        total_odds=body.total_odds,
        win_multiplier=body.win_multiplier
    )


@settlement_router.post("/admin/ai-tickets/{ticket_id}/result", response_model=SettlementSummary)
async def set_ai_ticket_result(
    ticket_id: str,
    body: SetResultRequest,
    admin: dict = Depends(get_admin_user)
):
    """
    Settle a collective ticket. Safe to call again: a settled ticket returns
    its stored summary and a partially settled one is finished.
    """
    try:
        return await CollectiveService(db).set_result(ticket_id, body.result)
    except SettlementError as e:
        raise _http_error(e)


@settlement_router.post("/admin/ai-tickets/{ticket_id}/simulate", response_model=SettlementSummary)
async def simulate_ai_ticket_result(ticket_id: str, admin: dict = Depends(get_admin_user)):
    try:
        return await CollectiveService(db).simulate_result(ticket_id)
    except PermissionError as e:
        raise HTTPException(status_code=403, detail=str(e))
    except SettlementError as e:
        raise _http_error(e)


@settlement_router.post("/admin/payments/reconcile")
async def reconcile_payments(
    older_than_seconds: int = Query(0, ge=0),
    admin: dict = Depends(get_admin_user)
):
    return await _payment_coordinator().reconcile_pending(older_than_seconds)


@settlement_router.get("/admin/wallet/{user_id}/reconcile", response_model=ReconciliationReport)
async def admin_reconcile_wallet(user_id: str, admin: dict = Depends(get_admin_user)):
    return await WalletService(db).reconcile(user_id)
