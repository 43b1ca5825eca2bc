"""
Settlement Data Models

Pydantic models for settlement operations.
These define the structure of documents stored in MongoDB collections
and the results returned by the services.
"""

from pydantic import BaseModel, Field
from typing import Optional, List, Literal, Dict, Any


# ==================== BATCH MODELS ====================

class TicketBatch(BaseModel):
    """Finite pool of tickets with fixed winner/loser counts"""
    id: str
    name: str
    ticket_type: Literal["electronic", "premium"] = "electronic"
    price: float
    prize_amount: float
    total_tickets: int
    winning_tickets: int  # fixed at creation
    losing_tickets: int   # fixed at creation
    winners_remaining: int
    losers_remaining: int
    sold_tickets: int = 0
    is_active: bool = True
    deactivated_reason: Optional[Literal["manual", "exhausted"]] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class Outcome(BaseModel):
    """Result of one allocation from a batch"""
    batch_id: str
    is_winner: bool
    prize_amount: float = 0.0
    price: float
    ticket_type: str = "electronic"


class BatchStats(BaseModel):
    batch_id: str
    total_tickets: int
    sold_tickets: int
    remaining_tickets: int
    winners_issued: int
    losers_issued: int
    winners_remaining: int
    losers_remaining: int
    is_active: bool


# ==================== TICKET MODELS ====================

class Ticket(BaseModel):
    """Electronic or physical ticket"""
    id: str
    batch_id: Optional[str] = None
    user_id: Optional[str] = None
    ticket_code: Optional[str] = None
    ticket_type: str = "electronic"
    is_winner: bool = False
    prize_amount: float = 0.0
    status: Literal["available", "sold", "used", "expired"]
    payment_attempt_id: Optional[str] = None
    activated_at: Optional[str] = None
    used_at: Optional[str] = None
    claimed_at: Optional[str] = None
    created_at: Optional[str] = None


class TicketPurchaseResult(BaseModel):
    ticket_id: str
    batch_id: str
    price: float
    status: str = "sold"
    balance_after: Optional[float] = None
    duplicate: bool = False


class RevealResult(BaseModel):
    ticket_id: str
    is_winner: bool
    prize_amount: float
    balance_after: Optional[float] = None


# ==================== WALLET / LEDGER MODELS ====================

class Wallet(BaseModel):
    """User's wallet; created lazily on first access"""
    user_id: str
    balance: float = 0.0
    total_won: float = 0.0
    total_spent: float = 0.0
    total_deposited: float = 0.0
    applied_keys: List[str] = Field(default_factory=list)
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class WalletResponse(BaseModel):
    """Response model for wallet endpoint"""
    user_id: str
    balance: float
    total_won: float
    total_spent: float
    total_deposited: float


class LedgerEntry(BaseModel):
    """Immutable ledger entry"""
    id: str
    user_id: str
    type: Literal["purchase", "win", "refund", "deposit"]
    amount: float  # signed
    idempotency_key: str
    ticket_ref: Optional[str] = None
    description: Optional[str] = None
    balance_after: Optional[float] = None
    created_at: str


class LedgerResult(BaseModel):
    """Result of a debit or credit"""
    user_id: str
    transaction_id: Optional[str] = None
    type: str
    amount: float
    idempotency_key: str
    balance_after: float
    duplicate: bool = False


class ReconciliationReport(BaseModel):
    user_id: str
    balance: float
    ledger_sum: float
    difference: float
    transaction_count: int
    is_balanced: bool


# ==================== COLLECTIVE TICKET MODELS ====================

class Prediction(BaseModel):
    """One match prediction as returned by the prediction source"""
    match_name: str
    team_a: str
    team_b: str
    prediction: Literal["1", "X", "2"]
    prediction_label: str
    odds: float = Field(..., gt=1.0)


class AITicket(BaseModel):
    """Collective ticket proposed by the prediction source"""
    id: str
    ticket_name: str
    ticket_description: Optional[str] = None
    predictions: List[Prediction]
    total_odds: float
    win_multiplier: float
    status: Literal["proposed", "active", "won", "lost", "refunded"] = "proposed"
    total_players: int = 0
    total_stake: float = 0.0
    pending_result: Optional[Literal["won", "lost"]] = None
    result: Optional[Literal["won", "lost"]] = None
    refund_applied: Optional[bool] = None
    identical_percentage: Optional[float] = None
    created_at: Optional[str] = None
    settled_at: Optional[str] = None


class Play(BaseModel):
    """A user's stake on a collective ticket (one per ticket/user)"""
    id: str
    ai_ticket_id: str
    user_id: str
    stake_amount: float
    predicted_selections: List[Prediction]
    is_identical_to_proposal: bool
    potential_win: float
    actual_win: float = 0.0
    status: Literal["pending", "active", "won", "lost", "refunded", "void"]
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class PlayResult(BaseModel):
    play_id: str
    ai_ticket_id: str
    stake: float
    potential_win: float
    is_identical: bool
    balance_after: float


class SettlementSummary(BaseModel):
    """Outcome of settling a collective ticket"""
    ticket_id: str
    outcome: Literal["won", "lost"]
    status: str
    already_settled: bool = False
    winners_count: int = 0
    total_distributed: float = 0.0
    total_plays: int = 0
    identical_plays: int = 0
    identical_percentage: float = 0.0
    refund_applied: bool = False
    refunded_count: int = 0
    total_refunded: float = 0.0


class AITicketStats(BaseModel):
    ticket_id: str
    status: str
    total_players: int
    total_stake: float
    identical_plays: int
    identical_percentage: float


# ==================== PAYMENT MODELS ====================

class PaymentAttempt(BaseModel):
    """Mobile-money collection attempt"""
    id: str
    user_id: str
    amount: float
    currency: str
    phone: str
    purpose: Literal["wallet_recharge", "ticket_purchase"]
    external_id: str
    provider_reference: str
    status: Literal["pending", "completed", "failed"]
    failure_reason: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    ticket_id: Optional[str] = None
    credited: bool = False
    fulfillment: Optional[Literal["ticket", "wallet"]] = None  # ticket_purchase: what the payment bought
    created_at: str
    completed_at: Optional[str] = None
    last_polled_at: Optional[str] = None


class PaymentAttemptResponse(BaseModel):
    attempt_id: str
    provider_reference: str
    status: Literal["pending", "completed", "failed"]
    amount: float
    currency: str
    message: str


class PaymentStatusResponse(BaseModel):
    attempt_id: str
    status: Literal["pending", "completed", "failed"]
    reason: Optional[str] = None
    changed: bool = False  # this poll moved the attempt to a terminal state


class PaymentSettlement(BaseModel):
    """Caller-side result of settling a payment attempt"""
    attempt_id: str
    status: Literal["pending", "completed", "failed"]
    purpose: str
    reason: Optional[str] = None
    timed_out: bool = False
    polls: int = 0
    balance_after: Optional[float] = None
    ticket_id: Optional[str] = None
    message: str = ""


# ==================== TOKEN MODELS ====================

class TokenStatus(BaseModel):
    state: Literal["absent", "valid", "expiring"]
    expires_in: int = 0


# ==================== REQUEST MODELS ====================

class BatchCreateRequest(BaseModel):
    name: str
    ticket_type: Literal["electronic", "premium"] = "electronic"
    price: float = Field(..., gt=0)
    total_tickets: int = Field(..., gt=0)
    winning_tickets: int = Field(..., ge=0)
    losing_tickets: Optional[int] = Field(None, ge=0)
    prize_amount: Optional[float] = Field(None, ge=0)


class TicketPurchaseRequest(BaseModel):
    batch_id: str


class PhysicalActivateRequest(BaseModel):
    ticket_code: str = Field(..., min_length=6)


class BulkGenerateRequest(BaseModel):
    count: int = Field(..., ge=1, le=1000)
    winning_count: int = Field(..., ge=0)
    prize_amount: float = Field(..., ge=0)


class ProposeTicketRequest(BaseModel):
    name: str
    description: Optional[str] = None
    predictions: List[Prediction] = Field(..., min_length=1)
    total_odds: Optional[float] = None
    win_multiplier: Optional[float] = None


class PlayRequest(BaseModel):
    stake_amount: float = Field(..., gt=0)
    custom_selections: Optional[List[Prediction]] = None


class SetResultRequest(BaseModel):
    result: Literal["won", "lost"]


class PaymentInitiateRequest(BaseModel):
    amount: Optional[float] = Field(None, gt=0)  # ignored for ticket purchases (batch price)
    phone: str
    purpose: Literal["wallet_recharge", "ticket_purchase"] = "wallet_recharge"
    batch_id: Optional[str] = None
