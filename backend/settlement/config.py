"""
Settlement Configuration and Constants

Prices, prize rules, payment limits and provider endpoints are defined here.
All amounts are in FC (XAF, Franc CFA).
"""

# ==================== CURRENCY ====================
CURRENCY = "XAF"
COUNTRY_CODE = "242"  # Congo Brazzaville

# ==================== TICKETS & BATCHES ====================
# Winning batch tickets pay price * multiplier unless the batch sets a prize
WIN_PRIZE_MULTIPLIER = 2

TICKET_TYPES = ("electronic", "premium")

# Optimistic allocation retries before giving up on a contended batch
ALLOCATION_MAX_RETRIES = 20

# Physical ticket bulk generation (operator tool)
BULK_GENERATION_LIMIT = 1000
PHYSICAL_CODE_PREFIX = "TKT"
MIN_TICKET_CODE_LENGTH = 6

# ==================== COLLECTIVE (AI) TICKETS ====================
COLLECTIVE_REFUND_THRESHOLD_PCT = 70
MIN_STAKE_AMOUNT = 100
PLAYABLE_AI_TICKET_STATUSES = ("proposed", "active")
TERMINAL_AI_TICKET_STATUSES = ("won", "lost", "refunded")

# Sandbox simulation: probability that a simulated result is a win
SIMULATED_WIN_PROBABILITY = 0.4

# ==================== LEDGER ====================
TRANSACTION_TYPES = ("purchase", "win", "refund", "deposit")
CREDIT_KINDS = ("win", "refund", "deposit")

# Balance vs ledger sum tolerance (float amounts)
RECONCILIATION_TOLERANCE = 0.01

# ==================== PAYMENTS ====================
MIN_PAYMENT_AMOUNT = 100
PAYMENT_PURPOSES = ("wallet_recharge", "ticket_purchase")

# Provider status -> attempt status
PROVIDER_STATUS_MAP = {
    "PENDING": "pending",
    "SUCCESSFUL": "completed",
    "FAILED": "failed",
    "REJECTED": "failed",
    "EXPIRED": "failed",
}

POLL_SETTINGS = {
    "interval_seconds": 3.0,
    "max_attempts": 20,
    "timeout_seconds": 60.0,
    # Scheduler: pending attempts older than this get re-polled
    "stale_after_seconds": 120,
    "reconcile_every_minutes": 5,
    "reconcile_batch_size": 50,
}

# ==================== MTN MOMO CONFIGURATION ====================
MOMO_CONFIG = {
    "sandbox": {
        "api_base": "https://sandbox.momodeveloper.mtn.com",
        "target_environment": "sandbox",
    },
    "live": {
        "api_base": "https://proxy.momoapi.mtn.com",
        "target_environment": "mtncongo",
    }
}

TOKEN_SETTINGS = {
    "default_expires_in": 60,     # seconds, used when provider omits expires_in
    "refresh_threshold": 10,      # start refreshing this many seconds before expiry
    "http_timeout": 15.0,
}

# ==================== ERROR CODES ====================
ERROR_CODES = {
    "INSUFFICIENT_FUNDS": "Insufficient balance. Please recharge your wallet.",
    "BATCH_EXHAUSTED": "No tickets left in this batch.",
    "BATCH_NOT_FOUND": "Ticket batch not found.",
    "INVALID_BATCH_CONFIG": "Invalid batch configuration.",
    "ALLOCATION_CONTENTION": "Batch is busy, please try again.",
    "ALREADY_PLAYED": "You have already played this ticket.",
    "TICKET_NOT_FOUND": "Ticket not found.",
    "TICKET_CLOSED": "This ticket is no longer available.",
    "TICKET_ALREADY_USED": "This ticket has already been used.",
    "SETTLEMENT_CONFLICT": "Ticket is already being settled with a different result.",
    "PAYMENT_FAILED": "Payment failed.",
    "INVALID_PAYMENT_REQUEST": "Invalid payment request.",
    "PAYMENT_NOT_FOUND": "Payment not found.",
    "TOKEN_REFRESH_FAILED": "Payment provider authentication failed. Please retry.",
}

# Error code -> HTTP status for the API layer
ERROR_HTTP_STATUS = {
    "INSUFFICIENT_FUNDS": 402,
    "BATCH_EXHAUSTED": 409,
    "BATCH_NOT_FOUND": 404,
    "INVALID_BATCH_CONFIG": 400,
    "ALLOCATION_CONTENTION": 503,
    "ALREADY_PLAYED": 409,
    "TICKET_NOT_FOUND": 404,
    "TICKET_CLOSED": 409,
    "TICKET_ALREADY_USED": 409,
    "SETTLEMENT_CONFLICT": 409,
    "PAYMENT_FAILED": 502,
    "INVALID_PAYMENT_REQUEST": 400,
    "PAYMENT_NOT_FOUND": 404,
    "TOKEN_REFRESH_FAILED": 503,
}
