"""
Settlement Module
Money and inventory correctness for the ticket platform

This module provides:
- Wallet ledger with idempotent debits/credits and reconciliation
- Batch allocation of winning/losing outcomes (without replacement)
- Collective AI ticket plays and settlement (70% identical refund rule)
- MTN MoMo collections: OAuth token manager, payment initiation and polling
- Caller-side payment coordination (bounded polling, credit-once)

Collections used:
- user_wallets: User balances and applied idempotency keys
- ticket_transactions: Immutable ledger (purchase, win, refund, deposit)
- ticket_batches: Finite ticket pools with winner/loser remainders
- electronic_tickets / physical_tickets: Sold and revealed tickets
- ai_football_tickets / ai_ticket_plays: Collective tickets and plays
- payment_attempts: Mobile-money collection attempts
"""

__version__ = "1.0.0"
