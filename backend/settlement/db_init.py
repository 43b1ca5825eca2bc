"""
Settlement Database Bootstrap

Creates the indexes the settlement engine relies on and stamps the schema
version. Safe to run repeatedly; it never drops or rewrites data. Wallets
are still created lazily on first use.

The unique indexes are load-bearing: one wallet per user, one ledger row per
idempotency key, one play per (ticket, user), one ticket per payment attempt.

Usage:
    python -m settlement.db_init              # apply
    python -m settlement.db_init --dry-run    # report only
    APP_ENV=production SETTLEMENT_INIT_CONFIRM=YES python -m settlement.db_init
"""

import os
import sys
import asyncio
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Tuple

sys.path.insert(0, str(Path(__file__).parent.parent))

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo.errors import OperationFailure

logger = logging.getLogger(__name__)

INIT_VERSION = "v1.0.0"
META_COLLECTION = "settlement_meta"

# (collection, keys, options)
REQUIRED_INDEXES = [
    ("ticket_batches", [("id", 1)], {"unique": True, "name": "idx_batch_id_unique"}),
    ("ticket_batches", [("is_active", 1), ("ticket_type", 1)], {"name": "idx_active_type"}),

    ("electronic_tickets", [("id", 1)], {"unique": True, "name": "idx_eticket_id_unique"}),
    ("electronic_tickets", [("user_id", 1), ("created_at", -1)], {"name": "idx_eticket_user_created"}),
    # Wallet-bought tickets carry payment_attempt_id=None and stay out of the index
    ("electronic_tickets", [("payment_attempt_id", 1)], {
        "unique": True,
        "partialFilterExpression": {"payment_attempt_id": {"$type": "string"}},
        "name": "idx_eticket_payment_unique"
    }),

    ("physical_tickets", [("id", 1)], {"unique": True, "name": "idx_pticket_id_unique"}),
    ("physical_tickets", [("ticket_code", 1)], {"unique": True, "name": "idx_ticket_code_unique"}),
    ("physical_tickets", [("user_id", 1)], {"name": "idx_pticket_user"}),

    ("user_wallets", [("user_id", 1)], {"unique": True, "name": "idx_wallet_user_unique"}),

    ("ticket_transactions", [("idempotency_key", 1)], {"unique": True, "name": "idx_tx_idempotency_unique"}),
    ("ticket_transactions", [("user_id", 1), ("created_at", -1)], {"name": "idx_tx_user_created"}),

    ("ai_football_tickets", [("id", 1)], {"unique": True, "name": "idx_ai_ticket_id_unique"}),
    ("ai_football_tickets", [("status", 1), ("created_at", -1)], {"name": "idx_ai_ticket_status"}),

    ("ai_ticket_plays", [("id", 1)], {"unique": True, "name": "idx_play_id_unique"}),
    ("ai_ticket_plays", [("ai_ticket_id", 1), ("user_id", 1)], {"unique": True, "name": "idx_play_ticket_user_unique"}),

    ("payment_attempts", [("id", 1)], {"unique": True, "name": "idx_attempt_id_unique"}),
    ("payment_attempts", [("provider_reference", 1)], {"unique": True, "name": "idx_attempt_reference_unique"}),
    ("payment_attempts", [("status", 1), ("created_at", 1)], {"name": "idx_attempt_status_created"}),
]


def check_environment() -> Tuple[bool, str]:
    """Production runs need SETTLEMENT_INIT_CONFIRM=YES. Returns (allowed, message)."""
    app_env = os.environ.get("APP_ENV", os.environ.get("ENVIRONMENT", "development")).lower()
    if app_env != "production":
        return True, f"Environment: {app_env}"

    confirm = os.environ.get("SETTLEMENT_INIT_CONFIRM", "")
    if confirm == "YES":
        return True, "Environment: production (confirmed)"
    return False, (
        "Refusing to touch a production database without confirmation. "
        f"Set SETTLEMENT_INIT_CONFIRM=YES (current: '{confirm}')"
    )


async def _ensure_index(db, collection_name: str, keys: List[Tuple], options: dict, dry_run: bool) -> str:
    name = options.get("name", str(keys))
    label = f"{collection_name}.{name}"

    if name in await db[collection_name].index_information():
        return f"[SKIP] {label}"
    if dry_run:
        return f"[DRY-RUN] would create {label}"

    try:
        await db[collection_name].create_index(keys, **options)
    except OperationFailure as e:
        # Another instance created it between the check and the write
        if "already exists" not in str(e).lower():
            raise
        return f"[SKIP] {label} (created concurrently)"
    return f"[CREATE] {label}"


async def ensure_indexes(db, dry_run: bool = False) -> List[str]:
    """Create every missing settlement index. Used by server startup and the CLI."""
    return [
        await _ensure_index(db, collection_name, keys, options, dry_run)
        for collection_name, keys, options in REQUIRED_INDEXES
    ]


async def update_version_stamp(db, dry_run: bool = False) -> str:
    if dry_run:
        return f"[DRY-RUN] would stamp {INIT_VERSION}"

    await db[META_COLLECTION].update_one(
        {"_id": "settlement_init"},
        {"$set": {"version": INIT_VERSION, "applied_at": datetime.now(timezone.utc).isoformat()}},
        upsert=True
    )
    return f"[UPDATE] stamped {INIT_VERSION}"


async def run_init(dry_run: bool = False) -> int:
    """Connect using MONGO_URL/DB_NAME from backend/.env and apply. Returns an exit code."""
    from dotenv import load_dotenv

    load_dotenv(Path(__file__).parent.parent / '.env')

    allowed, env_message = check_environment()
    logger.info(env_message)
    if not allowed:
        logger.error(env_message)
        return 1

    mongo_url = os.environ.get('MONGO_URL')
    db_name = os.environ.get('DB_NAME')
    if not mongo_url or not db_name:
        logger.error("MONGO_URL and DB_NAME must be set")
        return 1

    client = AsyncIOMotorClient(mongo_url, serverSelectionTimeoutMS=5000)
    try:
        await client.admin.command('ping')
    except Exception as e:
        logger.error(f"Cannot reach MongoDB for {db_name}: {e}")
        client.close()
        return 1

    db = client[db_name]
    try:
        logger.info(f"Settlement init on {db_name} (dry_run={dry_run})")
        for line in await ensure_indexes(db, dry_run):
            logger.info(line)
        logger.info(await update_version_stamp(db, dry_run))
    finally:
        client.close()

    logger.info("Settlement init done")
    return 0


def main():
    import argparse

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s'
    )

    parser = argparse.ArgumentParser(description="Create settlement indexes and stamp the schema version")
    parser.add_argument('--dry-run', action='store_true', help='Report missing indexes without creating them')
    args = parser.parse_args()

    sys.exit(asyncio.run(run_init(dry_run=args.dry_run)))


if __name__ == "__main__":
    main()
