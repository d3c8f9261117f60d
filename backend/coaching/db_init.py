"""
Coaching Database Initialization

Creates the indexes the pipeline's invariants depend on:
- unique coaching_sessions.payment_reference (one session per payment)
- unique partial (player_id, provider_id) on active conversations
- unique payment_transfers.payment_reference (one routing record per payment)

Idempotent and non-destructive. Run on server startup and as a CLI:

    python -m coaching.db_init
    python -m coaching.db_init --dry-run
    APP_ENV=production COACHING_INIT_CONFIRM=YES python -m coaching.db_init
"""

import asyncio
import logging
import os
import sys
from pathlib import Path
from typing import List, Tuple

from pymongo.errors import OperationFailure

from .config import (
    COACH_ACCOUNTS_COLLECTION,
    CONVERSATIONS_COLLECTION,
    ENTITLEMENTS_COLLECTION,
    MESSAGES_COLLECTION,
    TRANSFERS_COLLECTION,
    WEBHOOK_LOGS_COLLECTION,
)

logger = logging.getLogger(__name__)

# (collection, index_spec, options)
REQUIRED_INDEXES = [
    (ENTITLEMENTS_COLLECTION, [("payment_reference", 1)], {"unique": True, "name": "idx_payment_reference_unique"}),
    (ENTITLEMENTS_COLLECTION, [("id", 1)], {"unique": True, "name": "idx_session_id_unique"}),
    (CONVERSATIONS_COLLECTION, [("id", 1)], {"unique": True, "name": "idx_conversation_id_unique"}),
    (
        CONVERSATIONS_COLLECTION,
        [("player_id", 1), ("provider_id", 1)],
        {
            "unique": True,
            "partialFilterExpression": {"status": "active"},
            "name": "idx_active_pair_unique",
        },
    ),
    (CONVERSATIONS_COLLECTION, [("provider_id", 1), ("last_activity_at", -1)], {"name": "idx_provider_activity"}),
    (MESSAGES_COLLECTION, [("conversation_id", 1), ("created_at", -1)], {"name": "idx_conversation_created"}),
    (TRANSFERS_COLLECTION, [("payment_reference", 1)], {"unique": True, "sparse": True, "name": "idx_transfer_payment_unique"}),
    (TRANSFERS_COLLECTION, [("provider_id", 1), ("created_at", -1)], {"name": "idx_provider_created"}),
    (TRANSFERS_COLLECTION, [("transfer_ref", 1)], {"sparse": True, "name": "idx_transfer_ref"}),
    (COACH_ACCOUNTS_COLLECTION, [("provider_id", 1)], {"unique": True, "name": "idx_provider_unique"}),
    (COACH_ACCOUNTS_COLLECTION, [("processor_account_ref", 1)], {"sparse": True, "name": "idx_account_ref"}),
    (WEBHOOK_LOGS_COLLECTION, [("event_type", 1), ("timestamp", -1)], {"name": "idx_event_type_timestamp"}),
]


def check_environment() -> Tuple[bool, str]:
    """Production runs require COACHING_INIT_CONFIRM=YES."""
    app_env = os.environ.get("APP_ENV", "development")

    if app_env.lower() == "production" and os.environ.get("COACHING_INIT_CONFIRM", "") != "YES":
        return False, "PRODUCTION ENVIRONMENT DETECTED! Set COACHING_INIT_CONFIRM=YES to continue"

    return True, f"Environment: {app_env}"


async def create_index_if_not_exists(db, collection_name: str, index_spec: List[Tuple], options: dict, dry_run: bool = False) -> str:
    collection = db[collection_name]
    index_name = options["name"]

    existing = await collection.index_information()
    if index_name in existing:
        return f"  [SKIP] Index '{index_name}' on '{collection_name}' already exists"

    if dry_run:
        return f"  [DRY-RUN] Would create index '{index_name}' on '{collection_name}'"

    try:
        await collection.create_index(index_spec, **options)
    except OperationFailure as e:
        if "already exists" in str(e).lower():
            return f"  [SKIP] Index '{index_name}' on '{collection_name}' already exists (race)"
        raise
    return f"  [CREATE] Created index '{index_name}' on '{collection_name}'"


async def ensure_indexes(db, dry_run: bool = False) -> List[str]:
    results = []
    for collection_name, index_spec, options in REQUIRED_INDEXES:
        result = await create_index_if_not_exists(db, collection_name, index_spec, options, dry_run)
        logger.info(result)
        results.append(result)
    return results


async def run_init(dry_run: bool = False):
    sys.path.insert(0, str(Path(__file__).parent.parent))
    from database import close_client, get_database

    allowed, env_message = check_environment()
    logger.info(env_message)
    if not allowed:
        logger.error("Init blocked due to environment guard")
        sys.exit(1)

    logger.info(f"Dry Run: {dry_run}")
    try:
        await ensure_indexes(get_database(), dry_run)
    finally:
        close_client()
    logger.info("SUCCESS: coaching DB init completed")


def main():
    import argparse

    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')

    parser = argparse.ArgumentParser(description="Coaching Database Initialization")
    parser.add_argument('--dry-run', action='store_true', help='Print what would be done without making changes')
    args = parser.parse_args()

    asyncio.run(run_init(dry_run=args.dry_run))


if __name__ == "__main__":
    main()
