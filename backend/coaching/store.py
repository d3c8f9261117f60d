"""
Ledger Store - MongoDB implementation

System of record for coaching sessions (entitlements), conversations,
messages, transfer records and coach connect accounts.

CRITICAL: every check-then-act on shared state is a single conditional
write. Callers judge the outcome by the affected count, never by a read
followed by a write:
- one entitlement per payment_reference (unique index + DuplicateKeyError)
- clips_consumed < clip_allowance (conditional $inc, modified_count)
- one active conversation per (player, provider) (atomic upsert)
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from .config import (
    COACH_ACCOUNTS_COLLECTION,
    CONVERSATIONS_COLLECTION,
    ENTITLEMENTS_COLLECTION,
    MESSAGES_COLLECTION,
    TRANSFERS_COLLECTION,
    WEBHOOK_LOGS_COLLECTION,
)
from .errors import ConversationConflict

logger = logging.getLogger(__name__)

NO_ID = {"_id": 0}


class LedgerStore:
    """Keyed read/write store backed by a motor database."""

    def __init__(self, db):
        self.db = db

    @property
    def entitlements(self):
        return self.db[ENTITLEMENTS_COLLECTION]

    @property
    def conversations(self):
        return self.db[CONVERSATIONS_COLLECTION]

    @property
    def messages(self):
        return self.db[MESSAGES_COLLECTION]

    @property
    def transfers(self):
        return self.db[TRANSFERS_COLLECTION]

    @property
    def coach_accounts(self):
        return self.db[COACH_ACCOUNTS_COLLECTION]

    @property
    def webhook_logs(self):
        return self.db[WEBHOOK_LOGS_COLLECTION]

    # ==================== ENTITLEMENTS ====================

    async def insert_entitlement(self, doc: Dict[str, Any]) -> bool:
        """
        Insert-if-absent keyed by payment_reference.

        Returns False when an entitlement for the same payment already exists.
        """
        try:
            await self.entitlements.insert_one(dict(doc))
        except DuplicateKeyError:
            return False
        return True

    async def get_entitlement(self, entitlement_id: str) -> Optional[Dict[str, Any]]:
        return await self.entitlements.find_one({"id": entitlement_id}, NO_ID)

    async def get_entitlement_by_payment_reference(self, payment_reference: str) -> Optional[Dict[str, Any]]:
        return await self.entitlements.find_one({"payment_reference": payment_reference}, NO_ID)

    async def increment_clips_consumed(self, entitlement_id: str, clip_allowance: int, now_iso: str) -> int:
        """Consume one clip if the session is active, unexpired and under its allowance."""
        result = await self.entitlements.update_one(
            {
                "id": entitlement_id,
                "status": "active",
                "expires_at": {"$gte": now_iso},
                "clip_allowance": clip_allowance,
                "clips_consumed": {"$lt": clip_allowance},
            },
            {"$inc": {"clips_consumed": 1}},
        )
        return result.modified_count

    async def release_clip(self, entitlement_id: str) -> int:
        """Give back a clip consumed by a message that failed to persist."""
        result = await self.entitlements.update_one(
            {"id": entitlement_id, "clips_consumed": {"$gt": 0}},
            {"$inc": {"clips_consumed": -1}},
        )
        return result.modified_count

    # ==================== CONVERSATIONS ====================

    async def upsert_conversation(
        self,
        player_id: str,
        provider_id: str,
        on_update: Dict[str, Any],
        on_insert: Dict[str, Any],
    ) -> Tuple[Dict[str, Any], bool]:
        """
        Atomically create the active conversation for a pair or update it.

        Returns (conversation, created).
        """
        query = {"player_id": player_id, "provider_id": provider_id, "status": "active"}
        update = {"$set": on_update, "$setOnInsert": on_insert}

        try:
            doc = await self.conversations.find_one_and_update(
                query, update, upsert=True, projection=NO_ID,
                return_document=ReturnDocument.AFTER,
            )
        except DuplicateKeyError:
            # Lost an insert race on the partial unique index; the other
            # writer's document now exists, so this becomes a plain update.
            doc = await self.conversations.find_one_and_update(
                query, {"$set": on_update}, projection=NO_ID,
                return_document=ReturnDocument.AFTER,
            )
            if doc is None:
                raise ConversationConflict(
                    f"Active conversation for player {player_id} and provider {provider_id} "
                    "vanished after a concurrent insert",
                    player_id=player_id,
                    provider_id=provider_id,
                )
        return doc, doc.get("id") == on_insert.get("id")

    async def get_conversation(self, conversation_id: str) -> Optional[Dict[str, Any]]:
        return await self.conversations.find_one({"id": conversation_id}, NO_ID)

    async def list_conversations(self, user_field: str, user_id: str) -> List[Dict[str, Any]]:
        cursor = self.conversations.find(
            {user_field: user_id, "status": "active"}, NO_ID
        ).sort("last_activity_at", -1)
        return await cursor.to_list(length=None)

    async def list_provider_conversations(self, provider_id: str) -> List[Dict[str, Any]]:
        cursor = self.conversations.find({"provider_id": provider_id}, NO_ID)
        return await cursor.to_list(length=None)

    async def record_message_activity(
        self,
        conversation_id: str,
        last_message: str,
        at_iso: str,
        unread_role: Optional[str],
    ) -> None:
        update: Dict[str, Any] = {"$set": {"last_message": last_message, "last_activity_at": at_iso}}
        if unread_role:
            update["$inc"] = {f"unread_counts.{unread_role}": 1}
        await self.conversations.update_one({"id": conversation_id}, update)

    async def mark_conversation_read(self, conversation_id: str, role: str) -> Optional[Dict[str, Any]]:
        return await self.conversations.find_one_and_update(
            {"id": conversation_id},
            {"$set": {f"unread_counts.{role}": 0}},
            projection=NO_ID,
            return_document=ReturnDocument.AFTER,
        )

    # ==================== MESSAGES ====================

    async def insert_message(self, doc: Dict[str, Any]) -> None:
        await self.messages.insert_one(dict(doc))

    async def count_messages(
        self,
        conversation_id: str,
        sender_role: str,
        message_type: str,
        since_iso: str,
    ) -> int:
        return await self.messages.count_documents({
            "conversation_id": conversation_id,
            "sender_role": sender_role,
            "type": message_type,
            "created_at": {"$gte": since_iso},
        })

    async def list_messages(self, conversation_id: str, limit: int = 50, offset: int = 0) -> List[Dict[str, Any]]:
        cursor = self.messages.find(
            {"conversation_id": conversation_id}, NO_ID
        ).sort("created_at", -1).skip(offset).limit(limit)
        return await cursor.to_list(length=limit)

    # ==================== TRANSFERS ====================

    async def insert_transfer(self, doc: Dict[str, Any]) -> bool:
        """Insert-if-absent keyed by payment_reference."""
        try:
            await self.transfers.insert_one(dict(doc))
        except DuplicateKeyError:
            return False
        return True

    async def update_transfer_status(
        self,
        transfer_ref: str,
        status: str,
        updates: Optional[Dict[str, Any]] = None,
    ) -> Optional[Dict[str, Any]]:
        return await self.transfers.find_one_and_update(
            {"transfer_ref": transfer_ref},
            {"$set": {"status": status, **(updates or {})}},
            projection=NO_ID,
            return_document=ReturnDocument.AFTER,
        )

    async def list_transfers(
        self,
        provider_id: str,
        account_ref: Optional[str],
        limit: Optional[int] = 50,
    ) -> List[Dict[str, Any]]:
        """Newest first. limit=None reads the full history."""
        clauses: List[Dict[str, Any]] = [{"provider_id": provider_id}]
        if account_ref:
            clauses.append({"provider_account_ref": account_ref})
        cursor = self.transfers.find({"$or": clauses}, NO_ID).sort("created_at", -1)
        if limit:
            cursor = cursor.limit(limit)
        return await cursor.to_list(length=limit)

    # ==================== COACH ACCOUNTS ====================

    async def get_coach_account(self, provider_id: str) -> Optional[Dict[str, Any]]:
        return await self.coach_accounts.find_one({"provider_id": provider_id}, NO_ID)

    async def get_coach_account_by_ref(self, account_ref: str) -> Optional[Dict[str, Any]]:
        return await self.coach_accounts.find_one({"processor_account_ref": account_ref}, NO_ID)

    async def upsert_coach_account(self, provider_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        return await self.coach_accounts.find_one_and_update(
            {"provider_id": provider_id},
            {"$set": fields, "$setOnInsert": {"provider_id": provider_id}},
            upsert=True,
            projection=NO_ID,
            return_document=ReturnDocument.AFTER,
        )

    async def update_coach_account_by_ref(self, account_ref: str, fields: Dict[str, Any]) -> int:
        result = await self.coach_accounts.update_one(
            {"processor_account_ref": account_ref},
            {"$set": fields},
        )
        return result.modified_count

    # ==================== WEBHOOK AUDIT ====================

    async def log_webhook_event(self, doc: Dict[str, Any]) -> None:
        await self.webhook_logs.insert_one(dict(doc))
