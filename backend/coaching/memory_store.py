"""
In-memory Ledger Store

Test double with the same conditional-write contract as LedgerStore:
unique payment_reference for entitlements and transfers, conditional clip
increments judged by the affected count, and atomic conversation upserts.
Every mutation runs under one asyncio.Lock, so concurrent callers see the
same serialisation a single MongoDB document write gives them.

State is held per instance; nothing is shared at module level.
"""

import asyncio
import copy
from typing import Any, Dict, List, Optional, Tuple


class InMemoryLedgerStore:

    def __init__(self):
        self._lock = asyncio.Lock()
        self.entitlements: Dict[str, Dict[str, Any]] = {}
        self.conversations: Dict[str, Dict[str, Any]] = {}
        self.messages: List[Dict[str, Any]] = []
        self.transfers: List[Dict[str, Any]] = []
        self.coach_accounts: Dict[str, Dict[str, Any]] = {}
        self.webhook_logs: List[Dict[str, Any]] = []

    # ==================== ENTITLEMENTS ====================

    async def insert_entitlement(self, doc: Dict[str, Any]) -> bool:
        async with self._lock:
            for existing in self.entitlements.values():
                if existing["payment_reference"] == doc["payment_reference"]:
                    return False
            self.entitlements[doc["id"]] = copy.deepcopy(doc)
            return True

    async def get_entitlement(self, entitlement_id: str) -> Optional[Dict[str, Any]]:
        doc = self.entitlements.get(entitlement_id)
        return copy.deepcopy(doc) if doc else None

    async def get_entitlement_by_payment_reference(self, payment_reference: str) -> Optional[Dict[str, Any]]:
        for doc in self.entitlements.values():
            if doc["payment_reference"] == payment_reference:
                return copy.deepcopy(doc)
        return None

    async def increment_clips_consumed(self, entitlement_id: str, clip_allowance: int, now_iso: str) -> int:
        async with self._lock:
            # Yield inside the critical section so racing callers really queue
            await asyncio.sleep(0)
            doc = self.entitlements.get(entitlement_id)
            if (
                doc is None
                or doc.get("status") != "active"
                or doc["expires_at"] < now_iso
                or doc["clip_allowance"] != clip_allowance
                or doc["clips_consumed"] >= clip_allowance
            ):
                return 0
            doc["clips_consumed"] += 1
            return 1

    async def release_clip(self, entitlement_id: str) -> int:
        async with self._lock:
            doc = self.entitlements.get(entitlement_id)
            if doc is None or doc["clips_consumed"] <= 0:
                return 0
            doc["clips_consumed"] -= 1
            return 1

    # ==================== CONVERSATIONS ====================

    async def upsert_conversation(
        self,
        player_id: str,
        provider_id: str,
        on_update: Dict[str, Any],
        on_insert: Dict[str, Any],
    ) -> Tuple[Dict[str, Any], bool]:
        async with self._lock:
            for doc in self.conversations.values():
                if (
                    doc["player_id"] == player_id
                    and doc["provider_id"] == provider_id
                    and doc.get("status") == "active"
                ):
                    doc.update(copy.deepcopy(on_update))
                    return copy.deepcopy(doc), False

            doc = {"player_id": player_id, "provider_id": provider_id, "status": "active"}
            doc.update(copy.deepcopy(on_insert))
            doc.update(copy.deepcopy(on_update))
            self.conversations[doc["id"]] = doc
            return copy.deepcopy(doc), True

    async def get_conversation(self, conversation_id: str) -> Optional[Dict[str, Any]]:
        doc = self.conversations.get(conversation_id)
        return copy.deepcopy(doc) if doc else None

    async def list_conversations(self, user_field: str, user_id: str) -> List[Dict[str, Any]]:
        docs = [
            copy.deepcopy(doc) for doc in self.conversations.values()
            if doc.get(user_field) == user_id and doc.get("status") == "active"
        ]
        docs.sort(key=lambda d: d.get("last_activity_at") or "", reverse=True)
        return docs

    async def list_provider_conversations(self, provider_id: str) -> List[Dict[str, Any]]:
        return [
            copy.deepcopy(doc) for doc in self.conversations.values()
            if doc.get("provider_id") == provider_id
        ]

    async def record_message_activity(
        self,
        conversation_id: str,
        last_message: str,
        at_iso: str,
        unread_role: Optional[str],
    ) -> None:
        async with self._lock:
            doc = self.conversations.get(conversation_id)
            if doc is None:
                return
            doc["last_message"] = last_message
            doc["last_activity_at"] = at_iso
            if unread_role:
                counts = doc.setdefault("unread_counts", {})
                counts[unread_role] = counts.get(unread_role, 0) + 1

    async def mark_conversation_read(self, conversation_id: str, role: str) -> Optional[Dict[str, Any]]:
        async with self._lock:
            doc = self.conversations.get(conversation_id)
            if doc is None:
                return None
            doc.setdefault("unread_counts", {})[role] = 0
            return copy.deepcopy(doc)

    # ==================== MESSAGES ====================

    async def insert_message(self, doc: Dict[str, Any]) -> None:
        async with self._lock:
            self.messages.append(copy.deepcopy(doc))

    async def count_messages(
        self,
        conversation_id: str,
        sender_role: str,
        message_type: str,
        since_iso: str,
    ) -> int:
        return sum(
            1 for m in self.messages
            if m["conversation_id"] == conversation_id
            and m["sender_role"] == sender_role
            and m["type"] == message_type
            and m["created_at"] >= since_iso
        )

    async def list_messages(self, conversation_id: str, limit: int = 50, offset: int = 0) -> List[Dict[str, Any]]:
        docs = [copy.deepcopy(m) for m in self.messages if m["conversation_id"] == conversation_id]
        docs.sort(key=lambda m: m["created_at"], reverse=True)
        return docs[offset:offset + limit]

    # ==================== TRANSFERS ====================

    async def insert_transfer(self, doc: Dict[str, Any]) -> bool:
        async with self._lock:
            ref = doc.get("payment_reference")
            if ref and any(t.get("payment_reference") == ref for t in self.transfers):
                return False
            self.transfers.append(copy.deepcopy(doc))
            return True

    async def update_transfer_status(
        self,
        transfer_ref: str,
        status: str,
        updates: Optional[Dict[str, Any]] = None,
    ) -> Optional[Dict[str, Any]]:
        async with self._lock:
            for doc in self.transfers:
                if doc.get("transfer_ref") == transfer_ref:
                    doc["status"] = status
                    doc.update(updates or {})
                    return copy.deepcopy(doc)
            return None

    async def list_transfers(
        self,
        provider_id: str,
        account_ref: Optional[str],
        limit: Optional[int] = 50,
    ) -> List[Dict[str, Any]]:
        docs = [
            copy.deepcopy(t) for t in self.transfers
            if t.get("provider_id") == provider_id
            or (account_ref and t.get("provider_account_ref") == account_ref)
        ]
        docs.sort(key=lambda t: t["created_at"], reverse=True)
        return docs[:limit]

    # ==================== COACH ACCOUNTS ====================

    async def get_coach_account(self, provider_id: str) -> Optional[Dict[str, Any]]:
        doc = self.coach_accounts.get(provider_id)
        return copy.deepcopy(doc) if doc else None

    async def get_coach_account_by_ref(self, account_ref: str) -> Optional[Dict[str, Any]]:
        for doc in self.coach_accounts.values():
            if doc.get("processor_account_ref") == account_ref:
                return copy.deepcopy(doc)
        return None

    async def upsert_coach_account(self, provider_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        async with self._lock:
            doc = self.coach_accounts.setdefault(provider_id, {"provider_id": provider_id})
            doc.update(copy.deepcopy(fields))
            return copy.deepcopy(doc)

    async def update_coach_account_by_ref(self, account_ref: str, fields: Dict[str, Any]) -> int:
        async with self._lock:
            for doc in self.coach_accounts.values():
                if doc.get("processor_account_ref") == account_ref:
                    doc.update(copy.deepcopy(fields))
                    return 1
            return 0

    # ==================== WEBHOOK AUDIT ====================

    async def log_webhook_event(self, doc: Dict[str, Any]) -> None:
        self.webhook_logs.append(copy.deepcopy(doc))
