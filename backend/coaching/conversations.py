"""
Conversation Manager

One active conversation per (player, provider). A repurchase relinks the
existing conversation to the new coaching session and resets linked_at,
the anchor its access window is measured from.
"""

import logging
import uuid
from typing import List, Optional, Tuple

from utils.clock import to_iso, utcnow

from .errors import ConversationNotFound
from .models import Conversation, Message

logger = logging.getLogger(__name__)

# Whose unread counter a new message bumps
UNREAD_RECIPIENT = {"player": "provider", "provider": "player", "system": None}

VIDEO_PREVIEW = "📹 Video"


class ConversationManager:

    def __init__(self, store, clock=utcnow):
        self.store = store
        self.clock = clock

    async def upsert_conversation(
        self,
        player_id: str,
        player_name: Optional[str],
        provider_id: str,
        provider_name: Optional[str],
        sport: Optional[str],
        entitlement_id: str,
    ) -> Tuple[Conversation, bool]:
        """
        Create the active conversation for the pair, or relink it.

        Returns:
            (conversation, created)
        """
        now = to_iso(self.clock())
        on_update = {
            "linked_entitlement_id": entitlement_id,
            "linked_at": now,
            "last_activity_at": now,
        }
        if sport:
            on_update["sport"] = sport
        if player_name:
            on_update["player_name"] = player_name
        if provider_name:
            on_update["provider_name"] = provider_name

        on_insert = {
            "id": str(uuid.uuid4()),
            "created_at": now,
            "last_message": None,
            "unread_counts": {"player": 0, "provider": 0},
        }

        doc, created = await self.store.upsert_conversation(player_id, provider_id, on_update, on_insert)
        if created:
            logger.info(f"Created conversation {doc['id']} for player {player_id} and provider {provider_id}")
        else:
            logger.info(f"Relinked conversation {doc['id']} to coaching session {entitlement_id}")
        return Conversation(**doc), created

    async def get_conversation(self, conversation_id: str) -> Conversation:
        doc = await self.store.get_conversation(conversation_id)
        if not doc:
            raise ConversationNotFound(conversation_id=conversation_id)
        return Conversation(**doc)

    async def list_conversations(self, user_id: str, role: str) -> List[Conversation]:
        field = "provider_id" if role == "provider" else "player_id"
        docs = await self.store.list_conversations(field, user_id)
        return [Conversation(**doc) for doc in docs]

    async def list_messages(self, conversation_id: str, limit: int = 50, offset: int = 0) -> List[Message]:
        await self.get_conversation(conversation_id)
        docs = await self.store.list_messages(conversation_id, limit=limit, offset=offset)
        return [Message(**doc) for doc in docs]

    async def mark_read(self, conversation_id: str, role: str) -> Conversation:
        doc = await self.store.mark_conversation_read(conversation_id, role)
        if not doc:
            raise ConversationNotFound(conversation_id=conversation_id)
        return Conversation(**doc)

    async def persist_message(
        self,
        conversation_id: str,
        sender_role: str,
        sender_id: Optional[str],
        message_type: str,
        content: str,
        video_uri: Optional[str] = None,
    ) -> Message:
        doc = {
            "id": str(uuid.uuid4()),
            "conversation_id": conversation_id,
            "sender_id": sender_id,
            "sender_role": sender_role,
            "type": message_type,
            "content": content,
            "video_uri": video_uri,
            "created_at": to_iso(self.clock()),
        }
        await self.store.insert_message(doc)
        return Message(**doc)

    async def record_activity(self, message: Message) -> None:
        """Update the conversation preview and bump the other party's unread count."""
        preview = VIDEO_PREVIEW if message.type == "video" else message.content
        await self.store.record_message_activity(
            message.conversation_id,
            preview,
            to_iso(message.created_at),
            UNREAD_RECIPIENT.get(message.sender_role),
        )

    async def append_message(
        self,
        conversation_id: str,
        sender_role: str,
        sender_id: Optional[str],
        message_type: str,
        content: str,
        video_uri: Optional[str] = None,
    ) -> Message:
        """Persist an immutable message and record it on the conversation."""
        message = await self.persist_message(
            conversation_id, sender_role, sender_id, message_type, content, video_uri
        )
        await self.record_activity(message)
        return message
