"""
Conversation Entitlement Guard

Sits in front of message acceptance. Every player message is checked
against the coaching session currently linked to its conversation:

1. expired (or no linked session)  -> ChatExpired
2. video: conditional clip increment; 0 rows affected -> ClipsExhausted
3. text: player texts since local midnight >= limit -> DailyLimitReached

Provider and system messages bypass every gate.

The clip check is a single conditional write, so two concurrent video sends
with one clip left produce exactly one acceptance. The daily count is read
from the message log on each check; it is not a separate counter.
"""

import logging
from datetime import datetime
from typing import Optional

from utils.clock import start_of_day, to_iso, utcnow

from .config import DAILY_LIMIT_TIMEZONE, DAILY_MESSAGE_LIMIT
from .errors import ChatExpired, ClipsExhausted, DailyLimitReached
from .models import Conversation, Entitlement, Message, QuotaResponse

logger = logging.getLogger(__name__)


class ConversationGuard:

    def __init__(
        self,
        store,
        conversations,
        clock=utcnow,
        daily_limit: int = DAILY_MESSAGE_LIMIT,
        day_timezone: str = DAILY_LIMIT_TIMEZONE,
    ):
        self.store = store
        self.conversations = conversations
        self.clock = clock
        self.daily_limit = daily_limit
        self.day_timezone = day_timezone

    async def _linked_entitlement(self, conversation: Conversation) -> Optional[Entitlement]:
        if not conversation.linked_entitlement_id:
            return None
        doc = await self.store.get_entitlement(conversation.linked_entitlement_id)
        return Entitlement(**doc) if doc else None

    async def _daily_count(self, conversation_id: str, now: datetime) -> int:
        since = to_iso(start_of_day(now, self.day_timezone))
        return await self.store.count_messages(conversation_id, "player", "text", since)

    async def send_message(
        self,
        conversation_id: str,
        sender_role: str,
        sender_id: Optional[str],
        message_type: str,
        content: str,
        video_uri: Optional[str] = None,
    ) -> Message:
        """
        Accept or reject a message, persisting it when accepted.

        Raises:
            ConversationNotFound: unknown conversation
            ChatExpired: player write on an expired or unlinked conversation
            ClipsExhausted: player video with no clips left
            DailyLimitReached: player text over the daily cap
        """
        conversation = await self.conversations.get_conversation(conversation_id)

        if sender_role != "player":
            return await self.conversations.append_message(
                conversation_id, sender_role, sender_id, message_type, content, video_uri
            )

        now = self.clock()
        entitlement = await self._linked_entitlement(conversation)
        if entitlement is None or entitlement.effective_status(now) != "active":
            logger.info(f"Rejected player message on {conversation_id}: session expired")
            raise ChatExpired(
                conversation_id=conversation_id,
                expires_at=to_iso(entitlement.expires_at) if entitlement else None,
            )

        if message_type == "video":
            return await self._accept_video(conversation_id, entitlement, sender_id, content, video_uri, now)

        daily_count = await self._daily_count(conversation_id, now)
        if daily_count >= self.daily_limit:
            logger.info(f"Rejected player text on {conversation_id}: daily limit {self.daily_limit} reached")
            raise DailyLimitReached(conversation_id=conversation_id, daily_limit=self.daily_limit)

        return await self.conversations.append_message(
            conversation_id, "player", sender_id, "text", content
        )

    async def _accept_video(
        self,
        conversation_id: str,
        entitlement: Entitlement,
        sender_id: Optional[str],
        content: str,
        video_uri: Optional[str],
        now: datetime,
    ) -> Message:
        if entitlement.clips_consumed >= entitlement.clip_allowance:
            raise ClipsExhausted(conversation_id=conversation_id, clip_allowance=entitlement.clip_allowance)

        affected = await self.store.increment_clips_consumed(
            entitlement.id, entitlement.clip_allowance, to_iso(now)
        )
        if not affected:
            # Lost the race for the last clip, or expired in between
            raise ClipsExhausted(conversation_id=conversation_id, clip_allowance=entitlement.clip_allowance)

        try:
            message = await self.conversations.persist_message(
                conversation_id, "player", sender_id, "video", content, video_uri
            )
        except Exception:
            released = await self.store.release_clip(entitlement.id)
            logger.error(
                f"Video message write failed on {conversation_id}; "
                f"clip {'returned' if released else 'NOT returned'} to session {entitlement.id}"
            )
            raise

        await self.conversations.record_activity(message)
        return message

    async def get_remaining_quota(self, conversation_id: str) -> QuotaResponse:
        conversation = await self.conversations.get_conversation(conversation_id)
        now = self.clock()
        entitlement = await self._linked_entitlement(conversation)
        daily_remaining = max(self.daily_limit - await self._daily_count(conversation_id, now), 0)

        if entitlement is None:
            return QuotaResponse(
                conversation_id=conversation_id,
                status="expired",
                clips_remaining=0,
                clips_total=0,
                clips_used=0,
                daily_messages_remaining=daily_remaining,
                daily_message_limit=self.daily_limit,
            )

        return QuotaResponse(
            conversation_id=conversation_id,
            entitlement_id=entitlement.id,
            status=entitlement.effective_status(now),
            clips_remaining=entitlement.clips_remaining,
            clips_total=entitlement.clip_allowance,
            clips_used=entitlement.clips_consumed,
            daily_messages_remaining=daily_remaining,
            daily_message_limit=self.daily_limit,
            expires_at=entitlement.expires_at,
        )
