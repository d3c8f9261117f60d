"""
Entitlement Issuer

Turns a verified successful payment into exactly one coaching session.

The same payment arrives twice (confirmation call and webhook), possibly at
the same time. Both callers go through issue(); the insert is keyed by
payment_reference, so the loser of the race gets a no-op result instead of
an error and never routes funds a second time.

Order of effects:
1. derive quota (clip hint, else catalog; never a default)
2. insert the coaching session (insert-if-absent)
3. upsert the conversation, unless the player is a placeholder identity
4. route funds, only after step 2 is durable
"""

import logging
import uuid
from datetime import timedelta
from typing import Optional, Tuple

from utils.clock import to_iso, utcnow

from .config import PLACEHOLDER_PLAYER_IDS, PLACEHOLDER_PLAYER_NAMES
from .errors import (
    CoachingError,
    EntitlementPersistFailure,
    PackageNotFoundError,
    QuotaResolutionError,
    RoutingError,
)
from .models import Entitlement, IssueResult, Package, PaymentEvent
from .package_catalog import resolve_package

logger = logging.getLogger(__name__)

CUSTOM_TIER = "custom"


def is_placeholder_player(player_id: Optional[str]) -> bool:
    return not player_id or player_id in PLACEHOLDER_PLAYER_IDS


class EntitlementIssuer:

    def __init__(self, store, conversations, router, clock=utcnow):
        self.store = store
        self.conversations = conversations
        self.router = router
        self.clock = clock

    def resolve_quota(self, event: PaymentEvent) -> Tuple[int, int, str]:
        """
        Work out (clip_allowance, validity_days, tier) for a payment.

        Hints embedded at checkout win when they are positive integers; the
        catalog fills whatever is missing.

        Raises:
            QuotaResolutionError: a value is missing and the package is unknown
        """
        clips = event.clip_allowance_hint
        days = event.validity_days_hint

        package: Optional[Package] = None
        if clips is None or days is None or event.tier is None:
            try:
                package = resolve_package(event.sport, event.tier)
            except PackageNotFoundError as e:
                if clips is None or days is None:
                    raise QuotaResolutionError(
                        f"Cannot derive quota for payment {event.payment_reference}: {e.message}",
                        payment_reference=event.payment_reference,
                        sport=event.sport,
                        tier=event.tier,
                    ) from e

        if package:
            clips = clips if clips is not None else package.clip_allowance
            days = days if days is not None else package.validity_days

        tier = event.tier or (package.tier if package else CUSTOM_TIER)
        return clips, days, tier

    async def issue(self, event: PaymentEvent) -> IssueResult:
        """
        Create the coaching session for a payment, idempotently.

        Raises:
            QuotaResolutionError: quota cannot be derived (nothing written)
            EntitlementPersistFailure: the charge succeeded but the write failed
        """
        clip_allowance, validity_days, tier = self.resolve_quota(event)

        player_id = None if is_placeholder_player(event.player_id) else event.player_id
        player_name = None if event.player_name in PLACEHOLDER_PLAYER_NAMES else event.player_name

        now = self.clock()
        entitlement = Entitlement(
            id=str(uuid.uuid4()),
            payment_reference=event.payment_reference,
            provider_id=event.provider_id,
            provider_name=event.provider_name,
            player_id=player_id,
            sport=event.sport,
            tier=tier,
            gross_amount=event.gross_amount,
            currency=event.currency,
            clip_allowance=clip_allowance,
            clips_consumed=0,
            routing_mode=event.routing_mode,
            created_at=now,
            expires_at=now + timedelta(days=validity_days),
            status="active",
        )

        doc = entitlement.model_dump()
        doc["created_at"] = to_iso(entitlement.created_at)
        doc["expires_at"] = to_iso(entitlement.expires_at)

        try:
            created = await self.store.insert_entitlement(doc)
            existing = None if created else await self.store.get_entitlement_by_payment_reference(
                event.payment_reference
            )
        except Exception as e:
            logger.error(
                f"CHARGE SUCCEEDED but coaching session write failed for payment "
                f"{event.payment_reference} (provider={event.provider_id}, gross={event.gross_amount} "
                f"{event.currency}, mode={event.routing_mode}): {e}"
            )
            raise EntitlementPersistFailure(
                payment_reference=event.payment_reference,
                provider_id=event.provider_id,
                gross_amount=event.gross_amount,
            ) from e

        if not created:
            if existing is None:
                raise EntitlementPersistFailure(
                    f"Coaching session for payment {event.payment_reference} conflicted but cannot be read",
                    payment_reference=event.payment_reference,
                )
            logger.info(f"Payment {event.payment_reference} already issued; no-op")
            return IssueResult(created=False, entitlement=Entitlement(**existing))

        logger.info(
            f"Issued coaching session {entitlement.id} for payment {event.payment_reference}: "
            f"{clip_allowance} clips, {validity_days} days"
        )

        result = IssueResult(created=True, entitlement=entitlement)

        if player_id:
            try:
                conversation, conversation_created = await self.conversations.upsert_conversation(
                    player_id=player_id,
                    player_name=player_name,
                    provider_id=event.provider_id,
                    provider_name=event.provider_name,
                    sport=event.sport,
                    entitlement_id=entitlement.id,
                )
                result.conversation_id = conversation.id
                result.conversation_created = conversation_created
            except Exception as e:
                logger.error(
                    f"Conversation upsert failed for coaching session {entitlement.id} "
                    f"(player={player_id}, provider={event.provider_id}): {e}"
                )
                result.conversation_error = str(e)
        else:
            logger.info(f"Placeholder player on payment {event.payment_reference}; no conversation created")

        try:
            result.transfer = await self.router.route(entitlement, event)
        except RoutingError as e:
            logger.error(
                f"Routing failed for payment {event.payment_reference} "
                f"(provider={event.provider_id}, gross={event.gross_amount}, mode={event.routing_mode}): "
                f"{e.message}. Manual reconciliation required."
            )
            result.routing_error = e.to_dict()
        except CoachingError as e:
            logger.error(f"Routing error for payment {event.payment_reference}: {e.message}")
            result.routing_error = e.to_dict()

        return result
