"""
Fund Router

Moves (or records the movement of) the provider's share of a payment.

Two mutually exclusive modes, fixed at checkout time in the payment metadata:
- destination: the processor already settled gross minus the application
  fee to the connected account. Only a ledger row is written.
- separate_transfer: the platform holds the gross amount; an explicit
  transfer of the net amount is issued against the original charge.

Failures are recorded as `failed` ledger rows, logged, and raised. Nothing
here retries: money may already have moved, so a human reconciles.
"""

import logging
import uuid
from typing import Optional, Tuple

from utils.clock import to_iso, utcnow

from .config import PLATFORM_FEE_PERCENTAGE, ROUTING_DESTINATION
from .errors import ProcessorError, RoutingUnavailable, TransferFailed
from .models import Entitlement, PaymentEvent, TransferRecord
from .package_catalog import compute_fee

logger = logging.getLogger(__name__)


class FundRouter:

    def __init__(self, store, accounts, processor, clock=utcnow, fee_percent=PLATFORM_FEE_PERCENTAGE):
        self.store = store
        self.accounts = accounts
        self.processor = processor
        self.clock = clock
        self.fee_percent = fee_percent

    async def route(self, entitlement: Entitlement, event: PaymentEvent) -> TransferRecord:
        """
        Route funds for a freshly issued coaching session.

        Raises:
            RoutingUnavailable: provider has no usable connected account
            TransferFailed: the explicit transfer call failed or timed out
        """
        if event.routing_mode == ROUTING_DESTINATION:
            return await self._record_destination(entitlement, event)
        return await self._transfer(entitlement, event)

    def _split(self, event: PaymentEvent) -> Tuple[int, int]:
        """(platform_fee, net_amount). The fee fixed at checkout wins over the current percentage."""
        if event.platform_fee is not None:
            return event.platform_fee, event.gross_amount - event.platform_fee
        return compute_fee(event.gross_amount, self.fee_percent)

    async def _record_destination(self, entitlement: Entitlement, event: PaymentEvent) -> TransferRecord:
        platform_fee, net_amount = self._split(event)
        account_ref = event.destination_account_ref or await self.accounts.get_account_ref(event.provider_id)

        record = self._record(
            event,
            record_id=f"dest_{event.payment_reference}",
            transfer_ref=event.charge_ref,
            account_ref=account_ref,
            platform_fee=platform_fee,
            net_amount=net_amount,
            status="paid",
            description=f"Destination charge for coaching session {entitlement.id}",
        )
        await self._save(record)
        logger.info(
            f"Recorded destination charge {event.payment_reference}: "
            f"net {net_amount} to {account_ref} (fee {platform_fee})"
        )
        return record

    async def _transfer(self, entitlement: Entitlement, event: PaymentEvent) -> TransferRecord:
        platform_fee, net_amount = self._split(event)

        try:
            account_ref = await self.accounts.require_account_ref(event.provider_id)
        except RoutingUnavailable as e:
            await self._record_failure(event, None, platform_fee, net_amount, e.message)
            raise

        if net_amount == 0:
            record = self._record(
                event, record_id=str(uuid.uuid4()), transfer_ref=None, account_ref=account_ref,
                platform_fee=platform_fee, net_amount=0, status="paid",
                description="Nothing to transfer",
            )
            await self._save(record)
            return record

        try:
            transfer = await self.processor.create_transfer(
                amount=net_amount,
                currency=event.currency,
                destination=account_ref,
                source_transaction=event.charge_ref,
                metadata={
                    "payment_reference": event.payment_reference,
                    "provider_id": event.provider_id,
                    "coaching_session_id": entitlement.id,
                },
                idempotency_key=f"transfer-{event.payment_reference}",
            )
        except ProcessorError as e:
            await self._record_failure(event, account_ref, platform_fee, net_amount, e.message)
            raise TransferFailed(
                f"Transfer to {account_ref} failed: {e.message}",
                payment_reference=event.payment_reference,
                provider_id=event.provider_id,
                net_amount=net_amount,
            ) from e

        record = self._record(
            event,
            record_id=str(uuid.uuid4()),
            transfer_ref=transfer.id,
            account_ref=account_ref,
            platform_fee=platform_fee,
            net_amount=net_amount,
            status=transfer.status,
            description=f"Transfer for coaching session {entitlement.id}",
        )
        await self._save(record)
        logger.info(
            f"Transferred {net_amount} {event.currency} to {account_ref} "
            f"for payment {event.payment_reference} (transfer {transfer.id})"
        )
        return record

    def _record(
        self,
        event: PaymentEvent,
        record_id: str,
        transfer_ref: Optional[str],
        account_ref: Optional[str],
        platform_fee: int,
        net_amount: int,
        status: str,
        description: Optional[str] = None,
        failure_reason: Optional[str] = None,
    ) -> TransferRecord:
        return TransferRecord(
            id=record_id,
            payment_reference=event.payment_reference,
            transfer_ref=transfer_ref,
            provider_id=event.provider_id,
            provider_account_ref=account_ref,
            gross_amount=event.gross_amount,
            platform_fee=platform_fee,
            net_amount=net_amount,
            currency=event.currency,
            status=status,
            source="ledger",
            routing_mode=event.routing_mode,
            payer_id=event.player_id or event.customer_id,
            failure_reason=failure_reason,
            description=description,
            created_at=self.clock(),
        )

    async def _save(self, record: TransferRecord) -> None:
        doc = record.model_dump()
        doc["created_at"] = to_iso(record.created_at)
        if not await self.store.insert_transfer(doc):
            logger.info(f"Transfer record for payment {record.payment_reference} already exists")

    async def _record_failure(
        self,
        event: PaymentEvent,
        account_ref: Optional[str],
        platform_fee: int,
        net_amount: int,
        reason: str,
    ) -> None:
        logger.error(
            f"Fund routing failed for payment {event.payment_reference}: {reason} "
            f"(provider={event.provider_id}, account={account_ref}, gross={event.gross_amount}, "
            f"fee={platform_fee}, net={net_amount}, mode={event.routing_mode})"
        )
        record = self._record(
            event,
            record_id=str(uuid.uuid4()),
            transfer_ref=None,
            account_ref=account_ref,
            platform_fee=platform_fee,
            net_amount=net_amount,
            status="failed",
            failure_reason=reason,
        )
        await self._save(record)
