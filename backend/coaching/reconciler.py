"""
Transfer Ledger & Reconciler

Read path for a provider's earnings view. Merges two sources of truth:
the local ledger (authoritative) and live processor records (covers local
writes that were skipped or failed).

Merge rules:
- ledger rows first, processor rows after, so the ledger wins ties
- dedup key, in priority order: payment_reference, processor transfer or
  charge id, local record id; first occurrence wins
- records whose charge never completed are dropped
- newest first

A processor failure degrades the view to ledger-only; it never fails the read.
"""

import logging
from typing import Dict, List, Optional, Set

from .config import INCOMPLETE_PAYMENT_STATUSES
from .errors import ProcessorError
from .models import ChargeRecord, TransferListing, TransferRecord, TransferSummary

logger = logging.getLogger(__name__)

# Processor status -> ledger status
STATUS_MAP = {
    "succeeded": "paid",
    "paid": "paid",
    "pending": "pending",
    "processing": "pending",
    "failed": "failed",
}


def dedup_key(record: TransferRecord) -> str:
    return record.payment_reference or record.transfer_ref or record.id


def processor_to_transfer(charge: ChargeRecord, provider_id: str, account_ref: str) -> Optional[TransferRecord]:
    """Map a processor record onto a TransferRecord; None for incomplete charges."""
    if charge.status in INCOMPLETE_PAYMENT_STATUSES:
        return None
    status = STATUS_MAP.get(charge.status)
    if status is None:
        logger.debug(f"Skipping processor record {charge.id} with status {charge.status}")
        return None

    platform_fee = charge.application_fee_amount or 0
    return TransferRecord(
        id=f"stripe_{charge.kind}_{charge.id}",
        payment_reference=charge.payment_reference,
        transfer_ref=charge.id,
        provider_id=provider_id,
        provider_account_ref=account_ref,
        gross_amount=charge.amount,
        platform_fee=platform_fee,
        net_amount=charge.amount - platform_fee,
        currency=charge.currency,
        status=status,
        source="processor",
        payer_id=charge.customer_id,
        description=charge.description,
        created_at=charge.created_at,
    )


def merge_records(ledger: List[TransferRecord], processor: List[TransferRecord]) -> List[TransferRecord]:
    seen: Set[str] = set()
    merged: List[TransferRecord] = []
    for record in [*ledger, *processor]:
        key = dedup_key(record)
        if key in seen:
            continue
        seen.add(key)
        merged.append(record)
    merged.sort(key=lambda r: r.created_at, reverse=True)
    return merged


class TransferReconciler:

    def __init__(self, store, accounts, processor):
        self.store = store
        self.accounts = accounts
        self.processor = processor

    async def list_provider_transfers(self, provider_id: str, limit: int = 50) -> TransferListing:
        """
        Merged transfer history and earnings summary for a provider.

        Args:
            provider_id: Provider (coach) id
            limit: Maximum number of records returned

        Returns:
            TransferListing with the newest `limit` records and a summary over
            the full merged history
        """
        account = await self.accounts.get_account(provider_id)
        account_ref = account.processor_account_ref if account else None

        ledger_docs = await self.store.list_transfers(provider_id, account_ref, limit=None)
        ledger = [TransferRecord(**doc) for doc in ledger_docs]

        processor: List[TransferRecord] = []
        degraded = False
        if account_ref and self.processor is not None:
            try:
                charges = await self.processor.list_charges_for_account(account_ref)
                processor = [
                    record for record in (
                        processor_to_transfer(charge, provider_id, account_ref) for charge in charges
                    )
                    if record is not None
                ]
            except ProcessorError as e:
                logger.warning(f"Processor query failed for {account_ref}; showing ledger only: {e}")
                degraded = True

        merged = merge_records(ledger, processor)
        summary = await self._summarize(provider_id, merged)
        summary.degraded = degraded
        return TransferListing(records=merged[:limit], summary=summary)

    async def _summarize(self, provider_id: str, records: List[TransferRecord]) -> TransferSummary:
        totals: Dict[str, int] = {"paid": 0, "pending": 0}
        for record in records:
            if record.status in totals:
                totals[record.status] += record.net_amount

        return TransferSummary(
            total_earnings=totals["paid"],
            pending_earnings=totals["pending"],
            total_customers=await self._count_customers(provider_id, records),
            total_transfers=len(records),
        )

    async def _count_customers(self, provider_id: str, records: List[TransferRecord]) -> int:
        conversations = await self.store.list_provider_conversations(provider_id)
        if conversations:
            return len({c["player_id"] for c in conversations if c.get("player_id")})
        return len({r.payer_id for r in records if r.status == "paid" and r.payer_id})
