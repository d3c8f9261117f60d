"""
Test Suite: Transfer Reconciler
===============================

- ledger and processor rows for the same payment merge into one ledger row
- processor-only rows fill gaps in the ledger
- incomplete charges are excluded, results are newest first
- a processor failure degrades to ledger-only instead of failing
- customer count comes from conversations, else paid payers
"""

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from coaching.accounts import CoachAccountResolver
from coaching.errors import ProcessorError
from coaching.models import ChargeRecord
from coaching.reconciler import TransferReconciler, dedup_key, merge_records, processor_to_transfer

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def ledger_row(record_id, payment_reference, created_at, status="paid", net=4016, payer="player1", **extra):
    row = {
        "id": record_id,
        "payment_reference": payment_reference,
        "transfer_ref": extra.pop("transfer_ref", None),
        "provider_id": "coach1",
        "provider_account_ref": "acct_coach1",
        "gross_amount": 4725,
        "platform_fee": 4725 - net,
        "net_amount": net,
        "currency": "cad",
        "status": status,
        "source": "ledger",
        "payer_id": payer,
        "created_at": created_at.isoformat(),
    }
    row.update(extra)
    return row


def charge(charge_id, payment_reference, created_at, status="succeeded", amount=4725, fee=709, customer="cus_1"):
    return ChargeRecord(
        id=charge_id,
        kind="charge",
        payment_reference=payment_reference,
        amount=amount,
        application_fee_amount=fee,
        currency="cad",
        status=status,
        customer_id=customer,
        created_at=created_at,
    )


class TestTransferReconciler:

    @pytest.fixture
    def reconciler(self, store, processor, clock):
        return TransferReconciler(store, CoachAccountResolver(store, processor, clock), processor)

    @pytest.mark.asyncio
    async def test_ledger_wins_on_shared_payment_reference(self, reconciler, store, processor):
        await store.upsert_coach_account("coach1", {"processor_account_ref": "acct_coach1"})
        store.transfers.append(ledger_row("ledger-uuid-1", "pi_1", T0))
        processor.list_charges_for_account.return_value = [charge("ch_999", "pi_1", T0 + timedelta(minutes=1))]

        listing = await reconciler.list_provider_transfers("coach1")

        assert len(listing.records) == 1
        assert listing.records[0].source == "ledger"
        assert listing.records[0].id == "ledger-uuid-1"
        processor.list_charges_for_account.assert_awaited_once_with("acct_coach1")

    @pytest.mark.asyncio
    async def test_processor_rows_fill_gaps(self, reconciler, store, processor):
        await store.upsert_coach_account("coach1", {"processor_account_ref": "acct_coach1"})
        store.transfers.append(ledger_row("ledger-1", "pi_1", T0))
        processor.list_charges_for_account.return_value = [
            charge("ch_2", "pi_2", T0 + timedelta(days=1)),
        ]

        listing = await reconciler.list_provider_transfers("coach1")

        assert [r.payment_reference for r in listing.records] == ["pi_2", "pi_1"]
        gap = listing.records[0]
        assert gap.source == "processor"
        assert gap.net_amount == 4725 - 709
        assert gap.transfer_ref == "ch_2"

    @pytest.mark.asyncio
    async def test_incomplete_charges_excluded(self, reconciler, store, processor):
        await store.upsert_coach_account("coach1", {"processor_account_ref": "acct_coach1"})
        processor.list_charges_for_account.return_value = [
            charge("ch_1", "pi_1", T0, status="requires_payment_method"),
            charge("ch_2", "pi_2", T0, status="canceled"),
            charge("ch_3", "pi_3", T0, status="succeeded"),
        ]

        listing = await reconciler.list_provider_transfers("coach1")

        assert [r.payment_reference for r in listing.records] == ["pi_3"]

    @pytest.mark.asyncio
    async def test_sorted_newest_first(self, reconciler, store, processor):
        await store.upsert_coach_account("coach1", {"processor_account_ref": "acct_coach1"})
        store.transfers.append(ledger_row("l-old", "pi_old", T0))
        store.transfers.append(ledger_row("l-new", "pi_new", T0 + timedelta(days=3)))
        processor.list_charges_for_account.return_value = [charge("ch_mid", "pi_mid", T0 + timedelta(days=1))]

        listing = await reconciler.list_provider_transfers("coach1")

        assert [r.payment_reference for r in listing.records] == ["pi_new", "pi_mid", "pi_old"]

    @pytest.mark.asyncio
    async def test_processor_failure_degrades_to_ledger(self, reconciler, store, processor):
        await store.upsert_coach_account("coach1", {"processor_account_ref": "acct_coach1"})
        store.transfers.append(ledger_row("ledger-1", "pi_1", T0))
        processor.list_charges_for_account.side_effect = ProcessorError("Stripe list_charges timed out")

        listing = await reconciler.list_provider_transfers("coach1")

        assert listing.summary.degraded is True
        assert [r.id for r in listing.records] == ["ledger-1"]

    @pytest.mark.asyncio
    async def test_no_account_skips_processor(self, reconciler, store, processor):
        store.transfers.append(ledger_row("ledger-1", "pi_1", T0, provider_account_ref=None, status="failed"))

        listing = await reconciler.list_provider_transfers("coach1")

        processor.list_charges_for_account.assert_not_awaited()
        assert listing.summary.degraded is False
        assert listing.records[0].status == "failed"

    @pytest.mark.asyncio
    async def test_summary_totals(self, reconciler, store, processor):
        await store.upsert_coach_account("coach1", {"processor_account_ref": "acct_coach1"})
        store.transfers.append(ledger_row("l1", "pi_1", T0, net=4016, payer="p1"))
        store.transfers.append(ledger_row("l2", "pi_2", T0, net=1000, status="pending", payer="p2"))
        store.transfers.append(ledger_row("l3", "pi_3", T0, net=500, status="failed", payer="p3"))
        processor.list_charges_for_account.return_value = [
            charge("ch_4", "pi_4", T0, amount=2000, fee=300, customer="cus_9"),
        ]

        listing = await reconciler.list_provider_transfers("coach1")
        summary = listing.summary

        assert summary.total_earnings == 4016 + 1700
        assert summary.pending_earnings == 1000
        assert summary.total_transfers == 4
        # No conversations: distinct payers over paid records only
        assert summary.total_customers == 2

    @pytest.mark.asyncio
    async def test_summary_independent_of_page_size(self, reconciler, store, processor):
        await store.upsert_coach_account("coach1", {"processor_account_ref": "acct_coach1"})
        for i in range(3):
            store.transfers.append(ledger_row(f"l{i}", f"pi_{i}", T0 + timedelta(days=i), net=850, payer=f"p{i}"))
        processor.list_charges_for_account.return_value = [charge("ch_9", "pi_9", T0, amount=1000, fee=150)]

        full = await reconciler.list_provider_transfers("coach1", limit=50)
        page = await reconciler.list_provider_transfers("coach1", limit=1)

        assert len(full.records) == 4
        assert [r.payment_reference for r in page.records] == ["pi_2"]
        assert page.summary == full.summary
        assert page.summary.total_earnings == 3 * 850 + 850
        assert page.summary.total_transfers == 4
        assert page.summary.total_customers == 4

    @pytest.mark.asyncio
    async def test_customers_from_conversations(self, reconciler, store, processor):
        for player in ("p1", "p2", "p3"):
            await store.upsert_conversation(
                player, "coach1", {"linked_entitlement_id": "s"}, {"id": f"conv-{player}"}
            )
        store.transfers.append(ledger_row("l1", "pi_1", T0, payer="p1"))

        listing = await reconciler.list_provider_transfers("coach1")

        assert listing.summary.total_customers == 3


class TestMergeRules:

    def test_dedup_key_priority(self):
        record = processor_to_transfer(charge("ch_1", "pi_1", T0), "coach1", "acct")
        assert dedup_key(record) == "pi_1"

        record = processor_to_transfer(charge("ch_1", None, T0), "coach1", "acct")
        assert dedup_key(record) == "ch_1"

    def test_first_occurrence_wins(self):
        a = processor_to_transfer(charge("ch_a", None, T0), "coach1", "acct")
        b = processor_to_transfer(charge("ch_a", None, T0 + timedelta(hours=1)), "coach1", "acct")

        merged = merge_records([a], [b])

        assert merged == [a]

    def test_status_mapping(self):
        assert processor_to_transfer(charge("c", "p", T0, status="pending"), "x", "acct").status == "pending"
        assert processor_to_transfer(charge("c", "p", T0, status="failed"), "x", "acct").status == "failed"
        assert processor_to_transfer(charge("c", "p", T0, status="requires_action"), "x", "acct") is None
