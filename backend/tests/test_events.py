"""
Test Suite: Payment event parsing

Current snake_case metadata, legacy camelCase metadata, and rejection of
malformed events before anything is written.
"""

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from coaching.errors import PaymentEventInvalid
from coaching.events import parse_payment_intent, positive_int
from coaching.models import PaymentEvent


class TestParsePaymentIntent:

    def test_current_metadata(self, make_intent):
        event = parse_payment_intent(make_intent(clips="7", days="5"))

        assert event.payment_reference == "pi_1"
        assert event.provider_id == "coach1"
        assert event.sport == "golf"
        assert event.tier == "2"
        assert event.gross_amount == 6075
        assert event.clip_allowance_hint == 7
        assert event.validity_days_hint == 5
        assert event.player_id == "player1"
        assert event.routing_mode == "separate_transfer"
        assert event.charge_ref == "ch_pi_1"

    def test_from_payment_intent_classmethod(self, make_intent):
        assert PaymentEvent.from_payment_intent(make_intent()).payment_reference == "pi_1"

    def test_legacy_metadata_keys(self):
        event = parse_payment_intent({
            "id": "pi_legacy",
            "amount": 9450,
            "currency": "CAD",
            "metadata": {
                "coachId": "coach9",
                "coachName": "Legacy Coach",
                "sport": "Badminton",
                "packageType": "subscription",
                "packageId": "subscription",
                "clips": "50",
                "days": "30",
                "paymentType": "destination_charge",
                "playerId": "p9",
                "playerName": "Sam",
            },
            "transfer_data": {"destination": "acct_legacy"},
        })

        assert event.provider_id == "coach9"
        assert event.provider_name == "Legacy Coach"
        assert event.sport == "badminton"
        assert event.tier == "subscription"
        assert event.currency == "cad"
        assert event.routing_mode == "destination"
        assert event.destination_account_ref == "acct_legacy"
        assert event.player_id == "p9"

    def test_legacy_package_id_is_tier(self):
        event = parse_payment_intent({
            "id": "pi_2",
            "amount": 5400,
            "metadata": {"coachId": "c", "sport": "golf", "packageType": "package", "packageId": "1"},
        })
        assert event.tier == "1"
        assert event.routing_mode == "separate_transfer"

    def test_expanded_objects(self, make_intent):
        intent = make_intent()
        intent["latest_charge"] = {"id": "ch_expanded"}
        intent["transfer_data"] = {"destination": {"id": "acct_x"}}

        event = parse_payment_intent(intent)

        assert event.charge_ref == "ch_expanded"
        assert event.destination_account_ref == "acct_x"
        assert event.routing_mode == "separate_transfer"  # explicit metadata wins

    @pytest.mark.parametrize("mutate", [
        lambda i: i.pop("id"),
        lambda i: i["metadata"].pop("provider_id"),
        lambda i: i["metadata"].pop("sport"),
        lambda i: i.__setitem__("amount", 0),
        lambda i: i.__setitem__("amount", "6075"),
        lambda i: i["metadata"].__setitem__("routing_mode", "escrow"),
    ])
    def test_malformed_events_rejected(self, make_intent, mutate):
        intent = make_intent()
        mutate(intent)

        with pytest.raises(PaymentEventInvalid):
            parse_payment_intent(intent)

    def test_not_a_mapping(self):
        with pytest.raises(PaymentEventInvalid):
            parse_payment_intent(None)


class TestPositiveInt:

    @pytest.mark.parametrize("value,expected", [
        ("7", 7), (7, 7), (7.0, 7), (" 3 ", 3),
        ("0", None), (-2, None), ("abc", None), (None, None), (True, None), (2.5, None), ("", None),
    ])
    def test_hints(self, value, expected):
        assert positive_int(value) == expected


class TestCheckoutFee:

    def test_application_fee_preferred(self, make_intent):
        intent = make_intent(amount=4725, platform_fee="600")
        intent["application_fee_amount"] = 709

        assert parse_payment_intent(intent).platform_fee == 709

    def test_metadata_fee(self, make_intent):
        assert parse_payment_intent(make_intent(amount=4725, platform_fee="709")).platform_fee == 709

    @pytest.mark.parametrize("fee", ["abc", "-5", "5000"])
    def test_unusable_fee_ignored(self, make_intent, fee):
        assert parse_payment_intent(make_intent(amount=4725, platform_fee=fee)).platform_fee is None
