"""
Test Suite: Coaching API endpoints
==================================

Drives the FastAPI app with the in-memory store and a mocked processor:
webhook status codes, the purchase -> chat flow with its guard responses,
the merged transfers view and coach onboarding.
"""

import sys
from pathlib import Path
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

sys.path.insert(0, str(Path(__file__).parent.parent))

from coaching.errors import ProcessorError, SignatureError
from coaching.models import AccountStatus
from server import create_app


def succeeded_event(intent):
    return {"id": "evt_1", "type": "payment_intent.succeeded", "data": {"object": intent}}


@pytest.fixture
def client(services):
    return TestClient(create_app(services))


def post_webhook(client):
    return client.post("/api/webhooks/stripe", content=b"{}", headers={"stripe-signature": "t=1,v1=sig"})


class TestHealthAndCatalog:

    def test_health(self, client):
        response = client.get("/api/health")

        assert response.status_code == 200
        assert response.json()["status"] == "ok"
        assert response.json()["services_ready"] is True

    def test_packages(self, client):
        response = client.get("/api/coaching/packages")

        packages = response.json()["packages"]
        assert len(packages) == 8
        golf_2 = next(p for p in packages if p["sport"] == "golf" and p["tier"] == "2")
        assert golf_2 == {"sport": "golf", "tier": "2", "price": 6075, "clip_allowance": 7, "validity_days": 5}

    def test_services_not_ready(self):
        client = TestClient(create_app())

        response = client.get("/api/connect/coach/coach1/transfers")

        assert response.status_code == 503


class TestWebhookEndpoint:

    def test_bad_signature_is_400(self, client, processor, store):
        processor.verify_event_signature.side_effect = SignatureError()

        response = post_webhook(client)

        assert response.status_code == 400
        assert response.json()["detail"]["error_code"] == "INVALID_SIGNATURE"
        assert store.webhook_logs == []

    def test_persist_failure_is_500(self, client, processor, store, make_intent):
        processor.verify_event_signature.return_value = succeeded_event(make_intent())
        store.insert_entitlement = AsyncMock(side_effect=RuntimeError("primary unreachable"))

        response = post_webhook(client)

        assert response.status_code == 500
        assert response.json()["detail"]["error_code"] == "ENTITLEMENT_PERSIST_FAILED"

    def test_routing_failure_still_acknowledged(self, client, processor, store, make_intent):
        processor.verify_event_signature.return_value = succeeded_event(make_intent())

        response = post_webhook(client)

        assert response.status_code == 200
        assert response.json()["routing_error"]["error_code"] == "ROUTING_UNAVAILABLE"
        assert len(store.entitlements) == 1

    def test_not_implemented_event(self, client, processor):
        processor.verify_event_signature.return_value = {
            "id": "evt_2", "type": "payout.paid", "data": {"object": {"id": "po_1"}},
        }

        response = post_webhook(client)

        assert response.status_code == 200
        assert response.json()["status"] == "not_implemented"


class TestPurchaseToChatFlow:

    def test_full_flow(self, client, processor, store, clock, make_intent):
        processor.verify_event_signature.return_value = succeeded_event(make_intent())
        issued = post_webhook(client).json()
        assert issued["action"] == "session_created"
        conversation_id = issued["conversation_id"]

        listing = client.get("/api/conversations/player1/player").json()
        assert listing["count"] == 1
        assert listing["conversations"][0]["id"] == conversation_id

        url = f"/api/conversations/{conversation_id}/messages"
        for i in range(5):
            response = client.post(url, json={"sender_role": "player", "sender_id": "player1", "content": f"q{i}"})
            assert response.status_code == 200
            assert response.json()["accepted"] is True

        response = client.post(url, json={"sender_role": "player", "sender_id": "player1", "content": "q5"})
        assert response.status_code == 429
        assert response.json()["detail"]["error_code"] == "DAILY_LIMIT_REACHED"

        quota = client.get(f"/api/conversations/{conversation_id}/quota").json()
        assert quota["daily_messages_remaining"] == 0
        assert quota["clips_remaining"] == 7

        store.entitlements[issued["session_id"]]["clips_consumed"] = 7
        response = client.post(url, json={
            "sender_role": "player", "sender_id": "player1", "type": "video",
            "content": "swing", "video_uri": "s3://swing.mp4",
        })
        assert response.status_code == 402
        assert response.json()["detail"]["error_code"] == "CLIPS_EXHAUSTED"

        reply = client.post(url, json={"sender_role": "provider", "sender_id": "coach1", "content": "Looks good"})
        assert reply.status_code == 200

        clock.advance(days=6)
        response = client.post(url, json={"sender_role": "player", "sender_id": "player1", "content": "still there?"})
        assert response.status_code == 403
        assert response.json()["detail"]["error_code"] == "CHAT_EXPIRED"

        history = client.get(url).json()
        assert history["count"] == 6

        read = client.post(f"/api/conversations/{conversation_id}/read", json={"role": "player"})
        assert read.json()["unread_counts"]["player"] == 0

    def test_unknown_conversation_is_404(self, client):
        response = client.post(
            "/api/conversations/missing/messages",
            json={"sender_role": "player", "sender_id": "player1", "content": "hi"},
        )

        assert response.status_code == 404


class TestPaymentEndpoints:

    def test_create_intent(self, client, processor):
        response = client.post("/api/payments/create-intent", json={
            "coach_id": "coach1", "coach_name": "Coach One", "sport": "golf", "tier": "2",
        })

        assert response.status_code == 200
        assert response.json()["payment_intent_id"] == "pi_new"
        assert processor.create_charge.await_args.kwargs["amount"] == 6075

    def test_create_intent_unknown_tier(self, client, processor):
        response = client.post("/api/payments/create-intent", json={
            "coach_id": "coach1", "coach_name": "Coach One", "sport": "golf", "tier": "5",
        })

        assert response.status_code == 400
        assert response.json()["detail"]["error_code"] == "PACKAGE_NOT_FOUND"
        processor.create_charge.assert_not_awaited()

    def test_confirm_not_succeeded(self, client, processor):
        from coaching.models import ChargeResult
        processor.retrieve_payment.return_value = ChargeResult(
            id="pi_1", amount=6075, currency="cad", status="processing",
        )

        response = client.post("/api/payments/confirm", json={"payment_intent_id": "pi_1"})

        assert response.status_code == 400
        assert response.json()["detail"]["error_code"] == "PAYMENT_NOT_SUCCEEDED"


class TestConnectEndpoints:

    def test_transfers(self, client, store, processor):
        store.coach_accounts["coach1"] = {"provider_id": "coach1", "processor_account_ref": "acct_coach1"}
        store.transfers.append({
            "id": "t1", "payment_reference": "pi_1", "transfer_ref": "tr_1", "provider_id": "coach1",
            "provider_account_ref": "acct_coach1", "gross_amount": 4725, "platform_fee": 709,
            "net_amount": 4016, "currency": "cad", "status": "paid", "source": "ledger",
            "payer_id": "player1", "created_at": "2026-03-10T10:00:00+00:00",
        })

        response = client.get("/api/connect/coach/coach1/transfers")

        assert response.status_code == 200
        body = response.json()
        assert len(body["records"]) == 1
        assert body["summary"]["total_earnings"] == 4016
        assert body["summary"]["degraded"] is False

    def test_status_without_account(self, client):
        response = client.get("/api/connect/coach/nobody/status")

        assert response.json() == {"provider_id": "nobody", "connected": False, "usable": False}

    def test_status_refreshes_from_processor(self, client, store, processor):
        store.coach_accounts["coach1"] = {"provider_id": "coach1", "processor_account_ref": "acct_coach1"}
        processor.retrieve_account.return_value = AccountStatus(
            processor_account_ref="acct_coach1", charges_enabled=True, payouts_enabled=True, details_submitted=True,
        )

        body = client.get("/api/connect/coach/coach1/status").json()

        assert body["connected"] is True
        assert body["usable"] is True
        assert body["charges_enabled"] is True


class TestOnboardingEndpoints:

    ACCOUNT_BODY = {"coach_id": "coach1", "coach_name": "Coach One", "email": "coach@example.com", "sport": "golf"}

    def test_start_onboarding_enables_routing(self, client, services, store, processor, make_intent):
        response = client.post("/api/connect/start-onboarding", json=self.ACCOUNT_BODY)

        assert response.status_code == 200
        body = response.json()
        assert body["account"]["processor_account_ref"] == "acct_new"
        assert body["onboarding_link"]["url"].startswith("https://connect.stripe.com/")

        # The next purchase is routed by separate transfer to the new account
        processor.verify_event_signature.return_value = succeeded_event(make_intent())
        issued = post_webhook(client).json()
        assert issued["routing_error"] is None
        assert processor.create_transfer.await_args.kwargs["destination"] == "acct_new"

    def test_create_account(self, client, store):
        response = client.post("/api/connect/create-account", json=self.ACCOUNT_BODY)

        assert response.status_code == 200
        assert store.coach_accounts["coach1"]["processor_account_ref"] == "acct_new"

    def test_coach_onboarding_link_without_account_is_404(self, client):
        response = client.get("/api/connect/coach/coach1/onboarding-link")

        assert response.status_code == 404
        assert response.json()["detail"]["error_code"] == "ACCOUNT_NOT_FOUND"

    def test_coach_onboarding_link(self, client, store, processor):
        store.coach_accounts["coach1"] = {"provider_id": "coach1", "processor_account_ref": "acct_coach1"}

        response = client.get("/api/connect/coach/coach1/onboarding-link", params={"return_url": "https://app/done"})

        assert response.status_code == 200
        assert response.json()["account"]["processor_account_ref"] == "acct_coach1"
        assert processor.create_account_link.await_args.kwargs["return_url"] == "https://app/done"

    def test_account_onboarding_link_without_body(self, client, processor):
        response = client.post("/api/connect/account/acct_coach1/onboarding-link")

        assert response.status_code == 200
        assert processor.create_account_link.await_args.args == ("acct_coach1",)

    def test_processor_failure_is_502(self, client, processor):
        processor.create_account.side_effect = ProcessorError("Stripe create_account timed out")

        response = client.post("/api/connect/create-account", json=self.ACCOUNT_BODY)

        assert response.status_code == 502
