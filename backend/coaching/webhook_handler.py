"""
Stripe Webhook Handler for the coaching pipeline
Handles payment, connected account and transfer lifecycle events
"""

import logging
from typing import Optional

from utils.clock import to_iso, utcnow

from .errors import PaymentEventInvalid, QuotaResolutionError
from .events import parse_payment_intent

logger = logging.getLogger(__name__)

# Known events the pipeline does not act on yet. They are acknowledged with
# an explicit not_implemented result, never reported as handled.
NOT_IMPLEMENTED_EVENTS = {
    "payout.paid",
    "payout.failed",
    "invoice.payment_succeeded",
    "invoice.payment_failed",
}


class StripeWebhookHandler:
    """Handle Stripe webhook events"""

    def __init__(self, processor, issuer, accounts, store, clock=utcnow):
        self.processor = processor
        self.issuer = issuer
        self.accounts = accounts
        self.store = store
        self.clock = clock

    def verify_webhook(self, payload: bytes, signature: Optional[str]) -> dict:
        """Verify and parse webhook payload. Raises SignatureError."""
        return self.processor.verify_event_signature(payload, signature)

    async def handle_event(self, event: dict) -> dict:
        """Route event to appropriate handler"""
        event_type = event.get("type")
        data = event.get("data", {}).get("object", {})

        handlers = {
            "payment_intent.succeeded": self._handle_payment_succeeded,
            "payment_intent.payment_failed": self._handle_payment_not_completed,
            "payment_intent.canceled": self._handle_payment_not_completed,
            "account.updated": self._handle_account_updated,
            "account.application.deauthorized": self._handle_account_deauthorized,
            "transfer.created": self._handle_transfer_event,
            "transfer.updated": self._handle_transfer_event,
            "transfer.reversed": self._handle_transfer_event,
        }

        if event_type in NOT_IMPLEMENTED_EVENTS:
            logger.warning(f"Webhook {event_type} received but not implemented; no action taken")
            result = {"status": "not_implemented", "event_type": event_type}
            await self._log_event(event, result)
            return result

        handler = handlers.get(event_type)
        if handler:
            result = await handler(event_type, event, data)

            # Log webhook event
            await self._log_event(event, result)

            return result

        logger.info(f"Unhandled event type: {event_type}")
        return {"status": "ignored", "event_type": event_type}

    async def _log_event(self, event: dict, result: dict):
        """Log webhook event for audit"""
        data = event.get("data", {}).get("object", {})
        await self.store.log_webhook_event({
            "event_id": event.get("id"),
            "event_type": event.get("type"),
            "object_id": data.get("id"),
            "account": event.get("account"),
            "result": result,
            "timestamp": to_iso(self.clock()),
        })

    async def _handle_payment_succeeded(self, event_type: str, event: dict, data: dict) -> dict:
        """
        Issue the coaching session; duplicate deliveries are no-ops.

        EntitlementPersistFailure propagates so the endpoint answers 500 and
        Stripe redelivers.
        """
        try:
            payment_event = parse_payment_intent(data)
        except PaymentEventInvalid as e:
            logger.error(f"Unusable payment_intent.succeeded {data.get('id')}: {e.message}")
            return {"status": "error", "action": "payment_rejected", "reason": e.message}

        try:
            result = await self.issuer.issue(payment_event)
        except QuotaResolutionError as e:
            logger.error(
                f"CHARGE SUCCEEDED but no coaching session issued for {payment_event.payment_reference}: "
                f"{e.message}"
            )
            return {"status": "error", "action": "quota_unresolved", "reason": e.message}

        return {
            "status": "success",
            "action": "session_created" if result.created else "already_processed",
            "payment_intent_id": payment_event.payment_reference,
            "session_id": result.entitlement.id,
            "conversation_id": result.conversation_id,
            "routing_error": result.routing_error,
        }

    async def _handle_payment_not_completed(self, event_type: str, event: dict, data: dict) -> dict:
        error = (data.get("last_payment_error") or {}).get("message")
        logger.info(f"Payment {data.get('id')} not completed ({event_type}): {error or data.get('status')}")
        return {"status": "success", "action": "payment_not_completed", "payment_intent_id": data.get("id")}

    async def _handle_account_updated(self, event_type: str, event: dict, data: dict) -> dict:
        return await self.accounts.apply_processor_status(data)

    async def _handle_account_deauthorized(self, event_type: str, event: dict, data: dict) -> dict:
        # The event object is the application; the account is on the envelope
        account_ref = event.get("account") or data.get("account")
        if not account_ref:
            return {"status": "skipped", "reason": "No account on event"}
        return await self.accounts.mark_deauthorized(account_ref)

    async def _handle_transfer_event(self, event_type: str, event: dict, data: dict) -> dict:
        transfer_ref = data.get("id")
        reversed_ = event_type == "transfer.reversed" or bool(data.get("reversed"))
        status = "failed" if reversed_ else "paid"
        updates = {"failure_reason": "Transfer reversed"} if reversed_ else {}

        record = await self.store.update_transfer_status(transfer_ref, status, updates)
        if not record:
            logger.info(f"{event_type} for transfer {transfer_ref} with no ledger row")
            return {"status": "skipped", "reason": "Transfer not in ledger", "transfer_id": transfer_ref}

        if reversed_:
            logger.warning(
                f"Transfer {transfer_ref} reversed for payment {record.get('payment_reference')} "
                f"(provider={record.get('provider_id')}, net={record.get('net_amount')})"
            )
        return {"status": "success", "action": "transfer_status_updated", "transfer_id": transfer_ref, "new_status": status}
