"""
Stripe Payment Processor Adapter

The only module that knows Stripe's API shape. Everything above it works
with the pydantic results in models.py.

Every network call runs in a worker thread and is bounded by
PROCESSOR_TIMEOUT_SECONDS. Stripe errors and timeouts both surface as
ProcessorError; a timed-out call is a failed call, never retried here.
"""

import asyncio
import json
import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import stripe

from .config import PROCESSOR_LIST_LIMIT, PROCESSOR_TIMEOUT_SECONDS
from .errors import ProcessorError, SignatureError
from .models import AccountLink, AccountStatus, ChargeRecord, ChargeResult, RefundResult, TransferResult

logger = logging.getLogger(__name__)


def _plain(obj: Any) -> Any:
    """Convert StripeObjects (and nested values) into plain dicts and lists."""
    if hasattr(obj, "to_dict"):
        obj = obj.to_dict()
    if isinstance(obj, dict):
        return {key: _plain(value) for key, value in obj.items()}
    if isinstance(obj, list):
        return [_plain(value) for value in obj]
    return obj


def _from_timestamp(value: Optional[int]) -> datetime:
    if value is None:
        return datetime.now(timezone.utc)
    return datetime.fromtimestamp(value, tz=timezone.utc)


def _charge_result(intent: Dict[str, Any]) -> ChargeResult:
    transfer_data = intent.get("transfer_data") or {}
    destination = transfer_data.get("destination")
    if isinstance(destination, dict):
        destination = destination.get("id")
    return ChargeResult(
        id=intent["id"],
        client_secret=intent.get("client_secret"),
        amount=intent.get("amount") or 0,
        currency=intent.get("currency") or "",
        status=intent.get("status") or "unknown",
        metadata={k: str(v) for k, v in (intent.get("metadata") or {}).items() if v is not None},
        destination_account_ref=destination,
        application_fee_amount=intent.get("application_fee_amount"),
        customer_id=intent.get("customer"),
        raw=intent,
    )


class StripeProcessor:
    """Async facade over the stripe library."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        timeout: float = PROCESSOR_TIMEOUT_SECONDS,
    ):
        self.api_key = api_key or os.environ.get("STRIPE_SECRET_KEY")
        self.webhook_secret = webhook_secret or os.environ.get("STRIPE_WEBHOOK_SECRET")
        self.timeout = timeout
        if self.api_key:
            stripe.api_key = self.api_key

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    async def _call(self, operation: str, fn, *args, **kwargs) -> Any:
        if not self.is_configured:
            raise ProcessorError("Stripe is not configured", operation=operation)
        try:
            result = await asyncio.wait_for(
                asyncio.to_thread(fn, *args, **kwargs),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            logger.error(f"Stripe {operation} timed out after {self.timeout}s")
            raise ProcessorError(f"Stripe {operation} timed out", operation=operation)
        except stripe.StripeError as e:
            logger.error(f"Stripe {operation} failed: {e}")
            raise ProcessorError(
                getattr(e, "user_message", None) or str(e),
                operation=operation,
                stripe_code=getattr(e, "code", None),
            )
        return _plain(result)

    # ==================== WEBHOOKS ====================

    def verify_event_signature(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """
        Verify a webhook delivery and return the event as a plain dict.

        Raises:
            SignatureError: missing secret, missing header, bad signature or bad payload
        """
        if not self.webhook_secret:
            raise SignatureError("Stripe webhook secret not configured")
        if not signature:
            raise SignatureError("Missing Stripe-Signature header")

        body = payload.decode("utf-8") if isinstance(payload, bytes) else payload
        try:
            stripe.WebhookSignature.verify_header(body, signature, self.webhook_secret)
            return json.loads(body)
        except stripe.SignatureVerificationError as e:
            logger.error(f"Invalid webhook signature: {e}")
            raise SignatureError()
        except ValueError as e:
            logger.error(f"Invalid webhook payload: {e}")
            raise SignatureError("Invalid webhook payload")

    # ==================== CHARGES ====================

    async def create_charge(
        self,
        amount: int,
        currency: str,
        metadata: Dict[str, str],
        description: Optional[str] = None,
        customer_email: Optional[str] = None,
        destination_account_ref: Optional[str] = None,
        application_fee_amount: Optional[int] = None,
    ) -> ChargeResult:
        params: Dict[str, Any] = {
            "amount": amount,
            "currency": currency,
            "metadata": metadata,
            "automatic_payment_methods": {"enabled": True},
        }
        if description:
            params["description"] = description
        if customer_email:
            params["receipt_email"] = customer_email
        if destination_account_ref:
            params["transfer_data"] = {"destination": destination_account_ref}
            params["application_fee_amount"] = application_fee_amount or 0

        intent = await self._call("create_charge", stripe.PaymentIntent.create, **params)
        logger.info(f"Created payment intent {intent['id']} for {amount} {currency}")
        return _charge_result(intent)

    async def retrieve_payment(self, payment_reference: str) -> ChargeResult:
        intent = await self._call("retrieve_payment", stripe.PaymentIntent.retrieve, payment_reference)
        return _charge_result(intent)

    async def create_refund(
        self,
        payment_reference: str,
        amount: Optional[int] = None,
        reason: Optional[str] = None,
    ) -> RefundResult:
        params: Dict[str, Any] = {"payment_intent": payment_reference}
        if amount:
            params["amount"] = amount
        if reason:
            params["reason"] = reason

        refund = await self._call("create_refund", stripe.Refund.create, **params)
        return RefundResult(
            id=refund["id"],
            amount=refund.get("amount") or 0,
            status=refund.get("status") or "unknown",
            reason=refund.get("reason"),
        )

    # ==================== TRANSFERS ====================

    async def create_transfer(
        self,
        amount: int,
        currency: str,
        destination: str,
        source_transaction: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
        idempotency_key: Optional[str] = None,
    ) -> TransferResult:
        params: Dict[str, Any] = {
            "amount": amount,
            "currency": currency,
            "destination": destination,
            "metadata": metadata or {},
        }
        if source_transaction:
            params["source_transaction"] = source_transaction
        if idempotency_key:
            params["idempotency_key"] = idempotency_key

        transfer = await self._call("create_transfer", stripe.Transfer.create, **params)
        return TransferResult(
            id=transfer["id"],
            amount=transfer.get("amount") or amount,
            currency=transfer.get("currency") or currency,
            destination=destination,
            status="failed" if transfer.get("reversed") else "paid",
            created_at=_from_timestamp(transfer.get("created")),
        )

    # ==================== CONNECTED ACCOUNTS ====================

    async def retrieve_account(self, account_ref: str) -> AccountStatus:
        account = await self._call("retrieve_account", stripe.Account.retrieve, account_ref)
        return AccountStatus(
            processor_account_ref=account["id"],
            charges_enabled=bool(account.get("charges_enabled")),
            payouts_enabled=bool(account.get("payouts_enabled")),
            details_submitted=bool(account.get("details_submitted")),
            provider_id=(account.get("metadata") or {}).get("coach_id"),
        )

    async def create_account(
        self,
        provider_id: str,
        provider_name: str,
        email: str,
        sport: str,
        country: str,
        business_type: str = "individual",
    ) -> AccountStatus:
        """Create an Express connected account able to receive transfers."""
        account = await self._call(
            "create_account",
            stripe.Account.create,
            type="express",
            country=country,
            email=email,
            business_type=business_type,
            capabilities={
                "card_payments": {"requested": True},
                "transfers": {"requested": True},
            },
            business_profile={
                "name": f"{provider_name} - {sport} Coach",
                "product_description": f"Professional {sport} coaching services",
                "support_email": email,
            },
            metadata={"coach_id": provider_id, "coach_name": provider_name, "sport": sport},
            settings={"payouts": {"schedule": {"interval": "daily"}}},
        )
        logger.info(f"Created connected account {account['id']} for provider {provider_id}")
        return AccountStatus(
            processor_account_ref=account["id"],
            charges_enabled=bool(account.get("charges_enabled")),
            payouts_enabled=bool(account.get("payouts_enabled")),
            details_submitted=bool(account.get("details_submitted")),
            provider_id=provider_id,
        )

    async def create_account_link(self, account_ref: str, refresh_url: str, return_url: str) -> AccountLink:
        link = await self._call(
            "create_account_link",
            stripe.AccountLink.create,
            account=account_ref,
            refresh_url=refresh_url,
            return_url=return_url,
            type="account_onboarding",
        )
        expires_at = link.get("expires_at")
        return AccountLink(url=link["url"], expires_at=_from_timestamp(expires_at) if expires_at else None)

    async def list_charges_for_account(
        self,
        account_ref: str,
        limit: int = PROCESSOR_LIST_LIMIT,
    ) -> List[ChargeRecord]:
        """
        Charges settled to the connected account plus transfers sent to it.

        Charges are listed from the platform account and filtered by
        destination; transfers can be filtered server-side.
        """
        charges = await self._call("list_charges", stripe.Charge.list, limit=limit)
        transfers = await self._call(
            "list_transfers", stripe.Transfer.list, destination=account_ref, limit=limit
        )

        records: List[ChargeRecord] = []
        for charge in charges.get("data", []):
            destination = charge.get("destination")
            if isinstance(destination, dict):
                destination = destination.get("id")
            if destination != account_ref:
                continue
            records.append(ChargeRecord(
                id=charge["id"],
                kind="charge",
                payment_reference=charge.get("payment_intent"),
                amount=charge.get("amount") or 0,
                application_fee_amount=charge.get("application_fee_amount"),
                currency=charge.get("currency"),
                status=charge.get("status") or "unknown",
                customer_id=charge.get("customer"),
                description=charge.get("description"),
                created_at=_from_timestamp(charge.get("created")),
            ))

        for transfer in transfers.get("data", []):
            metadata = transfer.get("metadata") or {}
            records.append(ChargeRecord(
                id=transfer["id"],
                kind="transfer",
                payment_reference=metadata.get("payment_reference"),
                amount=transfer.get("amount") or 0,
                currency=transfer.get("currency"),
                status="failed" if transfer.get("reversed") else "paid",
                description=transfer.get("description"),
                created_at=_from_timestamp(transfer.get("created")),
            ))

        logger.info(f"Found {len(records)} processor records for account {account_ref}")
        return records

