"""
Checkout Service

Creates the processor charge for a package, confirms it synchronously
(the first of the two deliveries the issuer sees), and forwards refunds.

The charge metadata carries everything the issuer needs later, so the
webhook path can issue a coaching session without any other context.
"""

import logging
from typing import Any, Dict, Optional, Union

from .config import (
    DEFAULT_CURRENCY,
    DEFAULT_ROUTING_MODE,
    PLACEHOLDER_PLAYER_NAMES,
    PLATFORM_FEE_PERCENTAGE,
    ROUTING_DESTINATION,
    ROUTING_MODES,
)
from .errors import PaymentEventInvalid, PaymentNotSucceeded
from .events import parse_payment_intent
from .issuer import is_placeholder_player
from .models import IssueResult, RefundResult
from .package_catalog import SUBSCRIPTION_TIER, fee_split, resolve_package

logger = logging.getLogger(__name__)


class CheckoutService:

    def __init__(self, processor, accounts, issuer, fee_percent=PLATFORM_FEE_PERCENTAGE):
        self.processor = processor
        self.accounts = accounts
        self.issuer = issuer
        self.fee_percent = fee_percent

    async def create_checkout(
        self,
        provider_id: str,
        provider_name: str,
        sport: str,
        tier: Union[int, str],
        player_id: Optional[str] = None,
        player_name: Optional[str] = None,
        customer_email: Optional[str] = None,
        routing_mode: str = DEFAULT_ROUTING_MODE,
    ) -> Dict[str, Any]:
        """
        Create a payment for a package.

        Raises:
            PackageNotFoundError: unknown sport or tier
            RoutingUnavailable: destination mode and the provider cannot receive funds
            ProcessorError: the charge could not be created
        """
        if routing_mode not in ROUTING_MODES:
            raise PaymentEventInvalid(f"Unknown routing mode: {routing_mode}", routing_mode=routing_mode)

        package = resolve_package(sport, tier)
        split = fee_split(package.price, self.fee_percent)

        metadata = {
            "provider_id": provider_id,
            "provider_name": provider_name,
            "sport": package.sport,
            "tier": package.tier,
            "package_price": str(package.price),
            "clips": str(package.clip_allowance),
            "days": str(package.validity_days),
            "platform_fee": str(split.platform_fee),
            "net_amount": str(split.net_amount),
            "routing_mode": routing_mode,
        }
        if not is_placeholder_player(player_id):
            metadata["player_id"] = player_id
        if player_name and player_name not in PLACEHOLDER_PLAYER_NAMES:
            metadata["player_name"] = player_name

        destination = None
        if routing_mode == ROUTING_DESTINATION:
            destination = await self.accounts.require_account_ref(provider_id)

        label = "Monthly subscription" if package.tier == SUBSCRIPTION_TIER else f"{package.clip_allowance} clips package"
        charge = await self.processor.create_charge(
            amount=package.price,
            currency=DEFAULT_CURRENCY,
            metadata=metadata,
            description=f"{label} with {provider_name} for {package.sport}",
            customer_email=customer_email,
            destination_account_ref=destination,
            application_fee_amount=split.platform_fee if destination else None,
        )

        logger.info(
            f"Checkout {charge.id} created: {package.sport} tier {package.tier} "
            f"for provider {provider_id} ({routing_mode})"
        )
        return {
            "payment_intent_id": charge.id,
            "client_secret": charge.client_secret,
            "routing_mode": routing_mode,
            "package": package.model_dump(),
            "fee": split.model_dump(),
            "currency": DEFAULT_CURRENCY,
        }

    async def confirm_payment(self, payment_reference: str) -> IssueResult:
        """
        Synchronous confirmation path. Idempotent with the webhook path.

        Raises:
            PaymentNotSucceeded: the charge has not completed
        """
        charge = await self.processor.retrieve_payment(payment_reference)
        if charge.status != "succeeded":
            raise PaymentNotSucceeded(
                f"Payment {payment_reference} is {charge.status}",
                payment_reference=payment_reference,
                status=charge.status,
            )

        event = parse_payment_intent(charge.raw or {
            "id": charge.id,
            "amount": charge.amount,
            "currency": charge.currency,
            "metadata": charge.metadata,
            "customer": charge.customer_id,
            "transfer_data": {"destination": charge.destination_account_ref} if charge.destination_account_ref else None,
        })
        return await self.issuer.issue(event)

    async def refund(
        self,
        payment_reference: str,
        amount: Optional[int] = None,
        reason: Optional[str] = None,
    ) -> RefundResult:
        """Refunds leave coaching sessions untouched."""
        refund = await self.processor.create_refund(payment_reference, amount=amount, reason=reason)
        logger.info(f"Refund {refund.id} for payment {payment_reference}: {refund.amount} ({refund.status})")
        return refund
