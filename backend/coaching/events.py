"""
Payment event parsing.

Turns a processor payment object into a PaymentEvent. Metadata written by
the current checkout uses snake_case keys; older clients wrote camelCase
keys (coachId, packageType/packageId, paymentType=destination_charge...),
which are still accepted.

Malformed input raises PaymentEventInvalid before anything is written.
"""

from typing import Any, Dict, Optional

from .config import (
    DEFAULT_CURRENCY,
    DEFAULT_ROUTING_MODE,
    LEGACY_DESTINATION_PAYMENT_TYPE,
    ROUTING_DESTINATION,
    ROUTING_MODES,
)
from .errors import PaymentEventInvalid
from .models import PaymentEvent
from .package_catalog import SUBSCRIPTION_TIER, normalize_tier


def _first(metadata: Dict[str, Any], *keys: str) -> Optional[str]:
    for key in keys:
        value = metadata.get(key)
        if value not in (None, "", "null", "undefined"):
            return str(value)
    return None


def positive_int(value: Any) -> Optional[int]:
    """Parse a quota hint. Anything that is not a positive integer is no hint."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, float) and not value.is_integer():
        return None
    try:
        parsed = int(str(value).strip()) if not isinstance(value, (int, float)) else int(value)
    except (TypeError, ValueError):
        return None
    return parsed if parsed > 0 else None


def _checkout_fee(intent: Dict[str, Any], metadata: Dict[str, Any], amount: int) -> Optional[int]:
    """The fee fixed at checkout: the application fee taken, else the metadata figure."""
    for value in (intent.get("application_fee_amount"), metadata.get("platform_fee")):
        if value is None or isinstance(value, bool):
            continue
        try:
            fee = int(str(value).strip())
        except ValueError:
            continue
        if 0 <= fee <= amount:
            return fee
    return None


def _ref(value: Any) -> Optional[str]:
    """Expandable processor fields arrive either as an id or as an object."""
    if isinstance(value, dict):
        return value.get("id")
    return value or None


def _tier(metadata: Dict[str, Any]) -> Optional[str]:
    tier = _first(metadata, "tier")
    if tier:
        return normalize_tier(tier)
    if _first(metadata, "packageType") == SUBSCRIPTION_TIER:
        return SUBSCRIPTION_TIER
    return normalize_tier(_first(metadata, "packageId"))


def _routing_mode(metadata: Dict[str, Any], destination: Optional[str]) -> str:
    mode = _first(metadata, "routing_mode")
    if mode:
        if mode not in ROUTING_MODES:
            raise PaymentEventInvalid(f"Unknown routing mode: {mode}", routing_mode=mode)
        return mode
    if _first(metadata, "paymentType") == LEGACY_DESTINATION_PAYMENT_TYPE or destination:
        return ROUTING_DESTINATION
    return DEFAULT_ROUTING_MODE


def parse_payment_intent(intent: Dict[str, Any]) -> PaymentEvent:
    """
    Build a PaymentEvent from a processor payment intent.

    Args:
        intent: Plain dict of the payment object (id, amount, currency,
            metadata, transfer_data, latest_charge, customer)

    Raises:
        PaymentEventInvalid: missing reference, provider or sport, a
            non-positive amount, or an unknown routing mode
    """
    if not isinstance(intent, dict):
        raise PaymentEventInvalid("Payment object must be a mapping")

    payment_reference = intent.get("id")
    if not payment_reference:
        raise PaymentEventInvalid("Payment event has no payment reference")

    metadata = intent.get("metadata") or {}
    provider_id = _first(metadata, "provider_id", "coachId", "coach_id")
    if not provider_id:
        raise PaymentEventInvalid("Payment event has no provider", payment_reference=payment_reference)

    sport = _first(metadata, "sport")
    if not sport:
        raise PaymentEventInvalid("Payment event has no sport", payment_reference=payment_reference)

    amount = intent.get("amount")
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise PaymentEventInvalid(
            f"Payment amount must be a positive integer, got {amount!r}",
            payment_reference=payment_reference,
        )

    destination = _ref((intent.get("transfer_data") or {}).get("destination"))

    return PaymentEvent(
        payment_reference=payment_reference,
        provider_id=provider_id,
        provider_name=_first(metadata, "provider_name", "coachName", "coach_name"),
        sport=sport.lower(),
        tier=_tier(metadata),
        gross_amount=amount,
        currency=(intent.get("currency") or DEFAULT_CURRENCY).lower(),
        clip_allowance_hint=positive_int(metadata.get("clips")),
        validity_days_hint=positive_int(metadata.get("days")),
        player_id=_first(metadata, "player_id", "playerId"),
        player_name=_first(metadata, "player_name", "playerName"),
        routing_mode=_routing_mode(metadata, destination),
        destination_account_ref=destination,
        charge_ref=_ref(intent.get("latest_charge")),
        platform_fee=_checkout_fee(intent, metadata, amount),
        customer_id=_ref(intent.get("customer")),
    )
