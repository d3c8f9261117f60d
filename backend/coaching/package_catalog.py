"""
Package Catalog & Fee Resolver

Pure lookups over the fixed package catalog and the platform fee split.
No I/O, no side effects.

Rules:
- An unknown (sport, tier) combination is an error, never a default
- platform_fee = round_half_up(gross * fee_percent / 100)
- platform_fee + net_amount == gross, always
"""

from decimal import Decimal, ROUND_HALF_UP
from typing import List, Optional, Tuple, Union

from .config import PACKAGE_PRICING, PLATFORM_FEE_PERCENTAGE
from .errors import PackageNotFoundError
from .models import FeeSplit, Package

SUBSCRIPTION_TIER = "subscription"


def normalize_tier(tier: Union[int, str, None]) -> Optional[str]:
    """
    Normalize a tier given as 1/2/3, "1"/"2"/"3" or "subscription".

    Returns None when the value cannot be a tier.
    """
    if tier is None or isinstance(tier, bool):
        return None
    if isinstance(tier, int):
        return str(tier)
    value = str(tier).strip().lower()
    if not value:
        return None
    if value == SUBSCRIPTION_TIER:
        return value
    try:
        return str(int(value))
    except ValueError:
        return value


def resolve_package(sport: str, tier: Union[int, str, None]) -> Package:
    """
    Look up a package by sport and tier.

    Args:
        sport: Sport name, case-insensitive (badminton, golf)
        tier: 1, 2, 3 or "subscription"

    Returns:
        The catalog Package

    Raises:
        PackageNotFoundError: sport or tier is not in the catalog
    """
    sport_key = (sport or "").strip().lower()
    tier_key = normalize_tier(tier)

    sport_packages = PACKAGE_PRICING.get(sport_key)
    if not sport_packages:
        raise PackageNotFoundError(f"Unsupported sport: {sport}", sport=sport)

    info = sport_packages.get(tier_key) if tier_key else None
    if not info:
        raise PackageNotFoundError(
            f"Invalid package tier {tier!r} for sport {sport_key}",
            sport=sport_key,
            tier=tier_key,
        )

    return Package(
        sport=sport_key,
        tier=tier_key,
        price=info["price"],
        clip_allowance=info["clips"],
        validity_days=info["days"],
    )


def list_packages() -> List[Package]:
    """All catalog packages, ordered by sport then tier."""
    return [
        resolve_package(sport, tier)
        for sport, tiers in PACKAGE_PRICING.items()
        for tier in tiers
    ]


def round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def compute_fee(gross: int, fee_percent: Union[int, float, Decimal] = PLATFORM_FEE_PERCENTAGE) -> Tuple[int, int]:
    """
    Split a gross amount into (platform_fee, net_amount).

    Decimal arithmetic keeps the rounding deterministic: 4725 at 15% is
    708.75, which rounds to 709, leaving 4016 for the provider.
    """
    if isinstance(gross, bool) or not isinstance(gross, int) or gross < 0:
        raise ValueError(f"gross must be a non-negative integer, got {gross!r}")

    pct = Decimal(str(fee_percent))
    if pct < 0 or pct > 100:
        raise ValueError(f"fee_percent must be between 0 and 100, got {fee_percent!r}")

    platform_fee = round_half_up(Decimal(gross) * pct / Decimal(100))
    return platform_fee, gross - platform_fee


def fee_split(gross: int, fee_percent: Union[int, float, Decimal] = PLATFORM_FEE_PERCENTAGE) -> FeeSplit:
    platform_fee, net_amount = compute_fee(gross, fee_percent)
    return FeeSplit(gross=gross, platform_fee=platform_fee, net_amount=net_amount)
