"""
Pricing Engine — turns a principal amount into the commission owed.

    none        -> 0
    fixed       -> amount, whatever the principal
    percentage  -> principal × rate / 100, rounded half-up to the minor unit
    tiers       -> the tier covering the principal; a flat amount, or a
                   percentage applied to the FULL principal (not marginal)

The engine is pure: no I/O, no clock, no state. Failures are raised, never
replaced by a zero commission.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from agency_desk.domain.errors import InvalidAmount, InvalidConfiguration, NoMatchingTier
from agency_desk.domain.schema import (
    FixedCommission,
    NoCommission,
    PercentageCommission,
    TieredCommission,
    parse_commission_config,
)

DEFAULT_CURRENCY_DECIMALS = 0

_HUNDRED = Decimal("100")


def minor_unit(decimals: int) -> Decimal:
    """Smallest representable amount: ``1`` for 0 decimals, ``0.01`` for 2."""
    if decimals < 0:
        raise InvalidConfiguration(f"Currency decimals must be >= 0, got {decimals}")
    return Decimal(1).scaleb(-decimals)


def apply_rate(principal: Decimal, rate: Decimal, decimals: int = DEFAULT_CURRENCY_DECIMALS) -> Decimal:
    """``principal × rate / 100`` rounded half-up to the currency's minor unit."""
    return (principal * rate / _HUNDRED).quantize(minor_unit(decimals), rounding=ROUND_HALF_UP)


def _coerce_principal(principal: Any) -> Decimal:
    if isinstance(principal, bool):
        raise InvalidAmount(f"Principal must be a number, got {principal!r}")
    try:
        value = principal if isinstance(principal, Decimal) else Decimal(str(principal))
    except (InvalidOperation, ValueError):
        raise InvalidAmount(f"Principal must be a number, got {principal!r}") from None
    if not value.is_finite():
        raise InvalidAmount(f"Principal must be finite, got {principal!r}")
    if value < 0:
        raise InvalidAmount(f"Principal must be >= 0, got {value}")
    return value


def resolve_commission(
    config: Any,
    principal: Decimal | int | str,
    decimals: int = DEFAULT_CURRENCY_DECIMALS,
) -> Decimal:
    """
    Resolve the commission owed on ``principal`` under ``config``.

    Args:
        config: A parsed commission variant, or its raw stored JSON shape.
        principal: The operation's principal amount.
        decimals: Minor-unit precision of the currency.

    Returns:
        The commission amount.

    Raises:
        InvalidAmount: If the principal is negative or not a number.
        InvalidConfiguration: If the configuration is malformed.
        NoMatchingTier: If no tier covers the principal.
    """
    amount = _coerce_principal(principal)
    config = parse_commission_config(config)

    if isinstance(config, NoCommission):
        return Decimal("0")
    if isinstance(config, FixedCommission):
        return config.amount
    if isinstance(config, PercentageCommission):
        return apply_rate(amount, config.rate, decimals)
    if isinstance(config, TieredCommission):
        return _resolve_tiered(config, amount, decimals)

    raise InvalidConfiguration(f"Unsupported commission configuration: {config!r}")


def _resolve_tiered(config: TieredCommission, principal: Decimal, decimals: int) -> Decimal:
    for tier in config.tiers:
        if tier.covers(principal):
            if tier.is_percentage:
                return apply_rate(principal, tier.value, decimals)
            return tier.value
    raise NoMatchingTier(f"No commission tier covers amount {principal}")


def describe_commission(config: Any) -> str:
    """One-line summary of a configuration, as shown in the admin list."""
    config = parse_commission_config(config)
    if isinstance(config, NoCommission):
        return "None"
    if isinstance(config, FixedCommission):
        return f"Fixed: {config.amount}"
    if isinstance(config, PercentageCommission):
        return f"Percentage: {config.rate}%"
    return f"Tiers ({len(config.tiers)})"
