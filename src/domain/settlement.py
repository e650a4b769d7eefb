# src/domain/settlement.py

import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Optional

from src.domain.exceptions import SettlementAlreadyAppliedError

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
HUNDRED = Decimal("100")


@dataclass(frozen=True)
class Settlement:
    commission_rate: Decimal
    commission_amount: Decimal
    net_amount: Decimal


def _as_rate(value) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        rate = Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"Commission rate is not a number: {value!r}") from None
    if not rate.is_finite() or rate < 0 or rate > HUNDRED:
        raise ValueError(f"Commission rate out of range: {rate}")
    return rate


def parse_rate(value) -> Optional[Decimal]:
    """Strict parse for rates we own, e.g. an operator override."""
    return _as_rate(value)


def valid_rate_or_none(value, source: str = "collaborator") -> Optional[Decimal]:
    """
    Lenient parse for rates reported by collaborators.
    A malformed or out-of-range rate counts as not configured.
    """
    try:
        return _as_rate(value)
    except ValueError:
        logger.warning("Ignoring invalid commission rate from %s: %r", source, value)
        return None


def resolve_commission_rate(
    override=None,
    provider_rate=None,
    service_rate=None,
    default_rate=Decimal("10"),
) -> Decimal:
    """
    Picks the first configured rate:
    booking override > provider > service > platform default.
    """
    for candidate in (override, provider_rate, service_rate, default_rate):
        rate = _as_rate(candidate)
        if rate is not None:
            return rate
    raise ValueError("No commission rate configured")


def compute_settlement(total_amount: Decimal, rate: Decimal) -> Settlement:
    total = Decimal(str(total_amount)).quantize(CENT, rounding=ROUND_HALF_UP)
    commission = (total * rate / HUNDRED).quantize(CENT, rounding=ROUND_HALF_UP)
    # Net is derived from the rounded commission so the two always sum to total.
    return Settlement(
        commission_rate=rate,
        commission_amount=commission,
        net_amount=total - commission,
    )


def ensure_not_settled(
    booking_id: str,
    commission_amount: Optional[Decimal],
    net_amount: Optional[Decimal],
) -> None:
    if commission_amount is not None or net_amount is not None:
        raise SettlementAlreadyAppliedError(booking_id)
