"""Fee, payout and refund arithmetic for wagered challenges.

The plain functions are exact ``Decimal`` arithmetic over a wager and the
platform fee rate. The ``*_breakdown`` helpers additionally round to the
token's minor unit, always letting the platform fee absorb the rounding so
that the parts add back up to the pot exactly.
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_DOWN, ROUND_HALF_UP
from typing import Optional

from ..config import PLATFORM_FEE_RATE
from ..models.challenge import RefundBreakdown
from .tokens import get_token

TWO = Decimal(2)


def _rate(fee_rate: Optional[Decimal]) -> Decimal:
    return PLATFORM_FEE_RATE if fee_rate is None else Decimal(fee_rate)


def total_pot(wager_amount: Decimal) -> Decimal:
    return Decimal(wager_amount) * TWO


def atlas_fee(pot: Decimal, fee_rate: Optional[Decimal] = None) -> Decimal:
    return Decimal(pot) * _rate(fee_rate)


def winner_payout(pot: Decimal, fee_rate: Optional[Decimal] = None) -> Decimal:
    return Decimal(pot) * (1 - _rate(fee_rate))


def tie_refund_each(pot: Decimal, fee_rate: Optional[Decimal] = None) -> Decimal:
    # Each party gets half of the post-fee pot
    return winner_payout(pot, fee_rate) / TWO


@dataclass(frozen=True)
class PayoutBreakdown:
    total_pot: Decimal
    atlas_fee: Decimal
    winner_payout: Decimal


def payout_breakdown(
    wager_amount: Decimal,
    token: Optional[str] = None,
    fee_rate: Optional[Decimal] = None,
) -> PayoutBreakdown:
    pot = total_pot(wager_amount)
    fee = atlas_fee(pot, fee_rate)
    config = get_token(token)
    if config:
        fee = fee.quantize(config.minor_unit, rounding=ROUND_HALF_UP)
    return PayoutBreakdown(total_pot=pot, atlas_fee=fee, winner_payout=pot - fee)


def tie_refund_breakdown(
    wager_amount: Decimal,
    token: Optional[str] = None,
    fee_rate: Optional[Decimal] = None,
) -> RefundBreakdown:
    pot = total_pot(wager_amount)
    each = tie_refund_each(pot, fee_rate)
    config = get_token(token)
    if config:
        each = each.quantize(config.minor_unit, rounding=ROUND_DOWN)
    return RefundBreakdown(
        challenger_refund=each,
        challengee_refund=each,
        atlas_fee_collected=pot - each * TWO,
    )
