"""Settlement arithmetic in base units.

Everything here is integer math. Fees are expressed in basis points and
always rounded down, so the fee can never exceed its nominal rate.
"""
from __future__ import annotations

from dataclasses import dataclass

from django.conf import settings

BPS_DENOMINATOR = 10_000
DEFAULT_PLATFORM_FEE_BPS = 300
DEFAULT_REFUND_FEE_BPS = 300


@dataclass(frozen=True)
class PayoutBreakdown:
    gross_pool: int
    platform_fee: int
    net_payout: int


@dataclass(frozen=True)
class RefundBreakdown:
    stake: int
    fee: int
    refund: int


def platform_fee_bps() -> int:
    return int(getattr(settings, 'PLATFORM_FEE_BPS', DEFAULT_PLATFORM_FEE_BPS))


def refund_fee_bps() -> int:
    return int(getattr(settings, 'REFUND_FEE_BPS', DEFAULT_REFUND_FEE_BPS))


def _check_amount(amount: int) -> None:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise TypeError(f'Amounts must be int base units, got {type(amount).__name__}.')
    if amount < 0:
        raise ValueError('Amounts cannot be negative.')


def compute_payout(stake: int, fee_bps: int | None = None) -> PayoutBreakdown:
    """Split the doubled stake into platform fee and winner payout."""
    _check_amount(stake)
    if fee_bps is None:
        fee_bps = platform_fee_bps()
    gross = stake * 2
    fee = gross * fee_bps // BPS_DENOMINATOR
    return PayoutBreakdown(gross_pool=gross, platform_fee=fee, net_payout=gross - fee)


def compute_refund(stake: int, fee_bps: int | None = None) -> RefundBreakdown:
    """Refund of a single stake minus the operational fee."""
    _check_amount(stake)
    if fee_bps is None:
        fee_bps = refund_fee_bps()
    fee = stake * fee_bps // BPS_DENOMINATOR
    return RefundBreakdown(stake=stake, fee=fee, refund=stake - fee)


def max_claimable(stake: int) -> int:
    """Upper bound on everything ever paid out against one stake."""
    return stake * 2


def within_payout_bound(already_claimed: int, payout: int, stake: int) -> bool:
    return already_claimed + payout <= max_claimable(stake)
