"""Hybrid bet-change penalty.

penalty = base[change_number] x (1 - minute / 90)
base    = [3%, 5%, 8%, 12%, 15%], pinned at 15% from the fifth change on
"""

from decimal import Decimal

from goallive.balance import Number, round_currency, round_micro, to_decimal
from goallive.config import PenaltyConfig
from goallive.models import PenaltyPreview

_DEFAULT_CONFIG = PenaltyConfig()


def get_base_penalty_rate(
    change_number: int, config: PenaltyConfig | None = None
) -> Decimal:
    """Base rate for a 1-indexed change number."""
    rates = (config or _DEFAULT_CONFIG).base_rates
    if change_number <= 0:
        return Decimal("0")
    if change_number >= len(rates):
        return rates[-1]
    return rates[change_number - 1]


def _clamp_minute(minute: Number, full_time: int) -> Decimal:
    return max(Decimal("0"), min(Decimal(full_time), to_decimal(minute)))


def calc_time_decay(minute: Number, config: PenaltyConfig | None = None) -> Decimal:
    """1 at kick-off, 0 at and after full time."""
    full_time = (config or _DEFAULT_CONFIG).full_time_minute
    return (full_time - _clamp_minute(minute, full_time)) / Decimal(full_time)


def calc_penalty(
    current_amount: Number,
    change_number: int,
    minute: Number,
    config: PenaltyConfig | None = None,
) -> PenaltyPreview:
    """
    Calculate the penalty for a bet change.

    Args:
        current_amount: Bet amount before this change
        change_number: 1-indexed change number (1 = first change)
        minute: Current match minute
        config: Penalty schedule, defaults to the standard one

    Returns:
        PenaltyPreview with the rate, amount, and post-penalty stake
    """
    config = config or _DEFAULT_CONFIG
    amount = to_decimal(current_amount)
    full_time = config.full_time_minute

    base = get_base_penalty_rate(change_number, config)
    # multiply before dividing so round minutes stay exact
    penalty_pct = base * (full_time - _clamp_minute(minute, full_time)) / Decimal(full_time)
    penalty_amount = round_currency(amount * penalty_pct)

    return PenaltyPreview(
        penalty_pct=round_micro(penalty_pct),
        penalty_amount=penalty_amount,
        new_effective_amount=round_currency(amount - penalty_amount),
        change_number=change_number,
    )


def format_penalty_pct(penalty_pct: Number) -> str:
    """Format a penalty fraction for display, e.g. '2.34%'."""
    return f"{round_currency(to_decimal(penalty_pct) * 100)}%"
