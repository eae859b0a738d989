"""Balance bookkeeping rules for wallet, locked, and provisional funds.

Every rule is a pure function that takes the current BalanceState and returns a
new one. The storage unit of work persists the result together with the bet
write, so a reader never observes one without the other.

Rules:
- place:        wallet -= stake; locked += stake
- change:       locked -= penalty
- goal win:     provisional += stake x odds
- goal loss:    locked -= stake
- settle won:   provisional -= credit; locked -= stake; wallet += payout
- settle lost:  locked -= stake (only while the stake is still locked)
- void:         stake refunded to wallet, locked/provisional released
"""

from decimal import ROUND_HALF_UP, Decimal
from typing import Union

from goallive.exceptions import InsufficientBalance, LedgerIntegrityError
from goallive.models import BalanceState

Number = Union[Decimal, int, float, str]

CENT = Decimal("0.01")
MICRO = Decimal("0.000001")


def to_decimal(value: Number) -> Decimal:
    """Convert to Decimal without binary float artifacts."""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    return Decimal(value)


def round_currency(value: Number) -> Decimal:
    """Round to cents, half-up."""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def round_micro(value: Number) -> Decimal:
    """Round to micro-units, used for payout accumulation."""
    return to_decimal(value).quantize(MICRO, rounding=ROUND_HALF_UP)


def calc_payout(stake: Number, odds: Number) -> Decimal:
    """Gross payout (stake x odds) rounded once to cents."""
    return round_currency(round_micro(to_decimal(stake) * to_decimal(odds)))


def _with(balance: BalanceState, **changes: Decimal) -> BalanceState:
    updated = {key: round_currency(value) for key, value in changes.items()}
    for field in ("locked", "provisional"):
        if field in updated and updated[field] < 0:
            raise LedgerIntegrityError(
                f"{field} balance for {balance.bettor_id} would become {updated[field]}"
            )
    if "wallet" in updated and updated["wallet"] < 0:
        raise InsufficientBalance(
            f"Insufficient balance: ${balance.wallet} available for {balance.bettor_id}"
        )
    return balance.model_copy(update=updated)


def apply_place(balance: BalanceState, stake: Number) -> BalanceState:
    stake = to_decimal(stake)
    if stake > balance.wallet:
        raise InsufficientBalance(
            f"Insufficient balance: ${balance.wallet} < ${round_currency(stake)}"
        )
    return _with(balance, wallet=balance.wallet - stake, locked=balance.locked + stake)


def apply_change(balance: BalanceState, penalty: Number) -> BalanceState:
    return _with(balance, locked=balance.locked - to_decimal(penalty))


def apply_goal_win(balance: BalanceState, credit: Number) -> BalanceState:
    return _with(balance, provisional=balance.provisional + to_decimal(credit))


def apply_goal_loss(balance: BalanceState, stake: Number) -> BalanceState:
    return _with(balance, locked=balance.locked - to_decimal(stake))


def apply_settle_won(
    balance: BalanceState,
    stake: Number,
    payout: Number,
    provisional_credit: Number = Decimal("0"),
) -> BalanceState:
    return _with(
        balance,
        provisional=balance.provisional - to_decimal(provisional_credit),
        locked=balance.locked - to_decimal(stake),
        wallet=balance.wallet + to_decimal(payout),
    )


def apply_settle_lost(balance: BalanceState, stake: Number) -> BalanceState:
    return _with(balance, locked=balance.locked - to_decimal(stake))


def apply_void(
    balance: BalanceState,
    stake: Number,
    provisional_credit: Number = Decimal("0"),
    stake_locked: bool = True,
) -> BalanceState:
    stake = to_decimal(stake)
    changes = {
        "wallet": balance.wallet + stake,
        "provisional": balance.provisional - to_decimal(provisional_credit),
    }
    if stake_locked:
        changes["locked"] = balance.locked - stake
    return _with(balance, **changes)


def apply_deposit(balance: BalanceState, amount: Number) -> BalanceState:
    return _with(balance, wallet=balance.wallet + to_decimal(amount))


def apply_withdraw(balance: BalanceState, amount: Number) -> BalanceState:
    amount = to_decimal(amount)
    if amount > balance.wallet:
        raise InsufficientBalance(
            f"Insufficient balance: ${balance.wallet} < ${round_currency(amount)}"
        )
    return _with(balance, wallet=balance.wallet - amount)
