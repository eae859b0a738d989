"""Resolve next-goal-scorer bets against confirmed goals, one window at a time.

A goal window is the span between two confirmed goals. A bet is judged only
by the goal that closes the window it was captured in; goals in any other
window never touch it.
"""

import logging

from goallive.balance import apply_goal_loss, apply_goal_win, apply_void, calc_payout
from goallive.exceptions import AlreadySettled, NotFound, ValidationError
from goallive.models import (
    ZERO,
    BalanceState,
    Bet,
    CustodyInstruction,
    GoalResolution,
    Match,
    utcnow,
)
from goallive.services.base import LedgerService
from goallive.storage.base import LedgerUnit

logger = logging.getLogger(__name__)


async def _open_match(unit: LedgerUnit, match_id: str) -> Match:
    match = await unit.get_match(match_id)
    if match is None:
        raise NotFound(f"Match {match_id} not found")
    if match.is_finished:
        raise AlreadySettled(f"Match {match_id} is finished")
    return match


class BalanceBook:
    """Balances touched within one unit of work, saved as they change."""

    def __init__(self, unit: LedgerUnit):
        self.unit = unit
        self._balances: dict[str, BalanceState] = {}

    async def get(self, bettor_id: str) -> BalanceState:
        if bettor_id not in self._balances:
            self._balances[bettor_id] = await self.unit.get_balance(bettor_id)
        return self._balances[bettor_id]

    async def save(self, balance: BalanceState) -> BalanceState:
        saved = await self.unit.save_balance(balance)
        self._balances[balance.bettor_id] = saved
        return saved


class GoalWindowCorrelator(LedgerService):
    """Turns confirmed (and overturned) goals into provisional bet outcomes."""

    async def process_goal_event(
        self,
        match_id: str,
        scoring_target: str,
        minute: int,
        window_index: int,
    ) -> GoalResolution:
        """
        Resolve every active next-goal-scorer bet captured in window_index.

        Bets on the scorer become provisional winners and book their
        stake x odds as provisional credit; the rest forfeit their stake.
        """
        async with self.locks.hold(match_id):
            return await self._transact(
                lambda unit: self.resolve_window(
                    unit, match_id, scoring_target, minute, window_index
                ),
                f"process_goal_event({match_id}, window {window_index})",
            )

    async def void_goal_window(self, match_id: str, window_index: int) -> list[Bet]:
        """Void the provisional outcomes of an overturned goal and refund stakes."""
        async with self.locks.hold(match_id):
            return await self._transact(
                lambda unit: self.void_window(unit, match_id, window_index),
                f"void_goal_window({match_id}, window {window_index})",
            )

    async def resolve_window(
        self,
        unit: LedgerUnit,
        match_id: str,
        scoring_target: str,
        minute: int,
        window_index: int,
    ) -> GoalResolution:
        """Resolve a window inside the caller's unit of work and close it."""
        if not scoring_target:
            raise ValidationError("Scoring target is required")
        if window_index < 0:
            raise ValidationError(f"Invalid goal window {window_index}")

        match = await _open_match(unit, match_id)
        active = await unit.list_bets(
            match_id=match_id, kind="NEXT_GOAL_SCORER", statuses=["active"]
        )

        book = BalanceBook(unit)
        resolution = GoalResolution(
            match_id=match_id, window_index=window_index, scoring_target=scoring_target
        )
        now = utcnow()

        for bet in active:
            if bet.goal_window != window_index:
                continue

            balance = await book.get(bet.bettor_id)
            if bet.current_target == scoring_target:
                credit = calc_payout(bet.current_amount, bet.odds)
                await unit.update_bet(
                    bet.model_copy(
                        update={
                            "status": "provisional_win",
                            "provisional_payout": credit,
                            "updated_at": now,
                        }
                    )
                )
                await book.save(apply_goal_win(balance, credit))
                resolution.winning_bet_ids.append(bet.id)
            else:
                await unit.update_bet(
                    bet.model_copy(update={"status": "provisional_loss", "updated_at": now})
                )
                await book.save(apply_goal_loss(balance, bet.current_amount))
                resolution.losing_bet_ids.append(bet.id)

        if match.goal_window <= window_index or match.current_minute < minute:
            await unit.update_match(
                match.model_copy(
                    update={
                        "goal_window": max(match.goal_window, window_index + 1),
                        "current_minute": max(match.current_minute, minute),
                    }
                )
            )
        unit.require_match_open(match_id)

        logger.info(
            f"Goal by {scoring_target} closed window {window_index} of {match_id} "
            f"(minute {minute}): {len(resolution.winning_bet_ids)} provisional wins, "
            f"{len(resolution.losing_bet_ids)} provisional losses"
        )
        return resolution

    async def void_window(
        self, unit: LedgerUnit, match_id: str, window_index: int
    ) -> list[Bet]:
        """Void a window's provisional bets inside the caller's unit of work."""
        await _open_match(unit, match_id)
        provisional = await unit.list_bets(
            match_id=match_id,
            kind="NEXT_GOAL_SCORER",
            statuses=["provisional_win", "provisional_loss"],
        )

        book = BalanceBook(unit)
        voided = []
        now = utcnow()

        for bet in provisional:
            if bet.goal_window != window_index:
                continue

            balance = await book.get(bet.bettor_id)
            await book.save(
                apply_void(
                    balance,
                    bet.current_amount,
                    provisional_credit=bet.provisional_payout,
                    stake_locked=bet.stake_locked,
                )
            )
            voided.append(await void_bet(unit, bet, now))

        unit.require_match_open(match_id)
        logger.info(f"Voided {len(voided)} bets from window {window_index} of {match_id}")
        return voided


async def void_bet(unit: LedgerUnit, bet: Bet, now) -> Bet:
    """Mark a bet void and queue the custody refund of its stake."""
    updated = await unit.update_bet(
        bet.model_copy(
            update={
                "status": "void",
                "provisional_payout": ZERO,
                "payout": ZERO,
                "settled_at": now,
                "updated_at": now,
            }
        )
    )
    if bet.current_amount > 0:
        await unit.add_instruction(
            CustodyInstruction(
                bettor_id=bet.bettor_id,
                bet_id=bet.id,
                kind="credit",
                amount=bet.current_amount,
            )
        )
    return updated
