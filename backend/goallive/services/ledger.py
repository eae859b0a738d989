"""Bet placement, mid-match changes, and balance reads."""

import logging
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import TYPE_CHECKING, Optional

from goallive.balance import (
    Number,
    apply_change,
    apply_deposit,
    apply_place,
    apply_withdraw,
    calc_payout,
    round_currency,
    to_decimal,
)
from goallive.exceptions import (
    AlreadySettled,
    ExistingActiveBet,
    InvalidStateTransition,
    NotFound,
    ValidationError,
)
from goallive.models import (
    BETTABLE_MATCH_STATUSES,
    MATCH_WINNER_OUTCOMES,
    ZERO,
    BalanceState,
    Bet,
    BetChange,
    BetChangeResult,
    BetKind,
    CustodyInstruction,
    Match,
    PenaltyPreview,
    utcnow,
)
from goallive.penalty import calc_penalty
from goallive.services.base import LedgerService
from goallive.storage.base import LedgerUnit

if TYPE_CHECKING:
    from goallive.services.custody import CustodyClient

logger = logging.getLogger(__name__)

ODDS_QUANTUM = Decimal("0.0001")


def parse_amount(value: Number, name: str = "stake") -> Decimal:
    """Parse a positive currency amount, rounded to cents."""
    try:
        amount = round_currency(to_decimal(value))
    except (InvalidOperation, TypeError, ValueError) as e:
        raise ValidationError(f"Invalid {name}: {value!r}") from e
    if not amount.is_finite() or amount <= 0:
        raise ValidationError(f"{name.capitalize()} must be positive, got {value}")
    return amount


def parse_odds(value: Number) -> Decimal:
    """Parse decimal odds at 4dp; the stored value must stay above 1."""
    try:
        odds = to_decimal(value)
        if odds.is_finite():
            odds = odds.quantize(ODDS_QUANTUM, rounding=ROUND_HALF_UP)
    except (InvalidOperation, TypeError, ValueError) as e:
        raise ValidationError(f"Invalid odds: {value!r}") from e
    if not odds.is_finite() or odds <= 1:
        raise ValidationError(f"Odds must be greater than 1, got {value}")
    return odds


def parse_minute(value: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValidationError(f"Match minute must be a non-negative integer, got {value!r}")
    return value


def normalize_target(kind: BetKind, target: object) -> str:
    """
    Validate a bet target for its market and return its stored form.

    NEXT_GOAL_SCORER takes a player id, MATCH_WINNER one of home/away/draw,
    and EXACT_GOALS a non-negative total goal count.
    """
    if kind == "NEXT_GOAL_SCORER":
        if not isinstance(target, str) or not target.strip():
            raise ValidationError("Next goal scorer target must be a player id")
        return target.strip()

    if kind == "MATCH_WINNER":
        outcome = str(target).strip().lower()
        if outcome not in MATCH_WINNER_OUTCOMES:
            raise ValidationError(
                f"Match winner target must be one of {', '.join(MATCH_WINNER_OUTCOMES)}"
            )
        return outcome

    if kind == "EXACT_GOALS":
        if isinstance(target, bool):
            raise ValidationError("Exact goals target must be a non-negative integer")
        try:
            goals = int(str(target).strip())
        except ValueError as e:
            raise ValidationError("Exact goals target must be a non-negative integer") from e
        if goals < 0:
            raise ValidationError("Exact goals target must be a non-negative integer")
        return str(goals)

    raise ValidationError(f"Unknown bet kind: {kind}")


def _check_roster(match: Match, kind: BetKind, target: str) -> None:
    if kind == "NEXT_GOAL_SCORER" and match.players and target not in match.players:
        raise NotFound(f"Player {target} is not in the roster for match {match.id}")


class BettingLedger(LedgerService):
    """
    Owns the bet lifecycle up to settlement.

    Every mutating call runs under the match lock and inside one unit of work,
    so the bet, its balance effect, and any custody intent commit together.
    """

    async def place_bet(
        self,
        bettor_id: str,
        match_id: str,
        kind: BetKind,
        target: object,
        stake: Number,
        odds: Number,
        minute: int,
        window_index: int,
    ) -> Bet:
        """
        Place a new bet.

        Process:
        1. Validate stake, odds, and target shape
        2. Check the match is live and the window is the open one
        3. Enforce one active next-goal-scorer bet per bettor and match
        4. Move the stake from wallet to locked and queue a custody debit
        """
        if not bettor_id:
            raise ValidationError("Bettor id is required")
        stake = parse_amount(stake)
        odds = parse_odds(odds)
        minute = parse_minute(minute)
        target = normalize_target(kind, target)

        async def work(unit: LedgerUnit) -> Bet:
            match = await self._require_bettable_match(unit, match_id)
            _check_roster(match, kind, target)
            if window_index != match.goal_window:
                raise ValidationError(
                    f"Stale goal window {window_index}; match {match_id} is in window "
                    f"{match.goal_window}"
                )

            if kind == "NEXT_GOAL_SCORER":
                existing = await unit.list_bets(
                    bettor_id=bettor_id,
                    match_id=match_id,
                    kind="NEXT_GOAL_SCORER",
                    statuses=["active"],
                )
                if existing:
                    raise ExistingActiveBet(
                        f"{bettor_id} already has an active next goal scorer bet on {match_id}",
                        bet_id=existing[0].id,
                    )

            balance = apply_place(await unit.get_balance(bettor_id), stake)

            bet = await unit.add_bet(
                Bet(
                    bettor_id=bettor_id,
                    match_id=match_id,
                    kind=kind,
                    original_target=target,
                    current_target=target,
                    original_amount=stake,
                    current_amount=stake,
                    odds=odds,
                    placed_at_minute=minute,
                    goal_window=match.goal_window,
                )
            )
            await unit.save_balance(balance)
            await unit.add_instruction(
                CustodyInstruction(
                    bettor_id=bettor_id, bet_id=bet.id, kind="debit", amount=stake
                )
            )
            unit.require_match_open(match_id)
            return bet

        async with self.locks.hold(match_id):
            bet = await self._transact(work, f"place_bet({bettor_id}, {match_id})")

        logger.info(
            f"Placed bet {bet.id}: {bettor_id} {kind} {target} ${stake} @ {odds} "
            f"(minute {minute}, window {bet.goal_window})"
        )
        return bet

    async def change_bet(
        self,
        bet_id: str,
        new_target: object,
        new_odds: Number,
        minute: int,
    ) -> BetChangeResult:
        """
        Move an active bet to a new target for a time-decaying penalty.

        The penalty comes out of the locked stake; nothing new is drawn from
        the wallet. The goal window is re-baselined to the open one.
        """
        new_odds = parse_odds(new_odds)
        minute = parse_minute(minute)

        known = await self._transact(lambda unit: unit.get_bet(bet_id), f"get_bet({bet_id})")
        if known is None:
            raise NotFound(f"Bet {bet_id} not found")
        target = normalize_target(known.kind, new_target)

        async def work(unit: LedgerUnit) -> BetChangeResult:
            bet = await unit.get_bet(bet_id)
            if bet is None:
                raise NotFound(f"Bet {bet_id} not found")
            match = await self._require_match(unit, bet.match_id)
            if match.is_finished:
                raise AlreadySettled(f"Match {match.id} is finished")
            if bet.status != "active":
                raise InvalidStateTransition(f"Bet {bet_id} is {bet.status}, not active")
            _check_roster(match, bet.kind, target)

            change_number = bet.change_count + 1
            penalty = calc_penalty(
                bet.current_amount, change_number, minute, self.settings.penalty
            )

            change = BetChange(
                bet_id=bet.id,
                sequence=change_number,
                from_target=bet.current_target,
                to_target=target,
                penalty_amount=penalty.penalty_amount,
                penalty_pct=penalty.penalty_pct,
                match_minute=minute,
            )
            updated = await unit.update_bet(
                bet.model_copy(
                    update={
                        "current_target": target,
                        "current_amount": penalty.new_effective_amount,
                        "total_penalties": round_currency(
                            bet.total_penalties + penalty.penalty_amount
                        ),
                        "change_count": change_number,
                        "odds": new_odds,
                        "goal_window": match.goal_window,
                        "updated_at": utcnow(),
                    }
                )
            )
            change = await unit.add_change(change)

            balance = await unit.get_balance(bet.bettor_id)
            await unit.save_balance(apply_change(balance, penalty.penalty_amount))
            unit.require_match_open(match.id)
            return BetChangeResult(bet=updated, change=change, penalty=penalty)

        async with self.locks.hold(known.match_id):
            result = await self._transact(work, f"change_bet({bet_id})")

        logger.info(
            f"Changed bet {bet_id}: {result.change.from_target} -> {result.change.to_target} "
            f"(change #{result.change.sequence}, penalty ${result.penalty.penalty_amount}, "
            f"stake now ${result.bet.current_amount})"
        )
        return result

    async def get_bet(self, bet_id: str) -> Optional[Bet]:
        """Get a bet by ID."""
        return await self._transact(lambda unit: unit.get_bet(bet_id), f"get_bet({bet_id})")

    async def get_bets(self, bettor_id: str, match_id: Optional[str] = None) -> list[Bet]:
        """Get a bettor's bets, optionally for one match."""
        return await self._transact(
            lambda unit: unit.list_bets(bettor_id=bettor_id, match_id=match_id),
            f"get_bets({bettor_id})",
        )

    async def get_changes(self, bet_id: str) -> list[BetChange]:
        return await self._transact(
            lambda unit: unit.list_changes(bet_id), f"get_changes({bet_id})"
        )

    async def get_balance(self, bettor_id: str) -> BalanceState:
        """Stored balance plus the potential payout of the bettor's active bets."""

        async def work(unit: LedgerUnit) -> BalanceState:
            balance = await unit.get_balance(bettor_id)
            active = await unit.list_bets(bettor_id=bettor_id, statuses=["active"])
            potential = sum(
                (calc_payout(bet.current_amount, bet.odds) for bet in active), ZERO
            )
            return balance.model_copy(update={"potential_payout": potential})

        return await self._transact(work, f"get_balance({bettor_id})")

    async def preview_penalty(self, bet_id: str, minute: int) -> PenaltyPreview:
        """Penalty the next change would cost, without changing anything."""
        minute = parse_minute(minute)
        bet = await self.get_bet(bet_id)
        if bet is None:
            raise NotFound(f"Bet {bet_id} not found")
        if bet.status != "active":
            raise InvalidStateTransition(f"Bet {bet_id} is {bet.status}, not active")
        return calc_penalty(
            bet.current_amount, bet.change_count + 1, minute, self.settings.penalty
        )

    async def deposit(self, bettor_id: str, amount: Number) -> BalanceState:
        """Credit a custody-confirmed top-up to the wallet."""
        amount = parse_amount(amount, "amount")

        async def work(unit: LedgerUnit) -> BalanceState:
            balance = await unit.get_balance(bettor_id)
            return await unit.save_balance(apply_deposit(balance, amount))

        balance = await self._transact(work, f"deposit({bettor_id})")
        logger.info(f"Deposited ${amount} for {bettor_id} (wallet ${balance.wallet})")
        return balance

    async def withdraw(self, bettor_id: str, amount: Number) -> BalanceState:
        """Debit the wallet and queue a custody withdrawal."""
        amount = parse_amount(amount, "amount")

        async def work(unit: LedgerUnit) -> BalanceState:
            balance = await unit.get_balance(bettor_id)
            saved = await unit.save_balance(apply_withdraw(balance, amount))
            await unit.add_instruction(
                CustodyInstruction(bettor_id=bettor_id, kind="withdraw", amount=amount)
            )
            return saved

        balance = await self._transact(work, f"withdraw({bettor_id})")
        logger.info(f"Withdrew ${amount} for {bettor_id} (wallet ${balance.wallet})")
        return balance

    async def sync_wallet(self, bettor_id: str, client: "CustodyClient") -> BalanceState:
        """
        Reconcile the wallet with the custody service's free balance.

        A higher custody balance is a confirmed top-up and is credited. A lower
        one is only logged; the ledger never debits on a custody report.
        """
        free = round_currency(await client.get_free_balance(bettor_id))
        balance = await self.get_balance(bettor_id)

        if free > balance.wallet:
            return await self.deposit(bettor_id, free - balance.wallet)
        if free < balance.wallet:
            logger.warning(
                f"Custody reports ${free} free for {bettor_id} but ledger wallet is "
                f"${balance.wallet}; leaving wallet unchanged"
            )
        return balance

    async def _require_match(self, unit: LedgerUnit, match_id: str) -> Match:
        match = await unit.get_match(match_id)
        if match is None:
            raise NotFound(f"Match {match_id} not found")
        return match

    async def _require_bettable_match(self, unit: LedgerUnit, match_id: str) -> Match:
        match = await self._require_match(unit, match_id)
        if match.is_finished:
            raise AlreadySettled(f"Match {match_id} is finished")
        if match.status not in BETTABLE_MATCH_STATUSES:
            raise InvalidStateTransition(
                f"Match {match_id} is {match.status}; bets open at kick-off"
            )
        return match
