"""Full-time settlement of every open bet on a match."""

import logging
from typing import Iterable, Optional

from goallive.balance import (
    apply_settle_lost,
    apply_settle_won,
    apply_void,
    calc_payout,
    round_micro,
)
from goallive.exceptions import (
    AlreadySettled,
    InvalidStateTransition,
    NotFound,
    ValidationError,
)
from goallive.models import (
    MATCH_WINNER_OUTCOMES,
    ZERO,
    Bet,
    CustodyInstruction,
    MatchWinnerOutcome,
    SettledBet,
    SettlementRecord,
    SettlementSummary,
    utcnow,
)
from goallive.services.base import LedgerService
from goallive.services.goals import void_bet
from goallive.storage.base import LedgerUnit

logger = logging.getLogger(__name__)


def derive_winner(score_home: int, score_away: int) -> MatchWinnerOutcome:
    if score_home > score_away:
        return "home"
    if score_away > score_home:
        return "away"
    return "draw"


def _parse_final_score(final_score: Iterable[int]) -> tuple[int, int]:
    try:
        home, away = (int(goals) for goals in final_score)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Final score must be (home, away), got {final_score!r}") from e
    if home < 0 or away < 0:
        raise ValidationError(f"Final score cannot be negative: {home}-{away}")
    return home, away


class SettlementEngine(LedgerService):
    """
    Resolves a finished match exactly once.

    The match is claimed first (finished status plus a unique settlement
    record in one unit of work). Each open bet then settles in its own unit,
    so one bad bet never holds up the rest of the batch.
    """

    async def settle_bets(
        self,
        match_id: str,
        confirmed_scorers: Iterable[str],
        final_score: Iterable[int],
        winner_outcome: Optional[MatchWinnerOutcome] = None,
    ) -> SettlementSummary:
        """
        Settle all bets on a match.

        Process:
        1. Claim the match (a second call raises AlreadySettled)
        2. Settle each non-terminal bet with bounded retries
        3. Write the batch totals back to the settlement record
        """
        async with self.locks.hold(match_id):
            return await self.settle_locked(
                match_id, confirmed_scorers, final_score, winner_outcome
            )

    async def resettle_pending(self, match_id: str) -> SettlementSummary:
        """Settle bets a previous batch could not, without re-claiming the match."""
        async with self.locks.hold(match_id):

            async def load(unit: LedgerUnit) -> SettlementRecord:
                record = await unit.get_settlement(match_id)
                if record is not None:
                    return record
                if await unit.get_match(match_id) is None:
                    raise NotFound(f"Match {match_id} not found")
                raise InvalidStateTransition(f"Match {match_id} has not been settled yet")

            record = await self._transact(load, f"resettle_pending({match_id})")
            return await self._settle_open_bets(record)

    async def settle_locked(
        self,
        match_id: str,
        confirmed_scorers: Iterable[str],
        final_score: Iterable[int],
        winner_outcome: Optional[MatchWinnerOutcome] = None,
    ) -> SettlementSummary:
        """settle_bets for callers already holding the match lock."""
        score_home, score_away = _parse_final_score(final_score)
        if winner_outcome is None:
            winner_outcome = derive_winner(score_home, score_away)
        if winner_outcome not in MATCH_WINNER_OUTCOMES:
            raise ValidationError(f"Invalid winner outcome: {winner_outcome}")
        scorers = list(dict.fromkeys(s for s in confirmed_scorers if s))

        async def claim(unit: LedgerUnit) -> SettlementRecord:
            match = await unit.get_match(match_id)
            if match is None:
                raise NotFound(f"Match {match_id} not found")
            if match.is_finished:
                raise AlreadySettled(f"Match {match_id} already settled")

            await unit.update_match(
                match.model_copy(
                    update={
                        "status": "finished",
                        "score_home": score_home,
                        "score_away": score_away,
                    }
                )
            )
            return await unit.add_settlement(
                SettlementRecord(
                    match_id=match_id,
                    winner_outcome=winner_outcome,
                    score_home=score_home,
                    score_away=score_away,
                    confirmed_scorers=scorers,
                )
            )

        record = await self._transact(claim, f"claim_settlement({match_id})")
        logger.info(
            f"Claimed {match_id} for settlement: {score_home}-{score_away} "
            f"({winner_outcome}), scorers {scorers}"
        )
        return await self._settle_open_bets(record)

    async def _settle_open_bets(self, record: SettlementRecord) -> SettlementSummary:
        match_id = record.match_id
        bets = await self._transact(
            lambda unit: unit.list_bets(match_id=match_id), f"list_bets({match_id})"
        )

        summary = SettlementSummary(
            match_id=match_id,
            winner_outcome=record.winner_outcome,
            confirmed_scorers=record.confirmed_scorers,
        )
        max_attempts = max(1, self.settings.ledger.max_settlement_attempts)

        for bet in bets:
            if bet.is_terminal:
                summary.skipped_bet_ids.append(bet.id)
                continue

            for attempt in range(1, max_attempts + 1):
                try:
                    settled = await self._transact(
                        lambda unit, bet_id=bet.id: self._settle_one(unit, bet_id, record),
                        f"settle_bet({bet.id})",
                    )
                    break
                except Exception as e:
                    logger.warning(
                        f"Settling bet {bet.id} failed (attempt {attempt}/{max_attempts}): {e}"
                    )
            else:
                logger.error(f"Bet {bet.id} left unsettled after {max_attempts} attempts")
                summary.failed_bet_ids.append(bet.id)
                continue

            if settled is None:
                summary.skipped_bet_ids.append(bet.id)
            else:
                summary.settled.append(settled)

        summary.total_payout = round_micro(sum((s.payout for s in summary.settled), ZERO))

        async def record_totals(unit: LedgerUnit) -> SettlementRecord:
            stored = await unit.get_settlement(match_id)
            return await unit.update_settlement(
                stored.model_copy(
                    update={
                        "bets_settled": stored.bets_settled + summary.bets_settled,
                        "winners": stored.winners + summary.winners,
                        "total_payout": round_micro(stored.total_payout + summary.total_payout),
                    }
                )
            )

        await self._transact(record_totals, f"record_settlement({match_id})")

        logger.info(
            f"Settled {match_id}: {summary.bets_settled} bets, {summary.winners} winners, "
            f"${summary.total_payout} paid, {len(summary.failed_bet_ids)} failed"
        )
        return summary

    async def _settle_one(
        self, unit: LedgerUnit, bet_id: str, record: SettlementRecord
    ) -> Optional[SettledBet]:
        """Settle one bet; None if it turned terminal in the meantime."""
        bet = await unit.get_bet(bet_id)
        if bet is None:
            raise NotFound(f"Bet {bet_id} not found")
        if bet.is_terminal:
            return None

        balance = await unit.get_balance(bet.bettor_id)
        now = utcnow()

        if bet.kind == "NEXT_GOAL_SCORER" and bet.status == "provisional_win":
            if bet.current_target not in record.confirmed_scorers:
                # goal no longer stands
                await unit.save_balance(
                    apply_void(
                        balance,
                        bet.current_amount,
                        provisional_credit=bet.provisional_payout,
                        stake_locked=True,
                    )
                )
                voided = await void_bet(unit, bet, now)
                logger.info(f"Voided bet {bet.id}: {bet.current_target} not a confirmed scorer")
                return self._settled(voided)
            return await self._pay_out(unit, bet, balance, now)

        if bet.kind == "NEXT_GOAL_SCORER" and bet.status == "provisional_loss":
            # stake already forfeited when the window closed
            return self._settled(await self._mark_lost(unit, bet, now))

        if self._wins(bet, record):
            return await self._pay_out(unit, bet, balance, now)

        await unit.save_balance(apply_settle_lost(balance, bet.current_amount))
        return self._settled(await self._mark_lost(unit, bet, now))

    @staticmethod
    def _wins(bet: Bet, record: SettlementRecord) -> bool:
        if bet.kind == "MATCH_WINNER":
            return bet.current_target == record.winner_outcome
        if bet.kind == "EXACT_GOALS":
            return int(bet.current_target) == record.score_home + record.score_away
        # an NGS bet still active at full time never saw its window close
        return False

    async def _pay_out(self, unit: LedgerUnit, bet: Bet, balance, now) -> SettledBet:
        payout = calc_payout(bet.current_amount, bet.odds)
        await unit.save_balance(
            apply_settle_won(
                balance,
                bet.current_amount,
                payout,
                provisional_credit=bet.provisional_payout,
            )
        )
        updated = await unit.update_bet(
            bet.model_copy(
                update={
                    "status": "settled_won",
                    "provisional_payout": ZERO,
                    "payout": payout,
                    "settled_at": now,
                    "updated_at": now,
                }
            )
        )
        await unit.add_instruction(
            CustodyInstruction(
                bettor_id=bet.bettor_id, bet_id=bet.id, kind="credit", amount=payout
            )
        )
        logger.info(f"Settled bet {bet.id}: {bet.current_target} WON ${payout}")
        return self._settled(updated)

    @staticmethod
    async def _mark_lost(unit: LedgerUnit, bet: Bet, now) -> Bet:
        logger.info(f"Settled bet {bet.id}: {bet.current_target} LOST")
        return await unit.update_bet(
            bet.model_copy(
                update={"status": "settled_lost", "settled_at": now, "updated_at": now}
            )
        )

    @staticmethod
    def _settled(bet: Bet) -> SettledBet:
        return SettledBet(
            bet_id=bet.id,
            bettor_id=bet.bettor_id,
            target=bet.current_target,
            status=bet.status,
            payout=bet.payout,
        )
