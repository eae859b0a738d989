"""Feed intake: match lifecycle, minute ticks, goals, and the full-time whistle."""

import logging
from typing import Iterable, Literal, Optional

from goallive.exceptions import (
    AlreadySettled,
    InvalidStateTransition,
    NotFound,
    ValidationError,
)
from goallive.models import (
    Bet,
    GoalRecord,
    GoalResolution,
    Match,
    MatchStatus,
    MatchWinnerOutcome,
    SettlementSummary,
)
from goallive.services.base import LedgerService, MatchLocks
from goallive.services.goals import GoalWindowCorrelator
from goallive.services.settlement import SettlementEngine
from goallive.storage.base import LedgerStore, LedgerUnit

logger = logging.getLogger(__name__)

# Status changes the feed may drive; finishing goes through full_time()
STATUS_TRANSITIONS: dict[str, frozenset[str]] = {
    "pre-match": frozenset({"live"}),
    "live": frozenset({"halftime"}),
    "halftime": frozenset({"live"}),
    "finished": frozenset(),
}


class MatchTracker(LedgerService):
    """
    Applies external match events to the ledger in arrival order.

    Every event runs under the match lock, so a goal, a minute tick, and the
    full-time whistle for one match never interleave.
    """

    def __init__(
        self,
        store: LedgerStore,
        correlator: GoalWindowCorrelator,
        settlement: SettlementEngine,
        settings=None,
        locks: Optional[MatchLocks] = None,
    ):
        super().__init__(store, settings, locks)
        self.correlator = correlator
        self.settlement = settlement

    async def register_match(
        self,
        match_id: str,
        home_team: str,
        away_team: str,
        players: Iterable[str] = (),
    ) -> Match:
        """Register a pre-match fixture with an optional player roster."""
        if not match_id:
            raise ValidationError("Match id is required")
        match = Match(
            id=match_id,
            home_team=home_team,
            away_team=away_team,
            players=list(dict.fromkeys(p for p in players if p)),
        )

        async with self.locks.hold(match_id):
            match = await self._transact(
                lambda unit: unit.add_match(match), f"register_match({match_id})"
            )

        logger.info(f"Registered match {match_id}: {home_team} v {away_team}")
        return match

    async def get_match(self, match_id: str) -> Match:
        async def work(unit: LedgerUnit) -> Match:
            return await self._require_match(unit, match_id)

        return await self._transact(work, f"get_match({match_id})")

    async def set_status(self, match_id: str, status: MatchStatus) -> Match:
        """Move a match between pre-match, live, and halftime."""

        async def work(unit: LedgerUnit) -> Match:
            match = await self._require_open_match(unit, match_id)
            if status == match.status:
                return match
            if status == "finished":
                raise InvalidStateTransition("Finish a match through full_time()")
            if status not in STATUS_TRANSITIONS[match.status]:
                raise InvalidStateTransition(
                    f"Match {match_id} cannot go from {match.status} to {status}"
                )
            return await unit.update_match(match.model_copy(update={"status": status}))

        async with self.locks.hold(match_id):
            match = await self._transact(work, f"set_status({match_id}, {status})")

        logger.info(f"Match {match_id} is now {match.status}")
        return match

    async def record_minute(self, match_id: str, minute: int) -> Match:
        """Advance the match clock; late or repeated ticks are ignored."""
        if minute < 0:
            raise ValidationError(f"Invalid match minute {minute}")

        async def work(unit: LedgerUnit) -> Match:
            match = await self._require_open_match(unit, match_id)
            if minute <= match.current_minute:
                logger.debug(
                    f"Ignoring minute {minute} for {match_id} (clock at {match.current_minute})"
                )
                return match
            return await unit.update_match(match.model_copy(update={"current_minute": minute}))

        async with self.locks.hold(match_id):
            return await self._transact(work, f"record_minute({match_id}, {minute})")

    async def confirm_goal(
        self,
        match_id: str,
        scoring_target: str,
        team: Literal["home", "away"],
        minute: int,
        window_index: Optional[int] = None,
    ) -> Optional[GoalResolution]:
        """
        Record a confirmed goal and resolve the window it closes.

        window_index defaults to the match's open window. A goal for a window
        that already has one is a duplicate feed message and is ignored.
        """
        if team not in ("home", "away"):
            raise ValidationError(f"Goal team must be home or away, got {team!r}")
        if not scoring_target:
            raise ValidationError("Scoring target is required")

        async def work(unit: LedgerUnit) -> Optional[GoalResolution]:
            match = await self._require_open_match(unit, match_id)
            window = match.goal_window if window_index is None else window_index

            if await unit.get_goal(match_id, window) is not None:
                logger.warning(f"Duplicate goal for {match_id} window {window}; ignoring")
                return None
            if window != match.goal_window:
                raise ValidationError(
                    f"Goal for window {window} but {match_id} is in window {match.goal_window}"
                )

            await unit.add_goal(
                GoalRecord(
                    match_id=match_id,
                    window_index=window,
                    scoring_target=scoring_target,
                    team=team,
                    minute=minute,
                )
            )
            score = "score_home" if team == "home" else "score_away"
            await unit.update_match(
                match.model_copy(update={score: getattr(match, score) + 1})
            )
            return await self.correlator.resolve_window(
                unit, match_id, scoring_target, minute, window
            )

        async with self.locks.hold(match_id):
            return await self._transact(work, f"confirm_goal({match_id})")

    async def overturn_goal(self, match_id: str, window_index: int) -> list[Bet]:
        """Reverse a confirmed goal and void the provisional outcomes it produced."""

        async def work(unit: LedgerUnit) -> list[Bet]:
            match = await self._require_open_match(unit, match_id)
            goal = await unit.get_goal(match_id, window_index)
            if goal is None:
                raise NotFound(f"No goal recorded for {match_id} window {window_index}")
            if goal.overturned:
                logger.warning(f"Goal in {match_id} window {window_index} already overturned")
                return []

            await unit.update_goal(goal.model_copy(update={"overturned": True}))
            if goal.team is not None:
                score = "score_home" if goal.team == "home" else "score_away"
                await unit.update_match(
                    match.model_copy(update={score: max(0, getattr(match, score) - 1)})
                )
            return await self.correlator.void_window(unit, match_id, window_index)

        async with self.locks.hold(match_id):
            voided = await self._transact(work, f"overturn_goal({match_id}, {window_index})")

        logger.info(f"Overturned goal in {match_id} window {window_index}")
        return voided

    async def full_time(
        self,
        match_id: str,
        final_score: Optional[tuple[int, int]] = None,
        winner: Optional[MatchWinnerOutcome] = None,
    ) -> SettlementSummary:
        """
        Blow the final whistle and settle the match.

        Confirmed scorers come from goals that were not overturned; the final
        score defaults to the tracked one and the winner is derived from it.
        """
        async def load(unit: LedgerUnit) -> tuple[Match, list[GoalRecord]]:
            match = await self._require_match(unit, match_id)
            if match.is_finished:
                raise AlreadySettled(f"Match {match_id} already settled")
            return match, await unit.list_goals(match_id)

        async with self.locks.hold(match_id):
            match, goals = await self._transact(load, f"full_time({match_id})")
            scorers = [g.scoring_target for g in goals if not g.overturned]
            if final_score is None:
                final_score = (match.score_home, match.score_away)

            return await self.settlement.settle_locked(match_id, scorers, final_score, winner)

    async def _require_match(self, unit: LedgerUnit, match_id: str) -> Match:
        match = await unit.get_match(match_id)
        if match is None:
            raise NotFound(f"Match {match_id} not found")
        return match

    async def _require_open_match(self, unit: LedgerUnit, match_id: str) -> Match:
        match = await self._require_match(unit, match_id)
        if match.is_finished:
            raise AlreadySettled(f"Match {match_id} is finished")
        return match
