"""In-memory ledger backend for tests and simulation.

Writes are staged on the unit and validated at commit: every compare-and-swap
expectation, uniqueness rule and match-open guard is checked against the
committed tables before anything is applied. The commit step never awaits, so
it is atomic with respect to other coroutines on the event loop.
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Hashable, Iterable

from pydantic import BaseModel

from goallive.exceptions import AlreadySettled, ConcurrentUpdateError, ValidationError
from goallive.models import (
    BalanceState,
    Bet,
    BetChange,
    BetKind,
    CustodyInstruction,
    GoalRecord,
    Match,
    SettlementRecord,
)
from goallive.storage.base import LedgerStore, LedgerUnit

logger = logging.getLogger(__name__)

TABLES = (
    "matches",
    "bets",
    "changes",
    "balances",
    "goals",
    "settlements",
    "instructions",
)


@dataclass
class _Write:
    model: Any
    insert: bool
    expected_version: int | None = None


class MemoryLedgerUnit(LedgerUnit):
    def __init__(self, store: "MemoryLedgerStore"):
        self._store = store
        self._writes: dict[tuple[str, Hashable], _Write] = {}
        self._open_guards: set[str] = set()

    # ------------------------------------------------------------------
    # Staging helpers
    # ------------------------------------------------------------------

    def _read(self, table: str, key: Hashable) -> Any:
        write = self._writes.get((table, key))
        if write is not None:
            return write.model.model_copy(deep=True)
        committed = self._store._tables[table].get(key)
        return committed.model_copy(deep=True) if committed is not None else None

    def _scan(self, table: str) -> list[Any]:
        merged = dict(self._store._tables[table])
        for (name, key), write in self._writes.items():
            if name == table:
                merged[key] = write.model
        return [model.model_copy(deep=True) for model in merged.values()]

    def _stage_insert(self, table: str, key: Hashable, model: BaseModel) -> Any:
        if self._read(table, key) is not None:
            if table == "settlements":
                raise AlreadySettled(f"Match {key} already settled")
            raise ConcurrentUpdateError(f"Duplicate {table} key {key}")
        self._writes[(table, key)] = _Write(model.model_copy(deep=True), insert=True)
        return model.model_copy(deep=True)

    def _stage_update(self, table: str, key: Hashable, model: BaseModel) -> Any:
        staged = self._writes.get((table, key))
        if staged is not None:
            if getattr(staged.model, "version", None) != getattr(model, "version", None):
                raise ConcurrentUpdateError(f"Stale {table} write for {key}")
            insert, expected = staged.insert, staged.expected_version
        else:
            current = self._store._tables[table].get(key)
            if current is None:
                raise ConcurrentUpdateError(f"{table} row {key} does not exist")
            insert, expected = False, getattr(model, "version", None)

        if hasattr(model, "version"):
            model = model.model_copy(update={"version": model.version + 1})
        self._writes[(table, key)] = _Write(
            model.model_copy(deep=True), insert=insert, expected_version=expected
        )
        return model.model_copy(deep=True)

    # ------------------------------------------------------------------
    # Matches
    # ------------------------------------------------------------------

    async def get_match(self, match_id: str) -> Match | None:
        return self._read("matches", match_id)

    async def add_match(self, match: Match) -> Match:
        if self._read("matches", match.id) is not None:
            raise ValidationError(f"Match {match.id} already registered")
        return self._stage_insert("matches", match.id, match)

    async def update_match(self, match: Match) -> Match:
        return self._stage_update("matches", match.id, match)

    def require_match_open(self, match_id: str) -> None:
        self._open_guards.add(match_id)

    # ------------------------------------------------------------------
    # Bets
    # ------------------------------------------------------------------

    async def get_bet(self, bet_id: str) -> Bet | None:
        return self._read("bets", bet_id)

    async def list_bets(
        self,
        *,
        bettor_id: str | None = None,
        match_id: str | None = None,
        kind: BetKind | None = None,
        statuses: Iterable[str] | None = None,
    ) -> list[Bet]:
        wanted = set(statuses) if statuses is not None else None
        bets = [
            bet
            for bet in self._scan("bets")
            if (bettor_id is None or bet.bettor_id == bettor_id)
            and (match_id is None or bet.match_id == match_id)
            and (kind is None or bet.kind == kind)
            and (wanted is None or bet.status in wanted)
        ]
        return sorted(bets, key=lambda b: (b.placed_at, b.id))

    async def add_bet(self, bet: Bet) -> Bet:
        return self._stage_insert("bets", bet.id, bet)

    async def update_bet(self, bet: Bet) -> Bet:
        return self._stage_update("bets", bet.id, bet)

    async def add_change(self, change: BetChange) -> BetChange:
        return self._stage_insert("changes", (change.bet_id, change.sequence), change)

    async def list_changes(self, bet_id: str) -> list[BetChange]:
        changes = [c for c in self._scan("changes") if c.bet_id == bet_id]
        return sorted(changes, key=lambda c: c.sequence)

    # ------------------------------------------------------------------
    # Balances
    # ------------------------------------------------------------------

    async def get_balance(self, bettor_id: str) -> BalanceState:
        balance = self._read("balances", bettor_id)
        return balance if balance is not None else BalanceState(bettor_id=bettor_id)

    async def save_balance(self, balance: BalanceState) -> BalanceState:
        stored = self._read("balances", balance.bettor_id)
        if stored is None:
            if balance.version != 0:
                raise ConcurrentUpdateError(f"Balance for {balance.bettor_id} vanished")
            return self._stage_insert(
                "balances",
                balance.bettor_id,
                balance.model_copy(update={"version": 1}),
            )
        return self._stage_update("balances", balance.bettor_id, balance)

    # ------------------------------------------------------------------
    # Goals
    # ------------------------------------------------------------------

    async def get_goal(self, match_id: str, window_index: int) -> GoalRecord | None:
        return self._read("goals", (match_id, window_index))

    async def list_goals(self, match_id: str) -> list[GoalRecord]:
        goals = [g for g in self._scan("goals") if g.match_id == match_id]
        return sorted(goals, key=lambda g: g.window_index)

    async def add_goal(self, goal: GoalRecord) -> GoalRecord:
        return self._stage_insert("goals", (goal.match_id, goal.window_index), goal)

    async def update_goal(self, goal: GoalRecord) -> GoalRecord:
        return self._stage_update("goals", (goal.match_id, goal.window_index), goal)

    # ------------------------------------------------------------------
    # Settlements
    # ------------------------------------------------------------------

    async def get_settlement(self, match_id: str) -> SettlementRecord | None:
        return self._read("settlements", match_id)

    async def add_settlement(self, record: SettlementRecord) -> SettlementRecord:
        return self._stage_insert("settlements", record.match_id, record)

    async def update_settlement(self, record: SettlementRecord) -> SettlementRecord:
        return self._stage_update("settlements", record.match_id, record)

    # ------------------------------------------------------------------
    # Custody outbox
    # ------------------------------------------------------------------

    async def add_instruction(self, instruction: CustodyInstruction) -> CustodyInstruction:
        return self._stage_insert("instructions", instruction.id, instruction)

    async def list_pending_instructions(
        self, limit: int, max_attempts: int
    ) -> list[CustodyInstruction]:
        pending = [
            i
            for i in self._scan("instructions")
            if not i.delivered and i.attempts < max_attempts
        ]
        return sorted(pending, key=lambda i: (i.created_at, i.id))[:limit]

    async def update_instruction(self, instruction: CustodyInstruction) -> CustodyInstruction:
        return self._stage_update("instructions", instruction.id, instruction)

    # ------------------------------------------------------------------
    # Commit
    # ------------------------------------------------------------------

    def _commit(self) -> None:
        tables = self._store._tables

        for (table, key), write in self._writes.items():
            current = tables[table].get(key)
            if write.insert:
                if current is not None:
                    if table == "settlements":
                        raise AlreadySettled(f"Match {key} already settled")
                    raise ConcurrentUpdateError(f"Duplicate {table} key {key}")
            elif current is None or (
                write.expected_version is not None
                and current.version != write.expected_version
            ):
                raise ConcurrentUpdateError(f"{table} row {key} changed concurrently")

        for match_id in self._open_guards:
            match = tables["matches"].get(match_id)
            if match is not None and match.is_finished:
                raise AlreadySettled(f"Match {match_id} is finished")

        self._check_single_active_ngs()

        for (table, key), write in self._writes.items():
            tables[table][key] = write.model

        if self._writes:
            logger.debug(f"Committed {len(self._writes)} staged writes")

    def _check_single_active_ngs(self) -> None:
        staged_bets = [
            w.model for (table, _), w in self._writes.items() if table == "bets"
        ]
        if not staged_bets:
            return

        merged = dict(self._store._tables["bets"])
        merged.update({bet.id: bet for bet in staged_bets})

        for bet in staged_bets:
            if bet.kind != "NEXT_GOAL_SCORER" or bet.status != "active":
                continue
            for other in merged.values():
                if (
                    other.id != bet.id
                    and other.kind == "NEXT_GOAL_SCORER"
                    and other.status == "active"
                    and other.bettor_id == bet.bettor_id
                    and other.match_id == bet.match_id
                ):
                    raise ConcurrentUpdateError(
                        f"Bettor {bet.bettor_id} already has active bet {other.id}"
                    )


class MemoryLedgerStore(LedgerStore):
    """Process-local store; state lives for the lifetime of the object."""

    name = "memory"

    def __init__(self) -> None:
        self._tables: dict[str, dict[Hashable, Any]] = {name: {} for name in TABLES}

    @asynccontextmanager
    async def unit_of_work(self) -> AsyncIterator[MemoryLedgerUnit]:
        unit = MemoryLedgerUnit(self)
        yield unit
        unit._commit()

    def reset(self) -> None:
        """Drop all state."""
        for table in self._tables.values():
            table.clear()
        logger.info("Memory ledger store reset")
