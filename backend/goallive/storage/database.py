"""Transactional SQL ledger backend (PostgreSQL in production, SQLite locally).

Each unit of work is one database transaction. Updates are compare-and-swap
statements guarded on ``version``; uniqueness rules (one active next-goal-scorer
bet per bettor and match, one settlement per match) are enforced by the schema.
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Iterable

from pydantic import BaseModel
from sqlalchemy import Table, insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from goallive.config import LedgerConfig
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
from goallive.storage.session import create_engine, create_session_factory, get_db_session
from goallive.storage.tables import (
    BalanceRow,
    Base,
    BetChangeRow,
    BetRow,
    CustodyInstructionRow,
    GoalRow,
    MatchRow,
    SettlementRow,
)

logger = logging.getLogger(__name__)

matches: Table = MatchRow.__table__
bets: Table = BetRow.__table__
bet_changes: Table = BetChangeRow.__table__
balances: Table = BalanceRow.__table__
goal_records: Table = GoalRow.__table__
settlements: Table = SettlementRow.__table__
instructions: Table = CustodyInstructionRow.__table__


def _values(table: Table, model: BaseModel, exclude: tuple[str, ...] = ()) -> dict[str, Any]:
    """Column values for a model, skipping fields the table does not store."""
    fields = type(model).model_fields
    return {
        column.name: getattr(model, column.name)
        for column in table.columns
        if column.name in fields and column.name not in exclude
    }


class SqlLedgerUnit(LedgerUnit):
    def __init__(self, session: AsyncSession):
        self.session = session
        self._open_guards: set[str] = set()

    async def _one(self, model_cls: type[BaseModel], stmt) -> Any:
        result = await self.session.execute(stmt)
        row = result.mappings().first()
        return model_cls.model_validate(dict(row)) if row is not None else None

    async def _all(self, model_cls: type[BaseModel], stmt) -> list[Any]:
        result = await self.session.execute(stmt)
        return [model_cls.model_validate(dict(row)) for row in result.mappings().all()]

    async def _insert(self, table: Table, model: BaseModel) -> None:
        try:
            await self.session.execute(insert(table).values(**_values(table, model)))
        except IntegrityError as e:
            raise ConcurrentUpdateError(f"Insert into {table.name} conflicted: {e.orig}") from e

    async def _cas_update(self, table: Table, model: BaseModel, *key_clauses) -> Any:
        values = _values(table, model, exclude=("version",))
        stmt = (
            update(table)
            .where(*key_clauses, table.c.version == model.version)
            .values(**values, version=model.version + 1)
        )
        result = await self.session.execute(stmt)
        if result.rowcount != 1:
            raise ConcurrentUpdateError(f"{table.name} row changed concurrently")
        return model.model_copy(update={"version": model.version + 1})

    async def _plain_update(self, table: Table, model: BaseModel, *key_clauses) -> None:
        result = await self.session.execute(
            update(table).where(*key_clauses).values(**_values(table, model))
        )
        if result.rowcount != 1:
            raise ConcurrentUpdateError(f"{table.name} row does not exist")

    # Matches

    async def get_match(self, match_id: str) -> Match | None:
        return await self._one(Match, select(matches).where(matches.c.id == match_id))

    async def add_match(self, match: Match) -> Match:
        if await self.get_match(match.id) is not None:
            raise ValidationError(f"Match {match.id} already registered")
        await self._insert(matches, match)
        return match.model_copy()

    async def update_match(self, match: Match) -> Match:
        return await self._cas_update(matches, match, matches.c.id == match.id)

    def require_match_open(self, match_id: str) -> None:
        self._open_guards.add(match_id)

    async def _check_open_guards(self) -> None:
        # Touching the row takes its write lock, so a concurrent settlement
        # claim either commits first (and we fail here) or waits for us.
        for match_id in self._open_guards:
            result = await self.session.execute(
                update(matches)
                .where(matches.c.id == match_id, matches.c.status != "finished")
                .values(version=matches.c.version)
            )
            if result.rowcount != 1:
                raise AlreadySettled(f"Match {match_id} is finished")

    # Bets

    async def get_bet(self, bet_id: str) -> Bet | None:
        return await self._one(Bet, select(bets).where(bets.c.id == bet_id))

    async def list_bets(
        self,
        *,
        bettor_id: str | None = None,
        match_id: str | None = None,
        kind: BetKind | None = None,
        statuses: Iterable[str] | None = None,
    ) -> list[Bet]:
        stmt = select(bets)
        if bettor_id is not None:
            stmt = stmt.where(bets.c.bettor_id == bettor_id)
        if match_id is not None:
            stmt = stmt.where(bets.c.match_id == match_id)
        if kind is not None:
            stmt = stmt.where(bets.c.kind == kind)
        if statuses is not None:
            stmt = stmt.where(bets.c.status.in_(list(statuses)))
        return await self._all(Bet, stmt.order_by(bets.c.placed_at, bets.c.id))

    async def add_bet(self, bet: Bet) -> Bet:
        await self._insert(bets, bet)
        return bet.model_copy()

    async def update_bet(self, bet: Bet) -> Bet:
        return await self._cas_update(bets, bet, bets.c.id == bet.id)

    async def add_change(self, change: BetChange) -> BetChange:
        await self._insert(bet_changes, change)
        return change.model_copy()

    async def list_changes(self, bet_id: str) -> list[BetChange]:
        stmt = (
            select(bet_changes)
            .where(bet_changes.c.bet_id == bet_id)
            .order_by(bet_changes.c.sequence)
        )
        return await self._all(BetChange, stmt)

    # Balances

    async def get_balance(self, bettor_id: str) -> BalanceState:
        balance = await self._one(
            BalanceState, select(balances).where(balances.c.bettor_id == bettor_id)
        )
        return balance if balance is not None else BalanceState(bettor_id=bettor_id)

    async def save_balance(self, balance: BalanceState) -> BalanceState:
        if balance.version == 0:
            stored = balance.model_copy(update={"version": 1})
            await self._insert(balances, stored)
            return stored
        return await self._cas_update(
            balances, balance, balances.c.bettor_id == balance.bettor_id
        )

    # Goals

    async def get_goal(self, match_id: str, window_index: int) -> GoalRecord | None:
        stmt = select(goal_records).where(
            goal_records.c.match_id == match_id,
            goal_records.c.window_index == window_index,
        )
        return await self._one(GoalRecord, stmt)

    async def list_goals(self, match_id: str) -> list[GoalRecord]:
        stmt = (
            select(goal_records)
            .where(goal_records.c.match_id == match_id)
            .order_by(goal_records.c.window_index)
        )
        return await self._all(GoalRecord, stmt)

    async def add_goal(self, goal: GoalRecord) -> GoalRecord:
        await self._insert(goal_records, goal)
        return goal.model_copy()

    async def update_goal(self, goal: GoalRecord) -> GoalRecord:
        await self._plain_update(
            goal_records,
            goal,
            goal_records.c.match_id == goal.match_id,
            goal_records.c.window_index == goal.window_index,
        )
        return goal.model_copy()

    # Settlements

    async def get_settlement(self, match_id: str) -> SettlementRecord | None:
        stmt = select(settlements).where(settlements.c.match_id == match_id)
        return await self._one(SettlementRecord, stmt)

    async def add_settlement(self, record: SettlementRecord) -> SettlementRecord:
        try:
            await self.session.execute(
                insert(settlements).values(**_values(settlements, record))
            )
        except IntegrityError as e:
            raise AlreadySettled(f"Match {record.match_id} already settled") from e
        return record.model_copy()

    async def update_settlement(self, record: SettlementRecord) -> SettlementRecord:
        await self._plain_update(
            settlements, record, settlements.c.match_id == record.match_id
        )
        return record.model_copy()

    # Custody outbox

    async def add_instruction(self, instruction: CustodyInstruction) -> CustodyInstruction:
        await self._insert(instructions, instruction)
        return instruction.model_copy()

    async def list_pending_instructions(
        self, limit: int, max_attempts: int
    ) -> list[CustodyInstruction]:
        stmt = (
            select(instructions)
            .where(
                instructions.c.delivered.is_(False),
                instructions.c.attempts < max_attempts,
            )
            .order_by(instructions.c.created_at, instructions.c.id)
            .limit(limit)
        )
        return await self._all(CustodyInstruction, stmt)

    async def update_instruction(self, instruction: CustodyInstruction) -> CustodyInstruction:
        await self._plain_update(
            instructions, instruction, instructions.c.id == instruction.id
        )
        return instruction.model_copy()


class SqlLedgerStore(LedgerStore):
    """Ledger store backed by an async SQLAlchemy engine."""

    name = "database"

    def __init__(self, config: LedgerConfig, engine: AsyncEngine | None = None):
        self.config = config
        self.engine = engine or create_engine(config)
        self._session_factory = create_session_factory(self.engine)

    async def initialize(self) -> None:
        """Create tables that do not exist yet."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info(f"Initialized ledger schema on {self.engine.url.render_as_string(hide_password=True)}")

    async def close(self) -> None:
        await self.engine.dispose()
        logger.info("Closed ledger database engine")

    @asynccontextmanager
    async def unit_of_work(self) -> AsyncIterator[SqlLedgerUnit]:
        async with get_db_session(self._session_factory) as session:
            unit = SqlLedgerUnit(session)
            yield unit
            await unit._check_open_guards()
