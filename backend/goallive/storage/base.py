"""Storage interface shared by the memory and SQL ledger backends.

All reads and writes happen inside a unit of work. A unit commits every staged
write together or none of them. Updates are compare-and-swap on the record's
``version``; a lost race raises ConcurrentUpdateError at commit (memory) or at
write time (SQL), and the calling service retries the whole unit.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import AbstractAsyncContextManager
from typing import Iterable

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


class LedgerUnit(ABC):
    """One atomic unit of work against the ledger store."""

    # Matches

    @abstractmethod
    async def get_match(self, match_id: str) -> Match | None: ...

    @abstractmethod
    async def add_match(self, match: Match) -> Match: ...

    @abstractmethod
    async def update_match(self, match: Match) -> Match:
        """CAS on match.version; returns the stored copy with version + 1."""

    @abstractmethod
    def require_match_open(self, match_id: str) -> None:
        """Fail the commit with AlreadySettled if the match is finished by then."""

    # Bets

    @abstractmethod
    async def get_bet(self, bet_id: str) -> Bet | None: ...

    @abstractmethod
    async def list_bets(
        self,
        *,
        bettor_id: str | None = None,
        match_id: str | None = None,
        kind: BetKind | None = None,
        statuses: Iterable[str] | None = None,
    ) -> list[Bet]: ...

    @abstractmethod
    async def add_bet(self, bet: Bet) -> Bet: ...

    @abstractmethod
    async def update_bet(self, bet: Bet) -> Bet:
        """CAS on bet.version; returns the stored copy with version + 1."""

    @abstractmethod
    async def add_change(self, change: BetChange) -> BetChange: ...

    @abstractmethod
    async def list_changes(self, bet_id: str) -> list[BetChange]: ...

    # Balances

    @abstractmethod
    async def get_balance(self, bettor_id: str) -> BalanceState:
        """Stored balance, or an empty version-0 balance for a new bettor."""

    @abstractmethod
    async def save_balance(self, balance: BalanceState) -> BalanceState:
        """Insert (version 0) or CAS-update; returns the copy with version + 1."""

    # Goals

    @abstractmethod
    async def get_goal(self, match_id: str, window_index: int) -> GoalRecord | None: ...

    @abstractmethod
    async def list_goals(self, match_id: str) -> list[GoalRecord]: ...

    @abstractmethod
    async def add_goal(self, goal: GoalRecord) -> GoalRecord: ...

    @abstractmethod
    async def update_goal(self, goal: GoalRecord) -> GoalRecord: ...

    # Settlements

    @abstractmethod
    async def get_settlement(self, match_id: str) -> SettlementRecord | None: ...

    @abstractmethod
    async def add_settlement(self, record: SettlementRecord) -> SettlementRecord:
        """Raises AlreadySettled if the match already has a settlement."""

    @abstractmethod
    async def update_settlement(self, record: SettlementRecord) -> SettlementRecord: ...

    # Custody outbox

    @abstractmethod
    async def add_instruction(self, instruction: CustodyInstruction) -> CustodyInstruction: ...

    @abstractmethod
    async def list_pending_instructions(
        self, limit: int, max_attempts: int
    ) -> list[CustodyInstruction]: ...

    @abstractmethod
    async def update_instruction(self, instruction: CustodyInstruction) -> CustodyInstruction: ...


class LedgerStore(ABC):
    """Factory for units of work over one backend."""

    name: str = "abstract"

    @abstractmethod
    def unit_of_work(self) -> AbstractAsyncContextManager[LedgerUnit]:
        """Open a unit; commits on clean exit, discards on exception."""

    async def initialize(self) -> None:
        """Prepare the backend (create tables, etc.)."""

    async def close(self) -> None:
        """Release backend resources."""
