"""Domain models shared by the ledger services and storage backends."""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Literal
from uuid import uuid4

from pydantic import BaseModel, Field

BetKind = Literal["NEXT_GOAL_SCORER", "MATCH_WINNER", "EXACT_GOALS"]

BetStatus = Literal[
    "active",
    "provisional_win",
    "provisional_loss",
    "settled_won",
    "settled_lost",
    "void",
]

MatchStatus = Literal["pre-match", "live", "halftime", "finished"]

MatchWinnerOutcome = Literal["home", "away", "draw"]

InstructionKind = Literal["debit", "credit", "withdraw"]

MATCH_WINNER_OUTCOMES: tuple[str, ...] = ("home", "away", "draw")
TERMINAL_STATUSES: frozenset[str] = frozenset({"settled_won", "settled_lost", "void"})
BETTABLE_MATCH_STATUSES: frozenset[str] = frozenset({"live", "halftime"})

ZERO = Decimal("0.00")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_bet_id() -> str:
    """Generate a bet ID with 'bet_' prefix."""
    return f"bet_{uuid4().hex[:12]}"


def generate_instruction_id() -> str:
    """Generate a custody instruction ID with 'ci_' prefix."""
    return f"ci_{uuid4().hex[:12]}"


class Bet(BaseModel):
    """A single wager and its mutable state."""

    id: str = Field(default_factory=generate_bet_id)
    bettor_id: str
    match_id: str
    kind: BetKind

    # Player id (NGS), outcome (MATCH_WINNER) or total goals (EXACT_GOALS)
    original_target: str
    current_target: str

    original_amount: Decimal
    current_amount: Decimal
    total_penalties: Decimal = ZERO
    change_count: int = 0
    odds: Decimal
    status: BetStatus = "active"

    placed_at_minute: int = 0
    # Goal window index captured at placement or the most recent change
    goal_window: int = 0

    provisional_payout: Decimal = ZERO
    payout: Decimal = ZERO

    placed_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    settled_at: datetime | None = None

    version: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def stake_locked(self) -> bool:
        """Whether the current stake still sits in the bettor's locked balance."""
        return self.status in ("active", "provisional_win")


class BetChange(BaseModel):
    """Append-only audit row for one bet change."""

    bet_id: str
    sequence: int
    from_target: str
    to_target: str
    penalty_amount: Decimal
    penalty_pct: Decimal
    match_minute: int
    changed_at: datetime = Field(default_factory=utcnow)


class BalanceState(BaseModel):
    """Per-bettor funds breakdown."""

    bettor_id: str
    wallet: Decimal = ZERO
    locked: Decimal = ZERO
    provisional: Decimal = ZERO
    potential_payout: Decimal = ZERO
    version: int = 0


class PenaltyPreview(BaseModel):
    """Cost of changing an active bet."""

    penalty_pct: Decimal
    penalty_amount: Decimal
    new_effective_amount: Decimal
    change_number: int


class Match(BaseModel):
    """The ledger's view of a live match."""

    id: str
    home_team: str = ""
    away_team: str = ""
    status: MatchStatus = "pre-match"
    current_minute: int = 0
    goal_window: int = 0
    score_home: int = 0
    score_away: int = 0
    players: list[str] = Field(default_factory=list)
    version: int = 0

    @property
    def is_finished(self) -> bool:
        return self.status == "finished"


class GoalRecord(BaseModel):
    """A confirmed goal, keyed by the window it closed."""

    match_id: str
    window_index: int
    scoring_target: str
    team: Literal["home", "away"] | None = None
    minute: int
    overturned: bool = False
    recorded_at: datetime = Field(default_factory=utcnow)


class SettlementRecord(BaseModel):
    """One per match; its existence means the match has been claimed for settlement."""

    match_id: str
    winner_outcome: MatchWinnerOutcome
    score_home: int
    score_away: int
    confirmed_scorers: list[str] = Field(default_factory=list)
    bets_settled: int = 0
    winners: int = 0
    total_payout: Decimal = ZERO
    settled_at: datetime = Field(default_factory=utcnow)


class CustodyInstruction(BaseModel):
    """Outbox row: intent to move funds at the custody layer."""

    id: str = Field(default_factory=generate_instruction_id)
    bettor_id: str
    bet_id: str | None = None
    kind: InstructionKind
    amount: Decimal
    attempts: int = 0
    delivered: bool = False
    last_error: str | None = None
    created_at: datetime = Field(default_factory=utcnow)


class BetChangeResult(BaseModel):
    """Outcome of a successful change_bet call."""

    bet: Bet
    change: BetChange
    penalty: PenaltyPreview


class GoalResolution(BaseModel):
    """Outcome of correlating one goal against the open window."""

    match_id: str
    window_index: int
    scoring_target: str
    winning_bet_ids: list[str] = Field(default_factory=list)
    losing_bet_ids: list[str] = Field(default_factory=list)


class SettledBet(BaseModel):
    bet_id: str
    bettor_id: str
    target: str
    status: BetStatus
    payout: Decimal = ZERO


class SettlementSummary(BaseModel):
    """Result of a settlement batch."""

    match_id: str
    winner_outcome: MatchWinnerOutcome
    confirmed_scorers: list[str] = Field(default_factory=list)
    settled: list[SettledBet] = Field(default_factory=list)
    skipped_bet_ids: list[str] = Field(default_factory=list)
    failed_bet_ids: list[str] = Field(default_factory=list)
    total_payout: Decimal = ZERO

    @property
    def bets_settled(self) -> int:
        return len(self.settled)

    @property
    def winners(self) -> int:
        return sum(1 for s in self.settled if s.status == "settled_won")
