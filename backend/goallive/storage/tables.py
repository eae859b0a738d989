"""SQLAlchemy table definitions for the durable ledger backend."""

from decimal import Decimal

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    func,
    text,
)
from sqlalchemy.orm import DeclarativeBase

ACTIVE_NGS_PREDICATE = "status = 'active' AND kind = 'NEXT_GOAL_SCORER'"


class Base(DeclarativeBase):
    pass


class TimestampMixin:
    """Mixin that adds created_at and updated_at fields to rows."""

    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        comment="When the record was created",
    )

    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
        comment="When the record was last updated",
    )


class MatchRow(Base, TimestampMixin):
    """Live match as seen by the ledger."""

    __tablename__ = "matches"

    id = Column(String(64), primary_key=True)
    home_team = Column(String(100), nullable=False, default="")
    away_team = Column(String(100), nullable=False, default="")

    status = Column(String(20), nullable=False, default="pre-match")
    current_minute = Column(Integer, nullable=False, default=0)
    goal_window = Column(Integer, nullable=False, default=0)
    score_home = Column(Integer, nullable=False, default=0)
    score_away = Column(Integer, nullable=False, default=0)
    players = Column(JSON, nullable=False, default=list)

    version = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        CheckConstraint(
            "status IN ('pre-match', 'live', 'halftime', 'finished')",
            name="valid_match_status",
        ),
        CheckConstraint("goal_window >= 0", name="goal_window_non_negative"),
        Index("idx_matches_status", "status"),
    )

    def __repr__(self) -> str:
        return f"<Match {self.home_team} v {self.away_team} ({self.status})>"


class BetRow(Base):
    """Individual bet record."""

    __tablename__ = "bets"

    id = Column(String(64), primary_key=True)
    bettor_id = Column(String(128), nullable=False, index=True)
    match_id = Column(
        String(64),
        ForeignKey("matches.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    kind = Column(String(20), nullable=False)

    # Bet details
    original_target = Column(String(64), nullable=False)
    current_target = Column(String(64), nullable=False)
    original_amount = Column(Numeric(15, 2), nullable=False)
    current_amount = Column(Numeric(15, 2), nullable=False)
    total_penalties = Column(Numeric(15, 2), nullable=False, default=Decimal("0.00"))
    change_count = Column(Integer, nullable=False, default=0)
    odds = Column(Numeric(10, 4), nullable=False)
    status = Column(String(20), nullable=False, default="active")

    placed_at_minute = Column(Integer, nullable=False, default=0)
    goal_window = Column(Integer, nullable=False, default=0)

    # Settlement
    provisional_payout = Column(Numeric(15, 2), nullable=False, default=Decimal("0.00"))
    payout = Column(Numeric(15, 2), nullable=False, default=Decimal("0.00"))

    # Timestamps
    placed_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    settled_at = Column(DateTime(timezone=True), nullable=True)

    version = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        CheckConstraint(
            "kind IN ('NEXT_GOAL_SCORER', 'MATCH_WINNER', 'EXACT_GOALS')",
            name="valid_bet_kind",
        ),
        CheckConstraint(
            "status IN ('active', 'provisional_win', 'provisional_loss', "
            "'settled_won', 'settled_lost', 'void')",
            name="valid_bet_status",
        ),
        CheckConstraint("original_amount > 0", name="positive_amount"),
        CheckConstraint("odds > 1", name="valid_bet_odds"),
        CheckConstraint(
            "current_amount >= 0 AND current_amount <= original_amount",
            name="stake_non_increasing",
        ),
        Index("idx_bets_match_status", "match_id", "status"),
        Index(
            "uq_bets_active_ngs",
            "bettor_id",
            "match_id",
            unique=True,
            postgresql_where=text(ACTIVE_NGS_PREDICATE),
            sqlite_where=text(ACTIVE_NGS_PREDICATE),
        ),
    )

    def __repr__(self) -> str:
        return f"<Bet {self.kind} {self.current_target} ${self.current_amount} @ {self.odds}>"


class BetChangeRow(Base):
    """Append-only change log."""

    __tablename__ = "bet_changes"

    bet_id = Column(
        String(64),
        ForeignKey("bets.id", ondelete="CASCADE"),
        primary_key=True,
    )
    sequence = Column(Integer, primary_key=True)

    from_target = Column(String(64), nullable=False)
    to_target = Column(String(64), nullable=False)
    penalty_amount = Column(Numeric(15, 2), nullable=False)
    penalty_pct = Column(Numeric(9, 6), nullable=False)
    match_minute = Column(Integer, nullable=False)
    changed_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    __table_args__ = (
        CheckConstraint("sequence >= 1", name="sequence_positive"),
        CheckConstraint("penalty_amount >= 0", name="penalty_non_negative"),
    )


class BalanceRow(Base, TimestampMixin):
    """Per-bettor funds."""

    __tablename__ = "balances"

    bettor_id = Column(String(128), primary_key=True)
    wallet = Column(Numeric(15, 2), nullable=False, default=Decimal("0.00"))
    locked = Column(Numeric(15, 2), nullable=False, default=Decimal("0.00"))
    provisional = Column(Numeric(15, 2), nullable=False, default=Decimal("0.00"))
    version = Column(Integer, nullable=False, default=1)

    __table_args__ = (
        CheckConstraint("wallet >= 0", name="wallet_non_negative"),
        CheckConstraint("locked >= 0", name="locked_non_negative"),
        CheckConstraint("provisional >= 0", name="provisional_non_negative"),
    )

    def __repr__(self) -> str:
        return f"<Balance {self.bettor_id} (${self.wallet} free, ${self.locked} locked)>"


class GoalRow(Base):
    """Confirmed goal keyed by the window it closed."""

    __tablename__ = "goal_records"

    match_id = Column(
        String(64),
        ForeignKey("matches.id", ondelete="CASCADE"),
        primary_key=True,
    )
    window_index = Column(Integer, primary_key=True)
    scoring_target = Column(String(64), nullable=False)
    team = Column(String(4), nullable=True)
    minute = Column(Integer, nullable=False)
    overturned = Column(Boolean, nullable=False, default=False)
    recorded_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())


class SettlementRow(Base):
    """Match settlement record; one per match."""

    __tablename__ = "settlements"

    match_id = Column(
        String(64),
        ForeignKey("matches.id", ondelete="CASCADE"),
        primary_key=True,
    )
    winner_outcome = Column(String(4), nullable=False)
    score_home = Column(Integer, nullable=False)
    score_away = Column(Integer, nullable=False)
    confirmed_scorers = Column(JSON, nullable=False, default=list)

    # Metrics
    bets_settled = Column(Integer, nullable=False, default=0)
    winners = Column(Integer, nullable=False, default=0)
    total_payout = Column(Numeric(18, 6), nullable=False, default=Decimal("0"))

    settled_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    __table_args__ = (
        CheckConstraint(
            "winner_outcome IN ('home', 'away', 'draw')",
            name="valid_settlement_outcome",
        ),
        Index("idx_settlements_settled_at", "settled_at"),
    )


class CustodyInstructionRow(Base):
    """Outbox of custody intents awaiting delivery."""

    __tablename__ = "custody_instructions"

    id = Column(String(64), primary_key=True)
    bettor_id = Column(String(128), nullable=False, index=True)
    bet_id = Column(String(64), nullable=True)
    kind = Column(String(10), nullable=False)
    amount = Column(Numeric(15, 2), nullable=False)
    attempts = Column(Integer, nullable=False, default=0)
    delivered = Column(Boolean, nullable=False, default=False)
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    __table_args__ = (
        CheckConstraint("kind IN ('debit', 'credit', 'withdraw')", name="valid_instruction_kind"),
        CheckConstraint("amount > 0", name="instruction_amount_positive"),
        Index("idx_custody_pending", "delivered", "created_at"),
    )
