"""Request and response schemas for the HTTP surface."""

from decimal import Decimal
from typing import Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from goallive.models import BetKind, MatchStatus, MatchWinnerOutcome


class BaseSchema(BaseModel):
    """Base schema with common configuration."""

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
    )


class PlaceBetRequest(BaseSchema):
    """Request to place a bet."""

    bettor_id: str
    match_id: str
    kind: BetKind
    target: Union[int, str]
    stake: Decimal
    odds: Decimal
    minute: int = Field(ge=0)
    window_index: int = Field(ge=0)


class ChangeBetRequest(BaseSchema):
    """Request to move an active bet to a new target."""

    new_target: Union[int, str]
    new_odds: Decimal
    minute: int = Field(ge=0)


class AmountRequest(BaseSchema):
    amount: Decimal


class RegisterMatchRequest(BaseSchema):
    match_id: str
    home_team: str
    away_team: str
    players: list[str] = Field(default_factory=list)


class MatchStatusRequest(BaseSchema):
    status: MatchStatus
    minute: Optional[int] = Field(default=None, ge=0)


class GoalRequest(BaseSchema):
    """A confirmed goal from the match feed."""

    scoring_target: str
    team: Literal["home", "away"]
    minute: int = Field(ge=0)
    window_index: Optional[int] = Field(default=None, ge=0)


class SettleRequest(BaseSchema):
    """
    Full-time settlement.

    Without confirmed_scorers the tracked goals decide the scorers, and the
    tracked score is used when final_score is omitted.
    """

    confirmed_scorers: Optional[list[str]] = None
    final_score: Optional[tuple[int, int]] = None
    winner_outcome: Optional[MatchWinnerOutcome] = None


class ErrorResponse(BaseSchema):
    error: str
    detail: str
    bet_id: Optional[str] = None
