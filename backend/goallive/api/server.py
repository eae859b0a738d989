"""FastAPI surface for wagering and match-feed intake."""

import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import Depends, FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from goallive import __version__
from goallive.api.schemas import (
    AmountRequest,
    ChangeBetRequest,
    GoalRequest,
    MatchStatusRequest,
    PlaceBetRequest,
    RegisterMatchRequest,
    SettleRequest,
)
from goallive.exceptions import (
    AlreadySettled,
    ExistingActiveBet,
    InsufficientBalance,
    InvalidStateTransition,
    LedgerError,
    LedgerTimeoutError,
    NotFound,
    ValidationError,
)
from goallive.models import (
    BalanceState,
    Bet,
    BetChangeResult,
    GoalResolution,
    Match,
    PenaltyPreview,
    SettlementSummary,
)
from goallive.observability import instrument_app
from goallive.scheduler import create_scheduler
from goallive.services import LedgerServices

logger = logging.getLogger(__name__)

ERROR_STATUS: dict[type[LedgerError], int] = {
    ValidationError: 400,
    InsufficientBalance: 402,
    NotFound: 404,
    ExistingActiveBet: 409,
    InvalidStateTransition: 409,
    AlreadySettled: 409,
    LedgerTimeoutError: 504,
}


def status_for(error: LedgerError) -> int:
    for error_cls in type(error).__mro__:
        if error_cls in ERROR_STATUS:
            return ERROR_STATUS[error_cls]
    return 500


def get_services(request: Request) -> LedgerServices:
    return request.app.state.services


def create_app(services: LedgerServices | None = None) -> FastAPI:
    """Build the API around a set of ledger services (one per process by default)."""
    services = services or LedgerServices()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            f"Starting goal.live API ({services.store.name} store, "
            f"environment={services.settings.environment})"
        )
        await services.store.initialize()
        async with services.custody_client:
            scheduler = create_scheduler(services)
            scheduler.start()
            try:
                yield
            finally:
                scheduler.shutdown(wait=False)
        await services.store.close()
        logger.info("Shut down goal.live API")

    app = FastAPI(title="goal.live Ledger API", version=__version__, lifespan=lifespan)
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=services.settings.api.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(LedgerError)
    async def ledger_error_handler(request: Request, exc: LedgerError) -> JSONResponse:
        status_code = status_for(exc)
        if status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        content: dict[str, Any] = {"error": type(exc).__name__, "detail": exc.message}
        if isinstance(exc, ExistingActiveBet):
            content["bet_id"] = exc.bet_id
        return JSONResponse(status_code=status_code, content=content)

    _register_routes(app)
    instrument_app(app, services.settings)
    return app


def _register_routes(app: FastAPI) -> None:
    @app.get("/health", tags=["Health"])
    async def health_check(services: LedgerServices = Depends(get_services)) -> dict[str, str]:
        return {
            "status": "healthy",
            "service": "goallive-ledger",
            "version": __version__,
            "store": services.store.name,
            "environment": services.settings.environment,
        }

    # Bets

    @app.post("/bets", response_model=Bet, status_code=201, tags=["Bets"])
    async def place_bet(
        request: PlaceBetRequest, services: LedgerServices = Depends(get_services)
    ):
        return await services.ledger.place_bet(
            bettor_id=request.bettor_id,
            match_id=request.match_id,
            kind=request.kind,
            target=request.target,
            stake=request.stake,
            odds=request.odds,
            minute=request.minute,
            window_index=request.window_index,
        )

    @app.post("/bets/{bet_id}/change", response_model=BetChangeResult, tags=["Bets"])
    async def change_bet(
        bet_id: str,
        request: ChangeBetRequest,
        services: LedgerServices = Depends(get_services),
    ):
        return await services.ledger.change_bet(
            bet_id, request.new_target, request.new_odds, request.minute
        )

    @app.get("/bets/{bet_id}", response_model=Bet, tags=["Bets"])
    async def get_bet(bet_id: str, services: LedgerServices = Depends(get_services)):
        bet = await services.ledger.get_bet(bet_id)
        if bet is None:
            raise NotFound(f"Bet {bet_id} not found")
        return bet

    @app.get("/bets/{bet_id}/penalty", response_model=PenaltyPreview, tags=["Bets"])
    async def preview_penalty(
        bet_id: str,
        minute: int = Query(ge=0),
        services: LedgerServices = Depends(get_services),
    ):
        return await services.ledger.preview_penalty(bet_id, minute)

    # Bettors

    @app.get("/bettors/{bettor_id}/bets", response_model=list[Bet], tags=["Bettors"])
    async def get_bettor_bets(
        bettor_id: str,
        match_id: str | None = None,
        services: LedgerServices = Depends(get_services),
    ):
        return await services.ledger.get_bets(bettor_id, match_id)

    @app.get("/bettors/{bettor_id}/balance", response_model=BalanceState, tags=["Bettors"])
    async def get_balance(bettor_id: str, services: LedgerServices = Depends(get_services)):
        return await services.ledger.get_balance(bettor_id)

    @app.post("/bettors/{bettor_id}/deposit", response_model=BalanceState, tags=["Bettors"])
    async def deposit(
        bettor_id: str,
        request: AmountRequest,
        services: LedgerServices = Depends(get_services),
    ):
        return await services.ledger.deposit(bettor_id, request.amount)

    @app.post("/bettors/{bettor_id}/withdraw", response_model=BalanceState, tags=["Bettors"])
    async def withdraw(
        bettor_id: str,
        request: AmountRequest,
        services: LedgerServices = Depends(get_services),
    ):
        return await services.ledger.withdraw(bettor_id, request.amount)

    # Match feed

    @app.post("/matches", response_model=Match, status_code=201, tags=["Matches"])
    async def register_match(
        request: RegisterMatchRequest, services: LedgerServices = Depends(get_services)
    ):
        return await services.matches.register_match(
            request.match_id, request.home_team, request.away_team, request.players
        )

    @app.get("/matches/{match_id}", response_model=Match, tags=["Matches"])
    async def get_match(match_id: str, services: LedgerServices = Depends(get_services)):
        return await services.matches.get_match(match_id)

    @app.post("/matches/{match_id}/status", response_model=Match, tags=["Matches"])
    async def set_match_status(
        match_id: str,
        request: MatchStatusRequest,
        services: LedgerServices = Depends(get_services),
    ):
        match = await services.matches.set_status(match_id, request.status)
        if request.minute is not None:
            match = await services.matches.record_minute(match_id, request.minute)
        return match

    @app.post("/matches/{match_id}/goals", response_model=GoalResolution | None, tags=["Matches"])
    async def confirm_goal(
        match_id: str,
        request: GoalRequest,
        services: LedgerServices = Depends(get_services),
    ):
        return await services.matches.confirm_goal(
            match_id,
            request.scoring_target,
            request.team,
            request.minute,
            request.window_index,
        )

    @app.post(
        "/matches/{match_id}/goals/{window_index}/overturn",
        response_model=list[Bet],
        tags=["Matches"],
    )
    async def overturn_goal(
        match_id: str, window_index: int, services: LedgerServices = Depends(get_services)
    ):
        return await services.matches.overturn_goal(match_id, window_index)

    @app.post("/matches/{match_id}/settle", response_model=SettlementSummary, tags=["Matches"])
    async def settle_match(
        match_id: str,
        request: SettleRequest,
        services: LedgerServices = Depends(get_services),
    ):
        if request.confirmed_scorers is None:
            return await services.matches.full_time(
                match_id, request.final_score, request.winner_outcome
            )
        if request.final_score is None:
            raise ValidationError("final_score is required with confirmed_scorers")
        return await services.settlement.settle_bets(
            match_id,
            request.confirmed_scorers,
            request.final_score,
            request.winner_outcome,
        )
