"""Tests for full-time settlement."""

import asyncio
from decimal import Decimal

import pytest

from goallive.exceptions import AlreadySettled, InvalidStateTransition, NotFound
from goallive.services import SettlementEngine


async def _ngs_bet(services, target: str = "A"):
    await services.ledger.deposit("alice", Decimal("100"))
    return await services.ledger.place_bet(
        "alice", "m1", "NEXT_GOAL_SCORER", target, Decimal("20"), Decimal("3.0"), 10, 0
    )


def test_losing_next_goal_scorer_bet(services, open_match) -> None:
    async def run() -> None:
        await open_match()
        bet = await _ngs_bet(services)
        balance = await services.ledger.get_balance("alice")
        assert (balance.wallet, balance.locked) == (Decimal("80.00"), Decimal("20.00"))

        await services.goals.process_goal_event("m1", "B", 15, 0)
        assert (await services.ledger.get_balance("alice")).locked == Decimal("0.00")

        summary = await services.settlement.settle_bets("m1", ["B"], (0, 1), "away")

        assert [s.bet_id for s in summary.settled] == [bet.id]
        assert (await services.ledger.get_bet(bet.id)).status == "settled_lost"
        balance = await services.ledger.get_balance("alice")
        assert balance.wallet == Decimal("80.00")
        assert balance.locked == Decimal("0.00")
        assert balance.provisional == Decimal("0.00")

    asyncio.run(run())


def test_winning_next_goal_scorer_bet(services, open_match) -> None:
    async def run() -> None:
        await open_match()
        bet = await _ngs_bet(services)

        await services.goals.process_goal_event("m1", "A", 15, 0)
        assert (await services.ledger.get_balance("alice")).provisional == Decimal("60.00")

        summary = await services.settlement.settle_bets("m1", ["A"], (1, 0), "home")

        settled = await services.ledger.get_bet(bet.id)
        assert settled.status == "settled_won"
        assert settled.payout == Decimal("60.00")
        assert settled.settled_at is not None
        assert summary.winners == 1
        assert summary.total_payout == Decimal("60.00")

        balance = await services.ledger.get_balance("alice")
        assert balance.wallet == Decimal("140.00")
        assert balance.locked == Decimal("0.00")
        assert balance.provisional == Decimal("0.00")

    asyncio.run(run())


def test_payout_uses_post_penalty_stake(services, open_match) -> None:
    async def run() -> None:
        await open_match()
        bet = await _ngs_bet(services)
        await services.ledger.change_bet(bet.id, "B", Decimal("3.2"), 30)
        await services.goals.process_goal_event("m1", "B", 40, 0)

        await services.settlement.settle_bets("m1", ["B"], (1, 0), "home")

        settled = await services.ledger.get_bet(bet.id)
        assert settled.payout == Decimal("62.72")
        balance = await services.ledger.get_balance("alice")
        assert balance.wallet == Decimal("142.72")
        assert balance.locked == Decimal("0.00")

    asyncio.run(run())


def test_settling_twice_never_double_credits(services, open_match) -> None:
    async def run() -> None:
        await open_match()
        await _ngs_bet(services)
        await services.goals.process_goal_event("m1", "A", 15, 0)
        await services.settlement.settle_bets("m1", ["A"], (1, 0), "home")

        with pytest.raises(AlreadySettled):
            await services.settlement.settle_bets("m1", ["A"], (1, 0), "home")

        assert (await services.ledger.get_balance("alice")).wallet == Decimal("140.00")

    asyncio.run(run())


def test_concurrent_settlements_claim_once(services, open_match) -> None:
    async def run() -> None:
        await open_match()
        await _ngs_bet(services)
        await services.goals.process_goal_event("m1", "A", 15, 0)

        results = await asyncio.gather(
            services.settlement.settle_bets("m1", ["A"], (1, 0), "home"),
            services.settlement.settle_bets("m1", ["A"], (1, 0), "home"),
            return_exceptions=True,
        )

        assert sum(isinstance(r, AlreadySettled) for r in results) == 1
        assert (await services.ledger.get_balance("alice")).wallet == Decimal("140.00")

    asyncio.run(run())


def test_match_winner_and_exact_goals_markets(services, open_match) -> None:
    async def run() -> None:
        await open_match()
        await services.ledger.deposit("alice", Decimal("100"))
        place = services.ledger.place_bet
        home = await place("alice", "m1", "MATCH_WINNER", "home", Decimal("10"), Decimal("2.5"), 1, 0)
        draw = await place("alice", "m1", "MATCH_WINNER", "draw", Decimal("10"), Decimal("3"), 1, 0)
        three = await place("alice", "m1", "EXACT_GOALS", 3, Decimal("5"), Decimal("6"), 1, 0)
        two = await place("alice", "m1", "EXACT_GOALS", 2, Decimal("5"), Decimal("4"), 1, 0)

        summary = await services.settlement.settle_bets("m1", [], (2, 1), None)

        assert summary.winner_outcome == "home"
        statuses = {s.bet_id: s.status for s in summary.settled}
        assert statuses == {
            home.id: "settled_won",
            draw.id: "settled_lost",
            three.id: "settled_won",
            two.id: "settled_lost",
        }
        # 100 - 30 staked + 25 + 30 returned
        balance = await services.ledger.get_balance("alice")
        assert balance.wallet == Decimal("125.00")
        assert balance.locked == Decimal("0.00")

    asyncio.run(run())


def test_unresolved_next_goal_scorer_bet_loses(services, open_match) -> None:
    async def run() -> None:
        await open_match()
        bet = await _ngs_bet(services)

        await services.settlement.settle_bets("m1", [], (0, 0), "draw")

        assert (await services.ledger.get_bet(bet.id)).status == "settled_lost"
        balance = await services.ledger.get_balance("alice")
        assert (balance.wallet, balance.locked) == (Decimal("80.00"), Decimal("0.00"))

    asyncio.run(run())


def test_provisional_winner_without_confirmed_goal_is_voided(services, open_match) -> None:
    async def run() -> None:
        await open_match()
        bet = await _ngs_bet(services)
        await services.goals.process_goal_event("m1", "A", 15, 0)

        summary = await services.settlement.settle_bets("m1", [], (0, 0), "draw")

        assert summary.settled[0].status == "void"
        assert (await services.ledger.get_bet(bet.id)).status == "void"
        balance = await services.ledger.get_balance("alice")
        assert balance.wallet == Decimal("100.00")
        assert balance.locked == Decimal("0.00")
        assert balance.provisional == Decimal("0.00")

    asyncio.run(run())


def test_terminal_bets_are_skipped(services, open_match) -> None:
    async def run() -> None:
        await open_match()
        bet = await _ngs_bet(services)
        await services.goals.process_goal_event("m1", "A", 15, 0)
        await services.goals.void_goal_window("m1", 0)

        summary = await services.settlement.settle_bets("m1", [], (0, 0), "draw")

        assert summary.skipped_bet_ids == [bet.id]
        assert summary.settled == []

    asyncio.run(run())


class FlakySettlementEngine(SettlementEngine):
    """Fails every attempt for the bets it is told to break."""

    def __init__(self, *args, broken: set[str], **kwargs):
        super().__init__(*args, **kwargs)
        self.broken = broken
        self.attempts: dict[str, int] = {}

    async def _settle_one(self, unit, bet_id, record):
        if bet_id in self.broken:
            self.attempts[bet_id] = self.attempts.get(bet_id, 0) + 1
            raise RuntimeError("custody ledger row locked")
        return await super()._settle_one(unit, bet_id, record)


def test_failing_bet_does_not_abort_batch(services, open_match, settings) -> None:
    async def run() -> None:
        await open_match()
        await services.ledger.deposit("alice", Decimal("100"))
        await services.ledger.deposit("bob", Decimal("100"))
        bad = await services.ledger.place_bet(
            "alice", "m1", "MATCH_WINNER", "home", Decimal("10"), Decimal("2"), 1, 0
        )
        good = await services.ledger.place_bet(
            "bob", "m1", "MATCH_WINNER", "home", Decimal("10"), Decimal("2"), 1, 0
        )

        flaky = FlakySettlementEngine(
            services.store, settings, services.locks, broken={bad.id}
        )
        summary = await flaky.settle_bets("m1", [], (1, 0), "home")

        assert summary.failed_bet_ids == [bad.id]
        assert [s.bet_id for s in summary.settled] == [good.id]
        assert flaky.attempts[bad.id] == settings.ledger.max_settlement_attempts
        assert (await services.ledger.get_bet(bad.id)).status == "active"

        retry = await services.settlement.resettle_pending("m1")
        assert [s.bet_id for s in retry.settled] == [bad.id]
        assert retry.skipped_bet_ids == [good.id]
        assert (await services.ledger.get_balance("alice")).wallet == Decimal("110.00")

        async with services.store.unit_of_work() as unit:
            record = await unit.get_settlement("m1")
        assert record.bets_settled == 2
        assert record.winners == 2
        assert record.total_payout == Decimal("40.00")

    asyncio.run(run())


def test_resettle_requires_a_claimed_match(services, open_match) -> None:
    async def run() -> None:
        with pytest.raises(NotFound):
            await services.settlement.resettle_pending("missing")

        await open_match()
        with pytest.raises(InvalidStateTransition):
            await services.settlement.resettle_pending("m1")

    asyncio.run(run())


def test_settlement_queues_custody_credits(services, open_match) -> None:
    async def run() -> None:
        await open_match()
        bet = await _ngs_bet(services)
        await services.goals.process_goal_event("m1", "A", 15, 0)
        await services.settlement.settle_bets("m1", ["A"], (1, 0), "home")

        async with services.store.unit_of_work() as unit:
            pending = await unit.list_pending_instructions(limit=100, max_attempts=100)
        assert [(i.kind, i.amount, i.bet_id) for i in pending] == [
            ("debit", Decimal("20.00"), bet.id),
            ("credit", Decimal("60.00"), bet.id),
        ]

    asyncio.run(run())
