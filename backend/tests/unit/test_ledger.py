"""Tests for bet placement, changes, and balance reads."""

import asyncio
from decimal import Decimal

import pytest

from goallive.exceptions import (
    AlreadySettled,
    ExistingActiveBet,
    InsufficientBalance,
    InvalidStateTransition,
    NotFound,
    ValidationError,
)


async def _pending_instructions(services):
    async with services.store.unit_of_work() as unit:
        return await unit.list_pending_instructions(limit=100, max_attempts=100)


def test_place_bet_locks_stake(services, open_match) -> None:
    async def run() -> None:
        await open_match()
        await services.ledger.deposit("alice", Decimal("100"))

        bet = await services.ledger.place_bet(
            "alice", "m1", "NEXT_GOAL_SCORER", "A", Decimal("20"), Decimal("3.0"), 10, 0
        )
        assert bet.id.startswith("bet_")
        assert bet.status == "active"
        assert bet.current_amount == Decimal("20.00")
        assert bet.goal_window == 0
        assert bet.placed_at_minute == 10

        balance = await services.ledger.get_balance("alice")
        assert balance.wallet == Decimal("80.00")
        assert balance.locked == Decimal("20.00")
        assert balance.potential_payout == Decimal("60.00")

        instructions = await _pending_instructions(services)
        assert [(i.kind, i.amount, i.bet_id) for i in instructions] == [
            ("debit", Decimal("20.00"), bet.id)
        ]

    asyncio.run(run())


def test_place_bet_rejects_stake_above_wallet(services, open_match) -> None:
    async def run() -> None:
        await open_match()
        await services.ledger.deposit("alice", Decimal("100"))

        with pytest.raises(InsufficientBalance):
            await services.ledger.place_bet(
                "alice", "m1", "MATCH_WINNER", "home", Decimal("150"), Decimal("2"), 5, 0
            )

        assert await services.ledger.get_bets("alice") == []
        balance = await services.ledger.get_balance("alice")
        assert balance.wallet == Decimal("100.00")
        assert balance.locked == Decimal("0.00")

    asyncio.run(run())


def test_one_active_next_goal_scorer_bet_per_match(services, open_match) -> None:
    async def run() -> None:
        await open_match()
        await services.ledger.deposit("alice", Decimal("100"))
        first = await services.ledger.place_bet(
            "alice", "m1", "NEXT_GOAL_SCORER", "A", Decimal("10"), Decimal("3"), 10, 0
        )

        with pytest.raises(ExistingActiveBet) as exc_info:
            await services.ledger.place_bet(
                "alice", "m1", "NEXT_GOAL_SCORER", "B", Decimal("10"), Decimal("4"), 11, 0
            )
        assert exc_info.value.bet_id == first.id

        # other markets are unrestricted
        await services.ledger.place_bet(
            "alice", "m1", "MATCH_WINNER", "draw", Decimal("10"), Decimal("3.1"), 11, 0
        )
        assert len(await services.ledger.get_bets("alice", "m1")) == 2

    asyncio.run(run())


def test_concurrent_places_admit_one_next_goal_scorer_bet(services, open_match) -> None:
    async def run() -> None:
        await open_match()
        await services.ledger.deposit("alice", Decimal("100"))

        results = await asyncio.gather(
            *(
                services.ledger.place_bet(
                    "alice", "m1", "NEXT_GOAL_SCORER", target, Decimal("10"), Decimal("3"), 10, 0
                )
                for target in ("A", "B", "C")
            ),
            return_exceptions=True,
        )

        placed = [r for r in results if not isinstance(r, Exception)]
        rejected = [r for r in results if isinstance(r, ExistingActiveBet)]
        assert len(placed) == 1
        assert len(rejected) == 2

        balance = await services.ledger.get_balance("alice")
        assert balance.wallet == Decimal("90.00")
        assert balance.locked == Decimal("10.00")

    asyncio.run(run())


@pytest.mark.parametrize(
    "kind, target, stake, odds",
    [
        ("NEXT_GOAL_SCORER", "", "10", "3"),
        ("NEXT_GOAL_SCORER", "A", "0", "3"),
        ("NEXT_GOAL_SCORER", "A", "-5", "3"),
        ("NEXT_GOAL_SCORER", "A", "ten", "3"),
        ("NEXT_GOAL_SCORER", "A", "10", "1.0"),
        ("MATCH_WINNER", "home", "10", "1.00001"),
        ("MATCH_WINNER", "home", "10", "1e30"),
        ("MATCH_WINNER", "home", "10", "NaN"),
        ("MATCH_WINNER", "banana", "10", "2"),
        ("EXACT_GOALS", "-1", "10", "5"),
        ("EXACT_GOALS", "two", "10", "5"),
    ],
)
def test_place_bet_validation(services, open_match, kind, target, stake, odds) -> None:
    async def run() -> None:
        await open_match()
        await services.ledger.deposit("alice", Decimal("100"))
        with pytest.raises(ValidationError):
            await services.ledger.place_bet("alice", "m1", kind, target, stake, odds, 10, 0)

    asyncio.run(run())


def test_place_bet_normalizes_targets(services, open_match) -> None:
    async def run() -> None:
        await open_match()
        await services.ledger.deposit("alice", Decimal("100"))

        exact = await services.ledger.place_bet(
            "alice", "m1", "EXACT_GOALS", 3, Decimal("5"), Decimal("6.5"), 1, 0
        )
        winner = await services.ledger.place_bet(
            "alice", "m1", "MATCH_WINNER", " Home ", Decimal("5"), Decimal("2.2"), 1, 0
        )
        assert exact.current_target == "3"
        assert winner.current_target == "home"

    asyncio.run(run())


def test_place_bet_requires_live_match_and_open_window(services, open_match) -> None:
    async def run() -> None:
        await services.ledger.deposit("alice", Decimal("100"))

        with pytest.raises(NotFound):
            await services.ledger.place_bet(
                "alice", "nope", "MATCH_WINNER", "home", Decimal("5"), Decimal("2"), 1, 0
            )

        await services.matches.register_match("m2", "Rovers", "United")
        with pytest.raises(InvalidStateTransition):
            await services.ledger.place_bet(
                "alice", "m2", "MATCH_WINNER", "home", Decimal("5"), Decimal("2"), 0, 0
            )

        await open_match("m1", players=("A", "B"))
        with pytest.raises(ValidationError):
            await services.ledger.place_bet(
                "alice", "m1", "NEXT_GOAL_SCORER", "A", Decimal("5"), Decimal("2"), 1, 1
            )
        with pytest.raises(NotFound):
            await services.ledger.place_bet(
                "alice", "m1", "NEXT_GOAL_SCORER", "Z", Decimal("5"), Decimal("2"), 1, 0
            )

    asyncio.run(run())


def test_change_bet_applies_time_decayed_penalty(services, open_match) -> None:
    async def run() -> None:
        await open_match()
        await services.ledger.deposit("alice", Decimal("100"))
        bet = await services.ledger.place_bet(
            "alice", "m1", "NEXT_GOAL_SCORER", "A", Decimal("20"), Decimal("3.0"), 10, 0
        )

        result = await services.ledger.change_bet(bet.id, "B", Decimal("4.5"), 30)

        assert result.penalty.penalty_amount == Decimal("0.40")
        assert result.bet.current_target == "B"
        assert result.bet.original_target == "A"
        assert result.bet.current_amount == Decimal("19.60")
        assert result.bet.total_penalties == Decimal("0.40")
        assert result.bet.change_count == 1
        assert result.bet.odds == Decimal("4.5")
        assert result.change.sequence == 1
        assert (result.change.from_target, result.change.to_target) == ("A", "B")

        balance = await services.ledger.get_balance("alice")
        assert balance.wallet == Decimal("80.00")
        assert balance.locked == Decimal("19.60")

    asyncio.run(run())


def test_repeated_changes_keep_stake_consistent(services, open_match) -> None:
    async def run() -> None:
        await open_match()
        await services.ledger.deposit("alice", Decimal("100"))
        bet = await services.ledger.place_bet(
            "alice", "m1", "NEXT_GOAL_SCORER", "A", Decimal("50"), Decimal("3"), 1, 0
        )

        previous = bet.current_amount
        targets = ["B", "C", "A", "B", "C", "A", "B"]
        for minute, target in zip([2, 8, 15, 15, 40, 70, 88], targets):
            result = await services.ledger.change_bet(bet.id, target, Decimal("3"), minute)
            assert result.bet.current_amount <= previous
            previous = result.bet.current_amount

        bet = await services.ledger.get_bet(bet.id)
        changes = await services.ledger.get_changes(bet.id)
        assert [c.sequence for c in changes] == list(range(1, len(targets) + 1))
        assert bet.change_count == len(targets)
        assert bet.total_penalties == sum(c.penalty_amount for c in changes)
        assert bet.current_amount == bet.original_amount - bet.total_penalties

        balance = await services.ledger.get_balance("alice")
        assert balance.locked == bet.current_amount

    asyncio.run(run())


def test_change_bet_rebaselines_goal_window(services, open_match) -> None:
    async def run() -> None:
        await open_match()
        await services.ledger.deposit("alice", Decimal("100"))
        bet = await services.ledger.place_bet(
            "alice", "m1", "MATCH_WINNER", "home", Decimal("10"), Decimal("2"), 5, 0
        )
        await services.matches.confirm_goal("m1", "X", "away", 20)

        result = await services.ledger.change_bet(bet.id, "away", Decimal("1.8"), 25)
        assert result.bet.goal_window == 1

    asyncio.run(run())


def test_change_bet_rejects_unknown_and_resolved_bets(services, open_match) -> None:
    async def run() -> None:
        await open_match()
        await services.ledger.deposit("alice", Decimal("100"))
        bet = await services.ledger.place_bet(
            "alice", "m1", "NEXT_GOAL_SCORER", "A", Decimal("20"), Decimal("3"), 10, 0
        )

        with pytest.raises(NotFound):
            await services.ledger.change_bet("bet_missing", "B", Decimal("3"), 20)

        await services.goals.process_goal_event("m1", "B", 15, 0)
        with pytest.raises(InvalidStateTransition):
            await services.ledger.change_bet(bet.id, "B", Decimal("3"), 20)
        with pytest.raises(InvalidStateTransition):
            await services.ledger.preview_penalty(bet.id, 20)

    asyncio.run(run())


def test_change_bet_rejects_odds_that_round_to_one(services, open_match) -> None:
    async def run() -> None:
        await open_match()
        await services.ledger.deposit("alice", Decimal("100"))
        bet = await services.ledger.place_bet(
            "alice", "m1", "NEXT_GOAL_SCORER", "A", Decimal("20"), Decimal("1.00005"), 10, 0
        )
        assert bet.odds == Decimal("1.0001")

        for odds in (Decimal("1.00001"), Decimal("1e30")):
            with pytest.raises(ValidationError):
                await services.ledger.change_bet(bet.id, "B", odds, 20)

        unchanged = await services.ledger.get_bet(bet.id)
        assert unchanged.change_count == 0

    asyncio.run(run())


def test_preview_penalty_is_read_only(services, open_match) -> None:
    async def run() -> None:
        await open_match()
        await services.ledger.deposit("alice", Decimal("100"))
        bet = await services.ledger.place_bet(
            "alice", "m1", "NEXT_GOAL_SCORER", "A", Decimal("20"), Decimal("3"), 10, 0
        )

        preview = await services.ledger.preview_penalty(bet.id, 30)
        assert preview.penalty_amount == Decimal("0.40")
        assert preview.new_effective_amount == Decimal("19.60")

        unchanged = await services.ledger.get_bet(bet.id)
        assert unchanged.current_amount == Decimal("20.00")
        assert unchanged.change_count == 0

        with pytest.raises(NotFound):
            await services.ledger.preview_penalty("bet_missing", 30)

    asyncio.run(run())


def test_bet_mutations_after_full_time_fail(services, open_match) -> None:
    async def run() -> None:
        await open_match()
        await services.ledger.deposit("alice", Decimal("100"))
        bet = await services.ledger.place_bet(
            "alice", "m1", "MATCH_WINNER", "home", Decimal("10"), Decimal("2"), 5, 0
        )
        await services.matches.full_time("m1")

        with pytest.raises(AlreadySettled):
            await services.ledger.place_bet(
                "alice", "m1", "MATCH_WINNER", "home", Decimal("10"), Decimal("2"), 91, 0
            )
        with pytest.raises(AlreadySettled):
            await services.ledger.change_bet(bet.id, "away", Decimal("2"), 91)

    asyncio.run(run())


def test_withdraw_queues_custody_instruction(services) -> None:
    async def run() -> None:
        await services.ledger.deposit("bob", Decimal("50"))

        with pytest.raises(InsufficientBalance):
            await services.ledger.withdraw("bob", Decimal("60"))

        balance = await services.ledger.withdraw("bob", Decimal("20"))
        assert balance.wallet == Decimal("30.00")

        instructions = await _pending_instructions(services)
        assert [(i.kind, i.amount) for i in instructions] == [("withdraw", Decimal("20.00"))]

    asyncio.run(run())


def test_deposit_rejects_non_positive_amounts(services) -> None:
    async def run() -> None:
        with pytest.raises(ValidationError):
            await services.ledger.deposit("bob", Decimal("0"))
        with pytest.raises(ValidationError):
            await services.ledger.deposit("bob", "-1")

    asyncio.run(run())
