"""Tests for the bet-change penalty schedule."""

from decimal import Decimal

import pytest
from pydantic import ValidationError

from goallive.config import PenaltyConfig
from goallive.penalty import (
    calc_penalty,
    calc_time_decay,
    format_penalty_pct,
    get_base_penalty_rate,
)


@pytest.mark.parametrize(
    "amount, change_number, minute, expected",
    [
        (100, 1, 0, "3.00"),
        (100, 1, 90, "0.00"),
        (100, 5, 45, "7.50"),
        (100, 10, 45, "7.50"),
        (20, 1, 30, "0.40"),
    ],
)
def test_penalty_amounts(amount, change_number, minute, expected) -> None:
    assert calc_penalty(amount, change_number, minute).penalty_amount == Decimal(expected)


def test_base_rate_schedule_pins_at_last_rate() -> None:
    assert get_base_penalty_rate(1) == Decimal("0.03")
    assert get_base_penalty_rate(2) == Decimal("0.05")
    assert get_base_penalty_rate(4) == Decimal("0.12")
    assert get_base_penalty_rate(5) == Decimal("0.15")
    assert get_base_penalty_rate(12) == Decimal("0.15")


def test_non_positive_change_number_is_free() -> None:
    preview = calc_penalty(100, 0, 10)
    assert preview.penalty_amount == Decimal("0.00")
    assert preview.new_effective_amount == Decimal("100.00")

    assert calc_penalty(100, -3, 10).penalty_amount == Decimal("0.00")


def test_minute_is_clamped_to_match_length() -> None:
    assert calc_penalty(100, 1, 120).penalty_amount == Decimal("0.00")
    assert calc_penalty(100, 1, -5).penalty_amount == Decimal("3.00")
    assert calc_time_decay(0) == Decimal("1")
    assert calc_time_decay(95) == Decimal("0")


def test_preview_fields_for_first_change_at_minute_30() -> None:
    preview = calc_penalty(Decimal("20.00"), 1, 30)

    assert preview.penalty_pct == Decimal("0.020000")
    assert preview.penalty_amount == Decimal("0.40")
    assert preview.new_effective_amount == Decimal("19.60")
    assert preview.change_number == 1


def test_penalty_rounds_half_up_to_cents() -> None:
    # 0.50 x 3% = 0.015
    assert calc_penalty(Decimal("0.50"), 1, 0).penalty_amount == Decimal("0.02")


def test_custom_schedule() -> None:
    config = PenaltyConfig(base_rates=["0.10"], full_time_minute=100)
    assert calc_penalty(100, 3, 50, config).penalty_amount == Decimal("5.00")


def test_empty_schedule_rejected() -> None:
    with pytest.raises(ValidationError):
        PenaltyConfig(base_rates=[])


def test_stake_never_increases_across_changes() -> None:
    amount = Decimal("50.00")
    total = Decimal("0.00")
    for change_number, minute in enumerate([5, 5, 20, 44, 60, 61, 89, 90], start=1):
        preview = calc_penalty(amount, change_number, minute)
        assert preview.new_effective_amount <= amount
        total += preview.penalty_amount
        amount = preview.new_effective_amount
        assert amount == Decimal("50.00") - total


def test_format_penalty_pct() -> None:
    assert format_penalty_pct(Decimal("0.0234")) == "2.34%"
    assert format_penalty_pct(Decimal("0.15")) == "15.00%"
