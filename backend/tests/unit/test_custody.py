"""Tests for the custody client and outbox notifier."""

import asyncio
import json
from decimal import Decimal

import httpx
import pytest

from goallive.config import CustodyConfig
from goallive.models import CustodyInstruction
from goallive.services.custody import (
    CustodyAPIError,
    CustodyClient,
    CustodyNotifier,
    CustodyUnavailableError,
)


def _live_config(**overrides) -> CustodyConfig:
    values = {
        "paper_mode": False,
        "base_url": "https://custody.test/v1",
        "api_key": "secret",
        "max_retries": 3,
        "retry_backoff_seconds": 0.0,
    }
    values.update(overrides)
    return CustodyConfig(**values)


def _instruction(kind: str = "credit", amount: str = "60.00") -> CustodyInstruction:
    return CustodyInstruction(bettor_id="alice", bet_id="bet_1", kind=kind, amount=Decimal(amount))


def test_paper_mode_tracks_balances_without_network() -> None:
    client = CustodyClient(CustodyConfig(paper_mode=True))

    async def run() -> None:
        async with client:
            client.fund_paper_account("alice", Decimal("100"))
            await client.submit_instruction(_instruction("debit", "20"))
            credit = _instruction("credit", "60")
            await client.submit_instruction(credit)
            duplicate = await client.submit_instruction(credit)

            assert duplicate.duplicate is True
            assert await client.get_free_balance("alice") == Decimal("140.00")
            assert await client.get_free_balance("nobody") == Decimal("0.00")

    asyncio.run(run())


def test_submit_instruction_posts_payload() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(201, json={"id": json.loads(request.content)["id"], "status": "queued"})

    client = CustodyClient(_live_config(), transport=httpx.MockTransport(handler))
    instruction = _instruction()

    async def run() -> None:
        async with client:
            receipt = await client.submit_instruction(instruction)
            assert receipt.instruction_id == instruction.id
            assert receipt.status == "queued"

    asyncio.run(run())

    request = seen[0]
    assert request.method == "POST"
    assert request.url.path == "/v1/instructions"
    assert request.headers["Authorization"] == "Bearer secret"
    body = json.loads(request.content)
    assert body["kind"] == "credit"
    assert body["amount"] == "60.00"


def test_conflict_means_already_delivered() -> None:
    client = CustodyClient(
        _live_config(), transport=httpx.MockTransport(lambda request: httpx.Response(409))
    )

    async def run() -> None:
        async with client:
            receipt = await client.submit_instruction(_instruction())
            assert receipt.duplicate is True

    asyncio.run(run())


def test_server_errors_are_retried_then_raised() -> None:
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(503)

    client = CustodyClient(_live_config(max_retries=3), transport=httpx.MockTransport(handler))

    async def run() -> None:
        async with client:
            with pytest.raises(CustodyUnavailableError):
                await client.submit_instruction(_instruction())

    asyncio.run(run())
    assert len(calls) == 3


def test_client_errors_are_not_retried() -> None:
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(422, text="amount must be positive")

    client = CustodyClient(_live_config(), transport=httpx.MockTransport(handler))

    async def run() -> None:
        async with client:
            with pytest.raises(CustodyAPIError) as exc_info:
                await client.submit_instruction(_instruction())
            assert exc_info.value.status_code == 422

    asyncio.run(run())
    assert len(calls) == 1


def test_get_free_balance() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/v1/balances/alice"
        return httpx.Response(200, json={"bettor_id": "alice", "free_balance": "150.25"})

    client = CustodyClient(_live_config(), transport=httpx.MockTransport(handler))

    async def run() -> None:
        async with client:
            assert await client.get_free_balance("alice") == Decimal("150.25")

    asyncio.run(run())


def test_client_requires_context_manager() -> None:
    client = CustodyClient(_live_config())
    with pytest.raises(RuntimeError):
        asyncio.run(client.get_free_balance("alice"))


def test_notifier_delivers_outbox(services, open_match) -> None:
    async def run() -> None:
        await open_match()
        await services.ledger.deposit("alice", Decimal("100"))
        await services.ledger.place_bet(
            "alice", "m1", "MATCH_WINNER", "home", Decimal("20"), Decimal("2"), 1, 0
        )
        await services.ledger.withdraw("alice", Decimal("30"))

        async with services.custody_client:
            services.custody_client.fund_paper_account("alice", Decimal("100"))
            report = await services.notifier.flush()
            assert len(report.delivered) == 2
            assert report.failed == []
            assert await services.custody_client.get_free_balance("alice") == Decimal("50.00")

            again = await services.notifier.flush()
            assert again.attempted == 0

    asyncio.run(run())


class BrokenCustodyClient:
    async def submit_instruction(self, instruction):
        raise CustodyUnavailableError("custody down")


def test_notifier_records_failures(services, settings) -> None:
    settings.custody = settings.custody.model_copy(update={"max_delivery_attempts": 2})
    notifier = CustodyNotifier(services.store, BrokenCustodyClient(), settings)

    async def run() -> None:
        await services.ledger.deposit("bob", Decimal("50"))
        await services.ledger.withdraw("bob", Decimal("10"))

        first = await notifier.flush()
        assert len(first.failed) == 1
        assert first.abandoned == []

        second = await notifier.flush()
        assert second.abandoned == second.failed

        # over the attempt limit: left for manual review
        third = await notifier.flush()
        assert third.attempted == 0

        async with services.store.unit_of_work() as unit:
            pending = await unit.list_pending_instructions(limit=10, max_attempts=100)
        assert pending[0].attempts == 2
        assert pending[0].last_error == "custody down"
        assert pending[0].delivered is False

    asyncio.run(run())


def test_sync_wallet_credits_custody_top_up(services) -> None:
    async def run() -> None:
        await services.ledger.deposit("alice", Decimal("100"))
        async with services.custody_client:
            services.custody_client.fund_paper_account("alice", Decimal("150"))
            balance = await services.ledger.sync_wallet("alice", services.custody_client)
            assert balance.wallet == Decimal("150.00")

            # a lower custody figure never debits the ledger
            services.custody_client.fund_paper_account("alice", Decimal("-100"))
            balance = await services.ledger.sync_wallet("alice", services.custody_client)
            assert balance.wallet == Decimal("150.00")

    asyncio.run(run())
