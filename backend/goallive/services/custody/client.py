from __future__ import annotations

import asyncio
import logging
from decimal import Decimal
from typing import Any

import httpx

from goallive.balance import round_currency
from goallive.config import CustodyConfig
from goallive.models import CustodyInstruction

from .exceptions import CustodyAPIError, CustodyUnavailableError
from .models import FreeBalance, InstructionReceipt

logger = logging.getLogger(__name__)


class CustodyClient:
    def __init__(
        self,
        config: CustodyConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.config = config or CustodyConfig()
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._paper_balances: dict[str, Decimal] = {}
        self._paper_instructions: dict[str, CustodyInstruction] = {}

        logger.info(
            f"Initialized CustodyClient (paper_mode={self.config.paper_mode}, "
            f"base_url={self.config.base_url})"
        )

    async def __aenter__(self) -> CustodyClient:
        headers = {}
        if self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"
        self._client = httpx.AsyncClient(
            base_url=self.config.base_url,
            timeout=self.config.timeout_seconds,
            headers=headers,
            transport=self._transport,
        )
        return self

    async def __aexit__(
        self,
        exc_type: type | None,
        exc_val: Exception | None,
        exc_tb: Any,
    ) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None
            logger.info("Closed CustodyClient")

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("CustodyClient must be used as async context manager")
        return self._client

    def _paper_enabled(self) -> bool:
        return self.config.paper_mode

    async def _request(
        self,
        method: str,
        endpoint: str,
        json_data: dict[str, Any] | None = None,
    ) -> httpx.Response:
        retry_count = 0
        last_error: Exception | str | None = None

        while retry_count < self.config.max_retries:
            try:
                response = await self.client.request(method=method, url=endpoint, json=json_data)

                if response.status_code == 429 or response.status_code >= 500:
                    wait_time = self.config.retry_backoff_seconds * 2**retry_count
                    last_error = f"HTTP {response.status_code}"
                    logger.warning(
                        f"Custody returned {response.status_code}, retrying in {wait_time}s..."
                    )
                    retry_count += 1
                    if retry_count < self.config.max_retries:
                        await asyncio.sleep(wait_time)
                    continue

                return response

            except httpx.TimeoutException as e:
                last_error = e
                retry_count += 1
                if retry_count < self.config.max_retries:
                    logger.warning(f"Custody timeout, retrying ({retry_count})...")
                    await asyncio.sleep(self.config.retry_backoff_seconds)

            except httpx.RequestError as e:
                last_error = e
                logger.error(f"Custody network error: {e}")
                break

        raise CustodyUnavailableError(
            f"Custody request {method} {endpoint} failed after {retry_count} retries: "
            f"{last_error}"
        )

    async def submit_instruction(self, instruction: CustodyInstruction) -> InstructionReceipt:
        """
        Deliver one instruction; the instruction id makes redelivery idempotent.

        A 409 means custody already holds this instruction and counts as
        delivered.
        """
        if self._paper_enabled():
            return self._paper_submit(instruction)

        payload = {
            "id": instruction.id,
            "bettor_id": instruction.bettor_id,
            "bet_id": instruction.bet_id,
            "kind": instruction.kind,
            "amount": str(instruction.amount),
        }
        logger.info(
            f"Submitting custody {instruction.kind} {instruction.id}: "
            f"${instruction.amount} for {instruction.bettor_id}"
        )

        response = await self._request("POST", "instructions", json_data=payload)
        if response.status_code == 409:
            logger.info(f"Custody already has instruction {instruction.id}")
            return InstructionReceipt(instruction_id=instruction.id, duplicate=True)
        if response.is_error:
            raise CustodyAPIError(
                f"Custody rejected instruction {instruction.id}: {response.text}",
                status_code=response.status_code,
            )
        return InstructionReceipt.from_api(instruction.id, response.json())

    async def get_free_balance(self, bettor_id: str) -> Decimal:
        """Funds custody holds for the bettor that no bet has reserved."""
        if self._paper_enabled():
            return self._paper_balances.get(bettor_id, Decimal("0.00"))

        response = await self._request("GET", f"balances/{bettor_id}")
        if response.is_error:
            raise CustodyAPIError(
                f"Balance lookup for {bettor_id} failed: {response.text}",
                status_code=response.status_code,
            )
        data = response.json()
        return FreeBalance(bettor_id=bettor_id, free_balance=data.get("free_balance", "0")).free_balance

    def fund_paper_account(self, bettor_id: str, amount: Decimal) -> Decimal:
        """Add funds to a paper-mode account, e.g. to simulate a top-up."""
        balance = self._paper_balances.get(bettor_id, Decimal("0.00")) + amount
        self._paper_balances[bettor_id] = round_currency(balance)
        return self._paper_balances[bettor_id]

    def _paper_submit(self, instruction: CustodyInstruction) -> InstructionReceipt:
        if instruction.id in self._paper_instructions:
            return InstructionReceipt(instruction_id=instruction.id, duplicate=True)

        balance = self._paper_balances.get(instruction.bettor_id, Decimal("0.00"))
        if instruction.kind == "credit":
            balance += instruction.amount
        else:
            balance = max(Decimal("0.00"), balance - instruction.amount)
        self._paper_balances[instruction.bettor_id] = round_currency(balance)
        self._paper_instructions[instruction.id] = instruction
        return InstructionReceipt(instruction_id=instruction.id)
