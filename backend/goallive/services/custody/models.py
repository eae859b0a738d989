from __future__ import annotations

from decimal import Decimal
from typing import Any

from pydantic import BaseModel, Field


class InstructionReceipt(BaseModel):
    """Custody acknowledgement of one delivered instruction."""

    instruction_id: str
    status: str = "accepted"
    duplicate: bool = False

    @classmethod
    def from_api(cls, instruction_id: str, data: dict[str, Any]) -> InstructionReceipt:
        return cls(
            instruction_id=data.get("id", instruction_id),
            status=data.get("status", "accepted"),
        )


class DeliveryReport(BaseModel):
    """Outcome of one outbox flush."""

    delivered: list[str] = Field(default_factory=list)
    failed: list[str] = Field(default_factory=list)
    abandoned: list[str] = Field(default_factory=list)

    @property
    def attempted(self) -> int:
        return len(self.delivered) + len(self.failed)


class FreeBalance(BaseModel):
    bettor_id: str
    free_balance: Decimal = Decimal("0.00")
