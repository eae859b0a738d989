"""Delivers queued custody instructions from the outbox."""

import logging

from goallive.models import CustodyInstruction
from goallive.services.base import LedgerService

from .client import CustodyClient
from .exceptions import CustodyAPIError
from .models import DeliveryReport

logger = logging.getLogger(__name__)


class CustodyNotifier(LedgerService):
    """
    Drains the outbox written by the ledger services.

    Ledger state never waits on custody: a failed delivery is recorded on the
    instruction and picked up again by the next flush.
    """

    def __init__(self, store, client: CustodyClient, settings=None, locks=None):
        super().__init__(store, settings, locks)
        self.client = client

    async def flush(self, limit: int = 100) -> DeliveryReport:
        """Deliver up to limit pending instructions, oldest first."""
        max_attempts = self.settings.custody.max_delivery_attempts
        pending = await self._transact(
            lambda unit: unit.list_pending_instructions(limit, max_attempts),
            "list_pending_instructions",
        )

        report = DeliveryReport()
        for instruction in pending:
            try:
                await self.client.submit_instruction(instruction)
            except CustodyAPIError as e:
                attempts = instruction.attempts + 1
                await self._save(
                    instruction.model_copy(update={"attempts": attempts, "last_error": str(e)})
                )
                report.failed.append(instruction.id)
                if attempts >= max_attempts:
                    logger.error(
                        f"Custody instruction {instruction.id} abandoned after {attempts} "
                        f"attempts, needs manual review: {e}"
                    )
                    report.abandoned.append(instruction.id)
                else:
                    logger.warning(f"Custody delivery of {instruction.id} failed: {e}")
                continue

            await self._save(
                instruction.model_copy(
                    update={
                        "attempts": instruction.attempts + 1,
                        "delivered": True,
                        "last_error": None,
                    }
                )
            )
            report.delivered.append(instruction.id)

        if pending:
            logger.info(
                f"Custody flush: {len(report.delivered)} delivered, {len(report.failed)} failed"
            )
        return report

    async def _save(self, instruction: CustodyInstruction) -> CustodyInstruction:
        return await self._transact(
            lambda unit: unit.update_instruction(instruction),
            f"update_instruction({instruction.id})",
        )
