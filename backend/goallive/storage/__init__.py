"""Storage layer for goal.live - interchangeable ledger backends.

This package provides:
- LedgerStore / LedgerUnit: the unit-of-work interface the services use
- MemoryLedgerStore: process-local backend for tests and simulation
- SqlLedgerStore: transactional SQLAlchemy backend for production

Backends are selected by configuration via create_store().
"""

from goallive.config import Settings, get_settings

from .base import LedgerStore, LedgerUnit
from .memory import MemoryLedgerStore


def create_store(settings: Settings | None = None) -> LedgerStore:
    """Build the ledger store named by settings.ledger.backend."""
    settings = settings or get_settings()

    if settings.ledger.backend == "database":
        from .database import SqlLedgerStore

        return SqlLedgerStore(settings.ledger)
    return MemoryLedgerStore()


__all__ = [
    "LedgerStore",
    "LedgerUnit",
    "MemoryLedgerStore",
    "create_store",
]
