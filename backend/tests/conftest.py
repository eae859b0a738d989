"""Shared fixtures for the ledger test suite."""

import pytest

from goallive.config import CustodyConfig, LedgerConfig, Settings
from goallive.services import LedgerServices
from goallive.storage import MemoryLedgerStore


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        data_dir=tmp_path,
        ledger=LedgerConfig(backend="memory", operation_timeout_seconds=2.0),
        custody=CustodyConfig(paper_mode=True, retry_backoff_seconds=0.0),
    )


@pytest.fixture
def services(settings) -> LedgerServices:
    return LedgerServices(store=MemoryLedgerStore(), settings=settings)


@pytest.fixture
def open_match(services):
    """Factory: register a match and put it live."""

    async def start(match_id: str = "m1", players: tuple[str, ...] = ()):
        await services.matches.register_match(match_id, "Rovers", "United", players)
        return await services.matches.set_status(match_id, "live")

    return start
