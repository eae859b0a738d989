"""Services module."""

from goallive.config import Settings, get_settings
from goallive.services.base import LedgerService, MatchLocks
from goallive.services.custody import CustodyClient, CustodyNotifier
from goallive.services.goals import GoalWindowCorrelator
from goallive.services.ledger import BettingLedger
from goallive.services.matches import MatchTracker
from goallive.services.settlement import SettlementEngine
from goallive.storage import LedgerStore, create_store


class LedgerServices:
    """All ledger services over one store, sharing one set of match locks."""

    def __init__(
        self,
        store: LedgerStore | None = None,
        settings: Settings | None = None,
        custody_client: CustodyClient | None = None,
    ):
        self.settings = settings or get_settings()
        self.store = store or create_store(self.settings)
        self.locks = MatchLocks()

        self.ledger = BettingLedger(self.store, self.settings, self.locks)
        self.goals = GoalWindowCorrelator(self.store, self.settings, self.locks)
        self.settlement = SettlementEngine(self.store, self.settings, self.locks)
        self.matches = MatchTracker(
            self.store, self.goals, self.settlement, self.settings, self.locks
        )
        self.custody_client = custody_client or CustodyClient(self.settings.custody)
        self.notifier = CustodyNotifier(
            self.store, self.custody_client, self.settings, self.locks
        )


__all__ = [
    "BettingLedger",
    "CustodyNotifier",
    "GoalWindowCorrelator",
    "LedgerService",
    "LedgerServices",
    "MatchLocks",
    "MatchTracker",
    "SettlementEngine",
]
