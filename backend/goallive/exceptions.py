class LedgerError(Exception):
    """Base exception for ledger errors."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(LedgerError):
    """Bad stake, odds, or target shape."""

    pass


class InsufficientBalance(LedgerError):
    """Requested amount exceeds the free wallet balance."""

    pass


class ExistingActiveBet(LedgerError):
    """Bettor already holds an active next-goal-scorer bet on this match."""

    def __init__(self, message: str, bet_id: str):
        super().__init__(message)
        self.bet_id = bet_id


class NotFound(LedgerError):
    """Unknown bet, match, or target."""

    pass


class InvalidStateTransition(LedgerError):
    """Bet is not in a status eligible for the requested operation."""

    pass


class AlreadySettled(LedgerError):
    """Match is finished; settlement already happened."""

    pass


class ConcurrentUpdateError(LedgerError):
    """Optimistic-concurrency check failed at commit."""

    pass


class LedgerTimeoutError(LedgerError):
    """Storage operation did not finish in time."""

    pass


class LedgerIntegrityError(LedgerError):
    """A balance component would become negative."""

    pass
