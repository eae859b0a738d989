class CustodyAPIError(Exception):
    """Base exception for custody service errors."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class CustodyUnavailableError(CustodyAPIError):
    """Custody service unreachable or failing after retries."""

    pass
