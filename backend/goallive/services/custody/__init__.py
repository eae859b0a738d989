from .client import CustodyClient
from .exceptions import CustodyAPIError, CustodyUnavailableError
from .models import DeliveryReport, FreeBalance, InstructionReceipt
from .notifier import CustodyNotifier

__all__ = [
    "CustodyClient",
    "CustodyNotifier",
    "CustodyAPIError",
    "CustodyUnavailableError",
    "DeliveryReport",
    "FreeBalance",
    "InstructionReceipt",
]
