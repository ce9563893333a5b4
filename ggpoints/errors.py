from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    REWARD_NOT_FOUND = "REWARD_NOT_FOUND"
    FORBIDDEN = "FORBIDDEN"
    INVALID_INPUT = "INVALID_INPUT"
    INVALID_STATUS = "INVALID_STATUS"
    INSUFFICIENT_POINTS = "INSUFFICIENT_POINTS"
    CONCURRENT_MODIFICATION = "CONCURRENT_MODIFICATION"
    FEATURE_NOT_AVAILABLE = "FEATURE_NOT_AVAILABLE"
    DATABASE_ERROR = "DATABASE_ERROR"


class StoreError(Exception):
    """Raised by store implementations on I/O failure."""


class ClaimError(Exception):
    kind: ErrorKind = ErrorKind.DATABASE_ERROR

    def __init__(self, message: str, balance: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.balance = balance

    def to_dict(self) -> dict:
        return {"error": self.kind.value, "message": self.message, "ggpoints": self.balance}


class RewardNotFoundError(ClaimError):
    kind = ErrorKind.REWARD_NOT_FOUND


class ForbiddenError(ClaimError):
    kind = ErrorKind.FORBIDDEN


class InvalidInputError(ClaimError):
    kind = ErrorKind.INVALID_INPUT


class InvalidStatusError(ClaimError):
    kind = ErrorKind.INVALID_STATUS


class InsufficientPointsError(ClaimError):
    kind = ErrorKind.INSUFFICIENT_POINTS

    def __init__(self, balance: int, cost: int, message: Optional[str] = None):
        super().__init__(
            message or f"Not enough GGPoints. You have {balance} but need {cost}.",
            balance=balance,
        )
        self.cost = cost


class ConcurrentModificationError(ClaimError):
    kind = ErrorKind.CONCURRENT_MODIFICATION


class FeatureNotAvailableError(ClaimError):
    kind = ErrorKind.FEATURE_NOT_AVAILABLE


class DatabaseError(ClaimError):
    kind = ErrorKind.DATABASE_ERROR
