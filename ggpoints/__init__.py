"""
GGPoints Claim Ledger

This package provides:
- Reward claim state machine: available → requested → approved / rejected
- Two-phase claim protocol: reward CAS, then balance CAS, with compensation
- Idempotent claims (duplicate submissions never double-charge)
- Append-only points ledger for auditing
- In-memory and SQLAlchemy store implementations
"""

from .coordinator import ClaimCoordinator
from .errors import ClaimError, ErrorKind, StoreError
from .ledger import BalanceLedger
from .models import (
    Account,
    ClaimAction,
    ClaimOptions,
    ClaimResult,
    LedgerEntry,
    Reward,
    RewardStatus,
)
from .state_machine import RewardStateMachine

__all__ = [
    "Account",
    "BalanceLedger",
    "ClaimAction",
    "ClaimCoordinator",
    "ClaimError",
    "ClaimOptions",
    "ClaimResult",
    "ErrorKind",
    "LedgerEntry",
    "Reward",
    "RewardStateMachine",
    "RewardStatus",
    "StoreError",
]
