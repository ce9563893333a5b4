from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RewardStatus(str, Enum):
    AVAILABLE = "available"
    REQUESTED = "requested"
    APPROVED = "approved"
    REJECTED = "rejected"


class ClaimAction(str, Enum):
    REQUEST = "request"
    DIRECT_CLAIM = "direct_claim"
    APPROVE = "approve"
    REJECT = "reject"

    @property
    def is_parent_action(self) -> bool:
        return self in (ClaimAction.APPROVE, ClaimAction.REJECT)

    @property
    def debits_points(self) -> bool:
        return self in (ClaimAction.DIRECT_CLAIM, ClaimAction.APPROVE)


# Statuses that already satisfy each action; reaching one of these again is a no-op.
TARGET_STATES: dict[ClaimAction, frozenset[RewardStatus]] = {
    ClaimAction.REQUEST: frozenset({RewardStatus.REQUESTED, RewardStatus.APPROVED}),
    ClaimAction.DIRECT_CLAIM: frozenset({RewardStatus.APPROVED}),
    ClaimAction.APPROVE: frozenset({RewardStatus.APPROVED}),
    ClaimAction.REJECT: frozenset({RewardStatus.REJECTED}),
}


class Reward(BaseModel):
    id: str
    owner_id: str
    name: str
    cost: int = Field(..., gt=0)
    status: RewardStatus = RewardStatus.AVAILABLE
    claimed: bool = False
    claimed_at: Optional[datetime] = None
    requested_at: Optional[datetime] = None
    approved_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None
    reject_reason: Optional[str] = None
    decided_by: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    legacy: bool = False

    model_config = ConfigDict(from_attributes=True)

    @classmethod
    def from_legacy(cls, **data: Any) -> "Reward":
        """Normalize a row from storage that only knows the ``claimed`` flag."""
        claimed = bool(data.pop("claimed", False))
        data.pop("status", None)
        return cls(
            **data,
            claimed=claimed,
            status=RewardStatus.APPROVED if claimed else RewardStatus.AVAILABLE,
            legacy=True,
        )

    def is_in_target_state(self, action: ClaimAction) -> bool:
        return self.status in TARGET_STATES[action]


class RewardPatch(BaseModel):
    """Fields written by a single conditional reward update.

    Only fields explicitly set are written, so ``None`` can be used to clear
    a timestamp.
    """
    status: Optional[RewardStatus] = None
    claimed: Optional[bool] = None
    claimed_at: Optional[datetime] = None
    requested_at: Optional[datetime] = None
    approved_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None
    reject_reason: Optional[str] = None
    decided_by: Optional[str] = None

    def changes(self) -> dict[str, Any]:
        return self.model_dump(exclude_unset=True)


class Account(BaseModel):
    id: str
    parent_id: Optional[str] = None
    points_balance: int = Field(default=0, ge=0)

    model_config = ConfigDict(from_attributes=True)


class LedgerEntry(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid4()))
    account_id: str
    counterparty_id: Optional[str] = None
    delta: int
    reason: str = ""
    related_reward_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(from_attributes=True, frozen=True)


class ClaimOptions(BaseModel):
    reason: Optional[str] = Field(default=None, description="Rejection reason shown to the child")
    strict_cas: Optional[bool] = None
    max_balance_retries: Optional[int] = Field(default=None, ge=0)


class ClaimResult(BaseModel):
    reward: Reward
    new_balance: int
    already_in_target_state: bool = False


class LedgerHistory(BaseModel):
    account_id: str
    entries: list[LedgerEntry]
    total_count: int
    current_balance: int


class RejectRequest(BaseModel):
    reason: Optional[str] = Field(default=None, description="Why the request was turned down")


class AwardPointsRequest(BaseModel):
    amount: int = Field(..., description="Points to credit, 1-100")
    reason: str = Field(default="Task approved")
    related_reward_id: Optional[str] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {"amount": 10, "reason": "Completed task: Make the bed"}
    })


class BalanceResponse(BaseModel):
    account_id: str
    ggpoints: int


class ChildRewards(BaseModel):
    child_id: str
    rewards: list[Reward]
    ggpoints: int


class SeedData(BaseModel):
    """Accounts and rewards to load into empty stores."""
    accounts: list[Account] = Field(default_factory=list)
    rewards: list[Reward] = Field(default_factory=list)
