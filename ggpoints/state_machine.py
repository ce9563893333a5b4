"""
Reward claim state machine.

    available --request--> requested --approve--> approved
        |                     |
        |                     +--reject--> rejected --request--> requested
        +--direct_claim--> approved

Rows read from legacy storage only carry a ``claimed`` flag, so they can
only move available -> approved (direct claim, or a parent approval).
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from .errors import FeatureNotAvailableError, InsufficientPointsError, InvalidStatusError
from .models import ClaimAction, Reward, RewardPatch, RewardStatus, utcnow


@dataclass(frozen=True)
class Transition:
    action: ClaimAction
    from_status: RewardStatus
    to_status: RewardStatus
    patch: RewardPatch
    revert: RewardPatch
    debit: int = 0
    no_op: bool = False


PatchBuilder = Callable[[Reward, datetime, Optional[str], Optional[str]], RewardPatch]


def _request(reward: Reward, now: datetime, reason: Optional[str], actor_id: Optional[str]) -> RewardPatch:
    return RewardPatch(
        status=RewardStatus.REQUESTED,
        requested_at=now,
        rejected_at=None,
        reject_reason=None,
        decided_by=None,
    )


def _approve(reward: Reward, now: datetime, reason: Optional[str], actor_id: Optional[str]) -> RewardPatch:
    return RewardPatch(
        status=RewardStatus.APPROVED,
        claimed=True,
        claimed_at=now,
        approved_at=now,
        decided_by=actor_id,
    )


def _reject(reward: Reward, now: datetime, reason: Optional[str], actor_id: Optional[str]) -> RewardPatch:
    return RewardPatch(
        status=RewardStatus.REJECTED,
        claimed=False,
        rejected_at=now,
        reject_reason=(reason or "").strip() or None,
        decided_by=actor_id,
    )


def _direct_claim(reward: Reward, now: datetime, reason: Optional[str], actor_id: Optional[str]) -> RewardPatch:
    return RewardPatch(status=RewardStatus.APPROVED, claimed=True, claimed_at=now)


TRANSITIONS: dict[tuple[RewardStatus, ClaimAction], tuple[RewardStatus, PatchBuilder]] = {
    (RewardStatus.AVAILABLE, ClaimAction.REQUEST): (RewardStatus.REQUESTED, _request),
    (RewardStatus.REJECTED, ClaimAction.REQUEST): (RewardStatus.REQUESTED, _request),
    (RewardStatus.REQUESTED, ClaimAction.APPROVE): (RewardStatus.APPROVED, _approve),
    (RewardStatus.REQUESTED, ClaimAction.REJECT): (RewardStatus.REJECTED, _reject),
    (RewardStatus.AVAILABLE, ClaimAction.DIRECT_CLAIM): (RewardStatus.APPROVED, _direct_claim),
}

LEGACY_TRANSITIONS: dict[tuple[RewardStatus, ClaimAction], tuple[RewardStatus, PatchBuilder]] = {
    (RewardStatus.AVAILABLE, ClaimAction.DIRECT_CLAIM): (RewardStatus.APPROVED, _direct_claim),
    (RewardStatus.AVAILABLE, ClaimAction.APPROVE): (RewardStatus.APPROVED, _direct_claim),
}

# Actions whose guard compares the balance against the reward cost.
GUARDED_ACTIONS = frozenset({ClaimAction.REQUEST, ClaimAction.DIRECT_CLAIM, ClaimAction.APPROVE})


class RewardStateMachine:
    def plan(
        self,
        reward: Reward,
        action: ClaimAction,
        balance: Optional[int] = None,
        reason: Optional[str] = None,
        actor_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Transition:
        """Validate ``action`` against ``reward`` and describe the write it needs.

        Raises ``FeatureNotAvailableError``, ``InvalidStatusError`` or
        ``InsufficientPointsError``. A repeat of an action whose target state
        was already reached returns a ``no_op`` transition.
        """
        self.ensure_supported(reward, action)

        if reward.is_in_target_state(action):
            return Transition(
                action=action,
                from_status=reward.status,
                to_status=reward.status,
                patch=RewardPatch(),
                revert=RewardPatch(),
                no_op=True,
            )

        table = LEGACY_TRANSITIONS if reward.legacy else TRANSITIONS
        entry = table.get((reward.status, action))
        if entry is None:
            raise InvalidStatusError(
                f"Cannot {action.value} a reward in '{reward.status.value}' status"
            )

        if action in GUARDED_ACTIONS:
            current = balance or 0
            if current < reward.cost:
                raise InsufficientPointsError(balance=current, cost=reward.cost)

        to_status, build = entry
        patch = build(reward, now or utcnow(), reason, actor_id)
        return Transition(
            action=action,
            from_status=reward.status,
            to_status=to_status,
            patch=patch,
            revert=self.revert_patch(reward, patch),
            debit=reward.cost if action.debits_points else 0,
        )

    @staticmethod
    def ensure_supported(reward: Reward, action: ClaimAction) -> None:
        if reward.legacy and action in (ClaimAction.REQUEST, ClaimAction.REJECT):
            raise FeatureNotAvailableError(
                f"Reward {action.value} requires the reward status column; "
                "this storage only supports direct claims."
            )

    @staticmethod
    def revert_patch(reward: Reward, patch: RewardPatch) -> RewardPatch:
        """Patch restoring every field ``patch`` touches to its value on ``reward``."""
        return RewardPatch(**{name: getattr(reward, name) for name in patch.changes()})
