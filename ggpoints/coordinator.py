"""
Claim coordinator: the single implementation of the reward claim protocol.

The backing stores only offer single-row conditional updates, so a claim
runs in two phases:

    A. flip the reward status (CAS keyed on the expected current status)
    B. debit the owner's balance (CAS keyed on ``points_balance >= cost``
       and, in strict mode, on the balance read before phase A)

Phase A runs first so two claims of the same reward cannot both debit.
Phase B's own CAS stops concurrent claims of different rewards from
overspending one balance. If phase B fails, phase A is compensated by
reverting the reward before the error is raised.
"""

import logging
from typing import Optional, Union

from .errors import (
    ConcurrentModificationError,
    DatabaseError,
    ForbiddenError,
    InsufficientPointsError,
    InvalidInputError,
    InvalidStatusError,
    RewardNotFoundError,
    StoreError,
)
from .ledger import BalanceLedger
from .models import (
    Account,
    ChildRewards,
    ClaimAction,
    ClaimOptions,
    ClaimResult,
    LedgerHistory,
    Reward,
    RewardStatus,
)
from .state_machine import RewardStateMachine, Transition
from .stores import AccountStore, RewardStore

log = logging.getLogger(__name__)

MAX_BALANCE_RETRIES = 1
MIN_AWARD_POINTS = 1
MAX_AWARD_POINTS = 100


class ClaimCoordinator:
    def __init__(
        self,
        accounts: AccountStore,
        rewards: RewardStore,
        ledger: BalanceLedger,
        state_machine: Optional[RewardStateMachine] = None,
        max_balance_retries: int = MAX_BALANCE_RETRIES,
        strict_cas: bool = True,
        logger: Optional[logging.Logger] = None,
    ):
        self.accounts = accounts
        self.rewards = rewards
        self.ledger = ledger
        self.state_machine = state_machine or RewardStateMachine()
        self.max_balance_retries = max_balance_retries
        self.strict_cas = strict_cas
        self.log = logger or log

    def resolve_claim(
        self,
        reward_id: str,
        actor_account_id: str,
        action: Union[ClaimAction, str],
        opts: Optional[ClaimOptions] = None,
    ) -> ClaimResult:
        action = self._parse_action(action)
        if not reward_id or not str(reward_id).strip():
            raise InvalidInputError("reward_id is required")
        if not actor_account_id:
            raise InvalidInputError("actor_account_id is required")
        opts = opts or ClaimOptions()

        reward = self._load_reward(reward_id)
        account = self._authorize(reward, actor_account_id, action)
        self.state_machine.ensure_supported(reward, action)

        if account is None:
            account = self._require_account(reward.owner_id)
        balance = account.points_balance

        if reward.is_in_target_state(action):
            self.log.info(
                "claim already resolved (idempotent) reward_id=%s action=%s status=%s",
                reward.id, action.value, reward.status.value,
            )
            return ClaimResult(reward=reward, new_balance=balance, already_in_target_state=True)

        try:
            transition = self.state_machine.plan(
                reward,
                action,
                balance=balance,
                reason=opts.reason,
                actor_id=actor_account_id if action.is_parent_action else None,
            )
        except InsufficientPointsError:
            # The balance may already reflect a concurrent claim of this same reward.
            current = self._load_reward(reward.id)
            if current.status != reward.status and current.is_in_target_state(action):
                return self._already_resolved(current, action)
            raise

        # Phase A
        try:
            updated = self.rewards.cas_update_status(reward.id, transition.from_status, transition.patch)
        except StoreError as e:
            self.log.error("reward update failed reward_id=%s: %s", reward.id, e)
            raise DatabaseError(f"Failed to {action.value} reward") from e

        if updated is None:
            return self._resolve_lost_reward_race(reward, action)

        if not transition.debit:
            self.log.info(
                "reward %s reward_id=%s status=%s",
                action.value, reward.id, updated.status.value,
            )
            return ClaimResult(reward=updated, new_balance=balance)

        # Phase B
        new_balance = self._debit(reward, transition, balance, opts)

        counterparty = actor_account_id if action.is_parent_action else account.parent_id
        self.ledger.append(
            account_id=reward.owner_id,
            counterparty_id=counterparty,
            delta=-transition.debit,
            reason=f"Claimed reward: {reward.name}",
            related_reward_id=reward.id,
        )
        self.log.info(
            "reward claimed reward_id=%s action=%s cost=%s old_balance=%s new_balance=%s",
            reward.id, action.value, reward.cost, balance, new_balance,
        )
        return ClaimResult(reward=updated, new_balance=new_balance)

    def award_points(
        self,
        account_id: str,
        parent_id: str,
        amount: int,
        reason: str,
        related_reward_id: Optional[str] = None,
    ) -> int:
        """Credit points to a child, e.g. when a parent approves a completed task."""
        if isinstance(amount, bool) or not isinstance(amount, int) or not MIN_AWARD_POINTS <= amount <= MAX_AWARD_POINTS:
            raise InvalidInputError(
                f"Points must be a number between {MIN_AWARD_POINTS} and {MAX_AWARD_POINTS}."
            )
        account = self._find_account(account_id)
        if account is None or account.parent_id != parent_id:
            raise ForbiddenError("This child does not belong to you")

        expected = account.points_balance
        for attempt in range(self.max_balance_retries + 1):
            try:
                new_balance = self.accounts.cas_credit(
                    account_id, amount, expected if self.strict_cas else None
                )
                if new_balance is None:
                    expected = self.accounts.get_balance(account_id)
            except StoreError as e:
                self.log.error("points credit failed account_id=%s: %s", account_id, e)
                raise DatabaseError("Failed to add points") from e
            if new_balance is not None:
                break
            self.log.info("credit CAS lost race account_id=%s attempt=%s", account_id, attempt)
        else:
            raise ConcurrentModificationError(
                "Points changed while awarding. Please try again.", balance=expected
            )

        self.ledger.append(
            account_id=account_id,
            counterparty_id=parent_id,
            delta=amount,
            reason=reason,
            related_reward_id=related_reward_id,
        )
        return new_balance

    def get_balance(self, account_id: str) -> int:
        try:
            return self.accounts.get_balance(account_id)
        except StoreError as e:
            raise DatabaseError("Failed to get points balance") from e

    def pending_requests(self, parent_id: str, child_id: str) -> list[Reward]:
        account = self._find_account(child_id)
        if account is None or account.parent_id != parent_id:
            raise ForbiddenError("This child does not belong to you")
        try:
            rewards = self.rewards.list_for_owner(child_id, RewardStatus.REQUESTED)
        except StoreError as e:
            raise DatabaseError("Failed to list reward requests") from e
        return sorted(rewards, key=lambda r: (r.requested_at is not None, r.requested_at), reverse=True)

    def list_rewards(self, actor_id: str, child_id: str) -> ChildRewards:
        """A child's rewards, newest first, with their current balance.

        The child may list their own rewards; so may their parent.
        """
        account = self._find_account(child_id)
        if account is None or actor_id not in (child_id, account.parent_id):
            raise ForbiddenError("These rewards do not belong to you")
        try:
            rewards = self.rewards.list_for_owner(child_id)
        except StoreError as e:
            raise DatabaseError("Failed to load rewards") from e
        rewards.sort(key=lambda r: r.created_at, reverse=True)
        return ChildRewards(child_id=child_id, rewards=rewards, ggpoints=self.get_balance(child_id))

    def ledger_history(self, account_id: str, limit: int = 50, offset: int = 0) -> LedgerHistory:
        balance = self.get_balance(account_id)
        try:
            entries = self.ledger.list_for_account(account_id, limit, offset)
            total = self.ledger.count_for_account(account_id)
        except StoreError as e:
            raise DatabaseError("Failed to read ledger history") from e
        return LedgerHistory(
            account_id=account_id,
            entries=entries,
            total_count=total,
            current_balance=balance,
        )

    def _parse_action(self, action: Union[ClaimAction, str]) -> ClaimAction:
        try:
            return ClaimAction(action)
        except ValueError:
            raise InvalidInputError(f"Unknown claim action: {action!r}") from None

    def _load_reward(self, reward_id: str) -> Reward:
        try:
            reward = self.rewards.get_by_id(reward_id)
        except StoreError as e:
            self.log.error("reward lookup failed reward_id=%s: %s", reward_id, e)
            raise DatabaseError("Failed to load reward") from e
        if reward is None:
            raise RewardNotFoundError("Reward not found")
        return reward

    def _find_account(self, account_id: str) -> Optional[Account]:
        try:
            return self.accounts.get_account(account_id)
        except StoreError as e:
            self.log.error("account lookup failed account_id=%s: %s", account_id, e)
            raise DatabaseError("Failed to resolve account") from e

    def _require_account(self, account_id: str) -> Account:
        account = self._find_account(account_id)
        if account is None:
            raise DatabaseError("Failed to resolve child data")
        return account

    def _authorize(self, reward: Reward, actor_id: str, action: ClaimAction) -> Optional[Account]:
        """Check the actor may perform ``action``; returns the owner account when
        the check needed to load it."""
        if not action.is_parent_action:
            if reward.owner_id != actor_id:
                self.log.warning(
                    "ownership mismatch reward_id=%s owner_id=%s actor_id=%s",
                    reward.id, reward.owner_id, actor_id,
                )
                raise ForbiddenError("This reward does not belong to you")
            return None

        account = self._find_account(reward.owner_id)
        if account is None or account.parent_id != actor_id:
            self.log.warning(
                "parent does not own reward reward_id=%s owner_id=%s actor_id=%s",
                reward.id, reward.owner_id, actor_id,
            )
            raise ForbiddenError("This reward does not belong to your child")
        return account

    def _resolve_lost_reward_race(self, reward: Reward, action: ClaimAction) -> ClaimResult:
        self.log.info(
            "reward CAS lost race reward_id=%s action=%s expected_status=%s",
            reward.id, action.value, reward.status.value,
        )
        current = self._load_reward(reward.id)
        if current.is_in_target_state(action):
            return self._already_resolved(current, action)
        raise InvalidStatusError(
            f"Reward status changed to '{current.status.value}'; cannot {action.value}. "
            "Please refresh and try again."
        )

    def _already_resolved(self, reward: Reward, action: ClaimAction) -> ClaimResult:
        balance = self._require_account(reward.owner_id).points_balance
        self.log.info(
            "claim resolved concurrently reward_id=%s action=%s status=%s",
            reward.id, action.value, reward.status.value,
        )
        return ClaimResult(reward=reward, new_balance=balance, already_in_target_state=True)

    def _debit(self, reward: Reward, transition: Transition, balance: int, opts: ClaimOptions) -> int:
        cost = transition.debit
        retries = self.max_balance_retries if opts.max_balance_retries is None else opts.max_balance_retries
        strict = self.strict_cas if opts.strict_cas is None else opts.strict_cas
        expected = balance

        for attempt in range(retries + 1):
            try:
                new_balance = self.accounts.cas_debit(reward.owner_id, cost, expected if strict else None)
            except StoreError as e:
                self.log.error("points debit failed reward_id=%s: %s", reward.id, e)
                self._compensate(reward, transition)
                raise DatabaseError("Failed to deduct points") from e
            if new_balance is not None:
                return new_balance

            self.log.info(
                "balance CAS lost race reward_id=%s attempt=%s expected_balance=%s",
                reward.id, attempt, expected,
            )
            try:
                expected = self.accounts.get_balance(reward.owner_id)
            except StoreError as e:
                self._compensate(reward, transition)
                raise DatabaseError("Failed to verify points balance") from e

            if expected < cost:
                self._compensate(reward, transition)
                raise InsufficientPointsError(
                    balance=expected,
                    cost=cost,
                    message=f"Not enough GGPoints. Another claim reduced the balance to {expected}; need {cost}.",
                )

        self.log.error(
            "balance CAS failed after retries reward_id=%s attempts=%s last_balance=%s",
            reward.id, retries + 1, expected,
        )
        self._compensate(reward, transition)
        raise ConcurrentModificationError("Your balance changed. Please try again.", balance=expected)

    def _compensate(self, reward: Reward, transition: Transition) -> None:
        try:
            reverted = self.rewards.cas_update_status(reward.id, transition.to_status, transition.revert)
        except StoreError as e:
            self.log.error("compensation failed reward_id=%s: %s", reward.id, e)
            return
        if reverted is None:
            self.log.error(
                "compensation found reward moved on reward_id=%s expected_status=%s",
                reward.id, transition.to_status.value,
            )
        else:
            self.log.info("reward reverted reward_id=%s status=%s", reward.id, reverted.status.value)
