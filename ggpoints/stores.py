"""
Store interfaces consumed by the claim coordinator, with in-memory
implementations used by the test suite and local runs.

Every store offers single-row conditional updates only. The in-memory
stores take a lock around each update to give it the atomicity a single
``UPDATE ... WHERE`` statement has in a database.
"""

import threading
from typing import Iterable, Optional, Protocol

from .errors import StoreError
from .models import Account, LedgerEntry, Reward, RewardPatch, RewardStatus

LEGACY_FIELDS = frozenset({"claimed", "claimed_at"})


class AccountStore(Protocol):
    def get_account(self, account_id: str) -> Optional[Account]: ...

    def get_balance(self, account_id: str) -> int: ...

    def cas_debit(self, account_id: str, amount: int, expected_balance: Optional[int] = None) -> Optional[int]: ...

    def cas_credit(self, account_id: str, amount: int, expected_balance: Optional[int] = None) -> Optional[int]: ...


class RewardStore(Protocol):
    def get_by_id(self, reward_id: str) -> Optional[Reward]: ...

    def cas_update_status(self, reward_id: str, from_status: RewardStatus, patch: RewardPatch) -> Optional[Reward]: ...

    def list_for_owner(self, owner_id: str, status: Optional[RewardStatus] = None) -> list[Reward]: ...


class LedgerStore(Protocol):
    def append(self, entry: LedgerEntry) -> LedgerEntry: ...

    def list_for_account(self, account_id: str) -> list[LedgerEntry]: ...


class InMemoryAccountStore:
    def __init__(self, accounts: Iterable[Account] = ()):
        self._lock = threading.Lock()
        self.accounts: dict[str, dict] = {}
        for account in accounts:
            self.add(account)

    def add(self, account: Account) -> Account:
        with self._lock:
            self.accounts[account.id] = account.model_dump()
        return account

    def get_account(self, account_id: str) -> Optional[Account]:
        data = self.accounts.get(account_id)
        return Account(**data) if data else None

    def get_balance(self, account_id: str) -> int:
        data = self.accounts.get(account_id)
        if data is None:
            raise StoreError(f"Account {account_id} not found")
        return data["points_balance"]

    def cas_debit(self, account_id: str, amount: int, expected_balance: Optional[int] = None) -> Optional[int]:
        with self._lock:
            data = self.accounts.get(account_id)
            if data is None:
                return None
            balance = data["points_balance"]
            if balance < amount:
                return None
            if expected_balance is not None and balance != expected_balance:
                return None
            data["points_balance"] = balance - amount
            return data["points_balance"]

    def cas_credit(self, account_id: str, amount: int, expected_balance: Optional[int] = None) -> Optional[int]:
        with self._lock:
            data = self.accounts.get(account_id)
            if data is None:
                return None
            if expected_balance is not None and data["points_balance"] != expected_balance:
                return None
            data["points_balance"] += amount
            return data["points_balance"]


class InMemoryRewardStore:
    """Reward rows keyed by id.

    With ``legacy=True`` rows are kept the way boolean-only storage keeps
    them: no status or request/decision columns, just ``claimed``.
    """

    def __init__(self, rewards: Iterable[Reward] = (), legacy: bool = False):
        self._lock = threading.Lock()
        self.legacy = legacy
        self.rows: dict[str, dict] = {}
        for reward in rewards:
            self.add(reward)

    def add(self, reward: Reward) -> Reward:
        row = reward.model_dump(exclude={"legacy"})
        if self.legacy:
            row = {k: v for k, v in row.items() if k in {"id", "owner_id", "name", "cost", "created_at"} | LEGACY_FIELDS}
        with self._lock:
            self.rows[reward.id] = row
        return self._to_reward(row)

    def _to_reward(self, row: dict) -> Reward:
        if self.legacy:
            return Reward.from_legacy(**row)
        return Reward(**row)

    def get_by_id(self, reward_id: str) -> Optional[Reward]:
        row = self.rows.get(reward_id)
        return self._to_reward(row) if row else None

    def cas_update_status(self, reward_id: str, from_status: RewardStatus, patch: RewardPatch) -> Optional[Reward]:
        changes = patch.changes()
        with self._lock:
            row = self.rows.get(reward_id)
            if row is None:
                return None
            if self._to_reward(row).status != from_status:
                return None
            if self.legacy:
                changes = {k: v for k, v in changes.items() if k in LEGACY_FIELDS}
            else:
                changes["status"] = RewardStatus(changes.get("status", row["status"]))
            row.update(changes)
            return self._to_reward(row)

    def list_for_owner(self, owner_id: str, status: Optional[RewardStatus] = None) -> list[Reward]:
        rewards = [self._to_reward(row) for row in self.rows.values() if row["owner_id"] == owner_id]
        if status is not None:
            rewards = [r for r in rewards if r.status == status]
        return rewards


class InMemoryLedgerStore:
    def __init__(self):
        self._lock = threading.Lock()
        self.entries: list[LedgerEntry] = []

    def append(self, entry: LedgerEntry) -> LedgerEntry:
        with self._lock:
            self.entries.append(entry)
        return entry

    def list_for_account(self, account_id: str) -> list[LedgerEntry]:
        # Reversed insertion order breaks created_at ties newest first.
        ordered = [e for e in reversed(self.entries) if e.account_id == account_id]
        ordered.sort(key=lambda e: e.created_at, reverse=True)
        return ordered
