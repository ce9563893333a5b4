"""
Balance ledger: the append-only audit trail of point deltas.

The ledger is not a transaction participant. The account balance is the
source of truth for spendable points; a missing ledger row never reverses
a balance change that already committed.
"""

import logging
from concurrent.futures import Executor, Future
from typing import Optional

from .models import LedgerEntry
from .stores import LedgerStore

log = logging.getLogger(__name__)


class BalanceLedger:
    def __init__(
        self,
        store: LedgerStore,
        logger: Optional[logging.Logger] = None,
        executor: Optional[Executor] = None,
    ):
        self.store = store
        self.log = logger or log
        self.executor = executor

    def append(
        self,
        account_id: str,
        counterparty_id: Optional[str],
        delta: int,
        reason: str,
        related_reward_id: Optional[str] = None,
    ) -> Optional[LedgerEntry]:
        """Record one delta. Returns the entry, or ``None`` if the write failed
        or was handed to the executor."""
        entry = LedgerEntry(
            account_id=account_id,
            counterparty_id=counterparty_id,
            delta=delta,
            reason=reason,
            related_reward_id=related_reward_id,
        )
        try:
            if self.executor is None:
                return self.store.append(entry)
            future = self.executor.submit(self.store.append, entry)
            future.add_done_callback(lambda f: self._log_outcome(f, entry))
            return None
        except Exception:
            self.log.exception(
                "ledger append failed (non-critical) account_id=%s delta=%s reward_id=%s",
                account_id, delta, related_reward_id,
            )
            return None

    def _log_outcome(self, future: Future, entry: LedgerEntry) -> None:
        error = future.exception()
        if error is not None:
            self.log.error(
                "ledger append failed (non-critical) account_id=%s delta=%s reward_id=%s: %s",
                entry.account_id, entry.delta, entry.related_reward_id, error,
            )

    def close(self) -> None:
        """Wait for queued writes and stop the executor, if any."""
        if self.executor is not None:
            self.executor.shutdown(wait=True)

    def list_for_account(self, account_id: str, limit: int = 50, offset: int = 0) -> list[LedgerEntry]:
        return self.store.list_for_account(account_id)[offset:offset + limit]

    def count_for_account(self, account_id: str) -> int:
        return len(self.store.list_for_account(account_id))
