"""
Tests for the SQLAlchemy stores against an in-memory SQLite database.
"""

from datetime import datetime, timedelta

import pytest
from sqlalchemy.pool import StaticPool

from ggpoints.coordinator import ClaimCoordinator
from ggpoints.errors import FeatureNotAvailableError, StoreError
from ggpoints.ledger import BalanceLedger
from ggpoints.models import Account, ClaimAction, ClaimOptions, LedgerEntry, Reward, RewardPatch, RewardStatus
from ggpoints.sql_stores import (
    RewardRow,
    SqlAccountStore,
    SqlLedgerStore,
    SqlRewardStore,
    create_session_factory,
    init_db,
)


CHILD_ID = "child-1"
PARENT_ID = "parent-1"
REWARD_ID = "reward-1"


def make_stores(balance=100, legacy=False):
    engine, session_factory = create_session_factory("sqlite://", poolclass=StaticPool)
    init_db(engine)
    accounts = SqlAccountStore(session_factory)
    accounts.add(Account(id=PARENT_ID), role="parent")
    accounts.add(Account(id=CHILD_ID, parent_id=PARENT_ID, points_balance=balance))
    rewards = SqlRewardStore(session_factory, legacy=legacy)
    rewards.add(Reward(id=REWARD_ID, owner_id=CHILD_ID, name="Ice cream", cost=50))
    return session_factory, accounts, rewards, SqlLedgerStore(session_factory)


class TestSqlAccountStore:
    """Tests for conditional balance updates."""

    def test_debit_success(self):
        _, accounts, _, _ = make_stores(balance=100)

        assert accounts.cas_debit(CHILD_ID, 30, expected_balance=100) == 70
        assert accounts.get_balance(CHILD_ID) == 70

    def test_debit_refuses_overspend(self):
        _, accounts, _, _ = make_stores(balance=20)

        assert accounts.cas_debit(CHILD_ID, 30) is None
        assert accounts.get_balance(CHILD_ID) == 20

    def test_debit_refuses_stale_expected_balance(self):
        _, accounts, _, _ = make_stores(balance=100)

        assert accounts.cas_debit(CHILD_ID, 30, expected_balance=90) is None
        assert accounts.get_balance(CHILD_ID) == 100

    def test_credit(self):
        _, accounts, _, _ = make_stores(balance=5)

        assert accounts.cas_credit(CHILD_ID, 10, expected_balance=5) == 15
        assert accounts.cas_credit(CHILD_ID, 10, expected_balance=5) is None

    def test_unknown_account(self):
        _, accounts, _, _ = make_stores()

        assert accounts.get_account("nobody") is None
        with pytest.raises(StoreError):
            accounts.get_balance("nobody")


class TestSqlRewardStore:
    """Tests for conditional reward status updates."""

    def test_update_applies_when_status_matches(self):
        _, _, rewards, _ = make_stores()

        updated = rewards.cas_update_status(
            REWARD_ID, RewardStatus.AVAILABLE, RewardPatch(status=RewardStatus.REQUESTED, requested_at=datetime(2026, 1, 1))
        )

        assert updated.status == RewardStatus.REQUESTED
        assert updated.requested_at == datetime(2026, 1, 1)

    def test_update_skipped_when_status_moved(self):
        _, _, rewards, _ = make_stores()

        assert rewards.cas_update_status(
            REWARD_ID, RewardStatus.REQUESTED, RewardPatch(status=RewardStatus.APPROVED)
        ) is None
        assert rewards.get_by_id(REWARD_ID).status == RewardStatus.AVAILABLE

    def test_decided_by_maps_to_parent_column(self):
        session_factory, _, rewards, _ = make_stores()
        rewards.cas_update_status(REWARD_ID, RewardStatus.AVAILABLE, RewardPatch(status=RewardStatus.REQUESTED))

        rewards.cas_update_status(
            REWARD_ID, RewardStatus.REQUESTED, RewardPatch(status=RewardStatus.REJECTED, decided_by=PARENT_ID)
        )

        with session_factory() as session:
            assert session.get(RewardRow, REWARD_ID).decided_by_parent_id == PARENT_ID

    def test_legacy_only_touches_claimed_columns(self):
        session_factory, _, rewards, _ = make_stores(legacy=True)

        updated = rewards.cas_update_status(
            REWARD_ID,
            RewardStatus.AVAILABLE,
            RewardPatch(status=RewardStatus.APPROVED, claimed=True, approved_at=datetime(2026, 1, 1)),
        )

        assert updated.status == RewardStatus.APPROVED
        assert updated.legacy
        with session_factory() as session:
            row = session.get(RewardRow, REWARD_ID)
            assert row.claimed is True
            assert row.status == RewardStatus.AVAILABLE.value
            assert row.approved_at is None

    def test_add_keeps_every_field(self):
        """A reward seeded mid-lifecycle keeps its request and decision details."""
        _, _, rewards, _ = make_stores()

        added = rewards.add(Reward(
            id="reward-2",
            owner_id=CHILD_ID,
            name="Park trip",
            cost=10,
            status=RewardStatus.REJECTED,
            requested_at=datetime(2026, 1, 1),
            rejected_at=datetime(2026, 1, 2),
            reject_reason="not this week",
            decided_by=PARENT_ID,
            created_at=datetime(2025, 12, 1),
        ))

        assert added.status == RewardStatus.REJECTED
        assert added.requested_at == datetime(2026, 1, 1)
        assert added.rejected_at == datetime(2026, 1, 2)
        assert added.reject_reason == "not this week"
        assert added.decided_by == PARENT_ID
        assert added.created_at == datetime(2025, 12, 1)

    def test_list_for_owner_by_status(self):
        _, _, rewards, _ = make_stores()
        rewards.add(Reward(id="reward-2", owner_id=CHILD_ID, name="Park trip", cost=10))
        rewards.cas_update_status("reward-2", RewardStatus.AVAILABLE, RewardPatch(status=RewardStatus.REQUESTED))

        assert [r.id for r in rewards.list_for_owner(CHILD_ID, RewardStatus.REQUESTED)] == ["reward-2"]
        assert len(rewards.list_for_owner(CHILD_ID)) == 2


class TestSqlLedgerStore:
    def test_history_is_newest_first(self):
        _, _, _, ledger = make_stores()
        start = datetime(2026, 1, 1)
        for i, delta in enumerate([10, -5, 20]):
            ledger.append(LedgerEntry(account_id=CHILD_ID, delta=delta, reason="t", created_at=start + timedelta(minutes=i)))

        assert [e.delta for e in ledger.list_for_account(CHILD_ID)] == [20, -5, 10]


class TestCoordinatorOnSql:
    """End-to-end claim flows through the SQL stores."""

    def make_service(self, balance=100, legacy=False):
        _, accounts, rewards, ledger_store = make_stores(balance=balance, legacy=legacy)
        service = ClaimCoordinator(accounts=accounts, rewards=rewards, ledger=BalanceLedger(ledger_store))
        return service, accounts, rewards, ledger_store

    def test_direct_claim(self):
        service, accounts, rewards, ledger_store = self.make_service()

        result = service.resolve_claim(REWARD_ID, CHILD_ID, ClaimAction.DIRECT_CLAIM)
        repeat = service.resolve_claim(REWARD_ID, CHILD_ID, ClaimAction.DIRECT_CLAIM)

        assert result.new_balance == 50
        assert repeat.already_in_target_state is True
        assert accounts.get_balance(CHILD_ID) == 50
        assert [e.delta for e in ledger_store.list_for_account(CHILD_ID)] == [-50]

    def test_request_reject_request_approve(self):
        service, accounts, rewards, _ = self.make_service()

        service.resolve_claim(REWARD_ID, CHILD_ID, ClaimAction.REQUEST)
        rejected = service.resolve_claim(REWARD_ID, PARENT_ID, ClaimAction.REJECT, ClaimOptions(reason="not yet"))
        assert rejected.reward.reject_reason == "not yet"

        again = service.resolve_claim(REWARD_ID, CHILD_ID, ClaimAction.REQUEST)
        assert again.reward.rejected_at is None

        approved = service.resolve_claim(REWARD_ID, PARENT_ID, ClaimAction.APPROVE)
        assert approved.reward.status == RewardStatus.APPROVED
        assert approved.new_balance == 50

    def test_legacy_request_not_available(self):
        service, _, _, _ = self.make_service(legacy=True)

        with pytest.raises(FeatureNotAvailableError):
            service.resolve_claim(REWARD_ID, CHILD_ID, ClaimAction.REQUEST)
