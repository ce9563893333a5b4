"""
Tests for the HTTP boundary: routing and error-kind to status-code mapping.
"""

import json
import threading

import pytest
from fastapi.testclient import TestClient

import ggpoints.api
from ggpoints.api import MEMORY_URL, app, build_coordinator, get_coordinator
from ggpoints.config import Settings
from ggpoints.coordinator import ClaimCoordinator
from ggpoints.ledger import BalanceLedger
from ggpoints.models import Account, Reward, RewardStatus
from ggpoints.stores import InMemoryAccountStore, InMemoryLedgerStore, InMemoryRewardStore


CHILD_ID = "child-1"
PARENT_ID = "parent-1"
OTHER_PARENT_ID = "parent-2"
REWARD_ID = "reward-1"


def make_client(balance=100, legacy=False):
    accounts = InMemoryAccountStore([
        Account(id=PARENT_ID),
        Account(id=OTHER_PARENT_ID),
        Account(id=CHILD_ID, parent_id=PARENT_ID, points_balance=balance),
    ])
    rewards = InMemoryRewardStore(
        [Reward(id=REWARD_ID, owner_id=CHILD_ID, name="Ice cream", cost=50)], legacy=legacy
    )
    coordinator = ClaimCoordinator(accounts=accounts, rewards=rewards, ledger=BalanceLedger(InMemoryLedgerStore()))
    app.dependency_overrides[get_coordinator] = lambda: coordinator
    return TestClient(app)


def as_actor(actor_id):
    return {"X-Actor-Id": actor_id}


@pytest.fixture(autouse=True)
def clear_overrides():
    yield
    app.dependency_overrides.clear()
    get_coordinator.cache_clear()


class TestClaimEndpoints:
    def test_health(self):
        client = make_client()

        assert client.get("/health").json()["status"] == "healthy"

    def test_claim_then_repeat(self):
        client = make_client()

        first = client.post(f"/rewards/{REWARD_ID}/claim", headers=as_actor(CHILD_ID))
        second = client.post(f"/rewards/{REWARD_ID}/claim", headers=as_actor(CHILD_ID))

        assert first.status_code == 200
        assert first.json()["new_balance"] == 50
        assert first.json()["already_in_target_state"] is False
        assert second.json()["already_in_target_state"] is True
        assert second.json()["new_balance"] == 50

    def test_insufficient_points_is_400_with_balance(self):
        client = make_client(balance=30)

        response = client.post(f"/rewards/{REWARD_ID}/claim", headers=as_actor(CHILD_ID))

        assert response.status_code == 400
        assert response.json()["error"] == "INSUFFICIENT_POINTS"
        assert response.json()["ggpoints"] == 30

    def test_forbidden_is_403(self):
        client = make_client()

        response = client.post(f"/rewards/{REWARD_ID}/claim", headers=as_actor("child-2"))

        assert response.status_code == 403
        assert response.json()["error"] == "FORBIDDEN"

    def test_not_found_is_404(self):
        client = make_client()

        response = client.post("/rewards/missing/claim", headers=as_actor(CHILD_ID))

        assert response.status_code == 404
        assert response.json()["error"] == "REWARD_NOT_FOUND"

    def test_missing_actor_is_400(self):
        client = make_client()

        response = client.post(f"/rewards/{REWARD_ID}/claim")

        assert response.status_code == 400
        assert response.json()["error"] == "INVALID_INPUT"

    def test_request_approve_flow(self):
        client = make_client()

        requested = client.post(f"/rewards/{REWARD_ID}/request", headers=as_actor(CHILD_ID))
        pending = client.get(f"/children/{CHILD_ID}/requests", headers=as_actor(PARENT_ID))
        approved = client.post(f"/rewards/{REWARD_ID}/approve", headers=as_actor(PARENT_ID))

        assert requested.json()["reward"]["status"] == RewardStatus.REQUESTED.value
        assert [r["id"] for r in pending.json()] == [REWARD_ID]
        assert approved.json()["reward"]["status"] == RewardStatus.APPROVED.value
        assert approved.json()["new_balance"] == 50

    def test_approve_unrequested_is_409(self):
        client = make_client()

        response = client.post(f"/rewards/{REWARD_ID}/approve", headers=as_actor(PARENT_ID))

        assert response.status_code == 409
        assert response.json()["error"] == "INVALID_STATUS"

    def test_reject_with_reason(self):
        client = make_client()
        client.post(f"/rewards/{REWARD_ID}/request", headers=as_actor(CHILD_ID))

        response = client.post(
            f"/rewards/{REWARD_ID}/reject", json={"reason": "not yet"}, headers=as_actor(PARENT_ID)
        )

        assert response.status_code == 200
        assert response.json()["reward"]["reject_reason"] == "not yet"

    def test_legacy_request_is_501(self):
        client = make_client(legacy=True)

        response = client.post(f"/rewards/{REWARD_ID}/request", headers=as_actor(CHILD_ID))

        assert response.status_code == 501
        assert response.json()["error"] == "FEATURE_NOT_AVAILABLE"

    def test_child_rewards_listing(self):
        client = make_client(balance=70)

        response = client.get(f"/children/{CHILD_ID}/rewards", headers=as_actor(CHILD_ID))

        assert response.status_code == 200
        assert response.json()["ggpoints"] == 70
        assert [r["id"] for r in response.json()["rewards"]] == [REWARD_ID]

    def test_child_rewards_listing_other_family_is_403(self):
        client = make_client()

        response = client.get(f"/children/{CHILD_ID}/rewards", headers=as_actor(OTHER_PARENT_ID))

        assert response.status_code == 403


class TestAccountEndpoints:
    def test_balance_and_ledger(self):
        client = make_client()
        client.post(f"/rewards/{REWARD_ID}/claim", headers=as_actor(CHILD_ID))

        balance = client.get(f"/accounts/{CHILD_ID}/balance")
        ledger = client.get(f"/accounts/{CHILD_ID}/ledger")

        assert balance.json() == {"account_id": CHILD_ID, "ggpoints": 50}
        assert ledger.json()["total_count"] == 1
        assert ledger.json()["entries"][0]["delta"] == -50

    def test_award_points(self):
        client = make_client(balance=0)

        response = client.post(
            f"/accounts/{CHILD_ID}/points",
            json={"amount": 10, "reason": "Completed task: Make the bed"},
            headers=as_actor(PARENT_ID),
        )

        assert response.status_code == 200
        assert response.json()["ggpoints"] == 10

    def test_award_points_wrong_parent(self):
        client = make_client()

        response = client.post(
            f"/accounts/{CHILD_ID}/points", json={"amount": 10}, headers=as_actor(OTHER_PARENT_ID)
        )

        assert response.status_code == 403

    def test_unknown_account_balance_is_500(self):
        client = make_client()

        response = client.get("/accounts/nobody/balance")

        assert response.status_code == 500
        assert response.json()["error"] == "DATABASE_ERROR"


class BlockingLedgerStore(InMemoryLedgerStore):
    """Holds every append until ``release`` is set."""

    def __init__(self):
        super().__init__()
        self.release = threading.Event()

    def append(self, entry):
        self.release.wait(timeout=5)
        return super().append(entry)


class TestBuildCoordinator:
    """Tests for the coordinator the app builds from settings."""

    def test_slow_ledger_does_not_delay_claim(self):
        """With default settings the ledger write runs after the claim has returned."""
        coordinator = build_coordinator(Settings(database_url=MEMORY_URL))
        ledger_store = BlockingLedgerStore()
        coordinator.ledger.store = ledger_store
        coordinator.accounts.add(Account(id=PARENT_ID))
        coordinator.accounts.add(Account(id=CHILD_ID, parent_id=PARENT_ID, points_balance=100))
        coordinator.rewards.add(Reward(id=REWARD_ID, owner_id=CHILD_ID, name="Ice cream", cost=50))

        result = coordinator.resolve_claim(REWARD_ID, CHILD_ID, "direct_claim")

        assert result.new_balance == 50
        assert ledger_store.list_for_account(CHILD_ID) == []

        ledger_store.release.set()
        coordinator.ledger.close()
        assert [e.delta for e in ledger_store.list_for_account(CHILD_ID)] == [-50]

    def test_memory_store_serves_seeded_data(self, tmp_path):
        seed_file = tmp_path / "seed.json"
        seed_file.write_text(json.dumps({
            "accounts": [
                {"id": PARENT_ID},
                {"id": CHILD_ID, "parent_id": PARENT_ID, "points_balance": 100},
            ],
            "rewards": [{"id": REWARD_ID, "owner_id": CHILD_ID, "name": "Ice cream", "cost": 50}],
        }))
        coordinator = build_coordinator(Settings(database_url=MEMORY_URL, seed_file=str(seed_file)))
        app.dependency_overrides[get_coordinator] = lambda: coordinator
        client = TestClient(app)

        response = client.post(f"/rewards/{REWARD_ID}/claim", headers=as_actor(CHILD_ID))
        coordinator.ledger.close()

        assert response.status_code == 200
        assert response.json()["new_balance"] == 50

    def test_shutdown_closes_ledger_executor(self, monkeypatch):
        monkeypatch.setattr(ggpoints.api, "get_settings", lambda: Settings(database_url=MEMORY_URL))
        coordinator = get_coordinator()

        with TestClient(app) as client:
            assert client.get("/health").status_code == 200

        assert get_coordinator.cache_info().currsize == 0
        with pytest.raises(RuntimeError):
            coordinator.ledger.executor.submit(print)
