import logging
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
from functools import lru_cache
from pathlib import Path
from typing import Optional

from fastapi import Depends, FastAPI, Header, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import Settings, get_settings
from .coordinator import ClaimCoordinator
from .errors import ClaimError, ErrorKind
from .ledger import BalanceLedger
from .models import (
    AwardPointsRequest,
    BalanceResponse,
    ChildRewards,
    ClaimAction,
    ClaimOptions,
    ClaimResult,
    LedgerHistory,
    RejectRequest,
    Reward,
    SeedData,
)
from .sql_stores import SqlAccountStore, SqlLedgerStore, SqlRewardStore, create_session_factory, init_db
from .stores import InMemoryAccountStore, InMemoryLedgerStore, InMemoryRewardStore

log = logging.getLogger(__name__)

MEMORY_URL = "memory://"

STATUS_CODES = {
    ErrorKind.REWARD_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.FORBIDDEN: status.HTTP_403_FORBIDDEN,
    ErrorKind.INVALID_INPUT: status.HTTP_400_BAD_REQUEST,
    ErrorKind.INSUFFICIENT_POINTS: status.HTTP_400_BAD_REQUEST,
    ErrorKind.INVALID_STATUS: status.HTTP_409_CONFLICT,
    ErrorKind.CONCURRENT_MODIFICATION: status.HTTP_409_CONFLICT,
    ErrorKind.FEATURE_NOT_AVAILABLE: status.HTTP_501_NOT_IMPLEMENTED,
    ErrorKind.DATABASE_ERROR: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def build_coordinator(settings: Settings) -> ClaimCoordinator:
    if settings.database_url == MEMORY_URL:
        accounts = InMemoryAccountStore()
        rewards = InMemoryRewardStore(legacy=settings.legacy_schema)
        ledger_store = InMemoryLedgerStore()
    else:
        engine, session_factory = create_session_factory(settings.database_url)
        init_db(engine)
        accounts = SqlAccountStore(session_factory)
        rewards = SqlRewardStore(session_factory, legacy=settings.legacy_schema)
        ledger_store = SqlLedgerStore(session_factory)

    if settings.seed_file:
        load_seed(SeedData.model_validate_json(Path(settings.seed_file).read_text()), accounts, rewards)

    executor = ThreadPoolExecutor(max_workers=settings.ledger_workers) if settings.ledger_async else None
    return ClaimCoordinator(
        accounts=accounts,
        rewards=rewards,
        ledger=BalanceLedger(ledger_store, executor=executor),
        max_balance_retries=settings.max_balance_retries,
        strict_cas=settings.strict_cas,
    )


def load_seed(seed: SeedData, accounts, rewards) -> None:
    """Add seeded accounts and rewards that the stores do not hold yet."""
    for account in seed.accounts:
        if accounts.get_account(account.id) is None:
            accounts.add(account)
    for reward in seed.rewards:
        if rewards.get_by_id(reward.id) is None:
            rewards.add(reward)
    log.info("loaded seed accounts=%s rewards=%s", len(seed.accounts), len(seed.rewards))


@lru_cache
def get_coordinator() -> ClaimCoordinator:
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    log.info("building claim coordinator legacy_schema=%s", settings.legacy_schema)
    return build_coordinator(settings)


@asynccontextmanager
async def lifespan(_: FastAPI):
    yield
    if get_coordinator.cache_info().currsize:
        get_coordinator().ledger.close()
        get_coordinator.cache_clear()


app = FastAPI(
    title="GGPoints Claim Ledger API",
    description="Reward claims, approvals and the GGPoints ledger for family task tracking",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ClaimError)
def claim_error_handler(request: Request, exc: ClaimError) -> JSONResponse:
    return JSONResponse(status_code=STATUS_CODES[exc.kind], content=exc.to_dict())


@app.get("/health", tags=["System"])
def health_check():
    return {"status": "healthy", "service": "ggpoints-ledger"}


def _resolve(
    coordinator: ClaimCoordinator,
    reward_id: str,
    actor_id: Optional[str],
    action: ClaimAction,
    opts: Optional[ClaimOptions] = None,
) -> ClaimResult:
    return coordinator.resolve_claim(reward_id, actor_id or "", action, opts)


@app.post("/rewards/{reward_id}/request", response_model=ClaimResult, tags=["Claims"])
def request_reward(
    reward_id: str,
    actor_id: Optional[str] = Header(default=None, alias="X-Actor-Id"),
    coordinator: ClaimCoordinator = Depends(get_coordinator),
) -> ClaimResult:
    return _resolve(coordinator, reward_id, actor_id, ClaimAction.REQUEST)


@app.post("/rewards/{reward_id}/claim", response_model=ClaimResult, tags=["Claims"])
def claim_reward(
    reward_id: str,
    actor_id: Optional[str] = Header(default=None, alias="X-Actor-Id"),
    coordinator: ClaimCoordinator = Depends(get_coordinator),
) -> ClaimResult:
    return _resolve(coordinator, reward_id, actor_id, ClaimAction.DIRECT_CLAIM)


@app.post("/rewards/{reward_id}/approve", response_model=ClaimResult, tags=["Claims"])
def approve_reward(
    reward_id: str,
    actor_id: Optional[str] = Header(default=None, alias="X-Actor-Id"),
    coordinator: ClaimCoordinator = Depends(get_coordinator),
) -> ClaimResult:
    return _resolve(coordinator, reward_id, actor_id, ClaimAction.APPROVE)


@app.post("/rewards/{reward_id}/reject", response_model=ClaimResult, tags=["Claims"])
def reject_reward(
    reward_id: str,
    request: Optional[RejectRequest] = None,
    actor_id: Optional[str] = Header(default=None, alias="X-Actor-Id"),
    coordinator: ClaimCoordinator = Depends(get_coordinator),
) -> ClaimResult:
    opts = ClaimOptions(reason=request.reason if request else None)
    return _resolve(coordinator, reward_id, actor_id, ClaimAction.REJECT, opts)


@app.get("/children/{child_id}/requests", response_model=list[Reward], tags=["Claims"])
def list_pending_requests(
    child_id: str,
    actor_id: Optional[str] = Header(default=None, alias="X-Actor-Id"),
    coordinator: ClaimCoordinator = Depends(get_coordinator),
) -> list[Reward]:
    return coordinator.pending_requests(actor_id or "", child_id)


@app.get("/children/{child_id}/rewards", response_model=ChildRewards, tags=["Claims"])
def list_child_rewards(
    child_id: str,
    actor_id: Optional[str] = Header(default=None, alias="X-Actor-Id"),
    coordinator: ClaimCoordinator = Depends(get_coordinator),
) -> ChildRewards:
    return coordinator.list_rewards(actor_id or "", child_id)


@app.get("/accounts/{account_id}/balance", response_model=BalanceResponse, tags=["Accounts"])
def get_balance(account_id: str, coordinator: ClaimCoordinator = Depends(get_coordinator)) -> BalanceResponse:
    return BalanceResponse(account_id=account_id, ggpoints=coordinator.get_balance(account_id))


@app.get("/accounts/{account_id}/ledger", response_model=LedgerHistory, tags=["Accounts"])
def get_ledger(
    account_id: str,
    limit: int = 50,
    offset: int = 0,
    coordinator: ClaimCoordinator = Depends(get_coordinator),
) -> LedgerHistory:
    return coordinator.ledger_history(account_id, limit, offset)


@app.post("/accounts/{account_id}/points", response_model=BalanceResponse, tags=["Accounts"])
def award_points(
    account_id: str,
    request: AwardPointsRequest,
    actor_id: Optional[str] = Header(default=None, alias="X-Actor-Id"),
    coordinator: ClaimCoordinator = Depends(get_coordinator),
) -> BalanceResponse:
    balance = coordinator.award_points(
        account_id,
        actor_id or "",
        request.amount,
        request.reason,
        request.related_reward_id,
    )
    return BalanceResponse(account_id=account_id, ggpoints=balance)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
