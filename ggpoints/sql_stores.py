"""
SQLAlchemy-backed stores.

Each compare-and-swap is a single conditional ``UPDATE ... WHERE``; zero
rows affected means the precondition no longer holds. The updated row is
read back inside the same transaction before commit.
"""

from datetime import datetime
from typing import Callable, Optional
from uuid import uuid4

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Text, create_engine, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker

from .errors import StoreError
from .models import Account, LedgerEntry, Reward, RewardPatch, RewardStatus, utcnow

SessionFactory = Callable[[], Session]


class Base(DeclarativeBase):
    pass


class UserRow(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))
    parent_id: Mapped[Optional[str]] = mapped_column(ForeignKey("users.id"), nullable=True, index=True)
    role: Mapped[str] = mapped_column(String(20), default="child", nullable=False)
    points_balance: Mapped[int] = mapped_column(Integer, default=0, nullable=False)


class RewardRow(Base):
    __tablename__ = "rewards"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))
    child_user_id: Mapped[str] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    cost: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default=RewardStatus.AVAILABLE.value, nullable=False)
    claimed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    claimed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    requested_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    rejected_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    reject_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    decided_by_parent_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)


class LedgerRow(Base):
    __tablename__ = "ggpoints_ledger"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    child_id: Mapped[str] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    parent_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    delta: Mapped[int] = mapped_column(Integer, nullable=False)
    reason: Mapped[str] = mapped_column(Text, default="", nullable=False)
    reward_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)


# Reward fields whose column name differs from the model attribute.
REWARD_COLUMNS = {"owner_id": "child_user_id", "decided_by": "decided_by_parent_id"}
LEGACY_COLUMNS = frozenset({"claimed", "claimed_at"})


def create_session_factory(database_url: str, **engine_kwargs) -> tuple[Engine, sessionmaker]:
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False}
    engine = create_engine(database_url, connect_args=connect_args, **engine_kwargs)
    return engine, sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def init_db(engine: Engine) -> None:
    Base.metadata.create_all(bind=engine)


def _commit(session: Session) -> None:
    try:
        session.commit()
    except SQLAlchemyError as e:
        session.rollback()
        raise StoreError(str(e)) from e


class SqlAccountStore:
    def __init__(self, session_factory: SessionFactory):
        self.session_factory = session_factory

    def add(self, account: Account, role: Optional[str] = None) -> Account:
        """Insert a user row. Accounts without a parent default to the parent role."""
        with self.session_factory() as session:
            session.add(UserRow(
                id=account.id,
                parent_id=account.parent_id,
                role=role or ("child" if account.parent_id else "parent"),
                points_balance=account.points_balance,
            ))
            _commit(session)
        return account

    def get_account(self, account_id: str) -> Optional[Account]:
        with self.session_factory() as session:
            try:
                row = session.get(UserRow, account_id)
            except SQLAlchemyError as e:
                raise StoreError(str(e)) from e
            if row is None:
                return None
            return Account(id=row.id, parent_id=row.parent_id, points_balance=row.points_balance)

    def get_balance(self, account_id: str) -> int:
        with self.session_factory() as session:
            try:
                balance = session.scalar(select(UserRow.points_balance).where(UserRow.id == account_id))
            except SQLAlchemyError as e:
                raise StoreError(str(e)) from e
        if balance is None:
            raise StoreError(f"Account {account_id} not found")
        return balance

    def cas_debit(self, account_id: str, amount: int, expected_balance: Optional[int] = None) -> Optional[int]:
        stmt = update(UserRow).where(UserRow.id == account_id, UserRow.points_balance >= amount)
        if expected_balance is not None:
            stmt = stmt.where(UserRow.points_balance == expected_balance)
        return self._apply(account_id, stmt.values(points_balance=UserRow.points_balance - amount))

    def cas_credit(self, account_id: str, amount: int, expected_balance: Optional[int] = None) -> Optional[int]:
        stmt = update(UserRow).where(UserRow.id == account_id)
        if expected_balance is not None:
            stmt = stmt.where(UserRow.points_balance == expected_balance)
        return self._apply(account_id, stmt.values(points_balance=UserRow.points_balance + amount))

    def _apply(self, account_id: str, stmt) -> Optional[int]:
        with self.session_factory() as session:
            try:
                result = session.execute(stmt.execution_options(synchronize_session=False))
                if result.rowcount == 0:
                    session.rollback()
                    return None
                balance = session.scalar(select(UserRow.points_balance).where(UserRow.id == account_id))
                session.commit()
            except SQLAlchemyError as e:
                session.rollback()
                raise StoreError(str(e)) from e
            return balance


class SqlRewardStore:
    """Reward table access.

    With ``legacy=True`` only the ``claimed``/``claimed_at`` columns are read
    and written, matching databases where the status migration never ran.
    """

    def __init__(self, session_factory: SessionFactory, legacy: bool = False):
        self.session_factory = session_factory
        self.legacy = legacy

    def add(self, reward: Reward) -> Reward:
        with self.session_factory() as session:
            session.add(RewardRow(
                id=reward.id,
                child_user_id=reward.owner_id,
                name=reward.name,
                cost=reward.cost,
                status=reward.status.value,
                claimed=reward.claimed,
                claimed_at=reward.claimed_at,
                requested_at=reward.requested_at,
                approved_at=reward.approved_at,
                rejected_at=reward.rejected_at,
                reject_reason=reward.reject_reason,
                decided_by_parent_id=reward.decided_by,
                created_at=reward.created_at,
            ))
            _commit(session)
        return self.get_by_id(reward.id)

    def _to_reward(self, row: RewardRow) -> Reward:
        base = dict(
            id=row.id,
            owner_id=row.child_user_id,
            name=row.name,
            cost=row.cost,
            claimed=row.claimed,
            claimed_at=row.claimed_at,
            created_at=row.created_at,
        )
        if self.legacy:
            return Reward.from_legacy(**base)
        return Reward(
            **base,
            status=RewardStatus(row.status),
            requested_at=row.requested_at,
            approved_at=row.approved_at,
            rejected_at=row.rejected_at,
            reject_reason=row.reject_reason,
            decided_by=row.decided_by_parent_id,
        )

    def get_by_id(self, reward_id: str) -> Optional[Reward]:
        with self.session_factory() as session:
            try:
                row = session.get(RewardRow, reward_id)
            except SQLAlchemyError as e:
                raise StoreError(str(e)) from e
            return self._to_reward(row) if row is not None else None

    def cas_update_status(self, reward_id: str, from_status: RewardStatus, patch: RewardPatch) -> Optional[Reward]:
        values = {}
        for name, value in patch.changes().items():
            if self.legacy and name not in LEGACY_COLUMNS:
                continue
            if isinstance(value, RewardStatus):
                value = value.value
            values[REWARD_COLUMNS.get(name, name)] = value

        stmt = update(RewardRow).where(RewardRow.id == reward_id)
        if self.legacy:
            stmt = stmt.where(RewardRow.claimed == (from_status == RewardStatus.APPROVED))
        else:
            stmt = stmt.where(RewardRow.status == from_status.value)

        with self.session_factory() as session:
            try:
                result = session.execute(stmt.values(**values).execution_options(synchronize_session=False))
                if result.rowcount == 0:
                    session.rollback()
                    return None
                row = session.get(RewardRow, reward_id, populate_existing=True)
                reward = self._to_reward(row)
                session.commit()
            except SQLAlchemyError as e:
                session.rollback()
                raise StoreError(str(e)) from e
            return reward

    def list_for_owner(self, owner_id: str, status: Optional[RewardStatus] = None) -> list[Reward]:
        stmt = select(RewardRow).where(RewardRow.child_user_id == owner_id)
        if status is not None and not self.legacy:
            stmt = stmt.where(RewardRow.status == status.value)
        with self.session_factory() as session:
            try:
                rows = session.scalars(stmt).all()
            except SQLAlchemyError as e:
                raise StoreError(str(e)) from e
            rewards = [self._to_reward(row) for row in rows]
        if status is not None and self.legacy:
            rewards = [r for r in rewards if r.status == status]
        return rewards


class SqlLedgerStore:
    def __init__(self, session_factory: SessionFactory):
        self.session_factory = session_factory

    def append(self, entry: LedgerEntry) -> LedgerEntry:
        with self.session_factory() as session:
            session.add(LedgerRow(
                id=entry.id,
                child_id=entry.account_id,
                parent_id=entry.counterparty_id,
                delta=entry.delta,
                reason=entry.reason,
                reward_id=entry.related_reward_id,
                created_at=entry.created_at,
            ))
            _commit(session)
        return entry

    def list_for_account(self, account_id: str) -> list[LedgerEntry]:
        stmt = (
            select(LedgerRow)
            .where(LedgerRow.child_id == account_id)
            .order_by(LedgerRow.created_at.desc())
        )
        with self.session_factory() as session:
            try:
                rows = session.scalars(stmt).all()
            except SQLAlchemyError as e:
                raise StoreError(str(e)) from e
            return [
                LedgerEntry(
                    id=row.id,
                    account_id=row.child_id,
                    counterparty_id=row.parent_id,
                    delta=row.delta,
                    reason=row.reason,
                    related_reward_id=row.reward_id,
                    created_at=row.created_at,
                )
                for row in rows
            ]
