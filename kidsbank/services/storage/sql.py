"""
SQL Storage Implementation (SQLAlchemy)

DESIGN DECISION: A real database gives us what the allowance scheduler
needs most: the balance update, the ledger insert and the settings
date-advance commit together or not at all.

SQLite is the default (one file, no server). SQLite connections open
every transaction with BEGIN IMMEDIATE, which takes the write lock up
front, so two app instances processing allowances at the same moment
queue behind each other instead of both reading the same balance.
Other databases lock the rows involved with SELECT ... FOR UPDATE.

The ORM is synchronous; each unit of work runs in a worker thread so the
async callers (and their timeouts) stay responsive.
"""

import asyncio
import threading
import weakref
from contextlib import nullcontext
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Callable, Optional, TypeVar
from uuid import UUID

import structlog
from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    create_engine,
    event,
    func,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    Session,
    mapped_column,
    sessionmaker,
)
from sqlalchemy.pool import StaticPool
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from kidsbank.models.ledger import (
    Account,
    AllowancePayout,
    BankSettings,
    Role,
    SavingsGoal,
    Transaction,
    TransactionFilter,
    TransactionType,
    User,
    to_money,
)
from kidsbank.models.audit import AuditEvent
from kidsbank.services.storage.interface import (
    ALLOWANCE_POSTED_AT,
    AuditStorageInterface,
    BankStorageInterface,
    DuplicateError,
    InsufficientFundsError,
    NotFoundError,
    StorageConnectionError,
    StorageError,
)


logger = structlog.get_logger(__name__)

T = TypeVar("T")

SETTINGS_ROW_ID = 1


# =============================================================================
# SCHEMA
# =============================================================================

class Base(DeclarativeBase):
    """SQLAlchemy Declarative Base."""
    pass


class UserRow(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(50), primary_key=True)
    name: Mapped[str] = mapped_column(String(50))
    role: Mapped[str] = mapped_column(String(10), index=True)
    pin_hash: Mapped[str] = mapped_column(String(255))
    avatar_url: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)


class AccountRow(Base):
    __tablename__ = "accounts"

    id: Mapped[str] = mapped_column(String(50), primary_key=True)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id"), index=True)
    user_name: Mapped[str] = mapped_column(String(50))
    balance: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0.00"))
    allowance: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0.00"))
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)


class TransactionRow(Base):
    __tablename__ = "transactions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    account_id: Mapped[str] = mapped_column(ForeignKey("accounts.id"), index=True)
    type: Mapped[str] = mapped_column(String(20), index=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    balance_after: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    comment: Mapped[str] = mapped_column(String(200), default="")
    performed_by: Mapped[str] = mapped_column(String(50))
    created_at: Mapped[datetime] = mapped_column(DateTime, index=True)


class GoalRow(Base):
    __tablename__ = "savings_goals"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    account_id: Mapped[str] = mapped_column(ForeignKey("accounts.id"), index=True)
    name: Mapped[str] = mapped_column(String(100))
    target_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    target_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    emoji: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    is_completed: Mapped[bool] = mapped_column(Boolean, default=False)
    sort_order: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime)


class SettingsRow(Base):
    __tablename__ = "settings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    setup_complete: Mapped[bool] = mapped_column(Boolean, default=False)
    allowance_day: Mapped[str] = mapped_column(String(20), default="sunday")
    last_allowance_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)


class AuditEventRow(Base):
    __tablename__ = "audit_events"

    event_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    event_type: Mapped[str] = mapped_column(String(50), index=True)
    payload: Mapped[str] = mapped_column(Text)


# =============================================================================
# ENGINE
# =============================================================================

def create_bank_engine(
    url: str,
    busy_timeout_seconds: float = 5.0,
    echo: bool = False,
) -> Engine:
    """
    Create an engine for the bank database.

    For SQLite the pysqlite driver's own transaction handling is switched
    off so that SQLAlchemy can emit BEGIN IMMEDIATE itself.
    """
    is_sqlite = url.startswith("sqlite")
    in_memory = is_sqlite and (":memory:" in url or url.rstrip("/") in ("sqlite:", "sqlite+pysqlite:"))

    kwargs = dict(echo=echo, pool_pre_ping=True)
    if is_sqlite:
        kwargs["connect_args"] = {
            "check_same_thread": False,
            "timeout": busy_timeout_seconds,
        }
        if in_memory:
            # One shared connection, otherwise every session sees an empty database
            kwargs["poolclass"] = StaticPool

    engine = create_engine(url, **kwargs)

    if is_sqlite:

        @event.listens_for(engine, "connect")
        def _sqlite_connect(dbapi_conn, _):
            dbapi_conn.isolation_level = None
            cur = dbapi_conn.cursor()
            cur.execute("PRAGMA foreign_keys=ON;")
            if not in_memory:
                cur.execute("PRAGMA journal_mode=WAL;")
                cur.execute("PRAGMA synchronous=NORMAL;")
            cur.close()

        @event.listens_for(engine, "begin")
        def _sqlite_begin(conn):
            conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


# =============================================================================
# ROW <-> MODEL CONVERSION
# =============================================================================

def _user_from_row(row: UserRow) -> User:
    return User(
        id=row.id,
        name=row.name,
        role=Role(row.role),
        pin_hash=row.pin_hash,
        avatar_url=row.avatar_url or None,
    )


def _account_from_row(row: AccountRow) -> Account:
    return Account(
        id=row.id,
        user_id=row.user_id,
        user_name=row.user_name,
        balance=row.balance,
        allowance=row.allowance,
        updated_at=row.updated_at,
    )


def _transaction_from_row(row: TransactionRow) -> Transaction:
    return Transaction(
        id=UUID(row.id),
        account_id=row.account_id,
        type=TransactionType(row.type),
        amount=row.amount,
        balance_after=row.balance_after,
        comment=row.comment or "",
        performed_by=row.performed_by,
        created_at=row.created_at,
    )


def _goal_from_row(row: GoalRow) -> SavingsGoal:
    return SavingsGoal(
        id=UUID(row.id),
        account_id=row.account_id,
        name=row.name,
        target_amount=row.target_amount,
        target_date=row.target_date,
        emoji=row.emoji,
        is_completed=bool(row.is_completed),
        sort_order=row.sort_order,
        created_at=row.created_at,
    )


def _settings_from_row(row: Optional[SettingsRow]) -> BankSettings:
    if row is None:
        return BankSettings()
    return BankSettings(
        setup_complete=bool(row.setup_complete),
        allowance_day=row.allowance_day,
        last_allowance_date=row.last_allowance_date,
    )


def _transaction_row(txn: Transaction) -> TransactionRow:
    return TransactionRow(
        id=str(txn.id),
        account_id=txn.account_id,
        type=txn.type.value,
        amount=txn.amount,
        balance_after=txn.balance_after,
        comment=txn.comment,
        performed_by=txn.performed_by,
        created_at=txn.created_at,
    )


# =============================================================================
# STORAGE
# =============================================================================

_shared_connection_locks: "weakref.WeakKeyDictionary[Engine, threading.Lock]" = weakref.WeakKeyDictionary()
_shared_connection_locks_guard = threading.Lock()


def shared_connection_lock(engine: Engine) -> Optional[threading.Lock]:
    """
    Lock serializing units of work on engines with a single shared connection.

    A StaticPool (in-memory SQLite) hands the same connection to every worker
    thread, so BEGIN IMMEDIATE cannot keep two units apart there. Every
    storage built on the same engine gets the same lock.
    """
    if not isinstance(engine.pool, StaticPool):
        return None
    with _shared_connection_locks_guard:
        lock = _shared_connection_locks.get(engine)
        if lock is None:
            lock = _shared_connection_locks[engine] = threading.Lock()
        return lock


class _SQLUnitOfWork:
    """Runs callables in one committed session, off the event loop."""

    def __init__(self, engine: Engine):
        self._engine = engine
        self._sessions = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
        self._connection_lock = shared_connection_lock(engine)

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.2, min=0.2, max=2),
        retry=retry_if_exception_type(OperationalError),
        reraise=True,
    )
    def _execute(self, work: Callable[[Session], T]) -> T:
        with self._connection_lock or nullcontext():
            with self._sessions.begin() as session:
                return work(session)

    async def _unit(self, work: Callable[[Session], T]) -> T:
        try:
            return await asyncio.to_thread(self._execute, work)
        except StorageError:
            raise
        except OperationalError as e:
            logger.error("storage_unavailable", error=str(e))
            raise StorageConnectionError(f"Database unavailable: {e}") from e
        except SQLAlchemyError as e:
            logger.error("storage_failed", error=str(e))
            raise StorageError(f"Database error: {e}") from e


class SQLBankStorage(_SQLUnitOfWork, BankStorageInterface):
    """
    SQLAlchemy implementation of bank storage.

    One method call is one database transaction.
    """

    def __init__(self, engine: Engine, create_schema: bool = True):
        super().__init__(engine)
        if create_schema:
            Base.metadata.create_all(engine)

    # Setup

    async def is_setup_complete(self) -> bool:
        settings = await self.get_bank_settings()
        return settings.setup_complete

    async def complete_setup(
        self,
        users: list[User],
        accounts: list[Account],
        settings: BankSettings,
    ) -> None:
        def work(session: Session) -> None:
            row = session.get(SettingsRow, SETTINGS_ROW_ID, with_for_update=True)
            if row is not None and row.setup_complete:
                raise DuplicateError("Setup already completed")
            for user in users:
                session.merge(UserRow(
                    id=user.id,
                    name=user.name,
                    role=user.role.value,
                    pin_hash=user.pin_hash,
                    avatar_url=user.avatar_url,
                ))
            session.flush()
            for account in accounts:
                session.merge(AccountRow(
                    id=account.id,
                    user_id=account.user_id,
                    user_name=account.user_name,
                    balance=account.balance,
                    allowance=account.allowance,
                    updated_at=account.updated_at,
                ))
            if row is None:
                row = SettingsRow(id=SETTINGS_ROW_ID)
                session.add(row)
            row.setup_complete = True
            row.allowance_day = settings.allowance_day
            row.last_allowance_date = settings.last_allowance_date

        await self._unit(work)

    # Users

    async def get_user(self, user_id: str) -> Optional[User]:
        def work(session: Session) -> Optional[User]:
            row = session.get(UserRow, user_id)
            return _user_from_row(row) if row else None

        return await self._unit(work)

    async def list_users(self, role: Optional[Role] = None) -> list[User]:
        def work(session: Session) -> list[User]:
            stmt = select(UserRow).order_by(UserRow.id)
            if role is not None:
                stmt = stmt.where(UserRow.role == role.value)
            return [_user_from_row(r) for r in session.scalars(stmt)]

        return await self._unit(work)

    async def update_pin_hash(self, user_id: str, pin_hash: str) -> None:
        def work(session: Session) -> None:
            row = session.get(UserRow, user_id)
            if row is None:
                raise NotFoundError(f"User not found: {user_id}")
            row.pin_hash = pin_hash

        await self._unit(work)

    async def update_avatar_url(self, user_id: str, avatar_url: Optional[str]) -> None:
        def work(session: Session) -> None:
            row = session.get(UserRow, user_id)
            if row is None:
                raise NotFoundError(f"User not found: {user_id}")
            row.avatar_url = avatar_url

        await self._unit(work)

    # Accounts

    async def get_account(self, account_id: str) -> Optional[Account]:
        def work(session: Session) -> Optional[Account]:
            row = session.get(AccountRow, account_id)
            return _account_from_row(row) if row else None

        return await self._unit(work)

    async def list_accounts(self) -> list[Account]:
        def work(session: Session) -> list[Account]:
            stmt = select(AccountRow).order_by(AccountRow.id)
            return [_account_from_row(r) for r in session.scalars(stmt)]

        return await self._unit(work)

    async def update_allowance(self, account_id: str, amount: Decimal) -> Account:
        def work(session: Session) -> Account:
            row = session.get(AccountRow, account_id, with_for_update=True)
            if row is None:
                raise NotFoundError(f"Account not found: {account_id}")
            row.allowance = to_money(amount)
            row.updated_at = datetime.now()
            return _account_from_row(row)

        return await self._unit(work)

    # Ledger

    async def record_transaction(
        self,
        account_id: str,
        transaction_type: TransactionType,
        amount: Decimal,
        comment: str,
        performed_by: str,
        created_at: Optional[datetime] = None,
    ) -> Transaction:
        def work(session: Session) -> Transaction:
            row = session.get(AccountRow, account_id, with_for_update=True)
            if row is None:
                raise NotFoundError(f"Account not found: {account_id}")
            signed = to_money(amount)
            if transaction_type == TransactionType.WITHDRAWAL:
                signed = -signed
            new_balance = to_money(row.balance + signed)
            if new_balance < 0:
                raise InsufficientFundsError(account_id, to_money(row.balance), to_money(amount))

            txn = Transaction(
                account_id=account_id,
                type=transaction_type,
                amount=signed,
                balance_after=new_balance,
                comment=comment,
                performed_by=performed_by,
                created_at=created_at or datetime.now(),
            )
            row.balance = new_balance
            row.updated_at = datetime.now()
            session.add(_transaction_row(txn))
            return txn

        return await self._unit(work)

    async def list_transactions(self, filters: TransactionFilter) -> list[Transaction]:
        def work(session: Session) -> list[Transaction]:
            stmt = select(TransactionRow)
            if filters.account_id:
                stmt = stmt.where(TransactionRow.account_id == filters.account_id)
            if filters.type:
                stmt = stmt.where(TransactionRow.type == filters.type.value)
            if filters.date_from:
                stmt = stmt.where(TransactionRow.created_at >= datetime.combine(filters.date_from, datetime.min.time()))
            if filters.date_to:
                day_after = filters.date_to + timedelta(days=1)
                stmt = stmt.where(TransactionRow.created_at < datetime.combine(day_after, datetime.min.time()))
            stmt = stmt.order_by(TransactionRow.created_at.desc()).limit(filters.limit)
            return [_transaction_from_row(r) for r in session.scalars(stmt)]

        return await self._unit(work)

    # Allowance processing

    async def get_bank_settings(self) -> BankSettings:
        def work(session: Session) -> BankSettings:
            return _settings_from_row(session.get(SettingsRow, SETTINGS_ROW_ID))

        return await self._unit(work)

    async def update_allowance_day(self, day: str) -> BankSettings:
        def work(session: Session) -> BankSettings:
            row = session.get(SettingsRow, SETTINGS_ROW_ID, with_for_update=True)
            if row is None:
                row = SettingsRow(id=SETTINGS_ROW_ID, setup_complete=False)
                session.add(row)
            row.allowance_day = day
            session.flush()
            return _settings_from_row(row)

        return await self._unit(work)

    async def post_allowance_date(
        self,
        on_date: date,
        payouts: list[AllowancePayout],
        comment: str,
        performed_by: str,
    ) -> Optional[list[Transaction]]:
        def work(session: Session) -> Optional[list[Transaction]]:
            settings_row = session.get(SettingsRow, SETTINGS_ROW_ID, with_for_update=True)
            if settings_row is None:
                settings_row = SettingsRow(id=SETTINGS_ROW_ID, setup_complete=False, allowance_day="sunday")
                session.add(settings_row)
            last = settings_row.last_allowance_date
            if last is not None and last >= on_date:
                return None

            posted_at = datetime.combine(on_date, ALLOWANCE_POSTED_AT)
            created = []
            for payout in payouts:
                account = session.get(AccountRow, payout.account_id, with_for_update=True)
                if account is None:
                    continue
                new_balance = to_money(account.balance + payout.amount)
                account.balance = new_balance
                account.updated_at = posted_at
                txn = Transaction(
                    account_id=account.id,
                    type=TransactionType.ALLOWANCE,
                    amount=payout.amount,
                    balance_after=new_balance,
                    comment=comment,
                    performed_by=performed_by,
                    created_at=posted_at,
                )
                session.add(_transaction_row(txn))
                created.append(txn)

            settings_row.last_allowance_date = on_date
            return created

        return await self._unit(work)

    # Savings goals

    async def list_goals(self, account_id: Optional[str] = None) -> list[SavingsGoal]:
        def work(session: Session) -> list[SavingsGoal]:
            stmt = select(GoalRow)
            if account_id is not None:
                stmt = stmt.where(GoalRow.account_id == account_id)
            goals = [_goal_from_row(r) for r in session.scalars(stmt)]
            goals.sort(key=SavingsGoal.priority_key)
            return goals

        return await self._unit(work)

    async def get_goal(self, goal_id: UUID) -> Optional[SavingsGoal]:
        def work(session: Session) -> Optional[SavingsGoal]:
            row = session.get(GoalRow, str(goal_id))
            return _goal_from_row(row) if row else None

        return await self._unit(work)

    async def create_goal(self, goal: SavingsGoal) -> SavingsGoal:
        def work(session: Session) -> SavingsGoal:
            if session.get(AccountRow, goal.account_id) is None:
                raise NotFoundError(f"Account not found: {goal.account_id}")
            if session.get(GoalRow, str(goal.id)) is not None:
                raise DuplicateError(f"Goal already exists: {goal.id}")
            max_order = session.scalar(
                select(func.max(GoalRow.sort_order)).where(GoalRow.account_id == goal.account_id)
            )
            stored = goal.model_copy(update={"sort_order": (max_order or 0) + 1})
            session.add(GoalRow(
                id=str(stored.id),
                account_id=stored.account_id,
                name=stored.name,
                target_amount=stored.target_amount,
                target_date=stored.target_date,
                emoji=stored.emoji,
                is_completed=stored.is_completed,
                sort_order=stored.sort_order,
                created_at=stored.created_at,
            ))
            return stored

        return await self._unit(work)

    async def update_goal(self, goal: SavingsGoal) -> SavingsGoal:
        def work(session: Session) -> SavingsGoal:
            row = session.get(GoalRow, str(goal.id))
            if row is None:
                raise NotFoundError(f"Goal not found: {goal.id}")
            row.name = goal.name
            row.target_amount = goal.target_amount
            row.target_date = goal.target_date
            row.emoji = goal.emoji
            row.is_completed = goal.is_completed
            row.sort_order = goal.sort_order
            return goal

        return await self._unit(work)

    async def delete_goal(self, goal_id: UUID) -> bool:
        def work(session: Session) -> bool:
            row = session.get(GoalRow, str(goal_id))
            if row is None:
                return False
            session.delete(row)
            return True

        return await self._unit(work)

    async def reorder_goals(self, goal_ids: list[UUID]) -> None:
        def work(session: Session) -> None:
            keys = [str(g) for g in goal_ids]
            rows = {r.id: r for r in session.scalars(select(GoalRow).where(GoalRow.id.in_(keys)))}
            missing = [k for k in keys if k not in rows]
            if missing:
                raise NotFoundError(f"Goals not found: {', '.join(missing)}")
            for index, key in enumerate(keys):
                rows[key].sort_order = index

        await self._unit(work)


class SQLAuditStorage(_SQLUnitOfWork, AuditStorageInterface):
    """
    SQLAlchemy implementation of audit log storage.

    Audit events are append-only.
    """

    def __init__(self, engine: Engine, create_schema: bool = True):
        super().__init__(engine)
        if create_schema:
            Base.metadata.create_all(engine)

    async def append_event(self, event: AuditEvent) -> bool:
        def work(session: Session) -> bool:
            session.add(AuditEventRow(
                event_id=str(event.event_id),
                timestamp=event.timestamp,
                event_type=event.event_type.value,
                payload=event.model_dump_json(),
            ))
            return True

        return await self._unit(work)

    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        def work(session: Session) -> list[AuditEvent]:
            stmt = select(AuditEventRow).order_by(AuditEventRow.timestamp.desc()).limit(limit)
            return [AuditEvent.model_validate_json(r.payload) for r in session.scalars(stmt)]

        return await self._unit(work)
