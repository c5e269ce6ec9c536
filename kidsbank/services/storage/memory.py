"""
In-Memory Storage Implementation

Used by the test suite and as a fallback when no database is configured.
Nothing survives a restart.

A single asyncio.Lock serializes every unit of work, which gives the same
all-or-nothing behaviour the SQL implementation gets from transactions:
changes are staged on copies and only swapped in once every check passed.
"""

import asyncio
from datetime import date, datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

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
)


class InMemoryBankStorage(BankStorageInterface):
    """Dictionary-backed bank storage."""

    def __init__(self):
        self._lock = asyncio.Lock()
        self._users: dict[str, User] = {}
        self._accounts: dict[str, Account] = {}
        self._transactions: list[Transaction] = []
        self._goals: dict[UUID, SavingsGoal] = {}
        self._settings = BankSettings()

    # Setup

    async def is_setup_complete(self) -> bool:
        return self._settings.setup_complete

    async def complete_setup(
        self,
        users: list[User],
        accounts: list[Account],
        settings: BankSettings,
    ) -> None:
        async with self._lock:
            if self._settings.setup_complete:
                raise DuplicateError("Setup already completed")
            self._users = {u.id: u.model_copy() for u in users}
            self._accounts = {a.id: a.model_copy() for a in accounts}
            self._settings = settings.model_copy(update={"setup_complete": True})

    # Users

    async def get_user(self, user_id: str) -> Optional[User]:
        user = self._users.get(user_id)
        return user.model_copy() if user else None

    async def list_users(self, role: Optional[Role] = None) -> list[User]:
        return [
            self._users[key].model_copy()
            for key in sorted(self._users)
            if role is None or self._users[key].role == role
        ]

    async def update_pin_hash(self, user_id: str, pin_hash: str) -> None:
        async with self._lock:
            user = self._require_user(user_id)
            self._users[user_id] = user.model_copy(update={"pin_hash": pin_hash})

    async def update_avatar_url(self, user_id: str, avatar_url: Optional[str]) -> None:
        async with self._lock:
            user = self._require_user(user_id)
            self._users[user_id] = user.model_copy(update={"avatar_url": avatar_url})

    def _require_user(self, user_id: str) -> User:
        user = self._users.get(user_id)
        if user is None:
            raise NotFoundError(f"User not found: {user_id}")
        return user

    # Accounts

    async def get_account(self, account_id: str) -> Optional[Account]:
        account = self._accounts.get(account_id)
        return account.model_copy() if account else None

    async def list_accounts(self) -> list[Account]:
        return [self._accounts[key].model_copy() for key in sorted(self._accounts)]

    async def update_allowance(self, account_id: str, amount: Decimal) -> Account:
        async with self._lock:
            account = self._require_account(account_id)
            updated = account.model_copy(update={
                "allowance": to_money(amount),
                "updated_at": datetime.now(),
            })
            self._accounts[account_id] = updated
            return updated.model_copy()

    def _require_account(self, account_id: str) -> Account:
        account = self._accounts.get(account_id)
        if account is None:
            raise NotFoundError(f"Account not found: {account_id}")
        return account

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
        async with self._lock:
            account = self._require_account(account_id)
            signed = to_money(amount)
            if transaction_type == TransactionType.WITHDRAWAL:
                signed = -signed
            new_balance = to_money(account.balance + signed)
            if new_balance < 0:
                raise InsufficientFundsError(account_id, account.balance, to_money(amount))

            txn = Transaction(
                account_id=account_id,
                type=transaction_type,
                amount=signed,
                balance_after=new_balance,
                comment=comment,
                performed_by=performed_by,
                created_at=created_at or datetime.now(),
            )
            self._accounts[account_id] = account.model_copy(update={
                "balance": new_balance,
                "updated_at": datetime.now(),
            })
            self._transactions.append(txn)
            return txn

    async def list_transactions(self, filters: TransactionFilter) -> list[Transaction]:
        matches = [t for t in self._transactions if filters.matches(t)]
        matches.sort(key=lambda t: t.created_at, reverse=True)
        return matches[:filters.limit]

    # Allowance processing

    async def get_bank_settings(self) -> BankSettings:
        return self._settings.model_copy()

    async def update_allowance_day(self, day: str) -> BankSettings:
        async with self._lock:
            self._settings = self._settings.model_copy(update={"allowance_day": day})
            return self._settings.model_copy()

    async def post_allowance_date(
        self,
        on_date: date,
        payouts: list[AllowancePayout],
        comment: str,
        performed_by: str,
    ) -> Optional[list[Transaction]]:
        async with self._lock:
            last = self._settings.last_allowance_date
            if last is not None and last >= on_date:
                return None

            posted_at = datetime.combine(on_date, ALLOWANCE_POSTED_AT)
            staged_accounts: dict[str, Account] = {}
            created: list[Transaction] = []
            for payout in payouts:
                account = staged_accounts.get(payout.account_id) or self._accounts.get(payout.account_id)
                if account is None:
                    continue
                new_balance = to_money(account.balance + payout.amount)
                staged_accounts[account.id] = account.model_copy(update={
                    "balance": new_balance,
                    "updated_at": posted_at,
                })
                created.append(Transaction(
                    account_id=account.id,
                    type=TransactionType.ALLOWANCE,
                    amount=payout.amount,
                    balance_after=new_balance,
                    comment=comment,
                    performed_by=performed_by,
                    created_at=posted_at,
                ))

            self._accounts.update(staged_accounts)
            self._transactions.extend(created)
            self._settings = self._settings.model_copy(update={"last_allowance_date": on_date})
            return created

    # Savings goals

    async def list_goals(self, account_id: Optional[str] = None) -> list[SavingsGoal]:
        goals = [
            g.model_copy() for g in self._goals.values()
            if account_id is None or g.account_id == account_id
        ]
        goals.sort(key=SavingsGoal.priority_key)
        return goals

    async def get_goal(self, goal_id: UUID) -> Optional[SavingsGoal]:
        goal = self._goals.get(goal_id)
        return goal.model_copy() if goal else None

    async def create_goal(self, goal: SavingsGoal) -> SavingsGoal:
        async with self._lock:
            self._require_account(goal.account_id)
            if goal.id in self._goals:
                raise DuplicateError(f"Goal already exists: {goal.id}")
            max_order = max(
                (g.sort_order or 0 for g in self._goals.values() if g.account_id == goal.account_id),
                default=0,
            )
            stored = goal.model_copy(update={"sort_order": max_order + 1})
            self._goals[stored.id] = stored
            return stored.model_copy()

    async def update_goal(self, goal: SavingsGoal) -> SavingsGoal:
        async with self._lock:
            if goal.id not in self._goals:
                raise NotFoundError(f"Goal not found: {goal.id}")
            self._goals[goal.id] = goal.model_copy()
            return goal.model_copy()

    async def delete_goal(self, goal_id: UUID) -> bool:
        async with self._lock:
            return self._goals.pop(goal_id, None) is not None

    async def reorder_goals(self, goal_ids: list[UUID]) -> None:
        async with self._lock:
            missing = [str(g) for g in goal_ids if g not in self._goals]
            if missing:
                raise NotFoundError(f"Goals not found: {', '.join(missing)}")
            for index, goal_id in enumerate(goal_ids):
                self._goals[goal_id] = self._goals[goal_id].model_copy(update={"sort_order": index})


class InMemoryAuditStorage(AuditStorageInterface):
    """List-backed audit log."""

    def __init__(self):
        self._events: list[AuditEvent] = []

    @property
    def events(self) -> list[AuditEvent]:
        return list(self._events)

    async def append_event(self, event: AuditEvent) -> bool:
        self._events.append(event)
        return True

    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        events = sorted(self._events, key=lambda e: e.timestamp, reverse=True)
        return events[:limit]
