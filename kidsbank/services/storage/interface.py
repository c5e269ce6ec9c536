"""
Abstract Storage Interface

DESIGN DECISION: Business logic never touches a database handle directly.
Flows and the allowance scheduler receive a storage object when they are
constructed. This allows us to:
1. Use in-memory storage for testing
2. Run on SQLite at home and a server database elsewhere
3. Inject failing test doubles to exercise error paths

Every method that changes more than one record is a single unit of work:
it either fully happens or not at all.
"""

from abc import ABC, abstractmethod
from datetime import date, datetime, time
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
)
from kidsbank.models.audit import AuditEvent


# Allowance transactions are stamped one minute past midnight of their date.
ALLOWANCE_POSTED_AT = time(0, 1)


class BankStorageInterface(ABC):
    """
    Abstract interface for family bank storage operations.

    Any storage implementation (in-memory, SQLite, PostgreSQL, etc.)
    must implement these methods.
    """

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    @abstractmethod
    async def is_setup_complete(self) -> bool:
        """Has the family been set up?"""
        pass

    @abstractmethod
    async def complete_setup(
        self,
        users: list[User],
        accounts: list[Account],
        settings: BankSettings,
    ) -> None:
        """
        Create all users, accounts and the settings record in one unit.

        Raises:
            DuplicateError: If setup was already completed
        """
        pass

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    @abstractmethod
    async def get_user(self, user_id: str) -> Optional[User]:
        """Get a user by ID (lower-cased name), or None."""
        pass

    @abstractmethod
    async def list_users(self, role: Optional[Role] = None) -> list[User]:
        """List users, optionally only one role, ordered by ID."""
        pass

    @abstractmethod
    async def update_pin_hash(self, user_id: str, pin_hash: str) -> None:
        """
        Replace a user's PIN hash.

        Raises:
            NotFoundError: If the user doesn't exist
        """
        pass

    @abstractmethod
    async def update_avatar_url(self, user_id: str, avatar_url: Optional[str]) -> None:
        """
        Set or clear (None) a user's avatar URL.

        Raises:
            NotFoundError: If the user doesn't exist
        """
        pass

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    @abstractmethod
    async def get_account(self, account_id: str) -> Optional[Account]:
        """Get an account by ID, or None."""
        pass

    @abstractmethod
    async def list_accounts(self) -> list[Account]:
        """List all accounts ordered by ID."""
        pass

    @abstractmethod
    async def update_allowance(self, account_id: str, amount: Decimal) -> Account:
        """
        Change the weekly allowance of an account.

        Raises:
            NotFoundError: If the account doesn't exist
        """
        pass

    # ------------------------------------------------------------------
    # Ledger
    # ------------------------------------------------------------------

    @abstractmethod
    async def record_transaction(
        self,
        account_id: str,
        transaction_type: TransactionType,
        amount: Decimal,
        comment: str,
        performed_by: str,
        created_at: Optional[datetime] = None,
    ) -> Transaction:
        """
        Apply a deposit or withdrawal and append it to the ledger.

        The balance update and the ledger insert are one unit of work.
        `amount` is positive; withdrawals are stored negative.

        Raises:
            NotFoundError: If the account doesn't exist
            InsufficientFundsError: If the balance would drop below zero
        """
        pass

    @abstractmethod
    async def list_transactions(self, filters: TransactionFilter) -> list[Transaction]:
        """List transactions matching the filters, newest first."""
        pass

    # ------------------------------------------------------------------
    # Allowance processing
    # ------------------------------------------------------------------

    @abstractmethod
    async def get_bank_settings(self) -> BankSettings:
        """Get the settings record (defaults if none stored yet)."""
        pass

    @abstractmethod
    async def update_allowance_day(self, day: str) -> BankSettings:
        """Change the allowance weekday."""
        pass

    @abstractmethod
    async def post_allowance_date(
        self,
        on_date: date,
        payouts: list[AllowancePayout],
        comment: str,
        performed_by: str,
    ) -> Optional[list[Transaction]]:
        """
        Post every payout for one allowance date and advance the
        last processed allowance date to `on_date`, as one unit of work.

        Inside the unit the stored last processed date is checked again;
        if it is already on or after `on_date` nothing is written and
        None is returned (a concurrent run got there first).

        Payouts for accounts that no longer exist are skipped.

        Returns:
            The created transactions, in payout order, or None

        Raises:
            StorageError: If the unit could not be committed
        """
        pass

    # ------------------------------------------------------------------
    # Savings goals
    # ------------------------------------------------------------------

    @abstractmethod
    async def list_goals(self, account_id: Optional[str] = None) -> list[SavingsGoal]:
        """List goals in priority order (unordered goals last)."""
        pass

    @abstractmethod
    async def get_goal(self, goal_id: UUID) -> Optional[SavingsGoal]:
        """Get a goal by ID, or None."""
        pass

    @abstractmethod
    async def create_goal(self, goal: SavingsGoal) -> SavingsGoal:
        """
        Store a new goal with the next sort order for its account.

        Raises:
            NotFoundError: If the account doesn't exist
        """
        pass

    @abstractmethod
    async def update_goal(self, goal: SavingsGoal) -> SavingsGoal:
        """
        Replace a stored goal.

        Raises:
            NotFoundError: If the goal doesn't exist
        """
        pass

    @abstractmethod
    async def delete_goal(self, goal_id: UUID) -> bool:
        """Delete a goal. Returns False if it didn't exist."""
        pass

    @abstractmethod
    async def reorder_goals(self, goal_ids: list[UUID]) -> None:
        """
        Give the goals sort orders 0, 1, 2, ... in the given order.

        Applied as one batch.

        Raises:
            NotFoundError: If any goal doesn't exist (nothing is changed)
        """
        pass


class AuditStorageInterface(ABC):
    """
    Abstract interface for audit log storage.

    Audit logs are append-only - we never delete or modify them.
    """

    @abstractmethod
    async def append_event(self, event: AuditEvent) -> bool:
        """
        Append an audit event to the log.

        Returns:
            True if logged successfully
        """
        pass

    @abstractmethod
    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """
        Get the most recent audit events.

        Returns:
            List of recent events (newest first)
        """
        pass


class StorageError(Exception):
    """Base exception for storage operations."""
    pass


class NotFoundError(StorageError):
    """Entity not found in storage."""
    pass


class DuplicateError(StorageError):
    """Attempted to insert a duplicate entity."""
    pass


class InsufficientFundsError(StorageError):
    """A withdrawal would make the balance negative."""

    def __init__(self, account_id: str, balance: Decimal, amount: Decimal):
        self.account_id = account_id
        self.balance = balance
        self.amount = amount
        super().__init__(
            f"Insufficient balance in {account_id}: {balance} available, {amount} requested"
        )


class StorageConnectionError(StorageError):
    """Could not connect to storage backend."""
    pass
