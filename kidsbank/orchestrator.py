"""
Main Orchestrator for KidsBank

This module ties together all the components and defines the
end-to-end flows for:
1. Setup (family configuration + PINs → users, accounts, settings)
2. Login (PIN check → allowance catch-up)
3. Ledger (deposits, withdrawals, history)
4. Goals (savings goals with shared-balance progress)
5. Settings (allowances, allowance day, PINs, avatars)

DESIGN DECISION: The orchestrator enforces the boundaries:
- Only parents move money or change allowances
- Children only ever see and touch their own account
- Every change is audited

The UI and the cron entry point call these flows; they never talk to
storage themselves.
"""

import asyncio
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

import structlog
from pydantic import BaseModel, Field, ValidationError

from kidsbank.allowance import AllowanceProcessingError, AllowanceScheduler
from kidsbank.audit import AuditLogger, create_correlation_id
from kidsbank.auth import hash_pin, validate_pin, verify_pin
from kidsbank.config import FamilySettings, get_settings
from kidsbank.goals import GoalProgress, goal_progress
from kidsbank.models.audit import AuditEventType
from kidsbank.models.ledger import (
    DAYS_OF_WEEK,
    Account,
    BankSettings,
    Role,
    SavingsGoal,
    Transaction,
    TransactionFilter,
    TransactionType,
    User,
    weekday_index,
)
from kidsbank.services.avatar import AvatarError, AvatarUploadError, CloudinaryAvatarService
from kidsbank.services.storage import (
    AuditStorageInterface,
    BankStorageInterface,
    DuplicateError,
    InMemoryAuditStorage,
    InMemoryBankStorage,
    InsufficientFundsError,
    NotFoundError,
    SQLAuditStorage,
    SQLBankStorage,
    create_bank_engine,
)


logger = structlog.get_logger(__name__)


class PermissionDeniedError(Exception):
    """The logged-in user may not do this."""
    pass


class SetupError(Exception):
    """Family setup cannot be completed."""
    pass


class SetupTimeoutError(SetupError):
    """Setup did not finish in time. Check is_setup_complete before retrying."""

    retryable = True


def _require_parent(viewer: User, action: str) -> None:
    if not viewer.is_parent:
        raise PermissionDeniedError(f"Only parents can {action}")


def _require_member_access(viewer: User, member_id: str) -> None:
    """Parents may act on anyone; children only on themselves (or their own account)."""
    if not viewer.is_parent and viewer.id != member_id:
        raise PermissionDeniedError("You can only manage your own account")


# =============================================================================
# REQUEST MODELS - validated user input
# =============================================================================

class LedgerEntryRequest(BaseModel):
    """A deposit or withdrawal as entered by a parent."""

    amount: Decimal = Field(
        ...,
        gt=0,
        max_digits=12,
        decimal_places=2,
        description="Positive amount with at most two decimals"
    )
    comment: str = Field(..., min_length=1, max_length=200)
    on_date: Optional[date] = Field(
        default=None,
        description="Backdate the entry to this day (defaults to now)"
    )


class AllowanceChangeRequest(BaseModel):
    """A new weekly allowance. Zero switches the allowance off."""

    amount: Decimal = Field(..., ge=0, max_digits=12, decimal_places=2)


class SettingsOverview(BaseModel):
    """What the settings screen shows."""

    settings: BankSettings
    children: list[Account]
    allowance_days: list[str] = Field(default_factory=lambda: list(DAYS_OF_WEEK))


class GoalOverview(BaseModel):
    """One account's goals: active ones with progress, then completed ones."""

    account: Account
    active: list[GoalProgress]
    completed: list[SavingsGoal]


# =============================================================================
# FLOWS
# =============================================================================

class SetupFlow:
    """
    First-run setup.

    The family members come from configuration (FAMILY_MEMBERS); the only
    input at setup time is one PIN per member.
    """

    def __init__(
        self,
        storage: BankStorageInterface,
        audit_logger: Optional[AuditLogger] = None,
        family: Optional[FamilySettings] = None,
        pin_length: Optional[int] = None,
        timeout_seconds: Optional[float] = None,
    ):
        self._storage = storage
        self._audit_logger = audit_logger
        self._family = family
        self._pin_length = pin_length
        self._timeout_seconds = timeout_seconds

    @property
    def family(self) -> FamilySettings:
        return self._family or get_settings().family

    @property
    def pin_length(self) -> int:
        return self._pin_length or get_settings().app.pin_length

    async def is_setup_complete(self) -> bool:
        return await self._storage.is_setup_complete()

    async def complete_setup(
        self,
        pins: dict[str, str],
        timeout: Optional[float] = None,
    ) -> list[User]:
        """
        Create every family member with their PIN.

        Args:
            pins: {member name: PIN}, one entry per configured member
            timeout: Seconds to wait for storage (defaults to the configured
                     operation timeout)

        Returns:
            The created users, in configuration order

        Raises:
            SetupError: Already set up, no family configured, or a PIN missing
            SetupTimeoutError: Storage did not answer in time; retry later
            InvalidPinError: A PIN has the wrong shape
        """
        members = self.family.members
        if not members:
            raise SetupError("No family members configured (set FAMILY_MEMBERS)")
        if await self._storage.is_setup_complete():
            raise SetupError("Setup has already been completed")

        pins_by_id = {name.strip().lower(): pin for name, pin in pins.items()}
        missing = [m.name for m in members if m.user_id not in pins_by_id]
        if missing:
            raise SetupError(f"A PIN is required for: {', '.join(missing)}")

        users = []
        accounts = []
        for member in members:
            pin = validate_pin(pins_by_id[member.user_id], self.pin_length)
            users.append(User(
                id=member.user_id,
                name=member.name,
                role=member.role,
                pin_hash=hash_pin(pin),
            ))
            if member.role == Role.CHILD:
                accounts.append(Account(
                    id=member.user_id,
                    user_id=member.user_id,
                    user_name=member.name,
                    allowance=member.allowance,
                ))

        if timeout is None:
            timeout = self._timeout_seconds or get_settings().app.operation_timeout_seconds

        try:
            await asyncio.wait_for(
                self._storage.complete_setup(
                    users=users,
                    accounts=accounts,
                    settings=BankSettings(setup_complete=True),
                ),
                timeout=timeout,
            )
        except DuplicateError as e:
            raise SetupError(str(e)) from e
        except asyncio.TimeoutError as e:
            logger.error("setup_timed_out", timeout=timeout)
            raise SetupTimeoutError(f"Setup did not finish within {timeout}s; please try again") from e

        logger.info("setup_completed", members=len(users), accounts=len(accounts))
        if self._audit_logger:
            await self._audit_logger.log_setup_completed([u.name for u in users])

        return users


class LoginFlow:
    """
    PIN login.

    Every successful login also catches up on missed allowances, so money
    appears as soon as anyone opens the app.
    """

    def __init__(
        self,
        storage: BankStorageInterface,
        scheduler: AllowanceScheduler,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self._storage = storage
        self._scheduler = scheduler
        self._audit_logger = audit_logger

    async def list_members(self) -> list[User]:
        """Everyone who can log in (for the login screen)."""
        return await self._storage.list_users()

    async def login(self, name: str, pin: str) -> Optional[User]:
        """
        Check a PIN.

        Returns:
            The user, or None for an unknown name or wrong PIN
        """
        user = await self._storage.get_user(name.strip().lower())
        if user is None or not verify_pin(pin, user.pin_hash):
            reason = "unknown user" if user is None else "wrong PIN"
            if self._audit_logger:
                await self._audit_logger.log_login_failed(name, reason)
            return None

        correlation_id = create_correlation_id()
        if self._audit_logger:
            await self._audit_logger.log_login_succeeded(user.id, correlation_id)

        try:
            await self._scheduler.run(correlation_id=correlation_id)
        except AllowanceProcessingError as e:
            # The scheduler has already logged and audited the failure;
            # the next login picks up where it stopped.
            logger.warning(
                "allowance_catch_up_deferred",
                user_id=user.id,
                processed=e.processed,
                error=str(e),
            )

        return user


class LedgerFlow:
    """Balances, deposits, withdrawals and history."""

    def __init__(
        self,
        storage: BankStorageInterface,
        audit_logger: Optional[AuditLogger] = None,
        history_limit: Optional[int] = None,
    ):
        self._storage = storage
        self._audit_logger = audit_logger
        self._history_limit = history_limit

    async def list_accounts(self, viewer: User) -> list[Account]:
        """Parents see every account, children only their own."""
        accounts = await self._storage.list_accounts()
        if viewer.is_parent:
            return accounts
        return [a for a in accounts if a.id == viewer.id]

    async def get_account(self, viewer: User, account_id: str) -> Account:
        _require_member_access(viewer, account_id)
        account = await self._storage.get_account(account_id)
        if account is None:
            raise NotFoundError(f"Account not found: {account_id}")
        return account

    async def record_deposit(
        self,
        viewer: User,
        account_id: str,
        amount,
        comment: str,
        on_date: Optional[date] = None,
    ) -> Transaction:
        """Add money to a child's account (parents only)."""
        return await self._record(viewer, account_id, TransactionType.DEPOSIT, amount, comment, on_date)

    async def record_withdrawal(
        self,
        viewer: User,
        account_id: str,
        amount,
        comment: str,
        on_date: Optional[date] = None,
    ) -> Transaction:
        """
        Take money out of a child's account (parents only).

        Raises:
            InsufficientFundsError: If the balance would go negative
        """
        return await self._record(viewer, account_id, TransactionType.WITHDRAWAL, amount, comment, on_date)

    async def _record(
        self,
        viewer: User,
        account_id: str,
        transaction_type: TransactionType,
        amount,
        comment: str,
        on_date: Optional[date],
    ) -> Transaction:
        _require_parent(viewer, f"record a {transaction_type.value}")
        request = LedgerEntryRequest(amount=amount, comment=comment, on_date=on_date)

        created_at = None
        if request.on_date and request.on_date != date.today():
            created_at = datetime.combine(request.on_date, datetime.now().time())

        try:
            txn = await self._storage.record_transaction(
                account_id=account_id,
                transaction_type=transaction_type,
                amount=request.amount,
                comment=request.comment,
                performed_by=viewer.name,
                created_at=created_at,
            )
        except InsufficientFundsError as e:
            if self._audit_logger:
                await self._audit_logger.log_withdrawal_rejected(
                    account_id=account_id,
                    amount=str(e.amount),
                    balance=str(e.balance),
                    actor=viewer.name,
                )
            raise

        if self._audit_logger:
            await self._audit_logger.log_transaction_recorded(
                account_id=account_id,
                kind=transaction_type.value,
                amount=str(txn.amount),
                balance_after=str(txn.balance_after),
                actor=viewer.name,
            )
        return txn

    async def list_transactions(
        self,
        viewer: User,
        filters: Optional[TransactionFilter] = None,
    ) -> list[Transaction]:
        """
        Transaction history, newest first.

        Children are always limited to their own account.
        """
        if filters is None:
            limit = self._history_limit or get_settings().app.transaction_history_limit
            filters = TransactionFilter(limit=limit)

        if not viewer.is_parent:
            if filters.account_id and filters.account_id != viewer.id:
                raise PermissionDeniedError("You can only see your own transactions")
            filters = filters.model_copy(update={"account_id": viewer.id})

        return await self._storage.list_transactions(filters)


class GoalFlow:
    """
    Savings goals.

    Progress is never stored: it is worked out from the current balance
    each time goals are listed.
    """

    def __init__(
        self,
        storage: BankStorageInterface,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self._storage = storage
        self._audit_logger = audit_logger

    async def list_goal_progress(self, viewer: User, account_id: str) -> GoalOverview:
        _require_member_access(viewer, account_id)
        account = await self._storage.get_account(account_id)
        if account is None:
            raise NotFoundError(f"Account not found: {account_id}")

        goals = await self._storage.list_goals(account_id)
        return GoalOverview(
            account=account,
            active=goal_progress(goals, account.balance),
            completed=[g for g in goals if g.is_completed],
        )

    async def create_goal(
        self,
        viewer: User,
        account_id: str,
        name: str,
        target_amount,
        target_date: Optional[date] = None,
        emoji: Optional[str] = None,
    ) -> SavingsGoal:
        """New goals go to the end of the priority list."""
        _require_member_access(viewer, account_id)
        goal = SavingsGoal(
            account_id=account_id,
            name=name,
            target_amount=target_amount,
            target_date=target_date,
            emoji=emoji or None,
        )
        stored = await self._storage.create_goal(goal)
        if self._audit_logger:
            await self._audit_logger.log_goal_changed(
                event_type=AuditEventType.GOAL_CREATED,
                goal_id=stored.id,
                goal_name=stored.name,
                actor=viewer.name,
                details={"account_id": account_id, "target_amount": str(stored.target_amount)},
            )
        return stored

    async def _owned_goal(self, viewer: User, goal_id: UUID) -> SavingsGoal:
        goal = await self._storage.get_goal(goal_id)
        if goal is None:
            raise NotFoundError(f"Goal not found: {goal_id}")
        _require_member_access(viewer, goal.account_id)
        return goal

    async def update_goal(self, viewer: User, goal_id: UUID, **changes) -> SavingsGoal:
        """
        Change any of name, target_amount, target_date, emoji, is_completed.

        Changes are validated like a new goal.
        """
        allowed = {"name", "target_amount", "target_date", "emoji", "is_completed"}
        unknown = set(changes) - allowed
        if unknown:
            raise ValueError(f"Cannot change: {', '.join(sorted(unknown))}")

        goal = await self._owned_goal(viewer, goal_id)
        updated = SavingsGoal.model_validate({**goal.model_dump(), **changes})
        stored = await self._storage.update_goal(updated)

        if self._audit_logger:
            await self._audit_logger.log_goal_changed(
                event_type=AuditEventType.GOAL_UPDATED,
                goal_id=stored.id,
                goal_name=stored.name,
                actor=viewer.name,
                details={k: str(v) for k, v in changes.items()},
            )
        return stored

    async def set_completed(self, viewer: User, goal_id: UUID, completed: bool = True) -> SavingsGoal:
        return await self.update_goal(viewer, goal_id, is_completed=completed)

    async def delete_goal(self, viewer: User, goal_id: UUID) -> None:
        goal = await self._owned_goal(viewer, goal_id)
        await self._storage.delete_goal(goal_id)
        if self._audit_logger:
            await self._audit_logger.log_goal_changed(
                event_type=AuditEventType.GOAL_DELETED,
                goal_id=goal.id,
                goal_name=goal.name,
                actor=viewer.name,
            )

    async def reorder_goals(self, viewer: User, account_id: str, goal_ids: list[UUID]) -> None:
        """
        Set a new priority order for an account's goals.

        Raises:
            ValueError: If a goal belongs to a different account or is listed twice
        """
        _require_member_access(viewer, account_id)
        if len(set(goal_ids)) != len(goal_ids):
            raise ValueError("A goal appears more than once")

        own_ids = {g.id for g in await self._storage.list_goals(account_id)}
        foreign = [str(g) for g in goal_ids if g not in own_ids]
        if foreign:
            raise ValueError(f"Goals not in account {account_id}: {', '.join(foreign)}")

        await self._storage.reorder_goals(goal_ids)
        if self._audit_logger:
            await self._audit_logger.log_goals_reordered(account_id, goal_ids, viewer.name)


class SettingsFlow:
    """Allowances, allowance day, PINs and avatars."""

    def __init__(
        self,
        storage: BankStorageInterface,
        audit_logger: Optional[AuditLogger] = None,
        avatar_service: Optional[CloudinaryAvatarService] = None,
        pin_length: Optional[int] = None,
    ):
        self._storage = storage
        self._audit_logger = audit_logger
        self._avatar_service = avatar_service
        self._pin_length = pin_length

    async def overview(self, viewer: User) -> SettingsOverview:
        _require_parent(viewer, "view bank settings")
        return SettingsOverview(
            settings=await self._storage.get_bank_settings(),
            children=await self._storage.list_accounts(),
        )

    async def update_allowance(self, viewer: User, account_id: str, amount) -> Account:
        _require_parent(viewer, "change allowances")
        request = AllowanceChangeRequest(amount=amount)
        account = await self._storage.update_allowance(account_id, request.amount)
        if self._audit_logger:
            await self._audit_logger.log_setting_changed(
                event_type=AuditEventType.ALLOWANCE_AMOUNT_CHANGED,
                entity_id=account_id,
                actor=viewer.name,
                details={"allowance": str(account.allowance)},
            )
        return account

    async def update_allowance_day(self, viewer: User, day: str) -> BankSettings:
        """
        Raises:
            ValueError: If day is not a weekday name
        """
        _require_parent(viewer, "change the allowance day")
        index = weekday_index(day)
        if index is None:
            raise ValueError(f"Not a day of the week: {day!r}")

        settings = await self._storage.update_allowance_day(DAYS_OF_WEEK[index])
        if self._audit_logger:
            await self._audit_logger.log_setting_changed(
                event_type=AuditEventType.ALLOWANCE_DAY_CHANGED,
                entity_id="settings",
                actor=viewer.name,
                details={"allowance_day": settings.allowance_day},
            )
        return settings

    async def change_pin(self, viewer: User, user_id: str, new_pin: str) -> None:
        _require_member_access(viewer, user_id)
        pin = validate_pin(new_pin, self._pin_length or get_settings().app.pin_length)
        await self._storage.update_pin_hash(user_id, hash_pin(pin))
        if self._audit_logger:
            await self._audit_logger.log_setting_changed(
                event_type=AuditEventType.PIN_CHANGED,
                entity_id=user_id,
                actor=viewer.name,
            )

    async def upload_avatar(self, viewer: User, user_id: str, image_bytes: bytes) -> str:
        """
        Replace a member's avatar.

        Returns:
            The new avatar URL

        Raises:
            AvatarError: Uploads not configured, bad image, or upload failed
        """
        _require_member_access(viewer, user_id)
        if self._avatar_service is None:
            raise AvatarError("Avatar uploads are not configured")
        if await self._storage.get_user(user_id) is None:
            raise NotFoundError(f"User not found: {user_id}")

        try:
            url = await self._avatar_service.upload_avatar(user_id, image_bytes)
        except AvatarUploadError as e:
            if self._audit_logger:
                await self._audit_logger.log_external_service_error(
                    service="cloudinary",
                    error_message=str(e),
                )
            raise

        await self._storage.update_avatar_url(user_id, url)
        if self._audit_logger:
            await self._audit_logger.log_setting_changed(
                event_type=AuditEventType.AVATAR_UPDATED,
                entity_id=user_id,
                actor=viewer.name,
                details={"avatar_url": url},
            )
        return url

    async def remove_avatar(self, viewer: User, user_id: str) -> None:
        """Forget the avatar URL; the member is shown with initials again."""
        _require_member_access(viewer, user_id)
        await self._storage.update_avatar_url(user_id, None)
        if self._audit_logger:
            await self._audit_logger.log_setting_changed(
                event_type=AuditEventType.AVATAR_REMOVED,
                entity_id=user_id,
                actor=viewer.name,
            )


# =============================================================================
# FACTORY
# =============================================================================

@dataclass
class AppComponents:
    """Everything the UI and the cron entry point need."""

    storage: BankStorageInterface
    audit_storage: AuditStorageInterface
    audit_logger: AuditLogger
    scheduler: AllowanceScheduler
    setup: SetupFlow
    login: LoginFlow
    ledger: LedgerFlow
    goals: GoalFlow
    settings: SettingsFlow


def create_app_components(use_storage: bool = True) -> AppComponents:
    """
    Factory function to create all application components.

    Args:
        use_storage: Whether to use the configured database.
                    Set to False for an in-memory bank (demos, tests).

    Returns:
        AppComponents with every flow wired to the same storage
    """
    settings = get_settings()

    if use_storage:
        db = settings.database
        engine = create_bank_engine(
            db.url,
            busy_timeout_seconds=db.busy_timeout_seconds,
            echo=db.echo,
        )
        storage = SQLBankStorage(engine)
        audit_storage = SQLAuditStorage(engine)
    else:
        storage = InMemoryBankStorage()
        audit_storage = InMemoryAuditStorage()

    audit_logger = AuditLogger(audit_storage)

    try:
        avatar_service = CloudinaryAvatarService()
    except ValidationError as e:
        # Cloudinary not configured - everything except avatar uploads works
        logger.warning("avatar_uploads_disabled", error=str(e))
        avatar_service = None

    scheduler = AllowanceScheduler(storage, audit_logger)

    return AppComponents(
        storage=storage,
        audit_storage=audit_storage,
        audit_logger=audit_logger,
        scheduler=scheduler,
        setup=SetupFlow(storage, audit_logger),
        login=LoginFlow(storage, scheduler, audit_logger),
        ledger=LedgerFlow(storage, audit_logger),
        goals=GoalFlow(storage, audit_logger),
        settings=SettingsFlow(storage, audit_logger, avatar_service),
    )
