"""
Storage contract tests.

Every test runs against both the in-memory and the SQLite implementation.
"""

import asyncio
from datetime import date, datetime
from decimal import Decimal
from uuid import uuid4

import pytest

from conftest import SUNDAY, family_records, seed_family
from kidsbank.allowance import AllowanceScheduler
from kidsbank.models.audit import AuditEventBuilder
from kidsbank.models.ledger import (
    AllowancePayout,
    BankSettings,
    Role,
    SavingsGoal,
    TransactionFilter,
    TransactionType,
)
from kidsbank.services.storage import (
    DuplicateError,
    InsufficientFundsError,
    NotFoundError,
    SQLAuditStorage,
    SQLBankStorage,
    create_bank_engine,
)
from kidsbank.services.storage.sql import shared_connection_lock


class TestSetupAndUsers:
    """Tests for setup and user records."""

    async def test_fresh_storage(self, empty_bank):
        assert await empty_bank.is_setup_complete() is False
        settings = await empty_bank.get_bank_settings()
        assert settings == BankSettings()
        assert await empty_bank.list_accounts() == []

    async def test_setup_creates_everything(self, any_bank):
        assert await any_bank.is_setup_complete() is True
        assert [u.id for u in await any_bank.list_users()] == ["anna", "mark", "sophie"]
        assert [u.id for u in await any_bank.list_users(Role.CHILD)] == ["mark", "sophie"]
        mark = await any_bank.get_account("mark")
        assert mark.balance == Decimal("0.00")
        assert mark.allowance == Decimal("6.00")

    async def test_setup_only_once(self, any_bank):
        users, accounts = family_records()
        with pytest.raises(DuplicateError):
            await any_bank.complete_setup(users, accounts, BankSettings(setup_complete=True))

    async def test_unknown_user(self, any_bank):
        assert await any_bank.get_user("nobody") is None
        with pytest.raises(NotFoundError):
            await any_bank.update_pin_hash("nobody", "hash")
        with pytest.raises(NotFoundError):
            await any_bank.update_avatar_url("nobody", None)

    async def test_avatar_url_set_and_cleared(self, any_bank):
        await any_bank.update_avatar_url("mark", "https://example.com/mark.jpg")
        assert (await any_bank.get_user("mark")).avatar_url == "https://example.com/mark.jpg"

        await any_bank.update_avatar_url("mark", None)
        assert (await any_bank.get_user("mark")).avatar_url is None

    async def test_update_pin_hash(self, any_bank):
        await any_bank.update_pin_hash("sophie", "new-hash")
        assert (await any_bank.get_user("sophie")).pin_hash == "new-hash"


class TestLedger:
    """Tests for deposits, withdrawals and history."""

    async def test_deposit_and_withdrawal(self, any_bank):
        deposit = await any_bank.record_transaction("mark", TransactionType.DEPOSIT, Decimal("10.10"), "Birthday", "Anna")
        withdrawal = await any_bank.record_transaction("mark", TransactionType.WITHDRAWAL, Decimal("2.55"), "Sweets", "Anna")

        assert deposit.amount == Decimal("10.10")
        assert withdrawal.amount == Decimal("-2.55")
        assert withdrawal.balance_after == Decimal("7.55")
        assert (await any_bank.get_account("mark")).balance == Decimal("7.55")

    async def test_overdraft_changes_nothing(self, any_bank):
        await any_bank.record_transaction("mark", TransactionType.DEPOSIT, Decimal("5"), "Gift", "Anna")

        with pytest.raises(InsufficientFundsError) as exc_info:
            await any_bank.record_transaction("mark", TransactionType.WITHDRAWAL, Decimal("5.01"), "Toy", "Anna")

        assert exc_info.value.balance == Decimal("5.00")
        assert (await any_bank.get_account("mark")).balance == Decimal("5.00")
        assert len(await any_bank.list_transactions(TransactionFilter(account_id="mark"))) == 1

    async def test_withdraw_everything(self, any_bank):
        await any_bank.record_transaction("mark", TransactionType.DEPOSIT, Decimal("5"), "Gift", "Anna")
        txn = await any_bank.record_transaction("mark", TransactionType.WITHDRAWAL, Decimal("5"), "Toy", "Anna")
        assert txn.balance_after == Decimal("0.00")

    async def test_unknown_account(self, any_bank):
        with pytest.raises(NotFoundError):
            await any_bank.record_transaction("nobody", TransactionType.DEPOSIT, Decimal("1"), "x", "Anna")
        with pytest.raises(NotFoundError):
            await any_bank.update_allowance("nobody", Decimal("1"))

    async def test_history_filters(self, any_bank):
        await any_bank.record_transaction(
            "mark", TransactionType.DEPOSIT, Decimal("1"), "Old", "Anna",
            created_at=datetime(2024, 1, 1, 9, 0),
        )
        await any_bank.record_transaction(
            "mark", TransactionType.DEPOSIT, Decimal("2"), "Late", "Anna",
            created_at=datetime(2024, 1, 5, 23, 59, 59),
        )
        await any_bank.record_transaction(
            "sophie", TransactionType.DEPOSIT, Decimal("3"), "Gift", "Anna",
            created_at=datetime(2024, 1, 3, 12, 0),
        )
        await any_bank.record_transaction(
            "mark", TransactionType.WITHDRAWAL, Decimal("1"), "Sweets", "Anna",
            created_at=datetime(2024, 1, 6, 8, 0),
        )

        everything = await any_bank.list_transactions(TransactionFilter())
        assert [t.comment for t in everything] == ["Sweets", "Late", "Gift", "Old"]

        marks = await any_bank.list_transactions(TransactionFilter(account_id="mark"))
        assert [t.comment for t in marks] == ["Sweets", "Late", "Old"]

        deposits = await any_bank.list_transactions(TransactionFilter(type=TransactionType.DEPOSIT))
        assert len(deposits) == 3

        window = await any_bank.list_transactions(
            TransactionFilter(date_from=date(2024, 1, 3), date_to=date(2024, 1, 5))
        )
        assert [t.comment for t in window] == ["Late", "Gift"]

        limited = await any_bank.list_transactions(TransactionFilter(limit=2))
        assert [t.comment for t in limited] == ["Sweets", "Late"]

    async def test_update_allowance(self, any_bank):
        account = await any_bank.update_allowance("sophie", Decimal("4.5"))
        assert account.allowance == Decimal("4.50")
        assert (await any_bank.get_account("sophie")).allowance == Decimal("4.50")


class TestAllowancePosting:
    """Tests for post_allowance_date."""

    async def test_posts_payouts_and_advances_date(self, any_bank):
        payouts = [
            AllowancePayout(account_id="mark", amount=Decimal("6")),
            AllowancePayout(account_id="sophie", amount=Decimal("4")),
        ]

        created = await any_bank.post_allowance_date(SUNDAY, payouts, "Weekly allowance", "System")

        assert [t.account_id for t in created] == ["mark", "sophie"]
        assert all(t.type == TransactionType.ALLOWANCE for t in created)
        assert all(t.created_at == datetime(2024, 1, 7, 0, 1) for t in created)
        assert (await any_bank.get_bank_settings()).last_allowance_date == SUNDAY
        assert (await any_bank.get_account("sophie")).balance == Decimal("4.00")

    async def test_same_date_posts_once(self, any_bank):
        payouts = [AllowancePayout(account_id="mark", amount=Decimal("6"))]

        await any_bank.post_allowance_date(SUNDAY, payouts, "Weekly allowance", "System")
        again = await any_bank.post_allowance_date(SUNDAY, payouts, "Weekly allowance", "System")
        earlier = await any_bank.post_allowance_date(date(2023, 12, 31), payouts, "Weekly allowance", "System")

        assert again is None
        assert earlier is None
        assert (await any_bank.get_account("mark")).balance == Decimal("6.00")

    async def test_missing_account_is_skipped(self, any_bank):
        payouts = [
            AllowancePayout(account_id="ghost", amount=Decimal("6")),
            AllowancePayout(account_id="mark", amount=Decimal("6")),
        ]
        created = await any_bank.post_allowance_date(SUNDAY, payouts, "Weekly allowance", "System")
        assert [t.account_id for t in created] == ["mark"]

    async def test_allowance_day_update(self, any_bank):
        settings = await any_bank.update_allowance_day("friday")
        assert settings.allowance_day == "friday"
        assert (await any_bank.get_bank_settings()).allowance_weekday == 5


class TestGoals:
    """Tests for goal storage and ordering."""

    async def test_new_goals_go_last(self, any_bank):
        bike = await any_bank.create_goal(SavingsGoal(account_id="mark", name="Bike", target_amount=100))
        game = await any_bank.create_goal(SavingsGoal(account_id="mark", name="Game", target_amount=50))
        book = await any_bank.create_goal(SavingsGoal(account_id="sophie", name="Book", target_amount=8))

        assert bike.sort_order == 1
        assert game.sort_order == 2
        assert book.sort_order == 1
        assert [g.name for g in await any_bank.list_goals("mark")] == ["Bike", "Game"]
        assert len(await any_bank.list_goals()) == 3

    async def test_goal_for_unknown_account(self, any_bank):
        with pytest.raises(NotFoundError):
            await any_bank.create_goal(SavingsGoal(account_id="ghost", name="Bike", target_amount=100))

    async def test_reorder(self, any_bank):
        bike = await any_bank.create_goal(SavingsGoal(account_id="mark", name="Bike", target_amount=100))
        game = await any_bank.create_goal(SavingsGoal(account_id="mark", name="Game", target_amount=50))

        await any_bank.reorder_goals([game.id, bike.id])

        goals = await any_bank.list_goals("mark")
        assert [(g.name, g.sort_order) for g in goals] == [("Game", 0), ("Bike", 1)]

    async def test_reorder_with_unknown_goal_changes_nothing(self, any_bank):
        bike = await any_bank.create_goal(SavingsGoal(account_id="mark", name="Bike", target_amount=100))
        game = await any_bank.create_goal(SavingsGoal(account_id="mark", name="Game", target_amount=50))

        with pytest.raises(NotFoundError):
            await any_bank.reorder_goals([game.id, uuid4(), bike.id])

        assert [g.name for g in await any_bank.list_goals("mark")] == ["Bike", "Game"]

    async def test_unordered_goals_listed_last(self, any_bank):
        bike = await any_bank.create_goal(SavingsGoal(account_id="mark", name="Bike", target_amount=100))
        await any_bank.create_goal(SavingsGoal(account_id="mark", name="Game", target_amount=50))

        await any_bank.update_goal(bike.model_copy(update={"sort_order": None}))

        assert [g.name for g in await any_bank.list_goals("mark")] == ["Game", "Bike"]

    async def test_update_and_delete(self, any_bank):
        bike = await any_bank.create_goal(SavingsGoal(account_id="mark", name="Bike", target_amount=100))

        await any_bank.update_goal(bike.model_copy(update={"name": "Red bike", "is_completed": True}))
        stored = await any_bank.get_goal(bike.id)
        assert stored.name == "Red bike"
        assert stored.is_completed is True

        assert await any_bank.delete_goal(bike.id) is True
        assert await any_bank.delete_goal(bike.id) is False
        assert await any_bank.get_goal(bike.id) is None

    async def test_update_unknown_goal(self, any_bank):
        with pytest.raises(NotFoundError):
            await any_bank.update_goal(SavingsGoal(account_id="mark", name="Bike", target_amount=100))


class TestAuditStorage:
    """Tests for audit storage."""

    async def test_append_and_read_newest_first(self, any_audit_storage):
        first = AuditEventBuilder.login_failed("Mark", "wrong PIN")
        second = AuditEventBuilder.setup_completed(["Anna", "Mark"])
        second = second.model_copy(update={"timestamp": first.timestamp.replace(year=first.timestamp.year + 1)})

        assert await any_audit_storage.append_event(first) is True
        assert await any_audit_storage.append_event(second) is True

        events = await any_audit_storage.get_recent_events(limit=10)
        assert [e.event_id for e in events] == [second.event_id, first.event_id]
        assert events[1].details == {"reason": "wrong PIN"}

        assert len(await any_audit_storage.get_recent_events(limit=1)) == 1


class TestSQLStorage:
    """SQLite-specific behaviour."""

    async def test_data_survives_a_new_storage_object(self, sqlite_engine):
        storage = await seed_family(SQLBankStorage(sqlite_engine))
        await storage.record_transaction("mark", TransactionType.DEPOSIT, Decimal("3.33"), "Gift", "Anna")

        reopened = SQLBankStorage(sqlite_engine, create_schema=False)

        assert (await reopened.get_account("mark")).balance == Decimal("3.33")
        assert await reopened.is_setup_complete() is True

    async def test_concurrent_schedulers_never_double_pay(self, sqlite_engine):
        storage = await seed_family(SQLBankStorage(sqlite_engine), last_allowance_date=date(2023, 12, 16))
        first = AllowanceScheduler(storage, first_run_lookback_days=6, timeout_seconds=30)
        second = AllowanceScheduler(
            SQLBankStorage(sqlite_engine, create_schema=False),
            first_run_lookback_days=6,
            timeout_seconds=30,
        )

        results = await asyncio.gather(first.run(today=SUNDAY), second.run(today=SUNDAY))

        assert sum(r.processed for r in results) == 8
        assert (await storage.get_account("mark")).balance == Decimal("24.00")
        allowances = await storage.list_transactions(
            TransactionFilter(type=TransactionType.ALLOWANCE, limit=100)
        )
        assert len(allowances) == 8

    async def test_in_memory_database_never_double_pays(self):
        engine = create_bank_engine("sqlite:///:memory:")
        try:
            storage = await seed_family(SQLBankStorage(engine), last_allowance_date=date(2023, 12, 16))
            schedulers = [
                AllowanceScheduler(
                    SQLBankStorage(engine, create_schema=False),
                    first_run_lookback_days=6,
                    timeout_seconds=30,
                )
                for _ in range(4)
            ]

            results = await asyncio.gather(*(s.run(today=SUNDAY) for s in schedulers))

            assert sum(r.processed for r in results) == 8
            posted = sorted(d for r in results for d in r.dates)
            assert posted == [date(2023, 12, 17), date(2023, 12, 24), date(2023, 12, 31), SUNDAY]

            allowances = await storage.list_transactions(
                TransactionFilter(type=TransactionType.ALLOWANCE, limit=100)
            )
            assert len(allowances) == 8
            assert (await storage.get_account("mark")).balance == Decimal("24.00")
            assert (await storage.get_account("sophie")).balance == Decimal("16.00")
        finally:
            engine.dispose()

    def test_shared_connection_lock(self, sqlite_engine):
        memory_engine = create_bank_engine("sqlite:///:memory:")
        try:
            assert shared_connection_lock(memory_engine) is not None
            assert shared_connection_lock(memory_engine) is shared_connection_lock(memory_engine)
            assert shared_connection_lock(sqlite_engine) is None
        finally:
            memory_engine.dispose()

    async def test_audit_shares_the_database(self, sqlite_engine):
        audit = SQLAuditStorage(sqlite_engine)
        await audit.append_event(AuditEventBuilder.setup_completed(["Anna"]))
        assert len(await SQLAuditStorage(sqlite_engine, create_schema=False).get_recent_events()) == 1
