"""
Tests for KidsBank

Test strategy:
1. Unit tests for individual components (models, allocator, scheduler)
2. Integration tests for flows (with in-memory and SQLite storage)
3. No real API calls in tests (use mocks)
"""

import pytest
from datetime import date, datetime
from decimal import Decimal
from uuid import uuid4

from pydantic import ValidationError

from kidsbank.models.ledger import (
    Account,
    BankSettings,
    FamilyMember,
    Role,
    SavingsGoal,
    Transaction,
    TransactionFilter,
    TransactionType,
    sunday_based_weekday,
    to_money,
    weekday_index,
)
from kidsbank.models.audit import (
    AuditEvent,
    AuditEventBuilder,
    AuditEventType,
    AuditSeverity,
)


class TestMoney:
    """Tests for money conversion."""

    def test_float_keeps_its_written_value(self):
        """10.10 must not become 10.09 through binary floating point."""
        assert to_money(10.10) == Decimal("10.10")
        assert str(to_money(10.1)) == "10.10"

    def test_rounds_half_up(self):
        assert to_money("0.005") == Decimal("0.01")
        assert to_money("2.675") == Decimal("2.68")
        assert to_money("-0.005") == Decimal("-0.01")

    def test_rejects_garbage(self):
        with pytest.raises(ValueError):
            to_money("six pounds")
        with pytest.raises(ValueError):
            to_money("NaN")
        with pytest.raises(ValueError):
            to_money("Infinity")


class TestWeekdays:
    """Tests for allowance weekday parsing."""

    @pytest.mark.parametrize("value,expected", [
        ("sunday", 0),
        ("Monday", 1),
        ("  SATURDAY ", 6),
        ("3", 3),
        (0, 0),
        (6, 6),
    ])
    def test_recognised_values(self, value, expected):
        assert weekday_index(value) == expected

    @pytest.mark.parametrize("value", ["funday", "7", "-1", "", None, 7, True, 2.0])
    def test_unrecognised_values(self, value):
        assert weekday_index(value) is None

    def test_sunday_is_zero(self):
        assert sunday_based_weekday(date(2024, 1, 7)) == 0
        assert sunday_based_weekday(date(2024, 1, 8)) == 1
        assert sunday_based_weekday(date(2024, 1, 13)) == 6

    def test_bank_settings_weekday(self):
        assert BankSettings().allowance_weekday == 0
        assert BankSettings(allowance_day="friday").allowance_weekday == 5
        assert BankSettings(allowance_day="funday").allowance_weekday is None


class TestLedgerModels:
    """Tests for account and transaction models."""

    def test_family_member_user_id(self):
        member = FamilyMember(name="  Sophie ", role=Role.CHILD, allowance="4")
        assert member.name == "Sophie"
        assert member.user_id == "sophie"
        assert member.allowance == Decimal("4.00")

    def test_account_rejects_negative_balance(self):
        """Test that a balance can never be negative."""
        with pytest.raises(ValueError):
            Account(id="mark", user_id="mark", user_name="Mark", balance=Decimal("-0.01"))

    def test_account_allows_non_positive_allowance(self):
        """A zero or negative allowance just means no allowance."""
        account = Account(id="mark", user_id="mark", user_name="Mark", allowance="-1")
        assert account.allowance == Decimal("-1.00")

    def test_transaction_is_frozen(self):
        txn = Transaction(
            account_id="mark",
            type=TransactionType.DEPOSIT,
            amount="5",
            balance_after="5",
            performed_by="Anna",
        )
        with pytest.raises(ValidationError):
            txn.amount = Decimal("500")

    def test_transaction_amount_is_quantized(self):
        txn = Transaction(
            account_id="mark",
            type=TransactionType.WITHDRAWAL,
            amount=-1.005,
            balance_after=3.999,
            performed_by="Anna",
        )
        assert txn.amount == Decimal("-1.01")
        assert txn.balance_after == Decimal("4.00")

    def test_filter_date_validation(self):
        """Test that date_to cannot be before date_from."""
        with pytest.raises(ValueError, match="date_to cannot be before date_from"):
            TransactionFilter(date_from=date(2024, 1, 10), date_to=date(2024, 1, 1))

    def test_filter_matches_whole_days(self):
        txn = Transaction(
            account_id="mark",
            type=TransactionType.ALLOWANCE,
            amount="6",
            balance_after="6",
            performed_by="System",
            created_at=datetime(2024, 1, 7, 23, 59, 59),
        )
        assert TransactionFilter(date_to=date(2024, 1, 7)).matches(txn)
        assert TransactionFilter(date_from=date(2024, 1, 7)).matches(txn)
        assert not TransactionFilter(date_from=date(2024, 1, 8)).matches(txn)
        assert not TransactionFilter(type=TransactionType.DEPOSIT).matches(txn)
        assert not TransactionFilter(account_id="sophie").matches(txn)


class TestSavingsGoal:
    """Tests for savings goal models."""

    def test_target_must_be_positive(self):
        with pytest.raises(ValueError):
            SavingsGoal(account_id="mark", name="Bike", target_amount=0)

    def test_name_required(self):
        with pytest.raises(ValueError):
            SavingsGoal(account_id="mark", name="   ", target_amount=10)

    def test_unordered_goals_sort_last(self):
        older = SavingsGoal(
            account_id="mark", name="Old", target_amount=5,
            created_at=datetime(2023, 1, 1),
        )
        second = SavingsGoal(account_id="mark", name="Second", target_amount=5, sort_order=2)
        first = SavingsGoal(account_id="mark", name="First", target_amount=5, sort_order=0)

        ordered = sorted([older, second, first], key=SavingsGoal.priority_key)
        assert [g.name for g in ordered] == ["First", "Second", "Old"]


class TestAuditModels:
    """Tests for audit-related models."""

    def test_audit_event_creation(self):
        """Test AuditEvent model creation."""
        event = AuditEvent(
            event_type=AuditEventType.DEPOSIT_RECORDED,
            description="Test deposit",
        )
        assert event.event_type == AuditEventType.DEPOSIT_RECORDED
        assert event.severity == AuditSeverity.INFO
        assert event.timestamp.tzinfo is not None

    def test_audit_event_to_log_dict(self):
        """Test conversion to log dictionary."""
        event = AuditEvent(
            event_type=AuditEventType.ALLOWANCE_PAID,
            description="Allowance paid",
            details={"amount": "6.00"},
        )
        log_dict = event.to_log_dict()
        assert "event_id" in log_dict
        assert log_dict["event_type"] == "allowance_paid"
        assert log_dict["details"]["amount"] == "6.00"

    def test_audit_event_builder_allowance_paid(self):
        """Test AuditEventBuilder.allowance_paid."""
        correlation_id = uuid4()

        event = AuditEventBuilder.allowance_paid(
            account_id="mark",
            amount="6.00",
            balance_after="16.10",
            allowance_date=date(2024, 1, 7),
            correlation_id=correlation_id,
        )

        assert event.event_type == AuditEventType.ALLOWANCE_PAID
        assert event.entity_id == "mark"
        assert event.correlation_id == correlation_id
        assert event.actor == "System"
        assert event.details["allowance_date"] == "2024-01-07"
        assert event.is_user_action is False

    def test_audit_event_builder_transaction_kind(self):
        """Withdrawals and deposits get their own event types."""
        withdrawal = AuditEventBuilder.transaction_recorded(
            account_id="mark", kind="withdrawal", amount="-2.00",
            balance_after="4.00", actor="Anna",
        )
        deposit = AuditEventBuilder.transaction_recorded(
            account_id="mark", kind="deposit", amount="2.00",
            balance_after="6.00", actor="Anna",
        )
        assert withdrawal.event_type == AuditEventType.WITHDRAWAL_RECORDED
        assert deposit.event_type == AuditEventType.DEPOSIT_RECORDED
        assert deposit.is_user_action is True

    def test_audit_event_builder_run_failed_is_error(self):
        event = AuditEventBuilder.allowance_run_failed(
            processed=2,
            error_message="database locked",
            correlation_id=uuid4(),
        )
        assert event.severity == AuditSeverity.ERROR
        assert event.details["processed_before_failure"] == 2


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
