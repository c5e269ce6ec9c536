"""
Data Models Package

This package contains all Pydantic models used in KidsBank.
All data flowing through the system must conform to these schemas.
"""

from kidsbank.models.ledger import (
    DAYS_OF_WEEK,
    Account,
    AllowancePayout,
    BankSettings,
    FamilyMember,
    Money,
    Role,
    SavingsGoal,
    Transaction,
    TransactionFilter,
    TransactionType,
    User,
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

__all__ = [
    # Ledger models
    "DAYS_OF_WEEK",
    "Account",
    "AllowancePayout",
    "BankSettings",
    "FamilyMember",
    "Money",
    "Role",
    "SavingsGoal",
    "Transaction",
    "TransactionFilter",
    "TransactionType",
    "User",
    "sunday_based_weekday",
    "to_money",
    "weekday_index",
    # Audit models
    "AuditEvent",
    "AuditEventBuilder",
    "AuditEventType",
    "AuditSeverity",
]
