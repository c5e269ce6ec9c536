"""
Storage Services Package

Provides abstract interfaces and concrete implementations for data storage.
SQLAlchemy (SQLite by default) is the durable backend; the in-memory
implementation backs the tests.
"""

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
from kidsbank.services.storage.memory import (
    InMemoryAuditStorage,
    InMemoryBankStorage,
)
from kidsbank.services.storage.sql import (
    SQLAuditStorage,
    SQLBankStorage,
    create_bank_engine,
)

__all__ = [
    # Interfaces
    "ALLOWANCE_POSTED_AT",
    "AuditStorageInterface",
    "BankStorageInterface",
    # Exceptions
    "DuplicateError",
    "InsufficientFundsError",
    "NotFoundError",
    "StorageConnectionError",
    "StorageError",
    # In-memory implementation
    "InMemoryAuditStorage",
    "InMemoryBankStorage",
    # SQL implementation
    "SQLAuditStorage",
    "SQLBankStorage",
    "create_bank_engine",
]
