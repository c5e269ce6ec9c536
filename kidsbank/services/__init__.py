"""Services package."""

from kidsbank.services.avatar import (
    AvatarError,
    AvatarUploadError,
    CloudinaryAvatarService,
    InvalidAvatarImageError,
)
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
    StorageConnectionError,
    StorageError,
    create_bank_engine,
)

__all__ = [
    # Avatar services
    "AvatarError",
    "AvatarUploadError",
    "CloudinaryAvatarService",
    "InvalidAvatarImageError",
    # Storage services
    "AuditStorageInterface",
    "BankStorageInterface",
    "DuplicateError",
    "InMemoryAuditStorage",
    "InMemoryBankStorage",
    "InsufficientFundsError",
    "NotFoundError",
    "SQLAuditStorage",
    "SQLBankStorage",
    "StorageConnectionError",
    "StorageError",
    "create_bank_engine",
]
