"""
Shared fixtures.

The standard test family is Anna (parent), Mark (child, 6.00 a week)
and Sophie (child, 4.00 a week). Allowances are paid on Sundays;
2024-01-07 is a Sunday.
"""

from datetime import date
from decimal import Decimal
from typing import Optional

import pytest

from kidsbank.audit import AuditLogger
from kidsbank.auth import hash_pin
from kidsbank.models.ledger import Account, BankSettings, Role, User
from kidsbank.services.storage import (
    InMemoryAuditStorage,
    InMemoryBankStorage,
    SQLAuditStorage,
    SQLBankStorage,
    create_bank_engine,
)


SUNDAY = date(2024, 1, 7)

PINS = {"anna": "1234", "mark": "1111", "sophie": "2222"}

# PIN hashes are slow to compute; build them once per session
_PIN_HASHES = {user_id: hash_pin(pin) for user_id, pin in PINS.items()}


def family_records() -> tuple[list[User], list[Account]]:
    users = [
        User(id="anna", name="Anna", role=Role.PARENT, pin_hash=_PIN_HASHES["anna"]),
        User(id="mark", name="Mark", role=Role.CHILD, pin_hash=_PIN_HASHES["mark"]),
        User(id="sophie", name="Sophie", role=Role.CHILD, pin_hash=_PIN_HASHES["sophie"]),
    ]
    accounts = [
        Account(id="mark", user_id="mark", user_name="Mark", allowance=Decimal("6.00")),
        Account(id="sophie", user_id="sophie", user_name="Sophie", allowance=Decimal("4.00")),
    ]
    return users, accounts


async def seed_family(
    storage,
    allowance_day: str = "sunday",
    last_allowance_date: Optional[date] = None,
):
    users, accounts = family_records()
    await storage.complete_setup(
        users=users,
        accounts=accounts,
        settings=BankSettings(
            setup_complete=True,
            allowance_day=allowance_day,
            last_allowance_date=last_allowance_date,
        ),
    )
    return storage


@pytest.fixture
def audit_storage():
    return InMemoryAuditStorage()


@pytest.fixture
def audit_logger(audit_storage):
    return AuditLogger(audit_storage)


@pytest.fixture
async def bank():
    """Seeded in-memory bank, never paid an allowance."""
    return await seed_family(InMemoryBankStorage())


@pytest.fixture
def sqlite_engine(tmp_path):
    engine = create_bank_engine(f"sqlite:///{tmp_path / 'bank.db'}", busy_timeout_seconds=5)
    yield engine
    engine.dispose()


@pytest.fixture(params=["memory", "sqlite"])
def empty_bank(request, sqlite_engine):
    """Unseeded bank storage, once per backend."""
    if request.param == "memory":
        return InMemoryBankStorage()
    return SQLBankStorage(sqlite_engine)


@pytest.fixture
async def any_bank(empty_bank):
    """Seeded bank storage, once per backend."""
    return await seed_family(empty_bank)


@pytest.fixture(params=["memory", "sqlite"])
def any_audit_storage(request, sqlite_engine):
    if request.param == "memory":
        return InMemoryAuditStorage()
    return SQLAuditStorage(sqlite_engine)


@pytest.fixture
def parent() -> User:
    return family_records()[0][0]


@pytest.fixture
def mark() -> User:
    return family_records()[0][1]


@pytest.fixture
def sophie() -> User:
    return family_records()[0][2]
