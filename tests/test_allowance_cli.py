"""
Tests for the cron entry point (python -m kidsbank.allowance).

The entry point runs its own event loop, so these tests are synchronous.
"""

import asyncio
import json
from datetime import date

import pytest

from conftest import SUNDAY, seed_family
from kidsbank.allowance import AllowanceProcessingError, AllowanceScheduler
from kidsbank.allowance import __main__ as cron
from kidsbank.config import get_settings
from kidsbank.orchestrator import create_app_components


@pytest.fixture(autouse=True)
def fresh_settings(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def components(monkeypatch):
    """In-memory components with a family last paid on 2023-12-24."""
    components = create_app_components(use_storage=False)
    asyncio.run(seed_family(components.storage, last_allowance_date=date(2023, 12, 24)))
    components.scheduler = AllowanceScheduler(
        components.storage,
        components.audit_logger,
        first_run_lookback_days=6,
        timeout_seconds=5,
        clock=lambda: SUNDAY,
    )
    monkeypatch.setattr(cron, "create_app_components", lambda: components)
    return components


class BrokenScheduler:
    async def run(self, today=None, timeout=None, correlation_id=None):
        raise AllowanceProcessingError("Allowance run failed: database is locked")


class TestAllowanceCommand:
    """Output and exit codes."""

    def test_prints_result_and_exits_zero(self, components, capsys):
        assert cron.main() == 0

        output = json.loads(capsys.readouterr().out)
        assert output == {"processed": 4, "dates": ["2023-12-31", "2024-01-07"]}

    def test_second_run_has_nothing_to_do(self, components, capsys):
        cron.main()
        capsys.readouterr()

        assert cron.main() == 0
        assert json.loads(capsys.readouterr().out) == {"processed": 0, "dates": []}

    def test_failure_exits_one(self, components, capsys):
        components.scheduler = BrokenScheduler()

        assert cron.main() == 1

        captured = capsys.readouterr()
        assert captured.out == ""
        assert "database is locked" in captured.err
