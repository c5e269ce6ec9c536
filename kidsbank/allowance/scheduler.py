"""
Allowance Scheduler

Pays the weekly allowances that fell due while nobody had the app open.

Every run looks at the dates between the last fully posted allowance date
and today, picks the ones that fall on the configured weekday, and posts
each date as its own unit of work (all children's payments plus the
date-advance). This gives us:
1. Idempotence - a run with nothing new to pay does nothing
2. Resumability - a run that dies half way restarts after the last
   committed date, never before it
3. No double pay - two runs racing for the same date are settled by the
   storage, which re-checks the last posted date inside the unit

DESIGN DECISION: On the very first run we only look back 6 days. The
window [today - 6, today] holds exactly one of each weekday, so a new
family gets at most one allowance instead of a scan of all history.
"""

import asyncio
from datetime import date, timedelta
from typing import Callable, Optional
from uuid import UUID

import structlog
from pydantic import BaseModel, Field

from kidsbank.audit import AuditLogger, create_correlation_id
from kidsbank.config import get_settings
from kidsbank.models.ledger import AllowancePayout, Transaction, sunday_based_weekday
from kidsbank.services.storage import BankStorageInterface, StorageError


logger = structlog.get_logger(__name__)

ALLOWANCE_COMMENT = "Weekly allowance"
SYSTEM_ACTOR = "System"


class AllowanceProcessingError(Exception):
    """
    An allowance run stopped before catching up.

    Dates posted before the failure stay posted; running again later
    continues from there.
    """

    retryable = True

    def __init__(self, message: str, processed: int = 0, last_posted_date: Optional[date] = None):
        self.processed = processed
        self.last_posted_date = last_posted_date
        super().__init__(message)


class AllowanceTimeoutError(AllowanceProcessingError):
    """An allowance run took longer than its timeout."""
    pass


class AllowanceRunResult(BaseModel):
    """What one allowance run did."""

    processed: int = Field(
        default=0,
        ge=0,
        description="Number of allowance transactions created"
    )
    dates: list[date] = Field(
        default_factory=list,
        description="Allowance dates posted by this run, oldest first"
    )


def missed_allowance_dates(
    today: date,
    weekday: int,
    last_processed: Optional[date],
    first_run_lookback_days: int = 6,
) -> list[date]:
    """
    Allowance dates due since the last run, oldest first.

    Args:
        today: The current date (inclusive upper bound)
        weekday: Allowance weekday, 0 = Sunday .. 6 = Saturday
        last_processed: Last fully posted allowance date, None if never run
        first_run_lookback_days: How far back to look when never run

    Returns:
        Every date in (last_processed, today] falling on the weekday, or in
        [today - first_run_lookback_days, today] when never run
    """
    if last_processed is not None:
        start = last_processed + timedelta(days=1)
    else:
        start = today - timedelta(days=first_run_lookback_days)

    offset = (weekday - sunday_based_weekday(start)) % 7
    current = start + timedelta(days=offset)

    dates = []
    while current <= today:
        dates.append(current)
        current += timedelta(days=7)
    return dates


class _RunProgress:
    def __init__(self):
        self.processed = 0
        self.dates: list[date] = []
        # The date being posted and the task posting it
        self.in_flight: Optional[tuple[date, asyncio.Future]] = None
        # Posted transactions whose allowance_paid event is not written yet
        self.unaudited: list[tuple[date, Transaction]] = []

    @property
    def last_posted_date(self) -> Optional[date]:
        return self.dates[-1] if self.dates else None

    def record(self, allowance_date: date, created: list[Transaction]) -> None:
        self.processed += len(created)
        self.dates.append(allowance_date)
        self.unaudited.extend((allowance_date, txn) for txn in created)

    def result(self) -> AllowanceRunResult:
        return AllowanceRunResult(processed=self.processed, dates=list(self.dates))


class AllowanceScheduler:
    """
    Catches up on missed weekly allowances.

    Safe to call on every login and from a periodic job.
    """

    def __init__(
        self,
        storage: BankStorageInterface,
        audit_logger: Optional[AuditLogger] = None,
        first_run_lookback_days: Optional[int] = None,
        timeout_seconds: Optional[float] = None,
        clock: Callable[[], date] = date.today,
    ):
        app_settings = None
        if first_run_lookback_days is None or timeout_seconds is None:
            app_settings = get_settings().app

        self._storage = storage
        self._audit_logger = audit_logger
        self._lookback_days = (
            first_run_lookback_days
            if first_run_lookback_days is not None
            else app_settings.allowance_first_run_lookback_days
        )
        self._timeout_seconds = (
            timeout_seconds
            if timeout_seconds is not None
            else app_settings.operation_timeout_seconds
        )
        self._clock = clock

    async def run(
        self,
        today: Optional[date] = None,
        timeout: Optional[float] = None,
        correlation_id: Optional[UUID] = None,
    ) -> AllowanceRunResult:
        """
        Post every missed allowance up to and including today.

        Args:
            today: Override the current date (defaults to the clock)
            timeout: Seconds before the run is abandoned (defaults to the
                     configured operation timeout)
            correlation_id: Ties the run's audit events together

        Returns:
            AllowanceRunResult; processed is 0 when nothing was due

        Raises:
            AllowanceProcessingError: Storage failed; retry later
            AllowanceTimeoutError: The run did not finish in time; retry later.
                No further dates are started once the deadline passes. The
                date being posted at that moment is waited for, and counted
                in `processed` if it committed.
        """
        today = today or self._clock()
        timeout = timeout if timeout is not None else self._timeout_seconds
        correlation_id = correlation_id or create_correlation_id()
        progress = _RunProgress()

        try:
            return await asyncio.wait_for(
                self._catch_up(today, progress, correlation_id),
                timeout=timeout,
            )
        except asyncio.TimeoutError as e:
            message = f"Allowance run timed out after {timeout}s"
            await self._settle_in_flight(progress, correlation_id)
            await self._report_failure(message, progress, correlation_id)
            raise AllowanceTimeoutError(
                message,
                processed=progress.processed,
                last_posted_date=progress.last_posted_date,
            ) from e
        except StorageError as e:
            message = f"Allowance run failed: {e}"
            await self._report_failure(message, progress, correlation_id)
            raise AllowanceProcessingError(
                message,
                processed=progress.processed,
                last_posted_date=progress.last_posted_date,
            ) from e

    async def _catch_up(
        self,
        today: date,
        progress: _RunProgress,
        correlation_id: UUID,
    ) -> AllowanceRunResult:
        settings = await self._storage.get_bank_settings()

        weekday = settings.allowance_weekday
        if weekday is None:
            logger.warning(
                "allowance_day_invalid",
                allowance_day=settings.allowance_day,
            )
            if self._audit_logger:
                await self._audit_logger.log_allowance_run_skipped(
                    reason=f"unrecognised allowance day {settings.allowance_day!r}",
                    correlation_id=correlation_id,
                )
            return progress.result()

        dates = missed_allowance_dates(
            today=today,
            weekday=weekday,
            last_processed=settings.last_allowance_date,
            first_run_lookback_days=self._lookback_days,
        )
        if not dates:
            return progress.result()

        accounts = await self._storage.list_accounts()
        payouts = [
            AllowancePayout(account_id=account.id, amount=account.allowance)
            for account in sorted(accounts, key=lambda a: a.id)
            if account.allowance > 0
        ]

        for allowance_date in dates:
            # A timeout must not leave a date half-known: the unit runs as its
            # own task and the timeout handler waits for its outcome
            unit = asyncio.ensure_future(self._storage.post_allowance_date(
                on_date=allowance_date,
                payouts=payouts,
                comment=ALLOWANCE_COMMENT,
                performed_by=SYSTEM_ACTOR,
            ))
            progress.in_flight = (allowance_date, unit)
            created = await asyncio.shield(unit)
            progress.in_flight = None

            if created is None:
                logger.info("allowance_date_already_posted", allowance_date=allowance_date.isoformat())
                continue

            progress.record(allowance_date, created)
            await self._flush_audit(progress, correlation_id)

        if progress.dates:
            logger.info(
                "allowance_run_completed",
                processed=progress.processed,
                dates=[d.isoformat() for d in progress.dates],
            )
            if self._audit_logger:
                await self._audit_logger.log_allowance_run_completed(
                    processed=progress.processed,
                    dates=progress.dates,
                    correlation_id=correlation_id,
                )

        return progress.result()

    async def _flush_audit(self, progress: _RunProgress, correlation_id: UUID) -> None:
        while progress.unaudited:
            allowance_date, txn = progress.unaudited[0]
            if self._audit_logger:
                await self._audit_logger.log_allowance_paid(
                    account_id=txn.account_id,
                    amount=str(txn.amount),
                    balance_after=str(txn.balance_after),
                    allowance_date=allowance_date,
                    correlation_id=correlation_id,
                )
            progress.unaudited.pop(0)

    async def _settle_in_flight(self, progress: _RunProgress, correlation_id: UUID) -> None:
        """
        Wait for the date that was being posted when the run timed out.

        A storage unit cannot be interrupted half way, so it either commits
        or it does not. Whatever it did is recorded before the timeout is
        reported, and paid allowances still get their audit events.
        """
        if progress.in_flight is not None:
            allowance_date, unit = progress.in_flight
            progress.in_flight = None
            await asyncio.wait({unit})

            error = None if unit.cancelled() else unit.exception()
            if error is not None:
                logger.warning(
                    "allowance_unit_failed_after_timeout",
                    allowance_date=allowance_date.isoformat(),
                    error=str(error),
                )
            elif not unit.cancelled() and unit.result() is not None:
                logger.warning(
                    "allowance_date_posted_after_timeout",
                    allowance_date=allowance_date.isoformat(),
                )
                progress.record(allowance_date, unit.result())

        await self._flush_audit(progress, correlation_id)

    async def _report_failure(
        self,
        message: str,
        progress: _RunProgress,
        correlation_id: UUID,
    ) -> None:
        logger.error(
            "allowance_run_failed",
            error=message,
            processed=progress.processed,
            last_posted_date=progress.last_posted_date.isoformat() if progress.last_posted_date else None,
        )
        if self._audit_logger:
            await self._audit_logger.log_allowance_run_failed(
                processed=progress.processed,
                error_message=message,
                correlation_id=correlation_id,
            )
