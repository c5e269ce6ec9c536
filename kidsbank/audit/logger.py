"""
Audit Logger

DESIGN DECISION: Every action that moves money or changes who can do
what is logged. This provides:
1. Complete traceability ("where did my 6 pounds go?")
2. Debugging capability for the allowance catch-up
3. Parents can review the history of their family's bank

The audit logger:
- Is async so flows can await it inline
- Gracefully handles failures (doesn't crash the app if logging fails)
- Supports correlation IDs to trace related events
"""

from datetime import date
from typing import Optional
from uuid import UUID, uuid4

import structlog

from kidsbank.models.audit import AuditEvent, AuditEventBuilder, AuditEventType
from kidsbank.services.storage import AuditStorageInterface


# Configure structlog for local logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer()
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)


class AuditLogger:
    """
    Central audit logging service.

    Logs events both to:
    1. Structured local log (for debugging)
    2. Audit storage (for persistence and parent visibility)
    """

    def __init__(
        self,
        storage: Optional[AuditStorageInterface] = None,
    ):
        """
        Initialize audit logger.

        Args:
            storage: Storage backend for persistence.
                    If None, only logs locally.
        """
        self._storage = storage
        self._logger = structlog.get_logger("kidsbank.audit")

    async def log(self, event: AuditEvent) -> bool:
        """
        Log an audit event.

        Always logs locally. Persists to storage if available.

        Returns True if storage write succeeded (or no storage configured).
        """
        log_dict = event.to_log_dict()

        if event.severity.value in ("error", "critical"):
            self._logger.error("audit_event", **log_dict)
        elif event.severity.value == "warning":
            self._logger.warning("audit_event", **log_dict)
        else:
            self._logger.info("audit_event", **log_dict)

        if self._storage:
            try:
                return await self._storage.append_event(event)
            except Exception as e:
                # Log failure but don't raise
                self._logger.error(
                    "audit_storage_failed",
                    error=str(e),
                    event_id=str(event.event_id),
                )
                return False

        return True

    async def log_setup_completed(self, member_names: list[str]) -> None:
        """Log family setup."""
        await self.log(AuditEventBuilder.setup_completed(member_names))

    async def log_login_succeeded(
        self,
        user_id: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log a successful PIN login."""
        await self.log(AuditEventBuilder.login_succeeded(user_id, correlation_id))

    async def log_login_failed(self, name: str, reason: str) -> None:
        """Log a failed PIN login."""
        await self.log(AuditEventBuilder.login_failed(name, reason))

    async def log_allowance_paid(
        self,
        account_id: str,
        amount: str,
        balance_after: str,
        allowance_date: date,
        correlation_id: UUID,
    ) -> None:
        """Log one allowance payment."""
        event = AuditEventBuilder.allowance_paid(
            account_id=account_id,
            amount=amount,
            balance_after=balance_after,
            allowance_date=allowance_date,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_allowance_run_completed(
        self,
        processed: int,
        dates: list[date],
        correlation_id: UUID,
    ) -> None:
        """Log the end of an allowance run that posted something."""
        event = AuditEventBuilder.allowance_run_completed(
            processed=processed,
            dates=dates,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_allowance_run_skipped(self, reason: str, correlation_id: UUID) -> None:
        """Log an allowance run that could not do anything."""
        await self.log(AuditEventBuilder.allowance_run_skipped(reason, correlation_id))

    async def log_allowance_run_failed(
        self,
        processed: int,
        error_message: str,
        correlation_id: UUID,
    ) -> None:
        """Log an allowance run that stopped on an error."""
        event = AuditEventBuilder.allowance_run_failed(
            processed=processed,
            error_message=error_message,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_transaction_recorded(
        self,
        account_id: str,
        kind: str,
        amount: str,
        balance_after: str,
        actor: str,
    ) -> None:
        """Log a deposit or withdrawal."""
        event = AuditEventBuilder.transaction_recorded(
            account_id=account_id,
            kind=kind,
            amount=amount,
            balance_after=balance_after,
            actor=actor,
        )
        await self.log(event)

    async def log_withdrawal_rejected(
        self,
        account_id: str,
        amount: str,
        balance: str,
        actor: str,
    ) -> None:
        """Log a withdrawal refused for lack of funds."""
        event = AuditEventBuilder.withdrawal_rejected(
            account_id=account_id,
            amount=amount,
            balance=balance,
            actor=actor,
        )
        await self.log(event)

    async def log_goal_changed(
        self,
        event_type: AuditEventType,
        goal_id: UUID,
        goal_name: str,
        actor: str,
        details: Optional[dict] = None,
    ) -> None:
        """Log a goal being created, updated or deleted."""
        event = AuditEventBuilder.goal_changed(
            event_type=event_type,
            goal_id=goal_id,
            goal_name=goal_name,
            actor=actor,
            details=details,
        )
        await self.log(event)

    async def log_goals_reordered(
        self,
        account_id: str,
        goal_ids: list[UUID],
        actor: str,
    ) -> None:
        """Log a new goal priority order."""
        await self.log(AuditEventBuilder.goals_reordered(account_id, goal_ids, actor))

    async def log_setting_changed(
        self,
        event_type: AuditEventType,
        entity_id: str,
        actor: str,
        details: Optional[dict] = None,
    ) -> None:
        """Log an allowance, PIN or avatar change."""
        event = AuditEventBuilder.setting_changed(
            event_type=event_type,
            entity_id=entity_id,
            actor=actor,
            details=details,
        )
        await self.log(event)

    async def log_error(
        self,
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log an error."""
        event = AuditEventBuilder.system_error(
            error_type=error_type,
            error_message=error_message,
            details=details,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_external_service_error(
        self,
        service: str,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log external service error."""
        event = AuditEventBuilder.external_service_error(
            service=service,
            error_message=error_message,
            correlation_id=correlation_id,
        )
        await self.log(event)


def create_correlation_id() -> UUID:
    """
    Create a new correlation ID for tracking related events.

    Use this at the start of a new action (e.g., an allowance run).
    Pass it through all subsequent operations.
    """
    return uuid4()
