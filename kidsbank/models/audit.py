"""
Audit Models for KidsBank

Every significant action in the system is logged for audit purposes.
Parents can see who moved money, when allowances were paid and why a
withdrawal was refused.

DESIGN DECISION: Audit logs are append-only. We never delete or modify them.
"""

from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuditEventType(str, Enum):
    """Types of events we audit."""
    # Setup and login
    SETUP_COMPLETED = "setup_completed"
    LOGIN_SUCCEEDED = "login_succeeded"
    LOGIN_FAILED = "login_failed"

    # Allowance processing
    ALLOWANCE_PAID = "allowance_paid"
    ALLOWANCE_RUN_COMPLETED = "allowance_run_completed"
    ALLOWANCE_RUN_SKIPPED = "allowance_run_skipped"
    ALLOWANCE_RUN_FAILED = "allowance_run_failed"

    # Ledger
    DEPOSIT_RECORDED = "deposit_recorded"
    WITHDRAWAL_RECORDED = "withdrawal_recorded"
    WITHDRAWAL_REJECTED = "withdrawal_rejected"

    # Savings goals
    GOAL_CREATED = "goal_created"
    GOAL_UPDATED = "goal_updated"
    GOAL_DELETED = "goal_deleted"
    GOALS_REORDERED = "goals_reordered"

    # Settings
    ALLOWANCE_AMOUNT_CHANGED = "allowance_amount_changed"
    ALLOWANCE_DAY_CHANGED = "allowance_day_changed"
    PIN_CHANGED = "pin_changed"
    AVATAR_UPDATED = "avatar_updated"
    AVATAR_REMOVED = "avatar_removed"

    # System events
    SYSTEM_ERROR = "system_error"
    EXTERNAL_SERVICE_ERROR = "external_service_error"


class AuditSeverity(str, Enum):
    """Severity level for audit events."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AuditEvent(BaseModel):
    """
    A single audit event.

    This is the core unit of our audit trail.
    Every significant action creates one of these.
    """

    # Identity
    event_id: UUID = Field(
        default_factory=uuid4,
        description="Unique event identifier"
    )
    timestamp: datetime = Field(
        default_factory=_utcnow,
        description="When the event occurred (UTC)"
    )

    # Event classification
    event_type: AuditEventType = Field(
        ...,
        description="Type of event"
    )
    severity: AuditSeverity = Field(
        default=AuditSeverity.INFO,
        description="Event severity"
    )

    # Context - what entity is this about?
    entity_type: Optional[str] = Field(
        default=None,
        description="Type of entity (e.g., 'account', 'goal', 'user')"
    )
    entity_id: Optional[str] = Field(
        default=None,
        description="ID of the entity this event relates to"
    )

    # Correlation - for tracking related events
    correlation_id: Optional[UUID] = Field(
        default=None,
        description="ID to correlate related events (e.g., one allowance run)"
    )

    description: str = Field(
        ...,
        max_length=500,
        description="Human-readable description of what happened"
    )
    details: dict[str, Any] = Field(
        default_factory=dict,
        description="Additional event-specific data"
    )

    # Error information (if applicable)
    error_code: Optional[str] = None
    error_message: Optional[str] = None

    # Who did it
    actor: Optional[str] = Field(
        default=None,
        description="Name of the family member, or 'System'"
    )
    is_user_action: bool = Field(
        default=False,
        description="Was this triggered by a user action?"
    )

    def to_log_dict(self) -> dict:
        """
        Convert to a dictionary suitable for structured logging.
        """
        return {
            "event_id": str(self.event_id),
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "severity": self.severity.value,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "correlation_id": str(self.correlation_id) if self.correlation_id else None,
            "description": self.description,
            "details": self.details,
            "error_code": self.error_code,
            "error_message": self.error_message,
            "actor": self.actor,
            "is_user_action": self.is_user_action,
        }


class AuditEventBuilder:
    """
    Helper class to build audit events with common patterns.

    Usage:
        event = AuditEventBuilder.allowance_paid(account_id, "6.00", "16.00", day, run_id)
        event = AuditEventBuilder.login_failed("mark", "wrong_pin")
    """

    @staticmethod
    def setup_completed(member_names: list[str]) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SETUP_COMPLETED,
            description=f"Setup completed for {len(member_names)} family members",
            details={"members": member_names},
            is_user_action=True,
        )

    @staticmethod
    def login_succeeded(user_id: str, correlation_id: Optional[UUID] = None) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.LOGIN_SUCCEEDED,
            entity_type="user",
            entity_id=user_id,
            correlation_id=correlation_id,
            description=f"{user_id} logged in",
            actor=user_id,
            is_user_action=True,
        )

    @staticmethod
    def login_failed(name: str, reason: str) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.LOGIN_FAILED,
            severity=AuditSeverity.WARNING,
            entity_type="user",
            entity_id=name.lower(),
            description=f"Login failed for {name}: {reason}",
            details={"reason": reason},
            is_user_action=True,
        )

    @staticmethod
    def allowance_paid(
        account_id: str,
        amount: str,
        balance_after: str,
        allowance_date: date,
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.ALLOWANCE_PAID,
            entity_type="account",
            entity_id=account_id,
            correlation_id=correlation_id,
            description=f"Weekly allowance of {amount} paid for {allowance_date.isoformat()}",
            details={
                "amount": amount,
                "balance_after": balance_after,
                "allowance_date": allowance_date.isoformat(),
            },
            actor="System",
        )

    @staticmethod
    def allowance_run_completed(
        processed: int,
        dates: list[date],
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.ALLOWANCE_RUN_COMPLETED,
            correlation_id=correlation_id,
            description=f"Allowance run posted {processed} payments over {len(dates)} dates",
            details={
                "processed": processed,
                "dates": [d.isoformat() for d in dates],
            },
            actor="System",
        )

    @staticmethod
    def allowance_run_skipped(reason: str, correlation_id: UUID) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.ALLOWANCE_RUN_SKIPPED,
            severity=AuditSeverity.WARNING,
            correlation_id=correlation_id,
            description=f"Allowance run skipped: {reason}",
            details={"reason": reason},
            actor="System",
        )

    @staticmethod
    def allowance_run_failed(
        processed: int,
        error_message: str,
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.ALLOWANCE_RUN_FAILED,
            severity=AuditSeverity.ERROR,
            correlation_id=correlation_id,
            description=f"Allowance run failed after {processed} payments",
            error_message=error_message,
            details={"processed_before_failure": processed},
            actor="System",
        )

    @staticmethod
    def transaction_recorded(
        account_id: str,
        kind: str,
        amount: str,
        balance_after: str,
        actor: str,
    ) -> AuditEvent:
        event_type = (
            AuditEventType.WITHDRAWAL_RECORDED
            if kind == "withdrawal"
            else AuditEventType.DEPOSIT_RECORDED
        )
        return AuditEvent(
            event_type=event_type,
            entity_type="account",
            entity_id=account_id,
            description=f"{kind.capitalize()} of {amount} by {actor}",
            details={
                "amount": amount,
                "balance_after": balance_after,
            },
            actor=actor,
            is_user_action=True,
        )

    @staticmethod
    def withdrawal_rejected(
        account_id: str,
        amount: str,
        balance: str,
        actor: str,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.WITHDRAWAL_REJECTED,
            severity=AuditSeverity.WARNING,
            entity_type="account",
            entity_id=account_id,
            description=f"Withdrawal of {amount} rejected: insufficient balance",
            details={
                "amount": amount,
                "balance": balance,
            },
            actor=actor,
            is_user_action=True,
        )

    @staticmethod
    def goal_changed(
        event_type: AuditEventType,
        goal_id: UUID,
        goal_name: str,
        actor: str,
        details: Optional[dict] = None,
    ) -> AuditEvent:
        verb = event_type.value.split("_", 1)[1]
        return AuditEvent(
            event_type=event_type,
            entity_type="goal",
            entity_id=str(goal_id),
            description=f"Goal '{goal_name}' {verb}",
            details=details or {},
            actor=actor,
            is_user_action=True,
        )

    @staticmethod
    def goals_reordered(account_id: str, goal_ids: list[UUID], actor: str) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.GOALS_REORDERED,
            entity_type="account",
            entity_id=account_id,
            description=f"{len(goal_ids)} goals reordered",
            details={"order": [str(g) for g in goal_ids]},
            actor=actor,
            is_user_action=True,
        )

    @staticmethod
    def setting_changed(
        event_type: AuditEventType,
        entity_id: str,
        actor: str,
        details: Optional[dict] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=event_type,
            entity_type="user" if event_type != AuditEventType.ALLOWANCE_DAY_CHANGED else "settings",
            entity_id=entity_id,
            description=f"{event_type.value.replace('_', ' ').capitalize()} by {actor}",
            details=details or {},
            actor=actor,
            is_user_action=True,
        )

    @staticmethod
    def system_error(
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SYSTEM_ERROR,
            severity=AuditSeverity.ERROR,
            description=f"System error: {error_type}",
            error_message=error_message,
            details=details or {},
            correlation_id=correlation_id,
        )

    @staticmethod
    def external_service_error(
        service: str,
        error_message: str,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.EXTERNAL_SERVICE_ERROR,
            severity=AuditSeverity.ERROR,
            description=f"External service error: {service}",
            error_message=error_message,
            details={
                "service": service,
            },
            correlation_id=correlation_id,
        )
