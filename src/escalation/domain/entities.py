"""
Escalation Domain Entities
==========================

Pure Python domain entities for TAT tracking and escalation.

Following Domain-Driven Design principles, these entities contain
business logic and are free of infrastructure concerns.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional

from config import (
    TicketStatus, UserRole, OutcomeType, DecisionReason,
    TERMINAL_STATUSES, STAFF_ROLES
)


@dataclass
class Ticket:
    """
    Ticket entity as seen by the escalation engine.

    Only the fields the engine reads or conditionally writes are carried;
    ticket identity and lifecycle belong to the helpdesk store.
    """

    id: int
    status: str
    title: str = ""
    description: str = ""

    category_id: Optional[int] = None
    category_owner_id: Optional[str] = None
    created_by: Optional[str] = None
    assigned_to: Optional[str] = None

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    resolution_due_at: Optional[datetime] = None
    acknowledgement_due_at: Optional[datetime] = None
    acknowledged_at: Optional[datetime] = None

    escalation_level: int = 0
    escalated_at: Optional[datetime] = None

    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.escalation_level < 0:
            raise ValueError("escalation_level cannot be negative")
        self.status = (self.status or "").lower()

    @property
    def is_terminal(self) -> bool:
        """Check if ticket is resolved or closed."""
        return self.status in TERMINAL_STATUSES


@dataclass(frozen=True)
class Actor:
    """Caller identity taken from the identity provider's claims."""

    user_id: str
    role: str

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES

    @property
    def is_student(self) -> bool:
        return self.role == UserRole.STUDENT


@dataclass(frozen=True)
class EscalationDecision:
    """
    Outcome of the escalation policy for one ticket.

    A decision with ``escalate=False`` is a no-op: nothing is written and
    nobody is notified.
    """

    escalate: bool
    current_level: int
    next_level: int
    reason: str
    next_assignee: Optional[str] = None
    notify_channels: tuple = ()
    rule_level: Optional[int] = None
    evaluated_at: Optional[datetime] = None
    # Deadlines pushed out by the escalation; None leaves the stored value
    next_resolution_due_at: Optional[datetime] = None
    next_acknowledgement_due_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "escalate": self.escalate,
            "current_level": self.current_level,
            "next_level": self.next_level,
            "next_assignee": self.next_assignee,
            "reason": self.reason,
            "next_resolution_due_at": (
                self.next_resolution_due_at.isoformat() if self.next_resolution_due_at else None
            ),
        }


@dataclass(frozen=True)
class EscalationEvent:
    """Notification payload emitted once per applied escalation."""

    ticket_id: int
    escalation_level: int
    assignee: Optional[str]
    previous_level: int
    reason: str
    title: str = ""
    status: str = TicketStatus.OPEN
    resolution_due_at: Optional[datetime] = None
    channels: tuple = ()


@dataclass
class TicketOutcome:
    """Per-ticket record inside an escalation run."""

    ticket_id: int
    outcome: str
    decision: Optional[EscalationDecision] = None
    notified: bool = False
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "ticket_id": self.ticket_id,
            "outcome": self.outcome,
            "decision": self.decision.to_dict() if self.decision else None,
            "notified": self.notified,
            "error": self.error,
        }


@dataclass
class EscalationRunResult:
    """
    Ephemeral summary of one escalation run.

    Returned to the trigger and logged; the persisted effects live on the
    ticket rows themselves.
    """

    run_id: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    details: List[TicketOutcome] = field(default_factory=list)

    @property
    def evaluated(self) -> int:
        return len(self.details)

    @property
    def escalated(self) -> int:
        return self._count(OutcomeType.ESCALATED)

    @property
    def failed(self) -> int:
        return self._count(OutcomeType.FAILED)

    @property
    def skipped(self) -> int:
        return self._count(OutcomeType.STALE)

    @property
    def acknowledgement(self) -> int:
        """Escalations for a missed acknowledgement deadline."""
        return self._count(OutcomeType.ESCALATED, DecisionReason.UNACKNOWLEDGED)

    @property
    def resolution(self) -> int:
        """Escalations for a missed resolution deadline."""
        return self._count(OutcomeType.ESCALATED, DecisionReason.OVERDUE)

    def _count(self, outcome: str, reason: Optional[str] = None) -> int:
        return sum(
            1 for d in self.details
            if d.outcome == outcome
            and (reason is None or (d.decision is not None and d.decision.reason == reason))
        )

    def record(self, outcome: TicketOutcome) -> None:
        self.details.append(outcome)

    def finish(self, timestamp: Optional[datetime] = None) -> None:
        self.finished_at = timestamp or datetime.now(timezone.utc)

    def to_dict(self) -> dict:
        return {
            "run_id": self.run_id,
            "evaluated": self.evaluated,
            "escalated": self.escalated,
            "failed": self.failed,
            "skipped": self.skipped,
            "acknowledgement": self.acknowledgement,
            "resolution": self.resolution,
            "details": [d.to_dict() for d in self.details],
        }


@dataclass
class TicketStats:
    """Count-by-status and escalation counters for dashboards."""

    total: int = 0
    open: int = 0
    in_progress: int = 0
    resolved: int = 0
    closed: int = 0
    awaiting_student_response: int = 0
    escalated: int = 0

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "open": self.open,
            "in_progress": self.in_progress,
            "resolved": self.resolved,
            "closed": self.closed,
            "awaiting_student_response": self.awaiting_student_response,
            "escalated": self.escalated,
        }


@dataclass
class TATReminderResult:
    """Summary of one daily reminder pass over tickets due today."""

    day: date
    skipped_weekend: bool = False
    ticket_ids: List[int] = field(default_factory=list)
    reminded: int = 0

    @property
    def count(self) -> int:
        return len(self.ticket_ids)

    def to_dict(self) -> dict:
        return {
            "date": self.day.isoformat(),
            "skipped_weekend": self.skipped_weekend,
            "count": self.count,
            "reminded": self.reminded,
            "ticket_ids": list(self.ticket_ids),
        }
