"""
Escalation Domain Services
==========================

Stateless business logic that does not belong to a single entity:
the escalation policy and the dashboard stats reduction.
"""

from datetime import datetime
from typing import Any, Iterable, Mapping, Optional

from config import DecisionReason, TicketStatus
from escalation.domain.entities import EscalationDecision, Ticket, TicketStats
from escalation.domain.value_objects import (
    EscalationConfig, TATCalculator, TATSnapshot, coerce_datetime
)


class EscalationPolicy:
    """
    Decides whether a single ticket escalates and to whom.

    Pure: the result depends only on the ticket, its snapshot, ``now`` and
    the configuration the policy was built with.
    """

    def __init__(self, config: EscalationConfig):
        self._config = config

    @property
    def config(self) -> EscalationConfig:
        return self._config

    def evaluate(
        self,
        ticket: Ticket,
        snapshot: TATSnapshot,
        now: Optional[datetime] = None
    ) -> EscalationDecision:
        """
        Evaluate automatic escalation for an overdue ticket.

        Eligible iff the resolution or acknowledgement deadline has passed,
        the status is not terminal and the current level is below
        ``max_level``. A missed resolution deadline takes precedence as the
        reason.
        """
        level = ticket.escalation_level

        if self._config.is_terminal(ticket.status):
            return self._no_op(level, DecisionReason.TERMINAL_STATUS, now)

        if snapshot.is_overdue:
            reason = DecisionReason.OVERDUE
        elif snapshot.is_acknowledgement_overdue:
            reason = DecisionReason.UNACKNOWLEDGED
        else:
            return self._no_op(level, DecisionReason.NOT_OVERDUE, now)

        if level >= self._config.max_level:
            return self._no_op(level, DecisionReason.MAX_LEVEL_REACHED, now)

        return self._escalate(ticket, reason, now)

    def evaluate_manual(
        self,
        ticket: Ticket,
        now: Optional[datetime] = None,
        reason: str = DecisionReason.MANUAL
    ) -> EscalationDecision:
        """Manual escalation ignores the deadline but keeps the other guards."""
        level = ticket.escalation_level

        if self._config.is_terminal(ticket.status):
            return self._no_op(level, DecisionReason.TERMINAL_STATUS, now)
        if level >= self._config.max_level:
            return self._no_op(level, DecisionReason.MAX_LEVEL_REACHED, now)

        return self._escalate(ticket, reason, now)

    def _push_deadline(self, deadline: Optional[datetime], now: Optional[datetime]) -> Optional[datetime]:
        """
        Give the new assignee a fresh window.

        Counted from the later of the old deadline and ``now``, so the ticket
        is no longer overdue once the escalation is stored.
        """
        hours = self._config.deadline_extension_hours
        deadline = coerce_datetime(deadline)
        if deadline is None or hours <= 0:
            return None
        start = max(deadline, now) if now is not None else deadline
        return TATCalculator.add_business_hours(start, hours)

    def _escalate(self, ticket: Ticket, reason: str, now: Optional[datetime]) -> EscalationDecision:
        next_level = ticket.escalation_level + 1
        rule = self._config.rule_for(next_level, ticket.category_id)
        now = coerce_datetime(now)

        next_ack_due = None
        if ticket.acknowledged_at is None:
            next_ack_due = self._push_deadline(ticket.acknowledgement_due_at, now)

        return EscalationDecision(
            escalate=True,
            current_level=ticket.escalation_level,
            next_level=next_level,
            reason=reason,
            next_assignee=self._config.resolve_assignee(rule, ticket),
            notify_channels=tuple(rule.notify) if rule else (),
            rule_level=rule.level if rule else None,
            evaluated_at=now,
            next_resolution_due_at=self._push_deadline(ticket.resolution_due_at, now),
            next_acknowledgement_due_at=next_ack_due,
        )

    @staticmethod
    def _no_op(level: int, reason: str, now: Optional[datetime]) -> EscalationDecision:
        return EscalationDecision(
            escalate=False,
            current_level=level,
            next_level=level,
            reason=reason,
            evaluated_at=now,
        )


_STATUS_BUCKETS = {
    TicketStatus.OPEN: "open",
    TicketStatus.IN_PROGRESS: "in_progress",
    TicketStatus.RESOLVED: "resolved",
    TicketStatus.CLOSED: "closed",
    TicketStatus.AWAITING_STUDENT_RESPONSE: "awaiting_student_response",
}


def _field(ticket: Any, name: str) -> Any:
    if isinstance(ticket, Mapping):
        return ticket.get(name)
    return getattr(ticket, name, None)


def compute_stats(tickets: Iterable[Any]) -> TicketStats:
    """
    Reduce tickets to count-by-status plus an escalated counter.

    Single pass. Unrecognized statuses count toward ``total`` only;
    ``escalated`` is independent of status.
    """
    stats = TicketStats()

    for ticket in tickets:
        stats.total += 1

        status = str(_field(ticket, "status") or "").lower()
        bucket = _STATUS_BUCKETS.get(status)
        if bucket:
            setattr(stats, bucket, getattr(stats, bucket) + 1)

        level = _field(ticket, "escalation_level") or 0
        try:
            if int(level) > 0:
                stats.escalated += 1
        except (TypeError, ValueError):
            pass

    return stats
