"""
Escalation Domain Layer
=======================

Domain layer for the TAT/escalation module.

Contains:
- Entities: Ticket, EscalationDecision, EscalationRunResult, TATReminderResult, TicketStats
- Value Objects: TATSnapshot, TATMetadata, EscalationConfig
- Domain Services: TATCalculator, EscalationPolicy, compute_stats

This layer has no dependencies on infrastructure - pure Python business logic.
"""

from escalation.domain.entities import (
    Ticket,
    Actor,
    EscalationDecision,
    EscalationEvent,
    TicketOutcome,
    EscalationRunResult,
    TATReminderResult,
    TicketStats,
)
from escalation.domain.value_objects import (
    TATCalculator,
    TATSnapshot,
    TATMetadata,
    TATExtension,
    EscalationConfig,
    EscalationRoutingRule,
    normalize_tat_metadata,
    coerce_datetime,
)
from escalation.domain.services import EscalationPolicy, compute_stats

__all__ = [
    # Entities
    "Ticket",
    "Actor",
    "EscalationDecision",
    "EscalationEvent",
    "TicketOutcome",
    "EscalationRunResult",
    "TATReminderResult",
    "TicketStats",
    # Value Objects
    "TATCalculator",
    "TATSnapshot",
    "TATMetadata",
    "TATExtension",
    "EscalationConfig",
    "EscalationRoutingRule",
    "normalize_tat_metadata",
    "coerce_datetime",
    # Domain Services
    "EscalationPolicy",
    "compute_stats",
]
