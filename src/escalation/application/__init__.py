"""
Escalation Application Layer
============================

Application layer for the TAT/escalation module.

Contains:
- Services: Orchestrate business logic and coordinate with repositories
- DTOs: Data transfer objects for API serialization

This layer depends on the domain layer and repository interfaces,
but not on concrete infrastructure implementations.
"""

from escalation.application.dto import (
    TATUpdateRequest,
    ManualEscalationRequest,
    StatsQueryDTO,
    EscalationDecisionResponse,
    TicketOutcomeResponse,
    EscalationRunResponse,
    TATExtensionResponse,
    TATSnapshotResponse,
    ManualEscalationResponse,
    TATReminderResponse,
    StatsResponse,
    ErrorResponse,
)
from escalation.application.services import (
    EscalationRunner,
    EscalationService,
    TATService,
    TATReminderService,
    StatsService,
    ITicketRepository,
    INotificationDispatcher,
    IEscalationConfigProvider,
    dispatch_escalation_notification,
)

__all__ = [
    # DTOs
    "TATUpdateRequest",
    "ManualEscalationRequest",
    "StatsQueryDTO",
    "EscalationDecisionResponse",
    "TicketOutcomeResponse",
    "EscalationRunResponse",
    "TATExtensionResponse",
    "TATSnapshotResponse",
    "ManualEscalationResponse",
    "TATReminderResponse",
    "StatsResponse",
    "ErrorResponse",
    # Services
    "EscalationRunner",
    "EscalationService",
    "TATService",
    "TATReminderService",
    "StatsService",
    "dispatch_escalation_notification",
    # Repository Interfaces
    "ITicketRepository",
    "INotificationDispatcher",
    "IEscalationConfigProvider",
]
