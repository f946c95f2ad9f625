"""
Escalation Infrastructure Layer
===============================

Infrastructure layer for the TAT/escalation module.

Contains:
- Models: SQLAlchemy ORM models
- Repositories: Concrete implementations of repository interfaces
- External: Slack notifier, config hot-reload, scheduler
"""

from escalation.infrastructure.models import (
    CategoryModel,
    TicketModel,
    TicketActivityModel,
)
from escalation.infrastructure.repositories import SQLAlchemyTicketRepository
from escalation.infrastructure.external import (
    EscalationConfigManager,
    CircuitBreaker,
    CircuitState,
    SlackNotifier,
    EscalationScheduler,
)

__all__ = [
    # Models
    "CategoryModel",
    "TicketModel",
    "TicketActivityModel",
    # Repositories
    "SQLAlchemyTicketRepository",
    # External
    "EscalationConfigManager",
    "CircuitBreaker",
    "CircuitState",
    "SlackNotifier",
    "EscalationScheduler",
]
