"""Shared fixtures: in-memory fakes for the escalation ports and a SQLite database."""
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from itertools import count

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from core import RepositoryException
from escalation.application import (
    IEscalationConfigProvider, INotificationDispatcher, ITicketRepository
)
from escalation.domain import EscalationConfig, Ticket
from escalation.infrastructure import models  # noqa: F401  registers tables
from infrastructure.database import Base

# Wednesday
NOW = datetime(2026, 3, 4, 12, 0, tzinfo=timezone.utc)


def _copy(ticket):
    return replace(ticket, metadata=dict(ticket.metadata))


class InMemoryTicketRepository(ITicketRepository):
    """Dict-backed repository with the same compare-and-set contract as SQL."""

    def __init__(self, tickets=()):
        self.tickets = {t.id: t for t in tickets}
        self.activity = []
        self.fail_on = set()
        self.load_error = None
        self.before_apply = None

    def add(self, *tickets):
        for t in tickets:
            self.tickets[t.id] = t

    async def get_by_id(self, ticket_id):
        ticket = self.tickets.get(ticket_id)
        return _copy(ticket) if ticket else None

    async def list(self, filters, limit=100, offset=0):
        result = []
        for t in self.tickets.values():
            if "status" in filters and t.status != filters["status"]:
                continue
            if "category_id" in filters and t.category_id != filters["category_id"]:
                continue
            if "assigned_to" in filters and t.assigned_to != filters["assigned_to"]:
                continue
            if "created_by" in filters and t.created_by != filters["created_by"]:
                continue
            result.append(_copy(t))
        return result[offset:] if limit is None else result[offset:offset + limit]

    async def list_escalation_candidates(self):
        if self.load_error:
            raise self.load_error
        return [
            _copy(t) for t in self.tickets.values()
            if not t.is_terminal and (
                t.resolution_due_at is not None
                or (t.acknowledgement_due_at is not None and t.acknowledged_at is None)
            )
        ]

    async def list_due_between(self, start, end):
        due = [
            t for t in self.tickets.values()
            if not t.is_terminal and t.resolution_due_at is not None
            and start <= t.resolution_due_at < end
        ]
        return [_copy(t) for t in sorted(due, key=lambda t: (t.resolution_due_at, t.id))]

    async def apply_escalation(self, ticket_id, decision, now, actor_id=None, note=None):
        if self.before_apply:
            self.before_apply(ticket_id)
        if ticket_id in self.fail_on:
            raise RepositoryException(f"write failed for {ticket_id}")

        stored = self.tickets[ticket_id]
        if stored.escalation_level != decision.current_level:
            return False

        previous = stored.assigned_to
        stored.escalation_level = decision.next_level
        stored.escalated_at = now
        if decision.next_assignee is not None:
            stored.assigned_to = decision.next_assignee
            if decision.next_assignee != previous:
                stored.metadata = {**stored.metadata, "previousAssignedTo": previous}
        if decision.next_resolution_due_at is not None:
            stored.resolution_due_at = decision.next_resolution_due_at
        if decision.next_acknowledgement_due_at is not None:
            stored.acknowledgement_due_at = decision.next_acknowledgement_due_at

        details = {"to_level": decision.next_level, "reason": decision.reason}
        if note:
            details["note"] = note
        self.activity.append((ticket_id, "escalated", actor_id, details))
        return True

    async def update_tat(self, ticket_id, resolution_due_at, metadata, status,
                         action, actor_id, details, now):
        stored = self.tickets[ticket_id]
        stored.resolution_due_at = resolution_due_at
        stored.metadata = metadata
        stored.status = status
        stored.updated_at = now
        self.activity.append((ticket_id, action, actor_id, details))
        return _copy(stored)


class RecordingNotifier(INotificationDispatcher):
    def __init__(self, result=True, error=None):
        self.result = result
        self.error = error
        self.events = []
        self.reminders = []

    async def notify_escalation(self, event):
        self.events.append(event)
        if self.error:
            raise self.error
        return self.result

    async def notify_tat_reminder(self, ticket):
        self.reminders.append(ticket.id)
        if self.error:
            raise self.error
        return self.result


class StaticConfigProvider(IEscalationConfigProvider):
    def __init__(self, config=None):
        self.config = config or EscalationConfig(role_directory={
            "admin": "admin_1",
            "super_admin": "super_1",
        })

    def get_config(self):
        return self.config


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def make_ticket():
    ids = count(1)

    def _make(**overrides):
        fields = {
            "id": next(ids),
            "status": "open",
            "title": "Hostel wifi down",
            "category_id": 1,
            "category_owner_id": "owner_1",
            "created_by": "student_1",
            "assigned_to": "owner_1",
            "resolution_due_at": NOW - timedelta(hours=1),
        }
        fields.update(overrides)
        return Ticket(**fields)

    return _make


@pytest.fixture
def repo():
    return InMemoryTicketRepository()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def config_provider():
    return StaticConfigProvider()


@pytest_asyncio.fixture
async def session_factory():
    """Fresh in-memory SQLite database per test."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, expire_on_commit=False, autoflush=False)

    await engine.dispose()
