"""SQLAlchemy repository tests against an in-memory SQLite database."""
import logging
from datetime import timedelta

import pytest
import pytest_asyncio

from escalation.domain import EscalationDecision
from escalation.infrastructure import (
    CategoryModel, SQLAlchemyTicketRepository, TicketModel
)

from conftest import NOW


def decision(current, assignee="owner_1", **extra):
    return EscalationDecision(
        escalate=True,
        current_level=current,
        next_level=current + 1,
        reason="overdue",
        next_assignee=assignee,
        **extra
    )


async def add_tickets(session_factory, *models):
    async with session_factory() as session:
        session.add_all(models)
        await session.commit()


@pytest_asyncio.fixture
async def sql_repo(session_factory):
    async with session_factory() as session:
        session.add(CategoryModel(id=1, name="Hostel", owner_id="owner_1"))
        session.add_all([
            TicketModel(id=1, title="Wifi down", status="open", category_id=1,
                        created_by="student_1", resolution_due_at=NOW - timedelta(hours=2),
                        ticket_metadata={"tatSetBy": "committee_1"}),
            TicketModel(id=2, title="Fan broken", status="in_progress", category_id=1,
                        created_by="student_2", assigned_to="owner_1",
                        resolution_due_at=NOW + timedelta(days=1)),
            TicketModel(id=3, title="Closed issue", status="closed", category_id=1,
                        resolution_due_at=NOW - timedelta(days=3), escalation_level=2),
            TicketModel(id=4, title="No TAT yet", status="open", category_id=None),
        ])
        await session.commit()
    return SQLAlchemyTicketRepository(session_factory)


class TestReads:
    @pytest.mark.asyncio
    async def test_get_by_id_maps_entity(self, sql_repo):
        ticket = await sql_repo.get_by_id(1)

        assert ticket.title == "Wifi down"
        assert ticket.category_owner_id == "owner_1"
        assert ticket.metadata == {"tatSetBy": "committee_1"}
        assert ticket.resolution_due_at == NOW - timedelta(hours=2)
        assert ticket.resolution_due_at.tzinfo is not None

    @pytest.mark.asyncio
    async def test_get_missing(self, sql_repo):
        assert await sql_repo.get_by_id(99) is None

    @pytest.mark.asyncio
    async def test_ticket_without_category(self, sql_repo):
        ticket = await sql_repo.get_by_id(4)

        assert ticket.category_owner_id is None
        assert ticket.metadata == {}

    @pytest.mark.asyncio
    async def test_candidates_exclude_terminal_and_undated(self, sql_repo):
        candidates = await sql_repo.list_escalation_candidates()

        assert [t.id for t in candidates] == [1, 2]

    @pytest.mark.asyncio
    async def test_unacknowledged_tickets_are_candidates(self, sql_repo, session_factory):
        await add_tickets(
            session_factory,
            TicketModel(id=6, title="Not picked up", status="open",
                        acknowledgement_due_at=NOW - timedelta(hours=1)),
            TicketModel(id=7, title="Picked up", status="open",
                        acknowledgement_due_at=NOW - timedelta(hours=1),
                        acknowledged_at=NOW - timedelta(hours=2)),
        )

        candidates = await sql_repo.list_escalation_candidates()

        assert [t.id for t in candidates] == [1, 2, 6]
        assert candidates[-1].acknowledgement_due_at == NOW - timedelta(hours=1)

    @pytest.mark.asyncio
    async def test_malformed_row_is_skipped(self, sql_repo, session_factory, caplog):
        await add_tickets(
            session_factory,
            TicketModel(id=5, title="Bad level", status="open",
                        resolution_due_at=NOW - timedelta(hours=1), escalation_level=-1),
        )

        with caplog.at_level(logging.WARNING):
            candidates = await sql_repo.list_escalation_candidates()

        assert [t.id for t in candidates] == [1, 2]
        assert await sql_repo.get_by_id(5) is None
        assert any("malformed ticket row" in r.getMessage() for r in caplog.records)

    @pytest.mark.asyncio
    async def test_list_due_between(self, sql_repo, session_factory):
        await add_tickets(
            session_factory,
            TicketModel(id=8, title="Due tonight", status="open",
                        resolution_due_at=NOW + timedelta(hours=6)),
        )
        start = NOW.replace(hour=0)

        due = await sql_repo.list_due_between(start, start + timedelta(days=1))

        # ticket 3 is due earlier but closed
        assert [t.id for t in due] == [1, 8]

    @pytest.mark.asyncio
    async def test_list_filters(self, sql_repo):
        assert {t.id for t in await sql_repo.list({"status": "open"})} == {1, 4}
        assert {t.id for t in await sql_repo.list({"status": ["open", "closed"]}, limit=None)} == {1, 3, 4}
        assert [t.id for t in await sql_repo.list({"assigned_to": "owner_1"})] == [2]
        assert [t.id for t in await sql_repo.list({"created_by": "student_1"})] == [1]
        assert len(await sql_repo.list({}, limit=None)) == 4


class TestApplyEscalation:
    @pytest.mark.asyncio
    async def test_applies_and_writes_activity(self, sql_repo):
        applied = await sql_repo.apply_escalation(1, decision(0), NOW)

        assert applied is True
        ticket = await sql_repo.get_by_id(1)
        assert ticket.escalation_level == 1
        assert ticket.assigned_to == "owner_1"
        assert ticket.escalated_at == NOW

        activity = await sql_repo.list_activity(1)
        assert len(activity) == 1
        assert activity[0].action == "escalated"
        assert activity[0].user_id is None
        assert activity[0].details["to_level"] == 1

    @pytest.mark.asyncio
    async def test_stale_level_is_not_written(self, sql_repo):
        assert await sql_repo.apply_escalation(1, decision(0), NOW) is True

        # second writer still believes the level is 0
        assert await sql_repo.apply_escalation(1, decision(0, "admin_1"), NOW) is False

        ticket = await sql_repo.get_by_id(1)
        assert ticket.escalation_level == 1
        assert ticket.assigned_to == "owner_1"
        assert len(await sql_repo.list_activity(1)) == 1

    @pytest.mark.asyncio
    async def test_no_assignee_keeps_current_one(self, sql_repo):
        await sql_repo.apply_escalation(2, decision(0, assignee=None), NOW, actor_id="committee_1")

        ticket = await sql_repo.get_by_id(2)
        assert ticket.escalation_level == 1
        assert ticket.assigned_to == "owner_1"
        assert (await sql_repo.list_activity(2))[0].user_id == "committee_1"

    @pytest.mark.asyncio
    async def test_unknown_ticket_is_stale(self, sql_repo):
        assert await sql_repo.apply_escalation(99, decision(0), NOW) is False

    @pytest.mark.asyncio
    async def test_reassignment_records_previous_assignee(self, sql_repo):
        await sql_repo.apply_escalation(1, decision(0), NOW)
        await sql_repo.apply_escalation(1, decision(1, "admin_1"), NOW)

        ticket = await sql_repo.get_by_id(1)
        assert ticket.assigned_to == "admin_1"
        assert ticket.metadata == {"tatSetBy": "committee_1", "previousAssignedTo": "owner_1"}
        assert (await sql_repo.list_activity(1))[-1].details["previous_assignee"] == "owner_1"

    @pytest.mark.asyncio
    async def test_same_assignee_leaves_metadata(self, sql_repo):
        await sql_repo.apply_escalation(2, decision(0, "owner_1"), NOW)

        assert (await sql_repo.get_by_id(2)).metadata == {}

    @pytest.mark.asyncio
    async def test_legacy_previous_assignee_key_is_replaced(self, sql_repo, session_factory):
        await add_tickets(
            session_factory,
            TicketModel(id=9, title="Old row", status="open", assigned_to="owner_2",
                        ticket_metadata={"previous_assigned_to": "someone"}),
        )

        await sql_repo.apply_escalation(9, decision(0, "owner_1"), NOW)

        assert (await sql_repo.get_by_id(9)).metadata == {"previousAssignedTo": "owner_2"}

    @pytest.mark.asyncio
    async def test_pushed_deadlines_written_with_level(self, sql_repo):
        new_due = NOW + timedelta(days=2)

        await sql_repo.apply_escalation(
            1,
            decision(0, next_resolution_due_at=new_due, next_acknowledgement_due_at=new_due),
            NOW,
        )

        ticket = await sql_repo.get_by_id(1)
        assert ticket.escalation_level == 1
        assert ticket.resolution_due_at == new_due
        assert ticket.acknowledgement_due_at == new_due
        assert (await sql_repo.list_activity(1))[0].details["new_due_at"] == new_due.isoformat()

    @pytest.mark.asyncio
    async def test_stale_write_keeps_deadline(self, sql_repo):
        await sql_repo.apply_escalation(1, decision(0), NOW)

        applied = await sql_repo.apply_escalation(
            1, decision(0, next_resolution_due_at=NOW + timedelta(days=2)), NOW
        )

        assert applied is False
        assert (await sql_repo.get_by_id(1)).resolution_due_at == NOW - timedelta(hours=2)

    @pytest.mark.asyncio
    async def test_note_lands_in_activity(self, sql_repo):
        await sql_repo.apply_escalation(2, decision(0), NOW, actor_id="student_2", note="Room flooding")

        activity = await sql_repo.list_activity(2)
        assert activity[0].user_id == "student_2"
        assert activity[0].details["note"] == "Room flooding"

    @pytest.mark.asyncio
    async def test_no_note_by_default(self, sql_repo):
        await sql_repo.apply_escalation(2, decision(0), NOW)

        assert "note" not in (await sql_repo.list_activity(2))[0].details


class TestUpdateTAT:
    @pytest.mark.asyncio
    async def test_updates_ticket_and_activity(self, sql_repo):
        due = NOW + timedelta(days=2)

        ticket = await sql_repo.update_tat(
            4,
            resolution_due_at=due,
            metadata={"tat": "2 days", "tatSetBy": "committee_1"},
            status="in_progress",
            action="tat_set",
            actor_id="committee_1",
            details={"hours": 48},
            now=NOW,
        )

        assert ticket.resolution_due_at == due
        assert ticket.status == "in_progress"
        assert ticket.metadata["tat"] == "2 days"
        activity = await sql_repo.list_activity(4)
        assert activity[0].action == "tat_set"
        assert activity[0].details == {"hours": 48}
