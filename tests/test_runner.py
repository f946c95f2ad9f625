"""Tests for batch escalation runs."""
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from core import RepositoryException
from escalation.application import EscalationRunner, INotificationDispatcher
from escalation.domain import EscalationPolicy, TATCalculator

from conftest import NOW, RecordingNotifier


@pytest.fixture
def runner(repo, notifier, config_provider):
    return EscalationRunner(repo, notifier, config_provider)


class TestEscalationRun:
    @pytest.mark.asyncio
    async def test_escalates_only_eligible_tickets(self, runner, repo, notifier, make_ticket):
        overdue = make_ticket()
        future = make_ticket(resolution_due_at=NOW + timedelta(days=1))
        closed = make_ticket(status="closed")
        no_deadline = make_ticket(resolution_due_at=None)
        topped_out = make_ticket(escalation_level=3)
        repo.add(overdue, future, closed, no_deadline, topped_out)

        result = await runner.run(NOW)

        # closed and no-deadline tickets are not candidates at all
        assert result.evaluated == 3
        assert result.escalated == 1
        assert result.failed == 0
        assert result.skipped == 0
        assert repo.tickets[overdue.id].escalation_level == 1
        assert repo.tickets[overdue.id].assigned_to == "owner_1"
        assert repo.tickets[overdue.id].escalated_at == NOW
        assert repo.tickets[future.id].escalation_level == 0
        assert repo.tickets[topped_out.id].escalation_level == 3
        assert [e.ticket_id for e in notifier.events] == [overdue.id]

    @pytest.mark.asyncio
    async def test_back_to_back_runs_escalate_once(self, runner, repo, make_ticket):
        ticket = make_ticket()
        repo.add(ticket)

        first = await runner.run(NOW)
        second = await runner.run(NOW)

        assert first.escalated == 1
        assert second.evaluated == 1
        assert second.escalated == 0
        assert second.details[0].decision.reason == "not_overdue"
        assert repo.tickets[ticket.id].escalation_level == 1
        # Wed 12:00 + 48 business hours
        assert repo.tickets[ticket.id].resolution_due_at == datetime(2026, 3, 6, 12, 0, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_escalates_again_after_pushed_deadline(self, runner, repo, make_ticket):
        ticket = make_ticket()
        repo.add(ticket)

        levels = []
        when = NOW
        for _ in range(5):
            await runner.run(when)
            stored = repo.tickets[ticket.id]
            levels.append(stored.escalation_level)
            when = stored.resolution_due_at + timedelta(minutes=1)

        assert levels == [1, 2, 3, 3, 3]

    @pytest.mark.asyncio
    async def test_unacknowledged_tickets_counted_separately(self, runner, repo, make_ticket):
        unacknowledged = make_ticket(
            resolution_due_at=NOW + timedelta(days=2),
            acknowledgement_due_at=NOW - timedelta(hours=2),
        )
        acknowledged = make_ticket(
            resolution_due_at=NOW + timedelta(days=2),
            acknowledgement_due_at=NOW - timedelta(hours=2),
            acknowledged_at=NOW - timedelta(hours=3),
        )
        acknowledgement_only = make_ticket(
            resolution_due_at=None,
            acknowledgement_due_at=NOW - timedelta(minutes=5),
        )
        overdue = make_ticket()
        repo.add(unacknowledged, acknowledged, acknowledgement_only, overdue)

        result = await runner.run(NOW)
        payload = result.to_dict()

        assert result.evaluated == 4
        assert result.escalated == 3
        assert (payload["acknowledgement"], payload["resolution"]) == (2, 1)
        assert repo.tickets[acknowledged.id].escalation_level == 0
        assert repo.tickets[unacknowledged.id].acknowledgement_due_at == datetime(
            2026, 3, 6, 12, 0, tzinfo=timezone.utc
        )

    @pytest.mark.asyncio
    async def test_details_cover_every_candidate(self, runner, repo, make_ticket):
        repo.add(make_ticket(), make_ticket(resolution_due_at=NOW + timedelta(hours=2)))

        result = await runner.run(NOW)
        payload = result.to_dict()

        assert payload["evaluated"] == 2
        assert sorted(d["outcome"] for d in payload["details"]) == ["escalated", "not_eligible"]
        assert result.run_id
        assert result.finished_at is not None

    @pytest.mark.asyncio
    async def test_no_candidates(self, runner):
        result = await runner.run(NOW)

        assert result.evaluated == 0
        assert result.escalated == 0
        assert result.details == []


class TestPartialFailure:
    @pytest.mark.asyncio
    async def test_write_failure_does_not_stop_the_run(self, runner, repo, notifier, make_ticket):
        first, second, third = make_ticket(), make_ticket(), make_ticket()
        repo.add(first, second, third)
        repo.fail_on = {second.id}

        result = await runner.run(NOW)

        assert result.escalated == 2
        assert result.failed == 1
        assert repo.tickets[first.id].escalation_level == 1
        assert repo.tickets[second.id].escalation_level == 0
        assert repo.tickets[third.id].escalation_level == 1
        failed = [d for d in result.details if d.outcome == "failed"]
        assert failed[0].ticket_id == second.id
        assert "write failed" in failed[0].error
        assert second.id not in [e.ticket_id for e in notifier.events]

    @pytest.mark.asyncio
    async def test_load_failure_propagates(self, runner, repo):
        repo.load_error = RepositoryException("database unavailable")

        with pytest.raises(RepositoryException):
            await runner.run(NOW)


class TestConcurrentRuns:
    @pytest.mark.asyncio
    async def test_ticket_changed_since_load_is_skipped(self, runner, repo, notifier, make_ticket):
        ticket = make_ticket()
        repo.add(ticket)

        def concurrent_writer(ticket_id):
            repo.tickets[ticket_id].escalation_level += 1

        repo.before_apply = concurrent_writer

        result = await runner.run(NOW)

        assert result.skipped == 1
        assert result.escalated == 0
        assert result.failed == 0
        # only the other writer's increment landed
        assert repo.tickets[ticket.id].escalation_level == 1
        assert notifier.events == []

    @pytest.mark.asyncio
    async def test_overlapping_runs_escalate_once(self, repo, config_provider, make_ticket):
        ticket = make_ticket()
        repo.add(ticket)
        first = EscalationRunner(repo, RecordingNotifier(), config_provider)
        second = EscalationRunner(repo, RecordingNotifier(), config_provider)

        # both runs load the ticket at level 0 before either writes
        loaded = await repo.list_escalation_candidates()
        original = repo.list_escalation_candidates

        async def stale_load():
            return loaded

        repo.list_escalation_candidates = stale_load
        results = [await first.run(NOW), await second.run(NOW)]
        repo.list_escalation_candidates = original

        assert sum(r.escalated for r in results) == 1
        assert sum(r.skipped for r in results) == 1
        assert repo.tickets[ticket.id].escalation_level == 1


class TestNotifications:
    @pytest.mark.asyncio
    async def test_event_payload(self, runner, repo, notifier, make_ticket):
        ticket = make_ticket(escalation_level=1, title="Projector broken")
        repo.add(ticket)

        await runner.run(NOW)

        event = notifier.events[0]
        assert event.ticket_id == ticket.id
        assert event.previous_level == 1
        assert event.escalation_level == 2
        assert event.assignee == "admin_1"
        assert event.title == "Projector broken"
        assert event.reason == "overdue"

    @pytest.mark.asyncio
    async def test_notifier_error_keeps_escalation(self, repo, config_provider, make_ticket):
        ticket = make_ticket()
        repo.add(ticket)
        runner = EscalationRunner(repo, RecordingNotifier(error=RuntimeError("slack down")), config_provider)

        result = await runner.run(NOW)

        assert result.escalated == 1
        assert result.failed == 0
        assert result.details[0].notified is False
        assert repo.tickets[ticket.id].escalation_level == 1

    @pytest.mark.asyncio
    async def test_undelivered_notification_is_recorded(self, repo, config_provider, make_ticket):
        repo.add(make_ticket())
        runner = EscalationRunner(repo, RecordingNotifier(result=False), config_provider)

        result = await runner.run(NOW)

        assert result.escalated == 1
        assert result.details[0].notified is False


class TestScenarios:
    @pytest.fixture
    def mock_notifier(self):
        notifier = AsyncMock(spec=INotificationDispatcher)
        notifier.notify_escalation.return_value = True
        return notifier

    @pytest.mark.asyncio
    async def test_overdue_open_ticket_is_escalated_and_notified_once(
        self, repo, config_provider, mock_notifier, make_ticket
    ):
        ticket = make_ticket(resolution_due_at=datetime(2024, 1, 1, tzinfo=timezone.utc))
        repo.add(ticket)
        runner = EscalationRunner(repo, mock_notifier, config_provider)

        result = await runner.run(datetime(2024, 1, 2, tzinfo=timezone.utc))

        assert result.details[0].decision.escalate is True
        assert result.details[0].decision.next_level == 1
        assert repo.tickets[ticket.id].escalation_level == 1
        mock_notifier.notify_escalation.assert_awaited_once()
        event = mock_notifier.notify_escalation.await_args.args[0]
        assert (event.ticket_id, event.escalation_level, event.assignee) == (ticket.id, 1, "owner_1")

    @pytest.mark.asyncio
    async def test_closed_ticket_is_left_alone(self, repo, config_provider, mock_notifier, make_ticket):
        when = datetime(2024, 1, 2, tzinfo=timezone.utc)
        ticket = make_ticket(status="closed", resolution_due_at=datetime(2024, 1, 1, tzinfo=timezone.utc))
        repo.add(ticket)

        decision = EscalationPolicy(config_provider.get_config()).evaluate(
            ticket, TATCalculator.compute_snapshot(ticket, when), when
        )
        result = await EscalationRunner(repo, mock_notifier, config_provider).run(when)

        assert decision.escalate is False
        assert result.evaluated == 0
        assert result.escalated == 0
        assert repo.tickets[ticket.id].escalation_level == 0
        mock_notifier.notify_escalation.assert_not_awaited()
