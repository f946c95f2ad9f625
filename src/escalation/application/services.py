"""
Escalation Application Services
===============================

Application services orchestrate business logic and coordinate between
domain entities and repositories.

Following SOLID principles:
- Single Responsibility: Each service has one clear purpose
- Dependency Inversion: Depend on abstractions (repositories), not concrete implementations
"""

from abc import ABC, abstractmethod
from datetime import datetime, time, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple
from uuid import uuid4

from config import (
    ActivityAction, DecisionReason, OutcomeType, TicketStatus,
    TAT_EXTENSION_ESCALATION_THRESHOLDS, TAT_EXTENSION_WARNING_THRESHOLD
)
from core import (
    AuthorizationException, DomainException,
    ResourceNotFoundException, ValidationException
)
from escalation.domain import (
    Actor, EscalationConfig, EscalationDecision, EscalationEvent,
    EscalationPolicy, EscalationRunResult, TATCalculator, TATExtension,
    TATReminderResult, TATSnapshot, Ticket, TicketOutcome, TicketStats,
    coerce_datetime, compute_stats, normalize_tat_metadata
)
from shared.infrastructure.logging import LoggerLike, get_logger, get_run_logger

logger = get_logger(__name__)


# ========== Repository Interfaces (Dependency Inversion) ==========

class ITicketRepository(ABC):
    """Interface for ticket data access."""

    @abstractmethod
    async def get_by_id(self, ticket_id: int) -> Optional[Ticket]:
        """Get ticket by ID."""

    @abstractmethod
    async def list(
        self,
        filters: dict,
        limit: Optional[int] = 100,
        offset: int = 0
    ) -> List[Ticket]:
        """List tickets with filters."""

    @abstractmethod
    async def list_escalation_candidates(self) -> List[Ticket]:
        """Non-terminal tickets with a resolution or unacknowledged acknowledgement deadline."""

    @abstractmethod
    async def list_due_between(self, start: datetime, end: datetime) -> List[Ticket]:
        """Non-terminal tickets whose resolution deadline falls in [start, end)."""

    @abstractmethod
    async def apply_escalation(
        self,
        ticket_id: int,
        decision: EscalationDecision,
        now: datetime,
        actor_id: Optional[str] = None,
        note: Optional[str] = None
    ) -> bool:
        """
        Persist one escalation as a single-row compare-and-set.

        Returns False when the stored level no longer equals
        ``decision.current_level``. ``actor_id`` is None for automatic runs;
        ``note`` lands in the activity details.
        """

    @abstractmethod
    async def update_tat(
        self,
        ticket_id: int,
        resolution_due_at: datetime,
        metadata: Dict[str, Any],
        status: str,
        action: str,
        actor_id: str,
        details: Dict[str, Any],
        now: datetime
    ) -> Ticket:
        """Write a new deadline/metadata and the matching activity row."""


class INotificationDispatcher(ABC):
    """Interface for escalation notification delivery."""

    @abstractmethod
    async def notify_escalation(self, event: EscalationEvent) -> bool:
        """Deliver one escalation event. Returns False on failure."""

    @abstractmethod
    async def notify_tat_reminder(self, ticket: Ticket) -> bool:
        """Remind the assignee that a ticket is due today. Returns False on failure."""


class IEscalationConfigProvider(ABC):
    """Interface for escalation configuration access."""

    @abstractmethod
    def get_config(self) -> EscalationConfig:
        """Get current escalation configuration."""


# ========== Helpers ==========

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


async def dispatch_escalation_notification(
    notifier: INotificationDispatcher,
    ticket: Ticket,
    decision: EscalationDecision,
    log: LoggerLike
) -> bool:
    """Best-effort notification; failures are logged, never raised."""
    event = EscalationEvent(
        ticket_id=ticket.id,
        escalation_level=decision.next_level,
        assignee=decision.next_assignee,
        previous_level=decision.current_level,
        reason=decision.reason,
        title=ticket.title,
        status=ticket.status,
        resolution_due_at=ticket.resolution_due_at,
        channels=decision.notify_channels,
    )
    try:
        delivered = await notifier.notify_escalation(event)
    except Exception as e:
        log.error(
            "Escalation notification raised",
            extra={"ticket_id": ticket.id, "error": str(e)}
        )
        return False

    if not delivered:
        log.warning(
            "Escalation notification not delivered",
            extra={"ticket_id": ticket.id, "escalation_level": decision.next_level}
        )
    return bool(delivered)


# ========== Application Services ==========

class EscalationRunner:
    """
    Batch escalation pass: LOAD -> EVALUATE -> APPLY -> NOTIFY -> SUMMARIZE.

    No lock is taken across the run. Each write re-checks the stored level,
    so overlapping runs cannot double-escalate a ticket.
    """

    def __init__(
        self,
        ticket_repository: ITicketRepository,
        notifier: INotificationDispatcher,
        config_provider: IEscalationConfigProvider
    ):
        self._ticket_repo = ticket_repository
        self._notifier = notifier
        self._config_provider = config_provider

    async def run(self, now: Optional[datetime] = None) -> EscalationRunResult:
        """
        Run one escalation pass over all candidate tickets.

        Raises whatever the repository raises while loading; per-ticket
        failures after that are recorded in the result instead.
        """
        now = now or _utcnow()
        result = EscalationRunResult(run_id=uuid4().hex[:12], started_at=now)
        log = get_run_logger(result.run_id)

        # One config snapshot per run, even if the file reloads mid-run
        policy = EscalationPolicy(self._config_provider.get_config())

        tickets = await self._ticket_repo.list_escalation_candidates()
        log.info("Escalation run started", extra={"candidates": len(tickets)})

        for ticket in tickets:
            result.record(await self._process(ticket, policy, now, log))

        result.finish()
        log.info(
            "Escalation run completed",
            extra={
                "evaluated": result.evaluated,
                "escalated": result.escalated,
                "acknowledgement": result.acknowledgement,
                "resolution": result.resolution,
                "failed": result.failed,
                "skipped": result.skipped,
            }
        )
        return result

    async def _process(
        self,
        ticket: Ticket,
        policy: EscalationPolicy,
        now: datetime,
        log: LoggerLike
    ) -> TicketOutcome:
        snapshot = TATCalculator.compute_snapshot(ticket, now)
        decision = policy.evaluate(ticket, snapshot, now)

        if not decision.escalate:
            return TicketOutcome(ticket.id, OutcomeType.NOT_ELIGIBLE, decision)

        try:
            applied = await self._ticket_repo.apply_escalation(ticket.id, decision, now)
        except Exception as e:
            log.error(
                "Failed to apply escalation",
                extra={"ticket_id": ticket.id, "next_level": decision.next_level, "error": str(e)}
            )
            return TicketOutcome(ticket.id, OutcomeType.FAILED, decision, error=str(e))

        if not applied:
            log.info(
                "Ticket changed since load, skipping",
                extra={"ticket_id": ticket.id, "expected_level": decision.current_level}
            )
            return TicketOutcome(ticket.id, OutcomeType.STALE, decision)

        log.warning(
            "Ticket escalated",
            extra={
                "ticket_id": ticket.id,
                "escalation_level": decision.next_level,
                "escalated_to": decision.next_assignee,
                "due_at": snapshot.deadline.isoformat() if snapshot.deadline else None,
            }
        )
        notified = await dispatch_escalation_notification(self._notifier, ticket, decision, log)
        return TicketOutcome(ticket.id, OutcomeType.ESCALATED, decision, notified=notified)


class EscalationService:
    """Manual escalation of a single ticket by a student or staff member."""

    def __init__(
        self,
        ticket_repository: ITicketRepository,
        notifier: INotificationDispatcher,
        config_provider: IEscalationConfigProvider
    ):
        self._ticket_repo = ticket_repository
        self._notifier = notifier
        self._config_provider = config_provider

    async def escalate_ticket(
        self,
        ticket_id: int,
        actor: Actor,
        reason: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> Tuple[EscalationDecision, bool]:
        """
        Bump a ticket one level regardless of its deadline.

        Returns:
            The applied decision and whether the notification went out
        """
        now = now or _utcnow()

        ticket = await self._ticket_repo.get_by_id(ticket_id)
        if ticket is None:
            raise ResourceNotFoundException("Ticket", str(ticket_id))

        if actor.is_student and ticket.created_by != actor.user_id:
            raise AuthorizationException(
                "You can only escalate your own tickets",
                authenticated=True
            )

        policy = EscalationPolicy(self._config_provider.get_config())
        decision = policy.evaluate_manual(ticket, now)
        if not decision.escalate:
            raise ValidationException(
                f"Ticket {ticket_id} cannot be escalated",
                {"reason": decision.reason, "escalation_level": decision.current_level}
            )

        applied = await self._ticket_repo.apply_escalation(
            ticket_id, decision, now,
            actor_id=actor.user_id,
            note=reason or "Manual escalation"
        )
        if not applied:
            raise DomainException(
                f"Ticket {ticket_id} was escalated concurrently, retry",
                {"expected_level": decision.current_level}
            )

        logger.info(
            "Ticket escalated manually",
            extra={
                "ticket_id": ticket_id,
                "user_id": actor.user_id,
                "escalation_level": decision.next_level,
                "reason": reason,
            }
        )
        notified = await dispatch_escalation_notification(self._notifier, ticket, decision, logger)
        return decision, notified


class TATService:
    """Read, set and extend a ticket's turn-around time."""

    def __init__(
        self,
        ticket_repository: ITicketRepository,
        notifier: INotificationDispatcher,
        config_provider: IEscalationConfigProvider
    ):
        self._ticket_repo = ticket_repository
        self._notifier = notifier
        self._config_provider = config_provider

    async def _get_ticket(self, ticket_id: int) -> Ticket:
        ticket = await self._ticket_repo.get_by_id(ticket_id)
        if ticket is None:
            raise ResourceNotFoundException("Ticket", str(ticket_id))
        return ticket

    @staticmethod
    def _require_staff(actor: Actor) -> None:
        if not actor.is_staff:
            raise AuthorizationException(
                "Only staff can change a ticket's TAT",
                authenticated=True
            )

    async def get_snapshot(
        self,
        ticket_id: int,
        now: Optional[datetime] = None
    ) -> Tuple[Ticket, TATSnapshot]:
        ticket = await self._get_ticket(ticket_id)
        return ticket, TATCalculator.compute_snapshot(ticket, now)

    async def set_tat(
        self,
        ticket_id: int,
        actor: Actor,
        tat: str,
        mark_in_progress: bool = False,
        now: Optional[datetime] = None
    ) -> Tuple[Ticket, TATSnapshot]:
        """
        Set a fresh deadline of ``tat`` business hours from now.

        Optionally moves the ticket to in_progress.
        """
        self._require_staff(actor)
        now = now or _utcnow()
        hours = TATCalculator.parse_tat(tat)
        ticket = await self._get_ticket(ticket_id)

        deadline = TATCalculator.add_business_hours(now, hours)
        metadata = dict(ticket.metadata or {})
        for legacy in ("tat_set_at", "tat_set_by"):
            metadata.pop(legacy, None)
        metadata.update({
            "tatSetAt": now.isoformat(),
            "tatSetBy": actor.user_id,
            "tat": tat,
            "tatDate": deadline.isoformat(),
        })

        status = ticket.status
        status_changed = mark_in_progress and status != TicketStatus.IN_PROGRESS
        if status_changed:
            status = TicketStatus.IN_PROGRESS

        updated = await self._ticket_repo.update_tat(
            ticket_id,
            resolution_due_at=deadline,
            metadata=metadata,
            status=status,
            action=ActivityAction.TAT_SET,
            actor_id=actor.user_id,
            details={
                "tat_string": tat,
                "hours": hours,
                "deadline": deadline.isoformat(),
                "status_changed": status_changed,
            },
            now=now,
        )

        logger.info(
            "TAT set",
            extra={"ticket_id": ticket_id, "user_id": actor.user_id, "tat": tat, "hours": hours}
        )
        return updated, TATCalculator.compute_snapshot(updated, now)

    async def extend_tat(
        self,
        ticket_id: int,
        actor: Actor,
        hours: int,
        reason: str,
        now: Optional[datetime] = None
    ) -> Tuple[Ticket, TATSnapshot, Optional[str]]:
        """
        Push the existing deadline out by ``hours`` business hours.

        From the third extension on the result carries a warning, and the
        3rd, 5th and 7th extensions escalate the ticket one level.

        Returns:
            The updated ticket, its snapshot and the warning (or None)
        """
        self._require_staff(actor)
        if hours <= 0:
            raise ValidationException("Extension hours must be positive", {"hours": hours})

        now = now or _utcnow()
        ticket = await self._get_ticket(ticket_id)

        if ticket.is_terminal:
            raise ValidationException("Cannot extend TAT for resolved or closed tickets")
        if ticket.resolution_due_at is None:
            raise ValidationException("Ticket has no resolution deadline to extend")

        new_deadline = TATCalculator.add_business_hours(ticket.resolution_due_at, hours)

        metadata = dict(ticket.metadata or {})
        history = list(normalize_tat_metadata(metadata).tat_extensions)
        history.append(TATExtension(
            extended_at=now,
            extended_by=actor.user_id,
            hours=hours,
            reason=reason,
            previous_due_at=ticket.resolution_due_at,
            new_due_at=new_deadline,
        ))
        metadata.pop("tat_extensions", None)
        metadata["tatExtensions"] = [e.to_metadata() for e in history]
        count = len(history)

        if count > TAT_EXTENSION_WARNING_THRESHOLD:
            logger.warning(
                "Ticket TAT extended multiple times",
                extra={"ticket_id": ticket_id, "tat_extensions": count}
            )

        updated = await self._ticket_repo.update_tat(
            ticket_id,
            resolution_due_at=new_deadline,
            metadata=metadata,
            status=ticket.status,
            action=ActivityAction.TAT_EXTENDED,
            actor_id=actor.user_id,
            details={
                "hours": hours,
                "reason": reason,
                "previous_due_at": ticket.resolution_due_at.isoformat(),
                "new_due_at": new_deadline.isoformat(),
                "extension_count": count,
            },
            now=now,
        )

        if count in TAT_EXTENSION_ESCALATION_THRESHOLDS:
            updated = await self._escalate_on_extension(updated, count, now)

        warning = None
        if count >= TAT_EXTENSION_WARNING_THRESHOLD:
            thresholds = ", ".join(str(n) for n in TAT_EXTENSION_ESCALATION_THRESHOLDS[:-1])
            warning = (
                f"This is TAT extension #{count}. Auto-escalations occur at "
                f"{thresholds}, and {TAT_EXTENSION_ESCALATION_THRESHOLDS[-1]} extensions."
            )

        return updated, TATCalculator.compute_snapshot(updated, now), warning

    async def _escalate_on_extension(self, ticket: Ticket, count: int, now: datetime) -> Ticket:
        """Escalate through the same compare-and-set as the runner; a lost race is logged only."""
        policy = EscalationPolicy(self._config_provider.get_config())
        decision = policy.evaluate_manual(ticket, now, reason=DecisionReason.TAT_EXTENSION_LIMIT)
        if not decision.escalate:
            logger.info(
                "TAT extension limit reached, ticket not escalated",
                extra={"ticket_id": ticket.id, "tat_extensions": count, "reason": decision.reason}
            )
            return ticket

        applied = await self._ticket_repo.apply_escalation(
            ticket.id, decision, now,
            note=f"TAT extension limit reached (extension #{count})"
        )
        if not applied:
            logger.info(
                "Ticket changed before extension escalation, skipping",
                extra={"ticket_id": ticket.id, "expected_level": decision.current_level}
            )
            return ticket

        logger.warning(
            "Ticket escalated after repeated TAT extensions",
            extra={
                "ticket_id": ticket.id,
                "escalation_level": decision.next_level,
                "tat_extensions": count,
            }
        )
        await dispatch_escalation_notification(self._notifier, ticket, decision, logger)
        return await self._get_ticket(ticket.id)


class TATReminderService:
    """Daily reminder for tickets whose resolution deadline falls today."""

    def __init__(self, ticket_repository: ITicketRepository, notifier: INotificationDispatcher):
        self._ticket_repo = ticket_repository
        self._notifier = notifier

    async def send_due_today(self, now: Optional[datetime] = None) -> TATReminderResult:
        """
        Remind assignees of tickets due on the current UTC day.

        Weekends are skipped. Delivery is best-effort per ticket.
        """
        now = coerce_datetime(now) or _utcnow()
        today = now.astimezone(timezone.utc).date()
        result = TATReminderResult(day=today)

        if today.weekday() >= 5:
            result.skipped_weekend = True
            logger.info("Skipping TAT reminders on weekend", extra={"date": today.isoformat()})
            return result

        start = datetime.combine(today, time.min, tzinfo=timezone.utc)
        tickets = await self._ticket_repo.list_due_between(start, start + timedelta(days=1))
        result.ticket_ids = [t.id for t in tickets]

        for ticket in tickets:
            try:
                delivered = await self._notifier.notify_tat_reminder(ticket)
            except Exception as e:
                logger.error(
                    "TAT reminder raised",
                    extra={"ticket_id": ticket.id, "error": str(e)}
                )
                continue
            if delivered:
                result.reminded += 1

        logger.info(
            "TAT reminders sent",
            extra={"date": today.isoformat(), "count": result.count, "reminded": result.reminded}
        )
        return result


class StatsService:
    """Dashboard counters over a filtered ticket set."""

    def __init__(self, ticket_repository: ITicketRepository):
        self._ticket_repo = ticket_repository

    async def get_stats(self, filters: Optional[dict] = None) -> TicketStats:
        tickets = await self._ticket_repo.list(filters or {}, limit=None)
        return compute_stats(tickets)
