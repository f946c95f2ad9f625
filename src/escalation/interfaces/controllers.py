"""
Escalation Controllers (API Routes)
===================================

FastAPI routes for the cron escalation trigger, TAT management, manual
escalation and dashboard stats.

Controllers are thin - they delegate to application services.
"""

import hmac
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request

from config import Settings, get_settings, VALID_ROLES
from core import AuthorizationException
from escalation.application import (
    EscalationRunner, EscalationService, TATService, TATReminderService, StatsService,
    ITicketRepository, INotificationDispatcher, IEscalationConfigProvider,
    TATUpdateRequest, ManualEscalationRequest, StatsQueryDTO,
    EscalationRunResponse, TATSnapshotResponse, TATExtensionResponse,
    ManualEscalationResponse, TATReminderResponse, StatsResponse, ErrorResponse
)
from escalation.domain import Actor, TATSnapshot, Ticket
from escalation.infrastructure import SQLAlchemyTicketRepository
from infrastructure.database import get_session_maker
from shared.infrastructure.logging import get_context_logger, get_logger, log_latency

logger = get_logger(__name__)
router = APIRouter(prefix="/api", tags=["Escalation"])


# ========== Example payloads for Swagger ==========

RUN_RESPONSE_EXAMPLE = {
    "message": "Escalation completed",
    "run_id": "3f9c0a51d2e4",
    "evaluated": 2,
    "escalated": 1,
    "acknowledgement": 0,
    "resolution": 1,
    "failed": 0,
    "skipped": 0,
    "details": [
        {
            "ticket_id": 101,
            "outcome": "escalated",
            "decision": {
                "escalate": True,
                "current_level": 0,
                "next_level": 1,
                "next_assignee": "user_committee_7",
                "reason": "overdue",
                "next_resolution_due_at": "2026-03-06T12:00:00Z"
            },
            "notified": True,
            "error": None
        },
        {
            "ticket_id": 102,
            "outcome": "not_eligible",
            "decision": {
                "escalate": False,
                "current_level": 0,
                "next_level": 0,
                "next_assignee": None,
                "reason": "not_overdue",
                "next_resolution_due_at": None
            },
            "notified": False,
            "error": None
        }
    ]
}

TAT_RESPONSE_EXAMPLE = {
    "ticket_id": 101,
    "status": "in_progress",
    "escalation_level": 0,
    "deadline": "2026-03-04T12:00:00Z",
    "expected_resolution": "2026-03-04T12:00:00Z",
    "is_overdue": False,
    "formatted_deadline": "Mar 04, 2026",
    "remaining_seconds": 86400.0,
    "tat": "2 days",
    "tat_set_at": "2026-03-02T12:00:00Z",
    "tat_set_by": "user_committee_7",
    "acknowledgement_deadline": None,
    "is_acknowledgement_overdue": False,
    "tat_extensions": [],
    "warning": None
}

REMINDER_RESPONSE_EXAMPLE = {
    "message": "TAT reminders sent",
    "date": "2026-03-04",
    "count": 2,
    "reminded": 2,
    "skipped_weekend": False,
    "ticket_ids": [101, 104]
}

UNAUTHORIZED_EXAMPLE = {"error": "Unauthorized"}


# ========== Dependencies ==========

def get_ticket_repository() -> ITicketRepository:
    """Get ticket repository bound to the application's session factory."""
    return SQLAlchemyTicketRepository(get_session_maker())


def get_notifier(request: Request) -> INotificationDispatcher:
    return request.app.state.notifier


def get_config_provider(request: Request) -> IEscalationConfigProvider:
    return request.app.state.config_manager


def get_escalation_runner(
    ticket_repo: ITicketRepository = Depends(get_ticket_repository),
    notifier: INotificationDispatcher = Depends(get_notifier),
    config_provider: IEscalationConfigProvider = Depends(get_config_provider)
) -> EscalationRunner:
    return EscalationRunner(ticket_repo, notifier, config_provider)


def get_escalation_service(
    ticket_repo: ITicketRepository = Depends(get_ticket_repository),
    notifier: INotificationDispatcher = Depends(get_notifier),
    config_provider: IEscalationConfigProvider = Depends(get_config_provider)
) -> EscalationService:
    return EscalationService(ticket_repo, notifier, config_provider)


def get_tat_service(
    ticket_repo: ITicketRepository = Depends(get_ticket_repository),
    notifier: INotificationDispatcher = Depends(get_notifier),
    config_provider: IEscalationConfigProvider = Depends(get_config_provider)
) -> TATService:
    return TATService(ticket_repo, notifier, config_provider)


def get_tat_reminder_service(
    ticket_repo: ITicketRepository = Depends(get_ticket_repository),
    notifier: INotificationDispatcher = Depends(get_notifier)
) -> TATReminderService:
    return TATReminderService(ticket_repo, notifier)


def get_stats_service(
    ticket_repo: ITicketRepository = Depends(get_ticket_repository)
) -> StatsService:
    return StatsService(ticket_repo)


def verify_cron_secret(
    x_cron_secret: Optional[str] = Header(None),
    authorization: Optional[str] = Header(None),
    app_settings: Settings = Depends(get_settings)
) -> None:
    """
    Check the shared cron secret.

    Accepts ``X-Cron-Secret: <secret>`` or ``Authorization: Bearer <secret>``.
    With no secret configured the check is bypassed in development only.
    """
    expected = app_settings.cron_secret
    if not expected:
        if app_settings.environment == "development":
            logger.warning("CRON_SECRET not set, allowing cron request in development")
            return
        logger.error("CRON_SECRET not set, refusing cron request")
        raise AuthorizationException()

    provided = x_cron_secret
    if not provided and authorization and authorization.startswith("Bearer "):
        provided = authorization[len("Bearer "):]

    if not provided or not hmac.compare_digest(provided.encode(), expected.encode()):
        raise AuthorizationException()


def get_actor(
    x_user_id: Optional[str] = Header(None),
    x_user_role: Optional[str] = Header(None)
) -> Actor:
    """Caller identity forwarded by the gateway from the identity provider."""
    if not x_user_id or not x_user_role:
        raise AuthorizationException()

    role = x_user_role.strip().lower()
    if role not in VALID_ROLES:
        raise AuthorizationException("Unauthorized", {"role": x_user_role})
    return Actor(user_id=x_user_id, role=role)


def _snapshot_response(
    ticket: Ticket,
    snapshot: TATSnapshot,
    warning: Optional[str] = None
) -> TATSnapshotResponse:
    return TATSnapshotResponse(
        ticket_id=ticket.id,
        status=ticket.status,
        escalation_level=ticket.escalation_level,
        deadline=snapshot.deadline,
        expected_resolution=snapshot.expected_resolution,
        is_overdue=snapshot.is_overdue,
        formatted_deadline=snapshot.formatted_deadline,
        remaining_seconds=snapshot.remaining_seconds,
        tat=snapshot.tat,
        tat_set_at=snapshot.tat_set_at,
        tat_set_by=snapshot.tat_set_by,
        acknowledgement_deadline=snapshot.acknowledgement_deadline,
        is_acknowledgement_overdue=snapshot.is_acknowledgement_overdue,
        tat_extensions=[
            TATExtensionResponse(
                extended_at=e.extended_at,
                extended_by=e.extended_by,
                hours=e.hours,
                reason=e.reason,
                previous_due_at=e.previous_due_at,
                new_due_at=e.new_due_at,
            )
            for e in snapshot.tat_extensions
        ],
        warning=warning,
    )


# ========== Route Handlers ==========

@router.get(
    "/cron/escalate-tickets",
    response_model=EscalationRunResponse,
    summary="Run an escalation pass",
    description="""
    Escalate every overdue, non-terminal ticket one level.

    Called by the platform cron (default every 30 minutes). Authenticate with
    `X-Cron-Secret: <secret>` or `Authorization: Bearer <secret>`.

    Each ticket is written with a compare-and-set on its escalation level, so
    overlapping runs never double-escalate. Tickets that changed since they
    were loaded are reported as `stale` and counted in `skipped`.
    """,
    responses={
        200: {"description": "Run summary", "content": {"application/json": {"example": RUN_RESPONSE_EXAMPLE}}},
        401: {"description": "Missing or invalid cron secret", "content": {"application/json": {"example": UNAUTHORIZED_EXAMPLE}}},
        500: {"description": "Tickets could not be loaded", "model": ErrorResponse}
    },
    dependencies=[Depends(verify_cron_secret)]
)
async def escalate_tickets(
    request: Request,
    runner: EscalationRunner = Depends(get_escalation_runner)
):
    log = get_context_logger(__name__, getattr(request.state, "correlation_id", None))

    with log_latency(log, "escalation_run", trigger="cron"):
        result = await runner.run()

    return EscalationRunResponse(message="Escalation completed", **result.to_dict())


@router.get(
    "/cron/tat-reminders",
    response_model=TATReminderResponse,
    summary="Send TAT reminders",
    description="""
    Remind assignees of every non-terminal ticket whose resolution deadline
    falls on the current UTC day. Nothing is sent on Saturdays and Sundays.

    Called once a day by the platform cron; same secret as the escalation
    trigger. Disable with `ENABLE_TAT_REMINDERS=false`.
    """,
    responses={
        200: {"description": "Reminder summary", "content": {"application/json": {"example": REMINDER_RESPONSE_EXAMPLE}}},
        401: {"description": "Missing or invalid cron secret", "content": {"application/json": {"example": UNAUTHORIZED_EXAMPLE}}}
    },
    dependencies=[Depends(verify_cron_secret)]
)
async def send_tat_reminders(
    request: Request,
    app_settings: Settings = Depends(get_settings),
    reminder_service: TATReminderService = Depends(get_tat_reminder_service)
):
    if not app_settings.enable_tat_reminders:
        return TATReminderResponse(
            message="TAT reminders disabled",
            date=datetime.now(timezone.utc).date().isoformat()
        )

    log = get_context_logger(__name__, getattr(request.state, "correlation_id", None))
    with log_latency(log, "tat_reminders", trigger="cron"):
        result = await reminder_service.send_due_today()

    message = "Weekend, no reminders sent" if result.skipped_weekend else "TAT reminders sent"
    return TATReminderResponse(message=message, **result.to_dict())


@router.get(
    "/tickets/stats",
    response_model=StatsResponse,
    summary="Get ticket stats",
    description="""
    Count tickets by status plus the number currently escalated.

    **Query Parameters:**
    - `status`: open, in_progress, awaiting_student_response, resolved, closed
    - `category_id`: Restrict to one category
    - `assigned_to`: Restrict to one assignee

    Students only ever see counts over their own tickets.
    """
)
async def get_stats(
    query: StatsQueryDTO = Depends(),
    actor: Actor = Depends(get_actor),
    stats_service: StatsService = Depends(get_stats_service)
):
    filters = query.to_filters()
    if actor.is_student:
        filters["created_by"] = actor.user_id

    stats = await stats_service.get_stats(filters)
    return StatsResponse(**stats.to_dict())


@router.get(
    "/tickets/{ticket_id}/tat",
    response_model=TATSnapshotResponse,
    summary="Get ticket TAT",
    responses={
        200: {"description": "TAT snapshot", "content": {"application/json": {"example": TAT_RESPONSE_EXAMPLE}}},
        404: {"description": "Ticket not found", "model": ErrorResponse}
    }
)
async def get_ticket_tat(
    ticket_id: int,
    actor: Actor = Depends(get_actor),
    tat_service: TATService = Depends(get_tat_service)
):
    ticket, snapshot = await tat_service.get_snapshot(ticket_id)
    if actor.is_student and ticket.created_by != actor.user_id:
        raise AuthorizationException("You can only view your own tickets", authenticated=True)
    return _snapshot_response(ticket, snapshot)


@router.post(
    "/tickets/{ticket_id}/tat",
    response_model=TATSnapshotResponse,
    summary="Set or extend ticket TAT",
    description="""
    Set a new TAT (`{"tat": "2 days", "mark_in_progress": true}`) or extend
    the current deadline (`{"hours": 24, "reason": "Waiting on vendor"}`).

    Durations count business hours only; weekends are skipped.
    Staff roles only. From the third extension on the response carries a
    `warning`; the 3rd, 5th and 7th extensions escalate the ticket one level.
    """,
    responses={
        400: {"description": "Invalid TAT or ticket state", "model": ErrorResponse},
        403: {"description": "Caller may not change TAT", "model": ErrorResponse},
        404: {"description": "Ticket not found", "model": ErrorResponse}
    }
)
async def update_ticket_tat(
    ticket_id: int,
    body: TATUpdateRequest,
    actor: Actor = Depends(get_actor),
    tat_service: TATService = Depends(get_tat_service)
):
    if body.is_extension:
        ticket, snapshot, warning = await tat_service.extend_tat(
            ticket_id, actor, body.hours, body.reason
        )
        return _snapshot_response(ticket, snapshot, warning)

    ticket, snapshot = await tat_service.set_tat(
        ticket_id, actor, body.tat, mark_in_progress=body.mark_in_progress
    )
    return _snapshot_response(ticket, snapshot)


@router.post(
    "/tickets/{ticket_id}/escalate",
    response_model=ManualEscalationResponse,
    summary="Escalate a ticket manually",
    description="""
    Move a ticket up one escalation level now, regardless of its deadline.

    Students may escalate their own tickets; staff may escalate any ticket.
    Resolved/closed tickets and tickets at the top level are rejected.
    """,
    responses={
        400: {"description": "Ticket cannot be escalated", "model": ErrorResponse},
        403: {"description": "Not the ticket owner", "model": ErrorResponse},
        404: {"description": "Ticket not found", "model": ErrorResponse},
        409: {"description": "Ticket escalated concurrently", "model": ErrorResponse}
    }
)
async def escalate_ticket(
    ticket_id: int,
    body: Optional[ManualEscalationRequest] = None,
    actor: Actor = Depends(get_actor),
    escalation_service: EscalationService = Depends(get_escalation_service)
):
    decision, notified = await escalation_service.escalate_ticket(
        ticket_id, actor, reason=body.reason if body else None
    )
    return ManualEscalationResponse(
        ticket_id=ticket_id,
        escalation_level=decision.next_level,
        escalated_to=decision.next_assignee,
        notified=notified,
    )


# Export router
escalation_router = router
