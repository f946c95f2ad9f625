"""
Escalation Infrastructure Repositories
======================================

Concrete implementations of repository interfaces using SQLAlchemy.

Every write opens its own session and transaction, so one ticket's
escalation commits or rolls back independently of every other ticket in
the same run.
"""

from typing import Any, Dict, List, Optional
from datetime import datetime

from sqlalchemy import select, update, and_, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from escalation.application import ITicketRepository
from escalation.domain import EscalationDecision, Ticket, coerce_datetime
from escalation.infrastructure.models import CategoryModel, TicketActivityModel, TicketModel
from config import ActivityAction, TERMINAL_STATUSES
from core import RepositoryException, ResourceNotFoundException
from shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


def _to_entity(model: TicketModel, category_owner_id: Optional[str] = None) -> Ticket:
    """Map an ORM row (plus its category owner) to the domain entity."""
    return Ticket(
        id=model.id,
        status=model.status,
        title=model.title or "",
        description=model.description or "",
        category_id=model.category_id,
        category_owner_id=category_owner_id,
        created_by=model.created_by,
        assigned_to=model.assigned_to,
        created_at=coerce_datetime(model.created_at),
        updated_at=coerce_datetime(model.updated_at),
        resolution_due_at=coerce_datetime(model.resolution_due_at),
        acknowledgement_due_at=coerce_datetime(model.acknowledgement_due_at),
        acknowledged_at=coerce_datetime(model.acknowledged_at),
        escalation_level=model.escalation_level or 0,
        escalated_at=coerce_datetime(model.escalated_at),
        metadata=dict(model.ticket_metadata or {}),
    )


def _escalation_metadata(
    metadata: Optional[Dict[str, Any]],
    previous_assignee: Optional[str]
) -> Dict[str, Any]:
    """Record who held the ticket before the escalation moved it."""
    merged = dict(metadata or {})
    merged.pop("previous_assigned_to", None)
    merged["previousAssignedTo"] = previous_assignee
    return merged


class SQLAlchemyTicketRepository(ITicketRepository):
    """
    SQLAlchemy implementation of ticket repository.

    Takes a session factory rather than a session: reads use a short-lived
    session, writes commit per ticket.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    @staticmethod
    def _base_query():
        return select(TicketModel, CategoryModel.owner_id).outerjoin(
            CategoryModel, TicketModel.category_id == CategoryModel.id
        )

    async def _fetch(self, stmt) -> List[Ticket]:
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                rows = result.all()
        except SQLAlchemyError as e:
            raise RepositoryException(f"Failed to load tickets: {e}") from e

        tickets = []
        for model, owner_id in rows:
            try:
                tickets.append(_to_entity(model, owner_id))
            except ValueError as e:
                logger.warning(
                    "Skipping malformed ticket row",
                    extra={"ticket_id": model.id, "error": str(e)}
                )
        return tickets

    async def get_by_id(self, ticket_id: int) -> Optional[Ticket]:
        """Get ticket by ID."""
        tickets = await self._fetch(self._base_query().where(TicketModel.id == ticket_id))
        return tickets[0] if tickets else None

    async def list(
        self,
        filters: dict,
        limit: Optional[int] = 100,
        offset: int = 0
    ) -> List[Ticket]:
        """List tickets with filters (status, category_id, assigned_to, created_by)."""
        stmt = self._base_query()

        conditions = []
        if "status" in filters:
            status_list = filters["status"]
            if isinstance(status_list, list):
                conditions.append(TicketModel.status.in_(status_list))
            else:
                conditions.append(TicketModel.status == status_list)

        if "category_id" in filters:
            conditions.append(TicketModel.category_id == filters["category_id"])

        if "assigned_to" in filters:
            conditions.append(TicketModel.assigned_to == filters["assigned_to"])

        if "created_by" in filters:
            conditions.append(TicketModel.created_by == filters["created_by"])

        if conditions:
            stmt = stmt.where(and_(*conditions))

        stmt = stmt.order_by(TicketModel.created_at.desc())
        if limit is not None:
            stmt = stmt.limit(limit)
        if offset:
            stmt = stmt.offset(offset)

        return await self._fetch(stmt)

    async def list_escalation_candidates(self) -> List[Ticket]:
        """Non-terminal tickets with a resolution or open acknowledgement deadline, oldest first."""
        stmt = (
            self._base_query()
            .where(
                TicketModel.status.not_in(TERMINAL_STATUSES),
                or_(
                    TicketModel.resolution_due_at.is_not(None),
                    and_(
                        TicketModel.acknowledgement_due_at.is_not(None),
                        TicketModel.acknowledged_at.is_(None),
                    ),
                ),
            )
            .order_by(TicketModel.id)
        )
        return await self._fetch(stmt)

    async def list_due_between(self, start: datetime, end: datetime) -> List[Ticket]:
        """Non-terminal tickets whose resolution deadline falls in [start, end)."""
        stmt = (
            self._base_query()
            .where(
                TicketModel.status.not_in(TERMINAL_STATUSES),
                TicketModel.resolution_due_at >= start,
                TicketModel.resolution_due_at < end,
            )
            .order_by(TicketModel.resolution_due_at, TicketModel.id)
        )
        return await self._fetch(stmt)

    async def apply_escalation(
        self,
        ticket_id: int,
        decision: EscalationDecision,
        now: datetime,
        actor_id: Optional[str] = None,
        note: Optional[str] = None
    ) -> bool:
        """
        Increment the level only if it still equals the level we evaluated.

        Assignee, pushed deadlines, ``previousAssignedTo`` metadata and the
        activity row are written in the same transaction as the level.
        """
        current = (
            select(TicketModel.assigned_to, TicketModel.ticket_metadata)
            .where(
                TicketModel.id == ticket_id,
                TicketModel.escalation_level == decision.current_level,
            )
            .with_for_update()
        )

        try:
            async with self._session_factory() as session:
                async with session.begin():
                    row = (await session.execute(current)).first()
                    if row is None:
                        return False
                    previous_assignee, metadata = row

                    values: Dict[Any, Any] = {
                        TicketModel.escalation_level: decision.next_level,
                        TicketModel.escalated_at: now,
                        TicketModel.updated_at: now,
                    }
                    if decision.next_assignee is not None:
                        values[TicketModel.assigned_to] = decision.next_assignee
                        if decision.next_assignee != previous_assignee:
                            values[TicketModel.ticket_metadata] = _escalation_metadata(
                                metadata, previous_assignee
                            )
                    if decision.next_resolution_due_at is not None:
                        values[TicketModel.resolution_due_at] = decision.next_resolution_due_at
                    if decision.next_acknowledgement_due_at is not None:
                        values[TicketModel.acknowledgement_due_at] = decision.next_acknowledgement_due_at

                    stmt = (
                        update(TicketModel)
                        .where(
                            TicketModel.id == ticket_id,
                            TicketModel.escalation_level == decision.current_level,
                        )
                        .values(values)
                        .execution_options(synchronize_session=False)
                    )
                    result = await session.execute(stmt)
                    if result.rowcount == 0:
                        return False

                    details: Dict[str, Any] = {
                        "from_level": decision.current_level,
                        "to_level": decision.next_level,
                        "escalated_to": decision.next_assignee,
                        "previous_assignee": previous_assignee,
                        "reason": decision.reason,
                    }
                    if decision.next_resolution_due_at is not None:
                        details["new_due_at"] = decision.next_resolution_due_at.isoformat()
                    if note:
                        details["note"] = note

                    session.add(TicketActivityModel(
                        ticket_id=ticket_id,
                        user_id=actor_id,
                        action=ActivityAction.ESCALATED,
                        details=details,
                        created_at=now,
                    ))
        except SQLAlchemyError as e:
            raise RepositoryException(
                f"Failed to escalate ticket {ticket_id}",
                {"error": str(e), "next_level": decision.next_level}
            ) from e

        return True

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
        """Write the deadline, metadata and status with one activity row."""
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    model = await session.get(TicketModel, ticket_id)
                    if model is None:
                        raise ResourceNotFoundException("Ticket", str(ticket_id))

                    model.resolution_due_at = resolution_due_at
                    model.ticket_metadata = metadata
                    model.status = status
                    model.updated_at = now

                    session.add(TicketActivityModel(
                        ticket_id=ticket_id,
                        user_id=actor_id,
                        action=action,
                        details=details,
                        created_at=now,
                    ))
        except SQLAlchemyError as e:
            raise RepositoryException(
                f"Failed to update TAT for ticket {ticket_id}",
                {"error": str(e)}
            ) from e

        logger.debug("TAT persisted", extra={"ticket_id": ticket_id, "action": action})

        ticket = await self.get_by_id(ticket_id)
        if ticket is None:
            raise ResourceNotFoundException("Ticket", str(ticket_id))
        return ticket

    async def list_activity(self, ticket_id: int) -> List[TicketActivityModel]:
        """Audit rows for one ticket, oldest first."""
        stmt = (
            select(TicketActivityModel)
            .where(TicketActivityModel.ticket_id == ticket_id)
            .order_by(TicketActivityModel.id)
        )
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                return list(result.scalars().all())
        except SQLAlchemyError as e:
            raise RepositoryException(f"Failed to load activity: {e}") from e
