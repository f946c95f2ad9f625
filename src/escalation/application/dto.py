"""
Escalation Application DTOs
===========================

Data Transfer Objects for the escalation API layer.

These Pydantic models handle serialization/deserialization and validation
for API requests and responses.
"""

from pydantic import AliasChoices, BaseModel, Field, model_validator
from typing import List, Optional, Any, Literal
from datetime import datetime


# ========== Type Aliases for Literals ==========
TicketStatusStr = Literal["open", "in_progress", "awaiting_student_response", "resolved", "closed"]
OutcomeStr = Literal["escalated", "not_eligible", "stale", "failed"]


# ========== Request DTOs ==========

class TATUpdateRequest(BaseModel):
    """
    Request model for setting or extending a ticket's TAT.

    Send ``tat`` to set a fresh deadline, or ``hours`` + ``reason`` to
    extend the current one.
    """
    tat: Optional[str] = Field(None, min_length=1, description='Duration such as "2 days"')
    mark_in_progress: bool = Field(
        default=False,
        validation_alias=AliasChoices("mark_in_progress", "markInProgress"),
        description="Move the ticket to in_progress"
    )
    hours: Optional[int] = Field(None, ge=1, le=168, description="Extension in business hours")
    reason: Optional[str] = Field(None, min_length=1, max_length=500, description="Extension reason")

    @model_validator(mode="after")
    def validate_mode(self) -> "TATUpdateRequest":
        """Exactly one of set (tat) or extend (hours) must be requested."""
        if self.tat is None and self.hours is None:
            raise ValueError("either 'tat' or 'hours' is required")
        if self.tat is not None and self.hours is not None:
            raise ValueError("'tat' and 'hours' cannot be combined")
        if self.hours is not None and not self.reason:
            raise ValueError("'reason' is required when extending TAT")
        return self

    @property
    def is_extension(self) -> bool:
        return self.hours is not None


class ManualEscalationRequest(BaseModel):
    """Request model for manual escalation."""
    reason: Optional[str] = Field(None, max_length=500, description="Why the ticket is escalated")


class StatsQueryDTO(BaseModel):
    """Query parameters for the stats endpoint."""
    status: Optional[TicketStatusStr] = None
    category_id: Optional[int] = None
    assigned_to: Optional[str] = None

    def to_filters(self) -> dict:
        return self.model_dump(exclude_none=True)


# ========== Response DTOs ==========

class EscalationDecisionResponse(BaseModel):
    """Response model for a policy decision."""
    escalate: bool
    current_level: int
    next_level: int
    next_assignee: Optional[str] = None
    reason: str
    next_resolution_due_at: Optional[datetime] = Field(None, description="Deadline written with the escalation")


class TicketOutcomeResponse(BaseModel):
    """Per-ticket entry of an escalation run."""
    ticket_id: int
    outcome: OutcomeStr
    decision: Optional[EscalationDecisionResponse] = None
    notified: bool = False
    error: Optional[str] = None


class EscalationRunResponse(BaseModel):
    """Response model for the cron escalation trigger."""
    message: str = Field(default="Escalation completed")
    run_id: str
    evaluated: int = Field(..., description="Candidate tickets evaluated")
    escalated: int = Field(..., description="Tickets whose level was incremented")
    acknowledgement: int = Field(0, description="Escalated for a missed acknowledgement deadline")
    resolution: int = Field(0, description="Escalated for a missed resolution deadline")
    failed: int = Field(..., description="Tickets whose write failed")
    skipped: int = Field(0, description="Tickets changed concurrently since load")
    details: List[TicketOutcomeResponse] = Field(default_factory=list)


class TATExtensionResponse(BaseModel):
    """One entry of a ticket's extension history."""
    extended_at: Optional[datetime] = None
    extended_by: Optional[str] = None
    hours: Optional[float] = None
    reason: Optional[str] = None
    previous_due_at: Optional[datetime] = None
    new_due_at: Optional[datetime] = None


class TATSnapshotResponse(BaseModel):
    """Response model for a ticket's TAT state."""
    ticket_id: int
    status: str
    escalation_level: int
    deadline: Optional[datetime] = Field(None, description="Resolution deadline")
    expected_resolution: Optional[datetime] = None
    is_overdue: bool
    formatted_deadline: str = Field(..., description='"Mon DD, YYYY" or "No deadline"')
    remaining_seconds: Optional[float] = Field(None, description="Negative once overdue")
    tat: Optional[Any] = None
    tat_set_at: Optional[datetime] = None
    tat_set_by: Optional[str] = None
    acknowledgement_deadline: Optional[datetime] = None
    is_acknowledgement_overdue: bool = False
    tat_extensions: List[TATExtensionResponse] = Field(default_factory=list)
    warning: Optional[str] = Field(None, description="Set from the third TAT extension on")


class ManualEscalationResponse(BaseModel):
    """Response model for manual escalation."""
    ticket_id: int
    escalation_level: int
    escalated_to: Optional[str] = None
    notified: bool = False


class TATReminderResponse(BaseModel):
    """Response model for the daily TAT reminder trigger."""
    message: str
    date: str
    count: int = Field(0, description="Tickets due today")
    reminded: int = Field(0, description="Reminders delivered")
    skipped_weekend: bool = False
    ticket_ids: List[int] = Field(default_factory=list)


class StatsResponse(BaseModel):
    """Response model for dashboard stats."""
    total: int
    open: int
    in_progress: int
    resolved: int
    closed: int
    awaiting_student_response: int
    escalated: int


class ErrorResponse(BaseModel):
    """Generic error envelope."""
    detail: str
    correlation_id: Optional[str] = None
    timestamp: Optional[datetime] = None
