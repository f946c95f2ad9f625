"""
Escalation Value Objects
========================

Immutable value objects for the TAT/escalation domain.

Value objects are defined by their attributes rather than an identity.
They are immutable and can be freely shared.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Literal, Mapping, Optional

from pydantic import BaseModel, Field, model_validator

from config import (
    AssigneeTarget, UserRole,
    NO_DEADLINE, TERMINAL_STATUSES
)
from core import ValidationException


# ========== Field access helpers ==========

def _read(source: Any, *names: str) -> Any:
    """Return the first non-None value among ``names`` on a mapping or object."""
    if source is None:
        return None
    for name in names:
        if isinstance(source, Mapping):
            value = source.get(name)
        else:
            value = getattr(source, name, None)
        if value is not None:
            return value
    return None


def coerce_datetime(value: Any) -> Optional[datetime]:
    """
    Parse a timestamp leniently.

    Accepts aware/naive datetimes and ISO-8601 strings (``Z`` suffix
    included). Naive values are taken as UTC. Anything unparseable yields
    None instead of raising.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.endswith("Z") or text.endswith("z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _coerce_hours(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, str):
        try:
            return float(value) if "." in value else int(value)
        except ValueError:
            return None
    return None


# ========== TAT metadata ==========

@dataclass(frozen=True)
class TATExtension:
    """One recorded extension of a ticket's resolution deadline."""

    extended_at: Optional[datetime] = None
    extended_by: Optional[str] = None
    hours: Optional[float] = None
    reason: Optional[str] = None
    previous_due_at: Optional[datetime] = None
    new_due_at: Optional[datetime] = None

    @classmethod
    def from_raw(cls, raw: Mapping[str, Any]) -> "TATExtension":
        return cls(
            extended_at=coerce_datetime(_read(raw, "extendedAt", "extended_at")),
            extended_by=_read(raw, "extendedBy", "extended_by"),
            hours=_coerce_hours(_read(raw, "hours")),
            reason=_read(raw, "reason"),
            previous_due_at=coerce_datetime(_read(raw, "previousDueAt", "previous_due_at")),
            new_due_at=coerce_datetime(_read(raw, "newDueAt", "new_due_at")),
        )

    def to_metadata(self) -> dict:
        """Serialize in the camelCase spelling the helpdesk UI writes."""
        return {
            "extendedAt": self.extended_at.isoformat() if self.extended_at else None,
            "extendedBy": self.extended_by,
            "hours": self.hours,
            "reason": self.reason,
            "previousDueAt": self.previous_due_at.isoformat() if self.previous_due_at else None,
            "newDueAt": self.new_due_at.isoformat() if self.new_due_at else None,
        }


@dataclass(frozen=True)
class TATMetadata:
    """Canonical form of the TAT facts stored in ticket metadata."""

    tat_set_at: Optional[datetime] = None
    tat_set_by: Optional[str] = None
    tat: Any = None
    tat_extensions: tuple = ()


def normalize_tat_metadata(raw: Any) -> TATMetadata:
    """
    Adapt a raw metadata mapping to ``TATMetadata``.

    The helpdesk has written metadata with both camelCase and snake_case
    keys; this is the one place that knows about both spellings.
    """
    if not isinstance(raw, Mapping):
        return TATMetadata()

    raw_extensions = _read(raw, "tatExtensions", "tat_extensions")
    extensions = []
    if isinstance(raw_extensions, (list, tuple)):
        extensions = [
            TATExtension.from_raw(item)
            for item in raw_extensions
            if isinstance(item, Mapping)
        ]

    set_by = _read(raw, "tatSetBy", "tat_set_by")
    return TATMetadata(
        tat_set_at=coerce_datetime(_read(raw, "tatSetAt", "tat_set_at")),
        tat_set_by=str(set_by) if set_by is not None else None,
        tat=raw.get("tat"),
        tat_extensions=tuple(extensions),
    )


@dataclass(frozen=True)
class TATSnapshot:
    """
    Derived, never-persisted view of a ticket's timing state.

    Depends on the evaluation instant, so it is recomputed on every read.
    """

    deadline: Optional[datetime]
    is_overdue: bool
    formatted_deadline: str
    evaluated_at: datetime
    tat_set_at: Optional[datetime] = None
    tat_set_by: Optional[str] = None
    tat: Any = None
    tat_extensions: tuple = field(default_factory=tuple)
    acknowledgement_deadline: Optional[datetime] = None
    is_acknowledgement_overdue: bool = False

    @property
    def expected_resolution(self) -> Optional[datetime]:
        return self.deadline

    @property
    def remaining_seconds(self) -> Optional[float]:
        """Seconds until the deadline (negative once overdue)."""
        if self.deadline is None:
            return None
        return (self.deadline - self.evaluated_at).total_seconds()

    def to_dict(self) -> dict:
        return {
            "deadline": self.deadline.isoformat() if self.deadline else None,
            "is_overdue": self.is_overdue,
            "formatted_deadline": self.formatted_deadline,
            "remaining_seconds": self.remaining_seconds,
            "tat_set_at": self.tat_set_at.isoformat() if self.tat_set_at else None,
            "tat_set_by": self.tat_set_by,
            "tat": self.tat,
            "tat_extensions": [e.to_metadata() for e in self.tat_extensions],
            "acknowledgement_deadline": (
                self.acknowledgement_deadline.isoformat() if self.acknowledgement_deadline else None
            ),
            "is_acknowledgement_overdue": self.is_acknowledgement_overdue,
        }


TAT_PATTERN = re.compile(r"^(\d+)\s*(hour|day|week)s?$")


class TATCalculator:
    """
    Pure functions for TAT calculations.

    Stateless utility class - all deadline arithmetic in one place.
    """

    @staticmethod
    def compute_snapshot(ticket: Any, now: Optional[datetime] = None) -> TATSnapshot:
        """
        Derive the TAT snapshot of a ticket.

        ``ticket`` may be a domain ``Ticket``, an ORM row, a plain mapping
        or None. Malformed input degrades to "no deadline / not overdue".
        """
        evaluated_at = coerce_datetime(now) or datetime.now(timezone.utc)

        deadline = coerce_datetime(_read(ticket, "resolution_due_at", "resolutionDueAt"))
        metadata = normalize_tat_metadata(_read(ticket, "metadata"))

        # An acknowledged ticket no longer has an acknowledgement deadline to miss
        ack_deadline = None
        if _read(ticket, "acknowledged_at", "acknowledgedAt") is None:
            ack_deadline = coerce_datetime(
                _read(ticket, "acknowledgement_due_at", "acknowledgementDueAt")
            )

        return TATSnapshot(
            deadline=deadline,
            is_overdue=deadline is not None and evaluated_at > deadline,
            formatted_deadline=TATCalculator.format_deadline(deadline),
            evaluated_at=evaluated_at,
            tat_set_at=metadata.tat_set_at,
            tat_set_by=metadata.tat_set_by,
            tat=metadata.tat,
            tat_extensions=metadata.tat_extensions,
            acknowledgement_deadline=ack_deadline,
            is_acknowledgement_overdue=ack_deadline is not None and evaluated_at > ack_deadline,
        )

    @staticmethod
    def format_deadline(deadline: Optional[datetime]) -> str:
        if deadline is None:
            return NO_DEADLINE
        return deadline.strftime("%b %d, %Y")

    @staticmethod
    def parse_tat(text: Any) -> int:
        """
        Convert a TAT string to hours.

        Accepts "48", "5 hours", "2 days", "1 week".

        Raises:
            ValidationException: If the text is not a recognized duration
        """
        if isinstance(text, int) and not isinstance(text, bool):
            hours = text
        else:
            lower = str(text or "").strip().lower()
            match = TAT_PATTERN.match(lower)
            if match:
                value, unit = int(match.group(1)), match.group(2)
                hours = {"hour": value, "day": value * 24, "week": value * 24 * 7}[unit]
            elif lower.isdigit():
                hours = int(lower)
            else:
                raise ValidationException(
                    'Invalid TAT format. Use "X hours", "X days" or "X weeks"',
                    {"tat": text}
                )
        if hours <= 0:
            raise ValidationException("TAT must be a positive duration", {"tat": text})
        return hours

    @staticmethod
    def add_business_hours(start: datetime, hours: float) -> datetime:
        """
        Add ``hours`` to ``start``, skipping Saturdays and Sundays.

        A start that falls on a weekend is moved to the following Monday
        at midnight before any hours are counted.
        """
        result = start
        remaining = timedelta(hours=hours)

        while remaining > timedelta(0):
            if result.weekday() >= 5:
                days = 7 - result.weekday()
                result = (result + timedelta(days=days)).replace(
                    hour=0, minute=0, second=0, microsecond=0
                )
                continue

            next_midnight = (result + timedelta(days=1)).replace(
                hour=0, minute=0, second=0, microsecond=0
            )
            available = next_midnight - result
            if remaining <= available:
                result = result + remaining
                remaining = timedelta(0)
            else:
                remaining -= available
                result = next_midnight

        return result


# ========== Routing configuration ==========

class EscalationRoutingRule(BaseModel):
    """Who receives a ticket once it reaches ``level``."""

    level: int = Field(ge=1, description="Escalation level (1-based)")
    target: Literal["category_owner", "role", "user"] = Field(
        default=AssigneeTarget.ROLE,
        description="How the assignee is resolved"
    )
    value: Optional[str] = Field(
        default=None,
        description="Role name (target=role) or user id (target=user)"
    )
    category_id: Optional[int] = Field(
        default=None,
        description="Restrict the rule to one category; None applies to all"
    )
    notify: List[str] = Field(default_factory=list, description="Slack channels")

    @model_validator(mode="after")
    def validate_value(self) -> "EscalationRoutingRule":
        if self.target != AssigneeTarget.CATEGORY_OWNER and not self.value:
            raise ValueError(f"routing rule for level {self.level} needs a value for target '{self.target}'")
        return self


def _default_routing() -> List[EscalationRoutingRule]:
    return [
        EscalationRoutingRule(level=1, target=AssigneeTarget.CATEGORY_OWNER),
        EscalationRoutingRule(level=2, target=AssigneeTarget.ROLE, value=UserRole.ADMIN),
        EscalationRoutingRule(level=3, target=AssigneeTarget.ROLE, value=UserRole.SUPER_ADMIN),
    ]


class EscalationConfig(BaseModel):
    """
    Escalation configuration loaded from YAML.

    The routing table maps each level to an assignee-resolution rule; the
    policy only ever asks it questions and never names roles itself.
    """

    max_level: int = Field(default=3, ge=1, description="Highest escalation level")
    routing: List[EscalationRoutingRule] = Field(
        default_factory=_default_routing,
        description="Assignee resolution per level"
    )
    role_directory: Dict[str, str] = Field(
        default_factory=dict,
        description="Role name -> user id that receives role-routed escalations"
    )
    terminal_statuses: List[str] = Field(
        default_factory=lambda: list(TERMINAL_STATUSES),
        description="Statuses after which no escalation applies"
    )
    deadline_extension_hours: int = Field(
        default=48,
        ge=0,
        description="Business hours added to a ticket's deadlines when it escalates (0 keeps them)"
    )

    @model_validator(mode="after")
    def validate_routing(self) -> "EscalationConfig":
        seen = set()
        for rule in self.routing:
            if rule.level > self.max_level:
                raise ValueError(
                    f"routing rule level {rule.level} exceeds max_level {self.max_level}"
                )
            key = (rule.level, rule.category_id)
            if key in seen:
                raise ValueError(f"duplicate routing rule for level {rule.level}")
            seen.add(key)
        self.terminal_statuses = [s.lower() for s in self.terminal_statuses]
        return self

    def is_terminal(self, status: Optional[str]) -> bool:
        return (status or "").lower() in self.terminal_statuses

    def rule_for(self, level: int, category_id: Optional[int] = None) -> Optional[EscalationRoutingRule]:
        """Category-scoped rule for ``level`` if one exists, else the global one."""
        fallback = None
        for rule in self.routing:
            if rule.level != level:
                continue
            if rule.category_id is not None and rule.category_id == category_id:
                return rule
            if rule.category_id is None:
                fallback = rule
        return fallback

    def resolve_assignee(self, rule: Optional[EscalationRoutingRule], ticket: Any) -> Optional[str]:
        if rule is None:
            return None
        if rule.target == AssigneeTarget.CATEGORY_OWNER:
            owner = _read(ticket, "category_owner_id")
            return str(owner) if owner is not None else None
        if rule.target == AssigneeTarget.ROLE:
            return self.role_directory.get(rule.value)
        return rule.value
