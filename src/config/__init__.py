"""
Configuration Module
====================

Application settings and configuration management using Pydantic.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator
from functools import lru_cache
from pathlib import Path
from typing import List, Optional


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Uses Pydantic for validation and type safety.
    """

    # ========== Application ==========
    app_name: str = Field(default="helpdesk-escalation", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")
    environment: str = Field(default="development", description="Environment name")
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Root log level")

    # ========== Server ==========
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, description="Server port", ge=1, le=65535)

    # ========== Database ==========
    database_url: str = Field(
        default="postgresql+asyncpg://localhost:5432/helpdesk",
        description="Database connection URL (async driver)"
    )
    db_pool_size: int = Field(default=5, description="Database connection pool size", ge=1)
    db_max_overflow: int = Field(default=10, description="Max overflow connections", ge=0)

    # ========== Escalation ==========
    escalation_config_path: Path = Field(
        default=Path("escalation_config.yaml"),
        description="Path to escalation routing YAML file"
    )
    escalation_interval_minutes: int = Field(
        default=30,
        description="Minutes between in-process escalation runs (0 disables the scheduler)",
        ge=0
    )
    cron_secret: Optional[str] = Field(
        default=None,
        description="Shared secret expected by the cron trigger endpoint"
    )
    enable_tat_reminders: bool = Field(
        default=True,
        description="Send daily reminders for tickets due today"
    )

    # ========== Slack Integration ==========
    slack_webhook_url: Optional[str] = Field(
        default=None,
        description="Slack webhook URL for escalation notifications"
    )
    slack_channel: str = Field(
        default="#helpdesk-escalations",
        description="Default Slack channel for escalation notifications"
    )
    slack_timeout_seconds: float = Field(
        default=5.0,
        description="Timeout for Slack API calls",
        ge=0.1,
        le=30
    )
    ticket_url_template: str = Field(
        default="https://helpdesk.example.edu/admin/dashboard/ticket/{ticket_id}",
        description="Link used in notifications"
    )

    # ========== CORS ==========
    cors_origins: List[str] = Field(
        default=["http://localhost:3000"],
        description="Allowed CORS origins"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Ensure environment is one of allowed values."""
        allowed = {"development", "staging", "production"}
        if v not in allowed:
            raise ValueError(f"environment must be one of {allowed}")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR"}
        if v.upper() not in allowed:
            raise ValueError(f"log_level must be one of {allowed}")
        return v.upper()


@lru_cache()
def get_settings() -> Settings:
    """Returns cached Settings instance."""
    return Settings()


# Global settings instance
settings = get_settings()


# ========== Constants ==========

class TicketStatus(str):
    """Ticket lifecycle statuses."""
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    AWAITING_STUDENT_RESPONSE = "awaiting_student_response"
    RESOLVED = "resolved"
    CLOSED = "closed"


class UserRole(str):
    """Role claims issued by the identity provider."""
    STUDENT = "student"
    COMMITTEE = "committee"
    ADMIN = "admin"
    SNR_ADMIN = "snr_admin"
    SUPER_ADMIN = "super_admin"


class AssigneeTarget(str):
    """How an escalation routing rule resolves the next assignee."""
    CATEGORY_OWNER = "category_owner"
    ROLE = "role"
    USER = "user"


class DecisionReason(str):
    """Why the escalation policy reached its decision."""
    OVERDUE = "overdue"
    NOT_OVERDUE = "not_overdue"
    TERMINAL_STATUS = "terminal_status"
    MAX_LEVEL_REACHED = "max_level_reached"
    UNACKNOWLEDGED = "unacknowledged"
    MANUAL = "manual"
    TAT_EXTENSION_LIMIT = "tat_extension_limit"


class OutcomeType(str):
    """Per-ticket result of an escalation run."""
    ESCALATED = "escalated"
    NOT_ELIGIBLE = "not_eligible"
    STALE = "stale"
    FAILED = "failed"


class ActivityAction(str):
    """Audit actions written to ticket_activity."""
    ESCALATED = "escalated"
    TAT_SET = "tat_set"
    TAT_EXTENDED = "tat_extended"


# ========== Lists for validation ==========

TERMINAL_STATUSES = [TicketStatus.RESOLVED, TicketStatus.CLOSED]
VALID_ROLES = [
    UserRole.STUDENT, UserRole.COMMITTEE, UserRole.ADMIN,
    UserRole.SNR_ADMIN, UserRole.SUPER_ADMIN
]
STAFF_ROLES = [
    UserRole.COMMITTEE, UserRole.ADMIN,
    UserRole.SNR_ADMIN, UserRole.SUPER_ADMIN
]

# Extension count from which a TAT extension carries a warning
TAT_EXTENSION_WARNING_THRESHOLD = 3
# Extension counts that escalate the ticket one level
TAT_EXTENSION_ESCALATION_THRESHOLDS = (3, 5, 7)
NO_DEADLINE = "No deadline"
