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
    app_name: str = Field(default="campus-ticket-escalation", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")
    environment: str = Field(default="development", description="Environment name")
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Root log level")

    # ========== Server ==========
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, description="Server port", ge=1, le=65535)

    # ========== Database ==========
    database_url: str = Field(
        default="postgresql+asyncpg://localhost:5432/campus_tickets",
        description="PostgreSQL connection URL (async)"
    )
    db_pool_size: int = Field(default=5, description="Database connection pool size", ge=1)
    db_max_overflow: int = Field(default=10, description="Max overflow connections", ge=0)

    # ========== Escalation ==========
    escalation_policy_path: Path = Field(
        default=Path("escalation_policy.yaml"),
        description="Path to escalation policy YAML file"
    )
    business_timezone: str = Field(
        default="UTC",
        description="IANA timezone used to decide which calendar day an instant falls on"
    )
    sweep_interval_seconds: int = Field(
        default=0,
        description="Seconds between in-process escalation sweeps (0 = rely on external cron)",
        ge=0
    )
    cron_secret: Optional[str] = Field(
        default=None,
        description="Shared secret required by the cron sweep endpoint"
    )

    # ========== Event Sinks ==========
    outbox_enabled: bool = Field(
        default=True,
        description="Write domain events to the outbox table"
    )
    event_webhook_url: Optional[str] = Field(
        default=None,
        description="Webhook that receives domain events as JSON"
    )
    event_webhook_timeout_seconds: float = Field(
        default=5.0,
        description="Timeout for event webhook calls",
        ge=0.1,
        le=30
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
        allowed = {"development", "test", "staging", "production"}
        if v not in allowed:
            raise ValueError(f"environment must be one of {allowed}")
        return v


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
    ACKNOWLEDGED = "acknowledged"
    IN_PROGRESS = "in_progress"
    AWAITING_STUDENT_RESPONSE = "awaiting_student_response"
    RESOLVED = "resolved"
    CLOSED = "closed"
    REOPENED = "reopened"
    CANCELLED = "cancelled"


class UserRole(str):
    """Platform roles, as returned by the role provider."""
    SUPER_ADMIN = "super_admin"
    SNR_ADMIN = "snr_admin"
    ADMIN = "admin"
    COMMITTEE = "committee"
    STUDENT = "student"


class ActivityAction(str):
    """Ticket activity log actions."""
    ESCALATED = "escalated"
    STATUS_CHANGED = "status_changed"
    REOPENED = "reopened"
    TAT_EXTENDED = "tat_extended"
    TAT_SET = "tat_set"
    FEEDBACK_SUBMITTED = "feedback_submitted"


class ActivityVisibility(str):
    """Who may see an activity entry."""
    ADMIN_ONLY = "admin_only"
    STUDENT_VISIBLE = "student_visible"


class EscalationTrigger(str):
    """What caused an escalation."""
    ACKNOWLEDGEMENT_BREACH = "acknowledgement_breach"
    RESOLUTION_BREACH = "resolution_breach"
    TAT_EXTENSION = "tat_extension"
    REOPEN = "reopen"
    NEGATIVE_FEEDBACK = "negative_feedback"
    MANUAL = "manual"


class EventType(str):
    """Domain event names handed to the event sink."""
    TICKET_ESCALATED = "ticket.escalated"
    TICKET_STATUS_UPDATED = "ticket.status_updated"
    TICKET_REOPENED = "ticket.reopened"


# ========== Lists for validation ==========

VALID_STATUSES = [
    TicketStatus.OPEN, TicketStatus.ACKNOWLEDGED, TicketStatus.IN_PROGRESS,
    TicketStatus.AWAITING_STUDENT_RESPONSE, TicketStatus.RESOLVED,
    TicketStatus.CLOSED, TicketStatus.REOPENED, TicketStatus.CANCELLED
]
TERMINAL_STATUSES = [TicketStatus.RESOLVED, TicketStatus.CLOSED, TicketStatus.CANCELLED]
VALID_ROLES = [
    UserRole.SUPER_ADMIN, UserRole.SNR_ADMIN, UserRole.ADMIN,
    UserRole.COMMITTEE, UserRole.STUDENT
]
RULE_MANAGER_ROLES = [UserRole.SUPER_ADMIN, UserRole.SNR_ADMIN, UserRole.ADMIN]
