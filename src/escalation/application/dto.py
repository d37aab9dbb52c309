"""
Escalation Application DTOs
===========================

Data Transfer Objects for the escalation API layer.

These Pydantic models handle serialization/deserialization and validation
for API requests and responses.
"""

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

from src.escalation.domain import EscalationRule, Feedback, Ticket


# ========== Type Aliases for Literals ==========
TicketStatusStr = Literal[
    "open", "acknowledged", "in_progress", "awaiting_student_response",
    "resolved", "closed", "reopened", "cancelled"
]


# ========== Request DTOs ==========

class EscalateTicketRequest(BaseModel):
    """Request model for manual escalation."""
    reason: Optional[str] = Field(None, max_length=500, description="Why the ticket is escalated")


class ExtendTatRequest(BaseModel):
    """Request model for extending a ticket's TAT."""
    hours: int = Field(..., description="Business hours to add to the resolution deadline")
    reason: str = Field(..., min_length=1, max_length=500, description="Why more time is needed")


class SetTatRequest(BaseModel):
    """Request model for setting a ticket's TAT."""
    tat: str = Field(..., min_length=1, description='TAT such as "48 hours", "2 days" or "1 week"')
    mark_in_progress: bool = Field(default=False, description="Also move the ticket to in_progress")


class ReopenTicketRequest(BaseModel):
    """Request model for reopening a ticket."""
    reason: str = Field(..., min_length=1, max_length=500, description="Why the ticket is reopened")


class FeedbackRequest(BaseModel):
    """Request model for ticket feedback."""
    rating: int = Field(..., ge=1, le=5, description="Rating from 1 to 5 stars")
    feedback: Optional[str] = Field(None, max_length=2000, description="Optional comment")


class StatusUpdateRequest(BaseModel):
    """Request model for a status change."""
    status: TicketStatusStr = Field(..., description="Requested status")
    comment: Optional[str] = Field(None, max_length=1000)


class EscalationRuleCreateRequest(BaseModel):
    """Request model for creating an escalation rule."""
    level: int = Field(..., ge=1, description="Escalation level the rule applies to")
    domain_id: Optional[int] = Field(None, description="Domain, or null for all domains")
    scope_id: Optional[int] = Field(None, description="Scope, or null for any scope")
    escalate_to_user_id: Optional[str] = Field(None, description="New owner on escalation")
    tat_hours: Optional[float] = Field(None, gt=0, description="TAT hint for this level")
    notify_channel: Optional[str] = Field(None, max_length=255)


class EscalationRuleUpdateRequest(BaseModel):
    """Request model for a partial rule update."""
    level: Optional[int] = Field(None, ge=1)
    domain_id: Optional[int] = None
    scope_id: Optional[int] = None
    escalate_to_user_id: Optional[str] = None
    tat_hours: Optional[float] = Field(None, gt=0)
    notify_channel: Optional[str] = Field(None, max_length=255)
    is_active: Optional[bool] = None

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: Optional[int]) -> Optional[int]:
        """An explicit null level would orphan the rule."""
        if v is None:
            raise ValueError("level cannot be null")
        return v


# ========== Response DTOs ==========

class TicketTatResponse(BaseModel):
    """TAT and escalation state of a ticket."""
    id: int
    status: TicketStatusStr
    assigned_to: Optional[str] = None
    escalation_level: int
    tat_extensions: int
    reopen_count: int
    acknowledgement_due_at: Optional[datetime] = None
    resolution_due_at: Optional[datetime] = None
    acknowledged_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    reopened_at: Optional[datetime] = None
    escalated_at: Optional[datetime] = None
    is_paused: bool = False
    paused_remaining_hours: Optional[float] = None
    updated_at: datetime
    version: int
    warning: Optional[str] = Field(None, description="Advisory message for the caller")

    @classmethod
    def from_domain(cls, ticket: Ticket, warning: Optional[str] = None) -> "TicketTatResponse":
        return cls(
            id=ticket.id,
            status=ticket.status,
            assigned_to=ticket.assigned_to,
            escalation_level=ticket.escalation_level,
            tat_extensions=ticket.tat_extensions,
            reopen_count=ticket.reopen_count,
            acknowledgement_due_at=ticket.acknowledgement_due_at,
            resolution_due_at=ticket.resolution_due_at,
            acknowledged_at=ticket.acknowledged_at,
            resolved_at=ticket.resolved_at,
            closed_at=ticket.closed_at,
            reopened_at=ticket.reopened_at,
            escalated_at=ticket.escalated_at,
            is_paused=ticket.is_paused,
            paused_remaining_hours=ticket.tat_pause.remaining_hours if ticket.tat_pause else None,
            updated_at=ticket.updated_at,
            version=ticket.version,
            warning=warning,
        )


class FeedbackResponse(BaseModel):
    """Stored feedback."""
    id: Optional[int]
    ticket_id: int
    rating: int
    feedback: Optional[str] = None
    created_at: datetime

    @classmethod
    def from_domain(cls, feedback: Feedback) -> "FeedbackResponse":
        return cls(
            id=feedback.id,
            ticket_id=feedback.ticket_id,
            rating=feedback.rating,
            feedback=feedback.feedback,
            created_at=feedback.created_at,
        )


class EscalationRuleResponse(BaseModel):
    """Escalation rule as returned by the API."""
    id: int
    level: int
    domain_id: Optional[int] = None
    scope_id: Optional[int] = None
    escalate_to_user_id: Optional[str] = None
    tat_hours: Optional[float] = None
    notify_channel: Optional[str] = None
    is_active: bool
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_domain(cls, rule: EscalationRule) -> "EscalationRuleResponse":
        return cls(
            id=rule.id,
            level=rule.level,
            domain_id=rule.domain_id,
            scope_id=rule.scope_id,
            escalate_to_user_id=rule.escalate_to_user_id,
            tat_hours=rule.tat_hours,
            notify_channel=rule.notify_channel,
            is_active=rule.is_active,
            created_at=rule.created_at,
            updated_at=rule.updated_at,
        )


class SweepResponse(BaseModel):
    """Response model for the cron escalation sweep."""
    success: bool = True
    checked: int = Field(..., description="Tickets with a passed deadline")
    escalated: int = Field(..., description="Tickets escalated by this run")
    skipped: int = Field(..., description="Tickets no longer breached or changed concurrently")
    failed: int = Field(default=0, description="Tickets that failed to escalate")
    errors: List[dict] = Field(default_factory=list, description="Per-ticket failures")
