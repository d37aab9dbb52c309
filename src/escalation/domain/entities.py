"""
Escalation Domain Entities
==========================

Pure Python domain entities for TAT tracking and escalation.

Following Domain-Driven Design principles, these entities contain
business logic and are free of infrastructure concerns.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from src.config import TicketStatus, TERMINAL_STATUSES
from src.escalation.domain.calendar import BusinessCalendar
from src.escalation.domain.state_machine import ensure_valid_transition

# Metadata keys under which the TAT pause is persisted
PAUSED_AT_KEY = "tatPausedAt"
REMAINING_HOURS_KEY = "tatRemainingHours"
PAUSED_STATUS_KEY = "tatPausedStatus"
PREVIOUS_ASSIGNEE_KEY = "previous_assigned_to"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class TatPause:
    """
    Snapshot taken when a ticket starts waiting on the student.

    While a ticket carries a pause its resolution deadline is frozen;
    remaining_hours is what the deadline is rebuilt from on resume.
    """
    paused_at: datetime
    remaining_hours: float
    paused_status: str

    def to_metadata(self) -> dict:
        return {
            PAUSED_AT_KEY: self.paused_at.isoformat(),
            REMAINING_HOURS_KEY: self.remaining_hours,
            PAUSED_STATUS_KEY: self.paused_status,
        }

    @classmethod
    def from_metadata(cls, metadata: dict) -> Optional["TatPause"]:
        """Rebuild a pause from ticket metadata; None when not paused."""
        paused_at = metadata.get(PAUSED_AT_KEY)
        remaining = metadata.get(REMAINING_HOURS_KEY)
        if not paused_at or remaining is None:
            return None
        # Older rows carry JavaScript-style "...Z" timestamps
        if paused_at.endswith("Z"):
            paused_at = paused_at[:-1] + "+00:00"
        moment = datetime.fromisoformat(paused_at)
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=timezone.utc)
        return cls(
            paused_at=moment,
            remaining_hours=float(remaining),
            paused_status=metadata.get(PAUSED_STATUS_KEY) or "",
        )

    def extended_by(self, hours: float) -> "TatPause":
        return TatPause(self.paused_at, self.remaining_hours + hours, self.paused_status)


@dataclass
class Ticket:
    """
    Ticket entity: the TAT and escalation state of a support ticket.

    Only the fields the escalation engine reads or writes are modelled.
    `version` is the optimistic-concurrency counter checked on save.
    """

    id: int
    status: str
    category_id: Optional[int] = None
    scope_id: Optional[int] = None
    created_by: Optional[str] = None
    assigned_to: Optional[str] = None

    escalation_level: int = 0
    tat_extensions: int = 0
    reopen_count: int = 0

    acknowledgement_due_at: Optional[datetime] = None
    resolution_due_at: Optional[datetime] = None
    acknowledged_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    reopened_at: Optional[datetime] = None
    escalated_at: Optional[datetime] = None

    tat_pause: Optional[TatPause] = None
    previous_assigned_to: Optional[str] = None
    # Metadata keys this module does not own, carried through unchanged
    extra_metadata: dict[str, Any] = field(default_factory=dict)

    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    version: int = 1

    def __post_init__(self):
        if self.escalation_level < 0 or self.tat_extensions < 0 or self.reopen_count < 0:
            raise ValueError("Ticket counters cannot be negative")

    @property
    def is_paused(self) -> bool:
        return self.tat_pause is not None

    @property
    def is_closed(self) -> bool:
        return self.status == TicketStatus.CLOSED or self.closed_at is not None

    @property
    def is_resolved_or_closed(self) -> bool:
        return self.status in (TicketStatus.RESOLVED, TicketStatus.CLOSED)

    @property
    def is_active(self) -> bool:
        """Still inside the SLA flow (not resolved, closed or cancelled)."""
        return self.status not in TERMINAL_STATUSES

    @property
    def metadata(self) -> dict[str, Any]:
        """Metadata bag as persisted, including pause bookkeeping."""
        data = dict(self.extra_metadata)
        if self.tat_pause:
            data.update(self.tat_pause.to_metadata())
        if self.previous_assigned_to is not None:
            data[PREVIOUS_ASSIGNEE_KEY] = self.previous_assigned_to
        return data

    # ========== TAT pause / resume ==========

    def pause_tat(self, now: datetime, calendar: BusinessCalendar) -> None:
        """Freeze the resolution clock. No deadline means nothing to freeze."""
        if self.is_paused or self.resolution_due_at is None:
            return
        self.tat_pause = TatPause(
            paused_at=now,
            remaining_hours=calendar.calculate_remaining_business_hours(now, self.resolution_due_at),
            paused_status=self.status,
        )

    def resume_tat(self, now: datetime, calendar: BusinessCalendar) -> None:
        """Rebuild the resolution deadline from the paused snapshot."""
        if self.tat_pause is None:
            return
        self.resolution_due_at = calendar.add_business_hours(now, self.tat_pause.remaining_hours)
        self.tat_pause = None

    # ========== Status transitions ==========

    def transition_to(self, new_status: str, now: datetime, calendar: BusinessCalendar) -> str:
        """
        Move to a new status, applying timestamps and pause coupling.

        Returns:
            The previous status

        Raises:
            InvalidStatusTransitionException: If new_status is not a legal successor
        """
        ensure_valid_transition(self.status, new_status)
        previous = self.status

        if new_status == TicketStatus.AWAITING_STUDENT_RESPONSE:
            self.pause_tat(now, calendar)
        elif previous == TicketStatus.AWAITING_STUDENT_RESPONSE:
            self.resume_tat(now, calendar)

        if previous == TicketStatus.OPEN and self.acknowledged_at is None and new_status in (
            TicketStatus.ACKNOWLEDGED, TicketStatus.IN_PROGRESS,
            TicketStatus.AWAITING_STUDENT_RESPONSE, TicketStatus.RESOLVED
        ):
            self.acknowledged_at = now

        if new_status == TicketStatus.RESOLVED:
            self.resolved_at = now
        elif new_status == TicketStatus.CLOSED:
            self.closed_at = now
        elif new_status == TicketStatus.REOPENED:
            self.reopen_count += 1
            self.reopened_at = now
            self.resolved_at = None
            self.closed_at = None

        self.status = new_status
        self.updated_at = now
        return previous

    # ========== TAT changes ==========

    def extend_resolution(self, hours: float, now: datetime, calendar: BusinessCalendar) -> None:
        """Record a TAT extension of `hours` business hours."""
        if self.resolution_due_at is not None:
            self.resolution_due_at = calendar.add_business_hours(self.resolution_due_at, hours)
        if self.tat_pause is not None:
            self.tat_pause = self.tat_pause.extended_by(hours)
        self.tat_extensions += 1
        self.updated_at = now

    def set_resolution_deadline(self, hours: float, now: datetime, calendar: BusinessCalendar) -> None:
        """Replace the resolution deadline with now + hours business hours."""
        self.resolution_due_at = calendar.add_business_hours(now, hours)
        if self.tat_pause is not None:
            self.tat_pause = TatPause(now, hours, self.tat_pause.paused_status)
        self.updated_at = now

    def apply_escalation(
        self,
        next_level: int,
        now: datetime,
        bonus_hours: float,
        calendar: BusinessCalendar,
        escalate_to: Optional[str] = None,
    ) -> None:
        """
        Bump the escalation level and push both deadlines out by the bonus.

        The bonus counts from the later of the current deadline and now,
        so a stale deadline always ends up in the future.
        """
        if next_level <= self.escalation_level:
            raise ValueError("Escalation level can only increase")

        if self.acknowledgement_due_at is not None:
            self.acknowledgement_due_at = calendar.add_business_hours(
                max(self.acknowledgement_due_at, now), bonus_hours
            )
        if self.resolution_due_at is not None:
            self.resolution_due_at = calendar.add_business_hours(
                max(self.resolution_due_at, now), bonus_hours
            )
        if self.tat_pause is not None:
            self.tat_pause = self.tat_pause.extended_by(bonus_hours)

        if escalate_to:
            self.previous_assigned_to = self.assigned_to
            self.assigned_to = escalate_to

        self.escalation_level = next_level
        self.escalated_at = now
        self.updated_at = now


@dataclass
class Category:
    """Ticket category; resolves the domain used for rule matching."""
    id: int
    name: str
    domain_id: Optional[int] = None
    sla_hours: Optional[float] = None


@dataclass
class EscalationRule:
    """
    Who a ticket goes to when it reaches `level`.

    A null domain_id/scope_id matches any domain/scope.
    """
    id: Optional[int]
    level: int
    domain_id: Optional[int] = None
    scope_id: Optional[int] = None
    escalate_to_user_id: Optional[str] = None
    tat_hours: Optional[float] = None
    notify_channel: Optional[str] = None
    is_active: bool = True
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def __post_init__(self):
        if self.level < 1:
            raise ValueError("Escalation rule level must be positive")


@dataclass
class TicketActivity:
    """Append-only audit log entry."""
    ticket_id: int
    action: str
    details: dict[str, Any]
    user_id: Optional[str] = None
    visibility: str = "admin_only"
    id: Optional[int] = None
    created_at: datetime = field(default_factory=utc_now)


@dataclass
class EscalationActivity:
    """Audit record of one escalation."""
    ticket_id: int
    reason: str
    trigger: str
    escalation_level: int
    previous_level: int
    escalated_to_user_id: Optional[str] = None
    rule_id: Optional[int] = None
    user_id: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)

    def to_activity(self, visibility: str = "admin_only") -> TicketActivity:
        details = {
            "reason": self.reason,
            "trigger": self.trigger,
            "escalation_level": self.escalation_level,
            "previous_level": self.previous_level,
            "escalated_to_user_id": self.escalated_to_user_id,
            "rule_id": self.rule_id,
        }
        return TicketActivity(
            ticket_id=self.ticket_id,
            action="escalated",
            details=details,
            user_id=self.user_id,
            visibility=visibility,
            created_at=self.created_at,
        )


@dataclass
class Feedback:
    """Student rating of a resolved ticket."""
    ticket_id: int
    rating: int
    feedback: Optional[str] = None
    id: Optional[int] = None
    created_at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class DomainEvent:
    """Fire-and-forget notification handed to the event sink after commit."""
    event_type: str
    ticket_id: int
    payload: dict[str, Any]
    occurred_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict:
        return {
            "event_type": self.event_type,
            "ticket_id": self.ticket_id,
            "occurred_at": self.occurred_at.isoformat(),
            "payload": self.payload,
        }
