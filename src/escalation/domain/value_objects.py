"""
Escalation Value Objects
========================

Immutable policy configuration and the pure trigger predicates that decide
whether a ticket needs escalating right now.
"""

import re
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from src.config import TicketStatus
from src.core.exceptions import ValidationException
from src.escalation.domain.calendar import BusinessCalendar, SATURDAY, SUNDAY
from src.escalation.domain.entities import Ticket


class EscalationPolicy(BaseModel):
    """
    Escalation policy loaded from YAML.

    This is a value object - immutable and defined by its attributes.
    """
    model_config = {"frozen": True}

    escalation_bonus_hours: float = Field(
        default=48,
        gt=0,
        description="Business hours added to each deadline on escalation"
    )
    acknowledgement_fraction: float = Field(
        default=0.1,
        gt=0,
        le=1,
        description="Share of the SLA allowed for acknowledgement"
    )
    extension_escalation_thresholds: List[int] = Field(
        default_factory=lambda: [3, 5, 7],
        description="TAT extension counts that trigger escalation"
    )
    extension_warning_threshold: int = Field(
        default=3,
        ge=1,
        description="Extension count from which callers are warned"
    )
    max_extension_hours: int = Field(
        default=168,
        ge=1,
        description="Largest single TAT extension"
    )
    reopen_escalation_threshold: int = Field(
        default=3,
        ge=1,
        description="Reopen count that triggers escalation (fires once)"
    )
    negative_feedback_max_rating: int = Field(
        default=2,
        ge=1,
        le=5,
        description="Ratings at or below this escalate the ticket"
    )
    weekend_days: List[int] = Field(
        default_factory=lambda: [SATURDAY, SUNDAY],
        description="Weekdays (Monday=0) that count as zero business hours"
    )

    @field_validator("extension_escalation_thresholds")
    @classmethod
    def validate_thresholds(cls, v: List[int]) -> List[int]:
        """Thresholds must be positive; stored sorted and de-duplicated."""
        if any(threshold < 1 for threshold in v):
            raise ValueError("extension thresholds must be positive")
        return sorted(set(v))

    @field_validator("weekend_days")
    @classmethod
    def validate_weekend_days(cls, v: List[int]) -> List[int]:
        if any(day < 0 or day > 6 for day in v):
            raise ValueError("weekend days must be between 0 (Monday) and 6 (Sunday)")
        if len(set(v)) >= 7:
            raise ValueError("at least one day must be a working day")
        return sorted(set(v))

    def build_calendar(self, tz=None) -> BusinessCalendar:
        """Business calendar configured from this policy."""
        return BusinessCalendar(
            weekend_days=self.weekend_days,
            tz=tz,
            acknowledgement_fraction=self.acknowledgement_fraction,
        )

    def extension_warning(self, tat_extensions: int) -> Optional[str]:
        if tat_extensions < self.extension_warning_threshold:
            return None
        thresholds = ", ".join(str(t) for t in self.extension_escalation_thresholds)
        return (
            f"This is TAT extension #{tat_extensions}. "
            f"Auto-escalations occur at {thresholds} extensions."
        )

    def reopen_warning(self, reopen_count: int) -> Optional[str]:
        if reopen_count < self.reopen_escalation_threshold:
            return None
        return (
            f"This ticket has been reopened {reopen_count} times. Tickets are "
            f"auto-escalated on the {ordinal(self.reopen_escalation_threshold)} reopen."
        )


def ordinal(n: int) -> str:
    if 10 <= n % 100 <= 20:
        suffix = "th"
    else:
        suffix = {1: "st", 2: "nd", 3: "rd"}.get(n % 10, "th")
    return f"{n}{suffix}"


class EscalationTriggers:
    """
    Pure predicates for the four escalation triggers.

    Each returns the human-readable escalation reason on a hit and None
    otherwise. Stateless, like the SLA calculator it grew from.
    """

    ACKNOWLEDGEMENT_REASON = "Not acknowledged within SLA"
    RESOLUTION_REASON = "Not resolved within SLA"

    @staticmethod
    def is_sla_exempt(ticket: Ticket) -> bool:
        """Tickets waiting on the student are never penalised for the wait."""
        return ticket.status == TicketStatus.AWAITING_STUDENT_RESPONSE or ticket.is_paused

    @classmethod
    def acknowledgement_breach(cls, ticket: Ticket, now: datetime) -> Optional[str]:
        if cls.is_sla_exempt(ticket) or not ticket.is_active:
            return None
        if ticket.acknowledged_at is not None or ticket.acknowledgement_due_at is None:
            return None
        if ticket.acknowledgement_due_at < now:
            return cls.ACKNOWLEDGEMENT_REASON
        return None

    @classmethod
    def resolution_breach(cls, ticket: Ticket, now: datetime) -> Optional[str]:
        if cls.is_sla_exempt(ticket) or not ticket.is_active:
            return None
        if ticket.resolution_due_at is not None and ticket.resolution_due_at < now:
            return cls.RESOLUTION_REASON
        return None

    @classmethod
    def sla_breach(cls, ticket: Ticket, now: datetime) -> Optional[str]:
        """Acknowledgement breach wins when both deadlines have passed."""
        return cls.acknowledgement_breach(ticket, now) or cls.resolution_breach(ticket, now)

    @staticmethod
    def extension_limit(tat_extensions: int, policy: EscalationPolicy) -> Optional[str]:
        if tat_extensions in policy.extension_escalation_thresholds:
            return f"TAT extension limit reached (extension #{tat_extensions})"
        return None

    @staticmethod
    def repeated_reopening(reopen_count: int, policy: EscalationPolicy) -> Optional[str]:
        # Exactly at the threshold: later reopens do not fire again
        if reopen_count == policy.reopen_escalation_threshold:
            return f"Repeated reopening ({ordinal(reopen_count)} time)"
        return None

    @staticmethod
    def negative_feedback(rating: int, policy: EscalationPolicy) -> Optional[str]:
        if rating <= policy.negative_feedback_max_rating:
            return f"Negative feedback ({rating} star{'' if rating == 1 else 's'})"
        return None


_TAT_PATTERN = re.compile(r"^(\d+)\s*(hour|day|week)s?$")
_UNIT_HOURS = {"hour": 1, "day": 24, "week": 24 * 7}


def parse_tat(tat: str) -> int:
    """
    Parse a TAT string into hours.

    Accepts "48 hours", "2 days", "1 week" or a bare number of hours.

    Raises:
        ValidationException: If the string is not a recognised TAT
    """
    text = (tat or "").strip().lower()
    match = _TAT_PATTERN.match(text)
    if match:
        hours = int(match.group(1)) * _UNIT_HOURS[match.group(2)]
    elif text.isdigit():
        hours = int(text)
    else:
        raise ValidationException(
            'Invalid TAT format. Use "X hours", "X days" or "X weeks"',
            {"tat": tat}
        )

    if hours <= 0:
        raise ValidationException("TAT must be a positive duration", {"tat": tat})
    return hours
