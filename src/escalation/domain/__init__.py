"""
Escalation Domain Layer
=======================

Domain layer for the escalation module.

Contains:
- Entities: Ticket TAT state, rules, activities, feedback, domain events
- Value Objects: EscalationPolicy, TatPause, Deadlines
- Domain Services: BusinessCalendar, EscalationTriggers, the status state machine

This layer has no dependencies on infrastructure - pure Python business logic.
"""

from src.escalation.domain.calendar import BusinessCalendar, Deadlines
from src.escalation.domain.entities import (
    Ticket,
    TatPause,
    Category,
    EscalationRule,
    TicketActivity,
    EscalationActivity,
    Feedback,
    DomainEvent,
    utc_now,
)
from src.escalation.domain.state_machine import (
    VALID_TRANSITIONS,
    is_valid_transition,
    ensure_valid_transition,
)
from src.escalation.domain.value_objects import (
    EscalationPolicy,
    EscalationTriggers,
    parse_tat,
)

__all__ = [
    # Entities
    "Ticket",
    "TatPause",
    "Category",
    "EscalationRule",
    "TicketActivity",
    "EscalationActivity",
    "Feedback",
    "DomainEvent",
    "utc_now",
    # Value Objects & Services
    "BusinessCalendar",
    "Deadlines",
    "EscalationPolicy",
    "EscalationTriggers",
    "parse_tat",
    # State machine
    "VALID_TRANSITIONS",
    "is_valid_transition",
    "ensure_valid_transition",
]
