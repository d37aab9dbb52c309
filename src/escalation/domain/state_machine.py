"""
Ticket status state machine.

Each status lists its legal successors; anything else is rejected.
"""

from src.config import TicketStatus
from src.core.exceptions import InvalidStatusTransitionException

VALID_TRANSITIONS: dict[str, tuple[str, ...]] = {
    TicketStatus.OPEN: (
        TicketStatus.ACKNOWLEDGED,
        TicketStatus.CANCELLED,
        TicketStatus.RESOLVED,
        TicketStatus.IN_PROGRESS,
        TicketStatus.AWAITING_STUDENT_RESPONSE,
    ),
    TicketStatus.ACKNOWLEDGED: (
        TicketStatus.IN_PROGRESS,
        TicketStatus.CANCELLED,
        TicketStatus.RESOLVED,
        TicketStatus.AWAITING_STUDENT_RESPONSE,
    ),
    TicketStatus.IN_PROGRESS: (
        TicketStatus.RESOLVED,
        TicketStatus.CANCELLED,
        TicketStatus.ACKNOWLEDGED,
        TicketStatus.AWAITING_STUDENT_RESPONSE,
    ),
    TicketStatus.AWAITING_STUDENT_RESPONSE: (
        TicketStatus.IN_PROGRESS,
        TicketStatus.RESOLVED,
        TicketStatus.CANCELLED,
    ),
    TicketStatus.RESOLVED: (TicketStatus.CLOSED, TicketStatus.REOPENED),
    TicketStatus.CLOSED: (TicketStatus.REOPENED,),
    TicketStatus.REOPENED: (
        TicketStatus.ACKNOWLEDGED,
        TicketStatus.IN_PROGRESS,
        TicketStatus.CANCELLED,
        TicketStatus.RESOLVED,
        TicketStatus.CLOSED,
        TicketStatus.AWAITING_STUDENT_RESPONSE,
    ),
    TicketStatus.CANCELLED: (),  # terminal
}


def is_valid_transition(from_status: str, to_status: str) -> bool:
    return to_status in VALID_TRANSITIONS.get(from_status, ())


def ensure_valid_transition(from_status: str, to_status: str) -> None:
    if not is_valid_transition(from_status, to_status):
        raise InvalidStatusTransitionException(from_status, to_status)
