from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from src.config import TicketStatus
from src.core.exceptions import ValidationException
from src.escalation.domain import (
    EscalationPolicy,
    EscalationTriggers,
    TatPause,
    Ticket,
    parse_tat,
)
from src.escalation.domain.value_objects import ordinal

UTC = timezone.utc
NOW = datetime(2024, 1, 17, 12, 0, tzinfo=UTC)
PAST = NOW - timedelta(hours=1)
FUTURE = NOW + timedelta(hours=1)


@pytest.fixture
def policy():
    return EscalationPolicy()


def make_ticket(**fields):
    fields.setdefault("status", TicketStatus.OPEN)
    return Ticket(id=1, **fields)


class TestSlaBreaches:
    def test_unacknowledged_past_deadline_is_a_breach(self):
        ticket = make_ticket(acknowledgement_due_at=PAST)
        assert EscalationTriggers.acknowledgement_breach(ticket, NOW) == "Not acknowledged within SLA"

    def test_acknowledged_ticket_is_not_an_acknowledgement_breach(self):
        ticket = make_ticket(acknowledgement_due_at=PAST, acknowledged_at=PAST - timedelta(hours=1))
        assert EscalationTriggers.acknowledgement_breach(ticket, NOW) is None

    def test_deadline_in_the_future_is_not_a_breach(self):
        ticket = make_ticket(acknowledgement_due_at=FUTURE, resolution_due_at=FUTURE)
        assert EscalationTriggers.sla_breach(ticket, NOW) is None

    def test_deadline_equal_to_now_is_not_yet_a_breach(self):
        ticket = make_ticket(resolution_due_at=NOW)
        assert EscalationTriggers.resolution_breach(ticket, NOW) is None

    def test_passed_resolution_deadline_is_a_breach(self):
        ticket = make_ticket(status=TicketStatus.IN_PROGRESS, resolution_due_at=PAST)
        assert EscalationTriggers.resolution_breach(ticket, NOW) == "Not resolved within SLA"

    @pytest.mark.parametrize("status", [TicketStatus.RESOLVED, TicketStatus.CLOSED, TicketStatus.CANCELLED])
    def test_terminal_tickets_never_breach(self, status):
        ticket = make_ticket(status=status, acknowledgement_due_at=PAST, resolution_due_at=PAST)
        assert EscalationTriggers.sla_breach(ticket, NOW) is None

    def test_awaiting_student_is_exempt(self):
        ticket = make_ticket(
            status=TicketStatus.AWAITING_STUDENT_RESPONSE,
            acknowledgement_due_at=PAST,
            resolution_due_at=PAST,
        )
        assert EscalationTriggers.is_sla_exempt(ticket)
        assert EscalationTriggers.sla_breach(ticket, NOW) is None

    def test_paused_ticket_is_exempt_whatever_its_status(self):
        ticket = make_ticket(
            status=TicketStatus.IN_PROGRESS,
            resolution_due_at=PAST,
            tat_pause=TatPause(PAST, 10, TicketStatus.IN_PROGRESS),
        )
        assert EscalationTriggers.sla_breach(ticket, NOW) is None

    def test_acknowledgement_wins_when_both_breached(self):
        ticket = make_ticket(acknowledgement_due_at=PAST, resolution_due_at=PAST)
        assert EscalationTriggers.sla_breach(ticket, NOW) == EscalationTriggers.ACKNOWLEDGEMENT_REASON


class TestCounterTriggers:
    @pytest.mark.parametrize("count, fires", [
        (1, False), (2, False), (3, True), (4, False),
        (5, True), (6, False), (7, True), (8, False),
    ])
    def test_extension_thresholds(self, policy, count, fires):
        reason = EscalationTriggers.extension_limit(count, policy)
        if fires:
            assert reason == f"TAT extension limit reached (extension #{count})"
        else:
            assert reason is None

    @pytest.mark.parametrize("count", [1, 2, 4, 5])
    def test_reopening_fires_only_at_threshold(self, policy, count):
        assert EscalationTriggers.repeated_reopening(count, policy) is None

    def test_third_reopen_fires(self, policy):
        assert EscalationTriggers.repeated_reopening(3, policy) == "Repeated reopening (3rd time)"

    def test_negative_feedback_reasons(self, policy):
        assert EscalationTriggers.negative_feedback(1, policy) == "Negative feedback (1 star)"
        assert EscalationTriggers.negative_feedback(2, policy) == "Negative feedback (2 stars)"
        assert EscalationTriggers.negative_feedback(3, policy) is None
        assert EscalationTriggers.negative_feedback(5, policy) is None

    def test_thresholds_follow_the_policy(self):
        policy = EscalationPolicy(extension_escalation_thresholds=[2], reopen_escalation_threshold=2)
        assert EscalationTriggers.extension_limit(2, policy)
        assert EscalationTriggers.extension_limit(3, policy) is None
        assert EscalationTriggers.repeated_reopening(2, policy) == "Repeated reopening (2nd time)"


class TestParseTat:
    @pytest.mark.parametrize("text, hours", [
        ("48 hours", 48),
        ("1 hour", 1),
        ("2 days", 48),
        ("1day", 24),
        ("1 week", 168),
        ("  3 Days ", 72),
        ("36", 36),
    ])
    def test_valid_formats(self, text, hours):
        assert parse_tat(text) == hours

    @pytest.mark.parametrize("text", ["", "soon", "2 months", "-5 hours", "1.5 days", "0 hours", "0"])
    def test_invalid_formats(self, text):
        with pytest.raises(ValidationException):
            parse_tat(text)


class TestPolicy:
    def test_defaults(self, policy):
        assert policy.escalation_bonus_hours == 48
        assert policy.acknowledgement_fraction == 0.1
        assert policy.extension_escalation_thresholds == [3, 5, 7]
        assert policy.max_extension_hours == 168
        assert policy.reopen_escalation_threshold == 3
        assert policy.negative_feedback_max_rating == 2
        assert policy.weekend_days == [5, 6]

    def test_thresholds_are_sorted_and_deduplicated(self):
        policy = EscalationPolicy(extension_escalation_thresholds=[7, 3, 5, 3])
        assert policy.extension_escalation_thresholds == [3, 5, 7]

    @pytest.mark.parametrize("overrides", [
        {"extension_escalation_thresholds": [0, 3]},
        {"weekend_days": [7]},
        {"weekend_days": [0, 1, 2, 3, 4, 5, 6]},
        {"escalation_bonus_hours": 0},
        {"acknowledgement_fraction": 1.5},
        {"negative_feedback_max_rating": 6},
    ])
    def test_invalid_values_are_rejected(self, overrides):
        with pytest.raises(ValidationError):
            EscalationPolicy(**overrides)

    def test_policy_is_immutable(self, policy):
        with pytest.raises(ValidationError):
            policy.escalation_bonus_hours = 12

    def test_build_calendar_carries_weekend_and_fraction(self):
        policy = EscalationPolicy(weekend_days=[4, 5], acknowledgement_fraction=0.25)
        calendar = policy.build_calendar()
        assert calendar.weekend_days == frozenset({4, 5})
        assert calendar.acknowledgement_fraction == 0.25

    def test_extension_warning(self, policy):
        assert policy.extension_warning(2) is None
        assert policy.extension_warning(3) == (
            "This is TAT extension #3. Auto-escalations occur at 3, 5, 7 extensions."
        )

    def test_reopen_warning(self, policy):
        assert policy.reopen_warning(2) is None
        assert "reopened 4 times" in policy.reopen_warning(4)
        assert "3rd reopen" in policy.reopen_warning(4)


@pytest.mark.parametrize("n, expected", [
    (1, "1st"), (2, "2nd"), (3, "3rd"), (4, "4th"), (11, "11th"), (12, "12th"), (21, "21st"), (113, "113th"),
])
def test_ordinal(n, expected):
    assert ordinal(n) == expected
