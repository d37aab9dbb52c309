from datetime import datetime, timezone

import anyio
import pytest

from src.config import ActivityAction, EscalationTrigger, EventType, TicketStatus
from src.core.exceptions import ConcurrencyConflictException
from src.escalation.application import EscalationExecutor
from src.escalation.infrastructure import TicketActivityModel

from tests.conftest import ADMIN, DOMAIN_ID, MONDAY_9AM, SENIOR_ADMIN

UTC = timezone.utc
WEDNESDAY_9AM = datetime(2024, 1, 17, 9, 0, tzinfo=UTC)
FRIDAY_9AM = datetime(2024, 1, 19, 9, 0, tzinfo=UTC)


@pytest.fixture
def executor(policy_provider, clock):
    return EscalationExecutor(policy_provider, clock=clock)


def test_escalation_with_matching_rule_reassigns(seed, uow_factory, executor, clock):
    async def _run():
        category_id = await seed.basics()
        rule_id = await seed.rule(level=1, domain_id=DOMAIN_ID)
        await seed.rule(level=1, domain_id=None, escalate_to_user_id=ADMIN)
        ticket_id = await seed.ticket(
            category_id=category_id,
            status=TicketStatus.IN_PROGRESS,
            acknowledged_at=MONDAY_9AM,
            resolution_due_at=MONDAY_9AM,
        )
        clock.now = WEDNESDAY_9AM

        async with uow_factory() as uow:
            ticket = await uow.tickets.get(ticket_id, for_update=True)
            escalation = await executor.escalate(
                uow, ticket, "Not resolved within SLA", EscalationTrigger.RESOLUTION_BREACH
            )
        events = uow.events

        assert escalation.rule_id == rule_id
        assert escalation.reason == "Not resolved within SLA"
        assert escalation.escalated_to_user_id == SENIOR_ADMIN
        assert (escalation.previous_level, escalation.escalation_level) == (0, 1)

        stored = await seed.get_ticket(ticket_id)
        assert stored.escalation_level == 1
        assert stored.assigned_to == SENIOR_ADMIN
        assert stored.previous_assigned_to == ADMIN
        assert stored.escalated_at == WEDNESDAY_9AM
        # Stale deadline: bonus counts from now
        assert stored.resolution_due_at == FRIDAY_9AM
        assert stored.version == 2

        [activity] = await seed.activities(ticket_id, ActivityAction.ESCALATED)
        assert activity.details["trigger"] == EscalationTrigger.RESOLUTION_BREACH
        assert activity.details["rule_id"] == rule_id
        assert activity.visibility == "admin_only"

        [event] = events
        assert event.event_type == EventType.TICKET_ESCALATED
        assert event.payload["assigned_to"] == SENIOR_ADMIN
        assert event.payload["previous_assigned_to"] == ADMIN

    anyio.run(_run)


def test_escalation_without_rule_keeps_owner(seed, uow_factory, executor):
    async def _run():
        category_id = await seed.basics()
        ticket_id = await seed.ticket(category_id=category_id, acknowledgement_due_at=MONDAY_9AM)

        async with uow_factory() as uow:
            ticket = await uow.tickets.get(ticket_id, for_update=True)
            escalation = await executor.escalate(uow, ticket, "Manual escalation", EscalationTrigger.MANUAL)

        assert escalation.rule_id is None
        assert escalation.reason == "Manual escalation (no matching escalation rule found)"

        stored = await seed.get_ticket(ticket_id)
        assert stored.escalation_level == 1
        assert stored.assigned_to == ADMIN
        assert stored.previous_assigned_to is None
        assert stored.acknowledgement_due_at == WEDNESDAY_9AM

    anyio.run(_run)


def test_next_level_uses_next_level_rule(seed, uow_factory, executor):
    async def _run():
        category_id = await seed.basics()
        await seed.rule(level=1, domain_id=DOMAIN_ID, escalate_to_user_id=ADMIN)
        level_two = await seed.rule(level=2, domain_id=DOMAIN_ID)
        ticket_id = await seed.ticket(category_id=category_id, escalation_level=1)

        async with uow_factory() as uow:
            ticket = await uow.tickets.get(ticket_id, for_update=True)
            escalation = await executor.escalate(uow, ticket, "Manual escalation", EscalationTrigger.MANUAL)

        assert escalation.rule_id == level_two
        assert (await seed.get_ticket(ticket_id)).escalation_level == 2

    anyio.run(_run)


def test_missing_category_writes_nothing(seed, uow_factory, executor):
    async def _run():
        await seed.basics()
        ticket_id = await seed.ticket(category_id=None, acknowledgement_due_at=MONDAY_9AM)

        async with uow_factory() as uow:
            ticket = await uow.tickets.get(ticket_id, for_update=True)
            escalation = await executor.escalate(uow, ticket, "Manual escalation", EscalationTrigger.MANUAL)

        assert escalation is None
        assert uow.events == []

        stored = await seed.get_ticket(ticket_id)
        assert stored.escalation_level == 0
        assert stored.version == 1
        assert await seed.count(TicketActivityModel) == 0

    anyio.run(_run)


def test_escalating_a_paused_ticket_grows_the_snapshot(seed, uow_factory, executor):
    async def _run():
        category_id = await seed.basics()
        ticket_id = await seed.ticket(
            category_id=category_id,
            status=TicketStatus.AWAITING_STUDENT_RESPONSE,
            acknowledged_at=MONDAY_9AM,
            resolution_due_at=WEDNESDAY_9AM,
            metadata_={
                "tatPausedAt": MONDAY_9AM.isoformat(),
                "tatRemainingHours": 48,
                "tatPausedStatus": TicketStatus.IN_PROGRESS,
                "source": "portal",
            },
        )

        async with uow_factory() as uow:
            ticket = await uow.tickets.get(ticket_id, for_update=True)
            await executor.escalate(uow, ticket, "Manual escalation", EscalationTrigger.MANUAL)

        stored = await seed.get_ticket(ticket_id)
        assert stored.tat_pause.remaining_hours == 96
        assert stored.tat_pause.paused_status == TicketStatus.IN_PROGRESS
        assert stored.extra_metadata == {"source": "portal"}

    anyio.run(_run)


def test_stale_version_is_rejected(seed, uow_factory):
    async def _run():
        category_id = await seed.basics()
        ticket_id = await seed.ticket(category_id=category_id)

        async with uow_factory() as first:
            stale = await first.tickets.get(ticket_id)

            async with uow_factory() as second:
                fresh = await second.tickets.get(ticket_id, for_update=True)
                fresh.escalation_level = 1
                await second.tickets.save(fresh)

            stale.tat_extensions = 1
            with pytest.raises(ConcurrencyConflictException):
                await first.tickets.save(stale)

        stored = await seed.get_ticket(ticket_id)
        assert stored.escalation_level == 1
        assert stored.tat_extensions == 0
        assert stored.version == 2

    anyio.run(_run)
