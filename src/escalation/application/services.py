"""
Escalation Application Services
===============================

Application services orchestrate business logic and coordinate between
domain entities and repositories.

Following SOLID principles:
- Single Responsibility: Each service has one clear purpose
- Dependency Inversion: Depend on abstractions (repositories, unit of work,
  role provider, event sink), not concrete implementations
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, tzinfo
from typing import Any, Callable, List, Optional, Sequence

from src.config import (
    ActivityAction,
    ActivityVisibility,
    EscalationTrigger,
    EventType,
    RULE_MANAGER_ROLES,
    TicketStatus,
    UserRole,
    VALID_STATUSES,
)
from src.core.exceptions import (
    ConcurrencyConflictException,
    ForbiddenException,
    ResourceNotFoundException,
    ValidationException,
)
from src.escalation.domain import (
    BusinessCalendar,
    Category,
    DomainEvent,
    EscalationActivity,
    EscalationPolicy,
    EscalationRule,
    EscalationTriggers,
    Feedback,
    Ticket,
    TicketActivity,
    parse_tat,
    utc_now,
)
from src.shared.infrastructure.logging import get_logger, log_latency

logger = get_logger(__name__)

Clock = Callable[[], datetime]


# ========== Repository Interfaces (Dependency Inversion) ==========

class ITicketRepository(ABC):
    """Interface for ticket data access."""

    @abstractmethod
    async def get(self, ticket_id: int, for_update: bool = False) -> Optional[Ticket]:
        """Get ticket by ID, optionally locking the row."""

    @abstractmethod
    async def save(self, ticket: Ticket) -> Ticket:
        """
        Persist ticket changes with a compare-and-swap on `version`.

        Raises:
            ConcurrencyConflictException: If the stored version moved on
        """

    @abstractmethod
    async def list_breach_candidate_ids(
        self, now: datetime, limit: int = 500, after_id: int = 0
    ) -> List[int]:
        """
        IDs of active tickets with a passed acknowledgement or resolution
        deadline, ascending, starting after `after_id`.
        """


class IEscalationRuleRepository(ABC):
    """Interface for escalation rule data access."""

    @abstractmethod
    async def find_candidates(
        self,
        domain_id: Optional[int],
        scope_id: Optional[int],
        level: int
    ) -> List[EscalationRule]:
        """Active rules at `level` for the domain/scope, including wildcards."""

    @abstractmethod
    async def get(self, rule_id: int) -> Optional[EscalationRule]:
        """Get rule by ID."""

    @abstractmethod
    async def list(self, include_inactive: bool = False) -> List[EscalationRule]:
        """List rules ordered by domain, scope and level."""

    @abstractmethod
    async def exists(
        self,
        domain_id: Optional[int],
        scope_id: Optional[int],
        level: int,
        exclude_id: Optional[int] = None
    ) -> bool:
        """Check whether a rule already occupies (domain, scope, level)."""

    @abstractmethod
    async def add(self, rule: EscalationRule) -> EscalationRule:
        """Create new rule."""

    @abstractmethod
    async def update(self, rule: EscalationRule) -> EscalationRule:
        """Update existing rule."""


class ICategoryRepository(ABC):
    """Interface for category lookups."""

    @abstractmethod
    async def get(self, category_id: int) -> Optional[Category]:
        """Get category by ID."""


class IActivityRepository(ABC):
    """Interface for the append-only ticket activity log."""

    @abstractmethod
    async def add(self, activity: TicketActivity) -> TicketActivity:
        """Append an activity entry."""

    @abstractmethod
    async def list_for_ticket(self, ticket_id: int) -> List[TicketActivity]:
        """Activity entries for a ticket, oldest first."""


class IFeedbackRepository(ABC):
    """Interface for ticket feedback data access."""

    @abstractmethod
    async def get_for_ticket(self, ticket_id: int) -> Optional[Feedback]:
        """Get the feedback left on a ticket, if any."""

    @abstractmethod
    async def add(self, feedback: Feedback) -> Feedback:
        """Create new feedback."""


class IUserRepository(ABC):
    """Interface for user lookups."""

    @abstractmethod
    async def exists(self, user_id: str) -> bool:
        """Check if a user exists."""


class IUnitOfWork(ABC):
    """
    One transaction spanning every repository.

    Commits on clean exit from `async with`, rolls back on exception.
    Domain events queued during the transaction are handed to the event
    sink by the caller once the commit has succeeded.
    """

    tickets: ITicketRepository
    rules: IEscalationRuleRepository
    categories: ICategoryRepository
    activities: IActivityRepository
    feedback: IFeedbackRepository
    users: IUserRepository

    def __init__(self):
        self.events: List[DomainEvent] = []

    def add_event(self, event: DomainEvent) -> None:
        self.events.append(event)

    @abstractmethod
    async def commit(self) -> None:
        """Commit the transaction."""

    @abstractmethod
    async def rollback(self) -> None:
        """Roll back the transaction."""

    async def __aenter__(self) -> "IUnitOfWork":
        self.events = []
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if exc_type is None:
            await self.commit()
        else:
            self.events = []
            await self.rollback()


class IRoleProvider(ABC):
    """Interface for the authentication system's role lookup."""

    @abstractmethod
    async def get_user_role(self, user_id: str) -> Optional[str]:
        """Role of the user, or None if the user is unknown."""


class IEventSink(ABC):
    """Interface for fire-and-forget domain event delivery."""

    @abstractmethod
    async def emit(self, event: DomainEvent) -> None:
        """Deliver one event."""


class IPolicyProvider(ABC):
    """Interface for escalation policy access."""

    @abstractmethod
    def get_policy(self) -> EscalationPolicy:
        """Get current escalation policy."""


class StaticPolicyProvider(IPolicyProvider):
    """Policy provider over a fixed policy instance."""

    def __init__(self, policy: Optional[EscalationPolicy] = None):
        self._policy = policy or EscalationPolicy()

    def get_policy(self) -> EscalationPolicy:
        return self._policy


UnitOfWorkFactory = Callable[[], IUnitOfWork]


async def publish_events(sink: Optional[IEventSink], events: Sequence[DomainEvent]) -> None:
    """
    Hand committed events to the sink.

    Delivery is best-effort: failures are logged and never undo the
    committed state change.
    """
    if sink is None:
        return
    for event in events:
        try:
            await sink.emit(event)
        except Exception as e:
            logger.error(
                "Event delivery failed",
                extra={
                    "event_type": event.event_type,
                    "ticket_id": event.ticket_id,
                    "error": str(e)
                }
            )


def _iso(moment: Optional[datetime]) -> Optional[str]:
    return moment.isoformat() if moment else None


# ========== Domain-facing Services ==========

class RuleMatcher:
    """Finds the escalation rule for a ticket's next level."""

    def __init__(self, rule_repository: IEscalationRuleRepository):
        self._rules = rule_repository

    @staticmethod
    def select(
        candidates: Sequence[EscalationRule],
        domain_id: Optional[int],
        scope_id: Optional[int],
        level: int
    ) -> Optional[EscalationRule]:
        """
        Pick the best rule among candidates.

        Null domain/scope on a rule is a wildcard. Ties are broken by
        level, then specificity (exact domain before global, exact scope
        before any-scope), then lowest id.
        """
        matching = [
            rule for rule in candidates
            if rule.is_active
            and rule.level == level
            and rule.domain_id in (None, domain_id)
            and rule.scope_id in (None, scope_id)
        ]
        if not matching:
            return None

        return min(
            matching,
            key=lambda rule: (
                rule.level,
                rule.domain_id is None,
                rule.scope_id is None,
                rule.id if rule.id is not None else 0,
            )
        )

    async def find_rule(
        self,
        domain_id: Optional[int],
        scope_id: Optional[int],
        level: int
    ) -> Optional[EscalationRule]:
        candidates = await self._rules.find_candidates(domain_id, scope_id, level)
        return self.select(candidates, domain_id, scope_id, level)


class EscalationExecutor:
    """
    Escalates a ticket by one level inside the caller's unit of work.

    Shared by every trigger: SLA breaches, TAT extensions, reopening,
    negative feedback and manual escalation.
    """

    NO_RULE_SUFFIX = " (no matching escalation rule found)"

    def __init__(
        self,
        policy_provider: IPolicyProvider,
        tz: Optional[tzinfo] = None,
        clock: Clock = utc_now
    ):
        self._policy_provider = policy_provider
        self._tz = tz
        self._clock = clock

    async def escalate(
        self,
        uow: IUnitOfWork,
        ticket: Ticket,
        reason: str,
        trigger: str,
        user_id: Optional[str] = None
    ) -> Optional[EscalationActivity]:
        """
        Escalate `ticket` to the next level.

        Returns:
            The escalation record, or None if the ticket's category is
            missing (nothing is written in that case)
        """
        category = None
        if ticket.category_id is not None:
            category = await uow.categories.get(ticket.category_id)
        if category is None:
            logger.warning(
                "Ticket category not found, skipping escalation",
                extra={"ticket_id": ticket.id, "category_id": ticket.category_id}
            )
            return None

        policy = self._policy_provider.get_policy()
        calendar = policy.build_calendar(self._tz)
        now = self._clock()

        previous_level = ticket.escalation_level
        next_level = previous_level + 1
        rule = await RuleMatcher(uow.rules).find_rule(category.domain_id, ticket.scope_id, next_level)
        escalate_to = rule.escalate_to_user_id if rule else None

        ticket.apply_escalation(
            next_level, now, policy.escalation_bonus_hours, calendar, escalate_to=escalate_to
        )
        await uow.tickets.save(ticket)

        escalation = EscalationActivity(
            ticket_id=ticket.id,
            reason=reason if rule else reason + self.NO_RULE_SUFFIX,
            trigger=trigger,
            escalation_level=next_level,
            previous_level=previous_level,
            escalated_to_user_id=escalate_to,
            rule_id=rule.id if rule else None,
            user_id=user_id,
            created_at=now,
        )
        await uow.activities.add(escalation.to_activity(ActivityVisibility.ADMIN_ONLY))

        uow.add_event(DomainEvent(
            event_type=EventType.TICKET_ESCALATED,
            ticket_id=ticket.id,
            payload={
                "reason": escalation.reason,
                "trigger": trigger,
                "escalation_level": next_level,
                "previous_level": previous_level,
                "assigned_to": ticket.assigned_to,
                "previous_assigned_to": ticket.previous_assigned_to if escalate_to else None,
                "rule_id": escalation.rule_id,
                "notify_channel": rule.notify_channel if rule else None,
                "acknowledgement_due_at": _iso(ticket.acknowledgement_due_at),
                "resolution_due_at": _iso(ticket.resolution_due_at),
            },
            occurred_at=now,
        ))

        logger.warning(
            "Ticket escalated",
            extra={
                "ticket_id": ticket.id,
                "escalation_level": next_level,
                "escalated_to": escalate_to,
                "rule_id": escalation.rule_id,
                "trigger": trigger,
                "reason": escalation.reason
            }
        )
        return escalation


# ========== Application Services ==========

class TicketEscalationService:
    """
    Ticket operations that touch TAT and escalation state.

    Each operation runs in its own unit of work; escalations fired by a
    trigger commit atomically with the change that fired them.
    """

    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        policy_provider: IPolicyProvider,
        role_provider: IRoleProvider,
        event_sink: Optional[IEventSink] = None,
        tz: Optional[tzinfo] = None,
        clock: Clock = utc_now
    ):
        self._uow_factory = uow_factory
        self._policy_provider = policy_provider
        self._role_provider = role_provider
        self._event_sink = event_sink
        self._tz = tz
        self._clock = clock
        self._executor = EscalationExecutor(policy_provider, tz=tz, clock=clock)

    @property
    def policy(self) -> EscalationPolicy:
        return self._policy_provider.get_policy()

    def _calendar(self) -> BusinessCalendar:
        return self.policy.build_calendar(self._tz)

    async def _role_of(self, user_id: str) -> str:
        role = await self._role_provider.get_user_role(user_id)
        if role is None:
            raise ResourceNotFoundException("User", user_id)
        return role

    @staticmethod
    async def _load(uow: IUnitOfWork, ticket_id: int, for_update: bool = False) -> Ticket:
        ticket = await uow.tickets.get(ticket_id, for_update=for_update)
        if ticket is None:
            raise ResourceNotFoundException("Ticket", str(ticket_id))
        return ticket

    @staticmethod
    def _ensure_owner(role: str, ticket: Ticket, user_id: str, action: str) -> None:
        if role == UserRole.STUDENT and ticket.created_by != user_id:
            raise ForbiddenException(f"You can only {action} your own tickets")

    async def escalate_manually(
        self,
        ticket_id: int,
        user_id: str,
        reason: Optional[str] = None
    ) -> Ticket:
        """
        Escalate a ticket on request.

        Raises:
            ValidationException: If the ticket is closed
            ForbiddenException: If a student escalates someone else's ticket
            ResourceNotFoundException: If the ticket or its category is missing
        """
        role = await self._role_of(user_id)

        async with self._uow_factory() as uow:
            ticket = await self._load(uow, ticket_id, for_update=True)
            if ticket.is_closed:
                raise ValidationException("Cannot escalate a closed ticket")
            self._ensure_owner(role, ticket, user_id, "escalate")

            escalation = await self._executor.escalate(
                uow, ticket, (reason or "").strip() or "Manual escalation",
                EscalationTrigger.MANUAL, user_id=user_id
            )
            if escalation is None:
                raise ResourceNotFoundException("Category", str(ticket.category_id))

        await publish_events(self._event_sink, uow.events)
        return ticket

    async def extend_tat(self, ticket_id: int, user_id: str, hours: int, reason: str) -> Ticket:
        """
        Push the resolution deadline out by `hours` business hours.

        Escalates when the new extension count hits a policy threshold.
        """
        role = await self._role_of(user_id)
        if role == UserRole.STUDENT:
            raise ForbiddenException("Only admins can extend TAT")

        policy = self.policy
        if hours < 1 or hours > policy.max_extension_hours:
            raise ValidationException(
                f"Extension must be between 1 and {policy.max_extension_hours} hours",
                {"hours": hours}
            )
        if not reason or not reason.strip():
            raise ValidationException("A reason is required to extend TAT")

        calendar = policy.build_calendar(self._tz)
        now = self._clock()

        async with self._uow_factory() as uow:
            ticket = await self._load(uow, ticket_id, for_update=True)
            if ticket.is_closed:
                raise ValidationException("Cannot extend TAT for closed tickets")
            if ticket.resolution_due_at is None:
                raise ValidationException("Ticket has no resolution deadline to extend")

            previous_deadline = ticket.resolution_due_at
            ticket.extend_resolution(hours, now, calendar)
            await uow.tickets.save(ticket)

            await uow.activities.add(TicketActivity(
                ticket_id=ticket.id,
                action=ActivityAction.TAT_EXTENDED,
                details={
                    "reason": reason,
                    "hours_extended": hours,
                    "previous_deadline": _iso(previous_deadline),
                    "new_deadline": _iso(ticket.resolution_due_at),
                    "tat_extensions": ticket.tat_extensions,
                },
                user_id=user_id,
                visibility=ActivityVisibility.ADMIN_ONLY,
                created_at=now,
            ))

            if ticket.tat_extensions >= policy.extension_warning_threshold:
                logger.warning(
                    "Ticket TAT extended multiple times",
                    extra={"ticket_id": ticket.id, "tat_extensions": ticket.tat_extensions}
                )

            escalation_reason = EscalationTriggers.extension_limit(ticket.tat_extensions, policy)
            if escalation_reason:
                await self._executor.escalate(
                    uow, ticket, escalation_reason, EscalationTrigger.TAT_EXTENSION
                )

        logger.info(
            "Ticket TAT extended",
            extra={
                "ticket_id": ticket.id,
                "user_id": user_id,
                "hours": hours,
                "tat_extensions": ticket.tat_extensions
            }
        )
        await publish_events(self._event_sink, uow.events)
        return ticket

    async def set_tat(
        self,
        ticket_id: int,
        user_id: str,
        tat: str,
        mark_in_progress: bool = False
    ) -> Ticket:
        """
        Replace the resolution deadline with now + the parsed TAT.

        Optionally moves the ticket to in_progress in the same transaction.
        """
        role = await self._role_of(user_id)
        if role == UserRole.STUDENT:
            raise ForbiddenException("Only admins can set TAT")

        hours = parse_tat(tat)
        calendar = self._calendar()
        now = self._clock()

        async with self._uow_factory() as uow:
            ticket = await self._load(uow, ticket_id, for_update=True)
            if ticket.is_closed or ticket.status == TicketStatus.CANCELLED:
                raise ValidationException(f"Cannot set TAT for a {ticket.status} ticket")

            if mark_in_progress and ticket.status != TicketStatus.IN_PROGRESS:
                previous_status = ticket.transition_to(TicketStatus.IN_PROGRESS, now, calendar)
                self._record_status_change(uow, ticket, previous_status, user_id, now)
                await uow.activities.add(TicketActivity(
                    ticket_id=ticket.id,
                    action=ActivityAction.STATUS_CHANGED,
                    details={"from": previous_status, "to": ticket.status},
                    user_id=user_id,
                    visibility=ActivityVisibility.STUDENT_VISIBLE,
                    created_at=now,
                ))

            previous_deadline = ticket.resolution_due_at
            ticket.set_resolution_deadline(hours, now, calendar)
            ticket.extra_metadata.update({
                "tatSetAt": now.isoformat(),
                "tatSetBy": user_id,
                "tatDate": _iso(ticket.resolution_due_at),
            })
            await uow.tickets.save(ticket)

            await uow.activities.add(TicketActivity(
                ticket_id=ticket.id,
                action=ActivityAction.TAT_SET,
                details={
                    "tat": tat,
                    "hours": hours,
                    "previous_deadline": _iso(previous_deadline),
                    "new_deadline": _iso(ticket.resolution_due_at),
                },
                user_id=user_id,
                visibility=ActivityVisibility.STUDENT_VISIBLE,
                created_at=now,
            ))

        await publish_events(self._event_sink, uow.events)
        return ticket

    async def initialize_tat(self, ticket_id: int, start: Optional[datetime] = None) -> Ticket:
        """
        Stamp creation-time deadlines from the category's SLA hours.

        Args:
            ticket_id: Ticket to initialise
            start: Clock start; defaults to the ticket's creation time
        """
        calendar = self._calendar()

        async with self._uow_factory() as uow:
            ticket = await self._load(uow, ticket_id, for_update=True)
            category = None
            if ticket.category_id is not None:
                category = await uow.categories.get(ticket.category_id)
            if category is None:
                raise ResourceNotFoundException("Category", str(ticket.category_id))
            if not category.sla_hours or category.sla_hours <= 0:
                raise ValidationException(
                    "Category has no SLA hours configured",
                    {"category_id": category.id}
                )

            deadlines = calendar.calculate_deadlines(category.sla_hours, start or ticket.created_at)
            ticket.acknowledgement_due_at = deadlines.acknowledgement_due_at
            ticket.resolution_due_at = deadlines.resolution_due_at
            ticket.updated_at = self._clock()
            await uow.tickets.save(ticket)

        return ticket

    async def reopen_ticket(self, ticket_id: int, user_id: str, reason: str) -> Ticket:
        """
        Reopen a resolved or closed ticket.

        The third reopen escalates the ticket; later reopens do not.
        """
        role = await self._role_of(user_id)
        if not reason or not reason.strip():
            raise ValidationException("A reason is required to reopen a ticket")

        policy = self.policy
        calendar = policy.build_calendar(self._tz)
        now = self._clock()

        async with self._uow_factory() as uow:
            ticket = await self._load(uow, ticket_id, for_update=True)
            self._ensure_owner(role, ticket, user_id, "reopen")
            if not ticket.is_resolved_or_closed:
                raise ValidationException("Only resolved or closed tickets can be reopened")

            previous_status = ticket.transition_to(TicketStatus.REOPENED, now, calendar)
            await uow.tickets.save(ticket)

            await uow.activities.add(TicketActivity(
                ticket_id=ticket.id,
                action=ActivityAction.REOPENED,
                details={
                    "reason": reason,
                    "reopen_count": ticket.reopen_count,
                    "previous_status": previous_status,
                },
                user_id=user_id,
                visibility=ActivityVisibility.STUDENT_VISIBLE,
                created_at=now,
            ))
            uow.add_event(DomainEvent(
                event_type=EventType.TICKET_REOPENED,
                ticket_id=ticket.id,
                payload={
                    "reason": reason,
                    "reopen_count": ticket.reopen_count,
                    "previous_status": previous_status,
                    "user_id": user_id,
                },
                occurred_at=now,
            ))

            escalation_reason = EscalationTriggers.repeated_reopening(ticket.reopen_count, policy)
            if escalation_reason:
                await self._executor.escalate(uow, ticket, escalation_reason, EscalationTrigger.REOPEN)

        logger.info(
            "Ticket reopened",
            extra={"ticket_id": ticket.id, "user_id": user_id, "reopen_count": ticket.reopen_count}
        )
        await publish_events(self._event_sink, uow.events)
        return ticket

    async def submit_feedback(
        self,
        ticket_id: int,
        user_id: str,
        rating: int,
        text: Optional[str] = None
    ) -> Feedback:
        """
        Record a rating for a resolved or closed ticket.

        Ratings at or below the policy's threshold escalate the ticket.
        """
        if rating < 1 or rating > 5:
            raise ValidationException("Rating must be between 1 and 5", {"rating": rating})

        role = await self._role_of(user_id)
        policy = self.policy
        now = self._clock()

        async with self._uow_factory() as uow:
            ticket = await self._load(uow, ticket_id, for_update=True)
            if not ticket.is_resolved_or_closed:
                raise ValidationException(
                    "Feedback can only be submitted for resolved or closed tickets"
                )
            self._ensure_owner(role, ticket, user_id, "submit feedback for")

            if await uow.feedback.get_for_ticket(ticket.id) is not None:
                raise ValidationException("Feedback already submitted for this ticket")

            feedback = await uow.feedback.add(Feedback(
                ticket_id=ticket.id, rating=rating, feedback=text, created_at=now
            ))
            await uow.activities.add(TicketActivity(
                ticket_id=ticket.id,
                action=ActivityAction.FEEDBACK_SUBMITTED,
                details={"rating": rating, "has_comment": bool(text)},
                user_id=user_id,
                visibility=ActivityVisibility.ADMIN_ONLY,
                created_at=now,
            ))

            escalation_reason = EscalationTriggers.negative_feedback(rating, policy)
            if escalation_reason:
                await self._executor.escalate(
                    uow, ticket, escalation_reason, EscalationTrigger.NEGATIVE_FEEDBACK
                )

        await publish_events(self._event_sink, uow.events)
        return feedback

    async def update_ticket_status(
        self,
        ticket_id: int,
        new_status: str,
        user_id: str,
        comment: Optional[str] = None
    ) -> Ticket:
        """
        Move a ticket through the status state machine.

        Entering awaiting_student_response pauses the resolution clock and
        leaving it resumes the clock. Reopening goes through reopen_ticket
        so its escalation trigger applies.
        """
        if new_status not in VALID_STATUSES:
            raise ValidationException(f"Unknown status '{new_status}'")
        if new_status == TicketStatus.REOPENED:
            return await self.reopen_ticket(ticket_id, user_id, comment or "Reopened")

        role = await self._role_of(user_id)
        if role == UserRole.STUDENT:
            raise ForbiddenException("Students cannot change ticket status")

        calendar = self._calendar()
        now = self._clock()

        async with self._uow_factory() as uow:
            ticket = await self._load(uow, ticket_id, for_update=True)
            previous_status = ticket.transition_to(new_status, now, calendar)
            await uow.tickets.save(ticket)

            details: dict[str, Any] = {"from": previous_status, "to": new_status}
            if comment:
                details["comment"] = comment
            await uow.activities.add(TicketActivity(
                ticket_id=ticket.id,
                action=ActivityAction.STATUS_CHANGED,
                details=details,
                user_id=user_id,
                visibility=ActivityVisibility.STUDENT_VISIBLE,
                created_at=now,
            ))
            self._record_status_change(uow, ticket, previous_status, user_id, now)

        await publish_events(self._event_sink, uow.events)
        return ticket

    @staticmethod
    def _record_status_change(
        uow: IUnitOfWork,
        ticket: Ticket,
        previous_status: str,
        user_id: str,
        now: datetime
    ) -> None:
        uow.add_event(DomainEvent(
            event_type=EventType.TICKET_STATUS_UPDATED,
            ticket_id=ticket.id,
            payload={
                "from": previous_status,
                "to": ticket.status,
                "user_id": user_id,
                "resolution_due_at": _iso(ticket.resolution_due_at),
                "is_paused": ticket.is_paused,
            },
            occurred_at=now,
        ))


@dataclass
class SweepResult:
    """Outcome of one escalation sweep."""
    checked: int = 0
    escalated: int = 0
    skipped: int = 0
    failed: int = 0
    errors: List[dict] = field(default_factory=list)


class EscalationSweepService:
    """
    Periodic SLA breach sweep.

    Run by the cron endpoint (or the optional in-process scheduler).
    Invocation is at-least-once, so every ticket is re-read under lock
    and re-checked before it is escalated.
    """

    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        policy_provider: IPolicyProvider,
        event_sink: Optional[IEventSink] = None,
        tz: Optional[tzinfo] = None,
        clock: Clock = utc_now,
        batch_size: int = 500
    ):
        self._uow_factory = uow_factory
        self._event_sink = event_sink
        self._clock = clock
        self._batch_size = batch_size
        self._executor = EscalationExecutor(policy_provider, tz=tz, clock=clock)

    @staticmethod
    def detect_breach(ticket: Ticket, now: datetime) -> Optional[tuple[str, str]]:
        """(reason, trigger) for a breached ticket; acknowledgement wins."""
        reason = EscalationTriggers.acknowledgement_breach(ticket, now)
        if reason:
            return reason, EscalationTrigger.ACKNOWLEDGEMENT_BREACH
        reason = EscalationTriggers.resolution_breach(ticket, now)
        if reason:
            return reason, EscalationTrigger.RESOLUTION_BREACH
        return None

    async def run_escalation_sweep(self) -> SweepResult:
        """
        Escalate every ticket with a passed deadline, once each.

        A failure on one ticket is logged and counted; the sweep continues.
        """
        result = SweepResult()
        now = self._clock()

        with log_latency(logger, "escalation_sweep"):
            # Keyset paging: tickets that stay breached (no category, repeated
            # failures) must not hide the ones behind them.
            last_id = 0
            while True:
                async with self._uow_factory() as uow:
                    ticket_ids = await uow.tickets.list_breach_candidate_ids(
                        now, self._batch_size, after_id=last_id
                    )

                for ticket_id in ticket_ids:
                    await self._process_ticket(ticket_id, now, result)

                if len(ticket_ids) < self._batch_size:
                    break
                last_id = ticket_ids[-1]

        logger.info(
            "Escalation sweep complete",
            extra={
                "tickets_checked": result.checked,
                "tickets_escalated": result.escalated,
                "tickets_skipped": result.skipped,
                "tickets_failed": result.failed
            }
        )
        return result

    async def _process_ticket(self, ticket_id: int, now: datetime, result: SweepResult) -> None:
        result.checked += 1
        try:
            escalated = await self._sweep_ticket(ticket_id, now)
        except ConcurrencyConflictException:
            result.skipped += 1
            logger.info(
                "Ticket changed during sweep, skipping",
                extra={"ticket_id": ticket_id}
            )
            return
        except Exception as e:
            result.failed += 1
            result.errors.append({"ticket_id": ticket_id, "error": str(e)})
            logger.error(
                "Failed to escalate ticket during sweep",
                extra={"ticket_id": ticket_id, "error": str(e)}
            )
            return

        if escalated:
            result.escalated += 1
        else:
            result.skipped += 1

    async def _sweep_ticket(self, ticket_id: int, now: datetime) -> bool:
        async with self._uow_factory() as uow:
            ticket = await uow.tickets.get(ticket_id, for_update=True)
            if ticket is None:
                return False

            # Re-check under lock: a previous or concurrent sweep may have
            # already pushed the deadlines out.
            breach = self.detect_breach(ticket, now)
            if breach is None:
                return False

            reason, trigger = breach
            escalation = await self._executor.escalate(uow, ticket, reason, trigger)

        await publish_events(self._event_sink, uow.events)
        return escalation is not None


class EscalationRuleService:
    """Administration of escalation rules (admins only)."""

    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        role_provider: IRoleProvider,
        clock: Clock = utc_now
    ):
        self._uow_factory = uow_factory
        self._role_provider = role_provider
        self._clock = clock

    async def _require_manager(self, user_id: str) -> None:
        role = await self._role_provider.get_user_role(user_id)
        if role not in RULE_MANAGER_ROLES:
            raise ForbiddenException("Only admins can manage escalation rules")

    async def list_rules(self, user_id: str, include_inactive: bool = False) -> List[EscalationRule]:
        await self._require_manager(user_id)
        async with self._uow_factory() as uow:
            return await uow.rules.list(include_inactive=include_inactive)

    async def create_rule(
        self,
        user_id: str,
        level: int,
        domain_id: Optional[int] = None,
        scope_id: Optional[int] = None,
        escalate_to_user_id: Optional[str] = None,
        tat_hours: Optional[float] = None,
        notify_channel: Optional[str] = None
    ) -> EscalationRule:
        """
        Create a rule.

        Raises:
            ValidationException: On a bad level, an unknown destination user
                or a duplicate (domain, scope, level)
        """
        await self._require_manager(user_id)
        if level < 1:
            raise ValidationException("Escalation level must be at least 1", {"level": level})

        async with self._uow_factory() as uow:
            await self._validate_target(uow, escalate_to_user_id)
            if await uow.rules.exists(domain_id, scope_id, level):
                raise ValidationException(
                    "An escalation rule already exists for this domain, scope and level",
                    {"domain_id": domain_id, "scope_id": scope_id, "level": level}
                )

            now = self._clock()
            rule = await uow.rules.add(EscalationRule(
                id=None,
                level=level,
                domain_id=domain_id,
                scope_id=scope_id,
                escalate_to_user_id=escalate_to_user_id,
                tat_hours=tat_hours,
                notify_channel=notify_channel,
                is_active=True,
                created_at=now,
                updated_at=now,
            ))

        logger.info(
            "Escalation rule created",
            extra={"rule_id": rule.id, "level": level, "domain_id": domain_id, "scope_id": scope_id}
        )
        return rule

    async def update_rule(self, user_id: str, rule_id: int, changes: dict) -> EscalationRule:
        """Apply a partial update; unknown keys are ignored."""
        await self._require_manager(user_id)
        editable = {
            "level", "domain_id", "scope_id", "escalate_to_user_id",
            "tat_hours", "notify_channel", "is_active"
        }
        changes = {key: value for key, value in changes.items() if key in editable}

        async with self._uow_factory() as uow:
            rule = await uow.rules.get(rule_id)
            if rule is None:
                raise ResourceNotFoundException("EscalationRule", str(rule_id))

            if "level" in changes and (changes["level"] is None or changes["level"] < 1):
                raise ValidationException("Escalation level must be at least 1")
            if changes.get("escalate_to_user_id"):
                await self._validate_target(uow, changes["escalate_to_user_id"])

            for key, value in changes.items():
                setattr(rule, key, value)

            if await uow.rules.exists(rule.domain_id, rule.scope_id, rule.level, exclude_id=rule.id):
                raise ValidationException(
                    "An escalation rule already exists for this domain, scope and level"
                )

            rule.updated_at = self._clock()
            rule = await uow.rules.update(rule)

        logger.info("Escalation rule updated", extra={"rule_id": rule_id, "fields": sorted(changes)})
        return rule

    async def deactivate_rule(self, user_id: str, rule_id: int) -> EscalationRule:
        """Soft delete: the rule stops matching but keeps its history."""
        return await self.update_rule(user_id, rule_id, {"is_active": False})

    @staticmethod
    async def _validate_target(uow: IUnitOfWork, user_id: Optional[str]) -> None:
        if user_id and not await uow.users.exists(user_id):
            raise ValidationException(
                "Escalation target user does not exist",
                {"escalate_to_user_id": user_id}
            )
