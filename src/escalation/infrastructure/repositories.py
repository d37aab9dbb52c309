"""
Escalation Infrastructure Repositories
======================================

Concrete implementations of repository interfaces using SQLAlchemy.

This layer contains the data access logic - how we store and retrieve
entities from the database.
"""

from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.config import TERMINAL_STATUSES, TicketStatus
from src.core.exceptions import ConcurrencyConflictException, ValidationException
from src.escalation.application.services import (
    IActivityRepository,
    ICategoryRepository,
    IEscalationRuleRepository,
    IFeedbackRepository,
    IRoleProvider,
    ITicketRepository,
    IUnitOfWork,
    IUserRepository,
)
from src.escalation.domain import Category, EscalationRule, Feedback, TatPause, Ticket, TicketActivity
from src.escalation.domain.entities import (
    PAUSED_AT_KEY,
    PAUSED_STATUS_KEY,
    PREVIOUS_ASSIGNEE_KEY,
    REMAINING_HOURS_KEY,
)
from src.escalation.infrastructure.models import (
    CategoryModel,
    EscalationRuleModel,
    TicketActivityModel,
    TicketFeedbackModel,
    TicketModel,
    UserModel,
)


def _as_utc(moment: Optional[datetime]) -> Optional[datetime]:
    """sqlite hands back naive datetimes; every stored instant is UTC."""
    if moment is None:
        return None
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def _nullable_eq(column, value):
    return column.is_(None) if value is None else column == value


class SQLAlchemyTicketRepository(ITicketRepository):
    """
    SQLAlchemy implementation of ticket repository.

    Writes are compare-and-swap on the `version` column.
    """

    def __init__(self, session: AsyncSession):
        self._session = session

    async def get(self, ticket_id: int, for_update: bool = False) -> Optional[Ticket]:
        """Get ticket by ID, optionally locking the row (no-op on sqlite)."""
        stmt = (
            select(TicketModel)
            .where(TicketModel.id == ticket_id)
            .execution_options(populate_existing=True)
        )
        if for_update:
            stmt = stmt.with_for_update()

        result = await self._session.execute(stmt)
        model = result.scalar_one_or_none()
        return self._to_domain(model) if model else None

    async def save(self, ticket: Ticket) -> Ticket:
        """Persist TAT and escalation fields if nobody else wrote first."""
        values = {
            TicketModel.status: ticket.status,
            TicketModel.assigned_to: ticket.assigned_to,
            TicketModel.escalation_level: ticket.escalation_level,
            TicketModel.tat_extensions: ticket.tat_extensions,
            TicketModel.reopen_count: ticket.reopen_count,
            TicketModel.acknowledgement_due_at: _as_utc(ticket.acknowledgement_due_at),
            TicketModel.resolution_due_at: _as_utc(ticket.resolution_due_at),
            TicketModel.acknowledged_at: _as_utc(ticket.acknowledged_at),
            TicketModel.resolved_at: _as_utc(ticket.resolved_at),
            TicketModel.closed_at: _as_utc(ticket.closed_at),
            TicketModel.reopened_at: _as_utc(ticket.reopened_at),
            TicketModel.escalated_at: _as_utc(ticket.escalated_at),
            TicketModel.metadata_: ticket.metadata or None,
            TicketModel.updated_at: _as_utc(ticket.updated_at),
            TicketModel.version: ticket.version + 1,
        }
        stmt = (
            update(TicketModel)
            .where(TicketModel.id == ticket.id, TicketModel.version == ticket.version)
            .values(values)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        if result.rowcount == 0:
            raise ConcurrencyConflictException("Ticket", str(ticket.id), ticket.version)

        ticket.version += 1
        return ticket

    async def list_breach_candidate_ids(
        self, now: datetime, limit: int = 500, after_id: int = 0
    ) -> List[int]:
        """Coarse SQL filter; the trigger predicates make the final call."""
        now = _as_utc(now)
        excluded = list(TERMINAL_STATUSES) + [TicketStatus.AWAITING_STUDENT_RESPONSE]
        stmt = (
            select(TicketModel.id)
            .where(
                TicketModel.id > after_id,
                TicketModel.status.notin_(excluded),
                or_(
                    and_(
                        TicketModel.acknowledgement_due_at < now,
                        TicketModel.acknowledged_at.is_(None),
                    ),
                    TicketModel.resolution_due_at < now,
                ),
            )
            .order_by(TicketModel.id)
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    @staticmethod
    def _to_domain(model: TicketModel) -> Ticket:
        metadata = dict(model.metadata_ or {})
        pause = TatPause.from_metadata(metadata)
        previous_assignee = metadata.pop(PREVIOUS_ASSIGNEE_KEY, None)
        for key in (PAUSED_AT_KEY, REMAINING_HOURS_KEY, PAUSED_STATUS_KEY):
            metadata.pop(key, None)

        return Ticket(
            id=model.id,
            status=model.status,
            category_id=model.category_id,
            scope_id=model.scope_id,
            created_by=model.created_by,
            assigned_to=model.assigned_to,
            escalation_level=model.escalation_level or 0,
            tat_extensions=model.tat_extensions or 0,
            reopen_count=model.reopen_count or 0,
            acknowledgement_due_at=_as_utc(model.acknowledgement_due_at),
            resolution_due_at=_as_utc(model.resolution_due_at),
            acknowledged_at=_as_utc(model.acknowledged_at),
            resolved_at=_as_utc(model.resolved_at),
            closed_at=_as_utc(model.closed_at),
            reopened_at=_as_utc(model.reopened_at),
            escalated_at=_as_utc(model.escalated_at),
            tat_pause=pause,
            previous_assigned_to=previous_assignee,
            extra_metadata=metadata,
            created_at=_as_utc(model.created_at),
            updated_at=_as_utc(model.updated_at),
            version=model.version,
        )


class SQLAlchemyEscalationRuleRepository(IEscalationRuleRepository):
    """SQLAlchemy implementation of escalation rule repository."""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def find_candidates(
        self,
        domain_id: Optional[int],
        scope_id: Optional[int],
        level: int
    ) -> List[EscalationRule]:
        """Active rules at `level` for the exact domain/scope or their wildcards."""
        domain_match = EscalationRuleModel.domain_id.is_(None)
        if domain_id is not None:
            domain_match = or_(EscalationRuleModel.domain_id == domain_id, domain_match)
        scope_match = EscalationRuleModel.scope_id.is_(None)
        if scope_id is not None:
            scope_match = or_(EscalationRuleModel.scope_id == scope_id, scope_match)

        stmt = (
            select(EscalationRuleModel)
            .where(
                EscalationRuleModel.is_active.is_(True),
                EscalationRuleModel.level == level,
                domain_match,
                scope_match,
            )
            .order_by(EscalationRuleModel.level.asc(), EscalationRuleModel.id.asc())
        )
        result = await self._session.execute(stmt)
        return [self._to_domain(model) for model in result.scalars().all()]

    async def get(self, rule_id: int) -> Optional[EscalationRule]:
        model = await self._session.get(EscalationRuleModel, rule_id)
        return self._to_domain(model) if model else None

    async def list(self, include_inactive: bool = False) -> List[EscalationRule]:
        stmt = select(EscalationRuleModel)
        if not include_inactive:
            stmt = stmt.where(EscalationRuleModel.is_active.is_(True))
        stmt = stmt.order_by(
            EscalationRuleModel.domain_id.asc(),
            EscalationRuleModel.scope_id.asc(),
            EscalationRuleModel.level.asc(),
            EscalationRuleModel.id.asc(),
        )
        result = await self._session.execute(stmt)
        return [self._to_domain(model) for model in result.scalars().all()]

    async def exists(
        self,
        domain_id: Optional[int],
        scope_id: Optional[int],
        level: int,
        exclude_id: Optional[int] = None
    ) -> bool:
        # NULLs never collide in a unique index, so the check lives here
        stmt = select(EscalationRuleModel.id).where(
            _nullable_eq(EscalationRuleModel.domain_id, domain_id),
            _nullable_eq(EscalationRuleModel.scope_id, scope_id),
            EscalationRuleModel.level == level,
        )
        if exclude_id is not None:
            stmt = stmt.where(EscalationRuleModel.id != exclude_id)
        result = await self._session.execute(stmt.limit(1))
        return result.scalar_one_or_none() is not None

    async def add(self, rule: EscalationRule) -> EscalationRule:
        model = EscalationRuleModel(
            domain_id=rule.domain_id,
            scope_id=rule.scope_id,
            level=rule.level,
            escalate_to_user_id=rule.escalate_to_user_id,
            tat_hours=rule.tat_hours,
            notify_channel=rule.notify_channel,
            is_active=rule.is_active,
            created_at=rule.created_at,
            updated_at=rule.updated_at,
        )
        self._session.add(model)
        try:
            await self._session.flush()
        except IntegrityError as e:
            raise ValidationException(
                "An escalation rule already exists for this domain, scope and level"
            ) from e

        rule.id = model.id
        return rule

    async def update(self, rule: EscalationRule) -> EscalationRule:
        model = await self._session.get(EscalationRuleModel, rule.id)
        if model is None:
            raise ValidationException(f"Escalation rule {rule.id} no longer exists")

        model.domain_id = rule.domain_id
        model.scope_id = rule.scope_id
        model.level = rule.level
        model.escalate_to_user_id = rule.escalate_to_user_id
        model.tat_hours = rule.tat_hours
        model.notify_channel = rule.notify_channel
        model.is_active = rule.is_active
        model.updated_at = rule.updated_at
        try:
            await self._session.flush()
        except IntegrityError as e:
            raise ValidationException(
                "An escalation rule already exists for this domain, scope and level"
            ) from e
        return self._to_domain(model)

    @staticmethod
    def _to_domain(model: EscalationRuleModel) -> EscalationRule:
        return EscalationRule(
            id=model.id,
            level=model.level,
            domain_id=model.domain_id,
            scope_id=model.scope_id,
            escalate_to_user_id=model.escalate_to_user_id,
            tat_hours=model.tat_hours,
            notify_channel=model.notify_channel,
            is_active=model.is_active,
            created_at=_as_utc(model.created_at),
            updated_at=_as_utc(model.updated_at),
        )


class SQLAlchemyCategoryRepository(ICategoryRepository):
    """SQLAlchemy implementation of category lookups."""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def get(self, category_id: int) -> Optional[Category]:
        model = await self._session.get(CategoryModel, category_id)
        if model is None:
            return None
        return Category(
            id=model.id,
            name=model.name,
            domain_id=model.domain_id,
            sla_hours=model.sla_hours,
        )


class SQLAlchemyActivityRepository(IActivityRepository):
    """SQLAlchemy implementation of the ticket activity log."""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def add(self, activity: TicketActivity) -> TicketActivity:
        model = TicketActivityModel(
            ticket_id=activity.ticket_id,
            user_id=activity.user_id,
            action=activity.action,
            details=activity.details,
            visibility=activity.visibility,
            created_at=_as_utc(activity.created_at),
        )
        self._session.add(model)
        await self._session.flush()

        activity.id = model.id
        return activity

    async def list_for_ticket(self, ticket_id: int) -> List[TicketActivity]:
        stmt = (
            select(TicketActivityModel)
            .where(TicketActivityModel.ticket_id == ticket_id)
            .order_by(TicketActivityModel.created_at.asc(), TicketActivityModel.id.asc())
        )
        result = await self._session.execute(stmt)
        return [
            TicketActivity(
                id=model.id,
                ticket_id=model.ticket_id,
                action=model.action,
                details=model.details or {},
                user_id=model.user_id,
                visibility=model.visibility,
                created_at=_as_utc(model.created_at),
            )
            for model in result.scalars().all()
        ]


class SQLAlchemyFeedbackRepository(IFeedbackRepository):
    """SQLAlchemy implementation of ticket feedback."""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def get_for_ticket(self, ticket_id: int) -> Optional[Feedback]:
        stmt = select(TicketFeedbackModel).where(TicketFeedbackModel.ticket_id == ticket_id)
        result = await self._session.execute(stmt)
        model = result.scalar_one_or_none()
        if model is None:
            return None
        return Feedback(
            id=model.id,
            ticket_id=model.ticket_id,
            rating=model.rating,
            feedback=model.feedback,
            created_at=_as_utc(model.created_at),
        )

    async def add(self, feedback: Feedback) -> Feedback:
        model = TicketFeedbackModel(
            ticket_id=feedback.ticket_id,
            rating=feedback.rating,
            feedback=feedback.feedback,
            created_at=_as_utc(feedback.created_at),
        )
        self._session.add(model)
        try:
            await self._session.flush()
        except IntegrityError as e:
            raise ValidationException("Feedback already submitted for this ticket") from e

        feedback.id = model.id
        return feedback


class SQLAlchemyUserRepository(IUserRepository):
    """SQLAlchemy implementation of user lookups."""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def exists(self, user_id: str) -> bool:
        stmt = select(UserModel.id).where(UserModel.id == user_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none() is not None


class SQLAlchemyUnitOfWork(IUnitOfWork):
    """
    Unit of work over one AsyncSession.

    Usage:
        async with SQLAlchemyUnitOfWork(session_maker) as uow:
            ticket = await uow.tickets.get(42, for_update=True)
            ...
    """

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        super().__init__()
        self._session_maker = session_maker
        self._session: Optional[AsyncSession] = None

    async def __aenter__(self) -> "SQLAlchemyUnitOfWork":
        await super().__aenter__()
        self._session = self._session_maker()
        self.tickets = SQLAlchemyTicketRepository(self._session)
        self.rules = SQLAlchemyEscalationRuleRepository(self._session)
        self.categories = SQLAlchemyCategoryRepository(self._session)
        self.activities = SQLAlchemyActivityRepository(self._session)
        self.feedback = SQLAlchemyFeedbackRepository(self._session)
        self.users = SQLAlchemyUserRepository(self._session)
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        try:
            await super().__aexit__(exc_type, exc, tb)
        finally:
            await self._session.close()
            self._session = None

    async def commit(self) -> None:
        await self._session.commit()

    async def rollback(self) -> None:
        await self._session.rollback()


class SQLAlchemyRoleProvider(IRoleProvider):
    """Role lookup against the users table, in its own short session."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self._session_maker = session_maker

    async def get_user_role(self, user_id: str) -> Optional[str]:
        if not user_id:
            return None
        async with self._session_maker() as session:
            result = await session.execute(select(UserModel.role).where(UserModel.id == user_id))
            return result.scalar_one_or_none()
