from datetime import datetime, timedelta, timezone
from typing import List, Optional

import anyio
import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import NullPool

from src.config import TicketStatus, UserRole
from src.core.exceptions import EventSinkException
from src.escalation.application import (
    EscalationRuleService,
    EscalationSweepService,
    IEventSink,
    StaticPolicyProvider,
    TicketEscalationService,
)
from src.escalation.domain import DomainEvent, Ticket, TicketActivity
from src.escalation.infrastructure import (
    CategoryModel,
    EscalationRuleModel,
    SQLAlchemyActivityRepository,
    SQLAlchemyRoleProvider,
    SQLAlchemyTicketRepository,
    SQLAlchemyUnitOfWork,
    TicketModel,
    UserModel,
)
from src.infrastructure.database import Base, build_session_maker

UTC = timezone.utc

# 2024-01-15 is a Monday
MONDAY_9AM = datetime(2024, 1, 15, 9, 0, tzinfo=UTC)

ADMIN = "admin-1"
SENIOR_ADMIN = "snr-admin-1"
STUDENT = "student-1"
OTHER_STUDENT = "student-2"
DOMAIN_ID = 10


class FrozenClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingEventSink(IEventSink):
    def __init__(self):
        self.events: List[DomainEvent] = []

    async def emit(self, event: DomainEvent) -> None:
        self.events.append(event)


class FailingEventSink(IEventSink):
    def __init__(self):
        self.calls = 0

    async def emit(self, event: DomainEvent) -> None:
        self.calls += 1
        raise EventSinkException("webhook down")


class Seeder:
    """Writes fixtures straight through the ORM, bypassing the services."""

    def __init__(self, session_maker):
        self._session_maker = session_maker

    async def _add(self, model):
        async with self._session_maker() as session:
            session.add(model)
            await session.commit()
            return model

    async def user(self, user_id: str, role: str) -> str:
        await self._add(UserModel(id=user_id, full_name=user_id, email=f"{user_id}@campus.test", role=role))
        return user_id

    async def category(self, name: str = "Hostel", domain_id: Optional[int] = DOMAIN_ID, sla_hours: Optional[float] = 48) -> int:
        model = await self._add(CategoryModel(name=name, domain_id=domain_id, sla_hours=sla_hours))
        return model.id

    async def rule(
        self,
        level: int,
        domain_id: Optional[int] = DOMAIN_ID,
        scope_id: Optional[int] = None,
        escalate_to_user_id: Optional[str] = SENIOR_ADMIN,
        is_active: bool = True,
    ) -> int:
        model = await self._add(EscalationRuleModel(
            level=level,
            domain_id=domain_id,
            scope_id=scope_id,
            escalate_to_user_id=escalate_to_user_id,
            is_active=is_active,
        ))
        return model.id

    async def ticket(self, **fields) -> int:
        fields.setdefault("status", TicketStatus.OPEN)
        fields.setdefault("created_by", STUDENT)
        fields.setdefault("assigned_to", ADMIN)
        fields.setdefault("created_at", MONDAY_9AM)
        fields.setdefault("updated_at", MONDAY_9AM)
        model = await self._add(TicketModel(**fields))
        return model.id

    async def basics(self) -> int:
        """Standard users plus one category; returns the category id."""
        await self.user(ADMIN, UserRole.ADMIN)
        await self.user(SENIOR_ADMIN, UserRole.SNR_ADMIN)
        await self.user(STUDENT, UserRole.STUDENT)
        await self.user(OTHER_STUDENT, UserRole.STUDENT)
        return await self.category()

    async def get_ticket(self, ticket_id: int) -> Ticket:
        async with self._session_maker() as session:
            return await SQLAlchemyTicketRepository(session).get(ticket_id)

    async def activities(self, ticket_id: int, action: Optional[str] = None) -> List[TicketActivity]:
        async with self._session_maker() as session:
            entries = await SQLAlchemyActivityRepository(session).list_for_ticket(ticket_id)
        if action is None:
            return entries
        return [entry for entry in entries if entry.action == action]

    async def count(self, model) -> int:
        async with self._session_maker() as session:
            result = await session.execute(select(model))
            return len(result.scalars().all())


@pytest.fixture
def engine(tmp_path):
    # NullPool: every session gets its own connection, like separate workers
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'escalation.db'}", poolclass=NullPool)

    async def init_models() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    anyio.run(init_models)
    yield engine
    anyio.run(engine.dispose)


@pytest.fixture
def session_maker(engine):
    return build_session_maker(engine)


@pytest.fixture
def seed(session_maker) -> Seeder:
    return Seeder(session_maker)


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(MONDAY_9AM)


@pytest.fixture
def event_sink() -> RecordingEventSink:
    return RecordingEventSink()


@pytest.fixture
def policy_provider() -> StaticPolicyProvider:
    return StaticPolicyProvider()


@pytest.fixture
def uow_factory(session_maker):
    return lambda: SQLAlchemyUnitOfWork(session_maker)


@pytest.fixture
def ticket_service(uow_factory, session_maker, policy_provider, event_sink, clock) -> TicketEscalationService:
    return TicketEscalationService(
        uow_factory,
        policy_provider,
        SQLAlchemyRoleProvider(session_maker),
        event_sink,
        clock=clock,
    )


@pytest.fixture
def sweep_service(uow_factory, policy_provider, event_sink, clock) -> EscalationSweepService:
    return EscalationSweepService(uow_factory, policy_provider, event_sink, clock=clock)


@pytest.fixture
def rule_service(uow_factory, session_maker, clock) -> EscalationRuleService:
    return EscalationRuleService(uow_factory, SQLAlchemyRoleProvider(session_maker), clock=clock)
