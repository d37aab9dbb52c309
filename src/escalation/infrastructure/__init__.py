"""
Escalation Infrastructure Layer
===============================

Infrastructure implementations for the escalation module:
- Models: SQLAlchemy ORM models
- Repositories: Data access layer and unit of work
- External: Policy file watcher, event sinks, scheduler
"""

from src.escalation.infrastructure.models import (
    TicketModel,
    CategoryModel,
    EscalationRuleModel,
    TicketActivityModel,
    TicketFeedbackModel,
    UserModel,
    OutboxEventModel,
)
from src.escalation.infrastructure.repositories import (
    SQLAlchemyTicketRepository,
    SQLAlchemyEscalationRuleRepository,
    SQLAlchemyCategoryRepository,
    SQLAlchemyActivityRepository,
    SQLAlchemyFeedbackRepository,
    SQLAlchemyUserRepository,
    SQLAlchemyUnitOfWork,
    SQLAlchemyRoleProvider,
)
from src.escalation.infrastructure.external import (
    EscalationPolicyManager,
    CircuitBreaker,
    WebhookEventSink,
    OutboxEventSink,
    CompositeEventSink,
    SweepScheduler,
)

__all__ = [
    "TicketModel",
    "CategoryModel",
    "EscalationRuleModel",
    "TicketActivityModel",
    "TicketFeedbackModel",
    "UserModel",
    "OutboxEventModel",
    "SQLAlchemyTicketRepository",
    "SQLAlchemyEscalationRuleRepository",
    "SQLAlchemyCategoryRepository",
    "SQLAlchemyActivityRepository",
    "SQLAlchemyFeedbackRepository",
    "SQLAlchemyUserRepository",
    "SQLAlchemyUnitOfWork",
    "SQLAlchemyRoleProvider",
    "EscalationPolicyManager",
    "CircuitBreaker",
    "WebhookEventSink",
    "OutboxEventSink",
    "CompositeEventSink",
    "SweepScheduler",
]
