"""
Escalation Application Layer
============================

Application layer for the escalation module.

Contains:
- Services: Orchestrate business logic and coordinate with repositories
- DTOs: Data transfer objects for API serialization

This layer depends on the domain layer and repository interfaces,
but not on concrete infrastructure implementations.
"""

from src.escalation.application.dto import (
    EscalateTicketRequest,
    ExtendTatRequest,
    SetTatRequest,
    ReopenTicketRequest,
    FeedbackRequest,
    StatusUpdateRequest,
    EscalationRuleCreateRequest,
    EscalationRuleUpdateRequest,
    TicketTatResponse,
    FeedbackResponse,
    EscalationRuleResponse,
    SweepResponse,
)
from src.escalation.application.services import (
    RuleMatcher,
    EscalationExecutor,
    TicketEscalationService,
    EscalationSweepService,
    EscalationRuleService,
    SweepResult,
    StaticPolicyProvider,
    publish_events,
    ITicketRepository,
    IEscalationRuleRepository,
    ICategoryRepository,
    IActivityRepository,
    IFeedbackRepository,
    IUserRepository,
    IUnitOfWork,
    IRoleProvider,
    IEventSink,
    IPolicyProvider,
)

__all__ = [
    # DTOs
    "EscalateTicketRequest",
    "ExtendTatRequest",
    "SetTatRequest",
    "ReopenTicketRequest",
    "FeedbackRequest",
    "StatusUpdateRequest",
    "EscalationRuleCreateRequest",
    "EscalationRuleUpdateRequest",
    "TicketTatResponse",
    "FeedbackResponse",
    "EscalationRuleResponse",
    "SweepResponse",
    # Services
    "RuleMatcher",
    "EscalationExecutor",
    "TicketEscalationService",
    "EscalationSweepService",
    "EscalationRuleService",
    "SweepResult",
    "StaticPolicyProvider",
    "publish_events",
    # Interfaces
    "ITicketRepository",
    "IEscalationRuleRepository",
    "ICategoryRepository",
    "IActivityRepository",
    "IFeedbackRepository",
    "IUserRepository",
    "IUnitOfWork",
    "IRoleProvider",
    "IEventSink",
    "IPolicyProvider",
]
