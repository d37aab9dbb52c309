"""
Escalation Controllers (API Routes)
===================================

FastAPI routes for TAT and escalation endpoints.

Controllers are thin - they delegate to application services. Services are
built once at startup and read from `app.state`.
"""

import hmac
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, Query, Request, status

from src.config import Settings, settings as default_settings
from src.core.exceptions import UnauthorizedException
from src.escalation.application import (
    EscalateTicketRequest,
    EscalationRuleCreateRequest,
    EscalationRuleResponse,
    EscalationRuleService,
    EscalationRuleUpdateRequest,
    EscalationSweepService,
    ExtendTatRequest,
    FeedbackRequest,
    FeedbackResponse,
    ReopenTicketRequest,
    SetTatRequest,
    StatusUpdateRequest,
    SweepResponse,
    TicketEscalationService,
    TicketTatResponse,
)
from src.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)

cron_router = APIRouter(prefix="/cron", tags=["Cron"])
ticket_router = APIRouter(prefix="/tickets", tags=["Ticket Escalation"])
rule_router = APIRouter(prefix="/escalation-rules", tags=["Escalation Rules"])


# ========== Example payloads for Swagger ==========

TICKET_TAT_RESPONSE_EXAMPLE = {
    "id": 42,
    "status": "in_progress",
    "assigned_to": "snr-admin-1",
    "escalation_level": 1,
    "tat_extensions": 0,
    "reopen_count": 0,
    "acknowledgement_due_at": "2024-01-17T10:00:00Z",
    "resolution_due_at": "2024-01-19T10:00:00Z",
    "acknowledged_at": "2024-01-15T11:00:00Z",
    "escalated_at": "2024-01-16T09:00:00Z",
    "is_paused": False,
    "paused_remaining_hours": None,
    "updated_at": "2024-01-16T09:00:00Z",
    "version": 4,
    "warning": None
}

SWEEP_RESPONSE_EXAMPLE = {
    "success": True,
    "checked": 3,
    "escalated": 2,
    "skipped": 1,
    "failed": 0,
    "errors": []
}


# ========== Dependencies ==========

def get_app_settings(request: Request) -> Settings:
    return getattr(request.app.state, "settings", None) or default_settings


def get_ticket_service(request: Request) -> TicketEscalationService:
    """Get ticket escalation service instance."""
    return request.app.state.ticket_service


def get_sweep_service(request: Request) -> EscalationSweepService:
    """Get escalation sweep service instance."""
    return request.app.state.sweep_service


def get_rule_service(request: Request) -> EscalationRuleService:
    """Get escalation rule service instance."""
    return request.app.state.rule_service


async def get_current_user_id(
    x_user_id: Optional[str] = Header(None, alias="X-User-Id")
) -> str:
    """The acting user, as asserted by the authenticating gateway."""
    if not x_user_id or not x_user_id.strip():
        raise UnauthorizedException("Missing X-User-Id header")
    return x_user_id.strip()


async def verify_cron_secret(
    authorization: Optional[str] = Header(None),
    x_cron_secret: Optional[str] = Header(None, alias="X-Cron-Secret"),
    app_settings: Settings = Depends(get_app_settings)
) -> None:
    """
    Accepts `Authorization: Bearer <secret>` or `X-Cron-Secret: <secret>`.

    Without a configured secret the endpoint is open outside production.
    """
    expected = app_settings.cron_secret
    if not expected:
        if app_settings.environment == "production":
            raise UnauthorizedException("Cron secret is not configured")
        return

    provided = x_cron_secret
    if authorization and authorization.lower().startswith("bearer "):
        provided = authorization[7:].strip()

    if not provided or not hmac.compare_digest(provided, expected):
        logger.warning("Rejected cron call with bad secret")
        raise UnauthorizedException("Invalid cron secret")


# ========== Cron ==========

@cron_router.post(
    "/escalate-tickets",
    response_model=SweepResponse,
    summary="Run the escalation sweep",
    description="""
    Escalate every ticket whose acknowledgement or resolution deadline has
    passed. Intended to be called by an external scheduler; safe to call
    more than once.

    Tickets waiting on the student (`awaiting_student_response`) are exempt.
    """,
    responses={
        200: {
            "description": "Sweep finished",
            "content": {"application/json": {"example": SWEEP_RESPONSE_EXAMPLE}}
        },
        401: {"description": "Missing or invalid cron secret"}
    },
    dependencies=[Depends(verify_cron_secret)]
)
async def escalate_tickets(sweep_service: EscalationSweepService = Depends(get_sweep_service)):
    result = await sweep_service.run_escalation_sweep()
    return SweepResponse(
        checked=result.checked,
        escalated=result.escalated,
        skipped=result.skipped,
        failed=result.failed,
        errors=result.errors
    )


# ========== Tickets ==========

@ticket_router.post(
    "/{ticket_id}/escalate",
    response_model=TicketTatResponse,
    summary="Escalate a ticket manually",
    responses={
        200: {
            "description": "Ticket escalated",
            "content": {"application/json": {"example": TICKET_TAT_RESPONSE_EXAMPLE}}
        },
        400: {"description": "Ticket is closed"},
        403: {"description": "Students may only escalate their own tickets"},
        404: {"description": "Ticket not found"}
    }
)
async def escalate_ticket(
    ticket_id: int,
    request: Optional[EscalateTicketRequest] = None,
    user_id: str = Depends(get_current_user_id),
    service: TicketEscalationService = Depends(get_ticket_service)
):
    reason = request.reason if request else None
    ticket = await service.escalate_manually(ticket_id, user_id, reason)
    return TicketTatResponse.from_domain(ticket)


@ticket_router.post(
    "/{ticket_id}/tat",
    response_model=TicketTatResponse,
    summary="Set a ticket's TAT",
    description="""
    Replace the resolution deadline with now + TAT, in business hours.

    **TAT formats**: `"48 hours"`, `"2 days"`, `"1 week"`, or a bare number of hours.
    """
)
async def set_ticket_tat(
    ticket_id: int,
    request: SetTatRequest,
    user_id: str = Depends(get_current_user_id),
    service: TicketEscalationService = Depends(get_ticket_service)
):
    ticket = await service.set_tat(ticket_id, user_id, request.tat, request.mark_in_progress)
    return TicketTatResponse.from_domain(ticket)


@ticket_router.post(
    "/{ticket_id}/tat/extend",
    response_model=TicketTatResponse,
    summary="Extend a ticket's TAT",
    description="""
    Push the resolution deadline out by `hours` business hours (1-168).

    The 3rd, 5th and 7th extension escalate the ticket; a warning is
    returned from the 3rd extension on.
    """
)
async def extend_ticket_tat(
    ticket_id: int,
    request: ExtendTatRequest,
    user_id: str = Depends(get_current_user_id),
    service: TicketEscalationService = Depends(get_ticket_service)
):
    ticket = await service.extend_tat(ticket_id, user_id, request.hours, request.reason)
    warning = service.policy.extension_warning(ticket.tat_extensions)
    return TicketTatResponse.from_domain(ticket, warning=warning)


@ticket_router.post(
    "/{ticket_id}/reopen",
    response_model=TicketTatResponse,
    summary="Reopen a resolved or closed ticket"
)
async def reopen_ticket(
    ticket_id: int,
    request: ReopenTicketRequest,
    user_id: str = Depends(get_current_user_id),
    service: TicketEscalationService = Depends(get_ticket_service)
):
    ticket = await service.reopen_ticket(ticket_id, user_id, request.reason)
    warning = service.policy.reopen_warning(ticket.reopen_count)
    return TicketTatResponse.from_domain(ticket, warning=warning)


@ticket_router.post(
    "/{ticket_id}/feedback",
    response_model=FeedbackResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Rate a resolved ticket"
)
async def submit_feedback(
    ticket_id: int,
    request: FeedbackRequest,
    user_id: str = Depends(get_current_user_id),
    service: TicketEscalationService = Depends(get_ticket_service)
):
    feedback = await service.submit_feedback(ticket_id, user_id, request.rating, request.feedback)
    return FeedbackResponse.from_domain(feedback)


@ticket_router.patch(
    "/{ticket_id}/status",
    response_model=TicketTatResponse,
    summary="Change a ticket's status",
    description="""
    Move the ticket through the status state machine. Moving to
    `awaiting_student_response` pauses the resolution clock; moving out of
    it resumes the clock with the hours that were left.
    """
)
async def update_ticket_status(
    ticket_id: int,
    request: StatusUpdateRequest,
    user_id: str = Depends(get_current_user_id),
    service: TicketEscalationService = Depends(get_ticket_service)
):
    ticket = await service.update_ticket_status(ticket_id, request.status, user_id, request.comment)
    return TicketTatResponse.from_domain(ticket)


# ========== Escalation Rules ==========

@rule_router.get("", response_model=List[EscalationRuleResponse], summary="List escalation rules")
async def list_rules(
    include_inactive: bool = Query(False, description="Include deactivated rules"),
    user_id: str = Depends(get_current_user_id),
    service: EscalationRuleService = Depends(get_rule_service)
):
    rules = await service.list_rules(user_id, include_inactive=include_inactive)
    return [EscalationRuleResponse.from_domain(rule) for rule in rules]


@rule_router.post(
    "",
    response_model=EscalationRuleResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create an escalation rule"
)
async def create_rule(
    request: EscalationRuleCreateRequest,
    user_id: str = Depends(get_current_user_id),
    service: EscalationRuleService = Depends(get_rule_service)
):
    rule = await service.create_rule(
        user_id,
        level=request.level,
        domain_id=request.domain_id,
        scope_id=request.scope_id,
        escalate_to_user_id=request.escalate_to_user_id,
        tat_hours=request.tat_hours,
        notify_channel=request.notify_channel
    )
    return EscalationRuleResponse.from_domain(rule)


@rule_router.patch("/{rule_id}", response_model=EscalationRuleResponse, summary="Update an escalation rule")
async def update_rule(
    rule_id: int,
    request: EscalationRuleUpdateRequest,
    user_id: str = Depends(get_current_user_id),
    service: EscalationRuleService = Depends(get_rule_service)
):
    rule = await service.update_rule(user_id, rule_id, request.model_dump(exclude_unset=True))
    return EscalationRuleResponse.from_domain(rule)


@rule_router.delete(
    "/{rule_id}",
    response_model=EscalationRuleResponse,
    summary="Deactivate an escalation rule"
)
async def deactivate_rule(
    rule_id: int,
    user_id: str = Depends(get_current_user_id),
    service: EscalationRuleService = Depends(get_rule_service)
):
    rule = await service.deactivate_rule(user_id, rule_id)
    return EscalationRuleResponse.from_domain(rule)
