"""
Campus Ticket Escalation - Main Application
===========================================

TAT tracking and escalation engine for the campus support-ticket platform.

Modules:
- Escalation: business-hours TAT, status state machine, escalation rules,
  escalation triggers and the periodic sweep

Clean Architecture Layers:
- Interfaces: FastAPI controllers
- Application: Services and DTOs
- Domain: Entities, value objects, business calendar
- Infrastructure: Database, policy file, event sinks, scheduler
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, List, Optional
from zoneinfo import ZoneInfo

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

# Configuration and Core
from src.config import settings
from src.core import ApplicationException

# Infrastructure
from src.infrastructure.database import (
    init_database, close_database, create_tables, get_engine, get_session_maker
)

# Escalation Module
from src.escalation.application import (
    EscalationRuleService,
    EscalationSweepService,
    IEventSink,
    IPolicyProvider,
    TicketEscalationService,
)
from src.escalation.domain import utc_now
from src.escalation.infrastructure import (
    CompositeEventSink,
    EscalationPolicyManager,
    OutboxEventSink,
    SQLAlchemyRoleProvider,
    SQLAlchemyUnitOfWork,
    SweepScheduler,
    WebhookEventSink,
)
from src.escalation.interfaces import cron_router, ticket_router, rule_router

# Logging
from src.shared.infrastructure.logging import setup_logging, get_logger
from src.shared.api.middleware import (
    CorrelationIDMiddleware,
    LoggingMiddleware,
    application_exception_handler,
    global_exception_handler,
)

logger = get_logger(__name__)


def build_event_sink(session_maker: async_sessionmaker[AsyncSession]) -> Optional[IEventSink]:
    """Event sink from settings: outbox table and/or webhook."""
    sinks: List[IEventSink] = []
    if settings.outbox_enabled:
        sinks.append(OutboxEventSink(session_maker))
    if settings.event_webhook_url:
        sinks.append(WebhookEventSink(
            settings.event_webhook_url,
            timeout_seconds=settings.event_webhook_timeout_seconds
        ))

    if not sinks:
        return None
    return CompositeEventSink(sinks)


def configure_services(
    app: FastAPI,
    session_maker: async_sessionmaker[AsyncSession],
    policy_provider: IPolicyProvider,
    event_sink: Optional[IEventSink] = None,
    **service_options
) -> None:
    """
    Wire the escalation services into app.state.

    `service_options` (tz, clock) are passed to the ticket and sweep services.
    """
    def uow_factory() -> SQLAlchemyUnitOfWork:
        return SQLAlchemyUnitOfWork(session_maker)

    role_provider = SQLAlchemyRoleProvider(session_maker)

    app.state.settings = settings
    app.state.policy_provider = policy_provider
    app.state.ticket_service = TicketEscalationService(
        uow_factory, policy_provider, role_provider, event_sink, **service_options
    )
    app.state.sweep_service = EscalationSweepService(
        uow_factory, policy_provider, event_sink, **service_options
    )
    app.state.rule_service = EscalationRuleService(
        uow_factory, role_provider, clock=service_options.get("clock", utc_now)
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """
    Application lifespan manager.

    STARTUP:
    1. Setup structured logging
    2. Initialize database
    3. Create database tables
    4. Load escalation policy and watch it for changes
    5. Build event sinks and services
    6. Start the optional in-process sweep scheduler

    SHUTDOWN:
    1. Stop the scheduler
    2. Stop the policy watcher
    3. Close event sinks
    4. Close database connections
    """
    # === STARTUP ===
    setup_logging(settings.log_level, settings.environment)
    logger.info("Starting Campus Ticket Escalation Service", extra={
        "version": settings.app_version,
        "environment": settings.environment
    })

    logger.info("Initializing database")
    init_database()

    # Create tables (for development - use Alembic in production)
    logger.info("Creating database tables")
    try:
        await create_tables()
    except Exception as e:
        logger.warning("Database not available - running in degraded mode", extra={"error": str(e)})

    logger.info("Loading escalation policy")
    policy_manager = EscalationPolicyManager()
    policy_manager.load(settings.escalation_policy_path)
    policy_manager.start_watching()

    session_maker = get_session_maker()
    event_sink = build_event_sink(session_maker)
    configure_services(
        app,
        session_maker,
        policy_manager,
        event_sink,
        tz=ZoneInfo(settings.business_timezone)
    )

    scheduler = None
    if settings.sweep_interval_seconds > 0:
        scheduler = SweepScheduler(interval_seconds=settings.sweep_interval_seconds)

        async def escalation_sweep_job():
            """Background escalation sweep."""
            await app.state.sweep_service.run_escalation_sweep()

        await scheduler.start(escalation_sweep_job)
    app.state.scheduler = scheduler

    logger.info("Campus Ticket Escalation Service started successfully")

    yield  # Application runs here

    # === SHUTDOWN ===
    logger.info("Shutting down Campus Ticket Escalation Service")

    if scheduler:
        await scheduler.stop()

    policy_manager.stop_watching()

    if isinstance(event_sink, CompositeEventSink):
        await event_sink.close()

    await close_database()

    logger.info("Campus Ticket Escalation Service shutdown complete")


# Create FastAPI application
app = FastAPI(
    title="Campus Ticket Escalation API",
    description="""
    ## TAT Tracking & Escalation for Campus Support Tickets

    ---

    ### Escalation Triggers

    | Trigger | When |
    |---------|------|
    | Acknowledgement breach | Not acknowledged within 10% of the SLA |
    | Resolution breach | Not resolved within the SLA |
    | TAT extension | 3rd, 5th and 7th extension |
    | Reopen | 3rd reopen |
    | Negative feedback | Rating of 1 or 2 stars |

    Each escalation moves the ticket one level up, reassigns it when an
    escalation rule names a new owner, and grants 48 business hours more.

    ---

    ### Business Hours

    Weekdays count fully; Saturday and Sunday count as zero. A ticket
    waiting on the student (`awaiting_student_response`) has its clock
    paused and is never escalated for breaches.

    ---

    ### Authentication

    The acting user is passed in the `X-User-Id` header. The cron endpoint
    expects `Authorization: Bearer <CRON_SECRET>`.
    """,
    version=settings.app_version,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)

# === CORS Middleware ===
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# === Custom Middleware (from shared) ===
# Added last runs first: correlation id is set before the request is logged
app.add_middleware(LoggingMiddleware)
app.add_middleware(CorrelationIDMiddleware)
app.add_exception_handler(ApplicationException, application_exception_handler)
app.add_exception_handler(Exception, global_exception_handler)

# === Include Module Routers ===
app.include_router(cron_router)
app.include_router(ticket_router)
app.include_router(rule_router)


# === Health Check Endpoint ===

@app.get("/health", tags=["Health"], responses={
    200: {
        "description": "Service is healthy",
        "content": {
            "application/json": {
                "example": {
                    "status": "healthy",
                    "version": "1.0.0",
                    "environment": "development",
                    "checks": {
                        "database": "connected",
                        "escalation_policy": "loaded",
                        "sweep_scheduler": "disabled"
                    }
                }
            }
        }
    }
})
async def health_check(request: Request):
    """
    Health check endpoint for load balancers and orchestrators.

    Returns service health status including:
    - Database connectivity
    - Escalation policy status
    - Scheduler state
    """
    checks = {
        "database": "connected",
        "escalation_policy": "loaded",
        "sweep_scheduler": "disabled"
    }
    healthy = True

    try:
        async with get_engine().connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as e:
        checks["database"] = f"error: {e}"
        healthy = False

    policy_provider = getattr(request.app.state, "policy_provider", None)
    if policy_provider is None:
        checks["escalation_policy"] = "not_loaded"
        healthy = False

    scheduler = getattr(request.app.state, "scheduler", None)
    if scheduler is not None:
        checks["sweep_scheduler"] = "running" if scheduler.is_running else "stopped"

    return {
        "status": "healthy" if healthy else "degraded",
        "version": settings.app_version,
        "environment": settings.environment,
        "checks": checks
    }


@app.get("/", tags=["Root"])
async def root():
    """Root endpoint with API information."""
    return {
        "service": "Campus Ticket Escalation Service",
        "version": settings.app_version,
        "architecture": "Clean Architecture / Modular Monolith",
        "docs": "/docs",
        "health": "/health",
        "modules": {
            "escalation": {
                "endpoints": [
                    "POST /cron/escalate-tickets - Run the escalation sweep",
                    "POST /tickets/{id}/escalate - Escalate manually",
                    "POST /tickets/{id}/tat - Set TAT",
                    "POST /tickets/{id}/tat/extend - Extend TAT",
                    "POST /tickets/{id}/reopen - Reopen ticket",
                    "POST /tickets/{id}/feedback - Submit feedback",
                    "PATCH /tickets/{id}/status - Change status",
                    "GET|POST /escalation-rules - List or create rules",
                    "PATCH|DELETE /escalation-rules/{id} - Update or deactivate a rule"
                ]
            }
        }
    }


# === Development Entry Point ===

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "src.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.environment == "development",
        log_level="info"
    )
