"""
Helpdesk Escalation Service - Main Application
==============================================

TAT tracking and automatic escalation for the institutional helpdesk.

Modules:
- Escalation: TAT snapshots, escalation policy, batch runs, manual escalation

Clean Architecture Layers:
- Interfaces: FastAPI controllers
- Application: Services and DTOs
- Domain: Entities and value objects
- Infrastructure: Database, Slack, config hot-reload, scheduler
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

# Configuration and Core
from config import settings
from core import ApplicationException

# Infrastructure
from infrastructure.database import (
    init_database, close_database, create_tables, get_session_context, get_session_maker
)

# Escalation Module
from escalation.application import EscalationRunner
from escalation.infrastructure import (
    EscalationConfigManager, SlackNotifier, EscalationScheduler,
    SQLAlchemyTicketRepository
)
from escalation.interfaces import escalation_router

# Shared kernel
from shared.api.middleware import (
    CorrelationIDMiddleware,
    LoggingMiddleware,
    application_exception_handler,
    global_exception_handler
)
from shared.infrastructure.logging import setup_logging, get_logger

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """
    Application lifespan manager.

    STARTUP:
    1. Setup structured logging
    2. Initialize database and create tables
    3. Load escalation routing configuration
    4. Create Slack notifier
    5. Start escalation scheduler (unless an external cron drives runs)

    SHUTDOWN:
    1. Stop scheduler
    2. Stop config watcher
    3. Close Slack client
    4. Close database connections
    """
    # === STARTUP ===
    setup_logging(settings.log_level, settings.environment)
    logger.info("Starting Escalation Service", extra={
        "version": settings.app_version,
        "environment": settings.environment
    })

    init_database()

    # Use migrations in production; create_all is for local runs
    try:
        await create_tables()
    except Exception as e:
        logger.warning("Database not available - running in degraded mode", extra={"error": str(e)})

    config_manager = EscalationConfigManager()
    config_manager.load(settings.escalation_config_path)
    config_manager.start_watching()

    notifier = SlackNotifier()

    scheduler = None
    if settings.escalation_interval_minutes > 0:
        async def escalation_job():
            """Background escalation pass."""
            runner = EscalationRunner(
                SQLAlchemyTicketRepository(get_session_maker()),
                notifier,
                config_manager
            )
            try:
                await runner.run()
            except ApplicationException as e:
                logger.error("Scheduled escalation run failed", extra={"error": e.message})

        scheduler = EscalationScheduler(interval_minutes=settings.escalation_interval_minutes)
        await scheduler.start(escalation_job)
    else:
        logger.info("In-process scheduler disabled, relying on the cron endpoint")

    # Store services in app state for dependency injection
    app.state.settings = settings
    app.state.config_manager = config_manager
    app.state.notifier = notifier
    app.state.scheduler = scheduler

    logger.info("Escalation Service started successfully")

    yield

    # === SHUTDOWN ===
    logger.info("Shutting down Escalation Service")

    if scheduler:
        await scheduler.stop()

    config_manager.stop_watching()
    await notifier.close()
    await close_database()

    logger.info("Escalation Service shutdown complete")


app = FastAPI(
    title="Helpdesk Escalation API",
    description="""
    ## Ticket TAT & Escalation

    Tracks each ticket's turn-around time (TAT) and escalates overdue,
    unresolved tickets one level at a time.

    **Endpoints:**
    - `GET /api/cron/escalate-tickets` - Run an escalation pass (cron secret)
    - `GET /api/cron/tat-reminders` - Remind assignees of tickets due today (cron secret)
    - `GET /api/tickets/{id}/tat` - TAT snapshot
    - `POST /api/tickets/{id}/tat` - Set or extend TAT
    - `POST /api/tickets/{id}/escalate` - Manual escalation
    - `GET /api/tickets/stats` - Dashboard counters

    **Escalation levels (default routing):**

    | Level | Assignee |
    |-------|----------|
    | 1 | Category owner |
    | 2 | Admin |
    | 3 | Super admin |

    Routing is configured in `escalation_config.yaml` and hot-reloaded.
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

app.add_middleware(LoggingMiddleware)
app.add_middleware(CorrelationIDMiddleware)
app.add_exception_handler(ApplicationException, application_exception_handler)
app.add_exception_handler(Exception, global_exception_handler)

# === Include Module Routers ===
app.include_router(escalation_router)


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
                        "escalation_config": "loaded",
                        "scheduler": "running"
                    }
                }
            }
        }
    }
})
async def health_check(request: Request):
    """
    Health check endpoint for load balancers and orchestrators.

    Reports database connectivity, config state and scheduler state.
    """
    checks = {"database": "connected", "escalation_config": "not_loaded", "scheduler": "stopped"}

    try:
        async with get_session_context() as session:
            await session.execute(text("SELECT 1"))
    except Exception as e:
        checks["database"] = f"error: {e}"

    if getattr(request.app.state, "config_manager", None) is not None:
        checks["escalation_config"] = "loaded"

    scheduler = getattr(request.app.state, "scheduler", None)
    if scheduler is not None and scheduler.is_running:
        checks["scheduler"] = "running"
    elif settings.escalation_interval_minutes == 0:
        checks["scheduler"] = "disabled"

    return {
        "status": "healthy" if checks["database"] == "connected" else "degraded",
        "version": settings.app_version,
        "environment": settings.environment,
        "checks": checks
    }


@app.get("/", tags=["Root"])
async def root():
    """Root endpoint with API information."""
    return {
        "service": "Helpdesk Escalation Service",
        "version": settings.app_version,
        "architecture": "Clean Architecture / Modular Monolith",
        "docs": "/docs",
        "health": "/health",
        "modules": {
            "escalation": {
                "prefix": "/api",
                "endpoints": [
                    "GET /api/cron/escalate-tickets - Run escalation pass",
                    "GET /api/cron/tat-reminders - Send daily TAT reminders",
                    "GET /api/tickets/{id}/tat - Get ticket TAT",
                    "POST /api/tickets/{id}/tat - Set or extend TAT",
                    "POST /api/tickets/{id}/escalate - Escalate manually",
                    "GET /api/tickets/stats - Ticket stats"
                ]
            }
        }
    }


# === Development Entry Point ===

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.environment == "development",
        log_level="info"
    )
