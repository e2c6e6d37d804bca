"""qrouter application entry point: Slack Bolt + FastAPI.

Architecture:
- FastAPI for health checks and the Slack events endpoint
- Slack Bolt (HTTP mode, multi-workspace authorize) for reaction events
- EscalationScheduler started and stopped by the FastAPI lifespan
- Async SQLAlchemy for database operations
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from slack_bolt.adapter.fastapi.async_handler import AsyncSlackRequestHandler
from slack_bolt.async_app import AsyncApp
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from qrouter.config import settings
from qrouter.crons.escalation import EscalationEngine
from qrouter.crons.scheduler import EscalationScheduler
from qrouter.db.session import close_db, get_session_factory
from qrouter.services import (
    ConfigurationResolver,
    EscalationTargetResolver,
    OAuthStateStore,
    QuestionStore,
    WorkspaceDirectory,
)
from qrouter.slack.client import AuthorizedClientProvider
from qrouter.slack.handlers import register_handlers
from qrouter.slack.middleware import build_authorize, resolve_workspace_middleware

logger = structlog.get_logger()


def configure_logging() -> None:
    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.JSONRenderer()
            if settings.env == "production"
            else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
    )


# ═══════════════════════════════════════════════════════════════════════════════
# COMPONENT WIRING
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class Components:
    """Everything the process owns, built once from a session factory."""

    session_factory: async_sessionmaker[AsyncSession]
    questions: QuestionStore
    configs: ConfigurationResolver
    targets: EscalationTargetResolver
    clients: AuthorizedClientProvider
    workspaces: WorkspaceDirectory
    oauth_states: OAuthStateStore
    engine: EscalationEngine
    scheduler: EscalationScheduler

    @classmethod
    def build(
        cls,
        session_factory: async_sessionmaker[AsyncSession],
        clients: AuthorizedClientProvider | None = None,
    ) -> Components:
        questions = QuestionStore(session_factory)
        configs = ConfigurationResolver(session_factory)
        targets = EscalationTargetResolver(session_factory)
        clients = clients or AuthorizedClientProvider(session_factory)
        workspaces = WorkspaceDirectory(session_factory)
        oauth_states = OAuthStateStore(session_factory)
        engine = EscalationEngine(questions, configs, targets, clients, workspaces)
        return cls(
            session_factory=session_factory,
            questions=questions,
            configs=configs,
            targets=targets,
            clients=clients,
            workspaces=workspaces,
            oauth_states=oauth_states,
            engine=engine,
            scheduler=EscalationScheduler(engine, oauth_states),
        )


def create_bolt_app(components: Components) -> AsyncApp:
    bolt = AsyncApp(
        signing_secret=settings.slack_signing_secret,
        authorize=build_authorize(components.clients),
        process_before_response=True,
    )
    bolt.middleware(resolve_workspace_middleware(components.workspaces))
    register_handlers(bolt, components.questions, components.workspaces)
    return bolt


# ═══════════════════════════════════════════════════════════════════════════════
# FASTAPI APP
# ═══════════════════════════════════════════════════════════════════════════════

def create_app(components: Components | None = None, *, start_scheduler: bool = True) -> FastAPI:
    components = components or Components.build(get_session_factory())
    bolt = create_bolt_app(components)
    handler = AsyncSlackRequestHandler(bolt)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("app_starting", env=settings.env)
        if start_scheduler:
            await components.scheduler.start()

        yield

        logger.info("app_shutting_down")
        await components.scheduler.stop()
        await close_db()

    api = FastAPI(
        title="qrouter",
        version="0.1.0",
        description="Escalates unanswered Slack questions",
        lifespan=lifespan,
    )
    api.state.components = components

    @api.get("/health")
    async def health() -> dict[str, str]:
        """Health check endpoint."""
        return {"status": "ok", "service": "qrouter"}

    @api.get("/health/db")
    async def health_db() -> Any:
        """Database health check; 503 when the database is unreachable."""
        try:
            async with components.session_factory() as session:
                result = await session.execute(text("SELECT 1"))
                result.scalar()
            return {"status": "ok", "database": "connected"}
        except Exception as e:
            logger.error("db_health_check_failed", error=str(e))
            return JSONResponse(
                status_code=503,
                content={"status": "error", "database": "disconnected"},
            )

    @api.get("/health/engine")
    async def health_engine() -> dict[str, Any]:
        """Scheduler state and the most recent tick report."""
        report = components.engine.last_report
        return {
            "scheduler_running": components.scheduler.running,
            "tick_in_progress": components.engine.running,
            "last_tick": report.to_dict() if report else None,
        }

    @api.post("/slack/events")
    async def slack_events(req: Request) -> Any:
        return await handler.handle(req)

    return api


# ═══════════════════════════════════════════════════════════════════════════════
# MAIN ENTRY POINT
# ═══════════════════════════════════════════════════════════════════════════════

def main() -> None:
    """Run qrouter under uvicorn."""
    import uvicorn

    configure_logging()
    logger.info("starting_qrouter", env=settings.env)
    uvicorn.run(create_app(), host="0.0.0.0", port=8000, log_config=None)


if __name__ == "__main__":
    main()
