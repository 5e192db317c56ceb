"""FastAPI entry-point exposing the agent switchboard."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from switchboard.agents.catalog import default_agents
from switchboard.api.agents import router as agents_router
from switchboard.api.commands import router as commands_router
from switchboard.api.conversations import router as conversations_router
from switchboard.api.memory import router as memory_router
from switchboard.api.skills import router as skills_router
from switchboard.config import config
from switchboard.core.errors import InvalidIdentifier
from switchboard.orchestration.orchestrator import create_orchestrator_agent
from switchboard.runtime import AppContext, build_app_context

logger = logging.getLogger(__name__)

DEFAULT_ORCHESTRATOR = "supervisor"


def bootstrap(context: AppContext) -> AppContext:
    """Register the sample specialists and the default orchestrator."""
    context.registry.register_all(default_agents(context))
    create_orchestrator_agent(context, DEFAULT_ORCHESTRATOR)
    return context


async def invalid_identifier_handler(request: Request, exc: InvalidIdentifier) -> JSONResponse:
    """Map ids rejected by storage to 400 Bad Request."""
    logger.warning("Rejected identifier on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": str(exc)})


def create_app(context: Optional[AppContext] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Lifecycle manager for FastAPI application."""
        ctx = context or bootstrap(build_app_context(config))
        await ctx.load_prompt_overrides()
        app.state.context = ctx
        logger.info("Switchboard started with %d agents", len(ctx.registry.list()))
        yield
        await ctx.close()

    app = FastAPI(title="Agent Switchboard", lifespan=lifespan)
    app.include_router(agents_router)
    app.include_router(conversations_router)
    app.include_router(skills_router)
    app.include_router(memory_router)
    app.include_router(commands_router)
    app.add_exception_handler(InvalidIdentifier, invalid_identifier_handler)

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok"}

    return app


logging.basicConfig(
    level=config.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = create_app()
