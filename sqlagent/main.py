"""sqlagent API — FastAPI application entry point.

Invariants:
    - Routes registered explicitly (no auto-discovery)
    - Global error handlers map SqlAgentError → structured JSON responses
    - CORS configured from settings (not hardcoded)
    - Database gateway, model transport and agent runner built on startup via lifespan;
      on shutdown every tracked run is closed before the engine is disposed
    - The system prompt embeds the schema summary read once at startup

Design Decisions:
    - Lifespan over @app.on_event: FastAPI recommended pattern, cleaner cleanup
    - One AgentRunner per process on app.state: the Anthropic client is
      connection-pool-safe and the capability registry is immutable
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from sqlagent.api.error_handlers import register_error_handlers
from sqlagent.api.routes import health, runs
from sqlagent.config import get_settings
from sqlagent.infrastructure.anthropic_client import ResilientAnthropicClient
from sqlagent.infrastructure.database import init_db
from sqlagent.infrastructure.observability import setup_logging
from sqlagent.services.agent_runner import AgentRunner
from sqlagent.services.define_sql_tools import build_sql_registry
from sqlagent.services.system_prompt import prompt_for_gateway

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown lifecycle."""
    settings = get_settings()
    setup_logging(settings.log_level, settings.log_format)
    gateway = init_db(settings.database_url, echo=settings.database_echo)
    registry = build_sql_registry(
        gateway,
        result_preview_chars=settings.result_preview_chars,
        sample_rows_limit=settings.sample_rows_limit,
    )
    app.state.agent_runner = AgentRunner(
        ResilientAnthropicClient(
            api_key=settings.anthropic_api_key,
            timeout_seconds=settings.anthropic_timeout_seconds,
        ),
        registry,
        model=settings.agent_model,
        max_tokens=settings.agent_max_tokens,
        max_steps=settings.agent_max_steps,
        result_preview_chars=settings.result_preview_chars,
        system_prompt=await prompt_for_gateway(gateway),
    )
    logger.info("sqlagent API started")
    yield
    logger.info("sqlagent API shutting down")
    runs.close_all_runs()
    await gateway.dispose()


app = FastAPI(title="sqlagent API", version="0.1.0", lifespan=lifespan)

settings = get_settings()
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health.router)
app.include_router(runs.router)

register_error_handlers(app)
