"""FastAPI application wiring for shopchat.

- Configures logging, CORS (optional), Prometheus metrics and rate limiting.
- Owns the escalation scheduler for the lifetime of the process: it is
  created on startup on the serving event loop and every armed timer is
  cancelled on shutdown, after fallbacks already being written have
  finished.
- Mounts the chat API and exposes health and version endpoints.
"""

import asyncio
import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from prometheus_fastapi_instrumentator import Instrumentator
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from .__version__ import __build_date__, __commit_sha__, __version__
from .app_logging import init_logging
from .chat.escalation import EscalationScheduler
from .chat.settings import get_chat_settings
from .rate_limit import limiter
from .routers import chat

load_dotenv()

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_chat_settings()

    async def fire(conversation_id: int) -> None:
        await asyncio.to_thread(chat.send_fallback, scheduler, conversation_id)

    scheduler = EscalationScheduler(fire, delay_seconds=settings.escalation_delay_seconds)
    app.state.escalations = scheduler
    logger.info(
        "Escalation scheduler started (delay=%ss)", settings.escalation_delay_seconds
    )
    try:
        yield
    finally:
        logger.info(
            "Shutting down escalation scheduler with %s armed timers",
            scheduler.pending_count(),
        )
        app.state.escalations = None
        await scheduler.aclose()


app = FastAPI(title="shopchat", version=__version__, lifespan=lifespan)
init_logging(app)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
app.add_middleware(SlowAPIMiddleware)
# Optional CORS for the web client
cors_origins = os.getenv("CORS_ORIGINS")
if cors_origins:
    origins = [o.strip() for o in cors_origins.split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
app.include_router(chat.router)

# Expose Prometheus metrics
Instrumentator().instrument(app).expose(
    app, include_in_schema=False, endpoint="/api/metrics"
)


@app.get("/api/health")
async def health():
    """Liveness/readiness probe with a minimal JSON body."""
    return {"status": "ok"}


@app.get("/api/version")
async def version():
    """Return version information for the application."""
    return {
        "version": __version__,
        "build_date": __build_date__,
        "commit_sha": __commit_sha__,
    }
