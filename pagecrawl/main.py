"""FastAPI application initialization."""

import asyncio
import os
import signal
from contextlib import asynccontextmanager

import logfire
import sentry_sdk
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sentry_sdk.integrations.fastapi import FastApiIntegration

from pagecrawl.api import crawl, health
from pagecrawl.config import get_settings
from pagecrawl.constants import (
    GRACEFUL_SHUTDOWN_TIMEOUT_SECONDS,
    SERVICE_NAME,
    SERVICE_VERSION,
)
from pagecrawl.logging_config import setup_logfire
from pagecrawl.middleware.correlation_id import CorrelationIDMiddleware
from pagecrawl.services.browser_driver import get_browser_driver
from pagecrawl.services.run_registry import get_run_registry

# =============================================================================
# Graceful Shutdown Infrastructure
# =============================================================================


def begin_shutdown(reason: str) -> int:
    """Stop accepting crawls and abort the ones in flight.

    Returns:
        Number of runs signalled.
    """
    return get_run_registry().abort_all(reason)


async def wait_for_active_runs(timeout: float = GRACEFUL_SHUTDOWN_TIMEOUT_SECONDS) -> bool:
    """Wait until every registered run has unregistered.

    Returns:
        True if all runs finished within the timeout.
    """
    registry = get_run_registry()
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while registry.active_run_ids:
        if loop.time() >= deadline:
            return False
        await asyncio.sleep(0.1)
    return True


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager with graceful shutdown support."""
    settings = get_settings()

    setup_logfire(app)

    if settings.sentry_dsn:
        sentry_sdk.init(
            dsn=settings.sentry_dsn,
            traces_sample_rate=settings.sentry_traces_sample_rate,
            environment=settings.env,
            integrations=[FastApiIntegration()],
        )

    # Chromium is launched lazily on the first crawl.
    app.state.browser_driver = get_browser_driver()

    loop = asyncio.get_running_loop()

    def signal_handler(sig_name: str):
        """Abort running crawls so their requests return partial results."""
        aborted = begin_shutdown(f"Service shutting down ({sig_name})")
        logfire.info(
            "Received shutdown signal, aborting active runs",
            signal=sig_name,
            active_runs=aborted,
        )

    try:
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, lambda s=sig: signal_handler(s.name))
        logfire.info("Signal handlers registered for graceful shutdown")
    except (NotImplementedError, RuntimeError):
        # Windows doesn't support add_signal_handler; neither does a non-main thread
        logfire.warning(
            "Signal handlers not supported on this platform, "
            "graceful shutdown may not work as expected"
        )

    logfire.info(
        "Application startup complete",
        environment=settings.env,
        browser_max_sessions=settings.browser_max_sessions,
    )

    yield

    # ==========================================================================
    # Graceful Shutdown
    # ==========================================================================
    aborted = begin_shutdown("Service shutting down")
    logfire.info("Application shutdown initiated", active_runs=aborted)

    if aborted and not await wait_for_active_runs():
        logfire.warning(
            "Runs still active after shutdown timeout",
            run_ids=get_run_registry().active_run_ids,
            timeout_seconds=GRACEFUL_SHUTDOWN_TIMEOUT_SECONDS,
        )

    await app.state.browser_driver.close()
    logfire.info("Application shutdown complete")


# Create FastAPI app
app = FastAPI(
    title="pagecrawl",
    description="Crawl orchestration with sandboxed page-function extraction",
    version=SERVICE_VERSION,
    lifespan=lifespan,
)

# Correlation ID middleware (must be first for request tracing)
app.add_middleware(CorrelationIDMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Correlation-ID"],
)

# Register routers
app.include_router(health.router, tags=["health"])
app.include_router(crawl.router, tags=["crawl"])


@app.get("/")
def root():
    """Root endpoint."""
    settings = get_settings()
    return {
        "message": "pagecrawl API",
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "environment": settings.env,
    }


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", 8000))
    uvicorn.run(
        "pagecrawl.main:app", host="0.0.0.0", port=port, reload=os.getenv("ENV") == "local"
    )
