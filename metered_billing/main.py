"""Billing and usage governance API."""

import asyncio
import contextlib
import os
import uuid
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import stripe
import structlog
from fastapi import APIRouter, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from metered_billing.config import settings
from metered_billing.database import Database
from metered_billing.exceptions import (
    BillingError,
    ConflictError,
    InvalidBillingInputError,
    NotFoundError,
    PaymentProviderNotConfiguredError,
    ProviderError,
    WebhookSignatureError,
)
from metered_billing.logging_config import configure_logging
from metered_billing.middleware.auth import AuthMiddleware
from metered_billing.routes import admin, billing, generations, user, webhooks
from metered_billing.services.reconciliation import run_reconciliation
from metered_billing.services.replicate_client import ReplicateClient, close_http_client
from metered_billing.services.reporting import run_snapshots

configure_logging(settings.ENVIRONMENT, settings.DEBUG)

logger = structlog.get_logger()


async def _global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Log unhandled exceptions under a short id and return a generic 500."""
    error_id = str(uuid.uuid4())[:8]

    logger.exception(
        "Unhandled exception",
        error_id=error_id,
        path=str(request.url.path),
        method=request.method,
        exc_type=type(exc).__name__,
    )

    return JSONResponse(
        status_code=500,
        content={
            "detail": "An internal error occurred. Please try again later.",
            "error_id": error_id,
        },
    )


def status_code_for(exc: BillingError) -> int:
    """HTTP status for a billing exception."""
    if isinstance(exc, InvalidBillingInputError | WebhookSignatureError):
        return 400
    if isinstance(exc, NotFoundError):
        return 404
    if isinstance(exc, ConflictError):
        return 409
    if isinstance(exc, PaymentProviderNotConfiguredError):
        return 503
    if isinstance(exc, ProviderError):
        return 502
    return 400


async def _billing_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    if not isinstance(exc, BillingError):
        return await _global_exception_handler(request, exc)
    status_code = status_code_for(exc)
    log = logger.warning if status_code >= 500 else logger.info
    log(
        "Billing request failed",
        path=str(request.url.path),
        exc_type=type(exc).__name__,
        status_code=status_code,
    )
    return JSONResponse(status_code=status_code, content={"detail": exc.message})


# Background task container to avoid global statement
class _BackgroundTasks:
    """Container for background tasks to avoid global statement."""

    cost_reconciliation: asyncio.Task[None] | None = None
    financial_snapshot: asyncio.Task[None] | None = None


_tasks = _BackgroundTasks()


def _task_exception_callback(task: asyncio.Task[None], task_name: str) -> None:
    """Log exceptions from background tasks as soon as they finish."""
    try:
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Background task failed with exception",
                task_name=task_name,
                exc_info=exc,
            )
    except asyncio.CancelledError:
        # Task was cancelled, this is expected during shutdown
        pass


def create_monitored_task(coro: Any, name: str) -> asyncio.Task[None]:
    """Create an asyncio task with exception monitoring."""
    task = asyncio.create_task(coro)
    task.add_done_callback(lambda t: _task_exception_callback(t, name))
    return task


async def cost_reconciliation_background_task(database: Database) -> None:
    """Reconcile estimated costs against provider compute time every RECONCILE_INTERVAL."""
    fetcher = ReplicateClient()
    while True:
        try:
            await asyncio.sleep(settings.RECONCILE_INTERVAL)
            result = await run_reconciliation(database, fetcher)
            if result is not None and result.processed:
                logger.info("Reconciled generation costs", **result.to_dict())
        except asyncio.CancelledError:
            logger.info("Cost reconciliation task cancelled")
            break
        except Exception as e:
            logger.exception("Error in cost reconciliation task", error=str(e))
            await asyncio.sleep(300)  # Wait 5 minutes before retrying


async def financial_snapshot_background_task(database: Database) -> None:
    """Refresh daily and monthly financial snapshots every SNAPSHOT_INTERVAL."""
    while True:
        try:
            await run_snapshots(database)
            await asyncio.sleep(settings.SNAPSHOT_INTERVAL)
        except asyncio.CancelledError:
            logger.info("Financial snapshot task cancelled")
            break
        except Exception as e:
            logger.exception("Error in financial snapshot task", error=str(e))
            await asyncio.sleep(300)


async def _cancel(task: asyncio.Task[None] | None, name: str) -> None:
    if task:
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        logger.info("Background task stopped", task_name=name)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Open the store, start background jobs, and tear both down on exit."""
    logger.info("Starting billing API", version=settings.VERSION)

    if settings.STRIPE_SECRET_KEY:
        stripe.api_key = settings.STRIPE_SECRET_KEY
    else:
        logger.warning("STRIPE_SECRET_KEY not set - checkout and portal disabled")

    database = Database(settings)
    await database.init()
    await database.seed()
    app.state.db = database

    if settings.REPLICATE_API_TOKEN:
        _tasks.cost_reconciliation = create_monitored_task(
            cost_reconciliation_background_task(database), "cost_reconciliation"
        )
    else:
        logger.warning("REPLICATE_API_TOKEN not set - cost reconciliation job disabled")
    _tasks.financial_snapshot = create_monitored_task(
        financial_snapshot_background_task(database), "financial_snapshot"
    )

    yield

    logger.info("Shutting down billing API")
    await _cancel(_tasks.cost_reconciliation, "cost_reconciliation")
    await _cancel(_tasks.financial_snapshot, "financial_snapshot")
    await close_http_client()
    await database.close()


app = FastAPI(
    title="Metered Billing API",
    description="Quota enforcement, usage metering and financial reporting",
    version=settings.VERSION,
    lifespan=lifespan,
)

app.add_exception_handler(BillingError, _billing_exception_handler)
# Global exception handler to prevent leaking internal details
app.add_exception_handler(Exception, _global_exception_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "Accept", "Origin", "X-Requested-With"],
    max_age=600,  # Cache preflight for 10 minutes
)
app.add_middleware(AuthMiddleware)

api = APIRouter()
api.include_router(user.router)
api.include_router(generations.router)
api.include_router(billing.router)
api.include_router(webhooks.router)
api.include_router(admin.router)

app.include_router(api, prefix="/api")


# Health check endpoint
@app.get("/health")
async def health_check() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "healthy", "version": settings.VERSION}


if __name__ == "__main__":
    import uvicorn

    # Get host from environment, default to localhost for security
    host = os.environ.get("HOST", "127.0.0.1")
    uvicorn.run(
        "metered_billing.main:app",
        host=host,
        port=settings.PORT,
        reload=settings.ENVIRONMENT == "development",
        log_level="info",
    )
