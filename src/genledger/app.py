"""FastAPI application factory."""

import asyncio
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Response, status
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

from genledger.api.routes import billing, jobs, ledger, webhooks
from genledger.core import timezone  # noqa: F401  # sets TZ=UTC
from genledger.core.config import Settings, configure_logging
from genledger.core.database import setup_db_session
from genledger.services.billing.payment_reconciler import PaymentReconciler
from genledger.services.image_generation.kie_client import KieClient
from genledger.services.jobs.reconciler import JobReconciler
from genledger.uow import create_uow_factory
from genledger.workers.job_reconciliation_worker import run_job_reconciliation_worker
from genledger.workers.payment_expiry_worker import run_payment_expiry_worker

logger = structlog.get_logger()


def create_resilient_worker(
    coro_func, worker_args: tuple, worker_name: str, shutdown_event: asyncio.Event
):
    """Create a worker with automatic restart on failure.

    Args:
        coro_func: Worker coroutine function (e.g., run_job_reconciliation_worker)
        worker_args: Positional arguments passed to coro_func on every (re)start
        worker_name: Human-readable worker name for logging
        shutdown_event: Event to signal graceful shutdown

    Returns:
        Initial task handle (will be auto-recreated on crash)
    """
    RESTART_DELAY = 1  # Fixed 1 second delay between restarts

    def on_worker_done(task: asyncio.Task):
        if shutdown_event.is_set():
            logger.info("worker.shutdown_complete", worker=worker_name)
            return

        # Normal shutdown
        if task.cancelled():
            logger.info("worker.cancelled", worker=worker_name)
            return

        exc = task.exception()
        if exc:
            logger.error(
                "worker.crashed",
                worker=worker_name,
                error=str(exc),
                error_type=type(exc).__name__,
                retry_in_seconds=RESTART_DELAY,
                exc_info=exc,
            )
        else:
            # Workers loop forever, so a clean return is unexpected
            logger.warning(
                "worker.stopped_unexpectedly",
                worker=worker_name,
                retry_in_seconds=RESTART_DELAY,
            )

        async def restart_worker():
            await asyncio.sleep(RESTART_DELAY)

            if shutdown_event.is_set():
                return

            logger.info("worker.restarting", worker=worker_name)
            new_task = asyncio.create_task(coro_func(*worker_args))
            new_task.add_done_callback(on_worker_done)

        asyncio.create_task(restart_worker())

    task = asyncio.create_task(coro_func(*worker_args))
    task.add_done_callback(on_worker_done)
    return task


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan context manager.

    Handles startup and shutdown tasks:
    - Startup: configure logging, create the session factory and the KIE gateway, start workers
    - Shutdown: stop workers, dispose the connection pool
    """
    settings = Settings()  # type: ignore[call-arg]

    configure_logging(settings)

    session_factory = setup_db_session(settings.database_url, settings.db_pool_size)
    uow_factory = create_uow_factory(session_factory)

    gateway = KieClient(
        api_key=settings.kie_api_key,
        base_url=settings.kie_api_base_url,
        model=settings.kie_model,
        callback_url=settings.kie_callback_url,
        prompt_instruction=settings.kie_prompt_instruction,
        timeout=settings.provider_timeout_seconds,
    )

    # Store in app.state for access in routes
    app.state.session_factory = session_factory
    app.state.uow_factory = uow_factory
    app.state.gateway = gateway

    shutdown_event = asyncio.Event()

    job_worker_task = create_resilient_worker(
        run_job_reconciliation_worker,
        (JobReconciler(uow_factory, gateway, settings), settings),
        "job_reconciliation",
        shutdown_event,
    )
    payment_worker_task = create_resilient_worker(
        run_payment_expiry_worker,
        (PaymentReconciler(uow_factory, settings), settings),
        "payment_expiry",
        shutdown_event,
    )

    logger.info("application.startup", db_url=settings.database_url.split("@")[-1])

    yield

    logger.info("application.shutdown")
    shutdown_event.set()

    job_worker_task.cancel()
    payment_worker_task.cancel()

    # Wait for cancellation to complete (ignore CancelledError)
    await asyncio.gather(job_worker_task, payment_worker_task, return_exceptions=True)

    engine = session_factory.kw.get("bind")
    if engine is not None:
        await engine.dispose()


def create_app() -> FastAPI:
    """Create and configure FastAPI application.

    Returns:
        Configured FastAPI application instance
    """
    settings = Settings()  # type: ignore[call-arg]

    app = FastAPI(
        title="genledger API",
        description="Image generation jobs with a prepaid credit ledger",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(jobs.router)  # prefix="/api/jobs" in definition
    app.include_router(ledger.router)  # prefix="/api/ledger" in definition
    app.include_router(billing.router)  # prefix="/api/billing" in definition
    app.include_router(webhooks.router, prefix="/webhooks", tags=["webhooks"])

    @app.get("/health")
    async def health_check(response: Response):
        """Health check endpoint with database connectivity test.

        Returns:
            200: {"status": "healthy"} if database connection succeeds
            503: {"status": "unhealthy", "error": {...}} if database connection fails
        """
        try:
            async with app.state.session_factory() as session:
                result = await session.execute(text("SELECT 1"))
                result.scalar()

            logger.debug("health_check.success")
            return {"status": "healthy"}

        except Exception as e:
            logger.error(
                "health_check.failed",
                error=str(e),
                error_type=type(e).__name__,
            )
            response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
            return {
                "status": "unhealthy",
                "error": {
                    "type": type(e).__name__,
                    "message": str(e),
                },
            }

    return app


# Create app instance for uvicorn
app = create_app()
