"""
Switchboard - conversation assignment and paced campaign dispatch.
Main FastAPI application entry point.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from switchboard import __version__
from switchboard.config import get_settings
from switchboard.api.router import api_router
from switchboard.utils.errors import EngineError
from switchboard.utils.logging import (
    configure_structured_logging,
    generate_correlation_id,
    set_correlation_id,
)

logger = logging.getLogger("switchboard")


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Injects a correlation ID into every request context and response header."""

    async def dispatch(self, request: Request, call_next) -> Response:
        cid = request.headers.get("X-Correlation-ID") or generate_correlation_id()
        set_correlation_id(cid)
        response = await call_next(request)
        response.headers["X-Correlation-ID"] = cid
        return response


async def engine_error_handler(request: Request, exc: EngineError) -> JSONResponse:
    """Map engine errors to {"detail", "code"} with the carried status."""
    log = logger.warning if exc.status_code >= 500 else logger.info
    log(
        "%s %s -> %d %s: %s",
        request.method, request.url.path, exc.status_code, exc.code, exc.message,
        extra={"error_code": exc.code},
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "code": exc.code},
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown events."""
    settings = get_settings()
    logger.info("Switchboard starting up (env=%s)", settings.app_env)

    # Initialize Sentry if configured
    if settings.sentry_dsn:
        try:
            import sentry_sdk
            sentry_sdk.init(
                dsn=settings.sentry_dsn,
                traces_sample_rate=0.1,
                environment=settings.app_env,
            )
            logger.info("Sentry initialized")
        except Exception as e:
            logger.warning("Sentry initialization failed: %s", str(e))

    from switchboard.services.delivery import build_delivery_channel
    from switchboard.services.warmup import WarmupScheduler, WarmupState
    from switchboard.workers.campaign_runner import CampaignRunner

    if not settings.delivery_gateway_url:
        logger.warning(
            "DELIVERY_GATEWAY_URL not set - campaign sends are simulated and never leave the process."
        )

    runner = CampaignRunner(
        session_factory=app.state.session_factory,
        channel=build_delivery_channel(settings),
        settings=settings,
    )
    warmup = WarmupScheduler(
        state=WarmupState(),
        channel=build_delivery_channel(settings),
        settings=settings,
    )
    app.state.campaign_runner = runner
    app.state.warmup_scheduler = warmup

    if settings.warmup_autostart:
        warmup.start()
        logger.info("Warmup autostarted (WARMUP_AUTOSTART=true)")

    worker_tasks: list[asyncio.Task] = []
    worker_stop = asyncio.Event()

    if settings.campaign_scheduler_enabled:
        from switchboard.workers.campaign_scheduler import run_campaign_scheduler
        worker_tasks.append(asyncio.create_task(run_campaign_scheduler(runner, stop_event=worker_stop)))
        logger.info("Campaign scheduler worker started")
    else:
        logger.info("Campaign scheduler disabled (CAMPAIGN_SCHEDULER_ENABLED=false)")

    if settings.auto_assign_enabled:
        from switchboard.workers.auto_assigner import run_auto_assigner
        worker_tasks.append(asyncio.create_task(run_auto_assigner(
            app.state.session_factory, poll_seconds=settings.auto_assign_poll_seconds, stop_event=worker_stop,
        )))
        logger.info("Auto-assigner worker started")

    yield

    # Graceful shutdown - give loops time to finish current work
    logger.info("Switchboard shutting down - stopping %d workers...", len(worker_tasks))
    worker_stop.set()
    await warmup.stop(timeout=10.0)
    await runner.shutdown(timeout=10.0)
    if worker_tasks:
        done, pending = await asyncio.wait(worker_tasks, timeout=10.0)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    from switchboard.utils.redis import close_redis
    from switchboard.database import dispose_engine
    await close_redis()
    await dispose_engine()
    logger.info("Switchboard shutdown complete")


def create_app(session_factory=None) -> FastAPI:
    """Application factory."""
    settings = get_settings()

    # Configure structured JSON logging with correlation IDs
    configure_structured_logging(settings.log_level)

    application = FastAPI(
        title="Switchboard",
        description="Conversation assignment and paced campaign dispatch",
        version=__version__,
        lifespan=lifespan,
    )

    if session_factory is None:
        from switchboard.database import async_session_factory
        session_factory = async_session_factory
    application.state.session_factory = session_factory

    application.add_middleware(
        CORSMiddleware,
        allow_origins=[
            "http://localhost:3000",
            "http://localhost:5173",
            settings.app_base_url,
        ],
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=[
            "Authorization", "Content-Type", "X-Correlation-ID", "X-Actor-ID",
            "Accept", "Origin", "X-Requested-With",
        ],
    )

    # Correlation ID middleware (must be added AFTER CORS so it runs on every request)
    application.add_middleware(CorrelationIdMiddleware)

    application.add_exception_handler(EngineError, engine_error_handler)
    application.include_router(api_router)

    return application


app = create_app()
