"""
LeadCall API process.

Serves the lead, call-event and WhatsApp endpoints and, in the same event
loop, runs the two contact sweep loops (retry and channel prompt).
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from leadcall.config import get_settings
from leadcall.api.router import api_router
from leadcall.utils.logging import (
    configure_structured_logging,
    generate_correlation_id,
    set_correlation_id,
)

logger = logging.getLogger("leadcall")

CORRELATION_HEADER = "X-Correlation-ID"
WORKER_SHUTDOWN_TIMEOUT = 10.0


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Reuses the caller's X-Correlation-ID or mints one, and echoes it back."""

    async def dispatch(self, request: Request, call_next) -> Response:
        cid = request.headers.get(CORRELATION_HEADER) or generate_correlation_id()
        set_correlation_id(cid)
        response = await call_next(request)
        response.headers[CORRELATION_HEADER] = cid
        return response


def _init_sentry(settings) -> None:
    try:
        import sentry_sdk
        sentry_sdk.init(dsn=settings.sentry_dsn, traces_sample_rate=0.1, environment=settings.app_env)
        logger.info("Sentry enabled for %s", settings.app_env)
    except Exception as e:
        logger.warning("Sentry could not be enabled: %s", str(e))


def _start_sweep(settings) -> list[asyncio.Task]:
    from leadcall.workers.contact_sweep import ContactSweep
    sweep = ContactSweep.from_settings(settings=settings)
    tasks = [
        asyncio.create_task(sweep.run_retry_loop(), name="retry_sweep"),
        asyncio.create_task(sweep.run_prompt_loop(), name="channel_prompt"),
    ]
    logger.info("Contact sweep running (%d loops)", len(tasks))
    return tasks


async def _stop_workers(tasks: list[asyncio.Task]) -> None:
    for task in tasks:
        task.cancel()
    if not tasks:
        return
    _, stuck = await asyncio.wait(tasks, timeout=WORKER_SHUTDOWN_TIMEOUT)
    if stuck:
        logger.warning("%d sweep loops ignored cancellation, cancelling again", len(stuck))
        for task in stuck:
            task.cancel()
        await asyncio.gather(*stuck, return_exceptions=True)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    logger.info("LeadCall starting (env=%s)", settings.app_env)

    if not settings.webhook_secret:
        logger.warning(
            "Neither CALL_WEBHOOK_SECRET nor RETELL_API_KEY is set - "
            "every call webhook will be rejected."
        )
    if settings.sentry_dsn:
        _init_sentry(settings)

    tasks = _start_sweep(settings)
    try:
        yield
    finally:
        await _stop_workers(tasks)
        from leadcall.database import dispose_engine
        await dispose_engine()
        logger.info("LeadCall stopped")


def create_app() -> FastAPI:
    settings = get_settings()
    configure_structured_logging(settings.log_level)

    application = FastAPI(
        title="LeadCall",
        description="Automated voice contact and retry scheduling for inbound leads",
        version="1.0.0",
        lifespan=lifespan,
    )
    application.add_middleware(CorrelationIdMiddleware)
    application.include_router(api_router)
    return application


app = create_app()
