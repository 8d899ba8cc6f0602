import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from app import models  # noqa: F401  registers every table on Base.metadata
from app.api.routes import router as api_router
from app.core.config import get_settings
from app.core.errors import register_error_handlers
from app.logging import configure_logging
from app.middleware.correlation_id import CorrelationIdMiddleware
from app.middleware.request_logging import RequestLoggingMiddleware
from app.otel import get_fastapi_server_request_hook, setup_otel
from app.runtime import build_runtime


configure_logging()
logger = logging.getLogger("app.lifecycle")


@asynccontextmanager
async def lifespan(app: FastAPI):
    runtime = getattr(app.state, "runtime", None)
    owned = runtime is None
    if owned:
        runtime = build_runtime()
        app.state.runtime = runtime

    drain_task: asyncio.Task[None] | None = None
    if runtime.settings.dispatcher_enabled:
        drain_task = asyncio.create_task(runtime.dispatcher.run())
    logger.info("app.started", extra={"status": "dispatcher_on" if drain_task else "dispatcher_off"})
    try:
        yield
    finally:
        runtime.dispatcher.stop()
        if drain_task is not None:
            await drain_task
        if owned:
            runtime.close()
            app.state.runtime = None
        logger.info("app.stopped")


settings = get_settings()

app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
register_error_handlers(app)
app.include_router(api_router)

if settings.otel_enabled:
    setup_otel("dataplane-api", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
