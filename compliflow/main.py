from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.responses import Response

from . import __version__
from .api.routes import router as api_router
from .core.audit import AuditLoggingMiddleware
from .core.config import Settings, get_settings
from .core.errors import CompliflowError
from .core.logging import configure_logging, get_logger
from .dependencies import ServiceContainer

logger = get_logger(name=__name__)


async def _handle_compliflow_error(request: Request, exc: CompliflowError) -> JSONResponse:
    logger.warning("request_failed", path=request.url.path, code=exc.code, error=exc.message)
    return JSONResponse(status_code=exc.http_status, content=exc.to_payload())


def create_app(settings: Settings | None = None, *, container: ServiceContainer | None = None) -> FastAPI:
    settings = settings or (container.settings if container is not None else get_settings())
    configure_logging(settings.observability.log_level, json_logs=settings.observability.json_logs)

    @asynccontextmanager
    async def app_lifespan(app: FastAPI):
        owned = getattr(app.state, "container", None) is None
        if owned:
            app.state.container = ServiceContainer.build(settings)
        logger.info("service_started", environment=settings.environment, event_store=settings.event_store.backend)
        try:
            yield
        finally:
            if owned:
                await app.state.container.aclose()
                app.state.container = None
            logger.info("service_stopped")

    app = FastAPI(title="Compliflow Orchestration", version=__version__, lifespan=app_lifespan)
    app.state.container = container
    app.add_exception_handler(CompliflowError, _handle_compliflow_error)  # type: ignore[arg-type]
    app.add_middleware(AuditLoggingMiddleware, include_prefixes=(settings.api_v1_prefix,))
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.frontend_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(api_router, prefix=settings.api_v1_prefix)

    @app.get("/", tags=["health"])
    async def root() -> dict[str, str]:
        return {"message": "Compliflow orchestration running"}

    if settings.observability.prometheus_enabled:

        @app.get("/metrics", tags=["observability"])
        async def metrics() -> Response:
            return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return app


app = create_app()
