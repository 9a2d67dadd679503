"""FastAPI application for the Relaygate gateway."""
import logging
import time
from contextlib import AsyncExitStack, asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from relaygate import __version__
from relaygate.adapters.completion import CompletionClient
from relaygate.adapters.relay import RelayClient
from relaygate.api.v1.router import api_router
from relaygate.config.gateway import GatewaySettings
from relaygate.core.config import get_settings
from relaygate.core.database import DatabaseManager
from relaygate.core.dependencies import build_gateway
from relaygate.core.exceptions import GatewayError
from relaygate.core.logging import setup_logging

logger = logging.getLogger(__name__)


def create_app(
    settings: GatewaySettings | None = None,
    *,
    database: DatabaseManager | None = None,
    relay: RelayClient | None = None,
    completion: CompletionClient | None = None,
) -> FastAPI:
    """Build the application. Collaborators passed in replace the configured ones."""
    settings = settings or get_settings()
    setup_logging(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan events."""
        logger.info(f"Starting {settings.PROJECT_NAME}...")
        logger.info(f"Environment: {settings.ENVIRONMENT}")

        async with AsyncExitStack() as stack:
            if settings.WHATSAPP_ENABLED:
                gateway = await build_gateway(
                    settings, stack, database=database, relay=relay, completion=completion
                )
                if await gateway.database.health_check():
                    logger.info("Database connection successful")
                else:
                    logger.error("Database connection failed!")
                app.state.gateway = gateway
                if settings.MONITOR_ENABLED:
                    gateway.monitor.start()
            else:
                logger.warning("WhatsApp gateway disabled, only health endpoints are served")
                app.state.gateway = None

            yield

            logger.info(f"Shutting down {settings.PROJECT_NAME}...")
            app.state.gateway = None

    app = FastAPI(
        title=settings.PROJECT_NAME,
        description="Gateway between a hosted WhatsApp relay and a streaming chat backend",
        version=__version__,
        docs_url="/docs" if not settings.is_production else None,
        redoc_url="/redoc" if not settings.is_production else None,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.gateway = None

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def timing_middleware(request: Request, call_next):
        """Add request timing headers."""
        start_time = time.time()
        response = await call_next(request)
        response.headers["X-Process-Time"] = str(time.time() - start_time)
        return response

    @app.middleware("http")
    async def logging_middleware(request: Request, call_next):
        """Log all requests."""
        start_time = time.time()
        logger.info(
            f"Request: {request.method} {request.url.path}",
            extra={
                "method": request.method,
                "path": request.url.path,
                "client_ip": request.client.host if request.client else None,
            },
        )
        response = await call_next(request)
        process_time = time.time() - start_time
        logger.info(
            f"Response: {response.status_code} in {process_time:.3f}s",
            extra={"status_code": response.status_code, "process_time": process_time},
        )
        return response

    @app.exception_handler(GatewayError)
    async def gateway_exception_handler(request: Request, exc: GatewayError):
        """Handle gateway errors."""
        logger.error(f"Gateway error: {exc.error_code}: {exc.message}")
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "error": exc.error_code,
                "message": exc.message,
                "details": exc.details,
            },
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        """Handle unexpected exceptions."""
        logger.error(f"Unexpected error: {exc}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={
                "error": "INTERNAL_SERVER_ERROR",
                "message": "An unexpected error occurred",
                "details": {}
                if settings.is_production
                else {"exception": str(exc)},
            },
        )

    app.include_router(api_router, prefix=settings.API_V1_STR)

    @app.get("/health")
    async def health_check(request: Request):
        """Health check endpoint."""
        gateway = request.app.state.gateway
        if gateway is None:
            return {"status": "healthy", "version": __version__, "whatsapp": "disabled"}
        database_ok = await gateway.database.health_check()
        return {
            "status": "healthy" if database_ok else "degraded",
            "version": __version__,
            "database": "ok" if database_ok else "unreachable",
            "provider": gateway.relay.name,
            "monitor_running": gateway.monitor.is_running,
        }

    return app


app = create_app()
