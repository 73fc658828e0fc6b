"""PULP economy FastAPI application.

Virtual-currency wagering for the disc golf league: blessings (top-3
predictions), head-to-head challenges, the advantage store and the betting
windows that gate them. The whole economy sits behind a feature flag that
is read once, when the application is created.
"""

import logging
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from pulp import __version__
from pulp.api.routes import admin, advantages, challenges, health, ledger, predictions, windows
from pulp.config import Settings, get_settings
from pulp.services.errors import PulpError

# Configure structured logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer(),
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger(__name__)

PULP_ROUTERS = (
    ledger.router,
    windows.router,
    predictions.router,
    challenges.router,
    advantages.router,
    admin.router,
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    logger.info(
        "starting_pulp",
        version=__version__,
        pulp_economy_enabled=app.state.pulp_economy_enabled,
    )
    yield
    logger.info("shutting_down_pulp")


async def pulp_error_handler(request: Request, exc: PulpError):
    """Business rejections: the message is shown to the player verbatim."""
    logger.info(
        "pulp_request_rejected",
        path=request.url.path,
        error_type=exc.error_type.value,
        error=exc.message,
    )
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"error": str(exc.detail)})


async def validation_error_handler(request: Request, exc: RequestValidationError):
    """Malformed requests get the same {"error": ...} body as rejections."""
    first = exc.errors()[0]
    # loc starts with the source: body, query, header or path
    location = ".".join(str(part) for part in first["loc"][1:])
    message = f"{location}: {first['msg']}" if location else first["msg"]
    logger.info("pulp_request_invalid", path=request.url.path, error=message)
    return JSONResponse(status_code=422, content={"error": message})


async def server_error_handler(request: Request, exc: Exception):
    """Custom 500 handler."""
    logger.error("server_error", path=request.url.path, error=str(exc))
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


def create_app(settings: Settings | None = None) -> FastAPI:
    """
    Build the application.

    The PULP economy routers are only mounted when the feature flag is on;
    the flag is not consulted again after this point.
    """
    settings = settings or get_settings()
    logging.basicConfig(level=settings.log_level.upper(), format="%(message)s")

    app = FastAPI(
        title="PULP Economy",
        description="Blessings, challenges and advantages for the disc golf league",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.pulp_economy_enabled = settings.pulp_economy_enabled

    app.include_router(health.router)
    if settings.pulp_economy_enabled:
        for router in PULP_ROUTERS:
            app.include_router(router)

    app.add_exception_handler(PulpError, pulp_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, server_error_handler)
    return app


app = create_app()
