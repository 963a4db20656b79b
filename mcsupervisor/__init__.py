import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from mcsupervisor.core.config import APP_VERSION, LOG_LEVEL

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan event handler for startup/shutdown."""
    from mcsupervisor.services import process_supervisor

    logger.info("Instance supervisor ready")

    yield

    await process_supervisor.shutdown_all()
    logger.info("All supervised instances stopped, app shutting down")


def create_app():
    """FastAPI application factory."""
    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL, logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )

    app = FastAPI(
        title="Minecraft Instance Supervisor",
        version=APP_VERSION,
        docs_url=None,
        redoc_url=None,
        lifespan=lifespan,
    )

    @app.exception_handler(StarletteHTTPException)
    async def custom_http_exception_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse(status_code=exc.status_code, content={"success": False, "error": exc.detail})

    app.add_middleware(
        TrustedHostMiddleware,
        allowed_hosts=["*"],
    )

    from mcsupervisor.routers import instances, probe

    app.include_router(instances.router, tags=["Instances"])
    app.include_router(probe.router, tags=["Probe"])

    return app
