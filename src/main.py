import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from src.core.database import connect_db, disconnect_db
from src.core.logging_config import configure_logging
from src.core.settings import settings
from src.domains.external_accounting.qbo.routes import cron_router as qbo_cron_router
from src.domains.external_accounting.qbo.routes import router as qbo_router
from src.domains.external_portal.routes import admin_router as external_portal_admin_router
from src.domains.external_portal.routes import router as external_portal_router
from src.domains.outbox.routes import router as outbox_router
from src.shared.exceptions import ConfigurationError

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    # Startup
    configure_logging()
    await connect_db()
    yield
    # Shutdown
    await disconnect_db()


app = FastAPI(
    title="Arc Integrations API",
    description="Background jobs, QuickBooks sync and external portal access for Arc",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.FRONTEND_URL or settings.APP_BASE_URL],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ConfigurationError)
async def configuration_error_handler(
    request: Request, exc: ConfigurationError
) -> JSONResponse:
    logger.error(f"Configuration error on {request.url.path}: {exc}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Service is not configured"},
    )


# Include routers
app.include_router(outbox_router, prefix="/api/v1")
app.include_router(qbo_router, prefix="/api/v1")
app.include_router(qbo_cron_router, prefix="/api/v1")
app.include_router(external_portal_router, prefix="/api/v1")
app.include_router(external_portal_admin_router, prefix="/api/v1")


@app.get("/")
async def root() -> dict[str, str]:
    return {"message": "Arc Integrations API is running"}


@app.get("/health")
async def health_check() -> dict[str, str]:
    return {"status": "healthy"}
