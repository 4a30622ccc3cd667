import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, APIRouter, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.orm import configure_mappers

from jpk_reporting.core.config import settings
from jpk_reporting.core.database import engine
from jpk_reporting.api.v1 import jpk

logger = logging.getLogger(__name__)


def verify_orm_mappings() -> None:
    """Fail fast on misconfigured ORM mappings before any request is served."""
    from jpk_reporting.models import (  # noqa: F401
        JpkReport, JpkSaleRecord, JpkPurchaseRecord,
        Client, VatTransaction,
        AuditLog,
    )

    configure_mappers()
    logger.info("ORM mapper configuration verified successfully")


@asynccontextmanager
async def lifespan(app: FastAPI):
    try:
        verify_orm_mappings()
    except Exception as e:
        logger.critical(f"ORM mapper configuration failed: {e}")
        raise RuntimeError(f"Application cannot start: ORM mapping error - {e}") from e

    logger.info(
        "JPK gateway: production=%s sandbox=%s timeout=%ss",
        settings.JPK_GATEWAY_URL,
        settings.JPK_GATEWAY_TEST_URL,
        settings.JPK_GATEWAY_TIMEOUT_SECONDS,
    )

    yield

    logger.info("Application shutdown complete")


app = FastAPI(
    title=settings.APP_NAME,
    version="0.1.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """
    JSON body for unhandled exceptions.

    HTTPException is handled by FastAPI's default handler and never reaches
    this one.
    """
    logger.exception(f"Unhandled exception: {exc}")
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"},
    )


api_v1_router = APIRouter(prefix="/api/v1")
api_v1_router.include_router(jpk.router, prefix="/jpk", tags=["jpk-reporting"])

app.include_router(api_v1_router)


@app.get("/health")
async def health_check():
    """Database connectivity check."""
    health = {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "components": {"database": {"status": "unknown", "message": None}},
    }
    try:
        async with engine.begin() as conn:
            await conn.execute(text("SELECT 1"))
        health["components"]["database"] = {"status": "healthy", "message": "Connected"}
    except Exception as e:
        health["status"] = "unhealthy"
        health["components"]["database"] = {"status": "unhealthy", "message": str(e)}
        return JSONResponse(status_code=503, content=health)
    return health
