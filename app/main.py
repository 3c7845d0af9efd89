"""FastAPI application entry point."""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from app.api.routes import billing, health, meters, readings, tariffs
from app.core.config import settings
from app.core.database import Base, engine
from app.core.exceptions import ConflictError, conflict_error_handler
from app.core.logging import configure_logging
from app.middleware.request_id import RequestIDMiddleware

# Import models for Base.metadata.create_all - order matters for foreign keys
from app.models import (
    meter,  # noqa: F401
    meter_reading,  # noqa: F401
    tariff,  # noqa: F401
    bill,  # noqa: F401
    invoice,  # noqa: F401
)

configure_logging()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan manager."""
    # Startup: Create database tables
    Base.metadata.create_all(bind=engine)
    yield


app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.VERSION,
    description="Utility metering and billing API",
    lifespan=lifespan,
)

app.add_middleware(RequestIDMiddleware)
app.add_exception_handler(ConflictError, conflict_error_handler)  # type: ignore[arg-type]

# Include API routers
app.include_router(health.router, prefix="/api", tags=["health"])
app.include_router(meters.router, prefix="/api/utilities")
app.include_router(readings.router, prefix="/api/utilities")
app.include_router(tariffs.router, prefix="/api/utilities")
app.include_router(billing.router, prefix="/api/utilities")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
    )
