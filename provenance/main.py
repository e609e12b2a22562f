"""
Product Provenance & Warranty Ledger

Main application entry point.

    uvicorn provenance.main:app
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from .api.routes import router
from .config import LedgerSettings
from .core.errors import (
    AlreadyExistsError,
    ConcurrencyConflictError,
    InvalidArgumentError,
    InvalidStateError,
    LedgerError,
    NotFoundError,
    UnauthorizedError,
)
from .core.service import ProvenanceService
from .db.config import build_state_store
from .observability import (
    RequestContextMiddleware,
    check_health,
    get_logger,
    get_metrics,
    setup_logging,
)

setup_logging()
logger = get_logger(__name__)

ERROR_STATUS = {
    UnauthorizedError: status.HTTP_403_FORBIDDEN,
    NotFoundError: status.HTTP_404_NOT_FOUND,
    AlreadyExistsError: status.HTTP_409_CONFLICT,
    InvalidArgumentError: 422,
    InvalidStateError: status.HTTP_409_CONFLICT,
    ConcurrencyConflictError: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def build_service() -> ProvenanceService:
    """Build the service from environment configuration."""
    settings = LedgerSettings.from_env()
    store = build_state_store(settings.lock_timeout_seconds)
    return ProvenanceService(store=store, settings=settings)


def create_app(service: Optional[ProvenanceService] = None) -> FastAPI:
    """
    Create the FastAPI application.

    Pass a service to use it instead of one built from the environment
    (tests inject one with a controllable clock).
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.service = service if service is not None else build_service()
        app.state.store = app.state.service.store

        if app.state.service.event_count > 0:
            if app.state.service.verify_chain_integrity():
                logger.info("Audit chain verified OK", event_count=app.state.service.event_count)
            else:
                logger.error("Audit chain integrity check FAILED!")

        logger.info(
            "Application startup complete",
            event_count=app.state.service.event_count,
            store_type=type(app.state.store).__name__,
        )
        yield
        logger.info("Application shutdown complete")

    app = FastAPI(
        title="Product Provenance Ledger",
        description="""
## Product Provenance & Warranty Ledger

Chain of custody and warranty lifecycle for physical products moving
manufacturer → retailer → customer, with service centers adjudicating
warranty claims.

### API Design

**Commands** are POST only. No PATCH, no PUT, no DELETE.
**Queries** are GET and filtered by the product owner's visibility choices.

The calling principal is passed in the `X-Principal` header by the
upstream identity layer.

### Storage Backends

- **InMemoryStateStore**: Development/testing (default)
- **PostgresStateStore**: Production with full durability

Set `DATABASE_URL` or `DATABASE_HOST` to use PostgreSQL.
        """,
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_middleware(RequestContextMiddleware)
    app.include_router(router, prefix="/api/v1")

    @app.exception_handler(LedgerError)
    async def ledger_error_handler(request: Request, exc: LedgerError):
        status_code = next(
            (code for cls, code in ERROR_STATUS.items() if isinstance(exc, cls)),
            status.HTTP_400_BAD_REQUEST,
        )
        return JSONResponse(
            status_code=status_code,
            content={"error": exc.code, "detail": str(exc)},
        )

    @app.get("/health", tags=["System"])
    async def health():
        """Returns 200 if the service is running. For detail, use /health/detailed."""
        return {"status": "healthy", "service": "provenance"}

    @app.get("/health/detailed", tags=["System"])
    def health_detailed(request: Request):
        """
        Detailed health check.

        Checks store connectivity and re-verifies the audit chain.
        Returns 200 if healthy, 503 if unhealthy.
        """
        health_status = check_health(
            service=request.app.state.service,
            store=request.app.state.store,
            verify_chain=True,
        )
        return JSONResponse(
            status_code=200 if health_status.healthy else 503,
            content={
                "status": "healthy" if health_status.healthy else "unhealthy",
                "checks": health_status.checks,
                "duration_ms": health_status.duration_ms,
            },
        )

    @app.get("/metrics", tags=["System"])
    async def metrics():
        """Counters and latency percentiles."""
        return get_metrics().get_summary()

    return app


app = create_app()
