"""FastAPI main application."""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from otc_desk.api.routers import compliance, custody, deals, markets, settlement, system
from otc_desk.config.settings import settings
from otc_desk.data.database import close_database
from otc_desk.engine.desk import OTCDesk, create_desk
from otc_desk.utils.exceptions import (
    AddressNotWhitelistedError,
    ComplianceRejectedError,
    ConcurrentModificationError,
    ConfigurationError,
    InsufficientBalanceError,
    InsufficientCreditError,
    InvalidAddressError,
    InvalidStateTransitionError,
    NoMarketDataError,
    OTCDeskError,
    PriceFeedError,
    RailRejectedError,
    RecordNotFoundError,
    UnauthorizedSignerError,
    UnsupportedRailError,
)
from otc_desk.utils.logging import DeskLogger, setup_logging
from otc_desk.utils.retry import CircuitOpenError, error_aggregator

logger = logging.getLogger(__name__)
desk_logger = DeskLogger(__name__)

STATUS_CODES: dict[type[OTCDeskError], int] = {
    RecordNotFoundError: 404,
    NoMarketDataError: 404,
    InvalidStateTransitionError: 409,
    ConcurrentModificationError: 409,
    UnsupportedRailError: 400,
    InvalidAddressError: 400,
    InsufficientBalanceError: 422,
    InsufficientCreditError: 422,
    AddressNotWhitelistedError: 403,
    UnauthorizedSignerError: 403,
    ComplianceRejectedError: 403,
    RailRejectedError: 502,
    PriceFeedError: 503,
    CircuitOpenError: 503,
    ConfigurationError: 500,
}


def status_code_for(exc: OTCDeskError) -> int:
    for error_type in type(exc).__mro__:
        if error_type in STATUS_CODES:
            return STATUS_CODES[error_type]
    return 500


async def desk_error_handler(request: Request, exc: OTCDeskError) -> JSONResponse:
    status_code = status_code_for(exc)
    if status_code >= 500:
        desk_logger.error_occurred(
            type(exc).__name__, exc.message, {"method": request.method, "path": request.url.path}
        )
        error_aggregator.record_error(exc, {"path": request.url.path})
    return JSONResponse(status_code=status_code, content=exc.to_dict())


async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={"error_code": "INVALID_REQUEST", "message": str(exc), "context": {}},
    )


def create_app(desk: Optional[OTCDesk] = None) -> FastAPI:
    """Build the API application.

    Args:
        desk: Desk to serve; when omitted one is created from settings at
            startup and the database is closed at shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        owned = desk is None
        app.state.desk = desk or await create_desk()
        logger.info("OTC desk API started")
        try:
            yield
        finally:
            await app.state.desk.shutdown()
            if owned:
                await close_database()
            logger.info("OTC desk API stopped")

    app = FastAPI(
        title="OTC Desk API",
        description="Back office for an OTC crypto trading desk",
        version="0.1.0",
        debug=settings.api_debug,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:3000", "http://127.0.0.1:3000"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(OTCDeskError, desk_error_handler)
    app.add_exception_handler(ValueError, value_error_handler)

    app.include_router(deals.router)
    app.include_router(settlement.router)
    app.include_router(custody.router)
    app.include_router(compliance.router)
    app.include_router(markets.router)
    app.include_router(system.router)

    @app.get("/")
    async def root() -> dict[str, str]:
        """Root endpoint."""
        return {
            "message": "OTC Desk API is running",
            "version": "0.1.0",
            "docs": "/docs",
            "health": "/system/health",
        }

    @app.get("/info")
    async def get_api_info() -> dict[str, Any]:
        """Get API information and available endpoints."""
        return {
            "title": "OTC Desk API",
            "version": "0.1.0",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "endpoints": {
                "deals": "/api/otc/*",
                "settlement": "/api/settlement/*",
                "custody": "/api/custody/*",
                "compliance": "/api/compliance/*",
                "markets": "/api/markets/*",
                "system": "/system/*",
            },
        }

    return app


setup_logging()
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "otc_desk.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.api_debug,
    )
