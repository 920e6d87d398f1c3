"""System status and monitoring API endpoints."""

import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends

from otc_desk.api.dependencies import get_desk
from otc_desk.engine.desk import OTCDesk
from otc_desk.utils.retry import error_aggregator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/system", tags=["system"])


@router.get("/health")
async def health_check(desk: OTCDesk = Depends(get_desk)) -> Dict[str, Any]:
    """Health check endpoint."""
    return {
        "status": "healthy",
        "service": "otc-desk",
        "store": type(desk.store).__name__,
        "pending_completions": desk.settlement.pending_completions,
        "rails": {
            method.value: breaker.state for method, breaker in desk.rails.breakers.items()
        },
    }


@router.get("/errors")
async def get_error_summary(hours: int = 24) -> Dict[str, Any]:
    """Get error summary for monitoring.

    Args:
        hours: Number of hours to look back for errors

    Returns:
        Error summary including counts and recent errors
    """
    summary = error_aggregator.get_error_summary(hours)
    return {
        "status": "success",
        "data": summary,
        "timeframe_hours": hours,
    }


@router.get("/errors/types")
async def get_error_types() -> Dict[str, Any]:
    """Get list of error types and their counts."""
    return {
        "status": "success",
        "data": {
            "error_counts": error_aggregator.error_counts,
            "total_errors": len(error_aggregator.errors),
        },
    }


@router.post("/errors/clear")
async def clear_errors() -> Dict[str, str]:
    """Clear error history (admin function)."""
    error_aggregator.clear()
    logger.info("Error history cleared")
    return {
        "status": "success",
        "message": "Error history cleared",
    }
