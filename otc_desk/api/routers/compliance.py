"""Compliance API endpoints."""

import logging
from decimal import Decimal
from typing import Any, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from otc_desk.api.dependencies import get_desk
from otc_desk.compliance.gate import ComplianceResult, SanctionsResult, TravelRuleResult
from otc_desk.data.models import Client, TransactionType
from otc_desk.engine.desk import OTCDesk

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/compliance", tags=["compliance"])


class ComplianceCheckRequest(BaseModel):
    """Proposed transaction to check."""

    client_id: str
    transaction_type: TransactionType
    amount: Decimal = Field(..., gt=0)
    currency: str
    destination: Optional[str] = None


class VerificationRequest(BaseModel):
    verification_type: str = Field(..., description="email, phone or document")


class SanctionsRequest(BaseModel):
    client_id: Optional[str] = None
    address: Optional[str] = None


@router.post("/check")
async def check_transaction(request: ComplianceCheckRequest, desk: OTCDesk = Depends(get_desk)) -> ComplianceResult:
    """Evaluate a transaction without recording it."""
    return await desk.compliance.check_transaction_compliance(
        request.client_id,
        request.transaction_type,
        request.amount,
        request.currency,
        request.destination,
    )


@router.post("/clients/{client_id}/verify")
async def verify_user(client_id: str, request: VerificationRequest, desk: OTCDesk = Depends(get_desk)) -> Client:
    return await desk.compliance.verify_user(client_id, request.verification_type)


@router.get("/clients/{client_id}/usage")
async def get_usage(client_id: str, desk: OTCDesk = Depends(get_desk)) -> dict[str, Any]:
    client = await desk.get_client(client_id)
    daily, monthly = await desk.compliance.get_usage(client_id)
    return {
        "client_id": client_id,
        "tier": desk.compliance.get_tier(client).value,
        "daily_used_usd": str(daily),
        "monthly_used_usd": str(monthly),
    }


@router.get("/travel-rule")
async def check_travel_rule(amount: Decimal, currency: str, desk: OTCDesk = Depends(get_desk)) -> TravelRuleResult:
    return desk.compliance.check_travel_rule(amount, currency)


@router.post("/sanctions")
async def screen_for_sanctions(request: SanctionsRequest, desk: OTCDesk = Depends(get_desk)) -> SanctionsResult:
    client = await desk.get_client(request.client_id) if request.client_id else None
    return desk.compliance.screen_for_sanctions(client, request.address)
