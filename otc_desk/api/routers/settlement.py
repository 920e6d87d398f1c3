"""Settlement, settlement instruction and credit API endpoints."""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from otc_desk.api.dependencies import get_desk
from otc_desk.credit.ledger import CreditUtilization
from otc_desk.data.models import (
    CreditLine,
    Settlement,
    SettlementInstruction,
    SettlementPriority,
    SettlementSide,
    SettlementStatus,
)
from otc_desk.engine.desk import OTCDesk
from otc_desk.settlement.orchestrator import SOURCE_BLOCK_TRADE, SOURCE_DEAL

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/settlement", tags=["settlement"])


class InstructionRequest(BaseModel):
    """Settlement instruction registration."""

    client_id: str
    currency: str
    method: str = Field(..., description="crypto_wallet, bank_wire, swift or fedwire")
    is_default: bool = False
    bank_name: Optional[str] = None
    account_number: Optional[str] = None
    routing_number: Optional[str] = None
    swift_code: Optional[str] = None
    iban: Optional[str] = None
    wallet_address: Optional[str] = None
    network: Optional[str] = None
    beneficiary_name: Optional[str] = None
    beneficiary_address: Optional[str] = None


class SettlementRequest(BaseModel):
    """Settlement initiation for a matched deal or pending block trade."""

    source_type: str = Field(SOURCE_DEAL, pattern=f"^({SOURCE_DEAL}|{SOURCE_BLOCK_TRADE})$")
    source_id: str
    buyer_instruction_id: str
    seller_instruction_id: str
    priority: str = SettlementPriority.STANDARD.value
    use_credit: bool = False
    process: bool = Field(True, description="Submit both sides to their rails immediately")


class ConfirmRequest(BaseModel):
    side: SettlementSide


class FailRequest(BaseModel):
    reason: str


class CreditLineRequest(BaseModel):
    client_id: str
    currency: str
    credit_limit: Decimal = Field(..., ge=0)
    interest_rate: Optional[Decimal] = None
    collateral_required: Decimal = Decimal("0")
    maturity_date: Optional[datetime] = None
    risk_rating: str = "medium"


class CreditExtensionRequest(BaseModel):
    client_id: str
    currency: str
    delta: Decimal = Field(..., gt=0)


# Instructions


@router.post("/instructions", status_code=201)
async def add_instruction(request: InstructionRequest, desk: OTCDesk = Depends(get_desk)) -> SettlementInstruction:
    details = request.model_dump(exclude={"client_id", "currency", "method", "is_default"}, exclude_none=True)
    return await desk.trade_book.add_settlement_instruction(
        request.client_id, request.currency, request.method, is_default=request.is_default, **details
    )


@router.get("/instructions")
async def list_instructions(
    client_id: str, currency: Optional[str] = None, desk: OTCDesk = Depends(get_desk)
) -> list[SettlementInstruction]:
    return await desk.trade_book.list_instructions(client_id, currency)


@router.patch("/instructions/{instruction_id}/verify")
async def verify_instruction(instruction_id: str, desk: OTCDesk = Depends(get_desk)) -> SettlementInstruction:
    return await desk.trade_book.verify_instruction(instruction_id)


@router.patch("/instructions/{instruction_id}/default")
async def set_default_instruction(instruction_id: str, desk: OTCDesk = Depends(get_desk)) -> SettlementInstruction:
    return await desk.trade_book.set_default_instruction(instruction_id)


# Settlements


@router.post("/settlements", status_code=201)
async def initiate_settlement(request: SettlementRequest, desk: OTCDesk = Depends(get_desk)) -> Settlement:
    """Initiate a settlement and, unless told otherwise, submit it to the rails."""
    settlement = await desk.settlement.initiate_settlement(
        request.source_type,
        request.source_id,
        request.buyer_instruction_id,
        request.seller_instruction_id,
        request.priority,
        request.use_credit,
    )
    if request.process:
        settlement = await desk.settlement.process_settlement(settlement.id)
    return settlement


@router.get("/settlements")
async def list_settlements(
    status: Optional[SettlementStatus] = None,
    party_id: Optional[str] = None,
    desk: OTCDesk = Depends(get_desk),
) -> list[Settlement]:
    return await desk.settlement.list_settlements(status, party_id)


@router.get("/settlements/{settlement_id}")
async def get_settlement(settlement_id: str, desk: OTCDesk = Depends(get_desk)) -> Settlement:
    return await desk.settlement.get_settlement(settlement_id)


@router.post("/settlements/{settlement_id}/process")
async def process_settlement(settlement_id: str, desk: OTCDesk = Depends(get_desk)) -> Settlement:
    return await desk.settlement.process_settlement(settlement_id)


@router.post("/settlements/{settlement_id}/confirm")
async def confirm_settlement(
    settlement_id: str, request: ConfirmRequest, desk: OTCDesk = Depends(get_desk)
) -> Settlement:
    """Confirm one side; confirming a side twice is a no-op."""
    return await desk.settlement.confirm_settlement(settlement_id, request.side)


@router.post("/settlements/{settlement_id}/fail")
async def fail_settlement(settlement_id: str, request: FailRequest, desk: OTCDesk = Depends(get_desk)) -> Settlement:
    return await desk.settlement.fail_settlement(settlement_id, request.reason)


# Credit


@router.post("/credit-lines", status_code=201)
async def create_credit_line(request: CreditLineRequest, desk: OTCDesk = Depends(get_desk)) -> CreditLine:
    return await desk.credit.create_credit_line(**request.model_dump())


@router.post("/credit-lines/extend")
async def extend_credit_line(request: CreditExtensionRequest, desk: OTCDesk = Depends(get_desk)) -> CreditLine:
    return await desk.credit.extend_credit_line(request.client_id, request.currency, request.delta)


@router.get("/credit-lines")
async def list_credit_lines(client_id: str, desk: OTCDesk = Depends(get_desk)) -> list[CreditLine]:
    return await desk.credit.list_credit_lines(client_id)


@router.get("/credit/{client_id}/utilization")
async def get_credit_utilization(client_id: str, desk: OTCDesk = Depends(get_desk)) -> CreditUtilization:
    return await desk.credit.get_utilization(client_id)


@router.patch("/credit-lines/{credit_line_id}/suspend")
async def suspend_credit_line(credit_line_id: str, desk: OTCDesk = Depends(get_desk)) -> CreditLine:
    return await desk.credit.suspend_credit_line(credit_line_id)
