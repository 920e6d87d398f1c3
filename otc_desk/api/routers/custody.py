"""Custody API endpoints: whitelist, balances, withdrawals, deposits, sweeps."""

import logging
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from otc_desk.api.dependencies import get_desk
from otc_desk.data.models import (
    CustodyBalance,
    Deposit,
    DepositStatus,
    SweepRecord,
    WalletBalance,
    WalletKind,
    WhitelistEntry,
    Withdrawal,
    WithdrawalStatus,
)
from otc_desk.engine.desk import OTCDesk

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/custody", tags=["custody"])


class WhitelistRequest(BaseModel):
    client_id: str
    currency: str
    address: str
    label: Optional[str] = None


class WithdrawalRequest(BaseModel):
    """Withdrawal to a whitelisted address."""

    client_id: str
    currency: str
    amount: Decimal = Field(..., gt=0)
    address: str
    network: Optional[str] = None


class SignatureRequest(BaseModel):
    signer_id: str
    signature: str


class DepositRequest(BaseModel):
    client_id: str
    currency: str
    amount: Decimal = Field(..., gt=0)
    tx_hash: str
    network: str = "mainnet"
    confirmations: int = Field(0, ge=0)


class ConfirmationsRequest(BaseModel):
    confirmations: int = Field(..., ge=0)


@router.post("/whitelist", status_code=201)
async def whitelist_address(request: WhitelistRequest, desk: OTCDesk = Depends(get_desk)) -> WhitelistEntry:
    """Whitelist a withdrawal address after format and sanctions checks."""
    return await desk.custody.whitelist_address(
        request.client_id, request.currency, request.address, request.label
    )


@router.get("/whitelist/{client_id}")
async def list_whitelist(
    client_id: str, currency: Optional[str] = None, desk: OTCDesk = Depends(get_desk)
) -> list[WhitelistEntry]:
    return await desk.custody.list_whitelist(client_id, currency)


@router.get("/balances/{client_id}")
async def list_balances(client_id: str, desk: OTCDesk = Depends(get_desk)) -> list[CustodyBalance]:
    return await desk.custody.list_balances(client_id)


@router.get("/wallets")
async def list_wallets(kind: Optional[WalletKind] = None, desk: OTCDesk = Depends(get_desk)) -> list[WalletBalance]:
    return await desk.custody.list_wallet_balances(kind)


@router.post("/withdrawals", status_code=201)
async def request_withdrawal(request: WithdrawalRequest, desk: OTCDesk = Depends(get_desk)) -> Withdrawal:
    """Request a withdrawal; large amounts wait for multisig approval."""
    return await desk.custody.request_withdrawal(
        request.client_id, request.currency, request.amount, request.address, request.network
    )


@router.get("/withdrawals")
async def list_withdrawals(
    client_id: Optional[str] = None,
    status: Optional[WithdrawalStatus] = None,
    desk: OTCDesk = Depends(get_desk),
) -> list[Withdrawal]:
    return await desk.custody.list_withdrawals(client_id, status)


@router.get("/withdrawals/{withdrawal_id}")
async def get_withdrawal(withdrawal_id: str, desk: OTCDesk = Depends(get_desk)) -> Withdrawal:
    return await desk.custody.get_withdrawal(withdrawal_id)


@router.post("/withdrawals/{withdrawal_id}/signatures")
async def sign_withdrawal(
    withdrawal_id: str, request: SignatureRequest, desk: OTCDesk = Depends(get_desk)
) -> Withdrawal:
    return await desk.custody.add_multisig_signature(withdrawal_id, request.signer_id, request.signature)


@router.post("/deposits", status_code=201)
async def record_deposit(request: DepositRequest, desk: OTCDesk = Depends(get_desk)) -> Deposit:
    return await desk.custody.record_deposit(**request.model_dump())


@router.patch("/deposits/{deposit_id}/confirmations")
async def update_confirmations(
    deposit_id: str, request: ConfirmationsRequest, desk: OTCDesk = Depends(get_desk)
) -> Deposit:
    return await desk.custody.update_confirmations(deposit_id, request.confirmations)


@router.get("/deposits")
async def list_deposits(
    client_id: Optional[str] = None,
    status: Optional[DepositStatus] = None,
    desk: OTCDesk = Depends(get_desk),
) -> list[Deposit]:
    return await desk.custody.list_deposits(client_id, status)


@router.get("/sweeps")
async def list_sweeps(currency: Optional[str] = None, desk: OTCDesk = Depends(get_desk)) -> list[SweepRecord]:
    return await desk.custody.list_sweeps(currency)
