"""Deal, quote, block trade and liquidity pool API endpoints."""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from otc_desk.api.dependencies import get_desk
from otc_desk.data.models import (
    BlockTrade,
    Client,
    Deal,
    DealStatus,
    ExecutionType,
    LiquidityPool,
    PricingTier,
    Quote,
    TradeSide,
    Visibility,
)
from otc_desk.engine.desk import OTCDesk
from otc_desk.pricing.engine import PricingResult, SizeClass
from otc_desk.pricing.execution import ExecutionPlan, ExecutionStyle
from otc_desk.trading.trade_book import DealFilters

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/otc", tags=["otc"])


class ClientRequest(BaseModel):
    """Client registration."""

    name: str = Field(..., description="Display name")
    email: Optional[str] = Field(None, description="Contact email")
    is_institutional: bool = Field(False, description="Institutional counterparty")
    pricing_tier: Optional[PricingTier] = Field(None, description="Spread tier")


class DealRequest(BaseModel):
    """Deal creation request."""

    client_id: str
    side: TradeSide
    base_currency: str
    quote_currency: str
    amount: Decimal = Field(..., gt=0)
    price: Decimal = Field(..., gt=0)
    visibility: Visibility = Visibility.PUBLIC
    notes: Optional[str] = None


class MatchRequest(BaseModel):
    counterparty_id: str


class QuoteRequest(BaseModel):
    """Quote request."""

    client_id: str
    side: TradeSide
    base_currency: str
    quote_currency: str
    amount: Decimal = Field(..., gt=0)
    valid_for: Optional[int] = Field(None, gt=0, description="Quote life in seconds")
    trade_size_class: Optional[SizeClass] = None


class PricingQuery(BaseModel):
    """Indicative pricing request."""

    client_id: str
    side: TradeSide
    base_currency: str
    quote_currency: str
    amount: Decimal = Field(..., gt=0)
    trade_size_class: Optional[SizeClass] = None


class ExecutionQuery(BaseModel):
    base_currency: str
    quote_currency: str
    amount: Decimal = Field(..., gt=0)
    side: TradeSide
    execution_type: ExecutionStyle = ExecutionStyle.TWAP


class BlockTradeRequest(BaseModel):
    """Pre-matched block trade."""

    buyer_id: str
    seller_id: str
    base_currency: str
    quote_currency: str
    amount: Decimal = Field(..., gt=0)
    price: Decimal = Field(..., gt=0)
    execution_type: ExecutionType = ExecutionType.IMMEDIATE
    scheduled_for: Optional[datetime] = None
    execution_period_minutes: Optional[int] = Field(None, gt=0)


class LiquidityPoolRequest(BaseModel):
    provider_id: str
    base_currency: str
    quote_currency: str
    base_amount: Decimal = Field(..., ge=0)
    quote_amount: Decimal = Field(..., ge=0)
    bid_spread: Decimal
    ask_spread: Decimal
    min_trade_size: Decimal = Field(..., ge=0)
    max_trade_size: Decimal = Field(..., gt=0)


# Clients


@router.post("/clients", status_code=201)
async def register_client(request: ClientRequest, desk: OTCDesk = Depends(get_desk)) -> Client:
    return await desk.register_client(
        request.name, request.email, request.is_institutional, request.pricing_tier
    )


@router.get("/clients/{client_id}")
async def get_client(client_id: str, desk: OTCDesk = Depends(get_desk)) -> Client:
    return await desk.get_client(client_id)


# Deals


@router.get("/deals")
async def list_deals(
    client_id: Optional[str] = None,
    status: Optional[DealStatus] = None,
    side: Optional[TradeSide] = None,
    visibility: Optional[Visibility] = None,
    asset: Optional[str] = None,
    min_amount: Optional[Decimal] = None,
    max_amount: Optional[Decimal] = None,
    desk: OTCDesk = Depends(get_desk),
) -> list[Deal]:
    """List deals; filtering by asset matches either currency of the pair."""
    filters = DealFilters(
        client_id=client_id,
        status=status,
        side=side,
        visibility=visibility,
        asset=asset,
        min_amount=min_amount,
        max_amount=max_amount,
    )
    return await desk.trade_book.list_deals(filters)


@router.post("/deals", status_code=201)
async def create_deal(request: DealRequest, desk: OTCDesk = Depends(get_desk)) -> Deal:
    return await desk.create_deal(
        request.client_id,
        request.side,
        request.base_currency,
        request.quote_currency,
        request.amount,
        request.price,
        visibility=request.visibility,
        notes=request.notes,
    )


@router.get("/deals/{deal_id}")
async def get_deal(deal_id: str, desk: OTCDesk = Depends(get_desk)) -> Deal:
    return await desk.trade_book.get_deal(deal_id)


@router.patch("/deals/{deal_id}/match")
async def match_deal(deal_id: str, request: MatchRequest, desk: OTCDesk = Depends(get_desk)) -> Deal:
    return await desk.match_deal(deal_id, request.counterparty_id)


@router.patch("/deals/{deal_id}/cancel")
async def cancel_deal(deal_id: str, desk: OTCDesk = Depends(get_desk)) -> Deal:
    return await desk.trade_book.cancel_deal(deal_id)


# Quotes


@router.post("/quotes", status_code=201)
async def request_quote(request: QuoteRequest, desk: OTCDesk = Depends(get_desk)) -> Quote:
    return await desk.request_quote(
        request.client_id,
        request.side,
        request.base_currency,
        request.quote_currency,
        request.amount,
        valid_for=request.valid_for,
        trade_size_class=request.trade_size_class,
    )


@router.get("/quotes")
async def list_quotes(client_id: Optional[str] = None, desk: OTCDesk = Depends(get_desk)) -> list[Quote]:
    return await desk.trade_book.list_quotes(client_id)


@router.get("/quotes/{quote_id}")
async def get_quote(quote_id: str, desk: OTCDesk = Depends(get_desk)) -> Quote:
    return await desk.trade_book.get_quote(quote_id)


@router.patch("/quotes/{quote_id}/price")
async def price_quote(quote_id: str, desk: OTCDesk = Depends(get_desk)) -> Quote:
    """Price a pending quote from current market data."""
    return await desk.price_quote(quote_id)


@router.patch("/quotes/{quote_id}/accept")
async def accept_quote(quote_id: str, desk: OTCDesk = Depends(get_desk)) -> Deal:
    """Accept a quote; returns the deal opened at the quoted price."""
    return await desk.accept_quote(quote_id)


@router.patch("/quotes/{quote_id}/cancel")
async def cancel_quote(quote_id: str, desk: OTCDesk = Depends(get_desk)) -> Quote:
    return await desk.trade_book.cancel_quote(quote_id)


# Pricing


@router.post("/pricing")
async def get_otc_pricing(request: PricingQuery, desk: OTCDesk = Depends(get_desk)) -> PricingResult:
    return await desk.price(
        request.client_id,
        request.side,
        request.base_currency,
        request.quote_currency,
        request.amount,
        request.trade_size_class,
    )


@router.post("/execution-strategy")
async def get_execution_strategy(request: ExecutionQuery, desk: OTCDesk = Depends(get_desk)) -> ExecutionPlan:
    return await desk.execution_strategy(
        request.base_currency,
        request.quote_currency,
        request.amount,
        request.side,
        request.execution_type,
    )


# Block trades


@router.post("/block-trades", status_code=201)
async def create_block_trade(request: BlockTradeRequest, desk: OTCDesk = Depends(get_desk)) -> BlockTrade:
    return await desk.trade_book.create_block_trade(
        request.buyer_id,
        request.seller_id,
        request.base_currency,
        request.quote_currency,
        request.amount,
        request.price,
        execution_type=request.execution_type,
        scheduled_for=request.scheduled_for,
        execution_period_minutes=request.execution_period_minutes,
    )


@router.get("/block-trades")
async def list_block_trades(user_id: Optional[str] = None, desk: OTCDesk = Depends(get_desk)) -> list[BlockTrade]:
    return await desk.trade_book.list_block_trades(user_id)


@router.get("/block-trades/{trade_id}")
async def get_block_trade(trade_id: str, desk: OTCDesk = Depends(get_desk)) -> BlockTrade:
    return await desk.trade_book.get_block_trade(trade_id)


# Liquidity pools


@router.post("/liquidity-pools", status_code=201)
async def create_liquidity_pool(
    request: LiquidityPoolRequest, desk: OTCDesk = Depends(get_desk)
) -> LiquidityPool:
    return await desk.trade_book.create_liquidity_pool(**request.model_dump())


@router.get("/liquidity-pools")
async def list_liquidity_pools(
    currency: Optional[str] = None, desk: OTCDesk = Depends(get_desk)
) -> list[LiquidityPool]:
    return await desk.trade_book.list_liquidity_pools(currency)


@router.patch("/liquidity-pools/{pool_id}/deactivate")
async def deactivate_pool(pool_id: str, desk: OTCDesk = Depends(get_desk)) -> LiquidityPool:
    return await desk.trade_book.deactivate_pool(pool_id)
