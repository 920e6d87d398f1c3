"""Market data API endpoints."""

import logging
from decimal import Decimal

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from otc_desk.api.dependencies import get_desk
from otc_desk.data.models import MarketData
from otc_desk.engine.desk import OTCDesk
from otc_desk.utils.exceptions import NoMarketDataError
from otc_desk.utils.symbol_converter import symbol_converter

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/markets", tags=["markets"])


class RateUpdate(BaseModel):
    rate: Decimal = Field(..., gt=0, description="USD per unit")


@router.get("/rates")
async def get_usd_rates(desk: OTCDesk = Depends(get_desk)) -> dict[str, Decimal]:
    """Reference USD rates used for limits and custody thresholds."""
    return desk.converter.rates


@router.put("/rates/{currency}")
async def set_usd_rate(currency: str, update: RateUpdate, desk: OTCDesk = Depends(get_desk)) -> dict[str, Decimal]:
    desk.converter.set_rate(currency, update.rate)
    logger.info("USD rate for %s set to %s", currency.upper(), update.rate)
    return {currency.upper(): update.rate}


@router.get("/{base_currency}/{quote_currency}")
async def get_market_data(base_currency: str, quote_currency: str, desk: OTCDesk = Depends(get_desk)) -> MarketData:
    """Current feed snapshot for a pair.

    Args:
        base_currency: Base currency code
        quote_currency: Quote currency code

    Returns:
        Mid price, bid/ask and volatility
    """
    symbol = symbol_converter.make_symbol(base_currency, quote_currency)
    market = await desk.price_feed.get_market_data(symbol)
    if market is None:
        raise NoMarketDataError(f"Market data not available for {symbol}", symbol=symbol)
    return market
