"""Execution-strategy estimates for large orders."""

import logging
import math
from datetime import datetime, timedelta
from decimal import ROUND_DOWN, Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel

from otc_desk.data.models import TradeSide, utcnow
from otc_desk.market.price_feed import PriceFeed
from otc_desk.utils.exceptions import NoMarketDataError
from otc_desk.utils.symbol_converter import symbol_converter

logger = logging.getLogger(__name__)

LARGE_ORDER_NOTIONAL = Decimal("1000000")
CHUNK_QUANTUM = Decimal("0.00000001")


class ExecutionStyle(str, Enum):
    """How an order is worked into the market."""

    IMMEDIATE = "immediate"
    TWAP = "twap"
    VWAP = "vwap"
    ICEBERG = "iceberg"


class StyleCurve(BaseModel):
    """Period scaling, slicing and slippage for one execution style."""

    strategy: str
    notional_per_minute: Optional[Decimal] = None
    min_minutes: int
    max_minutes: int
    slice_minutes: Optional[int] = None
    fixed_chunks: Optional[int] = None
    slippage_small: Decimal
    slippage_large: Decimal


STYLE_CURVES: dict[ExecutionStyle, StyleCurve] = {
    ExecutionStyle.TWAP: StyleCurve(
        strategy="Time Weighted Average Price",
        notional_per_minute=Decimal("100000"),
        min_minutes=30,
        max_minutes=480,
        slice_minutes=15,
        slippage_small=Decimal("0.05"),
        slippage_large=Decimal("0.12"),
    ),
    ExecutionStyle.VWAP: StyleCurve(
        strategy="Volume Weighted Average Price",
        notional_per_minute=Decimal("150000"),
        min_minutes=20,
        max_minutes=360,
        slice_minutes=10,
        slippage_small=Decimal("0.03"),
        slippage_large=Decimal("0.08"),
    ),
    # 5% of the order visible per slice
    ExecutionStyle.ICEBERG: StyleCurve(
        strategy="Iceberg Order Execution",
        notional_per_minute=Decimal("200000"),
        min_minutes=15,
        max_minutes=240,
        fixed_chunks=20,
        slippage_small=Decimal("0.02"),
        slippage_large=Decimal("0.06"),
    ),
    ExecutionStyle.IMMEDIATE: StyleCurve(
        strategy="Immediate Execution",
        min_minutes=1,
        max_minutes=1,
        fixed_chunks=1,
        slippage_small=Decimal("0.10"),
        slippage_large=Decimal("0.25"),
    ),
}


class ExecutionPlan(BaseModel):
    """Recommended way to work a large order."""

    strategy: str
    style: ExecutionStyle
    estimated_slippage_pct: Decimal
    execution_period_minutes: int
    chunk_size: Decimal
    chunk_count: int
    estimated_completion: datetime


def plan_execution(
    amount: Decimal,
    notional: Decimal,
    style: ExecutionStyle,
    now: Optional[datetime] = None,
) -> ExecutionPlan:
    """Build an execution plan from the order's notional.

    Args:
        amount: Order size in base currency
        notional: Order value in quote currency
        style: Execution style
        now: Reference time for the completion estimate

    Returns:
        Execution plan
    """
    curve = STYLE_CURVES[style]

    if curve.notional_per_minute is None:
        period = curve.min_minutes
    else:
        raw = float(notional / curve.notional_per_minute)
        period = math.ceil(min(max(raw, curve.min_minutes), curve.max_minutes))

    if curve.fixed_chunks is not None:
        chunks = curve.fixed_chunks
    else:
        chunks = math.ceil(period / curve.slice_minutes)

    slippage = curve.slippage_large if notional > LARGE_ORDER_NOTIONAL else curve.slippage_small
    chunk_size = (amount / chunks).quantize(CHUNK_QUANTUM, rounding=ROUND_DOWN)
    start = now or utcnow()

    return ExecutionPlan(
        strategy=curve.strategy,
        style=style,
        estimated_slippage_pct=slippage,
        execution_period_minutes=period,
        chunk_size=chunk_size,
        chunk_count=chunks,
        estimated_completion=start + timedelta(minutes=period),
    )


class ExecutionPlanner:
    """Estimate execution strategies using live mid-prices."""

    def __init__(self, price_feed: PriceFeed) -> None:
        self.price_feed = price_feed

    async def calculate_optimal_execution(
        self,
        base_currency: str,
        quote_currency: str,
        amount: Decimal,
        side: TradeSide,
        style: ExecutionStyle,
    ) -> ExecutionPlan:
        """Estimate slippage, period and slicing for an order.

        Raises:
            NoMarketDataError: The feed has no entry for the pair
        """
        symbol = symbol_converter.make_symbol(base_currency, quote_currency)
        market = await self.price_feed.get_market_data(symbol)
        if market is None:
            raise NoMarketDataError(f"Market data not available for {symbol}", symbol=symbol)

        plan = plan_execution(amount, amount * market.price, style)
        logger.debug(
            "Execution plan for %s %s %s: %s over %d min in %d chunks",
            side.value,
            amount,
            symbol,
            style.value,
            plan.execution_period_minutes,
            plan.chunk_count,
        )
        return plan
