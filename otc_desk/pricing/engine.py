"""OTC pricing engine.

Turns a trade request into an executable price: base spread by client tier
and size class, plus liquidity and volatility adjustments, applied against the
feed's mid-price.
"""

import logging
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from otc_desk.data.models import PricingTier, TradeSide
from otc_desk.market.price_feed import PriceFeed
from otc_desk.utils.exceptions import NoMarketDataError
from otc_desk.utils.symbol_converter import symbol_converter

logger = logging.getLogger(__name__)

PRICE_QUANTUM = Decimal("0.00000001")
PCT_QUANTUM = Decimal("0.0001")


class SizeClass(str, Enum):
    """Trade size buckets, smallest first."""

    SMALL = "small"
    MEDIUM = "medium"
    LARGE = "large"
    BLOCK = "block"

    @property
    def rank(self) -> int:
        return SIZE_ORDER.index(self)


SIZE_ORDER = [SizeClass.SMALL, SizeClass.MEDIUM, SizeClass.LARGE, SizeClass.BLOCK]


class LiquidityRating(str, Enum):
    """Depth available for a trade of a given notional."""

    DEEP = "Deep"
    GOOD = "Good"
    MODERATE = "Moderate"
    LIMITED = "Limited"


BASE_SPREADS: dict[PricingTier, dict[SizeClass, Decimal]] = {
    PricingTier.RETAIL: {
        SizeClass.SMALL: Decimal("0.005"),
        SizeClass.MEDIUM: Decimal("0.004"),
        SizeClass.LARGE: Decimal("0.003"),
        SizeClass.BLOCK: Decimal("0.002"),
    },
    PricingTier.PROFESSIONAL: {
        SizeClass.SMALL: Decimal("0.003"),
        SizeClass.MEDIUM: Decimal("0.0025"),
        SizeClass.LARGE: Decimal("0.002"),
        SizeClass.BLOCK: Decimal("0.0015"),
    },
    PricingTier.INSTITUTIONAL: {
        SizeClass.SMALL: Decimal("0.002"),
        SizeClass.MEDIUM: Decimal("0.0015"),
        SizeClass.LARGE: Decimal("0.001"),
        SizeClass.BLOCK: Decimal("0.0008"),
    },
}

# USD notional thresholds per base currency
LIQUIDITY_TIERS: dict[str, dict[str, Decimal]] = {
    "BTC": {"high": Decimal("10000000"), "medium": Decimal("1000000"), "low": Decimal("100000")},
    "ETH": {"high": Decimal("5000000"), "medium": Decimal("500000"), "low": Decimal("50000")},
    "USDT": {"high": Decimal("50000000"), "medium": Decimal("5000000"), "low": Decimal("500000")},
    "USDC": {"high": Decimal("50000000"), "medium": Decimal("5000000"), "low": Decimal("500000")},
    "default": {"high": Decimal("1000000"), "medium": Decimal("100000"), "low": Decimal("10000")},
}

LIQUIDITY_ADJUSTMENTS: dict[SizeClass, Decimal] = {
    SizeClass.BLOCK: Decimal("0.002"),
    SizeClass.LARGE: Decimal("0.001"),
    SizeClass.MEDIUM: Decimal("0"),
    SizeClass.SMALL: Decimal("0"),
}

# (volatility above, adjustment), checked in order
VOLATILITY_STEPS: list[tuple[Decimal, Decimal]] = [
    (Decimal("0.10"), Decimal("0.003")),
    (Decimal("0.05"), Decimal("0.002")),
    (Decimal("0.02"), Decimal("0.001")),
]

PRICE_IMPACT: dict[SizeClass, Decimal] = {
    SizeClass.BLOCK: Decimal("0.15"),
    SizeClass.LARGE: Decimal("0.08"),
    SizeClass.MEDIUM: Decimal("0.03"),
    SizeClass.SMALL: Decimal("0.01"),
}

LIQUIDITY_RATINGS: dict[SizeClass, LiquidityRating] = {
    SizeClass.BLOCK: LiquidityRating.DEEP,
    SizeClass.LARGE: LiquidityRating.GOOD,
    SizeClass.MEDIUM: LiquidityRating.MODERATE,
    SizeClass.SMALL: LiquidityRating.LIMITED,
}

VALIDITY_SECONDS: dict[SizeClass, int] = {
    SizeClass.SMALL: 600,
    SizeClass.MEDIUM: 450,
    SizeClass.LARGE: 300,
    SizeClass.BLOCK: 180,
}

MINIMUM_AMOUNTS: dict[PricingTier, dict[str, Decimal]] = {
    PricingTier.RETAIL: {
        "BTC": Decimal("0.01"), "ETH": Decimal("0.1"),
        "USDT": Decimal("1000"), "USDC": Decimal("1000"), "default": Decimal("100"),
    },
    PricingTier.PROFESSIONAL: {
        "BTC": Decimal("0.1"), "ETH": Decimal("1"),
        "USDT": Decimal("10000"), "USDC": Decimal("10000"), "default": Decimal("1000"),
    },
    PricingTier.INSTITUTIONAL: {
        "BTC": Decimal("1"), "ETH": Decimal("10"),
        "USDT": Decimal("100000"), "USDC": Decimal("100000"), "default": Decimal("10000"),
    },
}

MAXIMUM_AMOUNTS: dict[PricingTier, dict[str, Decimal]] = {
    PricingTier.RETAIL: {
        "BTC": Decimal("10"), "ETH": Decimal("100"),
        "USDT": Decimal("500000"), "USDC": Decimal("500000"), "default": Decimal("50000"),
    },
    PricingTier.PROFESSIONAL: {
        "BTC": Decimal("100"), "ETH": Decimal("1000"),
        "USDT": Decimal("5000000"), "USDC": Decimal("5000000"), "default": Decimal("500000"),
    },
    PricingTier.INSTITUTIONAL: {
        "BTC": Decimal("1000"), "ETH": Decimal("10000"),
        "USDT": Decimal("50000000"), "USDC": Decimal("50000000"), "default": Decimal("5000000"),
    },
}


class PricingRequest(BaseModel):
    """Trade to be priced."""

    base_currency: str
    quote_currency: str
    amount: Decimal = Field(gt=0)
    side: TradeSide
    client_tier: PricingTier = PricingTier.RETAIL
    trade_size_class: Optional[SizeClass] = None


class PricingResult(BaseModel):
    """Executable OTC price and its breakdown."""

    price: Decimal
    spread: Decimal
    validity_seconds: int
    liquidity_rating: LiquidityRating
    price_impact: Decimal
    market_price: Decimal
    premium_discount_pct: Decimal
    min_amount: Decimal
    max_amount: Decimal
    size_class: SizeClass


def classify_size(currency: str, notional: Decimal) -> SizeClass:
    """Bucket a notional against the currency's liquidity thresholds."""
    tiers = LIQUIDITY_TIERS.get(currency.upper(), LIQUIDITY_TIERS["default"])
    if notional >= tiers["high"]:
        return SizeClass.BLOCK
    if notional >= tiers["medium"]:
        return SizeClass.LARGE
    if notional >= tiers["low"]:
        return SizeClass.MEDIUM
    return SizeClass.SMALL


def volatility_adjustment(volatility: Decimal) -> Decimal:
    for floor, adjustment in VOLATILITY_STEPS:
        if volatility > floor:
            return adjustment
    return Decimal("0")


def minimum_amount(currency: str, tier: PricingTier) -> Decimal:
    table = MINIMUM_AMOUNTS[tier]
    return table.get(currency.upper(), table["default"])


def maximum_amount(currency: str, tier: PricingTier) -> Decimal:
    table = MAXIMUM_AMOUNTS[tier]
    return table.get(currency.upper(), table["default"])


class PricingEngine:
    """Price OTC trades against a price feed."""

    def __init__(self, price_feed: PriceFeed) -> None:
        """Initialize pricing engine.

        Args:
            price_feed: Source of mid-price and volatility
        """
        self.price_feed = price_feed

    async def get_otc_price(self, request: PricingRequest) -> PricingResult:
        """Price a trade.

        The size class used for the base spread and the validity window is the
        larger of the declared class and the class implied by the notional.
        Liquidity adjustment, price impact and rating follow the notional.

        Args:
            request: Trade to price

        Returns:
            Executable price and breakdown

        Raises:
            NoMarketDataError: The feed has no entry for the pair
        """
        symbol = symbol_converter.make_symbol(request.base_currency, request.quote_currency)
        market = await self.price_feed.get_market_data(symbol)
        if market is None:
            raise NoMarketDataError(f"Market data not available for {symbol}", symbol=symbol)

        mid = market.price
        notional = request.amount * mid
        notional_class = classify_size(request.base_currency, notional)
        size_class = notional_class
        if request.trade_size_class is not None and request.trade_size_class.rank > size_class.rank:
            size_class = request.trade_size_class

        spread = (
            BASE_SPREADS[request.client_tier][size_class]
            + LIQUIDITY_ADJUSTMENTS[notional_class]
            + volatility_adjustment(market.volatility)
        )

        if request.side == TradeSide.BUY:
            price = mid * (1 + spread)
        else:
            price = mid * (1 - spread)
        price = price.quantize(PRICE_QUANTUM, rounding=ROUND_HALF_UP)

        premium = ((price - mid) / mid * 100).quantize(PCT_QUANTUM, rounding=ROUND_HALF_UP)

        result = PricingResult(
            price=price,
            spread=spread,
            validity_seconds=VALIDITY_SECONDS[size_class],
            liquidity_rating=LIQUIDITY_RATINGS[notional_class],
            price_impact=PRICE_IMPACT[notional_class],
            market_price=mid,
            premium_discount_pct=premium,
            min_amount=minimum_amount(request.base_currency, request.client_tier),
            max_amount=maximum_amount(request.base_currency, request.client_tier),
            size_class=size_class,
        )
        logger.debug(
            "Priced %s %s %s (%s/%s): mid=%s spread=%s price=%s",
            request.side.value,
            request.amount,
            symbol,
            request.client_tier.value,
            size_class.value,
            mid,
            spread,
            price,
        )
        return result
