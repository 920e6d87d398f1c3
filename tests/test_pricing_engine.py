"""Tests for the OTC pricing engine."""

from decimal import Decimal

import pytest

from otc_desk.data.models import PricingTier, TradeSide
from otc_desk.market.price_feed import StaticPriceFeed
from otc_desk.pricing.engine import (
    LiquidityRating,
    PricingEngine,
    PricingRequest,
    SizeClass,
    classify_size,
    volatility_adjustment,
)
from otc_desk.utils.exceptions import NoMarketDataError


def _request(**overrides) -> PricingRequest:
    params = {
        "base_currency": "BTC",
        "quote_currency": "USD",
        "amount": Decimal("2"),
        "side": TradeSide.BUY,
        "client_tier": PricingTier.RETAIL,
    }
    params.update(overrides)
    return PricingRequest(**params)


class TestClassification:
    """Test cases for size and volatility bucketing."""

    def test_btc_size_classes(self) -> None:
        """Test notional thresholds for BTC."""
        assert classify_size("BTC", Decimal("99999")) == SizeClass.SMALL
        assert classify_size("BTC", Decimal("100000")) == SizeClass.MEDIUM
        assert classify_size("BTC", Decimal("1000000")) == SizeClass.LARGE
        assert classify_size("btc", Decimal("10000000")) == SizeClass.BLOCK

    def test_unlisted_currency_uses_default_tiers(self) -> None:
        """Test fallback thresholds for unknown currencies."""
        assert classify_size("DOGE", Decimal("9999")) == SizeClass.SMALL
        assert classify_size("DOGE", Decimal("10000")) == SizeClass.MEDIUM
        assert classify_size("DOGE", Decimal("1000000")) == SizeClass.BLOCK

    def test_volatility_steps(self) -> None:
        """Test volatility adjustment steps are exclusive lower bounds."""
        assert volatility_adjustment(Decimal("0.02")) == Decimal("0")
        assert volatility_adjustment(Decimal("0.03")) == Decimal("0.001")
        assert volatility_adjustment(Decimal("0.05")) == Decimal("0.001")
        assert volatility_adjustment(Decimal("0.06")) == Decimal("0.002")
        assert volatility_adjustment(Decimal("0.2")) == Decimal("0.003")


class TestPricingEngine:
    """Test cases for PricingEngine."""

    @pytest.mark.asyncio
    async def test_institutional_declared_large(self, price_feed: StaticPriceFeed) -> None:
        """Test a declared size class lifts the base spread but not the liquidity terms."""
        engine = PricingEngine(price_feed)

        result = await engine.get_otc_price(
            _request(client_tier=PricingTier.INSTITUTIONAL, trade_size_class=SizeClass.LARGE)
        )

        assert result.market_price == Decimal("45000")
        assert result.spread == Decimal("0.002")
        assert result.price == Decimal("45090.00000000")
        assert result.validity_seconds == 300
        assert result.price_impact == Decimal("0.01")
        assert result.liquidity_rating == LiquidityRating.LIMITED
        assert result.premium_discount_pct == Decimal("0.2000")
        assert result.size_class == SizeClass.LARGE
        assert result.min_amount == Decimal("1")
        assert result.max_amount == Decimal("1000")

    @pytest.mark.asyncio
    async def test_sell_side_discount(self, price_feed: StaticPriceFeed) -> None:
        """Test sells are priced below mid."""
        engine = PricingEngine(price_feed)

        result = await engine.get_otc_price(_request(side=TradeSide.SELL))

        # retail small 0.005 + volatility 0.001
        assert result.spread == Decimal("0.006")
        assert result.price == Decimal("44730.00000000")
        assert result.premium_discount_pct == Decimal("-0.6000")
        assert result.validity_seconds == 600

    @pytest.mark.asyncio
    async def test_declared_class_never_lowers_size(self, price_feed: StaticPriceFeed) -> None:
        """Test a smaller declared class is ignored for a large notional."""
        engine = PricingEngine(price_feed)

        result = await engine.get_otc_price(
            _request(amount=Decimal("30"), trade_size_class=SizeClass.SMALL)
        )

        # 30 BTC is 1.35M notional: large
        assert result.size_class == SizeClass.LARGE
        assert result.spread == Decimal("0.003") + Decimal("0.001") + Decimal("0.001")
        assert result.liquidity_rating == LiquidityRating.GOOD
        assert result.price_impact == Decimal("0.08")

    @pytest.mark.asyncio
    async def test_spread_monotonic_in_tier(self, price_feed: StaticPriceFeed) -> None:
        """Test better tiers never receive a wider spread."""
        engine = PricingEngine(price_feed)

        spreads = []
        for tier in (PricingTier.RETAIL, PricingTier.PROFESSIONAL, PricingTier.INSTITUTIONAL):
            result = await engine.get_otc_price(_request(client_tier=tier))
            spreads.append(result.spread)

        assert spreads == sorted(spreads, reverse=True)

    @pytest.mark.asyncio
    async def test_base_spread_narrows_with_size(self, price_feed: StaticPriceFeed) -> None:
        """Test base spread narrows as the declared size class grows."""
        engine = PricingEngine(price_feed)
        price_feed.update_market_data("BTC/USD", Decimal("45000"))

        spreads = []
        for size_class in (SizeClass.SMALL, SizeClass.MEDIUM, SizeClass.LARGE, SizeClass.BLOCK):
            result = await engine.get_otc_price(
                _request(amount=Decimal("0.5"), trade_size_class=size_class)
            )
            spreads.append(result.spread)

        assert spreads == [Decimal("0.005"), Decimal("0.004"), Decimal("0.003"), Decimal("0.002")]

    @pytest.mark.asyncio
    async def test_fiat_alias_symbol_resolution(self, price_feed: StaticPriceFeed) -> None:
        """Test currency aliases resolve before the feed lookup."""
        engine = PricingEngine(price_feed)

        result = await engine.get_otc_price(_request(base_currency="xbt", quote_currency="usd"))

        assert result.market_price == Decimal("45000")

    @pytest.mark.asyncio
    async def test_no_market_data(self, price_feed: StaticPriceFeed) -> None:
        """Test unpriced pairs raise NoMarketDataError."""
        engine = PricingEngine(price_feed)

        with pytest.raises(NoMarketDataError) as exc_info:
            await engine.get_otc_price(_request(base_currency="DOGE"))

        assert exc_info.value.symbol == "DOGE/USD"
