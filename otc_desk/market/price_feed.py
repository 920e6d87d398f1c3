"""Price feed collaborators used by the pricing engine."""

import asyncio
import logging
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any, Optional

import ccxt
import numpy as np
import pandas as pd

from otc_desk.config.settings import settings
from otc_desk.data.models import MarketData, utcnow
from otc_desk.utils.exceptions import NoMarketDataError, PriceFeedError, map_ccxt_exception
from otc_desk.utils.retry import retry_async
from otc_desk.utils.symbol_converter import SymbolConverter, symbol_converter

logger = logging.getLogger(__name__)


class PriceFeed(ABC):
    """Source of mid-price, spread and volatility per trading symbol."""

    @abstractmethod
    async def get_market_data(self, symbol: str) -> Optional[MarketData]:
        """Return the latest snapshot for ``symbol`` or ``None`` if unlisted."""


class StaticPriceFeed(PriceFeed):
    """In-process market data table.

    Used by tests and as a manual override feed when no exchange is reachable.
    """

    def __init__(self, converter: Optional[SymbolConverter] = None) -> None:
        self.converter = converter or symbol_converter
        self._data: dict[str, MarketData] = {}

    def update_market_data(
        self,
        symbol: str,
        price: Decimal,
        volatility: Decimal = Decimal("0"),
        bid_price: Optional[Decimal] = None,
        ask_price: Optional[Decimal] = None,
        volume_24h: Decimal = Decimal("0"),
    ) -> MarketData:
        """Set the snapshot for a symbol."""
        key = self.converter.normalize_symbol(symbol)
        data = MarketData(
            symbol=key,
            price=price,
            volatility=volatility,
            bid_price=bid_price,
            ask_price=ask_price,
            volume_24h=volume_24h,
        )
        self._data[key] = data
        return data

    async def get_market_data(self, symbol: str) -> Optional[MarketData]:
        data = self._data.get(self.converter.normalize_symbol(symbol))
        return data.model_copy() if data is not None else None


def realized_volatility(closes: list[float], periods: int = 24) -> Decimal:
    """Standard deviation of log returns over the last ``periods`` candles.

    Args:
        closes: Close prices, oldest first
        periods: Number of returns to use (24 hourly candles = one day)

    Returns:
        Volatility as a fraction (0.03 = 3%)
    """
    series = pd.Series(closes, dtype="float64").dropna()
    if len(series) < 3:
        return Decimal("0")

    returns = np.log(series / series.shift(1)).dropna().tail(periods)
    vol = float(returns.std(ddof=1) * np.sqrt(len(returns)))
    if not np.isfinite(vol):
        return Decimal("0")
    return Decimal(str(round(vol, 6)))


class CcxtPriceFeed(PriceFeed):
    """Price feed backed by a ccxt exchange's public market data."""

    def __init__(
        self,
        exchange: Optional[Any] = None,
        converter: Optional[SymbolConverter] = None,
        timeframe: str = "1h",
        candles: int = 25,
    ) -> None:
        """Initialize ccxt price feed.

        Args:
            exchange: Preconfigured ccxt exchange (built from settings if omitted)
            converter: Symbol converter for fiat aliases
            timeframe: OHLCV timeframe used for volatility
            candles: Number of candles fetched for volatility
        """
        self.exchange = exchange or self._build_exchange()
        self.converter = converter or symbol_converter
        self.timeframe = timeframe
        self.candles = candles

    def _build_exchange(self) -> Any:
        exchange_class = getattr(ccxt, settings.price_feed_exchange, None)
        if exchange_class is None:
            raise PriceFeedError(
                f"Unknown ccxt exchange: {settings.price_feed_exchange}",
                context={"exchange": settings.price_feed_exchange},
            )

        exchange = exchange_class(
            {
                "apiKey": settings.price_feed_api_key,
                "secret": settings.price_feed_secret_key,
                "enableRateLimit": True,
                "options": {"defaultType": "spot"},
            }
        )
        if settings.price_feed_sandbox:
            exchange.set_sandbox_mode(True)
        logger.info(
            "ccxt price feed initialized (exchange=%s, sandbox=%s)",
            settings.price_feed_exchange,
            settings.price_feed_sandbox,
        )
        return exchange

    async def get_market_data(self, symbol: str) -> Optional[MarketData]:
        try:
            return await self._fetch(symbol)
        except NoMarketDataError:
            logger.info("No market data for %s", symbol)
            return None

    @retry_async(max_attempts=3, delay=0.5, exceptions=PriceFeedError)
    async def _fetch(self, symbol: str) -> MarketData:
        feed_symbol = self.converter.to_feed_symbol(symbol)
        try:
            ticker = await asyncio.to_thread(self.exchange.fetch_ticker, feed_symbol)
            ohlcv = await asyncio.to_thread(
                self.exchange.fetch_ohlcv, feed_symbol, self.timeframe, None, self.candles
            )
        except Exception as e:
            raise map_ccxt_exception(e, symbol) from e

        last = ticker.get("last") or ticker.get("close")
        bid = ticker.get("bid")
        ask = ticker.get("ask")
        if bid and ask:
            mid = (Decimal(str(bid)) + Decimal(str(ask))) / 2
        elif last:
            mid = Decimal(str(last))
        else:
            raise NoMarketDataError(f"No price in ticker for {symbol}", symbol=symbol)

        closes = [candle[4] for candle in ohlcv]
        return MarketData(
            symbol=self.converter.normalize_symbol(symbol),
            price=mid,
            bid_price=Decimal(str(bid)) if bid else None,
            ask_price=Decimal(str(ask)) if ask else None,
            volatility=realized_volatility(closes),
            volume_24h=Decimal(str(ticker.get("quoteVolume") or 0)),
            timestamp=utcnow(),
        )
