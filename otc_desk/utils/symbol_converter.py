"""Symbol conversion between desk pairs and price-feed markets."""

import logging
from typing import Dict, Optional, Tuple

from otc_desk.config.settings import settings

logger = logging.getLogger(__name__)


class SymbolConverter:
    """Convert symbols between the desk's "BASE/QUOTE" pairs and feed markets."""

    def __init__(self, fiat_aliases: Optional[Dict[str, str]] = None) -> None:
        """Initialize symbol converter.

        Args:
            fiat_aliases: Fiat quote currency -> exchange stand-in (e.g. USD -> USDT)
        """
        self.fiat_aliases = dict(settings.fiat_quote_aliases if fiat_aliases is None else fiat_aliases)

        # Common symbol mappings
        self.symbol_aliases = {
            "BTC": ["BITCOIN", "XBT"],
            "ETH": ["ETHEREUM"],
            "USDT": ["TETHER"],
            "USDC": ["USDCOIN"],
            "SOL": ["SOLANA"],
        }

    def make_symbol(self, base: str, quote: str) -> str:
        """Build a standard "BASE/QUOTE" symbol."""
        return f"{self.canonical_currency(base)}/{self.canonical_currency(quote)}"

    def parse_symbol(self, symbol: str) -> Tuple[str, str]:
        """Parse standard format symbol into base and quote."""
        if "/" not in symbol:
            raise ValueError(f"Invalid standard symbol format: {symbol}")

        parts = symbol.split("/")
        if len(parts) != 2 or not parts[0] or not parts[1]:
            raise ValueError(f"Invalid standard symbol format: {symbol}")

        return self.canonical_currency(parts[0]), self.canonical_currency(parts[1])

    def canonical_currency(self, currency: str) -> str:
        """Resolve currency aliases to their ticker."""
        code = currency.upper().strip()
        for ticker, aliases in self.symbol_aliases.items():
            if code in aliases:
                return ticker
        return code

    def to_feed_symbol(self, symbol: str) -> str:
        """Convert a desk symbol to the market symbol the feed lists.

        Args:
            symbol: Desk symbol (e.g., "BTC/USD")

        Returns:
            Feed market symbol (e.g., "BTC/USDT")
        """
        base, quote = self.parse_symbol(symbol)
        return f"{base}/{self.fiat_aliases.get(quote, quote)}"

    def from_feed_symbol(self, feed_symbol: str) -> str:
        """Convert a feed market symbol back to the desk symbol."""
        base, quote = self.parse_symbol(feed_symbol)
        reverse = {stand_in: fiat for fiat, stand_in in self.fiat_aliases.items()}
        return f"{base}/{reverse.get(quote, quote)}"

    def normalize_symbol(self, symbol: str) -> str:
        """Normalize symbol to consistent case and format.

        Args:
            symbol: Symbol to normalize

        Returns:
            Normalized symbol
        """
        symbol = symbol.upper().strip()
        symbol = symbol.replace("_", "/").replace("-", "/")

        if symbol.count("/") > 1:
            parts = symbol.split("/")
            symbol = f"{parts[0]}/{parts[-1]}"

        return symbol

    def get_base_currency(self, symbol: str) -> Optional[str]:
        """Extract base currency from symbol."""
        try:
            return self.parse_symbol(self.normalize_symbol(symbol))[0]
        except ValueError as e:
            logger.error("Error extracting base currency from %s: %s", symbol, e)
            return None

    def get_quote_currency(self, symbol: str) -> Optional[str]:
        """Extract quote currency from symbol."""
        try:
            return self.parse_symbol(self.normalize_symbol(symbol))[1]
        except ValueError as e:
            logger.error("Error extracting quote currency from %s: %s", symbol, e)
            return None


# Global symbol converter instance
symbol_converter = SymbolConverter()
