"""Tests for symbol converter utility."""

import pytest

from otc_desk.utils.symbol_converter import SymbolConverter


class TestSymbolConverter:
    """Test cases for SymbolConverter."""

    def setup_method(self) -> None:
        """Set up test fixtures."""
        self.converter = SymbolConverter(fiat_aliases={"USD": "USDT"})

    def test_make_symbol(self) -> None:
        """Test building desk symbols."""
        assert self.converter.make_symbol("btc", "usd") == "BTC/USD"
        assert self.converter.make_symbol("XBT", "USD") == "BTC/USD"
        assert self.converter.make_symbol("Ethereum", "USDC") == "ETH/USDC"

    def test_parse_symbol(self) -> None:
        """Test parsing standard symbol format."""
        base, quote = self.converter.parse_symbol("BTC/USD")
        assert base == "BTC"
        assert quote == "USD"

        # Test error handling
        with pytest.raises(ValueError):
            self.converter.parse_symbol("BTCUSD")  # No separator

        with pytest.raises(ValueError):
            self.converter.parse_symbol("BTC/USD/ETH")  # Too many parts

        with pytest.raises(ValueError):
            self.converter.parse_symbol("BTC/")

    def test_canonical_currency(self) -> None:
        """Test currency aliases resolve to tickers."""
        assert self.converter.canonical_currency("xbt") == "BTC"
        assert self.converter.canonical_currency("BITCOIN") == "BTC"
        assert self.converter.canonical_currency("solana") == "SOL"
        assert self.converter.canonical_currency(" tether ") == "USDT"
        assert self.converter.canonical_currency("doge") == "DOGE"

    def test_feed_symbol_conversion(self) -> None:
        """Test fiat quotes map to their exchange stand-in and back."""
        # Desk to feed
        assert self.converter.to_feed_symbol("BTC/USD") == "BTC/USDT"
        assert self.converter.to_feed_symbol("ETH/BTC") == "ETH/BTC"

        # Feed to desk
        assert self.converter.from_feed_symbol("BTC/USDT") == "BTC/USD"
        assert self.converter.from_feed_symbol("ETH/BTC") == "ETH/BTC"

    def test_without_fiat_aliases(self) -> None:
        """Test an empty alias table passes symbols through."""
        converter = SymbolConverter(fiat_aliases={})

        assert converter.to_feed_symbol("BTC/USD") == "BTC/USD"
        assert converter.from_feed_symbol("BTC/USDT") == "BTC/USDT"

    def test_normalize_symbol(self) -> None:
        """Test symbol normalization."""
        assert self.converter.normalize_symbol("btc/usd") == "BTC/USD"
        assert self.converter.normalize_symbol("BTC_USD") == "BTC/USD"
        assert self.converter.normalize_symbol("btc-usd") == "BTC/USD"
        assert self.converter.normalize_symbol(" BTC/USD ") == "BTC/USD"
        assert self.converter.normalize_symbol("BTC-PERP/USD") == "BTC/USD"

    def test_get_base_currency(self) -> None:
        """Test extracting base currency."""
        assert self.converter.get_base_currency("BTC/USD") == "BTC"
        assert self.converter.get_base_currency("xbt-usd") == "BTC"
        assert self.converter.get_base_currency("INVALID") is None

    def test_get_quote_currency(self) -> None:
        """Test extracting quote currency."""
        assert self.converter.get_quote_currency("BTC/USD") == "USD"
        assert self.converter.get_quote_currency("eth_usdc") == "USDC"
        assert self.converter.get_quote_currency("INVALID") is None
