"""Reference USD conversion rates used for limits and policy thresholds."""

from decimal import Decimal
from typing import Optional

USD_RATES: dict[str, Decimal] = {
    "USD": Decimal("1"),
    "EUR": Decimal("1.1"),
    "GBP": Decimal("1.25"),
    "BTC": Decimal("45000"),
    "ETH": Decimal("3000"),
    "USDT": Decimal("1"),
    "USDC": Decimal("1"),
}


class UsdConverter:
    """Convert amounts to USD with a fixed rate table."""

    def __init__(self, rates: Optional[dict[str, Decimal]] = None) -> None:
        self.rates = dict(USD_RATES if rates is None else rates)

    def rate(self, currency: str) -> Decimal:
        # unlisted currencies count at par
        return self.rates.get(currency.upper(), Decimal("1"))

    def to_usd(self, amount: Decimal, currency: str) -> Decimal:
        return amount * self.rate(currency)

    def set_rate(self, currency: str, rate: Decimal) -> None:
        self.rates[currency.upper()] = rate


usd_converter = UsdConverter()
