"""Pytest configuration and fixtures."""

from decimal import Decimal
from typing import Awaitable, Callable

import pytest

from otc_desk.data.models import Client
from otc_desk.data.repository import InMemoryStore
from otc_desk.engine.desk import OTCDesk
from otc_desk.market.price_feed import StaticPriceFeed
from otc_desk.market.rates import UsdConverter
from otc_desk.settlement.rails import RailRouter
from otc_desk.utils.retry import error_aggregator


@pytest.fixture(autouse=True)
def clear_error_history() -> None:
    """Start every test with an empty error aggregator."""
    error_aggregator.clear()


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def price_feed() -> StaticPriceFeed:
    """Static feed seeded with the pairs the desk trades."""
    feed = StaticPriceFeed()
    feed.update_market_data(
        "BTC/USD",
        Decimal("45000"),
        volatility=Decimal("0.03"),
        bid_price=Decimal("44990"),
        ask_price=Decimal("45010"),
    )
    feed.update_market_data("ETH/USD", Decimal("3000"), volatility=Decimal("0.01"))
    feed.update_market_data("USDT/USD", Decimal("1"))
    return feed


@pytest.fixture
def converter() -> UsdConverter:
    return UsdConverter()


@pytest.fixture
def rails() -> RailRouter:
    return RailRouter.sandbox()


@pytest.fixture
def desk(
    store: InMemoryStore,
    price_feed: StaticPriceFeed,
    rails: RailRouter,
    converter: UsdConverter,
) -> OTCDesk:
    """Desk with sandbox rails that completes settlements without delay."""
    return OTCDesk(store, price_feed, rails=rails, converter=converter, completion_delay=0)


@pytest.fixture
def make_client(desk: OTCDesk) -> Callable[..., Awaitable[Client]]:
    """Factory registering a client, optionally verified up to full KYC."""

    async def _make(
        name: str = "client",
        verification: tuple[str, ...] = ("email", "phone", "document"),
        is_institutional: bool = False,
        email: str | None = None,
    ) -> Client:
        client = await desk.register_client(
            name, email or f"{name}@desk.example.com", is_institutional=is_institutional
        )
        for verification_type in verification:
            client = await desk.compliance.verify_user(client.id, verification_type)
        return client

    return _make
