"""Desk facade wiring pricing, compliance, the trade book and settlement."""

import logging
from decimal import Decimal
from typing import Optional

from otc_desk.compliance.gate import ComplianceGate
from otc_desk.config.settings import settings
from otc_desk.credit.ledger import CreditLedger
from otc_desk.custody.policy import CustodyPolicy
from otc_desk.data.database import init_database
from otc_desk.data.models import (
    Client,
    Deal,
    PricingTier,
    Quote,
    QuoteStatus,
    Settlement,
    SettlementMethod,
    SettlementPriority,
    TransactionType,
    TradeSide,
    Visibility,
    utcnow,
)
from otc_desk.data.repository import Store
from otc_desk.market.price_feed import CcxtPriceFeed, PriceFeed
from otc_desk.market.rates import UsdConverter, usd_converter
from otc_desk.pricing.engine import PricingEngine, PricingRequest, PricingResult, SizeClass
from otc_desk.pricing.execution import ExecutionPlan, ExecutionPlanner, ExecutionStyle
from otc_desk.settlement.orchestrator import SettlementOrchestrator
from otc_desk.settlement.rails import CcxtCryptoRail, RailGateway, RailRouter, SandboxRail
from otc_desk.trading.trade_book import TradeBook
from otc_desk.utils.identifiers import CLIENT_PREFIX, new_id

logger = logging.getLogger(__name__)


class OTCDesk:
    """Request/response operations of the desk.

    Quote flow: compliance check, price, persist quote, accept, open deal.
    Deal flow: create, match, settle.
    """

    def __init__(
        self,
        store: Store,
        price_feed: PriceFeed,
        rails: Optional[RailRouter] = None,
        converter: Optional[UsdConverter] = None,
        completion_delay: Optional[float] = None,
    ) -> None:
        """Initialize desk.

        Args:
            store: Persistence store
            price_feed: Market data source
            rails: Rail router (sandbox rails if omitted)
            converter: USD conversion table
            completion_delay: Seconds between dual confirmation and completion
        """
        self.store = store
        self.price_feed = price_feed
        self.converter = converter or usd_converter
        self.rails = rails or RailRouter.sandbox()

        self.trade_book = TradeBook(store)
        self.pricing = PricingEngine(price_feed)
        self.execution = ExecutionPlanner(price_feed)
        self.credit = CreditLedger(store, self.converter)
        self.compliance = ComplianceGate(store, self.converter)
        self.custody = CustodyPolicy(store, self.compliance, self.rails, self.converter)
        self.settlement = SettlementOrchestrator(
            store,
            self.trade_book,
            self.credit,
            self.compliance,
            self.custody,
            self.rails,
            completion_delay=completion_delay,
        )

    # Clients

    async def register_client(
        self,
        name: str,
        email: Optional[str] = None,
        is_institutional: bool = False,
        pricing_tier: Optional[PricingTier] = None,
    ) -> Client:
        if pricing_tier is None:
            pricing_tier = PricingTier.INSTITUTIONAL if is_institutional else PricingTier.RETAIL
        client = Client(
            id=new_id(CLIENT_PREFIX),
            name=name,
            email=email,
            is_institutional=is_institutional,
            pricing_tier=pricing_tier,
        )
        client = await self.store.clients.create(client)
        logger.info("Registered client %s (%s)", client.id, pricing_tier.value)
        return client

    async def get_client(self, client_id: str) -> Client:
        return await self.store.clients.get_or_raise(client_id)

    # Pricing

    async def price(
        self,
        client_id: str,
        side: TradeSide,
        base_currency: str,
        quote_currency: str,
        amount: Decimal,
        trade_size_class: Optional[SizeClass] = None,
    ) -> PricingResult:
        """Indicative price for a client at their pricing tier."""
        client = await self.get_client(client_id)
        return await self.pricing.get_otc_price(
            PricingRequest(
                base_currency=base_currency,
                quote_currency=quote_currency,
                amount=amount,
                side=side,
                client_tier=client.pricing_tier,
                trade_size_class=trade_size_class,
            )
        )

    async def execution_strategy(
        self,
        base_currency: str,
        quote_currency: str,
        amount: Decimal,
        side: TradeSide,
        style: ExecutionStyle = ExecutionStyle.TWAP,
    ) -> ExecutionPlan:
        return await self.execution.calculate_optimal_execution(
            base_currency, quote_currency, amount, side, style
        )

    # Quotes

    async def request_quote(
        self,
        client_id: str,
        side: TradeSide,
        base_currency: str,
        quote_currency: str,
        amount: Decimal,
        valid_for: Optional[int] = None,
        trade_size_class: Optional[SizeClass] = None,
    ) -> Quote:
        """Screen, price and persist a quote.

        The quote lives for ``valid_for`` seconds, or the pricing validity
        window when not given.

        Raises:
            ComplianceRejectedError: Client may not trade this size
            NoMarketDataError: Pair is not priced
            ValueError: Amount outside the tier's quotable range
        """
        await self.compliance.authorize(client_id, TransactionType.TRADE, amount, base_currency)
        pricing = await self.price(client_id, side, base_currency, quote_currency, amount, trade_size_class)
        if not pricing.min_amount <= amount <= pricing.max_amount:
            raise ValueError(
                f"Amount {amount} {base_currency.upper()} outside quotable range "
                f"[{pricing.min_amount}, {pricing.max_amount}]"
            )

        quote = await self.trade_book.create_quote(
            client_id,
            side,
            base_currency,
            quote_currency,
            amount,
            valid_for=valid_for or pricing.validity_seconds,
        )
        return await self.trade_book.update_quote_price(
            quote.id, pricing.price, pricing.spread, pricing.market_price
        )

    async def price_quote(self, quote_id: str) -> Quote:
        """Price a pending quote from current market data."""
        quote = await self.trade_book.get_quote(quote_id)
        pricing = await self.price(
            quote.client_id, quote.side, quote.base_currency, quote.quote_currency, quote.requested_amount
        )
        return await self.trade_book.update_quote_price(
            quote_id, pricing.price, pricing.spread, pricing.market_price
        )

    async def accept_quote(self, quote_id: str) -> Deal:
        """Accept a live quote and open a private deal at the quoted price.

        The quote is accepted in the same transaction that opens the deal, so
        a failed deal leaves the quote quoted.

        Raises:
            InvalidStateTransitionError: Quote not quoted or expired
        """
        current = await self.trade_book.get_quote(quote_id)
        if current.status == QuoteStatus.QUOTED and current.expires_at <= utcnow():
            # marks the quote expired, then raises
            await self.trade_book.accept_quote(quote_id)

        async with self.store.transaction():
            quote = await self.trade_book.accept_quote(quote_id)
            deal = await self.trade_book.create_deal(
                quote.client_id,
                quote.side,
                quote.base_currency,
                quote.quote_currency,
                quote.requested_amount,
                quote.quoted_price,
                visibility=Visibility.PRIVATE,
                quote_id=quote.id,
            )
            await self.compliance.record_transaction(
                quote.client_id, TransactionType.TRADE, deal.amount, deal.base_currency, reference=deal.id
            )
        return deal

    # Deals

    async def create_deal(
        self,
        client_id: str,
        side: TradeSide,
        base_currency: str,
        quote_currency: str,
        amount: Decimal,
        price: Decimal,
        visibility: Visibility = Visibility.PUBLIC,
        notes: Optional[str] = None,
    ) -> Deal:
        """Post a deal after the client clears compliance for its size."""
        await self.compliance.authorize(client_id, TransactionType.TRADE, amount, base_currency)
        async with self.store.transaction():
            deal = await self.trade_book.create_deal(
                client_id, side, base_currency, quote_currency, amount, price, visibility=visibility, notes=notes
            )
            await self.compliance.record_transaction(
                client_id, TransactionType.TRADE, amount, base_currency, reference=deal.id
            )
        return deal

    async def match_deal(self, deal_id: str, counterparty_id: str) -> Deal:
        """Take the other side of a pending deal."""
        deal = await self.trade_book.get_deal(deal_id)
        await self.compliance.authorize(counterparty_id, TransactionType.TRADE, deal.amount, deal.base_currency)
        async with self.store.transaction():
            matched = await self.trade_book.match_deal(deal_id, counterparty_id)
            await self.compliance.record_transaction(
                counterparty_id, TransactionType.TRADE, deal.amount, deal.base_currency, reference=deal_id
            )
        return matched

    async def settle_deal(
        self,
        deal_id: str,
        buyer_instruction_id: str,
        seller_instruction_id: str,
        priority: str = SettlementPriority.STANDARD.value,
        use_credit: bool = False,
    ) -> Settlement:
        """Initiate a deal's settlement and submit both sides to their rails."""
        settlement = await self.settlement.initiate_deal_settlement(
            deal_id, buyer_instruction_id, seller_instruction_id, priority, use_credit
        )
        return await self.settlement.process_settlement(settlement.id)

    async def settle_block_trade(
        self,
        trade_id: str,
        buyer_instruction_id: str,
        seller_instruction_id: str,
        priority: str = SettlementPriority.STANDARD.value,
        use_credit: bool = False,
    ) -> Settlement:
        settlement = await self.settlement.initiate_block_trade_settlement(
            trade_id, buyer_instruction_id, seller_instruction_id, priority, use_credit
        )
        return await self.settlement.process_settlement(settlement.id)

    async def shutdown(self) -> None:
        await self.settlement.shutdown()


def build_rails() -> RailRouter:
    """Sandbox rails, with the exchange-backed crypto rail when enabled."""
    if not settings.crypto_rail_live:
        return RailRouter.sandbox()
    gateways: dict[SettlementMethod, RailGateway] = {method: SandboxRail(method) for method in SettlementMethod}
    gateways[SettlementMethod.CRYPTO] = CcxtCryptoRail()
    return RailRouter(gateways)


async def create_desk(price_feed: Optional[PriceFeed] = None) -> OTCDesk:
    """Open the configured store and assemble a desk on top of it."""
    store = await init_database()
    desk = OTCDesk(store, price_feed or CcxtPriceFeed(), build_rails())
    logger.info("Desk ready on %s store", type(store).__name__)
    return desk
