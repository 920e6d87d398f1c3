"""Durable deals, quotes, block trades, liquidity pools and settlement instructions.

The trade book only persists and transitions records; compliance and pricing
decisions are made by its callers.
"""

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel

from otc_desk.config.settings import settings
from otc_desk.data.models import (
    BLOCK_TRADE_TRANSITIONS,
    DEAL_TRANSITIONS,
    BlockTrade,
    BlockTradeStatus,
    Deal,
    DealStatus,
    ExecutionType,
    LiquidityPool,
    Quote,
    QuoteStatus,
    SettlementInstruction,
    TradeSide,
    Visibility,
    utcnow,
)
from otc_desk.data.repository import Store
from otc_desk.utils.exceptions import (
    ConcurrentModificationError,
    InsufficientBalanceError,
    InvalidStateTransitionError,
    UnsupportedRailError,
)
from otc_desk.utils.identifiers import (
    BLOCK_TRADE_PREFIX,
    DEAL_PREFIX,
    INSTRUCTION_PREFIX,
    POOL_PREFIX,
    QUOTE_PREFIX,
    new_id,
)
from otc_desk.utils.logging import DeskLogger
from otc_desk.utils.retry import retry_on_conflict

logger = logging.getLogger(__name__)
desk_logger = DeskLogger(__name__)

INSTRUCTION_METHODS = ("crypto_wallet", "bank_wire", "swift", "fedwire")


class DealFilters(BaseModel):
    """Deal query filters; unset fields are ignored."""

    client_id: Optional[str] = None
    status: Optional[DealStatus] = None
    side: Optional[TradeSide] = None
    visibility: Optional[Visibility] = None
    asset: Optional[str] = None
    min_amount: Optional[Decimal] = None
    max_amount: Optional[Decimal] = None

    def accepts(self, deal: Deal) -> bool:
        if self.asset is not None:
            asset = self.asset.upper()
            if asset not in (deal.base_currency, deal.quote_currency):
                return False
        if self.min_amount is not None and deal.amount < self.min_amount:
            return False
        if self.max_amount is not None and deal.amount > self.max_amount:
            return False
        return True


class TradeBook:
    """Lifecycle operations over the desk's trading records."""

    def __init__(self, store: Store) -> None:
        """Initialize trade book.

        Args:
            store: Persistence store
        """
        self.store = store

    # ------------------------------------------------------------------
    # Deals
    # ------------------------------------------------------------------

    async def create_deal(
        self,
        client_id: str,
        side: TradeSide,
        base_currency: str,
        quote_currency: str,
        amount: Decimal,
        price: Decimal,
        visibility: Visibility = Visibility.PUBLIC,
        valid_until: Optional[datetime] = None,
        quote_id: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> Deal:
        """Persist a new pending deal with ``total_value = amount * price``."""
        deal = Deal(
            id=new_id(DEAL_PREFIX),
            client_id=client_id,
            side=side,
            base_currency=base_currency.upper(),
            quote_currency=quote_currency.upper(),
            amount=amount,
            price=price,
            total_value=amount * price,
            visibility=visibility,
            valid_until=valid_until,
            quote_id=quote_id,
            notes=notes,
        )
        deal = await self.store.deals.create(deal)
        desk_logger.deal_created(deal.id, client_id, side.value, amount, deal.symbol, price)
        return deal

    async def get_deal(self, deal_id: str) -> Deal:
        return await self.store.deals.get_or_raise(deal_id)

    async def list_deals(self, filters: Optional[DealFilters] = None) -> list[Deal]:
        """Deals matching ``filters``, newest first."""
        filters = filters or DealFilters()
        return await self.store.deals.list(
            predicate=filters.accepts,
            client_id=filters.client_id,
            status=filters.status,
            side=filters.side,
            visibility=filters.visibility,
        )

    async def match_deal(self, deal_id: str, counterparty_id: str) -> Deal:
        """Attach a counterparty to a pending deal.

        Raises:
            InvalidStateTransitionError: The deal is not pending
        """
        return await self.update_deal_status(deal_id, DealStatus.MATCHED, counterparty_id)

    async def cancel_deal(self, deal_id: str) -> Deal:
        return await self.update_deal_status(deal_id, DealStatus.CANCELLED)

    @retry_on_conflict()
    async def update_deal_status(
        self,
        deal_id: str,
        status: DealStatus,
        counterparty_id: Optional[str] = None,
    ) -> Deal:
        """Move a deal along its lifecycle.

        Entering ``executing`` stamps ``executed_at``; entering ``completed``
        stamps ``settled_at``.

        Args:
            deal_id: Deal identifier
            status: Target status
            counterparty_id: Counterparty, required when matching

        Returns:
            Updated deal

        Raises:
            InvalidStateTransitionError: Target status not reachable
        """
        deal = await self.store.deals.get_or_raise(deal_id)
        if status not in DEAL_TRANSITIONS[deal.status]:
            raise InvalidStateTransitionError(
                f"Deal {deal_id} cannot move from {deal.status.value} to {status.value}",
                entity="deal",
                current_status=deal.status.value,
                target_status=status.value,
            )

        changes: dict = {"status": status}
        if status == DealStatus.MATCHED:
            if not counterparty_id:
                raise InvalidStateTransitionError(
                    f"Deal {deal_id} cannot be matched without a counterparty",
                    entity="deal",
                    current_status=deal.status.value,
                    target_status=status.value,
                )
            if counterparty_id == deal.client_id:
                raise InvalidStateTransitionError(
                    f"Deal {deal_id} cannot be matched with its own client",
                    entity="deal",
                    current_status=deal.status.value,
                    target_status=status.value,
                )
            changes["counterparty_id"] = counterparty_id
        if status == DealStatus.EXECUTING:
            changes["executed_at"] = utcnow()
        if status == DealStatus.COMPLETED:
            changes["settled_at"] = utcnow()

        updated = await self.store.deals.update(deal.model_copy(update=changes))
        logger.info("Deal %s: %s -> %s", deal_id, deal.status.value, status.value)
        return updated

    # ------------------------------------------------------------------
    # Quotes
    # ------------------------------------------------------------------

    async def create_quote(
        self,
        client_id: str,
        side: TradeSide,
        base_currency: str,
        quote_currency: str,
        requested_amount: Decimal,
        valid_for: Optional[int] = None,
        notes: Optional[str] = None,
    ) -> Quote:
        """Open a quote request expiring ``valid_for`` seconds from now."""
        valid_for = valid_for or settings.default_quote_validity_seconds
        now = utcnow()
        quote = Quote(
            id=new_id(QUOTE_PREFIX),
            client_id=client_id,
            side=side,
            base_currency=base_currency.upper(),
            quote_currency=quote_currency.upper(),
            requested_amount=requested_amount,
            valid_for=valid_for,
            expires_at=now + timedelta(seconds=valid_for),
            notes=notes,
            created_at=now,
            updated_at=now,
        )
        return await self.store.quotes.create(quote)

    async def get_quote(self, quote_id: str) -> Quote:
        return await self.store.quotes.get_or_raise(quote_id)

    async def list_quotes(self, client_id: Optional[str] = None) -> list[Quote]:
        return await self.store.quotes.list(client_id=client_id)

    @retry_on_conflict()
    async def update_quote_price(
        self,
        quote_id: str,
        price: Decimal,
        spread: Decimal,
        market_price: Optional[Decimal] = None,
    ) -> Quote:
        """Price a pending quote.

        Raises:
            InvalidStateTransitionError: Quote is not pending or has expired
        """
        quote = await self.store.quotes.get_or_raise(quote_id)
        self._require_quote_status(quote, QuoteStatus.PENDING, QuoteStatus.QUOTED)
        await self._reject_if_expired(quote, QuoteStatus.QUOTED)

        updated = await self.store.quotes.update(
            quote.model_copy(
                update={
                    "quoted_price": price,
                    "spread": spread,
                    "market_price": market_price,
                    "status": QuoteStatus.QUOTED,
                    "quoted_at": utcnow(),
                }
            )
        )
        desk_logger.quote_priced(quote_id, quote.symbol, price, spread, quote.valid_for)
        return updated

    @retry_on_conflict()
    async def accept_quote(self, quote_id: str) -> Quote:
        """Accept a priced quote that has not expired.

        An expired quote is marked ``expired`` before the error is raised.

        Raises:
            InvalidStateTransitionError: Quote is not quoted or has expired
        """
        quote = await self.store.quotes.get_or_raise(quote_id)
        self._require_quote_status(quote, QuoteStatus.QUOTED, QuoteStatus.ACCEPTED)
        await self._reject_if_expired(quote, QuoteStatus.ACCEPTED)

        updated = await self.store.quotes.update(
            quote.model_copy(update={"status": QuoteStatus.ACCEPTED})
        )
        logger.info("Quote %s accepted by %s", quote_id, quote.client_id)
        return updated

    @retry_on_conflict()
    async def cancel_quote(self, quote_id: str) -> Quote:
        quote = await self.store.quotes.get_or_raise(quote_id)
        if quote.status not in (QuoteStatus.PENDING, QuoteStatus.QUOTED):
            raise InvalidStateTransitionError(
                f"Quote {quote_id} cannot be cancelled from {quote.status.value}",
                entity="quote",
                current_status=quote.status.value,
                target_status=QuoteStatus.CANCELLED.value,
            )
        return await self.store.quotes.update(
            quote.model_copy(update={"status": QuoteStatus.CANCELLED})
        )

    async def expire_quotes(self, now: Optional[datetime] = None) -> list[Quote]:
        """Mark open quotes past their expiry as expired.

        Returns:
            Quotes that were expired by this pass
        """
        now = now or utcnow()
        stale = await self.store.quotes.list(
            predicate=lambda q: q.expires_at <= now,
            status=(QuoteStatus.PENDING, QuoteStatus.QUOTED),
        )
        expired = []
        for quote in stale:
            try:
                expired.append(
                    await self.store.quotes.update(
                        quote.model_copy(update={"status": QuoteStatus.EXPIRED})
                    )
                )
            except ConcurrentModificationError:
                logger.debug("Quote %s changed during expiry pass", quote.id)
        if expired:
            logger.info("Expired %d quotes", len(expired))
        return expired

    def _require_quote_status(self, quote: Quote, required: QuoteStatus, target: QuoteStatus) -> None:
        if quote.status != required:
            raise InvalidStateTransitionError(
                f"Quote {quote.id} is {quote.status.value}, expected {required.value}",
                entity="quote",
                current_status=quote.status.value,
                target_status=target.value,
            )

    async def _reject_if_expired(self, quote: Quote, target: QuoteStatus) -> None:
        if utcnow() < quote.expires_at:
            return
        await self.store.quotes.update(quote.model_copy(update={"status": QuoteStatus.EXPIRED}))
        logger.info("Quote %s expired at %s", quote.id, quote.expires_at.isoformat())
        raise InvalidStateTransitionError(
            f"Quote {quote.id} expired at {quote.expires_at.isoformat()}",
            entity="quote",
            current_status=QuoteStatus.EXPIRED.value,
            target_status=target.value,
        )

    # ------------------------------------------------------------------
    # Block trades
    # ------------------------------------------------------------------

    async def create_block_trade(
        self,
        buyer_id: str,
        seller_id: str,
        base_currency: str,
        quote_currency: str,
        amount: Decimal,
        price: Decimal,
        execution_type: ExecutionType = ExecutionType.IMMEDIATE,
        scheduled_for: Optional[datetime] = None,
        execution_period_minutes: Optional[int] = None,
    ) -> BlockTrade:
        """Record a pre-matched bilateral trade."""
        trade = BlockTrade(
            id=new_id(BLOCK_TRADE_PREFIX),
            buyer_id=buyer_id,
            seller_id=seller_id,
            base_currency=base_currency.upper(),
            quote_currency=quote_currency.upper(),
            amount=amount,
            price=price,
            total_value=amount * price,
            execution_type=execution_type,
            scheduled_for=scheduled_for,
            execution_period_minutes=execution_period_minutes,
        )
        trade = await self.store.block_trades.create(trade)
        logger.info(
            "Block trade %s created: %s %s @ %s (%s)",
            trade.id,
            amount,
            trade.symbol,
            price,
            execution_type.value,
        )
        return trade

    async def get_block_trade(self, trade_id: str) -> BlockTrade:
        return await self.store.block_trades.get_or_raise(trade_id)

    async def list_block_trades(self, user_id: Optional[str] = None) -> list[BlockTrade]:
        """Block trades where ``user_id`` is buyer or seller, newest first."""
        if user_id is None:
            return await self.store.block_trades.list()
        return await self.store.block_trades.list(
            predicate=lambda t: user_id in (t.buyer_id, t.seller_id)
        )

    async def execute_block_trade(self, trade_id: str) -> BlockTrade:
        return await self.update_block_trade_status(trade_id, BlockTradeStatus.EXECUTING)

    async def complete_block_trade(self, trade_id: str) -> BlockTrade:
        return await self.update_block_trade_status(trade_id, BlockTradeStatus.COMPLETED)

    async def fail_block_trade(self, trade_id: str) -> BlockTrade:
        return await self.update_block_trade_status(trade_id, BlockTradeStatus.FAILED)

    @retry_on_conflict()
    async def update_block_trade_status(self, trade_id: str, status: BlockTradeStatus) -> BlockTrade:
        trade = await self.store.block_trades.get_or_raise(trade_id)
        if status not in BLOCK_TRADE_TRANSITIONS[trade.status]:
            raise InvalidStateTransitionError(
                f"Block trade {trade_id} cannot move from {trade.status.value} to {status.value}",
                entity="block_trade",
                current_status=trade.status.value,
                target_status=status.value,
            )

        changes: dict = {"status": status}
        if status == BlockTradeStatus.EXECUTING:
            changes["executed_at"] = utcnow()
        if status == BlockTradeStatus.COMPLETED:
            changes["settled_at"] = utcnow()
        updated = await self.store.block_trades.update(trade.model_copy(update=changes))
        logger.info("Block trade %s: %s -> %s", trade_id, trade.status.value, status.value)
        return updated

    # ------------------------------------------------------------------
    # Liquidity pools
    # ------------------------------------------------------------------

    async def create_liquidity_pool(
        self,
        provider_id: str,
        base_currency: str,
        quote_currency: str,
        base_amount: Decimal,
        quote_amount: Decimal,
        bid_spread: Decimal,
        ask_spread: Decimal,
        min_trade_size: Decimal,
        max_trade_size: Decimal,
    ) -> LiquidityPool:
        pool = LiquidityPool(
            id=new_id(POOL_PREFIX),
            provider_id=provider_id,
            base_currency=base_currency.upper(),
            quote_currency=quote_currency.upper(),
            base_amount=base_amount,
            quote_amount=quote_amount,
            bid_spread=bid_spread,
            ask_spread=ask_spread,
            min_trade_size=min_trade_size,
            max_trade_size=max_trade_size,
        )
        pool = await self.store.liquidity_pools.create(pool)
        logger.info("Liquidity pool %s created by %s for %s/%s", pool.id, provider_id,
                    pool.base_currency, pool.quote_currency)
        return pool

    async def list_liquidity_pools(self, currency: Optional[str] = None) -> list[LiquidityPool]:
        """Active pools, optionally touching ``currency``, by 24h volume descending."""
        code = currency.upper() if currency else None
        pools = await self.store.liquidity_pools.list(
            predicate=lambda p: code is None or code in (p.base_currency, p.quote_currency),
            is_active=True,
        )
        pools.sort(key=lambda p: p.volume_24h, reverse=True)
        return pools

    @retry_on_conflict()
    async def record_pool_trade(self, pool_id: str, amount: Decimal, notional: Decimal) -> LiquidityPool:
        """Draw ``amount`` of base inventory from a pool.

        Args:
            pool_id: Pool identifier
            amount: Trade size in base currency
            notional: Trade value in quote currency, added to 24h volume

        Returns:
            Updated pool

        Raises:
            InvalidStateTransitionError: Pool is inactive
            InsufficientBalanceError: Size outside pool limits or inventory exhausted
        """
        pool = await self.store.liquidity_pools.get_or_raise(pool_id)
        if not pool.is_active:
            raise InvalidStateTransitionError(
                f"Liquidity pool {pool_id} is inactive",
                entity="liquidity_pool",
                current_status="inactive",
                target_status="trade",
            )
        if amount < pool.min_trade_size or amount > pool.max_trade_size:
            raise InsufficientBalanceError(
                f"Trade size {amount} outside pool limits "
                f"[{pool.min_trade_size}, {pool.max_trade_size}]",
                currency=pool.base_currency,
                required_balance=amount,
                available_balance=pool.max_trade_size,
            )

        remaining = pool.base_amount * (1 - pool.utilization)
        if pool.base_amount == 0 or amount > remaining:
            raise InsufficientBalanceError(
                f"Pool {pool_id} has {remaining} {pool.base_currency} left",
                currency=pool.base_currency,
                required_balance=amount,
                available_balance=remaining,
            )

        return await self.store.liquidity_pools.update(
            pool.model_copy(
                update={
                    "utilization": pool.utilization + amount / pool.base_amount,
                    "volume_24h": pool.volume_24h + notional,
                }
            )
        )

    @retry_on_conflict()
    async def deactivate_pool(self, pool_id: str) -> LiquidityPool:
        pool = await self.store.liquidity_pools.get_or_raise(pool_id)
        return await self.store.liquidity_pools.update(pool.model_copy(update={"is_active": False}))

    # ------------------------------------------------------------------
    # Settlement instructions
    # ------------------------------------------------------------------

    async def add_settlement_instruction(
        self,
        client_id: str,
        currency: str,
        method: str,
        is_default: bool = False,
        **details: Optional[str],
    ) -> SettlementInstruction:
        """Register a payout rail.

        Args:
            client_id: Owning client
            currency: Currency paid over this rail
            method: One of crypto_wallet, bank_wire, swift, fedwire
            is_default: Make this the default for the client and currency
            **details: Bank or wallet fields

        Raises:
            UnsupportedRailError: Unknown method
        """
        if method not in INSTRUCTION_METHODS:
            raise UnsupportedRailError(f"Unsupported settlement method: {method}", method=method)

        instruction = await self.store.instructions.create(
            SettlementInstruction(
                id=new_id(INSTRUCTION_PREFIX),
                client_id=client_id,
                currency=currency.upper(),
                method=method,
                **details,
            )
        )
        if is_default:
            instruction = await self.set_default_instruction(instruction.id)
        return instruction

    async def get_instruction(self, instruction_id: str) -> SettlementInstruction:
        return await self.store.instructions.get_or_raise(instruction_id)

    async def list_instructions(
        self,
        client_id: str,
        currency: Optional[str] = None,
    ) -> list[SettlementInstruction]:
        """Client instructions, default first then newest first."""
        instructions = await self.store.instructions.list(
            client_id=client_id,
            currency=currency.upper() if currency else None,
        )
        # stable sort keeps newest-first within each group
        instructions.sort(key=lambda i: not i.is_default)
        return instructions

    @retry_on_conflict()
    async def verify_instruction(self, instruction_id: str) -> SettlementInstruction:
        instruction = await self.store.instructions.get_or_raise(instruction_id)
        return await self.store.instructions.update(
            instruction.model_copy(update={"is_verified": True})
        )

    async def set_default_instruction(self, instruction_id: str) -> SettlementInstruction:
        """Make an instruction the only default for its client and currency."""
        async with self.store.transaction():
            instruction = await self.store.instructions.get_or_raise(instruction_id)
            others = await self.store.instructions.list(
                client_id=instruction.client_id,
                currency=instruction.currency,
                is_default=True,
            )
            for other in others:
                if other.id != instruction_id:
                    await self.store.instructions.update(other.model_copy(update={"is_default": False}))
            if instruction.is_default:
                return instruction
            return await self.store.instructions.update(
                instruction.model_copy(update={"is_default": True})
            )
