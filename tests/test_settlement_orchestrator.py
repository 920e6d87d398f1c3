"""Tests for settlement fees and the settlement orchestrator."""

from datetime import timedelta
from decimal import Decimal

import pytest

from otc_desk.data.models import (
    BlockTradeStatus,
    DealStatus,
    LegStatus,
    SettlementMethod,
    SettlementPriority,
    SettlementSide,
    SettlementStatus,
    TradeSide,
    utcnow,
)
from otc_desk.engine.desk import OTCDesk
from otc_desk.settlement.fees import calculate_fees, resolve_method, side_terms
from otc_desk.settlement.orchestrator import leg_reference
from otc_desk.settlement.rails import RailRouter
from otc_desk.utils.exceptions import (
    AddressNotWhitelistedError,
    InsufficientCreditError,
    InvalidStateTransitionError,
    RailRejectedError,
    UnsupportedRailError,
)
from otc_desk.utils.retry import error_aggregator

BTC_ADDRESS = "bc1qar0srrr7xfkvy5l643lydnw9re59gtzzwf5mdq"


class TestFees:
    """Test cases for fee and timing tables."""

    def test_wire_and_crypto_standard(self) -> None:
        """Test fees for a wire buyer and a crypto seller."""
        notional = Decimal("1000000")
        buyer = side_terms(SettlementMethod.WIRE, SettlementPriority.STANDARD, notional)
        seller = side_terms(SettlementMethod.CRYPTO, SettlementPriority.STANDARD, notional)

        fees = calculate_fees(buyer, seller, SettlementPriority.STANDARD)

        assert buyer.fee == Decimal("25")
        assert seller.fee == Decimal("1000")
        assert fees.settlement_fee == Decimal("1025")
        assert fees.network_fee == Decimal("0.0005")
        assert fees.processing_fee == Decimal("25")
        assert fees.total_fees == Decimal("1050.0005")
        assert max(buyer.minutes, seller.minutes) == 1440

    def test_crypto_both_sides_urgent(self) -> None:
        """Test crypto fees scale with notional and both sides pay network fees."""
        notional = Decimal("100000")
        terms = side_terms(SettlementMethod.CRYPTO, SettlementPriority.URGENT, notional)

        fees = calculate_fees(terms, terms, SettlementPriority.URGENT)

        assert fees.settlement_fee == Decimal("400")
        assert fees.network_fee == Decimal("0.0010")
        assert fees.total_fees == Decimal("450.0010")
        assert terms.minutes == 15

    def test_fiat_fees_are_flat(self) -> None:
        """Test fiat fees do not depend on notional."""
        small = side_terms(SettlementMethod.SWIFT, SettlementPriority.SAME_DAY, Decimal("10"))
        large = side_terms(SettlementMethod.SWIFT, SettlementPriority.SAME_DAY, Decimal("10000000"))

        assert small.fee == large.fee == Decimal("150")
        assert small.minutes == 480
        assert side_terms(SettlementMethod.FEDWIRE, SettlementPriority.URGENT, Decimal("1")).minutes == 120

    def test_resolve_method(self) -> None:
        """Test instruction types map to rails."""
        assert resolve_method("bank_wire") == SettlementMethod.WIRE
        assert resolve_method("crypto_wallet") == SettlementMethod.CRYPTO
        with pytest.raises(UnsupportedRailError):
            resolve_method("cheque")


class TestSettlementOrchestrator:
    """Test cases for SettlementOrchestrator."""

    async def _matched_deal(
        self,
        desk: OTCDesk,
        make_client,
        amount: str = "25",
        price: str = "40000",
    ):
        buyer = await make_client("buyer")
        seller = await make_client("seller")
        deal = await desk.create_deal(buyer.id, TradeSide.BUY, "BTC", "USD", Decimal(amount), Decimal(price))
        deal = await desk.match_deal(deal.id, seller.id)

        buyer_instruction = await desk.trade_book.add_settlement_instruction(
            buyer.id, "USD", "bank_wire", is_default=True, bank_name="First Bank", account_number="000123456789"
        )
        await desk.custody.whitelist_address(seller.id, "BTC", BTC_ADDRESS)
        seller_instruction = await desk.trade_book.add_settlement_instruction(
            seller.id, "BTC", "crypto_wallet", wallet_address=BTC_ADDRESS
        )
        return deal, buyer, seller, buyer_instruction, seller_instruction

    @pytest.mark.asyncio
    async def test_initiate_wire_against_crypto(self, desk: OTCDesk, make_client) -> None:
        """Test fees and expected completion for a wire buyer and crypto seller."""
        deal, buyer, seller, buyer_instr, seller_instr = await self._matched_deal(desk, make_client)
        assert deal.total_value == Decimal("1000000")

        settlement = await desk.settlement.initiate_deal_settlement(deal.id, buyer_instr.id, seller_instr.id)

        assert settlement.id.startswith("SET-")
        assert settlement.status == SettlementStatus.PENDING
        assert settlement.fees.settlement_fee == Decimal("1025")
        assert settlement.fees.network_fee == Decimal("0.0005")
        assert settlement.fees.processing_fee == Decimal("25")
        assert settlement.fees.total_fees == Decimal("1050.0005")
        assert settlement.timeline.expected_completion - settlement.timeline.initiated == timedelta(minutes=1440)

        assert settlement.buyer.party_id == buyer.id
        assert settlement.buyer.method == SettlementMethod.WIRE
        assert settlement.buyer.amount == Decimal("1000000")
        assert settlement.buyer.currency == "USD"
        assert settlement.buyer.reference == f"BUY-{settlement.id}"
        assert settlement.seller.party_id == seller.id
        assert settlement.seller.amount == Decimal("25")
        assert settlement.seller.currency == "BTC"
        assert settlement.seller.reference == leg_reference(settlement.id, SettlementSide.SELLER)

        assert (await desk.trade_book.get_deal(deal.id)).status == DealStatus.EXECUTING

    @pytest.mark.asyncio
    async def test_sell_deal_swaps_parties(self, desk: OTCDesk, make_client) -> None:
        """Test the deal owner is the seller on a sell deal."""
        owner = await make_client("owner")
        taker = await make_client("taker")
        deal = await desk.create_deal(owner.id, TradeSide.SELL, "BTC", "USD", Decimal("1"), Decimal("45000"))
        await desk.match_deal(deal.id, taker.id)
        taker_instr = await desk.trade_book.add_settlement_instruction(
            taker.id, "USD", "fedwire", account_number="987654321"
        )
        await desk.custody.whitelist_address(owner.id, "BTC", BTC_ADDRESS)
        owner_instr = await desk.trade_book.add_settlement_instruction(
            owner.id, "BTC", "crypto_wallet", wallet_address=BTC_ADDRESS
        )

        settlement = await desk.settlement.initiate_deal_settlement(
            deal.id, taker_instr.id, owner_instr.id, priority="same_day"
        )

        assert settlement.buyer.party_id == taker.id
        assert settlement.seller.party_id == owner.id
        assert settlement.priority == SettlementPriority.SAME_DAY
        assert settlement.timeline.expected_completion - settlement.timeline.initiated == timedelta(minutes=60)

    @pytest.mark.asyncio
    async def test_full_lifecycle(self, desk: OTCDesk, make_client, rails: RailRouter) -> None:
        """Test processing, dual confirmation and completion."""
        deal, _, _, buyer_instr, seller_instr = await self._matched_deal(desk, make_client)

        settlement = await desk.settle_deal(deal.id, buyer_instr.id, seller_instr.id)

        assert settlement.status == SettlementStatus.PROCESSING
        assert settlement.buyer.status == LegStatus.INITIATED
        assert settlement.seller.status == LegStatus.INITIATED
        assert settlement.buyer.rail_reference is not None
        assert settlement.buyer.reference in rails.gateways[SettlementMethod.WIRE].transfers
        assert settlement.seller.reference in rails.gateways[SettlementMethod.CRYPTO].transfers

        after_buyer = await desk.settlement.confirm_settlement(settlement.id, SettlementSide.BUYER)
        assert after_buyer.status == SettlementStatus.PROCESSING
        assert after_buyer.buyer.status == LegStatus.CONFIRMED

        confirming = await desk.settlement.confirm_settlement(settlement.id, SettlementSide.SELLER)
        assert confirming.status == SettlementStatus.CONFIRMING

        await desk.settlement.wait_for_completions()

        completed = await desk.settlement.get_settlement(settlement.id)
        assert completed.status == SettlementStatus.COMPLETED
        assert completed.buyer.status == LegStatus.COMPLETED
        assert completed.seller.status == LegStatus.COMPLETED
        assert completed.timeline.actual_completion is not None
        assert desk.settlement.pending_completions == 0

        settled_deal = await desk.trade_book.get_deal(deal.id)
        assert settled_deal.status == DealStatus.COMPLETED
        assert settled_deal.settled_at is not None

    @pytest.mark.asyncio
    async def test_confirm_is_idempotent(self, desk: OTCDesk, make_client) -> None:
        """Test re-confirming a side does not write or transition."""
        deal, _, _, buyer_instr, seller_instr = await self._matched_deal(desk, make_client)
        settlement = await desk.settle_deal(deal.id, buyer_instr.id, seller_instr.id)

        first = await desk.settlement.confirm_settlement(settlement.id, SettlementSide.BUYER)
        second = await desk.settlement.confirm_settlement(settlement.id, SettlementSide.BUYER)

        assert second.version == first.version
        assert second.status == SettlementStatus.PROCESSING
        assert desk.settlement.pending_completions == 0

    @pytest.mark.asyncio
    async def test_confirm_before_processing(self, desk: OTCDesk, make_client) -> None:
        """Test a side cannot be confirmed before it is submitted."""
        deal, _, _, buyer_instr, seller_instr = await self._matched_deal(desk, make_client)
        settlement = await desk.settlement.initiate_deal_settlement(deal.id, buyer_instr.id, seller_instr.id)

        with pytest.raises(InvalidStateTransitionError):
            await desk.settlement.confirm_settlement(settlement.id, SettlementSide.BUYER)

    @pytest.mark.asyncio
    async def test_process_is_resumable(self, desk: OTCDesk, make_client, rails: RailRouter) -> None:
        """Test a retryable rejection leaves the settlement open for a retry."""
        deal, _, _, buyer_instr, seller_instr = await self._matched_deal(desk, make_client)
        settlement = await desk.settlement.initiate_deal_settlement(deal.id, buyer_instr.id, seller_instr.id)
        crypto = rails.gateways[SettlementMethod.CRYPTO]
        wire = rails.gateways[SettlementMethod.WIRE]
        crypto.reject(settlement.seller.reference, retryable=True)

        with pytest.raises(RailRejectedError):
            await desk.settlement.process_settlement(settlement.id)

        partial = await desk.settlement.get_settlement(settlement.id)
        assert partial.status == SettlementStatus.PROCESSING
        assert partial.buyer.status == LegStatus.INITIATED
        assert partial.seller.status == LegStatus.PENDING
        assert error_aggregator.error_counts["RailRejectedError"] == 1

        resumed = await desk.settlement.process_settlement(settlement.id)

        assert resumed.seller.status == LegStatus.INITIATED
        assert wire.submissions == 1
        assert crypto.submissions == 1

    @pytest.mark.asyncio
    async def test_permanent_rejection_fails_settlement(
        self, desk: OTCDesk, make_client, rails: RailRouter
    ) -> None:
        """Test a non-retryable rejection fails the settlement; the deal stays executing."""
        deal, _, _, buyer_instr, seller_instr = await self._matched_deal(desk, make_client)
        settlement = await desk.settlement.initiate_deal_settlement(deal.id, buyer_instr.id, seller_instr.id)
        rails.gateways[SettlementMethod.WIRE].reject(settlement.buyer.reference, retryable=False)

        with pytest.raises(RailRejectedError):
            await desk.settlement.process_settlement(settlement.id)

        failed = await desk.settlement.get_settlement(settlement.id)
        assert failed.status == SettlementStatus.FAILED
        assert failed.failure_reason.startswith("buyer rail rejected")
        assert failed.timeline.failed_at is not None
        assert failed.seller.status == LegStatus.PENDING
        assert (await desk.trade_book.get_deal(deal.id)).status == DealStatus.EXECUTING

    @pytest.mark.asyncio
    async def test_initiate_requires_matched_deal(self, desk: OTCDesk, make_client) -> None:
        """Test pending deals and already-settling deals cannot be settled."""
        deal, _, _, buyer_instr, seller_instr = await self._matched_deal(desk, make_client)
        buyer = await make_client("lonely")
        pending = await desk.create_deal(buyer.id, TradeSide.BUY, "BTC", "USD", Decimal("1"), Decimal("45000"))

        with pytest.raises(InvalidStateTransitionError):
            await desk.settlement.initiate_deal_settlement(pending.id, buyer_instr.id, seller_instr.id)

        await desk.settlement.initiate_deal_settlement(deal.id, buyer_instr.id, seller_instr.id)
        with pytest.raises(InvalidStateTransitionError):
            await desk.settlement.initiate_deal_settlement(deal.id, buyer_instr.id, seller_instr.id)

        assert len(await desk.settlement.list_settlements()) == 1

    @pytest.mark.asyncio
    async def test_instruction_checks(self, desk: OTCDesk, make_client) -> None:
        """Test instructions must belong to the party and pay the right currency."""
        deal, buyer, _, buyer_instr, seller_instr = await self._matched_deal(desk, make_client)
        buyer_btc = await desk.trade_book.add_settlement_instruction(
            buyer.id, "BTC", "crypto_wallet", wallet_address=BTC_ADDRESS
        )

        with pytest.raises(UnsupportedRailError):
            await desk.settlement.initiate_deal_settlement(deal.id, seller_instr.id, seller_instr.id)
        with pytest.raises(UnsupportedRailError):
            await desk.settlement.initiate_deal_settlement(deal.id, buyer_btc.id, seller_instr.id)
        with pytest.raises(UnsupportedRailError):
            await desk.settlement.initiate_deal_settlement(
                deal.id, buyer_instr.id, seller_instr.id, priority="overnight"
            )

        assert (await desk.trade_book.get_deal(deal.id)).status == DealStatus.MATCHED

    @pytest.mark.asyncio
    async def test_crypto_payout_must_be_whitelisted(self, desk: OTCDesk, make_client) -> None:
        """Test crypto instructions require a whitelisted address."""
        deal, _, seller, buyer_instr, _ = await self._matched_deal(desk, make_client)
        other_address = "bc1qxy2kgdygjrsqtzq2n0yrf2493p83kkfjhx0wlh"
        unlisted = await desk.trade_book.add_settlement_instruction(
            seller.id, "BTC", "crypto_wallet", wallet_address=other_address
        )

        with pytest.raises(AddressNotWhitelistedError):
            await desk.settlement.initiate_deal_settlement(deal.id, buyer_instr.id, unlisted.id)

        assert await desk.settlement.list_settlements() == []
        assert (await desk.trade_book.get_deal(deal.id)).status == DealStatus.MATCHED

    @pytest.mark.asyncio
    async def test_overdue_settlements_fail(self, desk: OTCDesk, make_client) -> None:
        """Test the monitor fails settlements past expected completion plus grace."""
        deal, _, _, buyer_instr, seller_instr = await self._matched_deal(desk, make_client)
        settlement = await desk.settle_deal(deal.id, buyer_instr.id, seller_instr.id)
        expected = settlement.timeline.expected_completion

        assert await desk.settlement.fail_overdue_settlements(now=expected + timedelta(minutes=30)) == []

        failed = await desk.settlement.fail_overdue_settlements(now=expected + timedelta(minutes=61))

        assert [s.id for s in failed] == [settlement.id]
        assert failed[0].status == SettlementStatus.FAILED
        assert failed[0].failure_reason.startswith("timed out")

    @pytest.mark.asyncio
    async def test_fail_cancels_scheduled_completion(self, store, price_feed, rails, converter, make_client) -> None:
        """Test failing a confirming settlement cancels its completion."""
        desk = OTCDesk(store, price_feed, rails=rails, converter=converter, completion_delay=60)
        deal, _, _, buyer_instr, seller_instr = await self._matched_deal(desk, make_client)
        settlement = await desk.settle_deal(deal.id, buyer_instr.id, seller_instr.id)
        await desk.settlement.confirm_settlement(settlement.id, SettlementSide.BUYER)
        await desk.settlement.confirm_settlement(settlement.id, SettlementSide.SELLER)
        assert desk.settlement.pending_completions == 1

        failed = await desk.settlement.fail_settlement(settlement.id, "manual intervention")

        assert failed.status == SettlementStatus.FAILED
        assert desk.settlement.pending_completions == 0
        with pytest.raises(InvalidStateTransitionError):
            await desk.settlement.complete_settlement(settlement.id)
        await desk.shutdown()

    @pytest.mark.asyncio
    async def test_restart_completes_confirmed_settlement(
        self, store, price_feed, rails, converter, make_client
    ) -> None:
        """Test a confirmed settlement whose completion was lost is completed, not timed out."""
        desk = OTCDesk(store, price_feed, rails=rails, converter=converter, completion_delay=60)
        deal, _, _, buyer_instr, seller_instr = await self._matched_deal(desk, make_client)
        settlement = await desk.settle_deal(deal.id, buyer_instr.id, seller_instr.id)
        await desk.settlement.confirm_settlement(settlement.id, SettlementSide.BUYER)
        await desk.settlement.confirm_settlement(settlement.id, SettlementSide.SELLER)
        await desk.shutdown()

        restarted = OTCDesk(store, price_feed, rails=rails, converter=converter, completion_delay=60)
        assert await restarted.settlement.complete_orphaned_settlements() == []
        assert (await restarted.settlement.get_settlement(settlement.id)).status == SettlementStatus.CONFIRMING

        failed = await restarted.settlement.fail_overdue_settlements(now=utcnow() + timedelta(days=2))

        assert failed == []
        completed = await restarted.settlement.get_settlement(settlement.id)
        assert completed.status == SettlementStatus.COMPLETED
        assert completed.failure_reason is None
        assert (await restarted.trade_book.get_deal(deal.id)).status == DealStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_scheduled_completion_not_duplicated(
        self, store, price_feed, rails, converter, make_client
    ) -> None:
        """Test the monitor leaves completions this process has scheduled alone."""
        desk = OTCDesk(store, price_feed, rails=rails, converter=converter, completion_delay=60)
        deal, _, _, buyer_instr, seller_instr = await self._matched_deal(desk, make_client)
        settlement = await desk.settle_deal(deal.id, buyer_instr.id, seller_instr.id)
        await desk.settlement.confirm_settlement(settlement.id, SettlementSide.BUYER)
        await desk.settlement.confirm_settlement(settlement.id, SettlementSide.SELLER)

        later = utcnow() + timedelta(minutes=5)
        assert await desk.settlement.complete_orphaned_settlements(now=later) == []
        assert desk.settlement.pending_completions == 1
        await desk.shutdown()

    @pytest.mark.asyncio
    async def test_partially_confirmed_settlement_times_out(self, desk: OTCDesk, make_client) -> None:
        """Test a settlement with one confirmed side still fails when overdue."""
        deal, _, _, buyer_instr, seller_instr = await self._matched_deal(desk, make_client)
        settlement = await desk.settle_deal(deal.id, buyer_instr.id, seller_instr.id)
        await desk.settlement.confirm_settlement(settlement.id, SettlementSide.BUYER)
        expected = settlement.timeline.expected_completion

        failed = await desk.settlement.fail_overdue_settlements(now=expected + timedelta(minutes=61))

        assert [s.id for s in failed] == [settlement.id]


class TestBlockTradeSettlement:
    """Test cases for settling block trades, with and without credit."""

    async def _block_trade(self, desk: OTCDesk, make_client, amount: str = "10"):
        buyer = await make_client("fund")
        seller = await make_client("miner")
        trade = await desk.trade_book.create_block_trade(
            buyer.id, seller.id, "BTC", "USD", Decimal(amount), Decimal("45000")
        )
        buyer_instr = await desk.trade_book.add_settlement_instruction(
            buyer.id, "USD", "swift", swift_code="DEUTDEFF", iban="DE89370400440532013000"
        )
        await desk.custody.whitelist_address(seller.id, "BTC", BTC_ADDRESS)
        seller_instr = await desk.trade_book.add_settlement_instruction(
            seller.id, "BTC", "crypto_wallet", wallet_address=BTC_ADDRESS
        )
        return trade, buyer, buyer_instr, seller_instr

    @pytest.mark.asyncio
    async def test_block_trade_completes(self, desk: OTCDesk, make_client) -> None:
        """Test block trades move to executing then completed with their settlement."""
        trade, _, buyer_instr, seller_instr = await self._block_trade(desk, make_client)

        settlement = await desk.settle_block_trade(trade.id, buyer_instr.id, seller_instr.id, priority="urgent")
        assert (await desk.trade_book.get_block_trade(trade.id)).status == BlockTradeStatus.EXECUTING
        assert settlement.timeline.expected_completion - settlement.timeline.initiated == timedelta(minutes=1440)

        await desk.settlement.confirm_settlement(settlement.id, SettlementSide.SELLER)
        await desk.settlement.confirm_settlement(settlement.id, SettlementSide.BUYER)
        await desk.settlement.wait_for_completions()

        assert (await desk.trade_book.get_block_trade(trade.id)).status == BlockTradeStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_credit_drawn_and_released_on_failure(self, desk: OTCDesk, make_client) -> None:
        """Test the buyer's credit line is drawn at initiation and restored on failure."""
        trade, buyer, buyer_instr, seller_instr = await self._block_trade(desk, make_client)
        line = await desk.credit.create_credit_line(buyer.id, "USD", Decimal("1000000"))

        settlement = await desk.settlement.initiate_block_trade_settlement(
            trade.id, buyer_instr.id, seller_instr.id, use_credit=True
        )

        assert settlement.credit_line_id == line.id
        assert settlement.credit_drawn == Decimal("450000")
        assert (await desk.credit.get_credit_line(line.id)).available_credit == Decimal("550000")

        await desk.settlement.fail_settlement(settlement.id, "counterparty default")

        assert (await desk.credit.get_credit_line(line.id)).available_credit == Decimal("1000000")
        assert (await desk.trade_book.get_block_trade(trade.id)).status == BlockTradeStatus.FAILED

    @pytest.mark.asyncio
    async def test_credit_released_on_completion(self, desk: OTCDesk, make_client) -> None:
        """Test completion returns drawn credit."""
        trade, buyer, buyer_instr, seller_instr = await self._block_trade(desk, make_client)
        line = await desk.credit.create_credit_line(buyer.id, "USD", Decimal("500000"))

        settlement = await desk.settle_block_trade(trade.id, buyer_instr.id, seller_instr.id, use_credit=True)
        await desk.settlement.confirm_settlement(settlement.id, SettlementSide.BUYER)
        await desk.settlement.confirm_settlement(settlement.id, SettlementSide.SELLER)
        await desk.settlement.wait_for_completions()

        assert (await desk.credit.get_credit_line(line.id)).available_credit == Decimal("500000")

    @pytest.mark.asyncio
    async def test_insufficient_credit_rolls_back(self, desk: OTCDesk, make_client) -> None:
        """Test a failed credit draw creates no settlement and leaves the trade pending."""
        trade, buyer, buyer_instr, seller_instr = await self._block_trade(desk, make_client)
        await desk.credit.create_credit_line(buyer.id, "USD", Decimal("100000"))

        with pytest.raises(InsufficientCreditError):
            await desk.settlement.initiate_block_trade_settlement(
                trade.id, buyer_instr.id, seller_instr.id, use_credit=True
            )

        assert await desk.settlement.list_settlements() == []
        assert (await desk.trade_book.get_block_trade(trade.id)).status == BlockTradeStatus.PENDING

    @pytest.mark.asyncio
    async def test_list_by_party(self, desk: OTCDesk, make_client) -> None:
        """Test settlements can be listed by either party."""
        trade, buyer, buyer_instr, seller_instr = await self._block_trade(desk, make_client)
        await desk.settlement.initiate_block_trade_settlement(trade.id, buyer_instr.id, seller_instr.id)

        assert len(await desk.settlement.list_settlements(party_id=buyer.id)) == 1
        assert await desk.settlement.list_settlements(party_id="CLT-NOBODY") == []
        assert len(await desk.settlement.list_settlements(status=SettlementStatus.PENDING)) == 1
