"""Two-sided settlement of matched deals and block trades.

Lifecycle: pending -> processing -> confirming -> completed, with failed
reachable from any non-terminal state. Each side's transfer carries a
deterministic reference (``BUY-<id>`` / ``SEL-<id>``) so resubmitting a side
never moves funds twice.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Optional

from otc_desk.compliance.gate import ComplianceGate
from otc_desk.config.settings import settings
from otc_desk.credit.ledger import CreditLedger
from otc_desk.custody.policy import CustodyPolicy
from otc_desk.data.models import (
    SETTLEMENT_TRANSITIONS,
    BlockTradeStatus,
    DealStatus,
    LegStatus,
    Settlement,
    SettlementInstruction,
    SettlementLeg,
    SettlementMethod,
    SettlementPriority,
    SettlementSide,
    SettlementStatus,
    SettlementTimeline,
    TradeSide,
    utcnow,
)
from otc_desk.data.repository import Store
from otc_desk.settlement.fees import calculate_fees, resolve_method, resolve_priority, side_terms
from otc_desk.settlement.rails import RailRouter
from otc_desk.trading.trade_book import TradeBook
from otc_desk.utils.exceptions import (
    ConcurrentModificationError,
    InvalidStateTransitionError,
    OTCDeskError,
    RailRejectedError,
    UnsupportedRailError,
)
from otc_desk.utils.identifiers import SETTLEMENT_PREFIX, new_id
from otc_desk.utils.logging import DeskLogger
from otc_desk.utils.retry import error_aggregator, retry_on_conflict

logger = logging.getLogger(__name__)
desk_logger = DeskLogger(__name__)

SOURCE_DEAL = "deal"
SOURCE_BLOCK_TRADE = "block_trade"

# confirming settlements have both sides confirmed and are completed, never timed out
UNCONFIRMED_STATUSES = (SettlementStatus.PENDING, SettlementStatus.PROCESSING)


def leg_reference(settlement_id: str, side: SettlementSide) -> str:
    prefix = "BUY" if side == SettlementSide.BUYER else "SEL"
    return f"{prefix}-{settlement_id}"


def _destination(instruction: SettlementInstruction) -> str:
    destination = instruction.wallet_address or instruction.iban or instruction.account_number
    if not destination:
        raise UnsupportedRailError(
            f"Instruction {instruction.id} has no destination", method=instruction.method
        )
    return destination


class SettlementOrchestrator:
    """Drive settlements through their lifecycle."""

    def __init__(
        self,
        store: Store,
        trade_book: TradeBook,
        credit_ledger: CreditLedger,
        compliance: ComplianceGate,
        custody: CustodyPolicy,
        rails: RailRouter,
        completion_delay: Optional[float] = None,
    ) -> None:
        """Initialize settlement orchestrator.

        Args:
            store: Persistence store
            trade_book: Deal and block trade lifecycle
            credit_ledger: Credit lines drawn for buyer exposure
            compliance: Sanctions screening of payout addresses
            custody: Whitelist checks for crypto instructions
            rails: Rail router
            completion_delay: Seconds between dual confirmation and completion
        """
        self.store = store
        self.trade_book = trade_book
        self.credit_ledger = credit_ledger
        self.compliance = compliance
        self.custody = custody
        self.rails = rails
        self.completion_delay = (
            settings.settlement_completion_delay_seconds if completion_delay is None else completion_delay
        )
        self._completions: dict[str, asyncio.Task] = {}

    # ------------------------------------------------------------------
    # Initiation
    # ------------------------------------------------------------------

    async def initiate_deal_settlement(
        self,
        deal_id: str,
        buyer_instruction_id: str,
        seller_instruction_id: str,
        priority: str = SettlementPriority.STANDARD.value,
        use_credit: bool = False,
    ) -> Settlement:
        return await self.initiate_settlement(
            SOURCE_DEAL, deal_id, buyer_instruction_id, seller_instruction_id, priority, use_credit
        )

    async def initiate_block_trade_settlement(
        self,
        trade_id: str,
        buyer_instruction_id: str,
        seller_instruction_id: str,
        priority: str = SettlementPriority.STANDARD.value,
        use_credit: bool = False,
    ) -> Settlement:
        return await self.initiate_settlement(
            SOURCE_BLOCK_TRADE, trade_id, buyer_instruction_id, seller_instruction_id, priority, use_credit
        )

    async def initiate_settlement(
        self,
        source_type: str,
        source_id: str,
        buyer_instruction_id: str,
        seller_instruction_id: str,
        priority: str = SettlementPriority.STANDARD.value,
        use_credit: bool = False,
    ) -> Settlement:
        """Create the settlement record for a matched deal or pending block trade.

        The buyer pays ``total_value`` in the quote currency; the seller
        delivers ``amount`` in the base currency. Fees and expected completion
        come from the method and priority of each side. The settlement record,
        optional credit draw and source transition commit together.

        Args:
            source_type: ``deal`` or ``block_trade``
            source_id: Deal or block trade identifier
            buyer_instruction_id: Buyer's payout instruction
            seller_instruction_id: Seller's payout instruction
            priority: standard, urgent or same_day
            use_credit: Draw the buyer's credit line for the payment leg

        Returns:
            Pending settlement

        Raises:
            UnsupportedRailError: Unknown method or priority
            InvalidStateTransitionError: Source not settleable or already settling
            AddressNotWhitelistedError: Crypto payout address not whitelisted
            ComplianceRejectedError: Payout address sanctioned
            InsufficientCreditError: Credit draw exceeds availability
        """
        prio = resolve_priority(priority)

        if source_type == SOURCE_DEAL:
            deal = await self.trade_book.get_deal(source_id)
            if deal.status != DealStatus.MATCHED:
                raise InvalidStateTransitionError(
                    f"Deal {source_id} is {deal.status.value}; only matched deals settle",
                    entity="deal",
                    current_status=deal.status.value,
                    target_status=DealStatus.EXECUTING.value,
                )
            if deal.side == TradeSide.BUY:
                buyer_id, seller_id = deal.client_id, deal.counterparty_id
            else:
                buyer_id, seller_id = deal.counterparty_id, deal.client_id
            base, quote, amount, total_value = deal.base_currency, deal.quote_currency, deal.amount, deal.total_value
        elif source_type == SOURCE_BLOCK_TRADE:
            trade = await self.trade_book.get_block_trade(source_id)
            if trade.status != BlockTradeStatus.PENDING:
                raise InvalidStateTransitionError(
                    f"Block trade {source_id} is {trade.status.value}; only pending trades settle",
                    entity="block_trade",
                    current_status=trade.status.value,
                    target_status=BlockTradeStatus.EXECUTING.value,
                )
            buyer_id, seller_id = trade.buyer_id, trade.seller_id
            base, quote, amount, total_value = trade.base_currency, trade.quote_currency, trade.amount, trade.total_value
        else:
            raise ValueError(f"Unknown settlement source type: {source_type}")

        existing = await self.store.settlements.list(source_id=source_id)
        if existing:
            raise InvalidStateTransitionError(
                f"{source_type} {source_id} already has settlement {existing[0].id}",
                entity="settlement",
                current_status=existing[0].status.value,
                target_status=SettlementStatus.PENDING.value,
            )

        buyer_instruction = await self._instruction_for(buyer_instruction_id, buyer_id, quote)
        seller_instruction = await self._instruction_for(seller_instruction_id, seller_id, base)
        buyer_terms = side_terms(resolve_method(buyer_instruction.method), prio, total_value)
        seller_terms = side_terms(resolve_method(seller_instruction.method), prio, total_value)

        now = utcnow()
        settlement_id = new_id(SETTLEMENT_PREFIX)
        settlement = Settlement(
            id=settlement_id,
            source_type=source_type,
            source_id=source_id,
            priority=prio,
            buyer=SettlementLeg(
                party_id=buyer_id,
                instruction_id=buyer_instruction.id,
                method=buyer_terms.method,
                amount=total_value,
                currency=quote,
                reference=leg_reference(settlement_id, SettlementSide.BUYER),
            ),
            seller=SettlementLeg(
                party_id=seller_id,
                instruction_id=seller_instruction.id,
                method=seller_terms.method,
                amount=amount,
                currency=base,
                reference=leg_reference(settlement_id, SettlementSide.SELLER),
            ),
            fees=calculate_fees(buyer_terms, seller_terms, prio),
            timeline=SettlementTimeline(
                initiated=now,
                expected_completion=now + timedelta(minutes=max(buyer_terms.minutes, seller_terms.minutes)),
            ),
            created_at=now,
            updated_at=now,
        )

        async with self.store.transaction():
            if use_credit:
                line = await self.credit_ledger.draw_credit(buyer_id, quote, total_value)
                settlement = settlement.model_copy(
                    update={"credit_line_id": line.id, "credit_drawn": total_value}
                )
            settlement = await self.store.settlements.create(settlement)
            if source_type == SOURCE_DEAL:
                await self.trade_book.update_deal_status(source_id, DealStatus.EXECUTING)
            else:
                await self.trade_book.execute_block_trade(source_id)

        desk_logger.settlement_transition(settlement.id, "new", settlement.status.value)
        logger.info(
            "Settlement %s initiated for %s %s: fees %s, expected %s",
            settlement.id,
            source_type,
            source_id,
            settlement.fees.total_fees,
            settlement.timeline.expected_completion.isoformat(),
        )
        return settlement

    async def _instruction_for(self, instruction_id: str, party_id: str, currency: str) -> SettlementInstruction:
        instruction = await self.trade_book.get_instruction(instruction_id)
        if instruction.client_id != party_id:
            raise UnsupportedRailError(
                f"Instruction {instruction_id} does not belong to {party_id}",
                method=instruction.method,
            )
        if instruction.currency != currency:
            raise UnsupportedRailError(
                f"Instruction {instruction_id} pays {instruction.currency}, settlement needs {currency}",
                method=instruction.method,
            )
        if resolve_method(instruction.method) == SettlementMethod.CRYPTO:
            address = _destination(instruction)
            client = await self.store.clients.get(party_id)
            self.compliance.require_clear(client, address)
            await self.custody.require_whitelisted(party_id, currency, address)
        return instruction

    # ------------------------------------------------------------------
    # Processing and confirmation
    # ------------------------------------------------------------------

    async def process_settlement(self, settlement_id: str) -> Settlement:
        """Submit both sides to their rails.

        Resumable: sides already initiated are skipped, and a retry re-uses the
        same references.

        Raises:
            InvalidStateTransitionError: Settlement is not pending or processing
            RailRejectedError: A rail refused a side; permanent refusals fail
                the settlement first
        """
        settlement = await self._start_processing(settlement_id)

        for side in (SettlementSide.BUYER, SettlementSide.SELLER):
            leg = settlement.leg(side)
            if leg.status != LegStatus.PENDING:
                continue

            instruction = await self.trade_book.get_instruction(leg.instruction_id)
            try:
                transfer = await self.rails.transfer(
                    leg.method,
                    reference=leg.reference,
                    amount=leg.amount,
                    currency=leg.currency,
                    destination=_destination(instruction),
                    priority=settlement.priority,
                )
            except RailRejectedError as e:
                error_aggregator.record_error(e, {"settlement_id": settlement_id, "side": side.value})
                if not e.retryable:
                    await self.fail_settlement(settlement_id, f"{side.value} rail rejected: {e.message}")
                raise

            settlement = await self._mark_initiated(
                settlement_id, side, transfer.rail_reference, transfer.estimated_completion
            )

        return settlement

    @retry_on_conflict()
    async def _start_processing(self, settlement_id: str) -> Settlement:
        settlement = await self.store.settlements.get_or_raise(settlement_id)
        if settlement.status == SettlementStatus.PROCESSING:
            return settlement
        self._require_transition(settlement, SettlementStatus.PROCESSING)
        updated = await self.store.settlements.update(
            settlement.model_copy(update={"status": SettlementStatus.PROCESSING})
        )
        desk_logger.settlement_transition(settlement_id, settlement.status.value, updated.status.value)
        return updated

    @retry_on_conflict()
    async def _mark_initiated(
        self,
        settlement_id: str,
        side: SettlementSide,
        rail_reference: str,
        estimated_completion: datetime,
    ) -> Settlement:
        settlement = await self.store.settlements.get_or_raise(settlement_id)
        leg = settlement.leg(side)
        if leg.status != LegStatus.PENDING:
            return settlement
        leg = leg.model_copy(
            update={
                "status": LegStatus.INITIATED,
                "rail_reference": rail_reference,
                "estimated_completion": estimated_completion,
            }
        )
        return await self.store.settlements.update(settlement.model_copy(update={side.value: leg}))

    async def confirm_settlement(self, settlement_id: str, side: SettlementSide) -> Settlement:
        """Record one side's confirmation.

        Re-confirming a side is a no-op. The move to ``confirming`` happens in
        the single write that confirms the second side, and only that writer
        schedules completion.

        Raises:
            InvalidStateTransitionError: Side not initiated or settlement closed
        """
        settlement, transitioned = await self._confirm(settlement_id, side)
        if transitioned:
            desk_logger.settlement_transition(
                settlement_id, SettlementStatus.PROCESSING.value, SettlementStatus.CONFIRMING.value
            )
            self._schedule_completion(settlement_id)
        return settlement

    @retry_on_conflict()
    async def _confirm(self, settlement_id: str, side: SettlementSide) -> tuple[Settlement, bool]:
        settlement = await self.store.settlements.get_or_raise(settlement_id)
        leg = settlement.leg(side)
        if leg.status in (LegStatus.CONFIRMED, LegStatus.COMPLETED):
            return settlement, False
        if settlement.status != SettlementStatus.PROCESSING or leg.status != LegStatus.INITIATED:
            raise InvalidStateTransitionError(
                f"Settlement {settlement_id} {side.value} side is {leg.status.value} "
                f"while settlement is {settlement.status.value}",
                entity="settlement",
                current_status=settlement.status.value,
                target_status=SettlementStatus.CONFIRMING.value,
            )

        other = settlement.leg(SettlementSide.SELLER if side == SettlementSide.BUYER else SettlementSide.BUYER)
        both = other.status == LegStatus.CONFIRMED
        changes: dict = {side.value: leg.model_copy(update={"status": LegStatus.CONFIRMED})}
        if both:
            changes["status"] = SettlementStatus.CONFIRMING
        updated = await self.store.settlements.update(settlement.model_copy(update=changes))
        logger.info("Settlement %s %s side confirmed", settlement_id, side.value)
        return updated, both

    # ------------------------------------------------------------------
    # Terminal transitions
    # ------------------------------------------------------------------

    async def complete_settlement(self, settlement_id: str) -> Settlement:
        """Close a dually confirmed settlement and its source record.

        Raises:
            InvalidStateTransitionError: Settlement is not confirming
        """
        async with self.store.transaction():
            settlement = await self.store.settlements.get_or_raise(settlement_id)
            if settlement.status == SettlementStatus.COMPLETED:
                return settlement
            self._require_transition(settlement, SettlementStatus.COMPLETED)

            now = utcnow()
            completed = await self.store.settlements.update(
                settlement.model_copy(
                    update={
                        "status": SettlementStatus.COMPLETED,
                        "buyer": settlement.buyer.model_copy(update={"status": LegStatus.COMPLETED}),
                        "seller": settlement.seller.model_copy(update={"status": LegStatus.COMPLETED}),
                        "timeline": settlement.timeline.model_copy(update={"actual_completion": now}),
                    }
                )
            )
            if settlement.source_type == SOURCE_DEAL:
                await self.trade_book.update_deal_status(settlement.source_id, DealStatus.COMPLETED)
            else:
                await self.trade_book.complete_block_trade(settlement.source_id)
            await self._release_credit(settlement)

        self._completions.pop(settlement_id, None)
        desk_logger.settlement_transition(settlement_id, settlement.status.value, completed.status.value)
        return completed

    async def fail_settlement(self, settlement_id: str, reason: str) -> Settlement:
        """Fail an open settlement, keeping both sides' last-known status.

        A failed deal stays ``executing`` for manual resolution; a block trade
        moves to ``failed``.
        """
        self.cancel_scheduled_completion(settlement_id)
        async with self.store.transaction():
            settlement = await self.store.settlements.get_or_raise(settlement_id)
            if settlement.status == SettlementStatus.FAILED:
                return settlement
            self._require_transition(settlement, SettlementStatus.FAILED)

            failed = await self.store.settlements.update(
                settlement.model_copy(
                    update={
                        "status": SettlementStatus.FAILED,
                        "failure_reason": reason,
                        "timeline": settlement.timeline.model_copy(update={"failed_at": utcnow()}),
                    }
                )
            )
            if settlement.source_type == SOURCE_BLOCK_TRADE:
                await self.trade_book.fail_block_trade(settlement.source_id)
            await self._release_credit(settlement)

        desk_logger.settlement_transition(settlement_id, settlement.status.value, failed.status.value, reason)
        return failed

    async def complete_orphaned_settlements(self, now: Optional[datetime] = None) -> list[Settlement]:
        """Complete confirming settlements whose scheduled completion was lost.

        A completion scheduled by this process is left to its task; any other
        confirming settlement older than the completion delay (scheduled by a
        process that has since stopped) is completed here.
        """
        now = now or utcnow()
        delay = timedelta(seconds=self.completion_delay)
        orphaned = await self.store.settlements.list(
            predicate=lambda s: s.id not in self._completions and s.updated_at + delay <= now,
            status=SettlementStatus.CONFIRMING,
        )
        completed = []
        for settlement in orphaned:
            try:
                completed.append(await self.complete_settlement(settlement.id))
            except (InvalidStateTransitionError, ConcurrentModificationError):
                logger.debug("Settlement %s closed concurrently", settlement.id)
        if completed:
            logger.info("Completed %d confirmed settlements without a scheduled completion", len(completed))
        return completed

    async def fail_overdue_settlements(self, now: Optional[datetime] = None) -> list[Settlement]:
        """Fail unconfirmed settlements past expected completion plus the grace period.

        Dually confirmed settlements are completed instead, see
        ``complete_orphaned_settlements``.

        Returns:
            Settlements failed by this pass
        """
        now = now or utcnow()
        await self.complete_orphaned_settlements(now)

        grace = timedelta(minutes=settings.settlement_grace_period_minutes)
        overdue = await self.store.settlements.list(
            predicate=lambda s: s.timeline.expected_completion + grace < now,
            status=UNCONFIRMED_STATUSES,
        )
        failed = []
        for settlement in overdue:
            try:
                failed.append(
                    await self.fail_settlement(
                        settlement.id,
                        f"timed out: expected by {settlement.timeline.expected_completion.isoformat()}",
                    )
                )
            except InvalidStateTransitionError:
                logger.debug("Settlement %s closed before timeout", settlement.id)
        if failed:
            logger.warning("Failed %d overdue settlements", len(failed))
        return failed

    async def _release_credit(self, settlement: Settlement) -> None:
        if settlement.credit_line_id and settlement.credit_drawn > 0:
            await self.credit_ledger.release_credit(settlement.credit_line_id, settlement.credit_drawn)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_settlement(self, settlement_id: str) -> Settlement:
        return await self.store.settlements.get_or_raise(settlement_id)

    async def list_settlements(
        self,
        status: Optional[SettlementStatus] = None,
        party_id: Optional[str] = None,
    ) -> list[Settlement]:
        return await self.store.settlements.list(
            predicate=lambda s: party_id is None or party_id in (s.buyer.party_id, s.seller.party_id),
            status=status,
        )

    # ------------------------------------------------------------------
    # Completion scheduling
    # ------------------------------------------------------------------

    @property
    def pending_completions(self) -> int:
        return len(self._completions)

    def _schedule_completion(self, settlement_id: str) -> None:
        if settlement_id in self._completions:
            return
        self._completions[settlement_id] = asyncio.create_task(self._complete_later(settlement_id))

    async def _complete_later(self, settlement_id: str) -> None:
        try:
            await asyncio.sleep(self.completion_delay)
            await self.complete_settlement(settlement_id)
        except asyncio.CancelledError:
            logger.info("Scheduled completion of %s cancelled", settlement_id)
            raise
        except OTCDeskError as e:
            error_aggregator.record_error(e, {"settlement_id": settlement_id})
        finally:
            self._completions.pop(settlement_id, None)

    def cancel_scheduled_completion(self, settlement_id: str) -> bool:
        task = self._completions.pop(settlement_id, None)
        if task is None or task.done():
            return False
        task.cancel()
        return True

    async def wait_for_completions(self) -> None:
        """Wait until every scheduled completion has run."""
        while self._completions:
            await asyncio.gather(*list(self._completions.values()), return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel pending completions."""
        tasks = list(self._completions.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._completions.clear()

    def _require_transition(self, settlement: Settlement, target: SettlementStatus) -> None:
        if target not in SETTLEMENT_TRANSITIONS[settlement.status]:
            raise InvalidStateTransitionError(
                f"Settlement {settlement.id} cannot move from {settlement.status.value} to {target.value}",
                entity="settlement",
                current_status=settlement.status.value,
                target_status=target.value,
            )
