"""Tests for the credit ledger."""

from decimal import Decimal

import pytest

from otc_desk.credit.ledger import CreditLedger
from otc_desk.data.models import CreditLineStatus
from otc_desk.data.repository import InMemoryStore
from otc_desk.market.rates import UsdConverter
from otc_desk.utils.exceptions import InsufficientCreditError, InvalidStateTransitionError


class TestCreditLedger:
    """Test cases for CreditLedger."""

    def setup_method(self) -> None:
        """Set up a ledger over a fresh store."""
        self.ledger = CreditLedger(InMemoryStore(), UsdConverter())

    @pytest.mark.asyncio
    async def test_create_credit_line(self) -> None:
        """Test new lines are fully available at the default rate."""
        line = await self.ledger.create_credit_line("CLT-A", "usd", Decimal("1000000"))

        assert line.id.startswith("CRL-")
        assert line.currency == "USD"
        assert line.available_credit == Decimal("1000000")
        assert line.utilization_rate == Decimal("0")
        assert line.interest_rate == Decimal("0.05")
        assert line.status == CreditLineStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_draw_and_release(self) -> None:
        """Test draws reduce availability and releases restore it."""
        line = await self.ledger.create_credit_line("CLT-A", "USD", Decimal("1000000"))

        drawn = await self.ledger.draw_credit("CLT-A", "USD", Decimal("250000"))
        assert drawn.available_credit == Decimal("750000")
        assert drawn.utilization_rate == Decimal("0.2500")

        released = await self.ledger.release_credit(line.id, Decimal("250000"))
        assert released.available_credit == Decimal("1000000")
        assert released.utilization_rate == Decimal("0")

    @pytest.mark.asyncio
    async def test_release_capped_at_limit(self) -> None:
        """Test releases never push availability above the limit."""
        line = await self.ledger.create_credit_line("CLT-A", "USD", Decimal("1000"))

        released = await self.ledger.release_credit(line.id, Decimal("500"))

        assert released.available_credit == Decimal("1000")

    @pytest.mark.asyncio
    async def test_overdraw_rejected(self) -> None:
        """Test a draw above availability fails and leaves the line unchanged."""
        line = await self.ledger.create_credit_line("CLT-A", "USD", Decimal("1000"))

        with pytest.raises(InsufficientCreditError) as exc_info:
            await self.ledger.draw_credit("CLT-A", "USD", Decimal("1000.01"))

        assert exc_info.value.available_credit == Decimal("1000")
        stored = await self.ledger.get_credit_line(line.id)
        assert stored.available_credit == Decimal("1000")
        assert stored.version == 1

    @pytest.mark.asyncio
    async def test_draw_without_line(self) -> None:
        """Test drawing in a currency with no line fails."""
        await self.ledger.create_credit_line("CLT-A", "USD", Decimal("1000"))

        with pytest.raises(InsufficientCreditError):
            await self.ledger.draw_credit("CLT-A", "EUR", Decimal("1"))

    @pytest.mark.asyncio
    async def test_suspended_line_refuses_draws(self) -> None:
        """Test suspension blocks draws and cannot be repeated."""
        line = await self.ledger.create_credit_line("CLT-A", "USD", Decimal("1000"))
        await self.ledger.suspend_credit_line(line.id)

        with pytest.raises(InsufficientCreditError):
            await self.ledger.draw_credit("CLT-A", "USD", Decimal("1"))
        with pytest.raises(InvalidStateTransitionError):
            await self.ledger.suspend_credit_line(line.id)

    @pytest.mark.asyncio
    async def test_extend_existing_line(self) -> None:
        """Test extension raises both limit and availability."""
        await self.ledger.create_credit_line("CLT-A", "USD", Decimal("1000"))
        await self.ledger.draw_credit("CLT-A", "USD", Decimal("600"))

        extended = await self.ledger.extend_credit_line("CLT-A", "USD", Decimal("1000"))

        assert extended.credit_limit == Decimal("2000")
        assert extended.available_credit == Decimal("1400")
        assert extended.utilization_rate == Decimal("0.3000")

    @pytest.mark.asyncio
    async def test_extend_opens_missing_line(self) -> None:
        """Test extension opens a line when none exists."""
        extended = await self.ledger.extend_credit_line("CLT-A", "EUR", Decimal("5000"))

        assert extended.credit_limit == Decimal("5000")
        assert len(await self.ledger.list_credit_lines("CLT-A")) == 1

    @pytest.mark.asyncio
    async def test_extend_requires_positive_delta(self) -> None:
        """Test non-positive extensions are rejected."""
        with pytest.raises(ValueError):
            await self.ledger.extend_credit_line("CLT-A", "USD", Decimal("0"))

    @pytest.mark.asyncio
    async def test_utilization_in_usd(self) -> None:
        """Test utilization aggregates lines converted to USD."""
        await self.ledger.create_credit_line("CLT-A", "USD", Decimal("100000"))
        await self.ledger.create_credit_line("CLT-A", "BTC", Decimal("2"))
        await self.ledger.draw_credit("CLT-A", "BTC", Decimal("1"))

        utilization = await self.ledger.get_utilization("CLT-A")

        assert utilization.total_limit == Decimal("190000")
        assert utilization.total_available == Decimal("145000")
        assert utilization.utilized == Decimal("45000")
        assert utilization.utilization_pct == Decimal("23.68")
        assert utilization.line_count == 2

    @pytest.mark.asyncio
    async def test_utilization_without_lines(self) -> None:
        """Test a client without lines reports zero."""
        utilization = await self.ledger.get_utilization("CLT-NONE")

        assert utilization.total_limit == Decimal("0")
        assert utilization.utilization_pct == Decimal("0")
        assert utilization.line_count == 0
