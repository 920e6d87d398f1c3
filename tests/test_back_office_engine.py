"""Tests for the back office engine loops."""

import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest

from otc_desk.data.models import DepositStatus, Quote, QuoteStatus, TradeSide, utcnow
from otc_desk.engine.back_office import BackOfficeEngine
from otc_desk.engine.desk import OTCDesk
from otc_desk.utils.retry import error_aggregator

FAST = {"sweep": 0.01, "deposits": 0.01, "settlements": 0.01, "quotes": 0.01}


class TestBackOfficeEngine:
    """Test cases for BackOfficeEngine."""

    def test_initialization(self, desk: OTCDesk) -> None:
        """Test engine initialization and interval overrides."""
        engine = BackOfficeEngine(desk, intervals={"sweep": 5})

        assert not engine.is_running
        assert engine.intervals["sweep"] == 5
        assert set(engine.jobs) == {"sweep", "deposits", "settlements", "quotes"}
        assert engine.passes == {"sweep": 0, "deposits": 0, "settlements": 0, "quotes": 0}

    @pytest.mark.asyncio
    async def test_run_once_unknown_job(self, desk: OTCDesk) -> None:
        """Test unknown jobs are rejected."""
        engine = BackOfficeEngine(desk)

        with pytest.raises(ValueError):
            await engine.run_once("reconcile")

    @pytest.mark.asyncio
    async def test_quote_expiry_pass(self, desk: OTCDesk, make_client) -> None:
        """Test the quote job expires stale quotes."""
        client = await make_client("alice")
        now = utcnow()
        await desk.store.quotes.create(
            Quote(
                id="QT-STALE",
                client_id=client.id,
                side=TradeSide.BUY,
                base_currency="BTC",
                quote_currency="USD",
                requested_amount=Decimal("1"),
                expires_at=now - timedelta(seconds=1),
                created_at=now - timedelta(minutes=5),
            )
        )
        live = await desk.request_quote(client.id, TradeSide.BUY, "BTC", "USD", Decimal("1"))
        engine = BackOfficeEngine(desk)

        expired = await engine.run_once("quotes")

        assert [q.id for q in expired] == ["QT-STALE"]
        assert (await desk.trade_book.get_quote("QT-STALE")).status == QuoteStatus.EXPIRED
        assert (await desk.trade_book.get_quote(live.id)).status == QuoteStatus.QUOTED
        assert engine.passes["quotes"] == 1

    @pytest.mark.asyncio
    async def test_deposit_and_sweep_passes(self, desk: OTCDesk, make_client) -> None:
        """Test the deposit scan credits deep deposits and the sweep moves the excess."""
        client = await make_client("alice")
        deposit = await desk.custody.record_deposit(client.id, "BTC", Decimal("1"), "0xabc", confirmations=2)
        await desk.store.deposits.update(deposit.model_copy(update={"confirmations": 6}))
        engine = BackOfficeEngine(desk)

        credited = await engine.run_once("deposits")
        sweeps = await engine.run_once("sweep")

        assert [d.id for d in credited] == [deposit.id]
        assert credited[0].status == DepositStatus.CREDITED
        assert (await desk.custody.get_balance(client.id, "BTC")).available == Decimal("1")
        assert len(sweeps) == 1
        assert sweeps[0].currency == "BTC"
        assert await engine.run_once("settlements") == []

    @pytest.mark.asyncio
    async def test_start_and_stop(self, desk: OTCDesk) -> None:
        """Test every loop runs until the engine is stopped."""
        engine = BackOfficeEngine(desk, intervals=FAST)

        await engine.start()
        await engine.start()  # second start is ignored
        await asyncio.sleep(0.05)

        status = engine.get_status()
        assert status["is_running"]
        assert all(count >= 1 for count in status["passes"].values())
        assert status["pending_completions"] == 0

        await engine.stop()

        assert not engine.is_running
        assert engine.get_status()["is_running"] is False

    @pytest.mark.asyncio
    async def test_failing_pass_is_recorded(self, desk: OTCDesk) -> None:
        """Test a failing loop records the error and keeps running."""

        async def broken_scan() -> list:
            raise RuntimeError("node unreachable")

        desk.custody.scan_deposits = broken_scan
        engine = BackOfficeEngine(desk, intervals=FAST)

        await engine.start()
        await asyncio.sleep(0.05)
        await engine.stop()

        assert engine.passes["deposits"] == 0
        assert engine.passes["quotes"] >= 1
        assert error_aggregator.error_counts["RuntimeError"] >= 2
