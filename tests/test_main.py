"""Tests for the process entry point."""

import asyncio
import sys

import pytest

import main
from otc_desk.engine.desk import OTCDesk


class TestEntryPoint:
    """Test cases for the run modes."""

    @pytest.mark.asyncio
    async def test_both_mode_shares_one_desk(self, desk: OTCDesk, monkeypatch) -> None:
        """Test the API server and back office engine run against the same desk."""
        created = []
        served = {}
        closed = []

        async def fake_create_desk() -> OTCDesk:
            created.append(desk)
            return desk

        async def fake_api(shared=None) -> None:
            served["api"] = shared

        async def fake_engine(shared=None) -> None:
            served["engine"] = shared

        async def fake_close() -> None:
            closed.append(True)

        monkeypatch.setattr(main, "create_desk", fake_create_desk)
        monkeypatch.setattr(main, "run_api_server", fake_api)
        monkeypatch.setattr(main, "run_back_office", fake_engine)
        monkeypatch.setattr(main, "close_database", fake_close)
        monkeypatch.setattr(main, "setup_logging", lambda: None)
        monkeypatch.setattr(sys, "argv", ["main.py"])

        await main.main()

        assert len(created) == 1
        assert served["api"] is desk
        assert served["engine"] is desk
        assert closed == [True]

    @pytest.mark.asyncio
    async def test_shared_desk_is_not_closed_by_engine(self, desk: OTCDesk, monkeypatch) -> None:
        """Test the back office leaves the database to the owner of a shared desk."""
        closed = []

        async def fake_close() -> None:
            closed.append(True)

        monkeypatch.setattr(main, "close_database", fake_close)
        app = main.DeskApplication(desk)

        task = asyncio.create_task(app.start())
        while not app.is_running:
            await asyncio.sleep(0)
        await app.stop()
        await task

        assert app.desk is desk
        assert closed == []
