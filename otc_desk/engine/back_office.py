"""Background engine running the desk's periodic policies."""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from otc_desk.config.settings import settings
from otc_desk.engine.desk import OTCDesk
from otc_desk.utils.retry import error_aggregator

logger = logging.getLogger(__name__)


class BackOfficeEngine:
    """Run sweep, deposit scan, settlement monitor and quote expiry loops.

    Each loop is an independent asyncio task; a failing pass is logged and
    retried on the next interval.
    """

    def __init__(
        self,
        desk: OTCDesk,
        intervals: Optional[dict[str, float]] = None,
    ) -> None:
        """Initialize back office engine.

        Args:
            desk: Desk whose policies the loops run
            intervals: Per-loop interval overrides in seconds
        """
        self.desk = desk
        self.intervals: dict[str, float] = {
            "sweep": settings.sweep_interval_seconds,
            "deposits": settings.deposit_scan_interval_seconds,
            "settlements": settings.settlement_monitor_interval_seconds,
            "quotes": settings.default_quote_validity_seconds / 10,
        }
        if intervals:
            self.intervals.update(intervals)
        self.is_running = False
        self.passes: dict[str, int] = {name: 0 for name in self.intervals}
        self._tasks: dict[str, asyncio.Task] = {}

    @property
    def jobs(self) -> dict[str, Callable[[], Awaitable[Any]]]:
        return {
            "sweep": self.desk.custody.check_and_sweep,
            "deposits": self.desk.custody.scan_deposits,
            "settlements": self.desk.settlement.fail_overdue_settlements,
            "quotes": self.desk.trade_book.expire_quotes,
        }

    async def start(self) -> None:
        """Start every loop."""
        if self.is_running:
            logger.warning("Back office engine is already running")
            return

        self.is_running = True
        logger.info("Starting back office engine")
        for name, job in self.jobs.items():
            self._tasks[name] = asyncio.create_task(self._loop(name, job), name=f"back-office:{name}")

    async def stop(self) -> None:
        """Stop every loop and cancel scheduled settlement completions."""
        logger.info("Stopping back office engine")
        self.is_running = False

        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        await self.desk.shutdown()

    async def run_once(self, name: str) -> Any:
        """Run one pass of a loop immediately."""
        try:
            job = self.jobs[name]
        except KeyError:
            raise ValueError(f"Unknown back office job: {name}") from None
        result = await job()
        self.passes[name] += 1
        return result

    async def _loop(self, name: str, job: Callable[[], Awaitable[Any]]) -> None:
        interval = self.intervals[name]
        logger.info("Starting %s loop every %ss", name, interval)

        while self.is_running:
            try:
                result = await job()
                self.passes[name] += 1
                if result:
                    logger.info("%s pass handled %d records", name, len(result))

            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Error in %s loop: %s", name, e)
                error_aggregator.record_error(e, {"loop": name})

            await asyncio.sleep(interval)

    def get_status(self) -> dict[str, Any]:
        return {
            "is_running": self.is_running,
            "intervals": self.intervals,
            "passes": self.passes,
            "pending_completions": self.desk.settlement.pending_completions,
        }
