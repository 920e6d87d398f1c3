"""Main entry point for the OTC desk back office."""

import asyncio
import logging
import signal
import sys
from typing import Any, Optional

from otc_desk.config.settings import settings
from otc_desk.data.database import close_database
from otc_desk.engine.back_office import BackOfficeEngine
from otc_desk.engine.desk import OTCDesk, create_desk
from otc_desk.utils.logging import setup_logging

logger = logging.getLogger(__name__)


class DeskApplication:
    """Background back-office process."""

    def __init__(self, desk: Optional[OTCDesk] = None) -> None:
        """Initialize desk application.

        Args:
            desk: Desk shared with the API server; when omitted one is
                created at start and the database is closed at stop.
        """
        self.desk = desk
        self._owns_desk = desk is None
        self.engine: Optional[BackOfficeEngine] = None
        self.is_running = False
        self._stopped = asyncio.Event()

    async def start(self) -> None:
        """Start the back office engine and run until stopped."""
        logger.info("Starting OTC desk back office")

        try:
            if self.desk is None:
                self.desk = await create_desk()
            self.engine = BackOfficeEngine(self.desk)
            self.is_running = True
            await self.engine.start()
            await self._stopped.wait()

        except Exception as e:
            logger.error("Failed to start back office: %s", e)
            await self.stop()
            raise

    async def stop(self) -> None:
        """Stop the back office engine."""
        if not self.is_running:
            return

        logger.info("Stopping back office")
        self.is_running = False

        try:
            if self.engine is not None:
                await self.engine.stop()
            if self._owns_desk:
                await close_database()
            logger.info("Back office stopped successfully")
        finally:
            self._stopped.set()

    def setup_signal_handlers(self) -> None:
        """Setup signal handlers for graceful shutdown."""

        def signal_handler(signum: int, frame: Any) -> None:
            logger.info("Received signal %d, shutting down gracefully", signum)
            asyncio.get_running_loop().create_task(self.stop())

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)


async def run_api_server(desk: Optional[OTCDesk] = None) -> None:
    """Run the FastAPI server, serving ``desk`` when given."""
    import uvicorn

    from otc_desk.api.main import create_app

    config = uvicorn.Config(
        create_app(desk) if desk is not None else "otc_desk.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=False,
        log_level=settings.log_level.lower(),
    )

    server = uvicorn.Server(config)
    await server.serve()


async def run_back_office(desk: Optional[OTCDesk] = None) -> None:
    """Run the background engine."""
    app = DeskApplication(desk)
    app.setup_signal_handlers()
    await app.start()


async def main() -> None:
    """Main entry point."""
    setup_logging()
    logger.info("OTC Desk v0.1.0")
    logger.info(
        "Configuration: %s",
        {
            "api_host": settings.api_host,
            "api_port": settings.api_port,
            "log_level": settings.log_level,
            "database": "sql" if settings.database_url else "memory",
            "crypto_rail_live": settings.crypto_rail_live,
        },
    )

    if len(sys.argv) > 1:
        mode = sys.argv[1]

        if mode == "api":
            logger.info("Starting API server only")
            await run_api_server()

        elif mode == "engine":
            logger.info("Starting back office engine only")
            await run_back_office()

        elif mode == "help":
            print("Usage: python main.py [mode]")
            print("Modes:")
            print("  api     - Run API server only")
            print("  engine  - Run back office engine only")
            print("  (none)  - Run both API server and back office engine")
            return

        else:
            logger.error("Unknown mode: %s", mode)
            return

    else:
        logger.info("Starting both API server and back office engine")

        # API and engine share one desk
        desk = await create_desk()
        tasks = [
            asyncio.create_task(run_api_server(desk)),
            asyncio.create_task(run_back_office(desk)),
        ]

        try:
            await asyncio.gather(*tasks)
        except KeyboardInterrupt:
            logger.info("Received keyboard interrupt, shutting down")
            for task in tasks:
                task.cancel()
        finally:
            await desk.shutdown()
            await close_database()


def cli_main() -> None:
    """CLI entry point."""
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Application terminated by user")
    except Exception as e:
        logger.error("Application failed: %s", e)
        sys.exit(1)


if __name__ == "__main__":
    cli_main()
