"""Command line interface: database management and one-shot monitor passes."""

import asyncio
import logging

import click

from otc_desk.data.database import close_database, db_manager
from otc_desk.data.migrations import create_tables, drop_tables, get_database_stats, initialize_database
from otc_desk.engine.back_office import BackOfficeEngine
from otc_desk.engine.desk import create_desk
from otc_desk.utils.logging import setup_logging

logger = logging.getLogger(__name__)


@click.group()
def cli() -> None:
    """OTC desk back office."""
    setup_logging()


@cli.group()
def database() -> None:
    """Database management commands."""
    pass


@database.command()
def init() -> None:
    """Create the schema for the configured database."""

    async def _init() -> None:
        try:
            await initialize_database()
            click.echo("✅ Database initialized successfully")
        except Exception as e:
            click.echo(f"❌ Database initialization failed: {e}")
            raise
        finally:
            await db_manager.close()

    asyncio.run(_init())


@database.command()
@click.option("--force", is_flag=True, help="Force drop without confirmation")
def drop(force: bool) -> None:
    """Drop all database tables."""
    if not force:
        if not click.confirm("This will drop all tables. Are you sure?"):
            click.echo("Aborted.")
            return

    async def _drop() -> None:
        try:
            engine = await db_manager.initialize()
            await drop_tables(engine)
            click.echo("✅ Database tables dropped successfully")
        except Exception as e:
            click.echo(f"❌ Failed to drop tables: {e}")
            raise
        finally:
            await db_manager.close()

    asyncio.run(_drop())


@database.command()
def stats() -> None:
    """Show database statistics."""

    async def _stats() -> None:
        try:
            engine = await db_manager.initialize()
            await create_tables(engine)
            stats = await get_database_stats(engine)

            click.echo("\n📊 Database Statistics:")
            click.echo("-" * 30)
            for key, value in stats.items():
                formatted_key = key.replace("_", " ").title()
                click.echo(f"{formatted_key:20}: {value}")

        except Exception as e:
            click.echo(f"❌ Failed to get database stats: {e}")
            raise
        finally:
            await db_manager.close()

    asyncio.run(_stats())


@database.command()
@click.option("--force", is_flag=True, help="Force reset without confirmation")
def reset(force: bool) -> None:
    """Reset database (drop and recreate all tables)."""
    if not force:
        if not click.confirm("This will drop and recreate all tables. All data will be lost. Continue?"):
            click.echo("Aborted.")
            return

    async def _reset() -> None:
        try:
            await initialize_database(reset=True)
            click.echo("✅ Database reset completed successfully")
        except Exception as e:
            click.echo(f"❌ Failed to reset database: {e}")
            raise
        finally:
            await db_manager.close()

    asyncio.run(_reset())


@cli.command()
@click.argument("job", type=click.Choice(["sweep", "deposits", "settlements", "quotes"]))
def monitor(job: str) -> None:
    """Run one pass of a background job.

    JOB is one of sweep (hot-to-cold sweep), deposits (credit confirmed
    deposits), settlements (fail overdue settlements) or quotes (expire stale
    quotes).
    """

    async def _run() -> None:
        desk = await create_desk()
        engine = BackOfficeEngine(desk)
        try:
            handled = await engine.run_once(job)
            click.echo(f"✅ {job} pass handled {len(handled)} records")
        except Exception as e:
            click.echo(f"❌ {job} pass failed: {e}")
            raise
        finally:
            await desk.shutdown()
            await close_database()

    asyncio.run(_run())


if __name__ == "__main__":
    cli()
