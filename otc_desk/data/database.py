"""SQLAlchemy-backed store and database lifecycle."""

import logging
from contextlib import asynccontextmanager
from contextvars import ContextVar
from datetime import datetime
from enum import Enum
from typing import Any, AsyncIterator, Callable, Optional, Type

from sqlalchemy import JSON, Column, DateTime, Integer, MetaData, String, Table, insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine
from sqlalchemy.pool import StaticPool

from otc_desk.config.settings import settings
from otc_desk.data.models import Record
from otc_desk.data.repository import (
    ENTITIES,
    InMemoryStore,
    Repository,
    Store,
    T,
    matches,
    next_updated_at,
)
from otc_desk.utils.exceptions import ConfigurationError, RecordNotFoundError

logger = logging.getLogger(__name__)

metadata = MetaData()

# record fields copied out of the payload into indexed columns for filtering
INDEXED_FIELDS = ("client_id", "status", "source_id", "tx_hash")


def _indexed_fields(model: Type[Record]) -> list[str]:
    return [field for field in INDEXED_FIELDS if field in model.model_fields]


# one table per entity: id, version, JSON payload, timestamps, filter columns
TABLES: dict[str, Table] = {
    entity: Table(
        entity,
        metadata,
        Column("id", String(80), primary_key=True),
        Column("version", Integer, nullable=False),
        Column("payload", JSON, nullable=False),
        Column("created_at", DateTime(timezone=True), nullable=False, index=True),
        Column("updated_at", DateTime(timezone=True), nullable=False),
        *(Column(field, String(120), nullable=True, index=True) for field in _indexed_fields(model)),
    )
    for entity, model in ENTITIES.items()
}


def _column_value(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, Enum):
        return value.value
    return str(value)


_connection: ContextVar[Optional[AsyncConnection]] = ContextVar("otc_desk_sql_connection", default=None)


class SqlRepository(Repository[T]):
    """Repository storing each record as a versioned JSON row."""

    def __init__(self, model: Type[T], entity: str, engine: AsyncEngine) -> None:
        super().__init__(model, entity)
        self.engine = engine
        self.table = TABLES[entity]
        self.indexed = _indexed_fields(model)

    @asynccontextmanager
    async def _conn(self) -> AsyncIterator[AsyncConnection]:
        current = _connection.get()
        if current is not None:
            yield current
            return
        async with self.engine.begin() as conn:
            yield conn

    def _row_values(self, record: T) -> dict[str, Any]:
        return {
            "id": record.id,
            "version": record.version,
            "payload": record.model_dump(mode="json"),
            "created_at": record.created_at,
            "updated_at": record.updated_at,
            **{field: _column_value(getattr(record, field)) for field in self.indexed},
        }

    def _from_row(self, row: Any) -> T:
        return self.model.model_validate(row.payload)

    async def create(self, record: T) -> T:
        stored = self._validated(record, version=1)
        try:
            async with self._conn() as conn:
                await conn.execute(insert(self.table).values(**self._row_values(stored)))
        except IntegrityError as e:
            raise self._conflict(record.id, 0) from e
        return stored

    async def get(self, record_id: str) -> Optional[T]:
        async with self._conn() as conn:
            result = await conn.execute(select(self.table).where(self.table.c.id == record_id))
            row = result.first()
        return self._from_row(row) if row is not None else None

    async def list(
        self,
        predicate: Optional[Callable[[T], bool]] = None,
        since: Optional[datetime] = None,
        **filters: Any,
    ) -> list[T]:
        query = select(self.table)
        for field, value in filters.items():
            if value is None or field not in self.indexed:
                continue
            column = self.table.c[field]
            if isinstance(value, (tuple, list, set, frozenset)):
                query = query.where(column.in_([_column_value(v) for v in value]))
            else:
                query = query.where(column == _column_value(value))
        if since is not None:
            query = query.where(self.table.c.created_at >= since)
        query = query.order_by(self.table.c.created_at.desc())

        async with self._conn() as conn:
            rows = (await conn.execute(query)).all()
        records = [self._from_row(row) for row in rows]
        # fields without a column are matched on the payload
        return [
            record for record in records
            if matches(record, filters, since) and (predicate is None or predicate(record))
        ]

    async def update(self, record: T, expected_version: Optional[int] = None) -> T:
        expected = record.version if expected_version is None else expected_version
        current = await self.get(record.id)
        if current is None:
            raise RecordNotFoundError(
                f"{self.model.__name__} {record.id} not found",
                entity=self.entity,
                record_id=record.id,
            )

        stored = self._validated(
            record,
            version=expected + 1,
            created_at=current.created_at,
            updated_at=next_updated_at(current),
        )
        statement = (
            update(self.table)
            .where(self.table.c.id == record.id)
            .where(self.table.c.version == expected)
            .values(
                version=stored.version,
                payload=stored.model_dump(mode="json"),
                updated_at=stored.updated_at,
                **{field: _column_value(getattr(stored, field)) for field in self.indexed},
            )
        )
        async with self._conn() as conn:
            result = await conn.execute(statement)
        if result.rowcount != 1:
            raise self._conflict(record.id, expected)
        return stored


class SqlStore(Store):
    """Store backed by a relational database."""

    def __init__(self, engine: AsyncEngine) -> None:
        self.engine = engine
        super().__init__(lambda model, entity: SqlRepository(model, entity, engine))

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        if _connection.get() is not None:
            yield
            return

        async with self.engine.begin() as conn:
            token = _connection.set(conn)
            try:
                yield
            finally:
                _connection.reset(token)


class DatabaseManager:
    """Own the async engine for the configured database."""

    def __init__(self, database_url: Optional[str] = None) -> None:
        self.database_url = settings.database_url if database_url is None else database_url
        self.engine: Optional[AsyncEngine] = None

    async def initialize(self) -> AsyncEngine:
        """Create the engine (idempotent)."""
        if self.engine is not None:
            return self.engine
        if not self.database_url:
            raise ConfigurationError("database_url is not configured")

        kwargs: dict[str, Any] = {"echo": False}
        if self.database_url.startswith("sqlite"):
            kwargs["poolclass"] = StaticPool
            kwargs["connect_args"] = {"check_same_thread": False}
        else:
            kwargs.update(pool_size=5, max_overflow=10, pool_pre_ping=True, pool_recycle=3600)

        self.engine = create_async_engine(self.database_url, **kwargs)
        logger.info("Database engine created for %s", self.engine.url.render_as_string(hide_password=True))
        return self.engine

    async def close(self) -> None:
        """Dispose of the engine."""
        if self.engine is not None:
            await self.engine.dispose()
            self.engine = None
            logger.info("Database engine disposed")


db_manager = DatabaseManager()


async def init_database() -> Store:
    """Build the configured store, creating tables when SQL-backed."""
    if not db_manager.database_url:
        logger.info("No database_url configured; using in-memory store")
        return InMemoryStore()

    from otc_desk.data.migrations import create_tables

    engine = await db_manager.initialize()
    await create_tables(engine)
    return SqlStore(engine)


async def close_database() -> None:
    """Release database resources."""
    await db_manager.close()
