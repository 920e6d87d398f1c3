"""Repository interface and the in-memory store.

Repositories hand out copies: callers mutate a copy and write it back with
``update(record, expected_version)``, which fails with
``ConcurrentModificationError`` when someone else wrote first.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from contextvars import ContextVar
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Callable, Generic, Optional, Type, TypeVar

from otc_desk.data.models import (
    BlockTrade,
    Client,
    CreditLine,
    CustodyBalance,
    Deal,
    Deposit,
    LiquidityPool,
    Quote,
    Record,
    Settlement,
    SettlementInstruction,
    SweepRecord,
    TransactionRecord,
    WalletBalance,
    WhitelistEntry,
    Withdrawal,
    utcnow,
)
from otc_desk.utils.exceptions import ConcurrentModificationError, RecordNotFoundError

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=Record)

# entity name -> record model, one repository each
ENTITIES: dict[str, Type[Record]] = {
    "clients": Client,
    "deals": Deal,
    "quotes": Quote,
    "block_trades": BlockTrade,
    "liquidity_pools": LiquidityPool,
    "instructions": SettlementInstruction,
    "credit_lines": CreditLine,
    "settlements": Settlement,
    "transactions": TransactionRecord,
    "custody_balances": CustodyBalance,
    "wallet_balances": WalletBalance,
    "whitelist": WhitelistEntry,
    "withdrawals": Withdrawal,
    "deposits": Deposit,
    "sweeps": SweepRecord,
}


def matches(record: Record, filters: dict[str, Any], since: Optional[datetime] = None) -> bool:
    """Equality filter; ``None`` values are ignored and tuples match any member."""
    if since is not None and record.created_at < since:
        return False
    for key, value in filters.items():
        if value is None:
            continue
        if isinstance(value, (tuple, list, set, frozenset)):
            if getattr(record, key) not in value:
                return False
        elif getattr(record, key) != value:
            return False
    return True


def next_updated_at(previous: Record):
    """Wall clock, forced strictly past the previous write."""
    now = utcnow()
    if now <= previous.updated_at:
        return previous.updated_at + timedelta(microseconds=1)
    return now


class Repository(ABC, Generic[T]):
    """Persistence contract for one entity type."""

    def __init__(self, model: Type[T], entity: str) -> None:
        """Initialize repository.

        Args:
            model: Record model stored here.
            entity: Entity (table) name.
        """
        self.model = model
        self.entity = entity

    @abstractmethod
    async def create(self, record: T) -> T:
        """Persist a new record at version 1."""

    @abstractmethod
    async def get(self, record_id: str) -> Optional[T]:
        """Fetch a record by id."""

    @abstractmethod
    async def list(
        self,
        predicate: Optional[Callable[[T], bool]] = None,
        since: Optional[datetime] = None,
        **filters: Any,
    ) -> list[T]:
        """Return matching records, newest first.

        Args:
            predicate: Extra test applied to each candidate
            since: Only records created at or after this time
            **filters: Field equality filters; a tuple value matches any member
        """

    @abstractmethod
    async def update(self, record: T, expected_version: Optional[int] = None) -> T:
        """Write ``record`` if the stored version equals ``expected_version``.

        ``expected_version`` defaults to ``record.version``.
        """

    async def get_or_raise(self, record_id: str) -> T:
        record = await self.get(record_id)
        if record is None:
            raise RecordNotFoundError(
                f"{self.model.__name__} {record_id} not found",
                entity=self.entity,
                record_id=record_id,
            )
        return record

    def _validated(self, record: T, **changes: Any) -> T:
        data = record.model_dump()
        data.update(changes)
        return self.model.model_validate(data)

    def _conflict(self, record_id: str, expected_version: int) -> ConcurrentModificationError:
        return ConcurrentModificationError(
            f"{self.model.__name__} {record_id} was modified concurrently",
            entity=self.entity,
            record_id=record_id,
            expected_version=expected_version,
        )


# (repository, record id, previous copy or None, written copy) for each write in a transaction
_journal: ContextVar[Optional[list]] = ContextVar("otc_desk_memory_journal", default=None)


class InMemoryRepository(Repository[T]):
    """Process-local repository.

    Every method runs without suspending between its read and its write, so
    each call is atomic on the event loop.
    """

    def __init__(self, model: Type[T], entity: str) -> None:
        super().__init__(model, entity)
        self._records: dict[str, T] = {}

    async def create(self, record: T) -> T:
        if record.id in self._records:
            raise self._conflict(record.id, 0)
        stored = self._validated(record, version=1)
        self._journal_write(record.id, None, stored)
        self._records[record.id] = stored
        return stored.model_copy(deep=True)

    async def get(self, record_id: str) -> Optional[T]:
        record = self._records.get(record_id)
        return record.model_copy(deep=True) if record is not None else None

    async def list(
        self,
        predicate: Optional[Callable[[T], bool]] = None,
        since: Optional[datetime] = None,
        **filters: Any,
    ) -> list[T]:
        found = [
            record.model_copy(deep=True)
            for record in self._records.values()
            if matches(record, filters, since) and (predicate is None or predicate(record))
        ]
        found.sort(key=lambda r: r.created_at, reverse=True)
        return found

    async def update(self, record: T, expected_version: Optional[int] = None) -> T:
        expected = record.version if expected_version is None else expected_version
        current = self._records.get(record.id)
        if current is None:
            raise RecordNotFoundError(
                f"{self.model.__name__} {record.id} not found",
                entity=self.entity,
                record_id=record.id,
            )
        if current.version != expected:
            raise self._conflict(record.id, expected)

        stored = self._validated(
            record,
            version=expected + 1,
            created_at=current.created_at,
            updated_at=next_updated_at(current),
        )
        self._journal_write(record.id, current, stored)
        self._records[record.id] = stored
        return stored.model_copy(deep=True)

    def _journal_write(self, record_id: str, previous: Optional[T], written: T) -> None:
        journal = _journal.get()
        if journal is not None:
            journal.append((self, record_id, previous, written))

    def _restore(self, record_id: str, previous: Optional[T], written: T) -> None:
        if self._records.get(record_id) is not written:
            # a later write by another task wins over the rollback
            logger.warning("%s %s changed outside the rolled-back transaction", self.model.__name__, record_id)
            return
        if previous is None:
            self._records.pop(record_id, None)
        else:
            self._records[record_id] = previous


class Store(ABC):
    """One repository per entity plus a transaction scope."""

    clients: Repository[Client]
    deals: Repository[Deal]
    quotes: Repository[Quote]
    block_trades: Repository[BlockTrade]
    liquidity_pools: Repository[LiquidityPool]
    instructions: Repository[SettlementInstruction]
    credit_lines: Repository[CreditLine]
    settlements: Repository[Settlement]
    transactions: Repository[TransactionRecord]
    custody_balances: Repository[CustodyBalance]
    wallet_balances: Repository[WalletBalance]
    whitelist: Repository[WhitelistEntry]
    withdrawals: Repository[Withdrawal]
    deposits: Repository[Deposit]
    sweeps: Repository[SweepRecord]

    def __init__(self, factory: Callable[[Type[Record], str], Repository]) -> None:
        for entity, model in ENTITIES.items():
            setattr(self, entity, factory(model, entity))

    @abstractmethod
    def transaction(self) -> Any:
        """Async context manager making the enclosed writes all-or-nothing."""


class InMemoryStore(Store):
    """Store used for development and tests.

    Transactions are serialized by a lock; writes made outside a transaction
    are never overwritten by a rollback.
    """

    def __init__(self) -> None:
        super().__init__(InMemoryRepository)
        self._lock = asyncio.Lock()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        outer = _journal.get()
        if outer is not None:
            # nested scope joins the outer transaction
            yield
            return

        async with self._lock:
            journal: list = []
            token = _journal.set(journal)
            try:
                yield
            except BaseException:
                for repository, record_id, previous, written in reversed(journal):
                    repository._restore(record_id, previous, written)
                logger.debug("Rolled back %d in-memory writes", len(journal))
                raise
            finally:
                _journal.reset(token)
