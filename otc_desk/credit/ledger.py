"""Per-client, per-currency credit lines.

Every mutation is a read-modify-write guarded by the record version, retried
on conflict, and checked against ``0 <= available_credit <= credit_limit``
before it is written.
"""

import logging
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from pydantic import BaseModel

from otc_desk.config.settings import settings
from otc_desk.data.models import CreditLine, CreditLineStatus
from otc_desk.data.repository import Store
from otc_desk.market.rates import UsdConverter, usd_converter
from otc_desk.utils.exceptions import InsufficientCreditError, InvalidStateTransitionError
from otc_desk.utils.identifiers import CREDIT_LINE_PREFIX, new_id
from otc_desk.utils.retry import retry_on_conflict

logger = logging.getLogger(__name__)

RATE_QUANTUM = Decimal("0.0001")


class CreditUtilization(BaseModel):
    """Aggregate exposure across a client's credit lines, in USD."""

    client_id: str
    total_limit: Decimal
    total_available: Decimal
    utilized: Decimal
    utilization_pct: Decimal
    line_count: int


def _utilization_rate(limit: Decimal, available: Decimal) -> Decimal:
    if limit == 0:
        return Decimal("0")
    return ((limit - available) / limit).quantize(RATE_QUANTUM, rounding=ROUND_HALF_UP)


class CreditLedger:
    """Credit facility bookkeeping."""

    def __init__(self, store: Store, converter: Optional[UsdConverter] = None) -> None:
        self.store = store
        self.converter = converter or usd_converter

    async def create_credit_line(
        self,
        client_id: str,
        currency: str,
        credit_limit: Decimal,
        interest_rate: Optional[Decimal] = None,
        collateral_required: Decimal = Decimal("0"),
        maturity_date: Optional[datetime] = None,
        risk_rating: str = "medium",
    ) -> CreditLine:
        """Open a fully available credit line."""
        line = CreditLine(
            id=new_id(CREDIT_LINE_PREFIX),
            client_id=client_id,
            currency=currency.upper(),
            credit_limit=credit_limit,
            available_credit=credit_limit,
            interest_rate=settings.default_credit_interest_rate if interest_rate is None else interest_rate,
            collateral_required=collateral_required,
            maturity_date=maturity_date,
            risk_rating=risk_rating,
        )
        line = await self.store.credit_lines.create(line)
        logger.info("Credit line %s opened for %s: %s %s", line.id, client_id, credit_limit, line.currency)
        return line

    async def get_credit_line(self, credit_line_id: str) -> CreditLine:
        return await self.store.credit_lines.get_or_raise(credit_line_id)

    async def list_credit_lines(self, client_id: str) -> list[CreditLine]:
        return await self.store.credit_lines.list(client_id=client_id)

    async def find_line(self, client_id: str, currency: str) -> Optional[CreditLine]:
        """Oldest line for the client and currency, if any."""
        lines = await self.store.credit_lines.list(client_id=client_id, currency=currency.upper())
        return lines[-1] if lines else None

    async def get_utilization(self, client_id: str) -> CreditUtilization:
        """Aggregate all of a client's lines, converted to USD."""
        lines = await self.list_credit_lines(client_id)
        total_limit = sum(
            (self.converter.to_usd(line.credit_limit, line.currency) for line in lines), Decimal("0")
        )
        total_available = sum(
            (self.converter.to_usd(line.available_credit, line.currency) for line in lines), Decimal("0")
        )
        utilized = total_limit - total_available
        pct = (utilized / total_limit * 100).quantize(Decimal("0.01")) if total_limit else Decimal("0")
        return CreditUtilization(
            client_id=client_id,
            total_limit=total_limit,
            total_available=total_available,
            utilized=utilized,
            utilization_pct=pct,
            line_count=len(lines),
        )

    @retry_on_conflict()
    async def extend_credit_line(self, client_id: str, currency: str, delta: Decimal) -> CreditLine:
        """Raise limit and availability by ``delta``, opening a line if none exists.

        Args:
            client_id: Client identifier
            currency: Line currency
            delta: Positive increase

        Returns:
            The extended or newly created line
        """
        if delta <= 0:
            raise ValueError("Credit extension must be positive")

        line = await self.find_line(client_id, currency)
        if line is None:
            return await self.create_credit_line(client_id, currency, delta)

        limit = line.credit_limit + delta
        available = line.available_credit + delta
        updated = await self.store.credit_lines.update(
            line.model_copy(
                update={
                    "credit_limit": limit,
                    "available_credit": available,
                    "utilization_rate": _utilization_rate(limit, available),
                }
            )
        )
        logger.info("Credit line %s extended by %s %s to %s", line.id, delta, line.currency, limit)
        return updated

    @retry_on_conflict()
    async def draw_credit(self, client_id: str, currency: str, amount: Decimal) -> CreditLine:
        """Draw ``amount`` from the client's active line in ``currency``.

        Raises:
            InsufficientCreditError: No active line or not enough available
        """
        line = await self.find_line(client_id, currency)
        if line is None or line.status != CreditLineStatus.ACTIVE:
            raise InsufficientCreditError(
                f"No active {currency.upper()} credit line for {client_id}",
                currency=currency.upper(),
                requested=amount,
                available_credit=Decimal("0"),
                context={"client_id": client_id},
            )
        if amount > line.available_credit:
            raise InsufficientCreditError(
                f"Credit draw of {amount} {line.currency} exceeds available {line.available_credit}",
                currency=line.currency,
                requested=amount,
                available_credit=line.available_credit,
                context={"client_id": client_id, "credit_line_id": line.id},
            )

        available = line.available_credit - amount
        updated = await self.store.credit_lines.update(
            line.model_copy(
                update={
                    "available_credit": available,
                    "utilization_rate": _utilization_rate(line.credit_limit, available),
                }
            )
        )
        logger.info("Drew %s %s on credit line %s", amount, line.currency, line.id)
        return updated

    @retry_on_conflict()
    async def release_credit(self, credit_line_id: str, amount: Decimal) -> CreditLine:
        """Return drawn credit, capped at the line's limit."""
        line = await self.store.credit_lines.get_or_raise(credit_line_id)
        available = min(line.credit_limit, line.available_credit + amount)
        updated = await self.store.credit_lines.update(
            line.model_copy(
                update={
                    "available_credit": available,
                    "utilization_rate": _utilization_rate(line.credit_limit, available),
                }
            )
        )
        logger.info("Released %s %s on credit line %s", amount, line.currency, line.id)
        return updated

    @retry_on_conflict()
    async def suspend_credit_line(self, credit_line_id: str) -> CreditLine:
        line = await self.store.credit_lines.get_or_raise(credit_line_id)
        if line.status != CreditLineStatus.ACTIVE:
            raise InvalidStateTransitionError(
                f"Credit line {credit_line_id} is {line.status.value}",
                entity="credit_line",
                current_status=line.status.value,
                target_status=CreditLineStatus.SUSPENDED.value,
            )
        updated = await self.store.credit_lines.update(
            line.model_copy(update={"status": CreditLineStatus.SUSPENDED})
        )
        logger.warning("Credit line %s suspended", credit_line_id)
        return updated
