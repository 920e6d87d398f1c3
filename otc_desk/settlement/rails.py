"""Rail gateway adapters that actually move funds.

Every transfer carries a caller-chosen ``reference`` which adapters treat as an
idempotency key: submitting the same reference twice returns the original
transfer instead of moving funds again.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Optional

import ccxt
from pydantic import BaseModel

from otc_desk.config.settings import settings
from otc_desk.data.models import SettlementMethod, SettlementPriority, utcnow
from otc_desk.settlement.fees import processing_minutes
from otc_desk.utils.exceptions import RailRejectedError, UnsupportedRailError
from otc_desk.utils.retry import CircuitBreaker, CircuitOpenError

logger = logging.getLogger(__name__)


class RailTransfer(BaseModel):
    """Acknowledgement of a submitted transfer."""

    reference: str
    rail_reference: str
    method: SettlementMethod
    amount: Decimal
    currency: str
    destination: str
    estimated_completion: datetime


class RailGateway(ABC):
    """One settlement rail."""

    method: SettlementMethod

    @abstractmethod
    async def transfer(
        self,
        reference: str,
        amount: Decimal,
        currency: str,
        destination: str,
        priority: SettlementPriority = SettlementPriority.STANDARD,
    ) -> RailTransfer:
        """Submit a transfer.

        Raises:
            RailRejectedError: The rail refused the transfer
        """


class SandboxRail(RailGateway):
    """Rail that accepts transfers without moving funds.

    Rejections can be scripted per reference to exercise failure paths.
    """

    def __init__(self, method: SettlementMethod) -> None:
        self.method = method
        self.transfers: dict[str, RailTransfer] = {}
        self.submissions = 0
        self._rejections: dict[str, bool] = {}

    def reject(self, reference: str, retryable: bool = True) -> None:
        """Reject the next submission of ``reference``."""
        self._rejections[reference] = retryable

    async def transfer(
        self,
        reference: str,
        amount: Decimal,
        currency: str,
        destination: str,
        priority: SettlementPriority = SettlementPriority.STANDARD,
    ) -> RailTransfer:
        existing = self.transfers.get(reference)
        if existing is not None:
            logger.debug("Duplicate submission of %s on %s rail", reference, self.method.value)
            return existing

        if reference in self._rejections:
            retryable = self._rejections.pop(reference)
            raise RailRejectedError(
                f"{self.method.value} rail rejected {reference}",
                rail=self.method.value,
                reference=reference,
                retryable=retryable,
            )

        self.submissions += 1
        transfer = RailTransfer(
            reference=reference,
            rail_reference=f"{self.method.value.upper()}-{self.submissions:08d}",
            method=self.method,
            amount=amount,
            currency=currency,
            destination=destination,
            estimated_completion=utcnow() + timedelta(minutes=processing_minutes(self.method, priority)),
        )
        self.transfers[reference] = transfer
        logger.info(
            "Sandbox %s transfer %s: %s %s -> %s",
            self.method.value,
            reference,
            amount,
            currency,
            destination,
        )
        return transfer


class CcxtCryptoRail(RailGateway):
    """Crypto rail that withdraws from an exchange account via ccxt."""

    method = SettlementMethod.CRYPTO

    def __init__(self, exchange: Optional[Any] = None) -> None:
        """Initialize ccxt crypto rail.

        Args:
            exchange: Authenticated ccxt exchange (built from settings if omitted)
        """
        self.exchange = exchange or self._build_exchange()
        self.transfers: dict[str, RailTransfer] = {}
        self._lock = asyncio.Lock()

    def _build_exchange(self) -> Any:
        exchange_class = getattr(ccxt, settings.price_feed_exchange)
        exchange = exchange_class(
            {
                "apiKey": settings.price_feed_api_key,
                "secret": settings.price_feed_secret_key,
                "enableRateLimit": True,
            }
        )
        if settings.price_feed_sandbox:
            exchange.set_sandbox_mode(True)
        return exchange

    async def transfer(
        self,
        reference: str,
        amount: Decimal,
        currency: str,
        destination: str,
        priority: SettlementPriority = SettlementPriority.STANDARD,
    ) -> RailTransfer:
        async with self._lock:
            existing = self.transfers.get(reference)
            if existing is not None:
                return existing

            try:
                result = await asyncio.to_thread(
                    self.exchange.withdraw,
                    currency,
                    float(amount),
                    destination,
                    None,
                    {"clientWithdrawId": reference},
                )
            except (ccxt.InsufficientFunds, ccxt.InvalidAddress, ccxt.PermissionDenied) as e:
                raise RailRejectedError(
                    str(e), rail=self.method.value, reference=reference, retryable=False
                ) from e
            except ccxt.BaseError as e:
                raise RailRejectedError(
                    str(e), rail=self.method.value, reference=reference, retryable=True
                ) from e

            transfer = RailTransfer(
                reference=reference,
                rail_reference=str(result.get("id") or reference),
                method=self.method,
                amount=amount,
                currency=currency,
                destination=destination,
                estimated_completion=utcnow() + timedelta(minutes=processing_minutes(self.method, priority)),
            )
            self.transfers[reference] = transfer
            logger.info("Withdrawal %s submitted: %s %s -> %s", reference, amount, currency, destination)
            return transfer


class RailRouter:
    """Route transfers to the adapter for each method behind a circuit breaker."""

    def __init__(self, gateways: dict[SettlementMethod, RailGateway]) -> None:
        self.gateways = gateways
        self.breakers = {
            method: CircuitBreaker(
                name=f"rail:{method.value}",
                failure_threshold=5,
                reset_timeout=60,
                expected_exceptions=(RailRejectedError,),
            )
            for method in gateways
        }

    @classmethod
    def sandbox(cls) -> "RailRouter":
        """Router with a sandbox adapter for every method."""
        return cls({method: SandboxRail(method) for method in SettlementMethod})

    def gateway(self, method: SettlementMethod) -> RailGateway:
        try:
            return self.gateways[method]
        except KeyError:
            raise UnsupportedRailError(f"No rail configured for {method.value}", method=method.value) from None

    async def transfer(
        self,
        method: SettlementMethod,
        reference: str,
        amount: Decimal,
        currency: str,
        destination: str,
        priority: SettlementPriority = SettlementPriority.STANDARD,
    ) -> RailTransfer:
        gateway = self.gateway(method)
        try:
            return await self.breakers[method].call(
                gateway.transfer, reference, amount, currency, destination, priority
            )
        except CircuitOpenError as e:
            raise RailRejectedError(
                f"{method.value} rail unavailable: {e.message}",
                rail=method.value,
                reference=reference,
                retryable=True,
            ) from e
