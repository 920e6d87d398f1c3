"""Custom exceptions for the OTC desk."""

from decimal import Decimal
from typing import Any, Dict, Optional


class OTCDeskError(Exception):
    """Base exception for OTC desk errors."""

    retryable = False

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None
    ) -> None:
        """Initialize OTC desk error.

        Args:
            message: Error message
            error_code: Optional error code for categorization
            context: Additional context information
        """
        super().__init__(message)
        self.message = message
        self.error_code = error_code or type(self).__name__
        self.context = context or {}

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for API responses."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "context": {key: _plain(value) for key, value in self.context.items()},
        }


def _plain(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    return value


class RecordNotFoundError(OTCDeskError):
    """Requested record does not exist."""

    def __init__(
        self,
        message: str,
        entity: str,
        record_id: str,
        error_code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None
    ) -> None:
        """Initialize record not found error.

        Args:
            message: Error message
            entity: Entity type name
            record_id: Identifier that was looked up
            error_code: Optional error code
            context: Additional context information
        """
        super().__init__(message, error_code, {"entity": entity, "record_id": record_id, **(context or {})})
        self.entity = entity
        self.record_id = record_id


class NoMarketDataError(OTCDeskError):
    """Price feed has no entry for the trading symbol."""

    def __init__(
        self,
        message: str,
        symbol: str,
        error_code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None
    ) -> None:
        """Initialize no market data error.

        Args:
            message: Error message
            symbol: Symbol without market data
            error_code: Optional error code
            context: Additional context information
        """
        super().__init__(message, error_code, {"symbol": symbol, **(context or {})})
        self.symbol = symbol


class PriceFeedError(OTCDeskError):
    """Price feed is unreachable or returned garbage."""

    retryable = True


class InvalidStateTransitionError(OTCDeskError):
    """Illegal lifecycle transition for a record."""

    def __init__(
        self,
        message: str,
        entity: str,
        current_status: str,
        target_status: str,
        error_code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None
    ) -> None:
        """Initialize invalid state transition error.

        Args:
            message: Error message
            entity: Entity type name
            current_status: Status the record is in
            target_status: Status that was requested
            error_code: Optional error code
            context: Additional context information
        """
        super().__init__(
            message,
            error_code,
            {
                "entity": entity,
                "current_status": current_status,
                "target_status": target_status,
                **(context or {}),
            },
        )
        self.entity = entity
        self.current_status = current_status
        self.target_status = target_status


class ConcurrentModificationError(OTCDeskError):
    """Optimistic-lock conflict: the record changed since it was read."""

    retryable = True

    def __init__(
        self,
        message: str,
        entity: str,
        record_id: str,
        expected_version: int,
        error_code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None
    ) -> None:
        """Initialize concurrent modification error.

        Args:
            message: Error message
            entity: Entity type name
            record_id: Record that was written
            expected_version: Version the writer expected
            error_code: Optional error code
            context: Additional context information
        """
        super().__init__(
            message,
            error_code,
            {"entity": entity, "record_id": record_id, "expected_version": expected_version, **(context or {})},
        )
        self.entity = entity
        self.record_id = record_id
        self.expected_version = expected_version


class UnsupportedRailError(OTCDeskError):
    """Settlement method or priority is not supported."""

    def __init__(
        self,
        message: str,
        method: str,
        priority: Optional[str] = None,
        error_code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None
    ) -> None:
        """Initialize unsupported rail error.

        Args:
            message: Error message
            method: Requested settlement method or instruction type
            priority: Requested priority
            error_code: Optional error code
            context: Additional context information
        """
        super().__init__(message, error_code, {"method": method, "priority": priority, **(context or {})})
        self.method = method
        self.priority = priority


class RailRejectedError(OTCDeskError):
    """External rail refused or failed a transfer."""

    def __init__(
        self,
        message: str,
        rail: str,
        reference: str,
        retryable: bool = True,
        error_code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None
    ) -> None:
        """Initialize rail rejected error.

        Args:
            message: Error message
            rail: Rail that rejected the transfer
            reference: Idempotent transfer reference
            retryable: Whether the caller may retry with the same reference
            error_code: Optional error code
            context: Additional context information
        """
        super().__init__(message, error_code, {"rail": rail, "reference": reference, **(context or {})})
        self.rail = rail
        self.reference = reference
        self.retryable = retryable


class InsufficientBalanceError(OTCDeskError):
    """Insufficient custody balance for the operation."""

    def __init__(
        self,
        message: str,
        currency: str,
        required_balance: Decimal,
        available_balance: Decimal,
        error_code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None
    ) -> None:
        """Initialize insufficient balance error.

        Args:
            message: Error message
            currency: Currency of the balance
            required_balance: Required balance amount
            available_balance: Available balance amount
            error_code: Optional error code
            context: Additional context information
        """
        super().__init__(
            message,
            error_code,
            {
                "currency": currency,
                "required_balance": required_balance,
                "available_balance": available_balance,
                **(context or {}),
            },
        )
        self.currency = currency
        self.required_balance = required_balance
        self.available_balance = available_balance


class InsufficientCreditError(OTCDeskError):
    """Credit draw would push available credit below zero."""

    def __init__(
        self,
        message: str,
        currency: str,
        requested: Decimal,
        available_credit: Decimal,
        error_code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None
    ) -> None:
        """Initialize insufficient credit error.

        Args:
            message: Error message
            currency: Credit line currency
            requested: Requested draw amount
            available_credit: Credit available on the line
            error_code: Optional error code
            context: Additional context information
        """
        super().__init__(
            message,
            error_code,
            {
                "currency": currency,
                "requested": requested,
                "available_credit": available_credit,
                **(context or {}),
            },
        )
        self.currency = currency
        self.requested = requested
        self.available_credit = available_credit


class AddressNotWhitelistedError(OTCDeskError):
    """Withdrawal destination has not been whitelisted."""

    def __init__(
        self,
        message: str,
        client_id: str,
        currency: str,
        address: str,
        error_code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None
    ) -> None:
        """Initialize address not whitelisted error.

        Args:
            message: Error message
            client_id: Client requesting the withdrawal
            currency: Withdrawal currency
            address: Destination address
            error_code: Optional error code
            context: Additional context information
        """
        super().__init__(
            message,
            error_code,
            {"client_id": client_id, "currency": currency, "address": address, **(context or {})},
        )
        self.client_id = client_id
        self.currency = currency
        self.address = address


class UnauthorizedSignerError(OTCDeskError):
    """Multisig signer is not one of the configured custody signers."""

    def __init__(
        self,
        message: str,
        signer_id: str,
        withdrawal_id: str,
        error_code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None
    ) -> None:
        """Initialize unauthorized signer error.

        Args:
            message: Error message
            signer_id: Signer that attempted to sign
            withdrawal_id: Withdrawal being signed
            error_code: Optional error code
            context: Additional context information
        """
        super().__init__(
            message,
            error_code,
            {"signer_id": signer_id, "withdrawal_id": withdrawal_id, **(context or {})},
        )
        self.signer_id = signer_id
        self.withdrawal_id = withdrawal_id


class InvalidAddressError(OTCDeskError):
    """Address fails the per-currency format rule."""

    def __init__(
        self,
        message: str,
        currency: str,
        address: str,
        error_code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None
    ) -> None:
        """Initialize invalid address error.

        Args:
            message: Error message
            currency: Currency whose format rule failed
            address: Offending address
            error_code: Optional error code
            context: Additional context information
        """
        super().__init__(message, error_code, {"currency": currency, "address": address, **(context or {})})
        self.currency = currency
        self.address = address


class ComplianceRejectedError(OTCDeskError):
    """Compliance gate refused the transaction."""

    LIMIT_EXCEEDED = "limit_exceeded"
    KYC_REQUIRED = "kyc_required"
    SANCTIONS_HIT = "sanctions_hit"

    def __init__(
        self,
        message: str,
        reason: str,
        limit: Optional[Decimal] = None,
        remaining: Optional[Decimal] = None,
        error_code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None
    ) -> None:
        """Initialize compliance rejected error.

        Args:
            message: Error message
            reason: One of limit_exceeded, kyc_required, sanctions_hit
            limit: Limit or threshold that was breached
            remaining: Allowance still available to the client
            error_code: Optional error code
            context: Additional context information
        """
        super().__init__(
            message,
            error_code,
            {"reason": reason, "limit": limit, "remaining": remaining, **(context or {})},
        )
        self.reason = reason
        self.limit = limit
        self.remaining = remaining


class ConfigurationError(OTCDeskError):
    """Configuration and settings errors."""
    pass


def map_ccxt_exception(exc: Exception, symbol: str) -> OTCDeskError:
    """Map CCXT exceptions raised by the price feed to desk exceptions.

    Args:
        exc: CCXT exception
        symbol: Symbol being looked up

    Returns:
        Mapped custom exception
    """
    exc_message = str(exc)
    exc_type = type(exc).__name__
    lowered = exc_message.lower()

    if exc_type == "BadSymbol" or (
        "symbol" in lowered and ("not found" in lowered or "does not exist" in lowered)
    ):
        return NoMarketDataError(
            message=f"Market data not available for {symbol}",
            symbol=symbol,
            error_code=exc_type,
        )

    return PriceFeedError(
        message=exc_message,
        error_code=exc_type,
        context={"symbol": symbol},
    )
