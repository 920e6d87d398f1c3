"""Settlement fee and processing-time tables."""

from decimal import Decimal

from pydantic import BaseModel

from otc_desk.data.models import SettlementFees, SettlementMethod, SettlementPriority
from otc_desk.utils.exceptions import UnsupportedRailError

INSTRUCTION_METHODS: dict[str, SettlementMethod] = {
    "crypto_wallet": SettlementMethod.CRYPTO,
    "bank_wire": SettlementMethod.WIRE,
    "swift": SettlementMethod.SWIFT,
    "fedwire": SettlementMethod.FEDWIRE,
}

# crypto: fraction of notional; fiat: flat amount
SETTLEMENT_FEES: dict[SettlementMethod, dict[SettlementPriority, Decimal]] = {
    SettlementMethod.CRYPTO: {
        SettlementPriority.STANDARD: Decimal("0.001"),
        SettlementPriority.URGENT: Decimal("0.002"),
        SettlementPriority.SAME_DAY: Decimal("0.003"),
    },
    SettlementMethod.WIRE: {
        SettlementPriority.STANDARD: Decimal("25"),
        SettlementPriority.URGENT: Decimal("50"),
        SettlementPriority.SAME_DAY: Decimal("100"),
    },
    SettlementMethod.SWIFT: {
        SettlementPriority.STANDARD: Decimal("35"),
        SettlementPriority.URGENT: Decimal("75"),
        SettlementPriority.SAME_DAY: Decimal("150"),
    },
    SettlementMethod.FEDWIRE: {
        SettlementPriority.STANDARD: Decimal("15"),
        SettlementPriority.URGENT: Decimal("30"),
        SettlementPriority.SAME_DAY: Decimal("50"),
    },
}

PROCESSING_MINUTES: dict[SettlementMethod, dict[SettlementPriority, int]] = {
    SettlementMethod.CRYPTO: {
        SettlementPriority.STANDARD: 30,
        SettlementPriority.URGENT: 15,
        SettlementPriority.SAME_DAY: 5,
    },
    SettlementMethod.WIRE: {
        SettlementPriority.STANDARD: 1440,
        SettlementPriority.URGENT: 720,
        SettlementPriority.SAME_DAY: 240,
    },
    SettlementMethod.SWIFT: {
        SettlementPriority.STANDARD: 2880,
        SettlementPriority.URGENT: 1440,
        SettlementPriority.SAME_DAY: 480,
    },
    SettlementMethod.FEDWIRE: {
        SettlementPriority.STANDARD: 240,
        SettlementPriority.URGENT: 120,
        SettlementPriority.SAME_DAY: 60,
    },
}

NETWORK_FEE_PER_CRYPTO_SIDE = Decimal("0.0005")

PROCESSING_FEES: dict[SettlementPriority, Decimal] = {
    SettlementPriority.STANDARD: Decimal("25"),
    SettlementPriority.URGENT: Decimal("50"),
    SettlementPriority.SAME_DAY: Decimal("100"),
}


def resolve_method(instruction_method: str) -> SettlementMethod:
    """Map an instruction type to its settlement rail."""
    try:
        return INSTRUCTION_METHODS[instruction_method]
    except KeyError:
        raise UnsupportedRailError(
            f"Unsupported settlement method: {instruction_method}", method=instruction_method
        ) from None


def resolve_priority(priority: str) -> SettlementPriority:
    try:
        return SettlementPriority(priority)
    except ValueError:
        raise UnsupportedRailError(
            f"Unsupported settlement priority: {priority}", method="", priority=priority
        ) from None


def side_fee(method: SettlementMethod, priority: SettlementPriority, notional: Decimal) -> Decimal:
    """Fee for one side; crypto scales with notional, fiat is flat."""
    try:
        rate = SETTLEMENT_FEES[method][priority]
    except KeyError:
        raise UnsupportedRailError(
            f"No fee schedule for {method} at {priority} priority",
            method=str(method),
            priority=str(priority),
        ) from None
    if method == SettlementMethod.CRYPTO:
        return notional * rate
    return rate


def processing_minutes(method: SettlementMethod, priority: SettlementPriority) -> int:
    try:
        return PROCESSING_MINUTES[method][priority]
    except KeyError:
        raise UnsupportedRailError(
            f"No processing schedule for {method} at {priority} priority",
            method=str(method),
            priority=str(priority),
        ) from None


class SideTerms(BaseModel):
    """Fee and timing for one settlement side."""

    method: SettlementMethod
    fee: Decimal
    minutes: int


def side_terms(method: SettlementMethod, priority: SettlementPriority, notional: Decimal) -> SideTerms:
    return SideTerms(
        method=method,
        fee=side_fee(method, priority, notional),
        minutes=processing_minutes(method, priority),
    )


def calculate_fees(
    buyer: SideTerms,
    seller: SideTerms,
    priority: SettlementPriority,
) -> SettlementFees:
    """Combine both sides' fees with network and processing fees."""
    settlement_fee = buyer.fee + seller.fee
    crypto_sides = sum(1 for side in (buyer, seller) if side.method == SettlementMethod.CRYPTO)
    network_fee = NETWORK_FEE_PER_CRYPTO_SIDE * crypto_sides
    processing_fee = PROCESSING_FEES[priority]
    return SettlementFees(
        settlement_fee=settlement_fee,
        network_fee=network_fee,
        processing_fee=processing_fee,
        total_fees=settlement_fee + network_fee + processing_fee,
    )
