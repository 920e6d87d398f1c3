"""Domain records held by the desk's store.

Every record carries ``id``, ``version``, ``created_at`` and ``updated_at``;
``version`` is bumped by the repository on each conditional update. Monetary
fields are ``Decimal``.
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, model_validator


def utcnow() -> datetime:
    """Timezone-aware current time."""
    return datetime.now(timezone.utc)


class Record(BaseModel):
    """Base for durable records."""

    id: str
    version: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


# ---------------------------------------------------------------------------
# Clients
# ---------------------------------------------------------------------------


class VerificationTier(str, Enum):
    """Compliance verification tier."""

    UNVERIFIED = "unverified"
    EMAIL_VERIFIED = "email_verified"
    PHONE_VERIFIED = "phone_verified"
    FULL_KYC = "full_kyc"


class PricingTier(str, Enum):
    """Commercial tier used for spreads."""

    RETAIL = "retail"
    PROFESSIONAL = "professional"
    INSTITUTIONAL = "institutional"


class Client(Record):
    """Desk counterparty."""

    name: str = ""
    email: Optional[str] = None
    kyc_level: int = 0
    kyc_status: str = "none"
    email_verified: bool = False
    phone_verified: bool = False
    is_institutional: bool = False
    pricing_tier: PricingTier = PricingTier.RETAIL
    trading_limit: Decimal = Decimal("100000")
    risk_score: int = 1
    is_active: bool = True

    @property
    def verification_tier(self) -> VerificationTier:
        if self.kyc_level >= 3:
            return VerificationTier.FULL_KYC
        if self.phone_verified:
            return VerificationTier.PHONE_VERIFIED
        if self.email_verified:
            return VerificationTier.EMAIL_VERIFIED
        return VerificationTier.UNVERIFIED


# ---------------------------------------------------------------------------
# Deals, quotes, block trades
# ---------------------------------------------------------------------------


class TradeSide(str, Enum):
    """Side of a trade from the initiating client's view."""

    BUY = "buy"
    SELL = "sell"


class DealStatus(str, Enum):
    """Deal lifecycle status."""

    PENDING = "pending"
    MATCHED = "matched"
    EXECUTING = "executing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


DEAL_TRANSITIONS: dict[DealStatus, set[DealStatus]] = {
    DealStatus.PENDING: {DealStatus.MATCHED, DealStatus.CANCELLED},
    DealStatus.MATCHED: {DealStatus.EXECUTING, DealStatus.CANCELLED},
    DealStatus.EXECUTING: {DealStatus.COMPLETED, DealStatus.CANCELLED},
    DealStatus.COMPLETED: set(),
    DealStatus.CANCELLED: set(),
}


class Visibility(str, Enum):
    """Who may see a deal."""

    PUBLIC = "public"
    PRIVATE = "private"
    INSTITUTIONAL = "institutional"


class Deal(Record):
    """Negotiated OTC trade intent."""

    client_id: str
    counterparty_id: Optional[str] = None
    side: TradeSide
    base_currency: str
    quote_currency: str
    amount: Decimal = Field(gt=0)
    price: Decimal = Field(gt=0)
    total_value: Decimal
    visibility: Visibility = Visibility.PUBLIC
    valid_until: Optional[datetime] = None
    status: DealStatus = DealStatus.PENDING
    quote_id: Optional[str] = None
    executed_at: Optional[datetime] = None
    settled_at: Optional[datetime] = None
    notes: Optional[str] = None

    @model_validator(mode="after")
    def _check_invariants(self) -> "Deal":
        if self.total_value != self.amount * self.price:
            raise ValueError("total_value must equal amount * price")
        if self.status == DealStatus.PENDING and self.counterparty_id is not None:
            raise ValueError("a pending deal cannot have a counterparty")
        if (
            self.status in (DealStatus.MATCHED, DealStatus.EXECUTING, DealStatus.COMPLETED)
            and self.counterparty_id is None
        ):
            raise ValueError(f"a {self.status.value} deal requires a counterparty")
        return self

    @property
    def symbol(self) -> str:
        return f"{self.base_currency}/{self.quote_currency}"


class QuoteStatus(str, Enum):
    """Quote lifecycle status."""

    PENDING = "pending"
    QUOTED = "quoted"
    ACCEPTED = "accepted"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class Quote(Record):
    """Ephemeral price request."""

    client_id: str
    side: TradeSide
    base_currency: str
    quote_currency: str
    requested_amount: Decimal = Field(gt=0)
    quoted_price: Optional[Decimal] = None
    spread: Optional[Decimal] = None
    market_price: Optional[Decimal] = None
    valid_for: int = 300
    expires_at: datetime
    quoted_at: Optional[datetime] = None
    status: QuoteStatus = QuoteStatus.PENDING
    notes: Optional[str] = None

    @property
    def symbol(self) -> str:
        return f"{self.base_currency}/{self.quote_currency}"


class ExecutionType(str, Enum):
    """How a block trade is worked."""

    IMMEDIATE = "immediate"
    SCHEDULED = "scheduled"
    TWAP = "twap"
    VWAP = "vwap"


class BlockTradeStatus(str, Enum):
    """Block trade lifecycle status."""

    PENDING = "pending"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"


BLOCK_TRADE_TRANSITIONS: dict[BlockTradeStatus, set[BlockTradeStatus]] = {
    BlockTradeStatus.PENDING: {BlockTradeStatus.EXECUTING, BlockTradeStatus.FAILED},
    BlockTradeStatus.EXECUTING: {BlockTradeStatus.COMPLETED, BlockTradeStatus.FAILED},
    BlockTradeStatus.COMPLETED: set(),
    BlockTradeStatus.FAILED: set(),
}


class BlockTrade(Record):
    """Large pre-matched bilateral trade."""

    buyer_id: str
    seller_id: str
    base_currency: str
    quote_currency: str
    amount: Decimal = Field(gt=0)
    price: Decimal = Field(gt=0)
    total_value: Decimal
    execution_type: ExecutionType = ExecutionType.IMMEDIATE
    scheduled_for: Optional[datetime] = None
    execution_period_minutes: Optional[int] = None
    status: BlockTradeStatus = BlockTradeStatus.PENDING
    executed_at: Optional[datetime] = None
    settled_at: Optional[datetime] = None

    @model_validator(mode="after")
    def _check_invariants(self) -> "BlockTrade":
        if self.total_value != self.amount * self.price:
            raise ValueError("total_value must equal amount * price")
        if self.buyer_id == self.seller_id:
            raise ValueError("buyer and seller must differ")
        return self

    @property
    def symbol(self) -> str:
        return f"{self.base_currency}/{self.quote_currency}"


class LiquidityPool(Record):
    """Market-making inventory position."""

    provider_id: str
    base_currency: str
    quote_currency: str
    base_amount: Decimal = Field(ge=0)
    quote_amount: Decimal = Field(ge=0)
    bid_spread: Decimal
    ask_spread: Decimal
    min_trade_size: Decimal = Field(ge=0)
    max_trade_size: Decimal = Field(gt=0)
    is_active: bool = True
    utilization: Decimal = Decimal("0")
    volume_24h: Decimal = Decimal("0")


# ---------------------------------------------------------------------------
# Settlement
# ---------------------------------------------------------------------------


class SettlementMethod(str, Enum):
    """Rail used to move one side of a settlement."""

    CRYPTO = "crypto"
    WIRE = "wire"
    SWIFT = "swift"
    FEDWIRE = "fedwire"


class SettlementPriority(str, Enum):
    """Settlement urgency."""

    STANDARD = "standard"
    URGENT = "urgent"
    SAME_DAY = "same_day"


class SettlementInstruction(Record):
    """Registered payout rail for a client and currency.

    ``method`` is one of crypto_wallet, bank_wire, swift, fedwire.
    """

    client_id: str
    currency: str
    method: str
    bank_name: Optional[str] = None
    account_number: Optional[str] = None
    routing_number: Optional[str] = None
    swift_code: Optional[str] = None
    iban: Optional[str] = None
    wallet_address: Optional[str] = None
    network: Optional[str] = None
    beneficiary_name: Optional[str] = None
    beneficiary_address: Optional[str] = None
    is_verified: bool = False
    is_default: bool = False


class SettlementStatus(str, Enum):
    """Settlement lifecycle status."""

    PENDING = "pending"
    PROCESSING = "processing"
    CONFIRMING = "confirming"
    COMPLETED = "completed"
    FAILED = "failed"


SETTLEMENT_TRANSITIONS: dict[SettlementStatus, set[SettlementStatus]] = {
    SettlementStatus.PENDING: {SettlementStatus.PROCESSING, SettlementStatus.FAILED},
    SettlementStatus.PROCESSING: {SettlementStatus.CONFIRMING, SettlementStatus.FAILED},
    SettlementStatus.CONFIRMING: {SettlementStatus.COMPLETED, SettlementStatus.FAILED},
    SettlementStatus.COMPLETED: set(),
    SettlementStatus.FAILED: set(),
}


class LegStatus(str, Enum):
    """Status of one side of a settlement."""

    PENDING = "pending"
    INITIATED = "initiated"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"


class SettlementSide(str, Enum):
    """Which party a settlement leg belongs to."""

    BUYER = "buyer"
    SELLER = "seller"


class SettlementLeg(BaseModel):
    """One party's transfer within a settlement."""

    party_id: str
    instruction_id: str
    method: SettlementMethod
    amount: Decimal
    currency: str
    status: LegStatus = LegStatus.PENDING
    reference: Optional[str] = None
    rail_reference: Optional[str] = None
    estimated_completion: Optional[datetime] = None


class SettlementFees(BaseModel):
    """Fee breakdown."""

    settlement_fee: Decimal
    network_fee: Decimal
    processing_fee: Decimal
    total_fees: Decimal


class SettlementTimeline(BaseModel):
    """Settlement timestamps."""

    initiated: datetime
    expected_completion: datetime
    actual_completion: Optional[datetime] = None
    failed_at: Optional[datetime] = None


class Settlement(Record):
    """Two-sided execution record for a deal or block trade."""

    source_type: str  # deal, block_trade
    source_id: str
    priority: SettlementPriority
    status: SettlementStatus = SettlementStatus.PENDING
    buyer: SettlementLeg
    seller: SettlementLeg
    fees: SettlementFees
    timeline: SettlementTimeline
    credit_line_id: Optional[str] = None
    credit_drawn: Decimal = Decimal("0")
    failure_reason: Optional[str] = None

    def leg(self, side: SettlementSide) -> SettlementLeg:
        return self.buyer if side == SettlementSide.BUYER else self.seller


# ---------------------------------------------------------------------------
# Credit
# ---------------------------------------------------------------------------


class CreditLineStatus(str, Enum):
    """Credit facility status."""

    ACTIVE = "active"
    SUSPENDED = "suspended"
    EXPIRED = "expired"


class CreditLine(Record):
    """Per-client, per-currency credit facility."""

    client_id: str
    currency: str
    credit_limit: Decimal = Field(ge=0)
    available_credit: Decimal
    utilization_rate: Decimal = Decimal("0")
    interest_rate: Decimal
    collateral_required: Decimal = Decimal("0")
    maturity_date: Optional[datetime] = None
    status: CreditLineStatus = CreditLineStatus.ACTIVE
    risk_rating: str = "medium"

    @model_validator(mode="after")
    def _check_availability(self) -> "CreditLine":
        if self.available_credit < 0:
            raise ValueError("available_credit cannot be negative")
        if self.available_credit > self.credit_limit:
            raise ValueError("available_credit cannot exceed credit_limit")
        return self

    @property
    def utilized(self) -> Decimal:
        return self.credit_limit - self.available_credit


# ---------------------------------------------------------------------------
# Compliance
# ---------------------------------------------------------------------------


class TransactionType(str, Enum):
    """Kinds of client activity counted against limits."""

    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    TRADE = "trade"


class TransactionRecord(Record):
    """Usage ledger entry for limit accounting."""

    client_id: str
    transaction_type: TransactionType
    amount: Decimal
    currency: str
    amount_usd: Decimal
    reference: Optional[str] = None


# ---------------------------------------------------------------------------
# Custody
# ---------------------------------------------------------------------------


class CustodyBalance(Record):
    """Client balance held by the desk. ``id`` is ``client:currency``."""

    client_id: str
    currency: str
    available: Decimal = Field(default=Decimal("0"), ge=0)
    frozen: Decimal = Field(default=Decimal("0"), ge=0)


class WalletKind(str, Enum):
    """Desk wallet temperature."""

    HOT = "hot"
    COLD = "cold"


class WalletBalance(Record):
    """Desk wallet balance. ``id`` is ``kind:currency``."""

    kind: WalletKind
    currency: str
    balance: Decimal = Field(default=Decimal("0"), ge=0)


class WhitelistEntry(Record):
    """Approved withdrawal destination. ``id`` is ``client:currency:address``."""

    client_id: str
    currency: str
    address: str
    label: Optional[str] = None


class WithdrawalStatus(str, Enum):
    """Withdrawal lifecycle status."""

    PENDING_SIGNATURES = "pending_signatures"
    APPROVED = "approved"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class Signature(BaseModel):
    """One multisig approval."""

    signer_id: str
    signature: str
    signed_at: datetime = Field(default_factory=utcnow)


class Withdrawal(Record):
    """Client withdrawal request."""

    client_id: str
    currency: str
    amount: Decimal = Field(gt=0)
    amount_usd: Decimal
    address: str
    network: Optional[str] = None
    requires_multisig: bool = False
    required_signatures: int = 1
    signatures: list[Signature] = Field(default_factory=list)
    status: WithdrawalStatus = WithdrawalStatus.APPROVED
    auto_approved: bool = False
    travel_rule_required: bool = False
    source_wallet: Optional[WalletKind] = None
    rail_reference: Optional[str] = None
    failure_reason: Optional[str] = None
    completed_at: Optional[datetime] = None


class DepositStatus(str, Enum):
    """Deposit lifecycle status."""

    PENDING = "pending"
    CREDITED = "credited"


class Deposit(Record):
    """Incoming on-chain deposit awaiting confirmation depth."""

    client_id: str
    currency: str
    amount: Decimal = Field(gt=0)
    tx_hash: str
    network: str = "mainnet"
    confirmations: int = 0
    required_confirmations: int
    status: DepositStatus = DepositStatus.PENDING
    credited_at: Optional[datetime] = None


class SweepStatus(str, Enum):
    """Sweep lifecycle status."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class SweepRecord(Record):
    """Hot-to-cold sweep; the hot wallet is debited while pending."""

    currency: str
    amount: Decimal
    amount_usd: Decimal
    destination: str
    status: SweepStatus = SweepStatus.PENDING
    rail_reference: Optional[str] = None
    failure_reason: Optional[str] = None


# ---------------------------------------------------------------------------
# Market data
# ---------------------------------------------------------------------------


class MarketData(BaseModel):
    """Price-feed snapshot for a symbol."""

    symbol: str
    price: Decimal = Field(gt=0)
    bid_price: Optional[Decimal] = None
    ask_price: Optional[Decimal] = None
    volatility: Decimal = Decimal("0")
    volume_24h: Decimal = Decimal("0")
    timestamp: datetime = Field(default_factory=utcnow)
