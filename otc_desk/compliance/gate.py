"""Tiered transaction limits, KYC escalation, travel rule and sanctions screening."""

import logging
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel

from otc_desk.config.settings import settings
from otc_desk.data.models import (
    Client,
    TransactionRecord,
    TransactionType,
    VerificationTier,
    utcnow,
)
from otc_desk.data.repository import Store
from otc_desk.market.rates import UsdConverter, usd_converter
from otc_desk.utils.exceptions import ComplianceRejectedError
from otc_desk.utils.identifiers import TRANSACTION_PREFIX, new_id
from otc_desk.utils.logging import DeskLogger
from otc_desk.utils.retry import retry_on_conflict

logger = logging.getLogger(__name__)
desk_logger = DeskLogger(__name__)

# USD (daily, monthly)
TIER_LIMITS: dict[VerificationTier, tuple[Decimal, Decimal]] = {
    VerificationTier.UNVERIFIED: (Decimal("1000"), Decimal("5000")),
    VerificationTier.EMAIL_VERIFIED: (Decimal("25000"), Decimal("100000")),
    VerificationTier.PHONE_VERIFIED: (Decimal("250000"), Decimal("1000000")),
    VerificationTier.FULL_KYC: (Decimal("5000000"), Decimal("50000000")),
}

# single transactions above these force KYC escalation
KYC_THRESHOLDS: dict[VerificationTier, Decimal] = {
    VerificationTier.UNVERIFIED: Decimal("10000"),
    VerificationTier.EMAIL_VERIFIED: Decimal("100000"),
}

HIGH_RISK_USD = Decimal("100000")
MEDIUM_RISK_USD = Decimal("10000")

AUTO_APPROVE_USD = Decimal("1000")
AUTO_APPROVE_VERIFIED_USD = Decimal("10000")

SANCTIONED_ADDRESSES = frozenset(
    {
        "1A1zP1eP5QGefi2DMPTfTL5SLmv7DivfNa",
        "3J98t1WpEZ73CNmQviecrnyiWrnqRhWNLy",
    }
)
SANCTIONED_EMAIL_DOMAINS = frozenset({"sanctioned.example.com"})

KYC_LEVELS = {"email": 1, "phone": 2, "document": 3}
KYC_STATUSES = {0: "none", 1: "basic", 2: "enhanced", 3: "complete"}


class RiskLevel(str, Enum):
    """Transaction risk bucket."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


RISK_ORDER = [RiskLevel.LOW, RiskLevel.MEDIUM, RiskLevel.HIGH]


class ComplianceLimits(BaseModel):
    """Tier limits and the allowance left in the current periods (USD)."""

    daily: Decimal
    monthly: Decimal
    daily_used: Decimal
    monthly_used: Decimal
    remaining: Decimal


class ComplianceResult(BaseModel):
    """Outcome of a compliance check."""

    client_id: str
    tier: VerificationTier
    amount_usd: Decimal
    approved: bool
    requires_kyc: bool
    risk_level: RiskLevel
    limits: ComplianceLimits
    travel_rule_required: bool
    reason: Optional[str] = None
    sanctions_reason: Optional[str] = None


class SanctionsResult(BaseModel):
    flagged: bool
    reason: Optional[str] = None


class TravelRuleResult(BaseModel):
    required: bool
    amount_usd: Decimal
    threshold: Decimal


def classify_risk(amount_usd: Decimal, transaction_type: TransactionType) -> RiskLevel:
    """Three-bucket risk; withdrawals move up one bucket."""
    if amount_usd > HIGH_RISK_USD:
        level = RiskLevel.HIGH
    elif amount_usd > MEDIUM_RISK_USD:
        level = RiskLevel.MEDIUM
    else:
        level = RiskLevel.LOW

    if transaction_type == TransactionType.WITHDRAWAL:
        level = RISK_ORDER[min(RISK_ORDER.index(level) + 1, len(RISK_ORDER) - 1)]
    return level


def _period_starts(now: datetime) -> tuple[datetime, datetime]:
    start_of_day = now.replace(hour=0, minute=0, second=0, microsecond=0)
    return start_of_day, start_of_day.replace(day=1)


class ComplianceGate:
    """Approve, escalate or reject money-moving activity."""

    def __init__(self, store: Store, converter: Optional[UsdConverter] = None) -> None:
        """Initialize compliance gate.

        Args:
            store: Persistence store
            converter: USD conversion used for limits
        """
        self.store = store
        self.converter = converter or usd_converter

    def get_tier(self, client: Client) -> VerificationTier:
        return client.verification_tier

    def convert_to_usd(self, amount: Decimal, currency: str) -> Decimal:
        return self.converter.to_usd(amount, currency)

    async def get_usage(self, client_id: str, now: Optional[datetime] = None) -> tuple[Decimal, Decimal]:
        """USD totals recorded for the client today and this month."""
        now = now or utcnow()
        day_start, month_start = _period_starts(now)
        records = await self.store.transactions.list(since=month_start, client_id=client_id)
        monthly = sum((r.amount_usd for r in records), Decimal("0"))
        daily = sum((r.amount_usd for r in records if r.created_at >= day_start), Decimal("0"))
        return daily, monthly

    async def check_transaction_compliance(
        self,
        client_id: str,
        transaction_type: TransactionType,
        amount: Decimal,
        currency: str,
        destination: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ComplianceResult:
        """Evaluate a proposed transaction against the client's tier.

        Approved only when the USD amount fits both remaining allowances, no
        KYC escalation is triggered and the destination is not sanctioned.

        Args:
            client_id: Client identifier
            transaction_type: deposit, withdrawal or trade
            amount: Amount in ``currency``
            currency: Transaction currency
            destination: Destination address, screened when given
            now: Reference time for period boundaries

        Returns:
            Compliance decision with limits and remaining allowance
        """
        client = await self.store.clients.get_or_raise(client_id)
        tier = self.get_tier(client)
        daily_limit, monthly_limit = TIER_LIMITS[tier]
        amount_usd = self.convert_to_usd(amount, currency)

        daily_used, monthly_used = await self.get_usage(client_id, now)
        daily_remaining = max(daily_limit - daily_used, Decimal("0"))
        monthly_remaining = max(monthly_limit - monthly_used, Decimal("0"))
        remaining = min(daily_remaining, monthly_remaining)

        allowed = amount_usd <= remaining
        threshold = KYC_THRESHOLDS.get(tier)
        requires_kyc = threshold is not None and amount_usd > threshold
        sanctions = self.screen_for_sanctions(client, destination)

        reason = None
        if sanctions.flagged:
            reason = ComplianceRejectedError.SANCTIONS_HIT
        elif requires_kyc:
            reason = ComplianceRejectedError.KYC_REQUIRED
        elif not allowed:
            reason = ComplianceRejectedError.LIMIT_EXCEEDED

        result = ComplianceResult(
            client_id=client_id,
            tier=tier,
            amount_usd=amount_usd,
            approved=reason is None,
            requires_kyc=requires_kyc,
            risk_level=classify_risk(amount_usd, transaction_type),
            limits=ComplianceLimits(
                daily=daily_limit,
                monthly=monthly_limit,
                daily_used=daily_used,
                monthly_used=monthly_used,
                remaining=remaining,
            ),
            travel_rule_required=amount_usd >= settings.travel_rule_threshold_usd,
            reason=reason,
            sanctions_reason=sanctions.reason,
        )
        desk_logger.compliance_decision(
            client_id, transaction_type.value, amount_usd, result.approved, reason
        )
        return result

    async def authorize(
        self,
        client_id: str,
        transaction_type: TransactionType,
        amount: Decimal,
        currency: str,
        destination: Optional[str] = None,
    ) -> ComplianceResult:
        """Check a transaction and raise unless approved.

        Raises:
            ComplianceRejectedError: With the breached limit and remaining allowance
        """
        result = await self.check_transaction_compliance(
            client_id, transaction_type, amount, currency, destination
        )
        if result.approved:
            return result

        if result.reason == ComplianceRejectedError.SANCTIONS_HIT:
            message = f"Sanctions screening failed: {result.sanctions_reason}"
            limit = None
        elif result.reason == ComplianceRejectedError.KYC_REQUIRED:
            limit = KYC_THRESHOLDS[result.tier]
            message = (
                f"${result.amount_usd} exceeds the ${limit} {result.tier.value} threshold; "
                "further verification required"
            )
        else:
            limits = result.limits
            over_daily = limits.daily_used + result.amount_usd > limits.daily
            limit = limits.daily if over_daily else limits.monthly
            message = (
                f"${result.amount_usd} exceeds remaining allowance ${result.limits.remaining} "
                f"({result.tier.value} limit ${limit})"
            )

        raise ComplianceRejectedError(
            message,
            reason=result.reason,
            limit=limit,
            remaining=result.limits.remaining,
            context={
                "client_id": client_id,
                "tier": result.tier.value,
                "amount_usd": result.amount_usd,
                "risk_level": result.risk_level.value,
            },
        )

    async def record_transaction(
        self,
        client_id: str,
        transaction_type: TransactionType,
        amount: Decimal,
        currency: str,
        reference: Optional[str] = None,
    ) -> TransactionRecord:
        """Add an entry to the usage ledger counted against limits."""
        record = TransactionRecord(
            id=new_id(TRANSACTION_PREFIX),
            client_id=client_id,
            transaction_type=transaction_type,
            amount=amount,
            currency=currency.upper(),
            amount_usd=self.convert_to_usd(amount, currency),
            reference=reference,
        )
        return await self.store.transactions.create(record)

    async def auto_approve_transaction(self, client_id: str, amount: Decimal, currency: str) -> bool:
        """Small transactions, or medium ones from email-verified clients."""
        amount_usd = self.convert_to_usd(amount, currency)
        if amount_usd < AUTO_APPROVE_USD:
            return True

        client = await self.store.clients.get(client_id)
        return client is not None and client.email_verified and amount_usd < AUTO_APPROVE_VERIFIED_USD

    def check_travel_rule(self, amount: Decimal, currency: str) -> TravelRuleResult:
        """Flag transfers needing counterparty identification capture."""
        amount_usd = self.convert_to_usd(amount, currency)
        threshold = settings.travel_rule_threshold_usd
        return TravelRuleResult(required=amount_usd >= threshold, amount_usd=amount_usd, threshold=threshold)

    def screen_for_sanctions(
        self,
        client: Optional[Client] = None,
        address: Optional[str] = None,
    ) -> SanctionsResult:
        """Denylist check on an address and the client's email domain."""
        if address and address in SANCTIONED_ADDRESSES:
            return SanctionsResult(flagged=True, reason="Address on sanctions list")
        if client is not None and client.email:
            domain = client.email.rsplit("@", 1)[-1].lower()
            if domain in SANCTIONED_EMAIL_DOMAINS:
                return SanctionsResult(flagged=True, reason="User domain flagged")
        return SanctionsResult(flagged=False)

    def require_clear(self, client: Optional[Client], address: Optional[str]) -> None:
        """Raise ``ComplianceRejectedError`` on a sanctions hit."""
        result = self.screen_for_sanctions(client, address)
        if result.flagged:
            raise ComplianceRejectedError(
                f"Sanctions screening failed: {result.reason}",
                reason=ComplianceRejectedError.SANCTIONS_HIT,
                context={"client_id": client.id if client else None, "address": address},
            )

    @retry_on_conflict()
    async def verify_user(self, client_id: str, verification_type: str) -> Client:
        """Raise the client's KYC level; never lowers it.

        Args:
            client_id: Client identifier
            verification_type: email, phone or document

        Returns:
            Updated client
        """
        if verification_type not in KYC_LEVELS:
            raise ValueError(f"Unknown verification type: {verification_type}")

        client = await self.store.clients.get_or_raise(client_id)
        level = max(client.kyc_level, KYC_LEVELS[verification_type])
        changes = {"kyc_level": level, "kyc_status": KYC_STATUSES[level]}
        if verification_type == "email":
            changes["email_verified"] = True
        if verification_type == "phone":
            changes["phone_verified"] = True

        updated = await self.store.clients.update(client.model_copy(update=changes))
        logger.info(
            "Client %s verified via %s: level %d, tier %s",
            client_id,
            verification_type,
            level,
            updated.verification_tier.value,
        )
        return updated
