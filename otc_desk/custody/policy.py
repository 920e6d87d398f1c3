"""Custody policy: whitelisting, deposits, withdrawals with multisig, hot/cold sweeps.

Balances, whitelist entries, withdrawals, deposits and sweeps are durable
records updated with version-checked writes.
"""

import logging
import re
from decimal import ROUND_DOWN, Decimal
from typing import Optional

from otc_desk.compliance.gate import ComplianceGate
from otc_desk.config.settings import settings
from otc_desk.data.models import (
    CustodyBalance,
    Deposit,
    DepositStatus,
    Signature,
    SettlementMethod,
    SweepRecord,
    SweepStatus,
    TransactionType,
    WalletBalance,
    WalletKind,
    WhitelistEntry,
    Withdrawal,
    WithdrawalStatus,
    utcnow,
)
from otc_desk.data.repository import Store
from otc_desk.market.rates import UsdConverter, usd_converter
from otc_desk.settlement.rails import RailRouter
from otc_desk.utils.exceptions import (
    AddressNotWhitelistedError,
    ConcurrentModificationError,
    InsufficientBalanceError,
    InvalidAddressError,
    InvalidStateTransitionError,
    RailRejectedError,
    UnauthorizedSignerError,
)
from otc_desk.utils.identifiers import DEPOSIT_PREFIX, SWEEP_PREFIX, WITHDRAWAL_PREFIX, new_id
from otc_desk.utils.logging import DeskLogger
from otc_desk.utils.retry import error_aggregator, retry_on_conflict

logger = logging.getLogger(__name__)
desk_logger = DeskLogger(__name__)

REQUIRED_CONFIRMATIONS: dict[str, int] = {
    "BTC": 6,
    "ETH": 12,
    "USDT": 12,
    "USDC": 12,
    "SOL": 32,
}
DEFAULT_CONFIRMATIONS = 12

_EVM_ADDRESS = re.compile(r"^0x[a-fA-F0-9]{40}$")
ADDRESS_PATTERNS: dict[str, re.Pattern] = {
    "BTC": re.compile(r"^(bc1|[13])[a-zA-HJ-NP-Z0-9]{25,62}$"),
    "ETH": _EVM_ADDRESS,
    "USDT": _EVM_ADDRESS,
    "USDC": _EVM_ADDRESS,
    "SOL": re.compile(r"^[1-9A-HJ-NP-Za-km-z]{32,44}$"),
}
MIN_ADDRESS_LENGTH = 10
AMOUNT_QUANTUM = Decimal("0.00000001")


def required_confirmations(currency: str) -> int:
    """Block depth before a deposit in ``currency`` may be credited."""
    return REQUIRED_CONFIRMATIONS.get(currency.upper(), DEFAULT_CONFIRMATIONS)


def validate_address(currency: str, address: str) -> bool:
    pattern = ADDRESS_PATTERNS.get(currency.upper())
    if pattern is None:
        return len(address) > MIN_ADDRESS_LENGTH
    return bool(pattern.match(address))


def balance_id(client_id: str, currency: str) -> str:
    return f"{client_id}:{currency.upper()}"


def wallet_id(kind: WalletKind, currency: str) -> str:
    return f"{kind.value}:{currency.upper()}"


def whitelist_id(client_id: str, currency: str, address: str) -> str:
    return f"{client_id}:{currency.upper()}:{address}"


class CustodyPolicy:
    """Enforce custody rules around client funds and desk wallets."""

    def __init__(
        self,
        store: Store,
        compliance: ComplianceGate,
        rails: RailRouter,
        converter: Optional[UsdConverter] = None,
    ) -> None:
        """Initialize custody policy.

        Args:
            store: Persistence store
            compliance: Compliance gate for sanctions and limits
            rails: Rail router; withdrawals and sweeps use the crypto rail
            converter: USD conversion for policy thresholds
        """
        self.store = store
        self.compliance = compliance
        self.rails = rails
        self.converter = converter or usd_converter

    # ------------------------------------------------------------------
    # Whitelist
    # ------------------------------------------------------------------

    async def whitelist_address(
        self,
        client_id: str,
        currency: str,
        address: str,
        label: Optional[str] = None,
    ) -> WhitelistEntry:
        """Approve a withdrawal destination for a client and currency.

        Raises:
            InvalidAddressError: Address fails the currency's format rule
            ComplianceRejectedError: Address is sanctioned
        """
        currency = currency.upper()
        if not validate_address(currency, address):
            raise InvalidAddressError(
                f"Invalid {currency} address: {address}", currency=currency, address=address
            )
        client = await self.store.clients.get_or_raise(client_id)
        self.compliance.require_clear(client, address)

        entry_id = whitelist_id(client_id, currency, address)
        existing = await self.store.whitelist.get(entry_id)
        if existing is not None:
            return existing

        entry = await self.store.whitelist.create(
            WhitelistEntry(id=entry_id, client_id=client_id, currency=currency, address=address, label=label)
        )
        logger.info("Whitelisted %s address %s for %s", currency, address, client_id)
        return entry

    async def is_whitelisted(self, client_id: str, currency: str, address: str) -> bool:
        return await self.store.whitelist.get(whitelist_id(client_id, currency, address)) is not None

    async def require_whitelisted(self, client_id: str, currency: str, address: str) -> None:
        if not await self.is_whitelisted(client_id, currency, address):
            raise AddressNotWhitelistedError(
                f"Address {address} is not whitelisted for {client_id} {currency.upper()}",
                client_id=client_id,
                currency=currency.upper(),
                address=address,
            )

    async def list_whitelist(self, client_id: str, currency: Optional[str] = None) -> list[WhitelistEntry]:
        return await self.store.whitelist.list(
            client_id=client_id, currency=currency.upper() if currency else None
        )

    # ------------------------------------------------------------------
    # Balances
    # ------------------------------------------------------------------

    async def get_balance(self, client_id: str, currency: str) -> CustodyBalance:
        record = await self.store.custody_balances.get(balance_id(client_id, currency))
        if record is None:
            return CustodyBalance(id=balance_id(client_id, currency), client_id=client_id, currency=currency.upper())
        return record

    async def list_balances(self, client_id: str) -> list[CustodyBalance]:
        return await self.store.custody_balances.list(client_id=client_id)

    @retry_on_conflict()
    async def adjust_balance(
        self,
        client_id: str,
        currency: str,
        available_delta: Decimal = Decimal("0"),
        frozen_delta: Decimal = Decimal("0"),
    ) -> CustodyBalance:
        """Apply deltas to a client balance, creating it on first use.

        Raises:
            InsufficientBalanceError: A bucket would go negative
        """
        record = await self.store.custody_balances.get(balance_id(client_id, currency))
        current = record or CustodyBalance(
            id=balance_id(client_id, currency), client_id=client_id, currency=currency.upper()
        )
        available = current.available + available_delta
        frozen = current.frozen + frozen_delta
        if available < 0 or frozen < 0:
            raise InsufficientBalanceError(
                f"Insufficient {current.currency} balance for {client_id}",
                currency=current.currency,
                required_balance=-available_delta if available < 0 else -frozen_delta,
                available_balance=current.available if available < 0 else current.frozen,
            )

        updated = current.model_copy(update={"available": available, "frozen": frozen})
        if record is None:
            return await self.store.custody_balances.create(updated)
        return await self.store.custody_balances.update(updated)

    async def credit_balance(self, client_id: str, currency: str, amount: Decimal) -> CustodyBalance:
        """Credit client funds that have landed in the hot wallet."""
        async with self.store.transaction():
            balance = await self.adjust_balance(client_id, currency, available_delta=amount)
            await self.adjust_wallet(WalletKind.HOT, currency, amount)
        return balance

    # ------------------------------------------------------------------
    # Desk wallets
    # ------------------------------------------------------------------

    async def get_wallet_balance(self, kind: WalletKind, currency: str) -> WalletBalance:
        record = await self.store.wallet_balances.get(wallet_id(kind, currency))
        if record is None:
            return WalletBalance(id=wallet_id(kind, currency), kind=kind, currency=currency.upper())
        return record

    async def list_wallet_balances(self, kind: Optional[WalletKind] = None) -> list[WalletBalance]:
        return await self.store.wallet_balances.list(kind=kind)

    @retry_on_conflict()
    async def adjust_wallet(self, kind: WalletKind, currency: str, delta: Decimal) -> WalletBalance:
        record = await self.store.wallet_balances.get(wallet_id(kind, currency))
        current = record or WalletBalance(id=wallet_id(kind, currency), kind=kind, currency=currency.upper())
        balance = current.balance + delta
        if balance < 0:
            raise InsufficientBalanceError(
                f"Insufficient {kind.value} wallet balance for {current.currency}",
                currency=current.currency,
                required_balance=-delta,
                available_balance=current.balance,
            )
        updated = current.model_copy(update={"balance": balance})
        if record is None:
            return await self.store.wallet_balances.create(updated)
        return await self.store.wallet_balances.update(updated)

    # ------------------------------------------------------------------
    # Withdrawals
    # ------------------------------------------------------------------

    async def request_withdrawal(
        self,
        client_id: str,
        currency: str,
        amount: Decimal,
        address: str,
        network: Optional[str] = None,
    ) -> Withdrawal:
        """Accept a withdrawal request and freeze the funds.

        Below the multisig threshold the withdrawal executes immediately; at
        or above it the withdrawal waits for independent signatures.

        Args:
            client_id: Requesting client
            currency: Withdrawal currency
            amount: Amount in ``currency``
            address: Whitelisted destination
            network: Optional network hint

        Returns:
            The withdrawal record

        Raises:
            AddressNotWhitelistedError: Destination not whitelisted
            ComplianceRejectedError: Limits, KYC or sanctions
            InsufficientBalanceError: Not enough available balance
            RailRejectedError: Immediate execution failed (funds released)
        """
        currency = currency.upper()
        await self.require_whitelisted(client_id, currency, address)

        await self.compliance.authorize(client_id, TransactionType.WITHDRAWAL, amount, currency, address)

        amount_usd = self.converter.to_usd(amount, currency)
        requires_multisig = amount_usd >= settings.multisig_threshold_usd
        withdrawal = Withdrawal(
            id=new_id(WITHDRAWAL_PREFIX),
            client_id=client_id,
            currency=currency,
            amount=amount,
            amount_usd=amount_usd,
            address=address,
            network=network,
            requires_multisig=requires_multisig,
            required_signatures=settings.multisig_required_signatures if requires_multisig else 1,
            status=WithdrawalStatus.PENDING_SIGNATURES if requires_multisig else WithdrawalStatus.APPROVED,
            auto_approved=not requires_multisig and amount_usd < settings.auto_approve_cap_usd,
            travel_rule_required=self.compliance.check_travel_rule(amount, currency).required,
        )

        async with self.store.transaction():
            await self.adjust_balance(client_id, currency, available_delta=-amount, frozen_delta=amount)
            withdrawal = await self.store.withdrawals.create(withdrawal)
            await self.compliance.record_transaction(
                client_id, TransactionType.WITHDRAWAL, amount, currency, reference=withdrawal.id
            )

        desk_logger.withdrawal_event(withdrawal.id, withdrawal.status.value, currency, amount)
        if requires_multisig:
            return withdrawal
        return await self._execute_withdrawal(withdrawal)

    async def get_withdrawal(self, withdrawal_id: str) -> Withdrawal:
        return await self.store.withdrawals.get_or_raise(withdrawal_id)

    async def list_withdrawals(
        self,
        client_id: Optional[str] = None,
        status: Optional[WithdrawalStatus] = None,
    ) -> list[Withdrawal]:
        return await self.store.withdrawals.list(client_id=client_id, status=status)

    async def add_multisig_signature(self, withdrawal_id: str, signer_id: str, signature: str) -> Withdrawal:
        """Collect one approval; executes once enough distinct signers have signed.

        Duplicate signatures from the same signer are ignored.

        Raises:
            UnauthorizedSignerError: Signer is not a configured custody signer
            InvalidStateTransitionError: Withdrawal is not awaiting signatures
            ValueError: The requesting client tried to sign
        """
        withdrawal, approved_now = await self._sign(withdrawal_id, signer_id, signature)
        if approved_now:
            return await self._execute_withdrawal(withdrawal)
        return withdrawal

    @retry_on_conflict()
    async def _sign(self, withdrawal_id: str, signer_id: str, signature: str) -> tuple[Withdrawal, bool]:
        withdrawal = await self.store.withdrawals.get_or_raise(withdrawal_id)
        if withdrawal.status != WithdrawalStatus.PENDING_SIGNATURES:
            raise InvalidStateTransitionError(
                f"Withdrawal {withdrawal_id} is {withdrawal.status.value}",
                entity="withdrawal",
                current_status=withdrawal.status.value,
                target_status=WithdrawalStatus.APPROVED.value,
            )
        if signer_id == withdrawal.client_id:
            raise ValueError("The requesting client cannot sign its own withdrawal")
        if signer_id not in settings.multisig_signers:
            raise UnauthorizedSignerError(
                f"{signer_id} is not an authorized custody signer",
                signer_id=signer_id,
                withdrawal_id=withdrawal_id,
            )
        if any(s.signer_id == signer_id for s in withdrawal.signatures):
            return withdrawal, False

        signatures = [*withdrawal.signatures, Signature(signer_id=signer_id, signature=signature)]
        approved = len(signatures) >= withdrawal.required_signatures
        updated = await self.store.withdrawals.update(
            withdrawal.model_copy(
                update={
                    "signatures": signatures,
                    "status": WithdrawalStatus.APPROVED if approved else WithdrawalStatus.PENDING_SIGNATURES,
                }
            )
        )
        desk_logger.withdrawal_event(
            withdrawal_id, updated.status.value, updated.currency, updated.amount, len(signatures)
        )
        return updated, approved

    async def _execute_withdrawal(self, withdrawal: Withdrawal) -> Withdrawal:
        """Reserve desk funds, send the transfer, then settle the client balance.

        The paying wallet is debited before the rail is called. A rail
        rejection re-credits the wallet and releases the client's funds.
        """
        try:
            reserved = await self._reserve_withdrawal(withdrawal.id)
        except (RailRejectedError, InsufficientBalanceError) as e:
            await self._fail_withdrawal(withdrawal.id, e.message)
            error_aggregator.record_error(e, {"withdrawal_id": withdrawal.id})
            raise

        try:
            transfer = await self.rails.transfer(
                SettlementMethod.CRYPTO,
                reference=reserved.id,
                amount=reserved.amount,
                currency=reserved.currency,
                destination=reserved.address,
            )
        except RailRejectedError as e:
            await self._fail_withdrawal(reserved.id, e.message)
            error_aggregator.record_error(e, {"withdrawal_id": reserved.id})
            raise

        async with self.store.transaction():
            current = await self.store.withdrawals.get_or_raise(reserved.id)
            await self.adjust_balance(
                current.client_id, current.currency, frozen_delta=-current.amount
            )
            completed = await self.store.withdrawals.update(
                current.model_copy(
                    update={
                        "status": WithdrawalStatus.COMPLETED,
                        "rail_reference": transfer.rail_reference,
                        "completed_at": utcnow(),
                    }
                )
            )
        desk_logger.withdrawal_event(
            completed.id, completed.status.value, completed.currency, completed.amount, len(completed.signatures)
        )
        return completed

    @retry_on_conflict()
    async def _reserve_withdrawal(self, withdrawal_id: str) -> Withdrawal:
        async with self.store.transaction():
            current = await self.store.withdrawals.get_or_raise(withdrawal_id)
            if current.status != WithdrawalStatus.APPROVED:
                raise InvalidStateTransitionError(
                    f"Withdrawal {withdrawal_id} is {current.status.value}",
                    entity="withdrawal",
                    current_status=current.status.value,
                    target_status=WithdrawalStatus.PROCESSING.value,
                )
            source = await self._paying_wallet(current)
            await self.adjust_wallet(source, current.currency, -current.amount)
            reserved = await self.store.withdrawals.update(
                current.model_copy(update={"status": WithdrawalStatus.PROCESSING, "source_wallet": source})
            )
        logger.info(
            "Withdrawal %s reserved %s %s from the %s wallet",
            reserved.id,
            reserved.amount,
            reserved.currency,
            source.value,
        )
        return reserved

    async def _paying_wallet(self, withdrawal: Withdrawal) -> WalletKind:
        """Pick the wallet funding a withdrawal.

        The hot wallet pays whenever it can. Multisig withdrawals may draw on
        cold storage instead.

        Raises:
            RailRejectedError: Neither eligible wallet covers the amount
        """
        hot = await self.get_wallet_balance(WalletKind.HOT, withdrawal.currency)
        if hot.balance >= withdrawal.amount:
            return WalletKind.HOT
        if withdrawal.requires_multisig:
            cold = await self.get_wallet_balance(WalletKind.COLD, withdrawal.currency)
            if cold.balance >= withdrawal.amount:
                return WalletKind.COLD
            raise RailRejectedError(
                f"Hot and cold wallets hold {hot.balance} and {cold.balance} {withdrawal.currency}, "
                f"withdrawal needs {withdrawal.amount}",
                rail=SettlementMethod.CRYPTO.value,
                reference=withdrawal.id,
                retryable=False,
            )
        raise RailRejectedError(
            f"Hot wallet holds {hot.balance} {withdrawal.currency}, "
            f"withdrawal needs {withdrawal.amount}",
            rail=SettlementMethod.CRYPTO.value,
            reference=withdrawal.id,
            retryable=False,
        )

    async def _fail_withdrawal(self, withdrawal_id: str, reason: str) -> Withdrawal:
        async with self.store.transaction():
            current = await self.store.withdrawals.get_or_raise(withdrawal_id)
            if current.status == WithdrawalStatus.PROCESSING and current.source_wallet is not None:
                await self.adjust_wallet(current.source_wallet, current.currency, current.amount)
            await self.adjust_balance(
                current.client_id,
                current.currency,
                available_delta=current.amount,
                frozen_delta=-current.amount,
            )
            failed = await self.store.withdrawals.update(
                current.model_copy(update={"status": WithdrawalStatus.FAILED, "failure_reason": reason})
            )
        desk_logger.withdrawal_event(failed.id, failed.status.value, failed.currency, failed.amount)
        return failed

    # ------------------------------------------------------------------
    # Deposits
    # ------------------------------------------------------------------

    async def record_deposit(
        self,
        client_id: str,
        currency: str,
        amount: Decimal,
        tx_hash: str,
        network: str = "mainnet",
        confirmations: int = 0,
    ) -> Deposit:
        """Register an incoming deposit; credited once it reaches depth."""
        currency = currency.upper()
        existing = await self.store.deposits.list(tx_hash=tx_hash, currency=currency)
        if existing:
            return existing[0]

        deposit = await self.store.deposits.create(
            Deposit(
                id=new_id(DEPOSIT_PREFIX),
                client_id=client_id,
                currency=currency,
                amount=amount,
                tx_hash=tx_hash,
                network=network,
                confirmations=confirmations,
                required_confirmations=required_confirmations(currency),
            )
        )
        logger.info("Deposit %s recorded: %s %s (%s)", deposit.id, amount, currency, tx_hash)
        return await self._credit_if_confirmed(deposit)

    async def update_confirmations(self, deposit_id: str, confirmations: int) -> Deposit:
        deposit = await self._set_confirmations(deposit_id, confirmations)
        return await self._credit_if_confirmed(deposit)

    @retry_on_conflict()
    async def _set_confirmations(self, deposit_id: str, confirmations: int) -> Deposit:
        deposit = await self.store.deposits.get_or_raise(deposit_id)
        if confirmations <= deposit.confirmations:
            return deposit
        return await self.store.deposits.update(deposit.model_copy(update={"confirmations": confirmations}))

    async def scan_deposits(self) -> list[Deposit]:
        """Credit every pending deposit that has reached its depth."""
        pending = await self.store.deposits.list(
            predicate=lambda d: d.confirmations >= d.required_confirmations,
            status=DepositStatus.PENDING,
        )
        credited = []
        for deposit in pending:
            try:
                result = await self._credit_if_confirmed(deposit)
            except ConcurrentModificationError:
                logger.debug("Deposit %s credited concurrently", deposit.id)
                continue
            if result.status == DepositStatus.CREDITED:
                credited.append(result)
        return credited

    async def list_deposits(
        self,
        client_id: Optional[str] = None,
        status: Optional[DepositStatus] = None,
    ) -> list[Deposit]:
        return await self.store.deposits.list(client_id=client_id, status=status)

    async def _credit_if_confirmed(self, deposit: Deposit) -> Deposit:
        if deposit.status != DepositStatus.PENDING or deposit.confirmations < deposit.required_confirmations:
            return deposit

        async with self.store.transaction():
            # version check makes the credit happen once
            credited = await self.store.deposits.update(
                deposit.model_copy(update={"status": DepositStatus.CREDITED, "credited_at": utcnow()})
            )
            await self.adjust_balance(deposit.client_id, deposit.currency, available_delta=deposit.amount)
            await self.adjust_wallet(WalletKind.HOT, deposit.currency, deposit.amount)
            await self.compliance.record_transaction(
                deposit.client_id, TransactionType.DEPOSIT, deposit.amount, deposit.currency, reference=deposit.id
            )
        logger.info(
            "Deposit %s credited: %s %s to %s",
            deposit.id,
            deposit.amount,
            deposit.currency,
            deposit.client_id,
        )
        return credited

    # ------------------------------------------------------------------
    # Hot/cold sweep
    # ------------------------------------------------------------------

    async def check_and_sweep(self) -> list[SweepRecord]:
        """Sweep hot-wallet balances above the USD threshold to cold storage.

        Leaves ``threshold * sweep_retention_ratio`` behind in the hot wallet.
        The hot wallet is debited before the transfer is sent; a rejected
        transfer puts the amount back and marks the sweep failed.

        Returns:
            Completed sweeps
        """
        sweeps = []
        for wallet in await self.list_wallet_balances(WalletKind.HOT):
            if self.converter.to_usd(wallet.balance, wallet.currency) <= settings.hot_wallet_threshold_usd:
                continue

            destination = settings.cold_wallet_addresses.get(wallet.currency)
            if not destination:
                logger.warning("No cold wallet configured for %s; skipping sweep", wallet.currency)
                continue

            try:
                pending = await self._reserve_sweep(wallet.currency, destination)
            except InsufficientBalanceError:
                logger.debug("Hot %s wallet drained before sweep", wallet.currency)
                continue
            if pending is None:
                continue

            try:
                transfer = await self.rails.transfer(
                    SettlementMethod.CRYPTO,
                    reference=pending.id,
                    amount=pending.amount,
                    currency=pending.currency,
                    destination=pending.destination,
                )
            except RailRejectedError as e:
                error_aggregator.record_error(e, {"sweep": pending.id, "currency": pending.currency})
                await self._fail_sweep(pending.id, e.message)
                continue

            sweeps.append(await self._complete_sweep(pending.id, transfer.rail_reference))

        return sweeps

    @retry_on_conflict()
    async def _reserve_sweep(self, currency: str, destination: str) -> Optional[SweepRecord]:
        threshold = settings.hot_wallet_threshold_usd
        async with self.store.transaction():
            wallet = await self.get_wallet_balance(WalletKind.HOT, currency)
            balance_usd = self.converter.to_usd(wallet.balance, currency)
            if balance_usd <= threshold:
                return None
            sweep_usd = balance_usd - threshold * settings.sweep_retention_ratio
            amount = (sweep_usd / self.converter.rate(currency)).quantize(AMOUNT_QUANTUM, rounding=ROUND_DOWN)
            if amount <= 0:
                return None
            await self.adjust_wallet(WalletKind.HOT, currency, -amount)
            return await self.store.sweeps.create(
                SweepRecord(
                    id=new_id(SWEEP_PREFIX),
                    currency=currency,
                    amount=amount,
                    amount_usd=sweep_usd,
                    destination=destination,
                )
            )

    async def _complete_sweep(self, sweep_id: str, rail_reference: str) -> SweepRecord:
        async with self.store.transaction():
            pending = await self.store.sweeps.get_or_raise(sweep_id)
            await self.adjust_wallet(WalletKind.COLD, pending.currency, pending.amount)
            record = await self.store.sweeps.update(
                pending.model_copy(update={"status": SweepStatus.COMPLETED, "rail_reference": rail_reference})
            )
        desk_logger.sweep_executed(record.currency, record.amount, record.amount_usd, record.destination)
        return record

    async def _fail_sweep(self, sweep_id: str, reason: str) -> SweepRecord:
        async with self.store.transaction():
            pending = await self.store.sweeps.get_or_raise(sweep_id)
            await self.adjust_wallet(WalletKind.HOT, pending.currency, pending.amount)
            record = await self.store.sweeps.update(
                pending.model_copy(update={"status": SweepStatus.FAILED, "failure_reason": reason})
            )
        logger.warning("Sweep %s of %s %s failed: %s", record.id, record.amount, record.currency, reason)
        return record

    async def list_sweeps(self, currency: Optional[str] = None) -> list[SweepRecord]:
        return await self.store.sweeps.list(currency=currency.upper() if currency else None)
