"""Logging configuration and utilities."""

import logging
import logging.handlers
import sys
from decimal import Decimal
from pathlib import Path
from typing import Any

from otc_desk.config.settings import settings


def setup_logging() -> None:
    """Setup application logging configuration."""
    if settings.log_file:
        log_path = Path(settings.log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

    level = getattr(logging, settings.log_level.upper())

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    formatter = logging.Formatter(
        fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if settings.log_file:
        file_handler = logging.handlers.RotatingFileHandler(
            filename=settings.log_file,
            maxBytes=50 * 1024 * 1024,  # 50MB
            backupCount=5,
            encoding="utf-8",
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    # Set levels for third-party libraries
    logging.getLogger("uvicorn").setLevel(logging.INFO)
    logging.getLogger("fastapi").setLevel(logging.INFO)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("ccxt").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    logger = logging.getLogger(__name__)
    logger.info(
        "Logging configured - Level: %s, File: %s",
        settings.log_level,
        settings.log_file,
    )


class DeskLogger:
    """Specialized logger for desk business events."""

    def __init__(self, name: str) -> None:
        """Initialize desk logger.

        Args:
            name: Logger name.
        """
        self.logger = logging.getLogger(name)

    def deal_created(
        self,
        deal_id: str,
        client_id: str,
        side: str,
        amount: Decimal,
        symbol: str,
        price: Decimal,
    ) -> None:
        """Log deal creation."""
        self.logger.info(
            "DEAL_CREATED: %s %s %s %s @ %s by %s",
            deal_id,
            side,
            amount,
            symbol,
            price,
            client_id,
            extra={
                "event_type": "deal_created",
                "deal_id": deal_id,
                "client_id": client_id,
                "side": side,
                "amount": str(amount),
                "symbol": symbol,
                "price": str(price),
            },
        )

    def quote_priced(
        self,
        quote_id: str,
        symbol: str,
        price: Decimal,
        spread: Decimal,
        valid_for: int,
    ) -> None:
        """Log quote pricing."""
        self.logger.info(
            "QUOTE_PRICED: %s %s @ %s (spread=%s, valid_for=%ds)",
            quote_id,
            symbol,
            price,
            spread,
            valid_for,
            extra={
                "event_type": "quote_priced",
                "quote_id": quote_id,
                "symbol": symbol,
                "price": str(price),
                "spread": str(spread),
                "valid_for": valid_for,
            },
        )

    def settlement_transition(
        self,
        settlement_id: str,
        from_status: str,
        to_status: str,
        reason: str | None = None,
    ) -> None:
        """Log a settlement state change."""
        self.logger.info(
            "SETTLEMENT_TRANSITION: %s %s -> %s%s",
            settlement_id,
            from_status,
            to_status,
            f" ({reason})" if reason else "",
            extra={
                "event_type": "settlement_transition",
                "settlement_id": settlement_id,
                "from_status": from_status,
                "to_status": to_status,
                "reason": reason,
            },
        )

    def compliance_decision(
        self,
        client_id: str,
        transaction_type: str,
        amount_usd: Decimal,
        approved: bool,
        reason: str | None = None,
    ) -> None:
        """Log a compliance decision."""
        self.logger.info(
            "COMPLIANCE_DECISION: %s %s $%s -> %s%s",
            client_id,
            transaction_type,
            amount_usd,
            "approved" if approved else "rejected",
            f" ({reason})" if reason else "",
            extra={
                "event_type": "compliance_decision",
                "client_id": client_id,
                "transaction_type": transaction_type,
                "amount_usd": str(amount_usd),
                "approved": approved,
                "reason": reason,
            },
        )

    def withdrawal_event(
        self,
        withdrawal_id: str,
        status: str,
        currency: str,
        amount: Decimal,
        signatures: int = 0,
    ) -> None:
        """Log a withdrawal state change."""
        self.logger.info(
            "WITHDRAWAL: %s %s %s %s (signatures=%d)",
            withdrawal_id,
            status,
            amount,
            currency,
            signatures,
            extra={
                "event_type": "withdrawal_event",
                "withdrawal_id": withdrawal_id,
                "status": status,
                "currency": currency,
                "amount": str(amount),
                "signatures": signatures,
            },
        )

    def sweep_executed(
        self,
        currency: str,
        amount: Decimal,
        amount_usd: Decimal,
        destination: str,
    ) -> None:
        """Log a hot-to-cold sweep."""
        self.logger.info(
            "SWEEP_EXECUTED: %s %s ($%s) -> %s",
            amount,
            currency,
            amount_usd,
            destination,
            extra={
                "event_type": "sweep_executed",
                "currency": currency,
                "amount": str(amount),
                "amount_usd": str(amount_usd),
                "destination": destination,
            },
        )

    def error_occurred(
        self,
        error_type: str,
        error_message: str,
        context: dict[str, Any] | None = None,
    ) -> None:
        """Log error with context."""
        self.logger.error(
            "ERROR: %s - %s",
            error_type,
            error_message,
            extra={
                "event_type": "error",
                "error_type": error_type,
                "error_message": error_message,
                **(context or {}),
            },
        )
