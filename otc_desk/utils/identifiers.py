"""Record identifiers: human-readable type prefix plus a UUID."""

import uuid

DEAL_PREFIX = "OTC"
SETTLEMENT_PREFIX = "SET"
QUOTE_PREFIX = "QTE"
BLOCK_TRADE_PREFIX = "BLK"
POOL_PREFIX = "LP"
CLIENT_PREFIX = "CLT"
INSTRUCTION_PREFIX = "SIN"
CREDIT_LINE_PREFIX = "CRL"
WITHDRAWAL_PREFIX = "WDR"
DEPOSIT_PREFIX = "DEP"
SWEEP_PREFIX = "SWP"
TRANSACTION_PREFIX = "TXN"


def new_id(prefix: str) -> str:
    """Return ``PREFIX-<32 hex chars>``."""
    return f"{prefix}-{uuid.uuid4().hex.upper()}"
