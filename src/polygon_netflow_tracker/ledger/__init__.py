"""Ledger access layer - JSON-RPC client and response views."""

from polygon_netflow_tracker.ledger.client import (
    LedgerClient,
    LedgerClientError,
    UpstreamError,
    Web3LedgerClient,
)
from polygon_netflow_tracker.ledger.models import (
    LogView,
    MalformedDataError,
    TransactionView,
)

__all__ = [
    "LedgerClient",
    "LedgerClientError",
    "LogView",
    "MalformedDataError",
    "TransactionView",
    "UpstreamError",
    "Web3LedgerClient",
]
