"""Ledger clients: the relay's view of each chain."""

from bridgerelay.ledger.base import (
    BRIDGE_EVENT,
    MINT_FUNCTION,
    BroadcastUncertain,
    LedgerClient,
    RelayError,
    SubmissionFailure,
    SubscriptionFailure,
    TransactionHandle,
    TransactionReceipt,
)
from bridgerelay.ledger.memory import InMemoryLedger

__all__ = [
    "BRIDGE_EVENT",
    "MINT_FUNCTION",
    "BroadcastUncertain",
    "LedgerClient",
    "RelayError",
    "SubmissionFailure",
    "SubscriptionFailure",
    "TransactionHandle",
    "TransactionReceipt",
    "InMemoryLedger",
]
