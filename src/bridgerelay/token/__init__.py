"""Token burn/mint state machine."""

from bridgerelay.token.events import BurnedEvent, LedgerRecord, MintRecord, TransferRecord
from bridgerelay.token.state import InsufficientBalance, TokenError, TokenState, Unauthorized

__all__ = [
    "BurnedEvent",
    "MintRecord",
    "TransferRecord",
    "LedgerRecord",
    "TokenState",
    "TokenError",
    "InsufficientBalance",
    "Unauthorized",
]
