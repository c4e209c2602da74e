"""Relay coordinator and its journal."""

from bridgerelay.relay.coordinator import (
    CoordinatorState,
    MintRequest,
    RelayCoordinator,
    RelayOutcome,
)
from bridgerelay.relay.journal import RelayJournal
from bridgerelay.relay.models import LedgerCursor, RelayedBurn, RelayStatus

__all__ = [
    "CoordinatorState",
    "MintRequest",
    "RelayCoordinator",
    "RelayOutcome",
    "RelayJournal",
    "RelayedBurn",
    "LedgerCursor",
    "RelayStatus",
]
