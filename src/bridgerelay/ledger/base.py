"""Base interface for ledger clients.

A ledger is treated as an opaque append-only event log with a
submit-transaction API. The relay only needs four things from it:

1. Subscribe to ``Bridge`` (burn) events
2. Submit a contract call under the relay's own identity
3. Wait for that transaction to be included
4. Read balances to reconcile
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from bridgerelay.token.events import BurnedEvent

logger = logging.getLogger(__name__)

# Contract surface shared by both ledgers
BRIDGE_EVENT = "Bridge"
MINT_FUNCTION = "mint"

EventCallback = Callable[[BurnedEvent], Awaitable[None]]


class RelayError(Exception):
    """Base class for errors on the relay side of the protocol."""

    def __init__(self, ledger: str, reason: str):
        self.ledger = ledger
        self.reason = reason
        super().__init__(f"[{ledger}] {reason}")


class SubmissionFailure(RelayError):
    """Transaction could not be submitted, or was rejected on inclusion."""

    pass


class SubscriptionFailure(RelayError):
    """Event subscription could not be established or was lost."""

    pass


class BroadcastUncertain(RelayError):
    """Broadcast outcome unknown: the transaction may already be on its way.

    Carries the handle of the signed transaction so its inclusion can be
    awaited instead of signing a second one.
    """

    def __init__(self, ledger: str, reason: str, handle: "TransactionHandle"):
        super().__init__(ledger, reason)
        self.handle = handle


@dataclass
class TransactionHandle:
    """A submitted, not yet included, transaction."""

    ledger: str
    tx_hash: str
    function: str
    args: tuple
    nonce: Optional[int] = None
    submitted_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class TransactionReceipt:
    """Result of a transaction's inclusion."""

    ledger: str
    tx_hash: str
    success: bool
    block_number: Optional[int] = None
    gas_used: Optional[int] = None
    error: Optional[str] = None


class LedgerClient(ABC):
    """Abstract base class for ledger clients.

    One instance per ledger. Transactions are signed by the identity the
    client was configured with (the relay authority).
    """

    def __init__(self, name: str):
        """Initialize client.

        Args:
            name: Ledger name ("A" or "B")
        """
        self.name = name.upper()

    @property
    @abstractmethod
    def signer(self) -> str:
        """Identity used for submitted transactions."""
        pass

    async def connect(self) -> None:
        """Open the connection to the ledger endpoint."""
        pass

    async def close(self) -> None:
        """Close the connection and stop all subscriptions."""
        pass

    @abstractmethod
    async def subscribe(
        self,
        event_name: str,
        callback: EventCallback,
        from_sequence: Optional[int] = None,
    ) -> None:
        """Deliver events of a kind to ``callback``.

        Args:
            event_name: Contract event name (only ``Bridge`` is relayed)
            callback: Async callable invoked once per delivered event
            from_sequence: Replay events after this sequence number first;
                None starts from "now"

        Raises:
            SubscriptionFailure: If the subscription cannot be established
        """
        pass

    @abstractmethod
    async def unsubscribe(self, event_name: str, callback: EventCallback) -> None:
        """Stop delivering events to ``callback``."""
        pass

    @abstractmethod
    async def call(self, function: str, args: tuple) -> TransactionHandle:
        """Submit a contract call under the client's signer.

        Raises:
            SubmissionFailure: If the ledger definitely did not accept the transaction
            BroadcastUncertain: If the transaction may have been accepted
        """
        pass

    @abstractmethod
    async def await_inclusion(
        self, handle: TransactionHandle, timeout: Optional[float] = None
    ) -> TransactionReceipt:
        """Wait until a submitted transaction is included.

        Raises:
            SubmissionFailure: If the transaction is rejected or reverted
            asyncio.TimeoutError: If not included within ``timeout``
        """
        pass

    @abstractmethod
    async def get_balance(self, account: str) -> int:
        """Get token balance of an account in base units."""
        pass

    @abstractmethod
    async def total_supply(self) -> int:
        """Get total token supply on this ledger."""
        pass

    async def mint(self, to: str, amount: int) -> TransactionHandle:
        """Submit ``mint(to, amount)``."""
        return await self.call(MINT_FUNCTION, (to, amount))

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name!r})"
