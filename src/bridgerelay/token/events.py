"""Records appended to a ledger's event log by the token state machine."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Union


@dataclass(frozen=True)
class BurnedEvent:
    """A burn on the source ledger; the trigger for a bridge transfer.

    Externally observable as the contract event ``Bridge(user, amount)``.
    Immutable and retained permanently on the source ledger's log.
    """

    account: str
    amount: int
    source_ledger: str
    sequence_number: int  # Ledger-native emission order
    tx_hash: Optional[str] = None
    block_number: Optional[int] = None
    observed_at: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc), compare=False
    )

    @property
    def key(self) -> tuple[str, int]:
        """Identity of the event across redeliveries."""
        return (self.source_ledger, self.sequence_number)


@dataclass(frozen=True)
class MintRecord:
    """Balance created on a ledger by its mint authority."""

    to: str
    amount: int
    sequence_number: int


@dataclass(frozen=True)
class TransferRecord:
    """Plain balance move between two accounts of the same ledger."""

    sender: str
    to: str
    amount: int
    sequence_number: int


LedgerRecord = Union[BurnedEvent, MintRecord, TransferRecord]
