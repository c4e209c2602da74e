"""Per-ledger token rules governing burn and mint.

There are no phases beyond the balance table itself: every operation is a
transition over persistent balances that appends one record to the log.

Supply invariant:
    minted_total - burned_total == sum(balances) == total_supply
"""

import logging
from typing import Optional

from bridgerelay.token.events import BurnedEvent, LedgerRecord, MintRecord, TransferRecord

logger = logging.getLogger(__name__)


class TokenError(ValueError):
    """Base class for errors raised synchronously to the caller of a token operation."""

    pass


class InsufficientBalance(TokenError):
    """Raised when burning or transferring more than the caller holds."""

    def __init__(self, account: str, available: int, requested: int):
        self.account = account
        self.available = available
        self.requested = requested
        super().__init__(
            f"Insufficient balance: {account} has {available}, need {requested}"
        )


class Unauthorized(TokenError):
    """Raised when a mint is attempted by anyone but the mint authority."""

    def __init__(self, caller: str):
        self.caller = caller
        super().__init__(f"Unauthorized: {caller} is not the mint authority")


class TokenState:
    """Balance table and append-only record log of one ledger.

    Burning is self-service (an account only ever disposes of its own funds),
    minting is restricted to ``authority``.
    """

    def __init__(
        self,
        ledger: str,
        authority: str,
        genesis: Optional[dict[str, int]] = None,
    ):
        """Initialize the token state.

        Args:
            ledger: Name of the ledger this state belongs to ("A" or "B")
            authority: Identity allowed to mint
            genesis: Initial balances, counted as minted supply
        """
        self.ledger = ledger.upper()
        self.authority = authority
        self._balances: dict[str, int] = {}
        self._records: list[LedgerRecord] = []
        self.minted_total = 0
        self.burned_total = 0

        for account, amount in (genesis or {}).items():
            self._validate_amount(amount, allow_zero=True)
            self._balances[account] = amount
            self.minted_total += amount

    @property
    def records(self) -> list[LedgerRecord]:
        """Copy of the append-only record log."""
        return list(self._records)

    @property
    def total_supply(self) -> int:
        return sum(self._balances.values())

    @property
    def next_sequence(self) -> int:
        return len(self._records)

    def balance_of(self, account: str) -> int:
        return self._balances.get(account, 0)

    def balances(self) -> dict[str, int]:
        """Snapshot of all non-zero balances."""
        return {account: amount for account, amount in self._balances.items() if amount}

    def mint(self, caller: str, to: str, amount: int) -> MintRecord:
        """Create ``amount`` on ``to``.

        Raises:
            Unauthorized: If caller is not the mint authority
        """
        if caller != self.authority:
            logger.warning(f"[{self.ledger}] Rejected mint of {amount} by {caller}")
            raise Unauthorized(caller)
        self._validate_amount(amount)

        self._balances[to] = self.balance_of(to) + amount
        self.minted_total += amount
        record = MintRecord(to=to, amount=amount, sequence_number=self.next_sequence)
        self._records.append(record)
        return record

    def burn(self, caller: str, amount: int) -> BurnedEvent:
        """Destroy ``amount`` of the caller's own balance.

        Raises:
            InsufficientBalance: If the caller holds less than amount
        """
        self._validate_amount(amount)
        available = self.balance_of(caller)
        if available < amount:
            raise InsufficientBalance(caller, available, amount)

        self._balances[caller] = available - amount
        self.burned_total += amount
        event = BurnedEvent(
            account=caller,
            amount=amount,
            source_ledger=self.ledger,
            sequence_number=self.next_sequence,
        )
        self._records.append(event)
        return event

    # Contract-facing name of burn
    bridge = burn

    def transfer(self, caller: str, to: str, amount: int) -> TransferRecord:
        """Move balance between two accounts. Not part of the bridging invariant."""
        self._validate_amount(amount)
        available = self.balance_of(caller)
        if available < amount:
            raise InsufficientBalance(caller, available, amount)

        self._balances[caller] = available - amount
        self._balances[to] = self.balance_of(to) + amount
        record = TransferRecord(
            sender=caller, to=to, amount=amount, sequence_number=self.next_sequence
        )
        self._records.append(record)
        return record

    def check_invariant(self) -> bool:
        """Check that recorded mints and burns account for every balance."""
        return (
            self.minted_total - self.burned_total == self.total_supply
            and all(amount >= 0 for amount in self._balances.values())
        )

    @staticmethod
    def _validate_amount(amount: int, allow_zero: bool = False) -> None:
        if isinstance(amount, bool) or not isinstance(amount, int):
            raise TypeError(f"Amount must be an integer, got {type(amount).__name__}")
        if amount < 0 or (amount == 0 and not allow_zero):
            raise ValueError(f"Amount must be positive, got {amount}")
