"""Repository for the relay journal.

The journal maps every observed Burned event, keyed by
``(source_ledger, sequence_number)``, to the status of its mint. It is what
turns the relay from a pass-through reactor into a deduplicated,
recoverable delivery pipeline.
"""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from bridgerelay.relay.models import LedgerCursor, RelayedBurn, RelayStatus
from bridgerelay.token.events import BurnedEvent

UNFINISHED_STATUSES = (RelayStatus.PENDING, RelayStatus.SUBMITTED, RelayStatus.FAILED)


class RelayJournal:
    """Repository for all journal database operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    # Relayed burn operations
    async def get(self, source_ledger: str, sequence_number: int) -> Optional[RelayedBurn]:
        """Get the journal row of a burn."""
        stmt = select(RelayedBurn).where(
            RelayedBurn.source_ledger == source_ledger.upper(),
            RelayedBurn.sequence_number == sequence_number,
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def record_burn(
        self, event: BurnedEvent, destination_ledger: str
    ) -> tuple[RelayedBurn, bool]:
        """Journal a burn as pending, unless it is already known.

        Returns:
            (row, created) - created is False for a redelivered event
        """
        existing = await self.get(event.source_ledger, event.sequence_number)
        if existing is not None:
            return existing, False

        row = RelayedBurn(
            source_ledger=event.source_ledger.upper(),
            sequence_number=event.sequence_number,
            destination_ledger=destination_ledger.upper(),
            account=event.account,
            amount=event.amount,
            burn_tx_hash=event.tx_hash,
            status=RelayStatus.PENDING,
            attempts=0,
        )
        self.session.add(row)
        await self.advance_cursor(event.source_ledger, event.sequence_number)
        await self.session.flush()
        return row, True

    async def mark_submitted(
        self, source_ledger: str, sequence_number: int, mint_tx_hash: str
    ) -> RelayedBurn:
        """Record that the mint was accepted by the destination ledger."""
        row = await self._require(source_ledger, sequence_number)
        row.status = RelayStatus.SUBMITTED
        row.mint_tx_hash = mint_tx_hash
        row.attempts += 1
        row.error_message = None
        await self.session.flush()
        return row

    async def mark_confirmed(
        self, source_ledger: str, sequence_number: int, mint_tx_hash: Optional[str] = None
    ) -> RelayedBurn:
        """Record that the mint was included."""
        row = await self._require(source_ledger, sequence_number)
        row.status = RelayStatus.CONFIRMED
        if mint_tx_hash:
            row.mint_tx_hash = mint_tx_hash
        row.error_message = None
        row.confirmed_at = datetime.now(timezone.utc)
        await self.session.flush()
        return row

    async def mark_attempt_failed(
        self,
        source_ledger: str,
        sequence_number: int,
        error_message: str,
        final: bool = False,
        counted: bool = True,
    ) -> RelayedBurn:
        """Record a failed attempt.

        Args:
            final: No attempts left; the row is kept as FAILED for recovery
            counted: False when the attempt was already counted on submission
        """
        row = await self._require(source_ledger, sequence_number)
        if counted:
            row.attempts += 1
        row.error_message = error_message
        row.status = RelayStatus.FAILED if final else RelayStatus.PENDING
        await self.session.flush()
        return row

    async def mark_unconfirmed(
        self, source_ledger: str, sequence_number: int, error_message: str
    ) -> RelayedBurn:
        """Note that inclusion was not observed; the row stays SUBMITTED."""
        row = await self._require(source_ledger, sequence_number)
        row.error_message = error_message
        await self.session.flush()
        return row

    async def get_unfinished(self) -> list[RelayedBurn]:
        """Get burns whose mint is not confirmed, oldest first."""
        stmt = (
            select(RelayedBurn)
            .where(RelayedBurn.status.in_([s.value for s in UNFINISHED_STATUSES]))
            .order_by(RelayedBurn.id)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def list_burns(
        self,
        status: Optional[RelayStatus] = None,
        account: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[RelayedBurn]:
        """List journal rows, newest first."""
        stmt = select(RelayedBurn)
        if status is not None:
            stmt = stmt.where(RelayedBurn.status == status.value)
        if account is not None:
            stmt = stmt.where(RelayedBurn.account == account)
        stmt = stmt.order_by(RelayedBurn.id.desc()).limit(limit).offset(offset)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def count_by_status(self) -> dict[str, int]:
        """Count journal rows per status."""
        stmt = select(RelayedBurn.status, func.count(RelayedBurn.id)).group_by(RelayedBurn.status)
        result = await self.session.execute(stmt)
        counts = {status.value: 0 for status in RelayStatus}
        for status, count in result.all():
            counts[getattr(status, "value", status)] = count
        return counts

    async def _require(self, source_ledger: str, sequence_number: int) -> RelayedBurn:
        row = await self.get(source_ledger, sequence_number)
        if row is None:
            raise ValueError(f"Burn {source_ledger}#{sequence_number} not journaled")
        return row

    # Cursor operations
    async def get_cursor(self, ledger: str) -> Optional[int]:
        """Get the highest journaled sequence number of a source ledger."""
        stmt = select(LedgerCursor).where(LedgerCursor.ledger == ledger.upper())
        result = await self.session.execute(stmt)
        cursor = result.scalar_one_or_none()
        return cursor.last_sequence if cursor else None

    async def advance_cursor(self, ledger: str, sequence_number: int) -> None:
        """Move the cursor forward; never moves it back."""
        stmt = select(LedgerCursor).where(LedgerCursor.ledger == ledger.upper())
        result = await self.session.execute(stmt)
        cursor = result.scalar_one_or_none()

        if cursor is None:
            self.session.add(LedgerCursor(ledger=ledger.upper(), last_sequence=sequence_number))
        elif sequence_number > cursor.last_sequence:
            cursor.last_sequence = sequence_number
        await self.session.flush()
