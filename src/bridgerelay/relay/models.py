"""SQLAlchemy models for the relay journal."""

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import BigInteger, DateTime, Index, String, Text, TypeDecorator, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class TokenAmount(TypeDecorator):
    """uint256 amount stored as decimal text.

    Token base units overflow every native integer column type, and SQLite
    would silently round a NUMERIC this large.
    """

    impl = String(78)
    cache_ok = True

    @property
    def python_type(self):
        return int

    def process_bind_param(self, value, dialect):
        return str(int(value)) if value is not None else None

    def process_result_value(self, value, dialect):
        return int(value) if value is not None else None


class RelayStatus(str, Enum):
    """Status of a relayed burn."""

    PENDING = "pending"          # Burn observed, mint not yet accepted
    SUBMITTED = "submitted"      # Mint accepted, waiting for inclusion
    CONFIRMED = "confirmed"      # Mint included on destination ledger
    FAILED = "failed"            # Attempts exhausted, needs recovery


class RelayedBurn(Base):
    """One Burned event and the state of its matching mint.

    ``(source_ledger, sequence_number)`` is unique, so a redelivered event
    can never produce a second mint.
    """

    __tablename__ = "relayed_burns"
    __table_args__ = (
        Index("ix_relayed_burns_source_seq", "source_ledger", "sequence_number", unique=True),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    source_ledger: Mapped[str] = mapped_column(String(8), nullable=False)
    sequence_number: Mapped[int] = mapped_column(BigInteger, nullable=False)
    destination_ledger: Mapped[str] = mapped_column(String(8), nullable=False)
    account: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    amount: Mapped[int] = mapped_column(TokenAmount, nullable=False)
    burn_tx_hash: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    mint_tx_hash: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    status: Mapped[RelayStatus] = mapped_column(
        String(20), default=RelayStatus.PENDING, nullable=False, index=True
    )
    attempts: Mapped[int] = mapped_column(default=0)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
    confirmed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class LedgerCursor(Base):
    """Highest Burned sequence number journaled per source ledger.

    Subscriptions resume after this point on restart.
    """

    __tablename__ = "ledger_cursors"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    ledger: Mapped[str] = mapped_column(String(8), unique=True, nullable=False, index=True)
    last_sequence: Mapped[int] = mapped_column(BigInteger, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
