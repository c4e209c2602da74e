"""Read-only view of the relay journal."""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, HTTPException, Query, status
from pydantic import BaseModel, ConfigDict, field_serializer, field_validator

from bridgerelay.config import LEDGER_NAMES
from bridgerelay.relay.database import get_db
from bridgerelay.relay.journal import RelayJournal
from bridgerelay.relay.models import RelayStatus

router = APIRouter()


class TransferResponse(BaseModel):
    """One relayed burn and the state of its mint."""

    model_config = ConfigDict(from_attributes=True)

    source_ledger: str
    sequence_number: int
    destination_ledger: str
    account: str
    amount: int
    status: str
    attempts: int
    burn_tx_hash: Optional[str] = None
    mint_tx_hash: Optional[str] = None
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    confirmed_at: Optional[datetime] = None

    @field_validator("status", mode="before")
    @classmethod
    def normalize_status(cls, v):
        """Accept RelayStatus members as well as their stored values."""
        return getattr(v, "value", v)

    @field_serializer("amount")
    def serialize_amount(self, amount: int) -> str:
        # uint256 does not fit a JSON number
        return str(amount)


class TransferListResponse(BaseModel):
    """Page of journal rows plus per-status totals."""

    transfers: list[TransferResponse]
    counts: dict[str, int]


@router.get("/transfers", response_model=TransferListResponse)
async def list_transfers(
    status_filter: Optional[RelayStatus] = Query(None, alias="status"),
    account: Optional[str] = None,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
):
    """List relayed burns, newest first."""
    async with get_db() as session:
        journal = RelayJournal(session)
        rows = await journal.list_burns(
            status=status_filter, account=account, limit=limit, offset=offset
        )
        counts = await journal.count_by_status()

    return TransferListResponse(
        transfers=[TransferResponse.model_validate(row) for row in rows],
        counts=counts,
    )


@router.get("/transfers/{ledger}/{sequence_number}", response_model=TransferResponse)
async def get_transfer(ledger: str, sequence_number: int):
    """Get the relay status of one burn by its source ledger and sequence number."""
    if ledger.upper() not in LEDGER_NAMES:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Unknown ledger: {ledger}",
        )

    async with get_db() as session:
        row = await RelayJournal(session).get(ledger, sequence_number)

    if row is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Burn {ledger.upper()}#{sequence_number} not found",
        )
    return TransferResponse.model_validate(row)
