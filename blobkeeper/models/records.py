"""Typed file records handed out by the metadata store"""

from datetime import datetime, timedelta
from enum import Enum
from typing import Annotated, List, Literal, Optional, Sequence, Union

from pydantic import BaseModel, Field

from blobkeeper.models.stored_file import StoredChunk, StoredFile


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    INSUFFICIENT = "insufficient"
    EXPIRED = "expired"


class RenewalState(str, Enum):
    """Renewal eligibility of a file at a point in time"""

    ACTIVE = "active"
    DUE = "due_for_renewal"
    EXPIRED = "expired"


class PaymentInfo(BaseModel):
    status: PaymentStatus = PaymentStatus.PENDING
    payer_address: Optional[str] = None
    amount: Optional[int] = None
    tx_hash: Optional[str] = None
    last_balance_check: Optional[datetime] = None
    contract_balance: Optional[int] = None

    @property
    def has_relationship(self) -> bool:
        """True when renewals must be paid for from the file's balance"""
        return self.status in (PaymentStatus.PAID, PaymentStatus.INSUFFICIENT) or bool(self.payer_address)


class ChunkRecord(BaseModel):
    chunk_index: int = Field(ge=0)
    certificate: str
    size: int = Field(ge=0)
    hash: str


class _FileRecordBase(BaseModel):
    file_id: str
    file_name: str
    file_size: Optional[int] = None
    hash: str
    expiry: datetime
    created_at: datetime
    payment: PaymentInfo = Field(default_factory=PaymentInfo)
    renewal_count: int = 0
    last_renewed_at: Optional[datetime] = None

    def renewal_state(self, now: datetime, lookahead: timedelta) -> RenewalState:
        if self.expiry <= now:
            return RenewalState.EXPIRED
        if self.expiry <= now + lookahead:
            return RenewalState.DUE
        return RenewalState.ACTIVE


class SingleBlobFile(_FileRecordBase):
    kind: Literal["single"] = "single"
    certificate: str
    blob_key: Optional[str] = None

    @property
    def chunk_count(self) -> int:
        return 1

    @property
    def certificates(self) -> List[str]:
        return [self.certificate]


class ChunkedFile(_FileRecordBase):
    kind: Literal["chunked"] = "chunked"
    chunk_size: int
    total_chunks: int
    is_complete: bool = False
    chunks: List[ChunkRecord] = Field(default_factory=list)

    @property
    def chunk_count(self) -> int:
        return self.total_chunks

    @property
    def certificates(self) -> List[str]:
        return [chunk.certificate for chunk in self.chunks]


FileRecord = Annotated[Union[SingleBlobFile, ChunkedFile], Field(discriminator="kind")]


def _wei(value: Optional[str]) -> Optional[int]:
    return int(value) if value not in (None, "") else None


def payment_info_from_row(row: StoredFile) -> PaymentInfo:
    try:
        status = PaymentStatus(row.payment_status or PaymentStatus.PENDING.value)
    except ValueError:
        status = PaymentStatus.PENDING
    return PaymentInfo(
        status=status,
        payer_address=row.payer_address,
        amount=_wei(row.payment_amount),
        tx_hash=row.payment_tx_hash,
        last_balance_check=row.last_balance_check,
        contract_balance=_wei(row.contract_balance),
    )


def to_file_record(row: StoredFile, chunks: Sequence[StoredChunk] = ()) -> Union[SingleBlobFile, ChunkedFile]:
    """Build the tagged record variant for a stored row and its chunk rows"""
    common = dict(
        file_id=row.file_id,
        file_name=row.file_name,
        file_size=row.file_size,
        hash=row.file_hash,
        expiry=row.expiry,
        created_at=row.created_at,
        payment=payment_info_from_row(row),
        renewal_count=row.renewal_count or 0,
        last_renewed_at=row.last_renewed_at,
    )
    if row.is_chunked:
        ordered = sorted(chunks, key=lambda c: c.chunk_index)
        return ChunkedFile(
            chunk_size=row.chunk_size or 0,
            total_chunks=row.total_chunks or 0,
            is_complete=bool(row.is_complete),
            chunks=[
                ChunkRecord(chunk_index=c.chunk_index, certificate=c.certificate, size=c.size, hash=c.chunk_hash)
                for c in ordered
            ],
            **common,
        )
    return SingleBlobFile(certificate=row.blob_certificate or "", blob_key=row.blob_key, **common)
