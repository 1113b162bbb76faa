"""File and chunk metadata tables"""

from typing import Optional
from datetime import datetime
from sqlalchemy import UniqueConstraint, CheckConstraint
from sqlmodel import SQLModel, Field

from blobkeeper.utils.time_utils import utcnow


class StoredFile(SQLModel, table=True):
    """One row per externally visible file id"""

    __tablename__ = "files"

    file_id: str = Field(primary_key=True)
    file_name: str
    file_hash: str = Field(description="Hex SHA-256 of the whole file")
    is_chunked: bool = Field(default=False)

    # Unset for chunked uploads until the last chunk lands
    file_size: Optional[int] = Field(default=None)
    chunk_size: Optional[int] = Field(default=None, description="Bucket size in bytes for chunked files")
    total_chunks: Optional[int] = Field(default=None)
    is_complete: bool = Field(default=True)

    # Single-blob files only
    blob_certificate: Optional[str] = Field(default=None)
    blob_key: Optional[str] = Field(default=None)

    expiry: datetime = Field(index=True)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: Optional[datetime] = Field(default_factory=utcnow)

    payment_status: str = Field(default="pending", description="pending, paid, insufficient, expired")
    payer_address: Optional[str] = Field(default=None, index=True)
    payment_amount: Optional[str] = Field(default=None, description="Wei as a decimal string")
    payment_tx_hash: Optional[str] = Field(default=None)
    last_balance_check: Optional[datetime] = Field(default=None)
    contract_balance: Optional[str] = Field(default=None, description="Cached ledger balance in wei")

    renewal_count: int = Field(default=0)
    last_renewed_at: Optional[datetime] = Field(default=None)


class StoredChunk(SQLModel, table=True):
    """One row per chunk of a chunked file"""

    __tablename__ = "file_chunks"
    __table_args__ = (
        UniqueConstraint("file_id", "chunk_index", name="uq_file_chunks_file_index"),
        CheckConstraint("chunk_index >= 0", name="ck_file_chunks_index_non_negative"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    file_id: str = Field(foreign_key="files.file_id", index=True)
    chunk_index: int
    certificate: str
    size: int
    chunk_hash: str
    created_at: datetime = Field(default_factory=utcnow)
