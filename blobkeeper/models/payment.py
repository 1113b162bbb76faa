"""Payment history table"""

from typing import Optional
from datetime import datetime
from sqlalchemy import UniqueConstraint
from sqlmodel import SQLModel, Field

from blobkeeper.utils.time_utils import utcnow


class PaymentRecord(SQLModel, table=True):
    """Deposits observed and deductions made against a file's balance"""

    __tablename__ = "payments"
    __table_args__ = (
        # One deduction per renewal cycle; NULLs (deposits) never collide
        UniqueConstraint("file_id", "renewal_of", name="uq_payments_file_renewal"),
    )

    tx_hash: str = Field(primary_key=True)
    file_id: str = Field(foreign_key="files.file_id", index=True)
    payer_address: Optional[str] = Field(default=None, index=True)
    amount: str = Field(description="Wei as a decimal string")
    type: str = Field(default="refresh", description="deposit, refresh, withdrawal")
    status: str = Field(default="confirmed", description="pending, confirmed, failed")
    renewal_of: Optional[datetime] = Field(default=None, description="Expiry the refresh deduction paid to extend")
    created_at: datetime = Field(default_factory=utcnow)
