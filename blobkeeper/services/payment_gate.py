"""Payment gate: quotes, balance verification and renewal deductions"""

import math
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional

from blobkeeper.config import Settings
from blobkeeper.exceptions import BlobkeeperError, PaymentRequiredError, ValidationError
from blobkeeper.services.chunk_planner import MIB, ceil_div, plan_chunks
from blobkeeper.services.payment_ledger import PaymentLedger
from blobkeeper.utils.logger import get_logger

logger = get_logger(__name__)

WEI_PER_ETH = Decimal(10) ** 18


def format_eth(wei: int) -> str:
    """Render a wei amount in ETH without trailing zeros"""
    value = (Decimal(wei) / WEI_PER_ETH).normalize()
    return f"{value:f}"


@dataclass(frozen=True)
class PaymentQuote:
    size: int
    duration_days: int
    chunk_count: int
    size_units: int
    storage_cost: int
    gas_cost: int

    @property
    def required_amount(self) -> int:
        return self.storage_cost + self.gas_cost

    def to_dict(self) -> Dict[str, Any]:
        return {
            "size": self.size,
            "duration_days": self.duration_days,
            "chunk_count": self.chunk_count,
            "size_mib": self.size_units,
            "storage_cost": str(self.storage_cost),
            "gas_cost": str(self.gas_cost),
            "required_amount": str(self.required_amount),
            "required_amount_eth": format_eth(self.required_amount),
        }


@dataclass(frozen=True)
class UploadAuthorization:
    payer_address: Optional[str]
    balance: Optional[int]
    amount: int
    bypassed: bool = False


@dataclass(frozen=True)
class DeductionResult:
    tx_ref: Optional[str]
    ok: bool
    error: Optional[BlobkeeperError] = None


class PaymentGate:
    """Mediates between storage operations and a file's prepaid ledger balance"""

    def __init__(self, settings: Settings, ledger: PaymentLedger):
        self.settings = settings
        self.ledger = ledger

    @property
    def bypass(self) -> bool:
        return self.settings.payment_bypass

    def quote(self, size: int, duration_days: float, chunk_count: Optional[int] = None) -> PaymentQuote:
        """
        Price storing size bytes for duration_days.

        Size is rounded up to whole MiB and duration up to whole days before
        multiplying. Gas is a flat charge per blob submission.

        Args:
            size: File size in bytes
            duration_days: Requested retention in days
            chunk_count: Blob submissions; planned from size when omitted

        Returns:
            PaymentQuote
        """
        if size < 0:
            raise ValidationError("Size must not be negative", field="size")
        if duration_days <= 0:
            raise ValidationError("Duration must be positive", field="duration_days")

        size_units = ceil_div(size, MIB)
        days = math.ceil(duration_days)
        if chunk_count is None:
            chunk_count = plan_chunks(size, self.settings.bucket_sizes).chunk_count

        storage_cost = self.settings.storage_price_wei_per_mib_day * size_units * days
        gas_cost = self.settings.base_gas_wei * max(1, chunk_count)
        return PaymentQuote(
            size=size,
            duration_days=days,
            chunk_count=chunk_count,
            size_units=size_units,
            storage_cost=storage_cost,
            gas_cost=gas_cost,
        )

    def renewal_cost(self, record) -> int:
        """Cost of extending a file by one renewal period"""
        if record.file_size is None:
            return self.settings.default_renewal_cost_wei
        return self.quote(record.file_size, self.settings.renewal_period_days, record.chunk_count).required_amount

    async def get_balance(self, file_id: str) -> int:
        return await self.ledger.get_balance(file_id)

    async def verify_sufficient(self, file_id: str, required_amount: int) -> bool:
        """Compare the ledger balance, never a cached one, against required_amount"""
        if required_amount < 0:
            raise ValueError("required_amount must not be negative")
        balance = await self.ledger.get_balance(file_id)
        return balance >= required_amount

    async def authorize_upload(self, file_id: str, quote: PaymentQuote) -> UploadAuthorization:
        """
        Check that the caller's deposit for file_id covers the quote.

        Raises:
            PaymentRequiredError: With the quote and current balance when it does not
            LedgerError: When the ledger cannot be read
        """
        if self.bypass:
            logger.warning(f"Payment verification bypassed for {file_id}")
            return UploadAuthorization(payer_address=None, balance=None, amount=quote.required_amount, bypassed=True)

        balance = await self.ledger.get_balance(file_id)
        if balance < quote.required_amount:
            details = quote.to_dict()
            details.update({"file_id": file_id, "balance": str(balance), "balance_eth": format_eth(balance)})
            logger.info(
                f"Payment required for {file_id}: balance {format_eth(balance)} ETH, "
                f"required {format_eth(quote.required_amount)} ETH"
            )
            raise PaymentRequiredError(
                f"Deposit at least {format_eth(quote.required_amount)} ETH for this file before uploading",
                details,
            )

        owner = await self.ledger.get_owner(file_id)
        return UploadAuthorization(payer_address=owner, balance=balance, amount=quote.required_amount)

    async def deduct(self, file_id: str, amount: int) -> DeductionResult:
        """Deduct a renewal cost; ledger refusals come back as ok=False"""
        try:
            tx_ref = await self.ledger.deduct(file_id, amount)
        except BlobkeeperError as e:
            logger.warning(f"Deduction of {format_eth(amount)} ETH for {file_id} failed: {e}")
            return DeductionResult(tx_ref=None, ok=False, error=e)
        return DeductionResult(tx_ref=tx_ref, ok=True)

    def remaining_duration_days(self, record, balance: int) -> Optional[int]:
        """Whole days of storage the balance still funds at the file's daily rate"""
        if record.file_size is None:
            return None
        daily = self.settings.storage_price_wei_per_mib_day * ceil_div(record.file_size, MIB)
        if daily <= 0:
            return None
        return balance // daily
