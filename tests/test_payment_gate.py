"""Unit tests for the payment gate"""

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from blobkeeper.exceptions import InsufficientBalanceError, LedgerError, PaymentRequiredError, ValidationError
from blobkeeper.models.records import ChunkRecord, ChunkedFile, SingleBlobFile
from blobkeeper.services.chunk_planner import MIB
from blobkeeper.services.payment_gate import PaymentGate, format_eth
from blobkeeper.utils.time_utils import utcnow

PAYER = "0xAbCdEf0000000000000000000000000000000001"


def single_record(file_size=1000) -> SingleBlobFile:
    now = utcnow()
    return SingleBlobFile(
        file_id="doc",
        file_name="doc.txt",
        file_size=file_size,
        hash="ab" * 32,
        expiry=now + timedelta(hours=5),
        created_at=now,
        certificate="aa" * 32,
    )


class TestQuote:
    """Test price quotes"""

    def test_quote_rounds_size_and_duration_up(self, gate):
        """Test that size is billed per started MiB and duration per started day"""
        quote = gate.quote(MIB + 1, 2.5, chunk_count=1)

        assert quote.size_units == 2
        assert quote.duration_days == 3
        assert quote.storage_cost == 10 ** 13 * 2 * 3
        assert quote.gas_cost == 10 ** 14
        assert quote.required_amount == quote.storage_cost + quote.gas_cost

    def test_quote_charges_gas_per_chunk(self, gate):
        """Test that each blob submission pays gas"""
        quote = gate.quote(50 * MIB, 30)

        assert quote.chunk_count == 4
        assert quote.gas_cost == 4 * 10 ** 14
        assert quote.storage_cost == 10 ** 13 * 50 * 30

    def test_quote_rejects_invalid_input(self, gate):
        """Test quote input validation"""
        with pytest.raises(ValidationError):
            gate.quote(-1, 30)
        with pytest.raises(ValidationError):
            gate.quote(100, 0)

    def test_quote_to_dict_uses_strings_for_wei(self, gate):
        """Test that wei amounts are serialized as strings"""
        data = gate.quote(1000, 30, chunk_count=1).to_dict()

        assert data["required_amount"] == str(10 ** 13 * 30 + 10 ** 14)
        assert data["required_amount_eth"] == "0.0004"
        assert data["size_mib"] == 1

    def test_format_eth(self):
        """Test ETH rendering"""
        assert format_eth(10 ** 18) == "1"
        assert format_eth(15 * 10 ** 17) == "1.5"
        assert format_eth(0) == "0"


class TestRenewalCost:
    """Test renewal pricing"""

    def test_single_blob_renewal_cost(self, gate, settings):
        """Test cost of one renewal period for a single blob"""
        expected = settings.storage_price_wei_per_mib_day * 1 * settings.renewal_period_days + settings.base_gas_wei
        assert gate.renewal_cost(single_record()) == expected

    def test_chunked_renewal_cost(self, gate, settings):
        """Test that chunked renewals pay gas for every chunk"""
        now = utcnow()
        record = ChunkedFile(
            file_id="movie",
            file_name="movie.mp4",
            file_size=3 * MIB,
            hash="ab" * 32,
            expiry=now,
            created_at=now,
            chunk_size=MIB,
            total_chunks=3,
            is_complete=True,
            chunks=[ChunkRecord(chunk_index=i, certificate="aa", size=MIB, hash="bb") for i in range(3)],
        )
        expected = settings.storage_price_wei_per_mib_day * 3 * settings.renewal_period_days + 3 * settings.base_gas_wei
        assert gate.renewal_cost(record) == expected

    def test_unknown_size_uses_default_cost(self, gate, settings):
        """Test the fallback cost when the size was never recorded"""
        assert gate.renewal_cost(single_record(file_size=None)) == settings.default_renewal_cost_wei

    def test_remaining_duration(self, gate):
        """Test whole days funded by a balance"""
        assert gate.remaining_duration_days(single_record(), 10 ** 13 * 7 + 5) == 7
        assert gate.remaining_duration_days(single_record(file_size=None), 10 ** 18) is None


class TestAuthorization:
    """Test upload authorization"""

    @pytest.mark.asyncio
    async def test_authorize_with_sufficient_balance(self, gate, ledger):
        """Test that a covering deposit authorizes the upload"""
        await ledger.deposit("doc", 10 ** 15, PAYER)
        quote = gate.quote(1000, 30, chunk_count=1)

        authorization = await gate.authorize_upload("doc", quote)

        assert authorization.payer_address == PAYER.lower()
        assert authorization.balance == 10 ** 15
        assert authorization.amount == quote.required_amount
        assert authorization.bypassed is False

    @pytest.mark.asyncio
    async def test_payment_required_carries_quote(self, gate, ledger):
        """Test that the refusal tells the caller what to pay"""
        await ledger.deposit("doc", 1, PAYER)
        quote = gate.quote(1000, 30, chunk_count=1)

        with pytest.raises(PaymentRequiredError) as exc_info:
            await gate.authorize_upload("doc", quote)

        error = exc_info.value
        assert error.status_code == 402
        assert error.details["required_amount"] == str(quote.required_amount)
        assert error.details["balance"] == "1"
        assert error.details["file_id"] == "doc"

    @pytest.mark.asyncio
    async def test_bypass_skips_ledger(self, settings_factory, ledger):
        """Test that bypass mode never reads the ledger"""
        gate = PaymentGate(settings_factory(payment_bypass=True), ledger)
        ledger.get_balance = AsyncMock()

        authorization = await gate.authorize_upload("doc", gate.quote(1000, 30))

        assert authorization.bypassed is True
        ledger.get_balance.assert_not_called()

    @pytest.mark.asyncio
    async def test_verify_sufficient(self, gate, ledger):
        """Test balance comparison"""
        await ledger.deposit("doc", 100, PAYER)

        assert await gate.verify_sufficient("doc", 100) is True
        assert await gate.verify_sufficient("doc", 101) is False
        with pytest.raises(ValueError):
            await gate.verify_sufficient("doc", -1)


class TestDeduct:
    """Test renewal deductions"""

    @pytest.mark.asyncio
    async def test_deduct_success(self, gate, ledger):
        """Test that a deduction lowers the balance"""
        await ledger.deposit("doc", 1000, PAYER)

        result = await gate.deduct("doc", 400)

        assert result.ok is True
        assert result.tx_ref.startswith("0x")
        assert await ledger.get_balance("doc") == 600

    @pytest.mark.asyncio
    async def test_deduct_refused(self, gate, ledger):
        """Test that an overdraw comes back as a failed result"""
        await ledger.deposit("doc", 100, PAYER)

        result = await gate.deduct("doc", 400)

        assert result.ok is False
        assert isinstance(result.error, InsufficientBalanceError)
        assert await ledger.get_balance("doc") == 100

    @pytest.mark.asyncio
    async def test_deduct_ledger_failure(self, gate, ledger):
        """Test that ledger outages come back as a failed result"""
        ledger.deduct = AsyncMock(side_effect=LedgerError("Ledger unreachable"))

        result = await gate.deduct("doc", 400)

        assert result.ok is False
        assert isinstance(result.error, LedgerError)
