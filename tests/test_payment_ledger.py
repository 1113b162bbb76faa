"""Unit tests for payment ledger clients"""

import pytest
from aiohttp import test_utils, web

from blobkeeper.exceptions import InsufficientBalanceError, LedgerError
from blobkeeper.services.payment_ledger import (
    ZERO_ADDRESS,
    HttpPaymentLedger,
    InMemoryPaymentLedger,
    normalize_address,
)

PAYER = "0xAbCdEf0000000000000000000000000000000001"
OTHER = "0x2222222222222222222222222222222222222222"


def test_normalize_address():
    """Test address normalization"""
    assert normalize_address(PAYER) == PAYER.lower()
    assert normalize_address(f"  {PAYER} ") == PAYER.lower()
    assert normalize_address(ZERO_ADDRESS) is None
    assert normalize_address("") is None
    assert normalize_address(None) is None


class TestInMemoryPaymentLedger:
    """Test the in-process ledger"""

    @pytest.mark.asyncio
    async def test_first_depositor_owns_file(self):
        """Test that later deposits do not change the owner"""
        ledger = InMemoryPaymentLedger()
        await ledger.deposit("doc", 100, PAYER)
        await ledger.deposit("doc", 50, OTHER)

        assert await ledger.get_balance("doc") == 150
        assert await ledger.get_owner("doc") == PAYER.lower()

    @pytest.mark.asyncio
    async def test_deposit_validation(self):
        """Test that deposits need a positive amount and a payer"""
        ledger = InMemoryPaymentLedger()
        with pytest.raises(ValueError):
            await ledger.deposit("doc", 0, PAYER)
        with pytest.raises(ValueError):
            await ledger.deposit("doc", 10, ZERO_ADDRESS)

    @pytest.mark.asyncio
    async def test_unknown_file_has_no_balance(self):
        """Test defaults for files nobody paid for"""
        ledger = InMemoryPaymentLedger()
        assert await ledger.get_balance("nobody") == 0
        assert await ledger.get_owner("nobody") is None

    @pytest.mark.asyncio
    async def test_deduct_never_overdraws(self):
        """Test that deductions above the balance are refused"""
        ledger = InMemoryPaymentLedger()
        await ledger.deposit("doc", 100, PAYER)

        tx_hash = await ledger.deduct("doc", 60)
        assert len(tx_hash) == 66
        with pytest.raises(InsufficientBalanceError):
            await ledger.deduct("doc", 60)

        assert await ledger.get_balance("doc") == 40
        assert ledger.deductions_for("doc") == [60]


def ledger_app(state: dict) -> web.Application:
    async def balance(request):
        if request.headers.get("Authorization") != "Bearer secret":
            return web.Response(status=401, text="unauthorized")
        file_id = request.match_info["file_id"]
        if file_id == "broken":
            return web.json_response({"unexpected": True})
        if file_id == "html":
            return web.Response(text="<html>maintenance</html>", content_type="text/html")
        if file_id == "listed":
            return web.json_response([{"balance": "1"}])
        return web.json_response({"balance": str(state["balances"].get(file_id, 0))})

    async def owner(request):
        return web.json_response({"owner": state["owners"].get(request.match_info["file_id"], ZERO_ADDRESS)})

    async def deductions(request):
        file_id = request.match_info["file_id"]
        body = await request.json()
        amount = int(body["amount"])
        if amount > state["balances"].get(file_id, 0):
            return web.Response(status=402, text="insufficient balance")
        state["balances"][file_id] -= amount
        return web.json_response({"txHash": "0x" + "ab" * 32})

    app = web.Application()
    app.router.add_get("/files/{file_id}/balance", balance)
    app.router.add_get("/files/{file_id}/owner", owner)
    app.router.add_post("/files/{file_id}/deductions", deductions)
    return app


class TestHttpPaymentLedger:
    """Test the ledger gateway client"""

    @pytest.mark.asyncio
    async def test_gateway_round_trip(self, settings_factory):
        """Test balance, owner and deduction calls"""
        state = {"balances": {"doc": 10 ** 18}, "owners": {"doc": PAYER}}
        server = test_utils.TestServer(ledger_app(state))
        await server.start_server()
        ledger = HttpPaymentLedger(
            settings_factory(ledger_api_url=str(server.make_url("")), ledger_api_key="secret")
        )
        await ledger.initialize()
        try:
            assert await ledger.get_balance("doc") == 10 ** 18
            assert await ledger.get_owner("doc") == PAYER.lower()
            assert await ledger.get_owner("nobody") is None

            tx_hash = await ledger.deduct("doc", 10 ** 17)
            assert tx_hash == "0x" + "ab" * 32
            assert state["balances"]["doc"] == 9 * 10 ** 17

            with pytest.raises(InsufficientBalanceError):
                await ledger.deduct("doc", 10 ** 19)
            with pytest.raises(LedgerError):
                await ledger.get_balance("broken")
        finally:
            await ledger.close()
            await server.close()

    @pytest.mark.asyncio
    async def test_gateway_errors(self, settings_factory):
        """Test that rejected requests raise ledger errors"""
        server = test_utils.TestServer(ledger_app({"balances": {}, "owners": {}}))
        await server.start_server()
        ledger = HttpPaymentLedger(settings_factory(ledger_api_url=str(server.make_url(""))))
        await ledger.initialize()
        try:
            with pytest.raises(LedgerError) as exc_info:
                await ledger.get_balance("doc")
            assert exc_info.value.details["status"] == 401
        finally:
            await ledger.close()
            await server.close()

    @pytest.mark.asyncio
    async def test_malformed_replies(self, settings_factory):
        """Test that successful replies without a JSON object raise ledger errors"""
        server = test_utils.TestServer(ledger_app({"balances": {}, "owners": {}}))
        await server.start_server()
        ledger = HttpPaymentLedger(
            settings_factory(ledger_api_url=str(server.make_url("")), ledger_api_key="secret")
        )
        await ledger.initialize()
        try:
            with pytest.raises(LedgerError) as exc_info:
                await ledger.get_balance("html")
            assert exc_info.value.details["status"] == 200
            assert "maintenance" in exc_info.value.details["body"]

            with pytest.raises(LedgerError):
                await ledger.get_balance("listed")
        finally:
            await ledger.close()
            await server.close()

    @pytest.mark.asyncio
    async def test_unreachable_gateway(self, settings_factory):
        """Test that connection failures raise ledger errors"""
        ledger = HttpPaymentLedger(settings_factory(ledger_api_url="http://127.0.0.1:9", ledger_timeout=2))
        await ledger.initialize()
        try:
            with pytest.raises(LedgerError):
                await ledger.get_balance("doc")
        finally:
            await ledger.close()

    def test_requires_url(self, settings):
        """Test that the gateway client needs a URL"""
        with pytest.raises(ValueError):
            HttpPaymentLedger(settings)

    @pytest.mark.asyncio
    async def test_requires_initialize(self, settings_factory):
        """Test that calls before initialize fail cleanly"""
        ledger = HttpPaymentLedger(settings_factory(ledger_api_url="http://127.0.0.1:9"))
        with pytest.raises(LedgerError):
            await ledger.get_balance("doc")
