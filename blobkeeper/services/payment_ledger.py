"""Payment ledger clients: per-file prepaid balances held on chain"""

import asyncio
import secrets
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple

import aiohttp

from blobkeeper.config import Settings
from blobkeeper.exceptions import InsufficientBalanceError, LedgerError
from blobkeeper.utils.logger import get_logger

logger = get_logger(__name__)

ZERO_ADDRESS = "0x" + "0" * 40


def normalize_address(address: Optional[str]) -> Optional[str]:
    """Lower-case an address; the zero address means no owner"""
    if not address:
        return None
    address = address.strip().lower()
    if address == ZERO_ADDRESS:
        return None
    return address


class PaymentLedger(ABC):
    """Read balances and owners, and deduct renewal costs, for a file id"""

    @abstractmethod
    async def get_balance(self, file_id: str) -> int:
        """Current balance in wei"""

    @abstractmethod
    async def get_owner(self, file_id: str) -> Optional[str]:
        """Address of the first depositor, None if nobody deposited"""

    @abstractmethod
    async def deduct(self, file_id: str, amount: int) -> str:
        """Deduct amount in wei and return the transaction reference"""

    async def initialize(self) -> None:
        pass

    async def close(self) -> None:
        pass


class InMemoryPaymentLedger(PaymentLedger):
    """
    Process-local ledger for memstore deployments and tests.

    Mirrors the contract rules: deposits must be positive, the first
    depositor becomes the owner, deductions never overdraw.
    """

    def __init__(self):
        self._balances: Dict[str, int] = {}
        self._owners: Dict[str, str] = {}
        self.transactions: List[Tuple[str, str, int, str]] = []

    @staticmethod
    def _new_tx_hash() -> str:
        return "0x" + secrets.token_hex(32)

    async def deposit(self, file_id: str, amount: int, payer: str) -> str:
        if amount <= 0:
            raise ValueError("Deposit must be greater than 0")
        payer = normalize_address(payer)
        if not payer:
            raise ValueError("Deposit requires a payer address")
        self._balances[file_id] = self._balances.get(file_id, 0) + amount
        self._owners.setdefault(file_id, payer)
        tx_hash = self._new_tx_hash()
        self.transactions.append(("deposit", file_id, amount, tx_hash))
        return tx_hash

    async def get_balance(self, file_id: str) -> int:
        return self._balances.get(file_id, 0)

    async def get_owner(self, file_id: str) -> Optional[str]:
        return self._owners.get(file_id)

    async def deduct(self, file_id: str, amount: int) -> str:
        if amount < 0:
            raise ValueError("Deduction must not be negative")
        balance = self._balances.get(file_id, 0)
        if balance < amount:
            raise InsufficientBalanceError(
                "Insufficient file balance",
                {"file_id": file_id, "balance": str(balance), "required": str(amount)},
            )
        self._balances[file_id] = balance - amount
        tx_hash = self._new_tx_hash()
        self.transactions.append(("deduct", file_id, amount, tx_hash))
        return tx_hash

    def deductions_for(self, file_id: str) -> List[int]:
        return [amount for kind, fid, amount, _ in self.transactions if kind == "deduct" and fid == file_id]


class HttpPaymentLedger(PaymentLedger):
    """
    Ledger gateway client.

    The gateway fronts the storage payment contract:
    ``GET /files/{id}/balance`` -> ``{"balance": "<wei>"}``,
    ``GET /files/{id}/owner`` -> ``{"owner": "0x..."}``,
    ``POST /files/{id}/deductions`` with ``{"amount": "<wei>"}`` -> ``{"txHash": "0x..."}``.
    """

    def __init__(self, settings: Settings):
        if not settings.ledger_api_url:
            raise ValueError("ledger_api_url is required for the HTTP ledger")
        self.base_url = settings.ledger_api_url.rstrip("/")
        self.timeout = settings.ledger_timeout
        self._api_key = settings.ledger_api_key
        self._session: Optional[aiohttp.ClientSession] = None

    async def initialize(self) -> None:
        if not self._session:
            headers = {"Accept": "application/json"}
            if self._api_key:
                headers["Authorization"] = f"Bearer {self._api_key}"
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout),
                headers=headers,
            )
            logger.debug(f"Ledger client initialized for {self.base_url}")

    async def close(self) -> None:
        if self._session:
            await self._session.close()
            self._session = None

    async def _request(self, method: str, path: str, json: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        if not self._session:
            raise LedgerError("Ledger client not initialized")

        url = f"{self.base_url}{path}"
        try:
            async with self._session.request(method, url, json=json) as response:
                if response.status in (200, 201):
                    try:
                        data = await response.json(content_type=None)
                    except (ValueError, aiohttp.ContentTypeError):
                        body = await response.text()
                        raise LedgerError(
                            f"Ledger {method} {path} returned a non-JSON body",
                            {"status": response.status, "body": body[:200]},
                        )
                    if not isinstance(data, dict):
                        raise LedgerError(
                            f"Ledger {method} {path} returned an unexpected body",
                            {"status": response.status, "body": str(data)[:200]},
                        )
                    return data

                body = await response.text()
                if response.status in (402, 409) and "insufficient" in body.lower():
                    raise InsufficientBalanceError("Insufficient file balance", {"ledger_response": body[:200]})
                raise LedgerError(
                    f"Ledger {method} {path} failed with status {response.status}",
                    {"status": response.status, "body": body[:200]},
                )
        except asyncio.TimeoutError:
            raise LedgerError(f"Ledger {method} {path} timed out after {self.timeout}s")
        except aiohttp.ClientError as e:
            raise LedgerError(f"Ledger {method} {path} failed: {e}")

    async def get_balance(self, file_id: str) -> int:
        data = await self._request("GET", f"/files/{file_id}/balance")
        try:
            return int(data["balance"])
        except (KeyError, TypeError, ValueError):
            raise LedgerError(f"Malformed balance response for {file_id}", {"response": data})

    async def get_owner(self, file_id: str) -> Optional[str]:
        data = await self._request("GET", f"/files/{file_id}/owner")
        return normalize_address(data.get("owner"))

    async def deduct(self, file_id: str, amount: int) -> str:
        data = await self._request("POST", f"/files/{file_id}/deductions", json={"amount": str(amount)})
        tx_hash = data.get("txHash")
        if not tx_hash:
            raise LedgerError(f"Ledger returned no transaction hash for {file_id}", {"response": data})
        logger.info(f"Ledger deduction for {file_id}: {amount} wei (tx {tx_hash})")
        return tx_hash
