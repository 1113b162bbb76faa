"""Blob network client - stores raw bytes and fetches them back by certificate"""

import asyncio
from datetime import datetime
from typing import Optional

import aiohttp

from blobkeeper.config import Settings
from blobkeeper.exceptions import (
    BlobNetworkError,
    BlobNetworkTimeoutError,
    BlobNetworkUnavailableError,
)
from blobkeeper.utils.logger import get_logger, short_certificate
from blobkeeper.utils.time_utils import utcnow

logger = get_logger(__name__)


class BlobNetworkClient:
    """
    Client for the blob network proxy.

    ``POST /put`` takes the raw payload and answers with the raw certificate
    bytes; ``GET /get/<prefix><hex>`` answers with the payload. Certificates
    are kept as lowercase hex without the prefix.
    """

    def __init__(self, settings: Settings, backoff_base: float = 1.0):
        self.base_url = settings.blob_proxy_url.rstrip("/")
        self.prefix = settings.certificate_prefix
        self.timeout = settings.effective_blob_timeout
        self.fetch_attempts = max(1, settings.blob_fetch_retry_attempts)
        self.backoff_base = backoff_base
        self._session: Optional[aiohttp.ClientSession] = None
        self._is_available: bool = False
        self._last_health_check: Optional[datetime] = None
        self._health_check_interval: int = 300  # 5 minutes

    async def initialize(self):
        """Open the HTTP session"""
        if not self._session:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout))
            logger.debug(f"Blob network client initialized for {self.base_url} (timeout {self.timeout}s)")

    async def close(self):
        """Close the HTTP session"""
        if self._session:
            await self._session.close()
            self._session = None
        self._is_available = False

    def _require_session(self) -> aiohttp.ClientSession:
        if not self._session:
            raise RuntimeError("Blob network client not initialized. Call initialize() first.")
        return self._session

    def normalize_certificate(self, certificate: str) -> str:
        """Strip the prefix and lower-case a certificate"""
        certificate = certificate.strip()
        if self.prefix and certificate.lower().startswith(self.prefix.lower()):
            certificate = certificate[len(self.prefix):]
        return certificate.lower()

    def format_certificate(self, certificate: str) -> str:
        """Certificate as addressed on the network, with its prefix"""
        return f"{self.prefix}{self.normalize_certificate(certificate)}"

    async def put(self, data: bytes) -> str:
        """
        Store data on the blob network.

        Uploads are not retried here; the caller decides whether to resubmit.

        Args:
            data: Raw payload

        Returns:
            Certificate as lowercase hex without prefix

        Raises:
            BlobNetworkUnavailableError: Network reported it is temporarily down (503)
            BlobNetworkTimeoutError: No answer within the timeout
            BlobNetworkError: Any other failure
        """
        session = self._require_session()
        try:
            async with session.post(
                f"{self.base_url}/put",
                data=data,
                headers={"Content-Type": "application/octet-stream"},
            ) as response:
                if response.status == 503:
                    raise BlobNetworkUnavailableError("Blob network is temporarily unavailable")
                if response.status != 200:
                    body = await response.text()
                    raise BlobNetworkError(
                        f"Blob upload failed with status {response.status}: {body[:200]}",
                        status=response.status,
                    )
                certificate = await response.read()
        except asyncio.TimeoutError:
            raise BlobNetworkTimeoutError(f"Blob upload timed out after {self.timeout}s")
        except aiohttp.ClientError as e:
            raise BlobNetworkError(f"Blob upload failed: {e}")

        if not certificate:
            raise BlobNetworkError("Blob network returned an empty certificate")

        certificate_hex = certificate.hex()
        logger.debug(f"Stored {len(data)} bytes as {short_certificate(certificate_hex)}")
        return certificate_hex

    async def _get_once(self, certificate: str) -> bytes:
        session = self._require_session()
        async with session.get(f"{self.base_url}/get/{self.format_certificate(certificate)}") as response:
            if response.status == 503:
                raise BlobNetworkUnavailableError("Blob network is temporarily unavailable")
            if response.status != 200:
                body = await response.text()
                raise BlobNetworkError(
                    f"Blob fetch failed with status {response.status}: {body[:200]}",
                    status=response.status,
                )
            return await response.read()

    async def get(self, certificate: str) -> bytes:
        """
        Fetch a blob by certificate, retrying transient failures with exponential backoff.

        Client errors (4xx) are not retried.
        """
        last_error: Optional[Exception] = None
        for attempt in range(self.fetch_attempts):
            try:
                return await self._get_once(certificate)
            except BlobNetworkError as e:
                if e.status is not None and 400 <= e.status < 500:
                    raise
                last_error = e
            except BlobNetworkUnavailableError as e:
                last_error = e
            except asyncio.TimeoutError:
                last_error = BlobNetworkTimeoutError(f"Blob fetch timed out after {self.timeout}s")
            except aiohttp.ClientError as e:
                last_error = BlobNetworkError(f"Blob fetch failed: {e}")

            if attempt < self.fetch_attempts - 1:
                wait_time = self.backoff_base * (2 ** attempt)
                logger.warning(
                    f"Fetch attempt {attempt + 1}/{self.fetch_attempts} for {short_certificate(certificate)} "
                    f"failed: {last_error}, retrying in {wait_time}s"
                )
                await asyncio.sleep(wait_time)

        logger.error(f"Fetch of {short_certificate(certificate)} failed after {self.fetch_attempts} attempts")
        raise last_error

    async def is_available(self) -> bool:
        """Health check, cached for a few minutes"""
        if self._last_health_check is not None:
            elapsed = (utcnow() - self._last_health_check).total_seconds()
            if elapsed <= self._health_check_interval:
                return self._is_available
        return await self._health_check()

    async def _health_check(self) -> bool:
        try:
            session = self._require_session()
            async with session.get(
                f"{self.base_url}/health",
                timeout=aiohttp.ClientTimeout(total=10),
            ) as response:
                self._is_available = response.status == 200
        except (asyncio.TimeoutError, aiohttp.ClientError, RuntimeError) as e:
            logger.warning(f"Blob network health check failed: {e}")
            self._is_available = False
        self._last_health_check = utcnow()
        return self._is_available
