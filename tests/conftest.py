"""Pytest configuration and shared fixtures"""

import hashlib
import os
from dataclasses import dataclass
from typing import Callable, Dict, Generator, List, Optional

import pytest

from blobkeeper.config import Settings
from blobkeeper.database import DatabaseService
from blobkeeper.exceptions import BlobNetworkError
from blobkeeper.services.blob_client import BlobNetworkClient
from blobkeeper.services.metadata_store import MetadataStore
from blobkeeper.services.payment_gate import PaymentGate
from blobkeeper.services.payment_ledger import InMemoryPaymentLedger
from blobkeeper.services.renewal_service import RenewalService
from blobkeeper.services.retrieval_service import RetrievalAssembler
from blobkeeper.services.upload_service import UploadOrchestrator

CONFIG_ENV_VARS = [
    "DATABASE_URL",
    "BLOB_PROXY_URL",
    "BLOB_MODE",
    "BLOB_TIMEOUT",
    "BLOB_BUCKET_SIZES_MIB",
    "BLOB_FETCH_RETRY_ATTEMPTS",
    "CERTIFICATE_PREFIX",
    "MAX_FILE_SIZE",
    "PAYMENT_BYPASS",
    "LEDGER_API_URL",
    "LEDGER_API_KEY",
    "RENEWAL_ENABLED",
    "RENEWAL_LOOKAHEAD_HOURS",
    "RENEWAL_PERIOD_DAYS",
    "RENEWAL_CONCURRENCY",
    "ENVIRONMENT",
    "NODE_ENV",
    "LOG_LEVEL",
]


@pytest.fixture(autouse=True)
def reset_env_vars() -> Generator[None, None, None]:
    """Reset environment variables before each test"""
    original_env = os.environ.copy()

    for var in CONFIG_ENV_VARS:
        os.environ.pop(var, None)

    yield

    os.environ.clear()
    os.environ.update(original_env)


class FakeBlobNetwork(BlobNetworkClient):
    """In-memory blob network with failure injection"""

    def __init__(self, settings: Settings):
        super().__init__(settings, backoff_base=0)
        self.blobs: Dict[str, bytes] = {}
        self.put_calls = 0
        self.get_calls: List[str] = []
        self.put_failures: List[Exception] = []
        self.fail_after_puts: Optional[int] = None
        self.get_failures: Dict[str, Exception] = {}

    async def initialize(self):
        pass

    async def close(self):
        pass

    async def put(self, data: bytes) -> str:
        if self.put_failures:
            raise self.put_failures.pop(0)
        if self.fail_after_puts is not None and self.put_calls >= self.fail_after_puts:
            raise BlobNetworkError("Blob upload failed with status 500", status=500)
        self.put_calls += 1
        certificate = hashlib.sha256(f"{self.put_calls}:".encode() + data).hexdigest()
        self.blobs[certificate] = bytes(data)
        return certificate

    async def get(self, certificate: str) -> bytes:
        certificate = self.normalize_certificate(certificate)
        self.get_calls.append(certificate)
        if certificate in self.get_failures:
            raise self.get_failures[certificate]
        if certificate not in self.blobs:
            raise BlobNetworkError("Blob fetch failed with status 404", status=404)
        return self.blobs[certificate]

    def corrupt(self, certificate: str) -> None:
        data = bytearray(self.blobs[certificate])
        data[0] ^= 0xFF
        self.blobs[certificate] = bytes(data)


def make_settings(tmp_path, **overrides) -> Settings:
    values = dict(
        database_url=f"sqlite:///{tmp_path}/blobkeeper-test.db",
        blob_mode="memstore",
        blob_bucket_sizes_mib="1,2,4,8,16",
        payment_bypass=False,
        database_busy_timeout=10.0,
    )
    values.update(overrides)
    return Settings(**values)


@dataclass
class StorageStack:
    settings: Settings
    database: DatabaseService
    store: MetadataStore
    ledger: InMemoryPaymentLedger
    gate: PaymentGate
    blob_network: FakeBlobNetwork
    uploads: UploadOrchestrator
    renewals: RenewalService
    retrieval: RetrievalAssembler


@pytest.fixture
def settings_factory(tmp_path) -> Callable[..., Settings]:
    def factory(**overrides) -> Settings:
        return make_settings(tmp_path, **overrides)

    return factory


@pytest.fixture
def stack_factory(tmp_path) -> Generator[Callable[..., StorageStack], None, None]:
    """Wire every component around settings built from the given overrides"""
    databases: List[DatabaseService] = []

    def factory(**overrides) -> StorageStack:
        overrides.setdefault("database_url", f"sqlite:///{tmp_path}/stack-{len(databases)}.db")
        settings = make_settings(tmp_path, **overrides)
        database = DatabaseService(settings)
        database.initialize()
        databases.append(database)

        store = MetadataStore(database)
        ledger = InMemoryPaymentLedger()
        gate = PaymentGate(settings, ledger)
        blob_network = FakeBlobNetwork(settings)
        return StorageStack(
            settings=settings,
            database=database,
            store=store,
            ledger=ledger,
            gate=gate,
            blob_network=blob_network,
            uploads=UploadOrchestrator(settings, store, gate, blob_network),
            renewals=RenewalService(settings, store, gate, blob_network),
            retrieval=RetrievalAssembler(settings, store, blob_network),
        )

    yield factory

    for database in databases:
        database.close()


@pytest.fixture
def settings(tmp_path) -> Settings:
    return make_settings(tmp_path)


@pytest.fixture
def database(settings) -> Generator[DatabaseService, None, None]:
    service = DatabaseService(settings)
    service.initialize()
    yield service
    service.close()


@pytest.fixture
def store(database) -> MetadataStore:
    return MetadataStore(database)


@pytest.fixture
def ledger() -> InMemoryPaymentLedger:
    return InMemoryPaymentLedger()


@pytest.fixture
def gate(settings, ledger) -> PaymentGate:
    return PaymentGate(settings, ledger)


@pytest.fixture
def blob_network(settings) -> FakeBlobNetwork:
    return FakeBlobNetwork(settings)


@pytest.fixture
def uploads(settings, store, gate, blob_network) -> UploadOrchestrator:
    return UploadOrchestrator(settings, store, gate, blob_network)


@pytest.fixture
def renewals(settings, store, gate, blob_network) -> RenewalService:
    return RenewalService(settings, store, gate, blob_network)


@pytest.fixture
def retrieval(settings, store, blob_network) -> RetrievalAssembler:
    return RetrievalAssembler(settings, store, blob_network)
