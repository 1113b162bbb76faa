"""Construction and lifecycle of the storage components"""

from dataclasses import dataclass

from blobkeeper.config import Settings
from blobkeeper.database import DatabaseService
from blobkeeper.services.blob_client import BlobNetworkClient
from blobkeeper.services.metadata_store import MetadataStore
from blobkeeper.services.payment_gate import PaymentGate
from blobkeeper.services.payment_ledger import HttpPaymentLedger, InMemoryPaymentLedger, PaymentLedger
from blobkeeper.services.renewal_service import RenewalService
from blobkeeper.services.retrieval_service import RetrievalAssembler
from blobkeeper.services.upload_service import UploadOrchestrator
from blobkeeper.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass
class StorageServices:
    settings: Settings
    database: DatabaseService
    store: MetadataStore
    ledger: PaymentLedger
    gate: PaymentGate
    blob_client: BlobNetworkClient
    uploads: UploadOrchestrator
    renewals: RenewalService
    retrieval: RetrievalAssembler

    async def initialize(self):
        """Open HTTP sessions; the database is opened by its owner"""
        await self.blob_client.initialize()
        await self.ledger.initialize()

    async def close(self):
        await self.blob_client.close()
        await self.ledger.close()


def build_ledger(settings: Settings) -> PaymentLedger:
    if settings.ledger_api_url:
        return HttpPaymentLedger(settings)
    if settings.blob_mode != "memstore" and not settings.payment_bypass:
        logger.warning("No ledger_api_url configured, using an in-process ledger outside memstore mode")
    return InMemoryPaymentLedger()


def build_services(settings: Settings, database: DatabaseService) -> StorageServices:
    """Wire every storage component around one database service"""
    store = MetadataStore(database)
    ledger = build_ledger(settings)
    gate = PaymentGate(settings, ledger)
    blob_client = BlobNetworkClient(settings)
    return StorageServices(
        settings=settings,
        database=database,
        store=store,
        ledger=ledger,
        gate=gate,
        blob_client=blob_client,
        uploads=UploadOrchestrator(settings, store, gate, blob_client),
        renewals=RenewalService(settings, store, gate, blob_client),
        retrieval=RetrievalAssembler(settings, store, blob_client),
    )
