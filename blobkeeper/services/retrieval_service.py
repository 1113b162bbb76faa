"""Retrieval: resolve a file id and stream its blobs back in order"""

from typing import AsyncIterator, List, Optional, Tuple

from blobkeeper.config import Settings
from blobkeeper.exceptions import FileExpiredError, HashMismatchError, IntegrityError, RecordNotFoundError
from blobkeeper.models.records import ChunkedFile
from blobkeeper.services.blob_client import BlobNetworkClient
from blobkeeper.services.metadata_store import FileRecordVariant, MetadataStore
from blobkeeper.utils.integrity import StreamingHasher, verify_hash
from blobkeeper.utils.logger import get_logger
from blobkeeper.utils.time_utils import utcnow

logger = get_logger(__name__)

# (certificate, expected hash, description)
BlobPart = Tuple[str, str, str]


class BlobStream:
    """
    Verified, in-order stream of a file's bytes.

    The first blob is fetched before the stream is handed out, so lookup and
    first-fetch failures surface before any byte is sent. Later blobs are
    fetched one at a time while iterating.
    """

    def __init__(self, record: FileRecordVariant, blob_client: BlobNetworkClient, parts: List[BlobPart], first: bytes):
        self.record = record
        self._blob_client = blob_client
        self._parts = parts
        self._first: Optional[bytes] = first
        self._consumed = False

    @property
    def file_id(self) -> str:
        return self.record.file_id

    @property
    def file_name(self) -> str:
        return self.record.file_name

    @property
    def file_size(self) -> Optional[int]:
        return self.record.file_size

    @property
    def chunk_count(self) -> int:
        return len(self._parts)

    def __aiter__(self) -> AsyncIterator[bytes]:
        if self._consumed:
            raise RuntimeError(f"Stream for {self.file_id} was already consumed")
        self._consumed = True
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[bytes]:
        hasher = StreamingHasher()

        first, self._first = self._first, None
        hasher.update(first)
        yield first

        for certificate, expected_hash, subject in self._parts[1:]:
            data = await self._blob_client.get(certificate)
            verify_hash(data, expected_hash, subject)
            hasher.update(data)
            yield data

        if isinstance(self.record, ChunkedFile) and not hasher.matches(self.record.hash):
            logger.error(f"❌ Reassembled {self.file_id} does not match its file hash")
            raise HashMismatchError(f"file {self.file_id}", self.record.hash, hasher.hexdigest())

        logger.debug(f"Streamed {self.file_id}: {self.chunk_count} blob(s), {hasher.size} bytes")


class RetrievalAssembler:
    """Resolves file ids to their blobs and streams them back"""

    def __init__(self, settings: Settings, store: MetadataStore, blob_client: BlobNetworkClient):
        self.settings = settings
        self.store = store
        self.blob_client = blob_client

    async def open_stream(self, file_id: str) -> BlobStream:
        """
        Resolve file_id and fetch its first blob.

        Raises:
            RecordNotFoundError: Unknown id or unfinished chunked upload
            FileExpiredError: Retention window passed without renewal
            IntegrityError: Chunk sequence has gaps, or a blob fails its hash check
            ServiceUnavailableError: Blob network failure
        """
        record = await self.store.get_file(file_id)
        if record is None:
            raise RecordNotFoundError(file_id)
        if record.expiry <= utcnow():
            raise FileExpiredError(file_id, record.expiry)

        parts = self._resolve_parts(record)

        certificate, expected_hash, subject = parts[0]
        first = await self.blob_client.get(certificate)
        verify_hash(first, expected_hash, subject)

        return BlobStream(record, self.blob_client, parts, first)

    def _resolve_parts(self, record: FileRecordVariant) -> List[BlobPart]:
        if not isinstance(record, ChunkedFile):
            return [(record.certificate, record.hash, f"file {record.file_id}")]

        if not record.is_complete:
            raise RecordNotFoundError(record.file_id, f"Upload of {record.file_id} is not complete")

        chunks = sorted(record.chunks, key=lambda chunk: chunk.chunk_index)
        indexes = [chunk.chunk_index for chunk in chunks]
        if indexes != list(range(record.total_chunks)):
            logger.error(f"❌ Chunk sequence of {record.file_id} is broken: {indexes}")
            raise IntegrityError(
                f"Chunk sequence of {record.file_id} is incomplete or has gaps",
                {"file_id": record.file_id, "indexes": indexes, "total_chunks": record.total_chunks},
            )
        return [
            (chunk.certificate, chunk.hash, f"chunk {chunk.chunk_index} of {record.file_id}")
            for chunk in chunks
        ]

    async def fetch_bytes(self, file_id: str) -> bytes:
        """Whole file in memory; meant for small files and tests"""
        stream = await self.open_stream(file_id)
        return b"".join([part async for part in stream])
