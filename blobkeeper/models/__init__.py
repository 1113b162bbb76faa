"""Models module"""

from blobkeeper.models.stored_file import StoredFile, StoredChunk
from blobkeeper.models.payment import PaymentRecord
from blobkeeper.models.records import (
    ChunkRecord,
    ChunkedFile,
    FileRecord,
    PaymentInfo,
    PaymentStatus,
    RenewalState,
    SingleBlobFile,
)

__all__ = [
    "StoredFile",
    "StoredChunk",
    "PaymentRecord",
    "ChunkRecord",
    "ChunkedFile",
    "FileRecord",
    "PaymentInfo",
    "PaymentStatus",
    "RenewalState",
    "SingleBlobFile",
]
