"""Upload orchestration for single-blob and chunked uploads"""

import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional
from uuid import uuid4

from blobkeeper.config import Settings
from blobkeeper.exceptions import (
    BlobNetworkUnavailableError,
    ChunkOrderError,
    DuplicateFileError,
    FileTooLargeError,
    HashMismatchError,
    ServiceUnavailableError,
    ValidationError,
)
from blobkeeper.models.records import ChunkRecord, ChunkedFile, PaymentInfo, PaymentStatus
from blobkeeper.services.blob_client import BlobNetworkClient
from blobkeeper.services.chunk_planner import ChunkPlan, max_chunk_count, plan_chunks
from blobkeeper.services.metadata_store import MetadataStore
from blobkeeper.services.payment_gate import PaymentGate, PaymentQuote, UploadAuthorization
from blobkeeper.utils.file_security import get_safe_filename
from blobkeeper.utils.integrity import is_sha256_hex, sha256_hex
from blobkeeper.utils.logger import get_logger, short_certificate
from blobkeeper.utils.time_utils import utcnow

logger = get_logger(__name__)

FILE_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")


@dataclass
class UploadResult:
    file_id: str
    file_name: str
    file_size: int
    hash: str
    certificate: str
    expiry: datetime
    permanent_url: str
    payment_status: str
    quote: PaymentQuote


@dataclass
class ChunkUploadResult:
    file_id: str
    chunk_index: int
    total_chunks: int
    chunks_received: int
    certificate: str
    is_complete: bool
    expiry: datetime
    permanent_url: str
    file_size: Optional[int] = None
    quote: Optional[PaymentQuote] = None


@dataclass
class UploadPlan:
    plan: ChunkPlan
    quote: PaymentQuote


def _parse_int(value: Any, field: str) -> int:
    if value is None or value == "":
        raise ValidationError(f"Missing required field: {field}", field=field)
    if isinstance(value, bool):
        raise ValidationError(f"Invalid integer for {field}", field=field)
    if isinstance(value, int):
        return value
    try:
        return int(str(value).strip())
    except ValueError:
        raise ValidationError(f"Invalid integer for {field}: {value!r}", field=field)


def _parse_flag(value: Any, field: str) -> Optional[bool]:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in ("true", "1", "yes"):
        return True
    if text in ("false", "0", "no"):
        return False
    raise ValidationError(f"Invalid boolean for {field}: {value!r}", field=field)


class UploadOrchestrator:
    """Validates, prices and stores uploads, then records their certificates"""

    def __init__(
        self,
        settings: Settings,
        store: MetadataStore,
        gate: PaymentGate,
        blob_client: BlobNetworkClient,
    ):
        self.settings = settings
        self.store = store
        self.gate = gate
        self.blob_client = blob_client

    @property
    def max_chunks(self) -> int:
        return max_chunk_count(self.settings.max_file_size, self.settings.bucket_sizes)

    def permanent_url(self, file_id: str) -> str:
        return f"{self.settings.public_base_url.rstrip('/')}/f/{file_id}"

    def _new_expiry(self) -> datetime:
        return utcnow() + timedelta(days=self.settings.renewal_period_days)

    def _validate_file_id(self, file_id: Any) -> str:
        if file_id is None or file_id == "":
            raise ValidationError("Missing required field: file_id", field="file_id")
        file_id = str(file_id)
        if not FILE_ID_PATTERN.match(file_id):
            raise ValidationError(
                "file_id must be 1-128 letters, digits, dots, dashes or underscores",
                field="file_id",
            )
        return file_id

    def _resolve_duration(self, duration_days: Any) -> int:
        if duration_days is None or duration_days == "":
            return self.settings.default_duration_days
        duration = _parse_int(duration_days, "duration_days")
        if duration <= 0:
            raise ValidationError("duration_days must be positive", field="duration_days")
        if duration > self.settings.max_duration_days:
            raise ValidationError(
                f"duration_days must not exceed {self.settings.max_duration_days}",
                field="duration_days",
            )
        return duration

    def _payment_info(self, authorization: UploadAuthorization) -> PaymentInfo:
        if authorization.bypassed:
            return PaymentInfo(status=PaymentStatus.PENDING)
        return PaymentInfo(
            status=PaymentStatus.PAID,
            payer_address=authorization.payer_address,
            amount=authorization.amount,
            contract_balance=authorization.balance,
            last_balance_check=utcnow(),
        )

    async def _put(self, data: bytes, subject: str) -> str:
        try:
            return await self.blob_client.put(data)
        except BlobNetworkUnavailableError:
            logger.warning(f"Blob network unavailable while storing {subject}")
            raise
        except ServiceUnavailableError as e:
            logger.error(f"❌ Failed to store {subject}: {e}")
            raise

    def plan(self, file_size: int, duration_days: Any = None) -> UploadPlan:
        """Chunk plan and price for a file a client is about to upload"""
        if file_size <= 0:
            raise ValidationError("file_size must be positive", field="file_size")
        if file_size > self.settings.max_file_size:
            raise FileTooLargeError(
                f"File size {file_size} exceeds the maximum of {self.settings.max_file_size} bytes",
                field="file_size",
            )
        plan = plan_chunks(file_size, self.settings.bucket_sizes)
        quote = self.gate.quote(file_size, self._resolve_duration(duration_days), plan.chunk_count)
        return UploadPlan(plan=plan, quote=quote)

    async def upload_file(
        self,
        data: bytes,
        file_name: str,
        duration_days: Any = None,
        file_id: Optional[str] = None,
    ) -> UploadResult:
        """
        Store a file that fits in one blob.

        Args:
            data: File contents
            file_name: Original file name (sanitized before storing)
            duration_days: Paid retention; defaults to the configured duration
            file_id: Stable id; generated when omitted

        Returns:
            UploadResult

        Raises:
            ValidationError: Empty file, file needing chunks, bad duration or id
            PaymentRequiredError: Balance does not cover the quote
            BlobNetworkUnavailableError: Blob network temporarily down, retry later
        """
        file_id = self._validate_file_id(file_id or str(uuid4()))
        if not data:
            raise ValidationError("File is empty", field="file")
        if not file_name:
            raise ValidationError("Missing required field: file_name", field="file_name")

        size = len(data)
        if size > self.settings.max_file_size:
            raise FileTooLargeError(
                f"File size {size} exceeds the maximum of {self.settings.max_file_size} bytes",
                field="file",
            )
        plan = plan_chunks(size, self.settings.bucket_sizes)
        if plan.is_chunked:
            raise ValidationError(
                f"File needs {plan.chunk_count} chunks of {plan.bucket_size} bytes; use chunked upload",
                field="file",
                details={"bucket_size": plan.bucket_size, "chunk_count": plan.chunk_count},
            )

        duration = self._resolve_duration(duration_days)
        quote = self.gate.quote(size, duration, chunk_count=1)

        if await self.store.get_file(file_id) is not None:
            raise DuplicateFileError(f"File id already exists: {file_id}", field="file_id")

        authorization = await self.gate.authorize_upload(file_id, quote)

        file_hash = sha256_hex(data)
        certificate = await self._put(data, f"file {file_id}")

        record = await self.store.create_single_blob_file(
            file_id=file_id,
            file_name=get_safe_filename(file_name),
            file_hash=file_hash,
            file_size=size,
            certificate=certificate,
            expiry=self._new_expiry(),
            payment=self._payment_info(authorization),
        )

        logger.info(f"✅ Uploaded {file_id} ({size} bytes) as {short_certificate(certificate)}")
        return UploadResult(
            file_id=record.file_id,
            file_name=record.file_name,
            file_size=size,
            hash=file_hash,
            certificate=self.blob_client.format_certificate(certificate),
            expiry=record.expiry,
            permanent_url=self.permanent_url(file_id),
            payment_status=record.payment.status.value,
            quote=quote,
        )

    async def upload_chunk(
        self,
        data: bytes,
        file_id: Any,
        chunk_index: Any,
        total_chunks: Any,
        file_name: Optional[str] = None,
        file_hash: Optional[str] = None,
        chunk_hash: Optional[str] = None,
        is_first: Any = None,
        is_last: Any = None,
        duration_days: Any = None,
        file_size: Any = None,
    ) -> ChunkUploadResult:
        """
        Store one chunk of a chunked upload.

        Chunks must arrive strictly in order starting at 0. Chunk 0 creates the
        record and carries the whole-file hash; the last chunk completes it and
        fixes its size as the sum of the stored chunks. A chunk whose blob upload
        failed is never recorded and can be resubmitted with the same index.

        Raises:
            ValidationError: Missing or malformed field, inconsistent flags, bad sizes
            ChunkOrderError: Index is not the next expected one
            HashMismatchError: Chunk bytes do not match chunk_hash
            PaymentRequiredError: Balance does not cover the quote (chunk 0 only)
            BlobNetworkUnavailableError: Blob network temporarily down, retry the same chunk
        """
        file_id = self._validate_file_id(file_id)
        index = _parse_int(chunk_index, "chunk_index")
        total = _parse_int(total_chunks, "total_chunks")
        first_flag = _parse_flag(is_first, "is_first")
        last_flag = _parse_flag(is_last, "is_last")

        if total < 2 or total > self.max_chunks:
            raise ValidationError(
                f"total_chunks must be between 2 and {self.max_chunks}; single-blob files use a plain upload",
                field="total_chunks",
            )
        if index < 0 or index >= total:
            raise ValidationError(f"chunk_index must be between 0 and {total - 1}", field="chunk_index")
        if first_flag is not None and first_flag != (index == 0):
            raise ValidationError("is_first is only valid for chunk 0", field="is_first")
        if last_flag is not None and last_flag != (index == total - 1):
            raise ValidationError(f"is_last is only valid for chunk {total - 1}", field="is_last")
        if not data:
            raise ValidationError("Chunk is empty", field="chunk")

        computed_hash = sha256_hex(data)
        if chunk_hash:
            if not is_sha256_hex(chunk_hash):
                raise ValidationError("chunk_hash must be a 64 character hex SHA-256", field="chunk_hash")
            if computed_hash != chunk_hash.lower():
                logger.warning(f"Rejected chunk {index} of {file_id}: hash mismatch")
                raise HashMismatchError(f"chunk {index} of {file_id}", chunk_hash.lower(), computed_hash)

        quote: Optional[PaymentQuote] = None
        if index == 0:
            record, quote = await self._start_chunked_upload(
                data, file_id, total, file_name, file_hash, duration_days, file_size
            )
        else:
            record = await self._check_next_chunk(data, file_id, index, total)

        is_last_chunk = index == total - 1
        certificate = await self._put(data, f"chunk {index} of {file_id}")
        record = await self.store.append_chunk(
            file_id,
            ChunkRecord(chunk_index=index, certificate=certificate, size=len(data), hash=computed_hash),
            max_file_size=self.settings.max_file_size if is_last_chunk else None,
        )

        if is_last_chunk:
            logger.info(f"✅ Chunked upload {file_id} complete: {total} chunks, {record.file_size} bytes")

        return ChunkUploadResult(
            file_id=file_id,
            chunk_index=index,
            total_chunks=total,
            chunks_received=len(record.chunks),
            certificate=self.blob_client.format_certificate(certificate),
            is_complete=record.is_complete,
            expiry=record.expiry,
            permanent_url=self.permanent_url(file_id),
            file_size=record.file_size,
            quote=quote,
        )

    async def _start_chunked_upload(
        self,
        data: bytes,
        file_id: str,
        total: int,
        file_name: Optional[str],
        file_hash: Optional[str],
        duration_days: Any,
        file_size: Any,
    ):
        if not file_name:
            raise ValidationError("Missing required field: file_name", field="file_name")
        if not file_hash:
            raise ValidationError("Missing required field: file_hash", field="file_hash")
        if not is_sha256_hex(file_hash):
            raise ValidationError("file_hash must be a 64 character hex SHA-256", field="file_hash")

        bucket_sizes = self.settings.bucket_sizes
        if file_size is not None and file_size != "":
            declared_size = _parse_int(file_size, "file_size")
            if declared_size <= 0:
                raise ValidationError("file_size must be positive", field="file_size")
            if declared_size > self.settings.max_file_size:
                raise FileTooLargeError(
                    f"File size {declared_size} exceeds the maximum of {self.settings.max_file_size} bytes",
                    field="file_size",
                )
            plan = plan_chunks(declared_size, bucket_sizes)
            if plan.chunk_count != total:
                raise ValidationError(
                    f"A file of {declared_size} bytes is stored as {plan.chunk_count} chunks, not {total}",
                    field="total_chunks",
                )
            bucket_size = plan.bucket_size
            quoted_size = declared_size
        else:
            # Anything that needs chunking overflows every bucket, so chunks use the largest one
            bucket_size = bucket_sizes[-1]
            quoted_size = min(total * bucket_size, self.settings.max_file_size)

        if len(data) > bucket_size:
            raise ValidationError(
                f"Chunk of {len(data)} bytes exceeds the bucket size of {bucket_size}",
                field="chunk",
            )

        quote = self.gate.quote(quoted_size, self._resolve_duration(duration_days), chunk_count=total)
        authorization = await self.gate.authorize_upload(file_id, quote)

        record = await self.store.initialize_chunked_file(
            file_id=file_id,
            file_name=get_safe_filename(file_name),
            file_hash=file_hash,
            chunk_size=bucket_size,
            total_chunks=total,
            expiry=self._new_expiry(),
            payment=self._payment_info(authorization),
        )
        return record, quote

    async def _check_next_chunk(self, data: bytes, file_id: str, index: int, total: int) -> ChunkedFile:
        # Checked again under the write lock on append; this avoids paying for a doomed blob upload
        record = await self.store.get_file(file_id)
        if record is None:
            raise ValidationError(f"No chunked upload in progress for {file_id}; send chunk 0 first", field="file_id")
        if not isinstance(record, ChunkedFile):
            raise ValidationError(f"File {file_id} is not a chunked upload", field="file_id")
        if record.is_complete:
            raise ChunkOrderError(f"Upload of {file_id} is already complete", received_index=index)
        if record.total_chunks != total:
            raise ValidationError(
                f"total_chunks {total} does not match the {record.total_chunks} declared with chunk 0",
                field="total_chunks",
            )
        if index != len(record.chunks):
            raise ChunkOrderError(
                f"Expected chunk {len(record.chunks)} for {file_id}, got {index}",
                expected_index=len(record.chunks),
                received_index=index,
            )
        if len(data) > record.chunk_size:
            raise ValidationError(
                f"Chunk of {len(data)} bytes exceeds the bucket size of {record.chunk_size}",
                field="chunk",
            )
        stored_size = sum(chunk.size for chunk in record.chunks)
        if stored_size + len(data) > self.settings.max_file_size:
            raise FileTooLargeError(
                f"File would exceed the maximum of {self.settings.max_file_size} bytes",
                field="chunk",
            )
        return record
