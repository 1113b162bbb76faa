"""Metadata store - durable file, chunk and payment records"""

import uuid
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence, Union

from sqlalchemy import delete, func
from sqlalchemy.exc import IntegrityError as DatabaseIntegrityError
from sqlmodel import Session, select

from blobkeeper.database import DatabaseService
from blobkeeper.exceptions import (
    ChunkOrderError,
    DuplicateFileError,
    FileTooLargeError,
    IntegrityError,
    RecordNotFoundError,
    RenewalConflictError,
    ValidationError,
)
from blobkeeper.models.payment import PaymentRecord
from blobkeeper.models.records import (
    ChunkRecord,
    ChunkedFile,
    PaymentInfo,
    PaymentStatus,
    SingleBlobFile,
    to_file_record,
)
from blobkeeper.models.stored_file import StoredChunk, StoredFile
from blobkeeper.services.payment_ledger import normalize_address
from blobkeeper.utils.logger import get_logger, short_certificate
from blobkeeper.utils.time_utils import utcnow

logger = get_logger(__name__)

FileRecordVariant = Union[SingleBlobFile, ChunkedFile]


def _apply_payment(row: StoredFile, payment: Optional[PaymentInfo]) -> None:
    if payment is None:
        return
    row.payment_status = payment.status.value
    row.payer_address = normalize_address(payment.payer_address)
    row.payment_amount = str(payment.amount) if payment.amount is not None else None
    row.payment_tx_hash = payment.tx_hash
    row.last_balance_check = payment.last_balance_check
    row.contract_balance = str(payment.contract_balance) if payment.contract_balance is not None else None


class MetadataStore:
    """Single source of truth for file records; every write runs in its own transaction"""

    def __init__(self, database: DatabaseService):
        self.database = database

    # Internal helpers

    @staticmethod
    def _lock_file(session: Session, file_id: str) -> Optional[StoredFile]:
        statement = select(StoredFile).where(StoredFile.file_id == file_id).with_for_update()
        return session.exec(statement).first()

    @staticmethod
    def _load_chunks(session: Session, file_id: str) -> List[StoredChunk]:
        statement = select(StoredChunk).where(StoredChunk.file_id == file_id).order_by(StoredChunk.chunk_index)
        return list(session.exec(statement).all())

    @staticmethod
    def _count_chunks(session: Session, file_id: str) -> int:
        statement = select(func.count()).select_from(StoredChunk).where(StoredChunk.file_id == file_id)
        return session.exec(statement).one()

    def _to_records(self, session: Session, rows: Sequence[StoredFile]) -> List[FileRecordVariant]:
        chunked_ids = [row.file_id for row in rows if row.is_chunked]
        chunks_by_file: Dict[str, List[StoredChunk]] = {file_id: [] for file_id in chunked_ids}
        if chunked_ids:
            statement = select(StoredChunk).where(StoredChunk.file_id.in_(chunked_ids))
            for chunk in session.exec(statement).all():
                chunks_by_file[chunk.file_id].append(chunk)
        return [to_file_record(row, chunks_by_file.get(row.file_id, ())) for row in rows]

    # File creation

    async def create_single_blob_file(
        self,
        file_id: str,
        file_name: str,
        file_hash: str,
        file_size: int,
        certificate: str,
        expiry: datetime,
        blob_key: Optional[str] = None,
        payment: Optional[PaymentInfo] = None,
    ) -> SingleBlobFile:
        """Create the record for a file stored as one blob"""
        with self.database.transaction() as session:
            if session.get(StoredFile, file_id) is not None:
                raise DuplicateFileError(f"File id already exists: {file_id}", field="file_id")

            row = StoredFile(
                file_id=file_id,
                file_name=file_name,
                file_hash=file_hash.lower(),
                is_chunked=False,
                file_size=file_size,
                is_complete=True,
                blob_certificate=certificate,
                blob_key=blob_key,
                expiry=expiry,
            )
            _apply_payment(row, payment)
            session.add(row)
            try:
                session.flush()
            except DatabaseIntegrityError:
                raise DuplicateFileError(f"File id already exists: {file_id}", field="file_id")

        logger.info(f"Created single-blob record {file_id} ({file_size} bytes, {short_certificate(certificate)})")
        return to_file_record(row)

    async def initialize_chunked_file(
        self,
        file_id: str,
        file_name: str,
        file_hash: str,
        chunk_size: int,
        total_chunks: int,
        expiry: datetime,
        payment: Optional[PaymentInfo] = None,
    ) -> ChunkedFile:
        """
        Create an empty chunked record.

        Re-initializing an identical record that has no chunks yet is allowed,
        so a first chunk whose blob upload failed can be resubmitted.
        """
        with self.database.transaction(immediate=True) as session:
            existing = self._lock_file(session, file_id)
            if existing is not None:
                same_upload = (
                    existing.is_chunked
                    and not existing.is_complete
                    and existing.file_hash == file_hash.lower()
                    and existing.total_chunks == total_chunks
                    and existing.chunk_size == chunk_size
                )
                if not same_upload:
                    raise DuplicateFileError(f"File id already exists: {file_id}", field="file_id")
                stored = self._count_chunks(session, file_id)
                if stored:
                    raise ChunkOrderError(
                        f"Chunk 0 of {file_id} was already stored; expected chunk {stored}",
                        expected_index=stored,
                        received_index=0,
                    )
                logger.debug(f"Chunked record {file_id} already initialized, reusing it")
                return to_file_record(existing)

            row = StoredFile(
                file_id=file_id,
                file_name=file_name,
                file_hash=file_hash.lower(),
                is_chunked=True,
                file_size=None,
                chunk_size=chunk_size,
                total_chunks=total_chunks,
                is_complete=False,
                expiry=expiry,
            )
            _apply_payment(row, payment)
            session.add(row)
            try:
                session.flush()
            except DatabaseIntegrityError:
                raise DuplicateFileError(f"File id already exists: {file_id}", field="file_id")

        logger.info(f"Initialized chunked record {file_id} ({total_chunks} chunks of {chunk_size} bytes)")
        return to_file_record(row)

    # Chunk sequence

    async def append_chunk(
        self, file_id: str, chunk: ChunkRecord, max_file_size: Optional[int] = None
    ) -> ChunkedFile:
        """
        Append the next chunk to a chunked record.

        Runs under an exclusive write lock so two appends of the same index
        cannot both observe the same chunk count. The (file_id, chunk_index)
        unique constraint rejects duplicates as well. When max_file_size is
        given and the chunk is the last one, the upload is completed in the
        same transaction, so the last chunk is recorded only together with
        completion.

        Raises:
            RecordNotFoundError: No record for file_id
            ValidationError: Record is not a chunked upload
            ChunkOrderError: Index is not exactly the number of stored chunks, or upload is complete
            FileTooLargeError: Completing the upload would exceed max_file_size
        """
        with self.database.transaction(immediate=True) as session:
            row = self._lock_file(session, file_id)
            if row is None:
                raise RecordNotFoundError(file_id, f"No chunked upload in progress for {file_id}")
            if not row.is_chunked:
                raise ValidationError(f"File {file_id} is not a chunked upload", field="file_id")
            if row.is_complete:
                raise ChunkOrderError(f"Upload of {file_id} is already complete", received_index=chunk.chunk_index)

            expected_index = self._count_chunks(session, file_id)
            if chunk.chunk_index != expected_index:
                raise ChunkOrderError(
                    f"Expected chunk {expected_index} for {file_id}, got {chunk.chunk_index}",
                    expected_index=expected_index,
                    received_index=chunk.chunk_index,
                )
            if chunk.chunk_index >= (row.total_chunks or 0):
                raise ChunkOrderError(
                    f"Chunk {chunk.chunk_index} is beyond the declared total of {row.total_chunks}",
                    received_index=chunk.chunk_index,
                )

            session.add(
                StoredChunk(
                    file_id=file_id,
                    chunk_index=chunk.chunk_index,
                    certificate=chunk.certificate,
                    size=chunk.size,
                    chunk_hash=chunk.hash.lower(),
                )
            )
            row.updated_at = utcnow()
            session.add(row)
            try:
                session.flush()
            except DatabaseIntegrityError:
                raise ChunkOrderError(
                    f"Chunk {chunk.chunk_index} of {file_id} was already stored",
                    received_index=chunk.chunk_index,
                )
            chunks = self._load_chunks(session, file_id)
            if max_file_size is not None and len(chunks) == row.total_chunks:
                self._complete(row, chunks, max_file_size)
                session.add(row)

        logger.debug(f"Appended chunk {chunk.chunk_index + 1}/{row.total_chunks} to {file_id}")
        return to_file_record(row, chunks)

    async def finalize_chunked_file(self, file_id: str, max_file_size: int) -> ChunkedFile:
        """Mark a chunked upload complete with the size summed from its stored chunks"""
        with self.database.transaction(immediate=True) as session:
            row = self._lock_file(session, file_id)
            if row is None:
                raise RecordNotFoundError(file_id)
            if not row.is_chunked:
                raise ValidationError(f"File {file_id} is not a chunked upload", field="file_id")

            chunks = self._load_chunks(session, file_id)
            if row.is_complete:
                return to_file_record(row, chunks)

            if len(chunks) != row.total_chunks:
                raise ChunkOrderError(
                    f"Upload of {file_id} has {len(chunks)} of {row.total_chunks} chunks",
                    expected_index=len(chunks),
                )

            self._complete(row, chunks, max_file_size)
            session.add(row)

        return to_file_record(row, chunks)

    @staticmethod
    def _complete(row: StoredFile, chunks: List[StoredChunk], max_file_size: int) -> None:
        """Mark row complete with the size summed from its stored chunks"""
        total_size = sum(chunk.size for chunk in chunks)
        if total_size > max_file_size:
            raise FileTooLargeError(
                f"File size {total_size} exceeds the maximum of {max_file_size} bytes",
                field="file_size",
                details={"file_size": total_size, "max_file_size": max_file_size},
            )
        row.file_size = total_size
        row.is_complete = True
        row.updated_at = utcnow()
        logger.info(f"Completed chunked upload {row.file_id}: {len(chunks)} chunks, {total_size} bytes")

    # Reads

    async def get_file(self, file_id: str) -> Optional[FileRecordVariant]:
        with self.database.get_session() as session:
            row = session.get(StoredFile, file_id)
            if row is None:
                return None
            chunks = self._load_chunks(session, file_id) if row.is_chunked else []
            return to_file_record(row, chunks)

    async def list_expiring_files(
        self, lookahead: timedelta, now: Optional[datetime] = None
    ) -> List[FileRecordVariant]:
        """Complete files whose expiry is after now and within the lookahead window"""
        now = now or utcnow()
        with self.database.get_session() as session:
            statement = (
                select(StoredFile)
                .where(StoredFile.expiry > now)
                .where(StoredFile.expiry <= now + lookahead)
                .where(StoredFile.is_complete == True)  # noqa: E712
                .order_by(StoredFile.expiry)
            )
            rows = list(session.exec(statement).all())
            return self._to_records(session, rows)

    async def list_files_for_balance_check(
        self, staleness: timedelta, now: Optional[datetime] = None
    ) -> List[FileRecordVariant]:
        """Live files whose cached balance is missing or older than staleness"""
        now = now or utcnow()
        cutoff = now - staleness
        with self.database.get_session() as session:
            statement = (
                select(StoredFile)
                .where(
                    StoredFile.payment_status.in_(
                        [PaymentStatus.PENDING.value, PaymentStatus.PAID.value, PaymentStatus.INSUFFICIENT.value]
                    )
                )
                .where(StoredFile.expiry > now)
                .where(StoredFile.is_complete == True)  # noqa: E712
                .where((StoredFile.last_balance_check == None) | (StoredFile.last_balance_check < cutoff))  # noqa: E711
            )
            rows = list(session.exec(statement).all())
            return self._to_records(session, rows)

    # Renewal swaps

    @staticmethod
    def _check_renewal_preconditions(
        row: Optional[StoredFile], file_id: str, expected_expiry: datetime, new_expiry: datetime
    ) -> StoredFile:
        if row is None:
            raise RecordNotFoundError(file_id)
        if row.expiry != expected_expiry:
            raise RenewalConflictError(
                f"File {file_id} changed during renewal",
                {"expected_expiry": str(expected_expiry), "current_expiry": str(row.expiry)},
            )
        if new_expiry <= row.expiry:
            raise ValidationError(
                f"New expiry {new_expiry} for {file_id} does not move past {row.expiry}",
                field="expiry",
            )
        return row

    async def swap_single_certificate(
        self,
        file_id: str,
        expected_expiry: datetime,
        new_certificate: str,
        new_expiry: datetime,
        blob_key: Optional[str] = None,
    ) -> SingleBlobFile:
        """
        Replace a single-blob file's certificate and push its expiry forward.

        blob_key belongs to the certificate it was derived from, so the stored
        key is replaced by the given one and cleared when none is given.
        """
        with self.database.transaction(immediate=True) as session:
            row = self._check_renewal_preconditions(
                self._lock_file(session, file_id), file_id, expected_expiry, new_expiry
            )
            if row.is_chunked:
                raise ValidationError(f"File {file_id} is chunked", field="file_id")

            old_certificate = row.blob_certificate
            now = utcnow()
            row.blob_certificate = new_certificate
            row.blob_key = blob_key
            row.expiry = new_expiry
            row.renewal_count = (row.renewal_count or 0) + 1
            row.last_renewed_at = now
            row.updated_at = now
            session.add(row)

        logger.info(
            f"Swapped certificate for {file_id}: {short_certificate(old_certificate)} -> "
            f"{short_certificate(new_certificate)}, expiry {new_expiry.isoformat()}"
        )
        return to_file_record(row)

    async def swap_chunk_certificates(
        self,
        file_id: str,
        expected_expiry: datetime,
        certificates: Dict[int, str],
        new_expiry: datetime,
    ) -> ChunkedFile:
        """Replace every chunk certificate of a chunked file at once and push its expiry forward"""
        with self.database.transaction(immediate=True) as session:
            row = self._check_renewal_preconditions(
                self._lock_file(session, file_id), file_id, expected_expiry, new_expiry
            )
            if not row.is_chunked or not row.is_complete:
                raise ValidationError(f"File {file_id} is not a complete chunked upload", field="file_id")

            chunks = self._load_chunks(session, file_id)
            stored_indexes = {chunk.chunk_index for chunk in chunks}
            if set(certificates) != stored_indexes:
                raise IntegrityError(
                    f"Renewal of {file_id} must replace every chunk",
                    {"stored": sorted(stored_indexes), "renewed": sorted(certificates)},
                )

            for chunk in chunks:
                chunk.certificate = certificates[chunk.chunk_index]
                session.add(chunk)

            now = utcnow()
            row.expiry = new_expiry
            row.renewal_count = (row.renewal_count or 0) + 1
            row.last_renewed_at = now
            row.updated_at = now
            session.add(row)

        logger.info(f"Swapped {len(chunks)} chunk certificates for {file_id}, expiry {new_expiry.isoformat()}")
        return to_file_record(row, chunks)

    # Payment fields

    async def update_payment_status(
        self,
        file_id: str,
        status: PaymentStatus,
        payer_address: Optional[str] = None,
        amount: Optional[int] = None,
        tx_hash: Optional[str] = None,
    ) -> None:
        """Set the payment status; optional fields are only written when given"""
        with self.database.transaction() as session:
            row = session.get(StoredFile, file_id)
            if row is None:
                raise RecordNotFoundError(file_id)
            row.payment_status = PaymentStatus(status).value
            if payer_address is not None:
                row.payer_address = normalize_address(payer_address)
            if amount is not None:
                row.payment_amount = str(amount)
            if tx_hash is not None:
                row.payment_tx_hash = tx_hash
            row.updated_at = utcnow()
            session.add(row)

    async def update_contract_balance(
        self, file_id: str, balance: int, checked_at: Optional[datetime] = None
    ) -> None:
        with self.database.transaction() as session:
            row = session.get(StoredFile, file_id)
            if row is None:
                raise RecordNotFoundError(file_id)
            row.contract_balance = str(balance)
            row.last_balance_check = checked_at or utcnow()
            session.add(row)

    async def record_payment(
        self,
        file_id: str,
        tx_hash: str,
        amount: int,
        payment_type: str = "refresh",
        payer_address: Optional[str] = None,
        status: str = "confirmed",
        renewal_of: Optional[datetime] = None,
    ) -> PaymentRecord:
        """
        Add a payment history entry.

        A confirmed refresh deduction puts a file marked insufficient back to paid.
        """
        with self.database.transaction() as session:
            row = session.get(StoredFile, file_id)
            if row is None:
                raise RecordNotFoundError(file_id)

            payment = PaymentRecord(
                tx_hash=tx_hash,
                file_id=file_id,
                payer_address=normalize_address(payer_address or row.payer_address),
                amount=str(amount),
                type=payment_type,
                status=status,
                renewal_of=renewal_of,
            )
            session.add(payment)
            if payment_type == "refresh" and status == "confirmed":
                if row.payment_status == PaymentStatus.INSUFFICIENT.value:
                    row.payment_status = PaymentStatus.PAID.value
                    row.updated_at = utcnow()
                    session.add(row)
            try:
                session.flush()
            except DatabaseIntegrityError:
                raise RenewalConflictError(
                    f"A payment for this renewal of {file_id} is already recorded",
                    {"tx_hash": tx_hash, "renewal_of": str(renewal_of)},
                )

        logger.debug(f"Recorded {payment_type} payment {tx_hash} for {file_id}: {amount} wei")
        return payment

    async def reserve_renewal_payment(self, file_id: str, amount: int, renewal_of: datetime) -> PaymentRecord:
        """
        Write a pending refresh deduction before the ledger is charged.

        The pending row holds the (file_id, renewal_of) slot, so a deduction
        whose confirmation never got written still blocks a second charge.
        """
        with self.database.transaction() as session:
            row = session.get(StoredFile, file_id)
            if row is None:
                raise RecordNotFoundError(file_id)

            payment = PaymentRecord(
                tx_hash=f"pending:{uuid.uuid4().hex}",
                file_id=file_id,
                payer_address=normalize_address(row.payer_address),
                amount=str(amount),
                type="refresh",
                status="pending",
                renewal_of=renewal_of,
            )
            session.add(payment)
            try:
                session.flush()
            except DatabaseIntegrityError:
                raise RenewalConflictError(
                    f"A payment for this renewal of {file_id} is already recorded",
                    {"renewal_of": str(renewal_of)},
                )

        logger.debug(f"Reserved renewal deduction for {file_id}: {amount} wei")
        return payment

    async def confirm_renewal_payment(self, file_id: str, renewal_of: datetime, tx_hash: str) -> PaymentRecord:
        """Attach the ledger transaction to a pending renewal deduction"""
        with self.database.transaction() as session:
            payment = self._pending_renewal(session, file_id, renewal_of)
            payment.tx_hash = tx_hash
            payment.status = "confirmed"
            session.add(payment)

            row = session.get(StoredFile, file_id)
            if row is not None and row.payment_status == PaymentStatus.INSUFFICIENT.value:
                row.payment_status = PaymentStatus.PAID.value
                row.updated_at = utcnow()
                session.add(row)

        logger.debug(f"Confirmed renewal deduction {tx_hash} for {file_id}")
        return payment

    async def release_renewal_payment(self, file_id: str, renewal_of: datetime) -> None:
        """Drop a pending renewal deduction the ledger refused"""
        with self.database.transaction() as session:
            session.delete(self._pending_renewal(session, file_id, renewal_of))

    @staticmethod
    def _pending_renewal(session: Session, file_id: str, renewal_of: datetime) -> PaymentRecord:
        statement = (
            select(PaymentRecord)
            .where(PaymentRecord.file_id == file_id)
            .where(PaymentRecord.renewal_of == renewal_of)
            .where(PaymentRecord.status == "pending")
        )
        payment = session.exec(statement).first()
        if payment is None:
            raise RecordNotFoundError(file_id, f"No pending renewal payment for {file_id}")
        return payment

    async def find_renewal_deduction(self, file_id: str, renewal_of: datetime) -> Optional[PaymentRecord]:
        """Deduction made, or started and never confirmed, to extend the given expiry"""
        with self.database.get_session() as session:
            statement = (
                select(PaymentRecord)
                .where(PaymentRecord.file_id == file_id)
                .where(PaymentRecord.renewal_of == renewal_of)
                .where(PaymentRecord.status.in_(["confirmed", "pending"]))
            )
            return session.exec(statement).first()

    async def list_payments(self, file_id: str) -> List[PaymentRecord]:
        with self.database.get_session() as session:
            statement = (
                select(PaymentRecord)
                .where(PaymentRecord.file_id == file_id)
                .order_by(PaymentRecord.created_at)
            )
            return list(session.exec(statement).all())

    # Cleanup

    async def delete_abandoned_uploads(self, grace: timedelta, now: Optional[datetime] = None) -> int:
        """Hard-delete chunked uploads that never completed within the grace period"""
        cutoff = (now or utcnow()) - grace
        with self.database.transaction(immediate=True) as session:
            statement = (
                select(StoredFile.file_id)
                .where(StoredFile.is_chunked == True)  # noqa: E712
                .where(StoredFile.is_complete == False)  # noqa: E712
                .where(StoredFile.created_at < cutoff)
            )
            file_ids = list(session.exec(statement).all())
            if not file_ids:
                return 0

            session.exec(delete(StoredChunk).where(StoredChunk.file_id.in_(file_ids)))
            session.exec(delete(PaymentRecord).where(PaymentRecord.file_id.in_(file_ids)))
            session.exec(delete(StoredFile).where(StoredFile.file_id.in_(file_ids)))

        logger.info(f"Deleted {len(file_ids)} abandoned chunked upload(s)")
        return len(file_ids)
