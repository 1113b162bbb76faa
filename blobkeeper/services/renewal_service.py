"""Renewal of blobs nearing the end of their retention window"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from blobkeeper.config import Settings
from blobkeeper.exceptions import (
    BlobkeeperError,
    InsufficientBalanceError,
    IntegrityError,
    RenewalConflictError,
    ServiceUnavailableError,
)
from blobkeeper.models.records import ChunkedFile, PaymentStatus, RenewalState, SingleBlobFile
from blobkeeper.services.blob_client import BlobNetworkClient
from blobkeeper.services.metadata_store import FileRecordVariant, MetadataStore
from blobkeeper.services.payment_gate import PaymentGate, format_eth
from blobkeeper.utils.integrity import verify_hash
from blobkeeper.utils.logger import get_logger, short_certificate
from blobkeeper.utils.time_utils import utcnow

logger = get_logger(__name__)

# Per-file outcomes
RENEWED = "renewed"
INSUFFICIENT = "insufficient_balance"
DEFERRED = "deferred"
INTEGRITY_FAILED = "integrity_failed"
FAILED = "failed"
SKIPPED = "skipped"
EXPIRED = "expired"


@dataclass
class RenewalOutcome:
    file_id: str
    status: str
    old_expiry: Optional[datetime] = None
    new_expiry: Optional[datetime] = None
    charged: Optional[int] = None
    tx_ref: Optional[str] = None
    error: Optional[str] = None


@dataclass
class RenewalSummary:
    trigger: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    skipped: bool = False
    skip_reason: Optional[str] = None
    balances_checked: int = 0
    balance_errors: int = 0
    due: int = 0
    outcomes: List[RenewalOutcome] = field(default_factory=list)

    def count(self, status: str) -> int:
        return sum(1 for outcome in self.outcomes if outcome.status == status)

    @property
    def renewed(self) -> int:
        return self.count(RENEWED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "trigger": self.trigger,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "skipped": self.skipped,
            "skip_reason": self.skip_reason,
            "balances_checked": self.balances_checked,
            "balance_errors": self.balance_errors,
            "due": self.due,
            "renewed": self.renewed,
            "insufficient": self.count(INSUFFICIENT),
            "deferred": self.count(DEFERRED),
            "integrity_failed": self.count(INTEGRITY_FAILED),
            "failed": self.count(FAILED),
            "outcomes": [outcome.__dict__ for outcome in self.outcomes],
        }


class RenewalService:
    """
    Periodically re-disperses blobs before they expire.

    One pass at a time: refresh stale cached balances, select files expiring
    within the lookahead window, then renew each file independently with
    bounded concurrency. A file's new certificates are committed in one
    transaction only after every blob of that file was re-stored.
    """

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
        self._cycle_lock = asyncio.Lock()
        self._stopping = asyncio.Event()
        self.last_summary: Optional[RenewalSummary] = None

    @property
    def lookahead(self) -> timedelta:
        return timedelta(hours=self.settings.renewal_lookahead_hours)

    @property
    def renewal_period(self) -> timedelta:
        return timedelta(days=self.settings.renewal_period_days)

    @property
    def is_running(self) -> bool:
        return self._cycle_lock.locked()

    async def list_due_files(self, now: Optional[datetime] = None) -> List[FileRecordVariant]:
        """Files that the next pass would renew"""
        return await self.store.list_expiring_files(self.lookahead, now or utcnow())

    async def run_cycle(self, trigger: str = "scheduled") -> RenewalSummary:
        """Run one renewal pass; returns a skipped summary if a pass is already running"""
        summary = RenewalSummary(trigger=trigger, started_at=utcnow())

        if self._stopping.is_set():
            summary.skipped, summary.skip_reason = True, "stopping"
            summary.finished_at = utcnow()
            return summary
        if self._cycle_lock.locked():
            logger.info(f"Renewal pass already running, skipping {trigger} trigger")
            summary.skipped, summary.skip_reason = True, "already_running"
            summary.finished_at = utcnow()
            return summary

        async with self._cycle_lock:
            now = summary.started_at
            summary.balances_checked, summary.balance_errors = await self.refresh_balances(now)

            due_files = await self.store.list_expiring_files(self.lookahead, now)
            summary.due = len(due_files)
            if due_files:
                logger.info(f"🔄 Renewal pass ({trigger}): {len(due_files)} file(s) due")

                semaphore = asyncio.Semaphore(self.settings.renewal_concurrency)

                async def renew_with_semaphore(record):
                    async with semaphore:
                        return await self._renew_isolated(record)

                results = await asyncio.gather(
                    *(renew_with_semaphore(record) for record in due_files),
                    return_exceptions=True,
                )
                for record, result in zip(due_files, results):
                    if isinstance(result, BaseException):
                        logger.error(f"❌ Unexpected renewal error for {record.file_id}: {result}")
                        result = RenewalOutcome(file_id=record.file_id, status=FAILED, error=str(result))
                    summary.outcomes.append(result)

            summary.finished_at = utcnow()
            self.last_summary = summary
            self._log_summary(summary)
        return summary

    async def refresh_balances(self, now: Optional[datetime] = None) -> Tuple[int, int]:
        """Update cached ledger balances that are missing or stale; returns (checked, errors)"""
        now = now or utcnow()
        staleness = timedelta(minutes=self.settings.balance_staleness_minutes)
        records = await self.store.list_files_for_balance_check(staleness, now)

        checked = errors = 0
        for record in records:
            try:
                balance = await self.gate.get_balance(record.file_id)
                await self.store.update_contract_balance(record.file_id, balance, now)
                checked += 1
            except ServiceUnavailableError as e:
                errors += 1
                logger.warning(f"Balance refresh failed for {record.file_id}: {e}")
            except Exception as e:
                errors += 1
                logger.error(f"❌ Balance refresh failed unexpectedly for {record.file_id}: {e}", exc_info=True)

        if records:
            logger.debug(f"Refreshed {checked} balance(s), {errors} error(s)")
        return checked, errors

    async def _renew_isolated(self, record: FileRecordVariant) -> RenewalOutcome:
        """Renew one file, turning every failure into an outcome so other files continue"""
        file_id = record.file_id
        if self._stopping.is_set():
            return RenewalOutcome(file_id=file_id, status=DEFERRED, old_expiry=record.expiry, error="shutting down")

        try:
            return await self.renew_file(record)
        except ServiceUnavailableError as e:
            logger.warning(f"Renewal of {file_id} deferred to next pass: {e}")
            return RenewalOutcome(file_id=file_id, status=DEFERRED, old_expiry=record.expiry, error=str(e))
        except IntegrityError as e:
            logger.error(f"❌ Integrity failure renewing {file_id}, skipped: {e.message}", details=e.details)
            return RenewalOutcome(file_id=file_id, status=INTEGRITY_FAILED, old_expiry=record.expiry, error=str(e))
        except RenewalConflictError as e:
            logger.warning(f"Renewal of {file_id} skipped: {e}")
            return RenewalOutcome(file_id=file_id, status=SKIPPED, old_expiry=record.expiry, error=str(e))
        except BlobkeeperError as e:
            logger.error(f"❌ Renewal of {file_id} failed: {e}")
            return RenewalOutcome(file_id=file_id, status=FAILED, old_expiry=record.expiry, error=str(e))
        except Exception as e:
            logger.error(f"❌ Renewal of {file_id} failed unexpectedly: {e}", exc_info=True)
            return RenewalOutcome(file_id=file_id, status=FAILED, old_expiry=record.expiry, error=str(e))

    async def _charge_renewal(self, record: FileRecordVariant) -> Tuple[bool, Optional[int], Optional[str]]:
        """
        Pay for renewing record from its balance.

        Returns (proceed, amount charged, transaction reference). The deduction
        is reserved as a pending payment before the ledger is called, so a
        renewal that failed after paying, or whose payment was never
        confirmed, is not charged twice.
        """
        file_id = record.file_id
        existing = await self.store.find_renewal_deduction(file_id, record.expiry)
        if existing is not None:
            if existing.status == "pending":
                logger.warning(
                    f"Renewal of {file_id} has an unconfirmed deduction from an earlier pass, "
                    f"not charging again (needs reconciling)"
                )
                return True, None, None
            logger.info(f"Renewal of {file_id} already paid by {existing.tx_hash}, not charging again")
            return True, None, existing.tx_hash

        cost = self.gate.renewal_cost(record)
        if not await self.gate.verify_sufficient(file_id, cost):
            await self.store.update_payment_status(file_id, PaymentStatus.INSUFFICIENT)
            logger.warning(f"Insufficient balance to renew {file_id}: needs {format_eth(cost)} ETH")
            return False, None, None

        await self.store.reserve_renewal_payment(file_id, cost, record.expiry)
        result = await self.gate.deduct(file_id, cost)
        if not result.ok:
            # Only a reply from the ledger proves nothing was deducted
            refused = isinstance(result.error, InsufficientBalanceError) or "status" in result.error.details
            if refused:
                await self.store.release_renewal_payment(file_id, record.expiry)
            if isinstance(result.error, InsufficientBalanceError):
                await self.store.update_payment_status(file_id, PaymentStatus.INSUFFICIENT)
                logger.warning(f"Ledger refused renewal deduction for {file_id}: insufficient balance")
                return False, None, None
            raise result.error

        try:
            await self.store.confirm_renewal_payment(file_id, record.expiry, result.tx_ref)
        except Exception:
            logger.error(
                f"❌ Deducted {cost} wei for {file_id} (tx {result.tx_ref}) but could not confirm it; "
                f"the pending payment stays in place"
            )
            raise
        logger.info(f"Charged {format_eth(cost)} ETH to renew {file_id} (tx {result.tx_ref})")
        return True, cost, result.tx_ref

    async def renew_file(self, record: FileRecordVariant) -> RenewalOutcome:
        """
        Renew one file.

        Raises service, integrity and conflict errors; the pass turns them into outcomes.
        """
        file_id = record.file_id
        now = utcnow()

        state = record.renewal_state(now, self.lookahead)
        if state == RenewalState.EXPIRED:
            logger.warning(f"File {file_id} expired at {record.expiry.isoformat()} before it could be renewed")
            return RenewalOutcome(file_id=file_id, status=EXPIRED, old_expiry=record.expiry)
        if isinstance(record, ChunkedFile) and not record.is_complete:
            return RenewalOutcome(file_id=file_id, status=SKIPPED, old_expiry=record.expiry, error="upload incomplete")

        charged: Optional[int] = None
        tx_ref: Optional[str] = None
        if record.payment.has_relationship and not self.gate.bypass:
            proceed, charged, tx_ref = await self._charge_renewal(record)
            if not proceed:
                return RenewalOutcome(file_id=file_id, status=INSUFFICIENT, old_expiry=record.expiry)

        new_expiry = utcnow() + self.renewal_period
        if isinstance(record, SingleBlobFile):
            data = await self.blob_client.get(record.certificate)
            verify_hash(data, record.hash, f"file {file_id}")
            new_certificate = await self.blob_client.put(data)
            updated = await self.store.swap_single_certificate(file_id, record.expiry, new_certificate, new_expiry)
            logger.info(
                f"✅ Renewed {file_id}: {short_certificate(record.certificate)} -> "
                f"{short_certificate(new_certificate)}"
            )
        else:
            certificates: Dict[int, str] = {}
            for chunk in sorted(record.chunks, key=lambda c: c.chunk_index):
                data = await self.blob_client.get(chunk.certificate)
                verify_hash(data, chunk.hash, f"chunk {chunk.chunk_index} of {file_id}")
                certificates[chunk.chunk_index] = await self.blob_client.put(data)
            updated = await self.store.swap_chunk_certificates(file_id, record.expiry, certificates, new_expiry)
            logger.info(f"✅ Renewed {file_id}: {len(certificates)} chunk(s) re-stored")

        return RenewalOutcome(
            file_id=file_id,
            status=RENEWED,
            old_expiry=record.expiry,
            new_expiry=updated.expiry,
            charged=charged,
            tx_ref=tx_ref,
        )

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Stop starting new renewals and wait for the running pass to finish"""
        self._stopping.set()
        if not self._cycle_lock.locked():
            return
        logger.info("Waiting for the running renewal pass to finish")
        await asyncio.wait_for(self._cycle_lock.acquire(), timeout=timeout)
        self._cycle_lock.release()

    def resume(self) -> None:
        self._stopping.clear()

    def _log_summary(self, summary: RenewalSummary) -> None:
        problems = summary.count(FAILED) + summary.count(INTEGRITY_FAILED)
        message = (
            f"Renewal pass: {summary.due} due, {summary.renewed} renewed, "
            f"{summary.count(INSUFFICIENT)} insufficient, {summary.count(DEFERRED)} deferred, "
            f"{problems} failed"
        )
        if problems:
            logger.error(message)
            failed = [o.file_id for o in summary.outcomes if o.status in (FAILED, INTEGRITY_FAILED)]
            logger.warning(f"Failed renewals: {', '.join(failed)}")
        elif summary.due:
            logger.info(message)
        else:
            logger.debug(message)
