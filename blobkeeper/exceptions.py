"""Error taxonomy shared by every storage component"""

from typing import Any, Dict, Optional


class BlobkeeperError(Exception):
    """Base error carrying a stable code and the HTTP status the front door should use"""

    code = "internal_error"
    status_code = 500
    retryable = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details or {}

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.code, "message": self.message}
        if self.details:
            payload["details"] = self.details
        if self.retryable:
            payload["retryable"] = True
        return payload


# Validation errors
class ValidationError(BlobkeeperError):
    """Raised when a request violates an input constraint"""

    code = "validation_error"
    status_code = 400

    def __init__(self, message: str, field: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        details = dict(details or {})
        if field:
            details["field"] = field
        super().__init__(message, details)
        self.field = field


class DuplicateFileError(ValidationError):
    """Raised when a file id is already taken"""

    code = "duplicate_file"
    status_code = 409


class FileTooLargeError(ValidationError):
    """Raised when a file exceeds the aggregate size cap"""

    code = "file_too_large"
    status_code = 413


# Integrity errors
class IntegrityError(BlobkeeperError):
    """Raised when stored or submitted content is inconsistent"""

    code = "integrity_error"
    status_code = 400


class HashMismatchError(IntegrityError):
    """Raised when bytes do not hash to the declared value"""

    code = "hash_mismatch"

    def __init__(self, subject: str, expected: str, actual: str):
        super().__init__(
            f"Hash mismatch for {subject}",
            {"subject": subject, "expected": expected, "actual": actual},
        )
        self.expected = expected
        self.actual = actual


class ChunkOrderError(IntegrityError):
    """Raised when a chunk index is not the next expected one"""

    code = "chunk_order"
    status_code = 409

    def __init__(self, message: str, expected_index: Optional[int] = None, received_index: Optional[int] = None):
        details: Dict[str, Any] = {}
        if expected_index is not None:
            details["expected_index"] = expected_index
        if received_index is not None:
            details["received_index"] = received_index
        super().__init__(message, details)
        self.expected_index = expected_index
        self.received_index = received_index


# Payment errors
class PaymentRequiredError(BlobkeeperError):
    """Raised when the prepaid balance does not cover the quoted amount"""

    code = "payment_required"
    status_code = 402


class InsufficientBalanceError(PaymentRequiredError):
    """Raised when a renewal deduction is refused for lack of funds"""

    code = "insufficient_balance"


# Service errors
class ServiceUnavailableError(BlobkeeperError):
    """Raised when an external collaborator cannot serve the request right now"""

    code = "service_unavailable"
    status_code = 503
    retryable = True


class BlobNetworkUnavailableError(ServiceUnavailableError):
    """Raised when the blob network reports it is temporarily down"""

    code = "blob_network_unavailable"


class BlobNetworkTimeoutError(ServiceUnavailableError):
    """Raised when a blob network request exceeds its timeout"""

    code = "blob_network_timeout"
    status_code = 504


class BlobNetworkError(ServiceUnavailableError):
    """Raised when the blob network rejects a request"""

    code = "blob_network_error"
    status_code = 502

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message, {"upstream_status": status} if status is not None else None)
        self.status = status


class LedgerError(ServiceUnavailableError):
    """Raised when a payment ledger call fails"""

    code = "ledger_error"
    status_code = 502


# Lookup errors
class RecordNotFoundError(BlobkeeperError):
    """Raised when no file record exists for an id"""

    code = "not_found"
    status_code = 404

    def __init__(self, file_id: str, message: Optional[str] = None):
        super().__init__(message or f"File not found: {file_id}", {"file_id": file_id})
        self.file_id = file_id


class FileExpiredError(BlobkeeperError):
    """Raised when a file's blobs have passed their retention window"""

    code = "file_expired"
    status_code = 410

    def __init__(self, file_id: str, expiry: Any):
        super().__init__(f"File expired: {file_id}", {"file_id": file_id, "expiry": str(expiry)})
        self.file_id = file_id


class RenewalConflictError(BlobkeeperError):
    """Raised when a record changed while its renewal was in flight"""

    code = "renewal_conflict"
    status_code = 409
