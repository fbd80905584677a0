"""
Error taxonomy for the certificate verification service.

Only NotFound, DataIncomplete, AnalysisError, StorageError and
VerificationInProgress ever reach a caller, as a structured failure carrying
a stable machine-readable kind. CacheError and LogError are absorbed inside
the workflow.
"""

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Machine-readable failure kinds returned to callers."""
    NOT_FOUND = "not_found"
    DATA_INCOMPLETE = "data_incomplete"
    ANALYSIS_ERROR = "analysis_error"
    STORAGE_ERROR = "storage_error"
    VERIFICATION_IN_PROGRESS = "verification_in_progress"


class VerificationError(Exception):
    """Base class for failures of a verification run."""
    kind: Optional[ErrorKind] = None
    http_status: int = 500
    retryable: bool = False

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class NotFound(VerificationError):
    """User or certificate does not exist (caller error)."""
    kind = ErrorKind.NOT_FOUND
    http_status = 404


class DataIncomplete(VerificationError):
    """Certificate is missing a required document reference."""
    kind = ErrorKind.DATA_INCOMPLETE
    http_status = 422


class AnalysisError(VerificationError):
    """External analysis service unreachable, rejected the call, or replied with garbage."""
    kind = ErrorKind.ANALYSIS_ERROR
    http_status = 502
    retryable = True

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class StorageError(VerificationError):
    """Record store transport or integrity failure."""
    kind = ErrorKind.STORAGE_ERROR
    http_status = 500


class VerificationInProgress(VerificationError):
    """Another run currently holds the claim on this certificate."""
    kind = ErrorKind.VERIFICATION_IN_PROGRESS
    http_status = 409
    retryable = True


class CacheError(Exception):
    """Result cache failure. Never propagated out of the workflow."""


class LogError(Exception):
    """Audit log store failure. Only raised on the read path."""


def http_status_for(kind: Optional[ErrorKind]) -> int:
    """HTTP status for an outcome error kind (200 when there is none)."""
    if kind is None:
        return 200
    return {
        ErrorKind.NOT_FOUND: NotFound.http_status,
        ErrorKind.DATA_INCOMPLETE: DataIncomplete.http_status,
        ErrorKind.ANALYSIS_ERROR: AnalysisError.http_status,
        ErrorKind.STORAGE_ERROR: StorageError.http_status,
        ErrorKind.VERIFICATION_IN_PROGRESS: VerificationInProgress.http_status,
    }[kind]
