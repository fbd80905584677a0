from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, StrictBool, field_validator

from .errors import ErrorKind


class VerificationStatus(str, Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    REJECTED = "rejected"

    @property
    def is_terminal(self) -> bool:
        return self in (VerificationStatus.VERIFIED, VerificationStatus.REJECTED)


# External analysis contract. Every field is untrusted and nullable; unknown
# fields are kept so a result round-trips through JSON unchanged. Values of
# the wrong shape are normalized instead of failing the whole reply.

def _score_or_none(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


def _string_list(value: Any) -> Optional[List[str]]:
    if value is None:
        return None
    if isinstance(value, str):
        return [value]
    if isinstance(value, list):
        return [item if isinstance(item, str) else str(item) for item in value if item is not None]
    return None


class DocumentA(BaseModel):
    model_config = ConfigDict(extra="allow")

    student_name: Optional[str] = None
    institution_name: Optional[str] = None
    degree_or_program: Optional[str] = None
    date_of_issue: Optional[str] = None
    certificate_id: Optional[str] = None
    certificate_title: Optional[str] = None
    signatures: Optional[List[str]] = None
    seals_or_stamps: Optional[List[str]] = None
    document_a_confidence_score: Optional[float] = None

    @field_validator("signatures", "seals_or_stamps", mode="before")
    @classmethod
    def _lists(cls, value: Any) -> Optional[List[str]]:
        return _string_list(value)

    @field_validator("document_a_confidence_score", mode="before")
    @classmethod
    def _score(cls, value: Any) -> Optional[float]:
        return _score_or_none(value)


class DocumentB(BaseModel):
    model_config = ConfigDict(extra="allow")

    document_b_confidence_score: Optional[float] = None

    @field_validator("document_b_confidence_score", mode="before")
    @classmethod
    def _score(cls, value: Any) -> Optional[float]:
        return _score_or_none(value)


class AnalysisResult(BaseModel):
    model_config = ConfigDict(extra="allow")

    document_a: DocumentA = Field(default_factory=DocumentA)
    document_b: DocumentB = Field(default_factory=DocumentB)
    # Only a JSON true counts as a valid verification URL.
    verification_url_valid: Optional[StrictBool] = None
    total_verification: Optional[str] = None
    verification_details: Optional[str] = None

    @field_validator("document_a", "document_b", mode="before")
    @classmethod
    def _documents(cls, value: Any) -> Any:
        if isinstance(value, (dict, BaseModel)):
            return value
        return {}

    @field_validator("verification_url_valid", mode="before")
    @classmethod
    def _url_flag(cls, value: Any) -> Optional[bool]:
        return value if isinstance(value, bool) else None


class ConfidenceReport(BaseModel):
    overall_confidence: float
    is_passing: bool
    reasons: List[str] = Field(default_factory=list)


# Record store rows

class User(BaseModel):
    id: str
    email: Optional[str] = None
    full_name: str
    wallet_address: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class Certificate(BaseModel):
    id: str
    user_id: str
    title: str
    institution_name: str
    program_name: str
    issue_date: str
    verification_url: Optional[str] = None
    certificate_url: Optional[str] = None
    verification_url_pdf: Optional[str] = None
    arweave_url: Optional[str] = None
    nft_mint_address: Optional[str] = None
    verification_status: VerificationStatus = VerificationStatus.PENDING
    verification_details: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class VerificationLogRecord(BaseModel):
    id: str
    certificate_id: str
    verification_step: str
    status: str
    details: Optional[Any] = None
    created_at: str


# Workflow result and HTTP payloads

class VerificationOutcome(BaseModel):
    success: bool
    status: VerificationStatus
    message: str
    details: Optional[AnalysisResult] = None
    confidence: Optional[ConfidenceReport] = None
    error_kind: Optional[ErrorKind] = None
    retryable: bool = False


class VerificationResponse(VerificationOutcome):
    request_id: str
    timestamp: str


class AuditLogEntry(BaseModel):
    request_id: str
    timestamp: str
    step: str
    status: str
    details: Dict[str, Any] = Field(default_factory=dict)


class LogsResponse(BaseModel):
    logs: List[AuditLogEntry]
    request_id: Optional[str] = None
    pagination: Optional[Dict[str, Any]] = None


class ErrorResponse(BaseModel):
    success: bool = False
    error: str
    code: int
    request_id: Optional[str] = None
    timestamp: str


class VerificationLogsResponse(BaseModel):
    certificate_id: str
    logs: List[VerificationLogRecord]
    pagination: Dict[str, Any] = Field(default_factory=dict)
