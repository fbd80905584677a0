"""
Verification orchestrator.

Sequences one verification run end to end:

    record store (existence) -> terminal-status short-circuit -> document check
        -> result cache (fast path) -> claim -> analysis client (slow path)
        -> confidence scorer -> status update -> durable log -> cache write-back

State machine: pending -> {verified, rejected}. A certificate in a terminal
state never goes back through the external analysis call. Every step emits
an audit entry; audit and cache failures never change the outcome.

Collaborators are injected; the orchestrator keeps no per-run state, so one
instance can serve concurrent requests.
"""

import logging
from typing import Any, Dict, Optional

from .audit import LOG_TTL_SECONDS, RECENT_REQUESTS_LIMIT, AuditLogger, AuditStep
from .cache import DEFAULT_TTL_SECONDS, ResultCache
from .db import RecordStore
from .errors import (
    AnalysisError,
    DataIncomplete,
    NotFound,
    StorageError,
    VerificationError,
    VerificationInProgress,
)
from .kv_backends import KeyValueStore
from .models import AnalysisResult, Certificate, ConfidenceReport, VerificationOutcome, VerificationStatus
from .scoring import score
from .util import generate_id

logger = logging.getLogger(__name__)

DECISION_POLICIES = ("service", "strict")

# Durable verification_logs steps
STEP_DOCUMENT_CHECK = "document_check"
STEP_VERIFICATION_PROCESS = "verification_process"
STEP_VERIFICATION_COMPLETED = "verification_completed"
STEP_VERIFICATION_ERROR = "verification_error"


def is_verified(result: AnalysisResult) -> bool:
    """The analysis service's own verdict: explicit pass and a valid verification URL."""
    return result.total_verification == "pass" and result.verification_url_valid is True


class VerificationOrchestrator:

    def __init__(
        self,
        store: RecordStore,
        cache: ResultCache,
        analysis_client,
        log_store: KeyValueStore,
        api_key: str,
        cache_ttl_seconds: int = DEFAULT_TTL_SECONDS,
        log_ttl_seconds: int = LOG_TTL_SECONDS,
        recent_requests_limit: int = RECENT_REQUESTS_LIMIT,
        claims_enabled: bool = True,
        claim_lease_seconds: int = 300,
        decision_policy: str = "service"
    ):
        if decision_policy not in DECISION_POLICIES:
            raise ValueError(f"Unknown decision policy: {decision_policy}")
        self._store = store
        self._cache = cache
        self._analysis_client = analysis_client
        self._log_store = log_store
        self._api_key = api_key
        self._cache_ttl = cache_ttl_seconds
        self._log_ttl = log_ttl_seconds
        self._recent_limit = recent_requests_limit
        self._claims_enabled = claims_enabled
        self._claim_lease = claim_lease_seconds
        self._decision_policy = decision_policy

    def verify(self, user_id: str, certificate_id: str, correlation_id: Optional[str] = None) -> VerificationOutcome:
        """Run the verification workflow for one certificate of one user."""
        audit = AuditLogger(
            self._log_store,
            correlation_id or generate_id(),
            context={"user_id": user_id, "certificate_id": certificate_id},
            ttl_seconds=self._log_ttl,
            recent_limit=self._recent_limit,
        )
        audit.info(AuditStep.VERIFICATION_STARTED, {"user_id": user_id, "certificate_id": certificate_id})

        try:
            return self._run(audit, user_id, certificate_id)
        except StorageError as e:
            audit.error(AuditStep.STORAGE_FAILURE, {"error": e.message})
            return self._failure(e)

    # ------------------------------------------------------------
    # Workflow
    # ------------------------------------------------------------

    def _run(self, audit: AuditLogger, user_id: str, certificate_id: str) -> VerificationOutcome:
        user = self._store.get_user(user_id)
        if user is None:
            audit.error(AuditStep.USER_NOT_FOUND, {"user_id": user_id})
            return self._failure(NotFound("User not found"))
        audit.info(AuditStep.USER_FOUND, {"user": {"id": user.id, "email": user.email}})

        certificate = self._store.get_certificate(user_id, certificate_id)
        if certificate is None:
            audit.error(AuditStep.CERTIFICATE_NOT_FOUND, {"user_id": user_id, "certificate_id": certificate_id})
            return self._failure(NotFound("Certificate not found"))
        audit.info(AuditStep.CERTIFICATE_FOUND, {
            "certificate": {
                "id": certificate.id,
                "title": certificate.title,
                "status": certificate.verification_status.value,
            }
        })

        if certificate.verification_status.is_terminal:
            return self._terminal(audit, certificate)

        if not certificate.certificate_url or not certificate.verification_url_pdf:
            audit.error(AuditStep.MISSING_VERIFICATION_DOCUMENTS, {
                "has_certificate_url": bool(certificate.certificate_url),
                "has_verification_url_pdf": bool(certificate.verification_url_pdf),
            })
            self._append_log(audit, certificate.id, STEP_DOCUMENT_CHECK, "error", {
                "message": "Missing required verification documents",
                "has_certificate_url": bool(certificate.certificate_url),
                "has_verification_url_pdf": bool(certificate.verification_url_pdf),
            })
            return self._failure(DataIncomplete("Missing required verification documents"))

        cached = self._cache.get(certificate.id)
        if cached is not None:
            audit.info(AuditStep.CACHE_HIT, {"certificate_id": certificate.id})
            report = score(cached)
            return VerificationOutcome(
                success=True,
                status=self._decide(cached, report),
                message="Certificate verification result from cache",
                details=cached,
                confidence=report,
            )

        if not self._claims_enabled:
            return self._analyze_and_persist(audit, certificate)

        claim_token = generate_id(8)
        if not self._store.claim_certificate(certificate.id, claim_token, self._claim_lease):
            audit.info(AuditStep.CLAIM_CONFLICT, {"certificate_id": certificate.id})
            return self._failure(
                VerificationInProgress("Certificate verification already in progress"),
                status=certificate.verification_status,
            )
        try:
            # A run that finished between our first read and the claim has
            # already made the decision; re-read under the claim.
            current = self._store.get_certificate(user_id, certificate.id)
            if current is None:
                audit.error(AuditStep.CERTIFICATE_NOT_FOUND, {"user_id": user_id, "certificate_id": certificate.id})
                return self._failure(NotFound("Certificate not found"))
            if current.verification_status.is_terminal:
                return self._terminal(audit, current)
            return self._analyze_and_persist(audit, current)
        finally:
            self._release_claim(audit, certificate.id, claim_token)

    def _analyze_and_persist(self, audit: AuditLogger, certificate: Certificate) -> VerificationOutcome:
        # Nothing has been decided yet, so a failure here is fatal for the run.
        self._store.append_verification_log(
            certificate.id, STEP_VERIFICATION_PROCESS, "started", {"message": "Verification process started"}
        )
        audit.info(AuditStep.VERIFICATION_PROCESS_STARTED, {
            "certificate_url": certificate.certificate_url,
            "verification_url_pdf": certificate.verification_url_pdf,
        })

        try:
            result = self._analysis_client.analyze(
                self._api_key, certificate.certificate_url, certificate.verification_url_pdf
            )
        except AnalysisError as e:
            audit.error(AuditStep.AI_VERIFICATION_FAILED, {"error": e.message, "status_code": e.status_code})
            self._append_log(audit, certificate.id, STEP_VERIFICATION_ERROR, "error", {
                "error_kind": e.kind.value,
                "error": e.message,
            })
            return self._failure(e, message=f"Verification process failed: {e.message}")

        result_json = result.model_dump(mode="json")
        audit.info(AuditStep.AI_VERIFICATION_COMPLETED, {"result": result_json})

        report = score(result)
        audit.info(AuditStep.CONFIDENCE_SCORED, report.model_dump())

        new_status = self._decide(result, report)

        try:
            self._store.update_certificate_status(certificate.id, new_status, result_json)
        except StorageError as e:
            # The analysis succeeded but the decision is not persisted: surface it,
            # and leave the cache empty so the next run does not trust it.
            audit.error(AuditStep.STATUS_UPDATE_FAILED, {"new_status": new_status.value, "error": e.message})
            self._append_log(audit, certificate.id, STEP_VERIFICATION_ERROR, "error", {
                "error_kind": e.kind.value,
                "error": e.message,
                "new_status": new_status.value,
            })
            return VerificationOutcome(
                success=False,
                status=new_status,
                message=f"Verification decided as {new_status.value} but could not be persisted",
                details=result,
                confidence=report,
                error_kind=e.kind,
                retryable=e.retryable,
            )

        audit.success(AuditStep.VERIFICATION_STATUS_UPDATED, {
            "new_status": new_status.value,
            "verification_details": result_json,
        })
        self._append_log(audit, certificate.id, STEP_VERIFICATION_COMPLETED, new_status.value, {
            "result": result_json,
            "confidence": report.model_dump(),
        })
        self._cache.put(certificate.id, result, self._cache_ttl)

        verified = new_status == VerificationStatus.VERIFIED
        logger.info("Certificate %s verification finished: %s", certificate.id, new_status.value)
        return VerificationOutcome(
            success=True,
            status=new_status,
            message="Certificate verified successfully" if verified else "Certificate verification failed",
            details=result,
            confidence=report,
        )

    # ------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------

    def _decide(self, result: AnalysisResult, report: ConfidenceReport) -> VerificationStatus:
        passed = is_verified(result)
        if self._decision_policy == "strict":
            passed = passed and report.is_passing
        return VerificationStatus.VERIFIED if passed else VerificationStatus.REJECTED

    def _terminal(self, audit: AuditLogger, certificate: Certificate) -> VerificationOutcome:
        details = self._stored_details(certificate)
        if certificate.verification_status == VerificationStatus.VERIFIED:
            audit.info(AuditStep.ALREADY_VERIFIED, {"certificate_id": certificate.id})
            message = "Certificate is already verified"
        else:
            audit.info(AuditStep.ALREADY_REJECTED, {"certificate_id": certificate.id})
            message = "Certificate has already been rejected"
        return VerificationOutcome(
            success=True,
            status=certificate.verification_status,
            message=message,
            details=details,
            confidence=score(details) if details is not None else None,
        )

    def _stored_details(self, certificate: Certificate) -> Optional[AnalysisResult]:
        if not certificate.verification_details:
            return None
        try:
            return AnalysisResult.model_validate_json(certificate.verification_details)
        except ValueError as e:
            logger.warning("Stored verification details of %s are unreadable: %s", certificate.id, e)
            return None

    def _append_log(
        self,
        audit: AuditLogger,
        certificate_id: str,
        step: str,
        status: str,
        details: Dict[str, Any]
    ) -> None:
        """Durable log write that must not change the outcome of the run."""
        try:
            self._store.append_verification_log(certificate_id, step, status, details)
        except StorageError as e:
            audit.error(AuditStep.DURABLE_LOG_FAILED, {"verification_step": step, "error": e.message})

    def _release_claim(self, audit: AuditLogger, certificate_id: str, claim_token: str) -> None:
        try:
            self._store.release_claim(certificate_id, claim_token)
        except StorageError as e:
            # The lease expires on its own.
            audit.error(AuditStep.STORAGE_FAILURE, {"error": e.message})

    @staticmethod
    def _failure(
        error: VerificationError,
        status: VerificationStatus = VerificationStatus.REJECTED,
        message: Optional[str] = None
    ) -> VerificationOutcome:
        return VerificationOutcome(
            success=False,
            status=status,
            message=message or error.message,
            error_kind=error.kind,
            retryable=error.retryable,
        )
