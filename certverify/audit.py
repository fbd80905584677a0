"""
Per-run audit trail.

Each verification run gets an AuditLogger bound to a correlation id and a
fixed context (user id, certificate id). Entries are written to a key-value
store under ``log:<correlation_id>:<timestamp>`` and kept for seven days.
Writing is best-effort: when the store fails, the entry is emitted on the
``certverify.audit.fallback`` logger instead and the run carries on.
"""

import json
import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

from .errors import LogError
from .kv_backends import KeyValueStore
from .models import AuditLogEntry
from .util import utc_now_iso

logger = logging.getLogger(__name__)
fallback_logger = logging.getLogger("certverify.audit.fallback")

LOG_TTL_SECONDS = 60 * 60 * 24 * 7
RECENT_REQUESTS_KEY = "recent_requests"
RECENT_REQUESTS_LIMIT = 1000


class AuditStatus(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    ERROR = "error"


class AuditStep(str, Enum):
    VERIFICATION_STARTED = "verification_started"
    USER_NOT_FOUND = "user_not_found"
    USER_FOUND = "user_found"
    CERTIFICATE_NOT_FOUND = "certificate_not_found"
    CERTIFICATE_FOUND = "certificate_found"
    ALREADY_VERIFIED = "already_verified"
    ALREADY_REJECTED = "already_rejected"
    MISSING_VERIFICATION_DOCUMENTS = "missing_verification_documents"
    CACHE_HIT = "cache_hit"
    CLAIM_CONFLICT = "claim_conflict"
    VERIFICATION_PROCESS_STARTED = "verification_process_started"
    AI_VERIFICATION_FAILED = "ai_verification_failed"
    AI_VERIFICATION_COMPLETED = "ai_verification_completed"
    CONFIDENCE_SCORED = "confidence_scored"
    STATUS_UPDATE_FAILED = "status_update_failed"
    VERIFICATION_STATUS_UPDATED = "verification_status_updated"
    DURABLE_LOG_FAILED = "durable_log_failed"
    STORAGE_FAILURE = "storage_failure"


# Detail keys each step is documented to carry, on top of the run context.
STEP_DETAIL_KEYS: Dict[AuditStep, frozenset] = {
    AuditStep.VERIFICATION_STARTED: frozenset({"user_id", "certificate_id"}),
    AuditStep.USER_NOT_FOUND: frozenset({"user_id"}),
    AuditStep.USER_FOUND: frozenset({"user"}),
    AuditStep.CERTIFICATE_NOT_FOUND: frozenset({"user_id", "certificate_id"}),
    AuditStep.CERTIFICATE_FOUND: frozenset({"certificate"}),
    AuditStep.ALREADY_VERIFIED: frozenset({"certificate_id"}),
    AuditStep.ALREADY_REJECTED: frozenset({"certificate_id"}),
    AuditStep.MISSING_VERIFICATION_DOCUMENTS: frozenset({"has_certificate_url", "has_verification_url_pdf"}),
    AuditStep.CACHE_HIT: frozenset({"certificate_id"}),
    AuditStep.CLAIM_CONFLICT: frozenset({"certificate_id"}),
    AuditStep.VERIFICATION_PROCESS_STARTED: frozenset({"certificate_url", "verification_url_pdf"}),
    AuditStep.AI_VERIFICATION_FAILED: frozenset({"error", "status_code"}),
    AuditStep.AI_VERIFICATION_COMPLETED: frozenset({"result"}),
    AuditStep.CONFIDENCE_SCORED: frozenset({"overall_confidence", "is_passing", "reasons"}),
    AuditStep.STATUS_UPDATE_FAILED: frozenset({"new_status", "error"}),
    AuditStep.VERIFICATION_STATUS_UPDATED: frozenset({"new_status", "verification_details"}),
    AuditStep.DURABLE_LOG_FAILED: frozenset({"verification_step", "error"}),
    AuditStep.STORAGE_FAILURE: frozenset({"error"}),
}


def log_key(request_id: str, timestamp: str) -> str:
    return f"log:{request_id}:{timestamp}"


class AuditLogger:

    def __init__(
        self,
        store: KeyValueStore,
        request_id: str,
        context: Optional[Dict[str, Any]] = None,
        ttl_seconds: int = LOG_TTL_SECONDS,
        recent_limit: int = RECENT_REQUESTS_LIMIT
    ):
        self._store = store
        self.request_id = request_id
        self._context = dict(context or {})
        self._ttl = ttl_seconds
        self._recent_limit = recent_limit
        self._last_timestamp: Optional[str] = None

    def info(self, step: str, details: Optional[Dict[str, Any]] = None) -> None:
        self.record(step, AuditStatus.INFO, details)

    def success(self, step: str, details: Optional[Dict[str, Any]] = None) -> None:
        self.record(step, AuditStatus.SUCCESS, details)

    def error(self, step: str, details: Optional[Dict[str, Any]] = None) -> None:
        self.record(step, AuditStatus.ERROR, details)

    def _next_timestamp(self) -> str:
        # Keys embed the timestamp, so it must be strictly increasing per run.
        ts = utc_now_iso()
        if self._last_timestamp is not None and ts <= self._last_timestamp:
            last = datetime.fromisoformat(self._last_timestamp.replace("Z", "+00:00"))
            ts = (last + timedelta(microseconds=1)).isoformat(timespec="microseconds").replace("+00:00", "Z")
        self._last_timestamp = ts
        return ts

    def _check_schema(self, step: str, details: Optional[Dict[str, Any]]) -> None:
        if not details:
            return
        try:
            documented = STEP_DETAIL_KEYS[AuditStep(step)]
        except ValueError:
            logger.debug("Audit step %s has no documented schema", step)
            return
        extra = set(details) - documented
        if extra:
            logger.debug("Audit step %s carries undocumented keys %s", step, sorted(extra))

    def record(self, step: str, status: AuditStatus, details: Optional[Dict[str, Any]] = None) -> None:
        """Append one entry. Never raises."""
        step = step.value if isinstance(step, AuditStep) else step
        status = AuditStatus(status)
        timestamp = self._next_timestamp()
        self._check_schema(step, details)

        merged = {**details, **self._context} if details else dict(self._context)
        entry = {
            "request_id": self.request_id,
            "timestamp": timestamp,
            "step": step,
            "status": status.value,
            "details": merged,
        }

        try:
            payload = json.dumps(entry, default=str)
        except (TypeError, ValueError) as e:
            logger.warning("Audit entry for step %s is not serializable: %s", step, e)
            entry["details"] = {"unserializable": repr(merged)}
            payload = json.dumps(entry, default=str)

        try:
            self._store.put(log_key(self.request_id, timestamp), payload, self._ttl)
            self._store.put(f"requests:{self.request_id}", timestamp, self._ttl)
        except Exception as e:
            logger.warning("Failed to write audit log entry to store: %s", e)
            fallback_logger.info(payload)
            return

        try:
            self._touch_recent_requests()
        except Exception as e:
            # Convenience index only; the entry itself is already stored.
            logger.warning("Error updating recent requests list: %s", e)

    def _touch_recent_requests(self) -> None:
        raw = self._store.get(RECENT_REQUESTS_KEY)
        recent = json.loads(raw) if raw else []
        updated = [self.request_id] + [r for r in recent if r != self.request_id]
        self._store.put(RECENT_REQUESTS_KEY, json.dumps(updated[:self._recent_limit]), self._ttl)

    # ------------------------------------------------------------
    # Retrieval
    # ------------------------------------------------------------

    @staticmethod
    def get_request_logs(store: KeyValueStore, request_id: str) -> List[AuditLogEntry]:
        """All live entries of one run, newest first."""
        try:
            keys = store.list_keys(f"log:{request_id}:")
            entries = []
            for key in keys:
                raw = store.get(key)
                if raw is None:
                    continue
                try:
                    entries.append(AuditLogEntry.model_validate_json(raw))
                except ValueError as e:
                    logger.error("Failed to parse log entry %s: %s", key, e)
        except Exception as e:
            logger.error("Error retrieving logs: %s", e)
            raise LogError(f"Failed to retrieve logs for {request_id}") from e
        return sorted(entries, key=lambda entry: entry.timestamp, reverse=True)

    @staticmethod
    def get_recent_request_ids(store: KeyValueStore, limit: int = 100) -> List[str]:
        try:
            raw = store.get(RECENT_REQUESTS_KEY)
            recent = json.loads(raw) if raw else []
        except Exception as e:
            logger.error("Error retrieving recent request IDs: %s", e)
            raise LogError("Failed to retrieve recent request IDs") from e
        return recent[:limit]
