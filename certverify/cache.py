"""
Result cache: certificate id -> last AnalysisResult, with a bounded TTL.

Purely an optimization. Every failure is logged and downgraded to a miss or
a no-op so the verification state machine never depends on it.
"""

import logging
from typing import Optional

from pydantic import ValidationError

from .kv_backends import KeyValueStore
from .models import AnalysisResult

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 60 * 60 * 24


def cache_key(certificate_id: str) -> str:
    return f"verification:{certificate_id}"


class ResultCache:

    def __init__(self, store: KeyValueStore, ttl_seconds: int = DEFAULT_TTL_SECONDS):
        self._store = store
        self._ttl = ttl_seconds

    def get(self, certificate_id: str) -> Optional[AnalysisResult]:
        key = cache_key(certificate_id)
        try:
            raw = self._store.get(key)
        except Exception as e:
            logger.warning("Result cache read failed for %s: %s", key, e)
            return None
        if raw is None:
            return None
        try:
            return AnalysisResult.model_validate_json(raw)
        except (ValidationError, ValueError) as e:
            logger.warning("Discarding undecodable cache entry %s: %s", key, e)
            return None

    def put(self, certificate_id: str, result: AnalysisResult, ttl_seconds: Optional[int] = None) -> bool:
        """Write-through of a whole result. Returns False if the write was dropped."""
        key = cache_key(certificate_id)
        try:
            self._store.put(key, result.model_dump_json(), self._ttl if ttl_seconds is None else ttl_seconds)
            return True
        except Exception as e:
            logger.warning("Result cache write failed for %s: %s", key, e)
            return False
