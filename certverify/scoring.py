"""
Confidence scoring of analysis results.

Advisory cross-check independent of the service's own total_verification
verdict. The orchestrator records the report in the audit trail and, under
the strict decision policy, requires it to pass as well.
"""

import math
from typing import Optional

from .models import AnalysisResult, ConfidenceReport

DOCUMENT_A_WEIGHT = 0.5
DOCUMENT_B_WEIGHT = 0.3
URL_WEIGHT = 0.2

PASSING_CONFIDENCE = 0.70
MIN_DOCUMENT_A_SCORE = 0.65
MIN_DOCUMENT_B_SCORE = 0.60

REASON_LOW_DOCUMENT = "low document confidence"
REASON_LOW_VERIFICATION_PAGE = "low verification-page confidence"
REASON_INVALID_URL = "invalid verification URL"
REASON_ALL_PASSED = "all verification checks passed"


def _unit_score(value: Optional[float]) -> float:
    """Missing, non-numeric or non-finite scores count as 0; others are clamped to [0, 1]."""
    if value is None or isinstance(value, bool):
        return 0.0
    try:
        value = float(value)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(value):
        return 0.0
    return min(1.0, max(0.0, value))


def score(result: AnalysisResult) -> ConfidenceReport:
    a = _unit_score(result.document_a.document_a_confidence_score)
    b = _unit_score(result.document_b.document_b_confidence_score)
    url_valid = result.verification_url_valid is True

    overall = DOCUMENT_A_WEIGHT * a + DOCUMENT_B_WEIGHT * b + URL_WEIGHT * (1.0 if url_valid else 0.0)
    overall = min(1.0, max(0.0, overall))

    is_passing = overall >= PASSING_CONFIDENCE and url_valid and a >= MIN_DOCUMENT_A_SCORE

    reasons = []
    if a < MIN_DOCUMENT_A_SCORE:
        reasons.append(REASON_LOW_DOCUMENT)
    if b < MIN_DOCUMENT_B_SCORE:
        reasons.append(REASON_LOW_VERIFICATION_PAGE)
    if not url_valid:
        reasons.append(REASON_INVALID_URL)
    if not reasons and is_passing:
        reasons.append(REASON_ALL_PASSED)

    return ConfidenceReport(overall_confidence=overall, is_passing=is_passing, reasons=reasons)
