import math

import pytest

from certverify.models import AnalysisResult
from certverify.scoring import (
    REASON_ALL_PASSED,
    REASON_INVALID_URL,
    REASON_LOW_DOCUMENT,
    REASON_LOW_VERIFICATION_PAGE,
    score,
)


def result(a=None, b=None, url_valid=None):
    return AnalysisResult.model_validate({
        "document_a": {"document_a_confidence_score": a},
        "document_b": {"document_b_confidence_score": b},
        "verification_url_valid": url_valid,
    })


def test_strong_result_passes():
    report = score(result(0.92, 0.87, True))

    assert report.overall_confidence == pytest.approx(0.5 * 0.92 + 0.3 * 0.87 + 0.2)
    assert report.is_passing is True
    assert report.reasons == [REASON_ALL_PASSED]


def test_missing_scores_count_as_zero():
    report = score(AnalysisResult())

    assert report.overall_confidence == 0.0
    assert report.is_passing is False
    assert report.reasons == [REASON_LOW_DOCUMENT, REASON_LOW_VERIFICATION_PAGE, REASON_INVALID_URL]


def test_low_page_confidence_is_reported_but_can_still_pass():
    report = score(result(0.9, 0.4, True))

    assert report.is_passing is True
    assert report.reasons == [REASON_LOW_VERIFICATION_PAGE]


def test_invalid_url_blocks_passing_even_with_high_scores():
    report = score(result(0.95, 0.95, False))

    assert report.overall_confidence >= 0.70
    assert report.is_passing is False
    assert report.reasons == [REASON_INVALID_URL]


def test_document_a_floor_blocks_passing():
    report = score(result(0.6, 1.0, True))

    assert report.overall_confidence == pytest.approx(0.8)
    assert report.is_passing is False
    assert report.reasons == [REASON_LOW_DOCUMENT]


@pytest.mark.parametrize("a, b", [(1.7, 0.9), (-3.0, 0.5), (float("nan"), 0.5), (0.8, float("inf"))])
def test_out_of_range_scores_are_bounded(a, b):
    report = score(result(a, b, True))

    assert 0.0 <= report.overall_confidence <= 1.0
    assert math.isfinite(report.overall_confidence)


def test_clamped_score_contributes_its_maximum():
    report = score(result(1.7, 0.9, True))
    assert report.overall_confidence == pytest.approx(0.5 + 0.27 + 0.2)


def test_scoring_is_deterministic():
    r = result(0.71, 0.66, True)
    assert score(r) == score(r)


def test_non_numeric_scores_count_as_zero():
    report = score(result("high", True, "yes"))

    assert report.overall_confidence == 0.0
    assert report.reasons == [REASON_LOW_DOCUMENT, REASON_LOW_VERIFICATION_PAGE, REASON_INVALID_URL]
