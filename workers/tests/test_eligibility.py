import pytest

from policy_workers.jobs.eligibility import (
    InvalidEligibilityStatusError,
    evaluate_eligibility,
    validate_evaluation,
)

POLICY = {"allowed_countries": ["us", "GB"], "blocked_countries": ["XX"]}


def test_missing_origin_country_is_pending() -> None:
    assert evaluate_eligibility({"id": "m1", "attributes": {}}, POLICY) == {
        "status": "pending",
        "reason": "MISSING_ORIGIN_COUNTRY",
    }
    assert evaluate_eligibility({"id": "m1"}, POLICY)["status"] == "pending"


def test_blocked_country_wins_over_allowed() -> None:
    result = evaluate_eligibility({"attributes": {"origin_countries": ["US", "XX"]}}, POLICY)
    assert result == {"status": "ineligible", "reason": "BLOCKED_COUNTRY"}


def test_allowed_country_is_case_insensitive() -> None:
    result = evaluate_eligibility({"attributes": {"origin_countries": "gb"}}, POLICY)
    assert result == {"status": "eligible", "reason": "ALLOWED_COUNTRY"}


def test_unlisted_country_is_ineligible() -> None:
    result = evaluate_eligibility({"attributes": {"origin_countries": ["FR"]}}, POLICY)
    assert result == {"status": "ineligible", "reason": "NEUTRAL_COUNTRY"}
    assert evaluate_eligibility({"attributes": {"origin_countries": ["FR"]}}, {})["reason"] == "NEUTRAL_COUNTRY"


def test_validate_evaluation_rejects_unknown_status() -> None:
    assert validate_evaluation({"status": "review"}) == {"status": "review"}
    with pytest.raises(InvalidEligibilityStatusError):
        validate_evaluation({"status": "approved"})
    with pytest.raises(InvalidEligibilityStatusError):
        validate_evaluation(None)
