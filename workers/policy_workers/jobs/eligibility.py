"""Default per-item eligibility evaluator.

Only country rules are applied. Richer engines plug in through ``execute_reevaluate_all``'s
``evaluator`` argument with the same ``(item, policy_config) -> {"status", "reason"}`` shape.
"""

from __future__ import annotations

from typing import Any, Callable

ELIGIBILITY_STATUSES = {"pending", "eligible", "ineligible", "review"}

Evaluator = Callable[[dict[str, Any], dict[str, Any]], dict[str, Any]]


class InvalidEligibilityStatusError(ValueError):
    """Raised when an evaluator returns a status outside the canonical set."""


def evaluate_eligibility(item: dict[str, Any], policy_config: dict[str, Any]) -> dict[str, Any]:
    attributes = item.get("attributes") if isinstance(item.get("attributes"), dict) else {}
    origin_countries = _as_country_set(attributes.get("origin_countries"))
    if not origin_countries:
        return {"status": "pending", "reason": "MISSING_ORIGIN_COUNTRY"}

    blocked = _as_country_set(policy_config.get("blocked_countries"))
    if origin_countries & blocked:
        return {"status": "ineligible", "reason": "BLOCKED_COUNTRY"}

    allowed = _as_country_set(policy_config.get("allowed_countries"))
    if origin_countries & allowed:
        return {"status": "eligible", "reason": "ALLOWED_COUNTRY"}

    return {"status": "ineligible", "reason": "NEUTRAL_COUNTRY"}


def validate_evaluation(result: Any) -> dict[str, Any]:
    if not isinstance(result, dict):
        raise InvalidEligibilityStatusError(f"evaluator returned {type(result).__name__}, expected dict")
    status = result.get("status")
    if status not in ELIGIBILITY_STATUSES:
        raise InvalidEligibilityStatusError(f"invalid eligibility status: {status!r}")
    return result


def _as_country_set(value: Any) -> set[str]:
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, (list, tuple, set)):
        return set()
    return {str(code).strip().upper() for code in value if str(code).strip()}
