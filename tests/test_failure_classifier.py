from __future__ import annotations

import allure

from sipag.orchestrator.failure_classifier import classify_agent_failure
from sipag.orchestrator.models import FailureClass

pytestmark = [
    allure.epic("Worker"),
    allure.feature("Agent Failure Classification"),
]


def test_classifier_reports_timeout_before_patterns() -> None:
    classified = classify_agent_failure(exit_code=124, timed_out=True, output="quota exceeded")
    assert classified.failure_class == FailureClass.TIMEOUT
    assert classified.reason_code == "agent_timeout"
    assert classified.transient is True


def test_classifier_prefers_billing_over_killed_exit_code() -> None:
    classified = classify_agent_failure(
        exit_code=137,
        timed_out=False,
        output="Quota exceeded for this project",
    )
    assert classified.failure_class == FailureClass.AGENT
    assert classified.reason_code == "agent_billing_or_quota"
    assert classified.matched_pattern == "quota"
    assert classified.transient is False


def test_classifier_maps_rate_limit_to_transient() -> None:
    classified = classify_agent_failure(
        exit_code=1,
        timed_out=False,
        output="HTTP 429 too many requests, please retry",
    )
    assert classified.reason_code == "agent_rate_limited"
    assert classified.transient is True


def test_classifier_maps_killed_agent() -> None:
    classified = classify_agent_failure(exit_code=143, timed_out=False, output="")
    assert classified.reason_code == "agent_killed"
    assert classified.transient is True


def test_classifier_falls_back_to_nonzero_exit() -> None:
    classified = classify_agent_failure(
        exit_code=2,
        timed_out=False,
        output="fatal: unsupported syntax in prompt template",
    )
    assert classified.failure_class == FailureClass.AGENT
    assert classified.reason_code == "agent_nonzero_exit"
    assert classified.matched_pattern is None
