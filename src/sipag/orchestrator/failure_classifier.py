"""Deterministic agent failure classification for run records and requeue notes."""

from __future__ import annotations

from dataclasses import dataclass

from sipag.orchestrator.models import FailureClass

_BILLING_OR_QUOTA_PATTERNS: tuple[str, ...] = (
    "quota",
    "resource_exhausted",
    "insufficient",
    "billing",
    "payment",
    "credits",
    "usage limit",
)
_ACCESS_OR_AUTH_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "forbidden",
    "permission denied",
    "invalid api key",
    "authentication",
    "not logged in",
)
_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "429",
    "overloaded",
    "try again later",
)
_GENERIC_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "temporarily unavailable",
    "temporary failure",
    "connection reset",
    "network error",
    "could not resolve host",
)
# Exit codes of a process killed by SIGKILL / SIGTERM.
TRANSIENT_EXIT_CODES: tuple[int, ...] = (137, 143)


@dataclass(slots=True, frozen=True)
class AgentFailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    reason_code: str
    matched_pattern: str | None
    transient: bool


def classify_agent_failure(
    *,
    exit_code: int,
    timed_out: bool,
    output: str,
) -> AgentFailureClassification:
    """Classify a failed agent run from its exit status and output tail."""

    if timed_out:
        return AgentFailureClassification(
            failure_class=FailureClass.TIMEOUT,
            reason_code="agent_timeout",
            matched_pattern=None,
            transient=True,
        )

    haystack = output.lower()
    for reason_code, patterns, transient in (
        ("agent_billing_or_quota", _BILLING_OR_QUOTA_PATTERNS, False),
        ("agent_access_or_auth", _ACCESS_OR_AUTH_PATTERNS, False),
        ("agent_rate_limited", _RATE_LIMIT_PATTERNS, True),
        ("agent_backend_transient", _GENERIC_TRANSIENT_PATTERNS, True),
    ):
        pattern = _first_match(haystack, patterns)
        if pattern is not None:
            return AgentFailureClassification(
                failure_class=FailureClass.AGENT,
                reason_code=reason_code,
                matched_pattern=pattern,
                transient=transient,
            )

    if exit_code in TRANSIENT_EXIT_CODES:
        return AgentFailureClassification(
            failure_class=FailureClass.AGENT,
            reason_code="agent_killed",
            matched_pattern=None,
            transient=True,
        )
    return AgentFailureClassification(
        failure_class=FailureClass.AGENT,
        reason_code="agent_nonzero_exit",
        matched_pattern=None,
        transient=False,
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
