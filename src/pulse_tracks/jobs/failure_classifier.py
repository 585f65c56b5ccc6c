"""Deterministic classification of generative-service failures for retry policy."""

from __future__ import annotations

from dataclasses import dataclass

from pulse_tracks.jobs.models import FailureClass

SERVICE_FAILURE_CLASSIFIER_VERSION = 1

_TRANSIENT_STATUS_CODES: frozenset[int] = frozenset({408, 425, 429, 500, 502, 503, 504})

_RATE_LIMIT_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "please retry",
    "try again later",
)
_GENERIC_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "temporarily unavailable",
    "temporary failure",
    "service unavailable",
    "server busy",
    "overloaded",
    "connection reset",
)


@dataclass(slots=True)
class ServiceFailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    transient: bool
    reason_code: str
    matched_rule: str
    matched_pattern: str | None

    def to_event_details(self, *, service: str) -> dict[str, object]:
        """Serialize classifier diagnostics for job events and logs."""

        return {
            "classifier_version": SERVICE_FAILURE_CLASSIFIER_VERSION,
            "service": service,
            "reason_code": self.reason_code,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify_transport_failure(*, service: str, timed_out: bool) -> ServiceFailureClassification:
    """Timeouts and connection errors are always retryable."""

    if timed_out:
        return ServiceFailureClassification(
            failure_class=FailureClass.TIMEOUT,
            transient=True,
            reason_code=f"{service}_timeout",
            matched_rule="timeout",
            matched_pattern=None,
        )
    return ServiceFailureClassification(
        failure_class=FailureClass.SERVICE_TRANSIENT,
        transient=True,
        reason_code=f"{service}_connection_error",
        matched_rule="transport_error",
        matched_pattern=None,
    )


def classify_service_failure(
    *,
    service: str,
    status_code: int | None,
    body: str,
) -> ServiceFailureClassification:
    """Classify a non-success response (HTTP status or rejected envelope)."""

    haystack = body.lower()

    pattern = _first_match(haystack, _RATE_LIMIT_TRANSIENT_PATTERNS)
    if pattern is not None:
        return ServiceFailureClassification(
            failure_class=FailureClass.SERVICE_TRANSIENT,
            transient=True,
            reason_code=f"{service}_rate_limit_transient",
            matched_rule="rate_limit_transient",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _GENERIC_TRANSIENT_PATTERNS)
    if pattern is not None or status_code in _TRANSIENT_STATUS_CODES:
        return ServiceFailureClassification(
            failure_class=FailureClass.SERVICE_TRANSIENT,
            transient=True,
            reason_code=f"{service}_service_transient",
            matched_rule=(
                "transient_status_code"
                if status_code in _TRANSIENT_STATUS_CODES and pattern is None
                else "generic_transient"
            ),
            matched_pattern=pattern,
        )

    return ServiceFailureClassification(
        failure_class=FailureClass.SERVICE_REJECTED,
        transient=False,
        reason_code=f"{service}_rejected",
        matched_rule="fallback_non_retryable",
        matched_pattern=None,
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
