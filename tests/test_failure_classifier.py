from __future__ import annotations

import allure
import pytest

from pulse_tracks.jobs.failure_classifier import (
    SERVICE_FAILURE_CLASSIFIER_VERSION,
    classify_service_failure,
    classify_transport_failure,
)
from pulse_tracks.jobs.models import FailureClass

pytestmark = [
    allure.epic("Song Pipeline"),
    allure.feature("Failure Classification"),
]


def test_classifier_version_is_stable() -> None:
    assert SERVICE_FAILURE_CLASSIFIER_VERSION == 1


def test_timeouts_and_connection_errors_are_transient() -> None:
    timeout = classify_transport_failure(service="audio", timed_out=True)
    connection = classify_transport_failure(service="audio", timed_out=False)

    assert (timeout.failure_class, timeout.transient) == (FailureClass.TIMEOUT, True)
    assert timeout.reason_code == "audio_timeout"
    assert connection.failure_class == FailureClass.SERVICE_TRANSIENT
    assert connection.matched_rule == "transport_error"


def test_rate_limit_body_wins_over_client_status() -> None:
    classified = classify_service_failure(
        service="lyrics",
        status_code=400,
        body='{"error": "Rate limit reached, please retry"}',
    )

    assert classified.transient
    assert classified.matched_rule == "rate_limit_transient"
    assert classified.matched_pattern == "rate limit"


@pytest.mark.parametrize("status_code", [408, 429, 500, 502, 503, 504])
def test_transient_status_codes(status_code: int) -> None:
    classified = classify_service_failure(service="audio", status_code=status_code, body="")

    assert classified.transient
    assert classified.matched_rule == "transient_status_code"


def test_generic_transient_body_pattern() -> None:
    classified = classify_service_failure(
        service="audio",
        status_code=None,
        body="Service temporarily unavailable",
    )

    assert classified.failure_class == FailureClass.SERVICE_TRANSIENT
    assert classified.matched_rule == "generic_transient"


@pytest.mark.parametrize("status_code", [400, 401, 403, 404, 422, None])
def test_everything_else_is_permanent(status_code: int | None) -> None:
    classified = classify_service_failure(
        service="audio",
        status_code=status_code,
        body='{"code": 400, "msg": "prompt contains forbidden words"}',
    )

    assert not classified.transient
    assert classified.failure_class == FailureClass.SERVICE_REJECTED
    assert classified.to_event_details(service="audio") == {
        "classifier_version": 1,
        "service": "audio",
        "reason_code": "audio_rejected",
        "matched_rule": "fallback_non_retryable",
        "matched_pattern": None,
    }
