"""Service interfaces and shared HTTP call handling."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, NoReturn, Protocol

import httpx

from pulse_tracks.jobs.errors import PermanentExternalFailure, TransientExternalFailure
from pulse_tracks.jobs.failure_classifier import (
    classify_service_failure,
    classify_transport_failure,
)
from pulse_tracks.jobs.models import FailureClass

logger = logging.getLogger(__name__)

_BODY_PREVIEW_CHARS = 300


@dataclass(slots=True)
class AudioSubmission:
    """Inputs for one asynchronous audio generation request."""

    style: str
    title: str
    prompt: str
    callback_url: str


@dataclass(slots=True)
class AudioSubmissionResult:
    external_task_id: str


class LyricsGenerator(Protocol):
    """Synchronous text generation: prompt in, lyrics out."""

    def generate(self, prompt: str) -> str:
        """Return generated text or raise an ``ExternalServiceError`` subclass."""


class AudioGenerator(Protocol):
    """Asynchronous audio generation with out-of-band completion."""

    def submit(self, request: AudioSubmission) -> AudioSubmissionResult:
        """Return the accepted task reference or raise an ``ExternalServiceError`` subclass."""


def build_http_client(
    *,
    timeout_seconds: float,
    api_key: str,
    transport: httpx.BaseTransport | None = None,
) -> httpx.Client:
    headers = {"Content-Type": "application/json"}
    if api_key:
        headers["Authorization"] = f"Bearer {api_key}"
    return httpx.Client(
        timeout=httpx.Timeout(timeout_seconds, connect=min(10.0, timeout_seconds)),
        headers=headers,
        transport=transport,
    )


def post_json(
    client: httpx.Client,
    *,
    service: str,
    url: str,
    payload: dict[str, Any],
) -> Any:
    """POST once (no in-process retry) and return the decoded JSON body.

    Transport and HTTP failures are classified into transient / permanent
    ``ExternalServiceError`` subclasses.
    """

    try:
        response = client.post(url, json=payload)
    except httpx.TimeoutException as error:
        classification = classify_transport_failure(service=service, timed_out=True)
        logger.warning("Timeout calling %s at %s", service, url)
        raise TransientExternalFailure(
            f"{service} timed out",
            failure_class=classification.failure_class,
            details=classification.to_event_details(service=service),
        ) from error
    except httpx.HTTPError as error:
        classification = classify_transport_failure(service=service, timed_out=False)
        logger.warning("Transport error calling %s at %s: %s", service, url, error)
        raise TransientExternalFailure(
            f"{service} unreachable: {error}",
            failure_class=classification.failure_class,
            details=classification.to_event_details(service=service),
        ) from error

    if not response.is_success:
        raise_classified(
            service=service,
            status_code=response.status_code,
            body=response.text,
            message=f"{service} returned HTTP {response.status_code}",
        )

    try:
        return response.json()
    except ValueError as error:
        raise PermanentExternalFailure(
            f"{service} returned a non-JSON body",
            failure_class=FailureClass.MALFORMED_RESPONSE,
        ) from error


def raise_classified(
    *,
    service: str,
    status_code: int | None,
    body: str,
    message: str,
) -> NoReturn:
    classification = classify_service_failure(service=service, status_code=status_code, body=body)
    logger.warning(
        "%s failure classified as %s (%s): %s",
        service,
        classification.failure_class.value,
        classification.matched_rule,
        body[:_BODY_PREVIEW_CHARS],
    )
    details = classification.to_event_details(service=service)
    if status_code is not None:
        details["status_code"] = status_code
    if classification.transient:
        raise TransientExternalFailure(
            message,
            failure_class=classification.failure_class,
            details=details,
        )
    raise PermanentExternalFailure(
        message,
        failure_class=classification.failure_class,
        details=details,
    )
