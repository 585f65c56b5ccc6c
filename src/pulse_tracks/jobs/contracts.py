"""Callback payload parsing, artifact URL repair and callback addresses."""

from __future__ import annotations

import re
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from pulse_tracks.jobs.models import CallbackOutcome, CallbackPayload

CALLBACK_JOB_ID_PARAM = "jobId"

_PROGRESS_CALLBACK_TYPES = frozenset({"text", "first"})
_COMPLETE_OUTCOMES = frozenset({"complete", "completed", "success", "succeeded"})
_FAIL_OUTCOMES = frozenset({"fail", "failed", "error"})

_REPEATED_SCHEME = re.compile(r"^(?:https?:/+)+(?=https?:/)", re.IGNORECASE)
_SCHEME_PREFIX = re.compile(r"^(https?):/*", re.IGNORECASE)


def build_callback_url(*, base_url: str, job_id: str) -> str:
    """Embed the job id in the callback address as a query parameter."""

    parsed = urlparse(base_url)
    query = [
        (key, value)
        for key, value in parse_qsl(parsed.query, keep_blank_values=True)
        if key != CALLBACK_JOB_ID_PARAM
    ]
    query.append((CALLBACK_JOB_ID_PARAM, job_id))
    return urlunparse(parsed._replace(query=urlencode(query)))


def job_id_from_callback_url(url: str) -> str | None:
    for key, value in parse_qsl(urlparse(url).query):
        if key == CALLBACK_JOB_ID_PARAM and value.strip():
            return value.strip()
    return None


def repair_artifact_url(raw: str | None) -> str | None:
    """Fix the known URL-prefix corruption; ``None`` if no usable URL remains.

    Handles repeated scheme prefixes (``https://https://cdn/x.mp3``),
    single-slash or slashless schemes (``https:/cdn/x.mp3``) and
    protocol-relative URLs (``//cdn/x.mp3``).
    """

    if raw is None:
        return None
    value = raw.strip()
    if not value:
        return None
    if value.startswith("//"):
        value = f"https:{value}"
    value = _REPEATED_SCHEME.sub("", value)
    match = _SCHEME_PREFIX.match(value)
    if match is None:
        return None
    value = f"{match.group(1).lower()}://{value[match.end():]}"
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        return None
    return value


def parse_callback_payload(payload: Any) -> CallbackPayload:
    """Normalize a provider notification.

    Accepts the provider envelope
    ``{"code", "msg", "data": {"callbackType", "task_id", "data": [{"audio_url"}]}}``
    and the flat form ``{"taskId", "outcome", "artifact" | "failureMessage"}``.
    Never raises: anything unrecognized comes back as ``MALFORMED``.
    """

    if not isinstance(payload, dict):
        return CallbackPayload(
            outcome=CallbackOutcome.MALFORMED,
            task_id=None,
            reason="payload is not an object",
        )
    if "outcome" in payload:
        return _parse_flat(payload)
    return _parse_envelope(payload)


def _parse_flat(payload: dict[str, Any]) -> CallbackPayload:
    task_id = _as_text(payload.get("taskId") or payload.get("task_id"))
    outcome = str(payload.get("outcome", "")).strip().lower()
    if outcome in _COMPLETE_OUTCOMES:
        raw_url = _as_text(payload.get("artifact") or payload.get("artifactUrl"))
        return _complete(task_id=task_id, raw_url=raw_url)
    if outcome in _FAIL_OUTCOMES:
        return CallbackPayload(
            outcome=CallbackOutcome.FAIL,
            task_id=task_id,
            failure_message=_as_text(payload.get("failureMessage") or payload.get("msg")),
        )
    return CallbackPayload(
        outcome=CallbackOutcome.MALFORMED,
        task_id=task_id,
        reason=f"unrecognized outcome {outcome!r}",
    )


def _parse_envelope(payload: dict[str, Any]) -> CallbackPayload:
    data = payload.get("data")
    if not isinstance(data, dict):
        return CallbackPayload(
            outcome=CallbackOutcome.MALFORMED,
            task_id=None,
            reason="missing data object",
        )
    task_id = _as_text(data.get("task_id") or data.get("taskId"))
    callback_type = str(data.get("callbackType", "")).strip().lower()

    if callback_type == "complete":
        if payload.get("code") != 200:
            return CallbackPayload(
                outcome=CallbackOutcome.FAIL,
                task_id=task_id,
                failure_message=_as_text(payload.get("msg")) or f"code={payload.get('code')}",
            )
        tracks = data.get("data")
        if not isinstance(tracks, list) or not tracks or not isinstance(tracks[0], dict):
            return CallbackPayload(
                outcome=CallbackOutcome.MALFORMED,
                task_id=task_id,
                reason="complete callback without tracks",
            )
        raw_url = _as_text(tracks[0].get("audio_url") or tracks[0].get("audioUrl"))
        return _complete(task_id=task_id, raw_url=raw_url)
    if callback_type in _FAIL_OUTCOMES:
        return CallbackPayload(
            outcome=CallbackOutcome.FAIL,
            task_id=task_id,
            failure_message=_as_text(data.get("msg") or payload.get("msg")),
        )
    if callback_type in _PROGRESS_CALLBACK_TYPES:
        return CallbackPayload(outcome=CallbackOutcome.PROGRESS, task_id=task_id)
    return CallbackPayload(
        outcome=CallbackOutcome.MALFORMED,
        task_id=task_id,
        reason=f"unrecognized callbackType {callback_type!r}",
    )


def _complete(*, task_id: str | None, raw_url: str | None) -> CallbackPayload:
    artifact_url = repair_artifact_url(raw_url)
    if artifact_url is None:
        return CallbackPayload(
            outcome=CallbackOutcome.MALFORMED,
            task_id=task_id,
            reason=f"complete callback without a usable artifact url ({raw_url!r})",
        )
    return CallbackPayload(
        outcome=CallbackOutcome.COMPLETE,
        task_id=task_id,
        artifact_url=artifact_url,
    )


def _as_text(value: object) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None
