"""Suno-compatible client for asynchronous audio generation."""

from __future__ import annotations

import json

import httpx

from pulse_tracks.clients.base import (
    AudioSubmission,
    AudioSubmissionResult,
    build_http_client,
    post_json,
    raise_classified,
)

SERVICE_NAME = "audio"

STYLE_MAX_CHARS = 200
TITLE_MAX_CHARS = 80
PROMPT_MAX_CHARS = 3000


class SunoAudioClient:
    """Submits custom-mode generation requests; completion arrives by callback."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        endpoint: str,
        api_key: str,
        model: str,
        timeout_seconds: float,
        instrumental: bool = False,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.endpoint = endpoint
        self.model = model
        self.instrumental = instrumental
        self._client = build_http_client(
            timeout_seconds=timeout_seconds,
            api_key=api_key,
            transport=transport,
        )

    def submit(self, request: AudioSubmission) -> AudioSubmissionResult:
        body = post_json(
            self._client,
            service=SERVICE_NAME,
            url=self.endpoint,
            payload={
                "customMode": True,
                "instrumental": self.instrumental,
                "model": self.model,
                "style": request.style[:STYLE_MAX_CHARS],
                "title": request.title[:TITLE_MAX_CHARS],
                "prompt": request.prompt[:PROMPT_MAX_CHARS],
                "callBackUrl": request.callback_url,
            },
        )
        task_id = _accepted_task_id(body)
        if task_id is None:
            code = body.get("code") if isinstance(body, dict) else None
            raise_classified(
                service=SERVICE_NAME,
                status_code=code if isinstance(code, int) else None,
                body=json.dumps(body, ensure_ascii=False, default=str),
                message=f"audio submission rejected (code={code})",
            )
        return AudioSubmissionResult(external_task_id=task_id)

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> SunoAudioClient:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()


def _accepted_task_id(body: object) -> str | None:
    if not isinstance(body, dict) or body.get("code") != 200:
        return None
    data = body.get("data")
    if not isinstance(data, dict):
        return None
    task_id = data.get("taskId") or data.get("task_id")
    if isinstance(task_id, str) and task_id.strip():
        return task_id.strip()
    return None
