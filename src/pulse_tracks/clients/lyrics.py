"""OpenAI-compatible chat completions client for lyrics generation."""

from __future__ import annotations

import httpx

from pulse_tracks.clients.base import build_http_client, post_json
from pulse_tracks.jobs.errors import PermanentExternalFailure
from pulse_tracks.jobs.models import FailureClass

SERVICE_NAME = "lyrics"


class OpenAiLyricsClient:
    """One bounded-timeout chat completion per ``generate`` call."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        endpoint: str,
        api_key: str,
        model: str,
        timeout_seconds: float,
        temperature: float = 0.7,
        max_tokens: int = 1200,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.endpoint = endpoint
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self._client = build_http_client(
            timeout_seconds=timeout_seconds,
            api_key=api_key,
            transport=transport,
        )

    def generate(self, prompt: str) -> str:
        body = post_json(
            self._client,
            service=SERVICE_NAME,
            url=self.endpoint,
            payload={
                "model": self.model,
                "messages": [{"role": "user", "content": prompt}],
                "temperature": self.temperature,
                "max_tokens": self.max_tokens,
            },
        )
        text = _extract_content(body)
        if not text:
            raise PermanentExternalFailure(
                "lyrics response had no content",
                failure_class=FailureClass.MALFORMED_RESPONSE,
            )
        return text

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> OpenAiLyricsClient:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()


def _extract_content(body: object) -> str:
    if not isinstance(body, dict):
        return ""
    choices = body.get("choices")
    if not isinstance(choices, list) or not choices:
        return ""
    first = choices[0]
    if not isinstance(first, dict):
        return ""
    message = first.get("message")
    if not isinstance(message, dict):
        return ""
    content = message.get("content")
    return content.strip() if isinstance(content, str) else ""
