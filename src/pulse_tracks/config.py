"""Runtime configuration for the song job pipeline."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

DEFAULT_LYRICS_ENDPOINT = "https://api.openai.com/v1/chat/completions"


@dataclass(slots=True)
class PipelineSettings:
    """Pricing, retry and stale-claim policy."""

    credits_per_song: int = 1
    max_audio_attempts: int = 3
    stale_after_seconds: int = 900
    callback_timeout_seconds: int = 3600


@dataclass(slots=True)
class LyricsServiceSettings:
    """Text-generation service settings."""

    endpoint: str = DEFAULT_LYRICS_ENDPOINT
    api_key: str = ""
    model: str = "gpt-3.5-turbo"
    timeout_seconds: float = 60.0


@dataclass(slots=True)
class AudioServiceSettings:
    """Audio-generation service settings."""

    endpoint: str = ""
    api_key: str = ""
    model: str = "V3_5"
    instrumental: bool = False
    timeout_seconds: float = 30.0
    callback_base_url: str = ""


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".pulse_tracks.db")
    sqlite_busy_timeout_ms: int = 5_000
    log_level: str = "WARNING"
    pipeline: PipelineSettings = field(default_factory=PipelineSettings)
    lyrics: LyricsServiceSettings = field(default_factory=LyricsServiceSettings)
    audio: AudioServiceSettings = field(default_factory=AudioServiceSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("PULSE_TRACKS_DB_PATH", ".pulse_tracks.db")),
            sqlite_busy_timeout_ms=int(os.getenv("PULSE_TRACKS_DB_BUSY_TIMEOUT_MS", "5000")),
            log_level=os.getenv("PULSE_TRACKS_LOG_LEVEL", "WARNING").strip().upper(),
            pipeline=PipelineSettings(
                credits_per_song=int(os.getenv("PULSE_TRACKS_CREDITS_PER_SONG", "1")),
                max_audio_attempts=int(os.getenv("PULSE_TRACKS_MAX_AUDIO_ATTEMPTS", "3")),
                stale_after_seconds=int(os.getenv("PULSE_TRACKS_STALE_AFTER_SECONDS", "900")),
                callback_timeout_seconds=int(
                    os.getenv("PULSE_TRACKS_CALLBACK_TIMEOUT_SECONDS", "3600"),
                ),
            ),
            lyrics=LyricsServiceSettings(
                endpoint=os.getenv("PULSE_TRACKS_LYRICS_ENDPOINT", DEFAULT_LYRICS_ENDPOINT),
                api_key=os.getenv("PULSE_TRACKS_LYRICS_API_KEY", ""),
                model=os.getenv("PULSE_TRACKS_LYRICS_MODEL", "gpt-3.5-turbo"),
                timeout_seconds=float(os.getenv("PULSE_TRACKS_LYRICS_TIMEOUT_SECONDS", "60")),
            ),
            audio=AudioServiceSettings(
                endpoint=os.getenv("PULSE_TRACKS_AUDIO_ENDPOINT", ""),
                api_key=os.getenv("PULSE_TRACKS_AUDIO_API_KEY", ""),
                model=os.getenv("PULSE_TRACKS_AUDIO_MODEL", "V3_5"),
                instrumental=_env_bool("PULSE_TRACKS_AUDIO_INSTRUMENTAL", default=False),
                timeout_seconds=float(os.getenv("PULSE_TRACKS_AUDIO_TIMEOUT_SECONDS", "30")),
                callback_base_url=os.getenv("PULSE_TRACKS_CALLBACK_BASE_URL", ""),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values every command depends on."""

        if self.sqlite_busy_timeout_ms < 0:
            raise ValueError("PULSE_TRACKS_DB_BUSY_TIMEOUT_MS must be >= 0.")
        if self.pipeline.credits_per_song <= 0:
            raise ValueError("PULSE_TRACKS_CREDITS_PER_SONG must be a positive integer.")
        if self.pipeline.max_audio_attempts <= 0:
            raise ValueError("PULSE_TRACKS_MAX_AUDIO_ATTEMPTS must be a positive integer.")
        if self.pipeline.stale_after_seconds < 0:
            raise ValueError("PULSE_TRACKS_STALE_AFTER_SECONDS must be >= 0 (0 disables).")
        if self.pipeline.callback_timeout_seconds < 0:
            raise ValueError("PULSE_TRACKS_CALLBACK_TIMEOUT_SECONDS must be >= 0 (0 disables).")
        if logging.getLevelName(self.log_level) == f"Level {self.log_level}":
            raise ValueError(f"Invalid PULSE_TRACKS_LOG_LEVEL: {self.log_level!r}")

    def validate_for_lyrics(self) -> None:
        self.validate()
        _validate_http_url("PULSE_TRACKS_LYRICS_ENDPOINT", self.lyrics.endpoint)
        if self.lyrics.timeout_seconds <= 0:
            raise ValueError("PULSE_TRACKS_LYRICS_TIMEOUT_SECONDS must be > 0.")

    def validate_for_audio(self) -> None:
        """The audio stage needs a provider endpoint and a public callback address."""

        self.validate()
        if not self.audio.endpoint.strip():
            raise ValueError("PULSE_TRACKS_AUDIO_ENDPOINT is required for the audio stage.")
        _validate_http_url("PULSE_TRACKS_AUDIO_ENDPOINT", self.audio.endpoint)
        if not self.audio.callback_base_url.strip():
            raise ValueError("PULSE_TRACKS_CALLBACK_BASE_URL is required for the audio stage.")
        _validate_http_url("PULSE_TRACKS_CALLBACK_BASE_URL", self.audio.callback_base_url)
        if self.audio.timeout_seconds <= 0:
            raise ValueError("PULSE_TRACKS_AUDIO_TIMEOUT_SECONDS must be > 0.")


def _validate_http_url(name: str, value: str) -> None:
    parsed = urlparse(value.strip())
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(
            f"Invalid {name}: {value!r}. Expected an absolute URL with http:// or https:// scheme.",
        )


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
