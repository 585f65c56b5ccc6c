"""HTTP clients for the external generative services."""

from pulse_tracks.clients.audio import SunoAudioClient
from pulse_tracks.clients.base import (
    AudioGenerator,
    AudioSubmission,
    AudioSubmissionResult,
    LyricsGenerator,
)
from pulse_tracks.clients.lyrics import OpenAiLyricsClient

__all__ = [
    "AudioGenerator",
    "AudioSubmission",
    "AudioSubmissionResult",
    "LyricsGenerator",
    "OpenAiLyricsClient",
    "SunoAudioClient",
]
