"""Prompt and title construction for song jobs."""

from __future__ import annotations

from pulse_tracks.jobs.models import JobInputs

DEFAULT_TONE = "Inspiring"
DEFAULT_LANGUAGE = "English"
DEFAULT_STYLE = "motivational"
DEFAULT_ATHLETE = "the athlete"


def build_lyrics_prompt(inputs: JobInputs) -> str:
    """Render the text-generation prompt.

    Fallbacks: a custom style overrides the preset style, and tone, language,
    style and athlete name each fall back to a fixed default when blank.
    """

    style = inputs.effective_style or DEFAULT_STYLE
    tone = inputs.tone.strip() or DEFAULT_TONE
    language = inputs.language.strip() or DEFAULT_LANGUAGE
    athlete = inputs.athlete_name.strip() or DEFAULT_ATHLETE
    workout = inputs.workout.strip()

    lines = [
        f"Write a 3-4 minute motivational song for {athlete} preparing for: {workout}.",
        f"Musical style: {style}.",
        f"Tone: {tone}.",
        f"Write the lyrics in {language}.",
        "Include 2-3 verses, a chorus, and vivid imagery.",
        "Return only the lyrics.",
    ]
    return "\n".join(lines)


def default_title(inputs: JobInputs) -> str:
    workout = inputs.workout.strip() or "Workout"
    style = inputs.effective_style or "Song"
    return f"{workout} - {style}"


def audio_title(*, title: str, track_name: str) -> str:
    """Track name wins over the generated default title."""

    return track_name.strip() or title


def audio_style(inputs: JobInputs) -> str:
    return inputs.effective_style or DEFAULT_STYLE
