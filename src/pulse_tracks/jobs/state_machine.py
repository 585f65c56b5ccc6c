"""Allowed job status transitions."""

from __future__ import annotations

from pulse_tracks.jobs.errors import InvalidTransitionError
from pulse_tracks.jobs.models import JobStatus

ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.LYRICS_PENDING: frozenset({JobStatus.LYRICS_PROCESSING}),
    JobStatus.LYRICS_PROCESSING: frozenset({JobStatus.LYRICS_COMPLETE, JobStatus.LYRICS_ERROR}),
    JobStatus.LYRICS_COMPLETE: frozenset({JobStatus.AUDIO_PENDING}),
    # audio_pending -> error: balance no longer covers the price at claim time
    JobStatus.AUDIO_PENDING: frozenset({JobStatus.AUDIO_PROCESSING, JobStatus.ERROR}),
    JobStatus.AUDIO_PROCESSING: frozenset(
        {JobStatus.PROCESSING, JobStatus.AUDIO_PENDING, JobStatus.ERROR},
    ),
    JobStatus.PROCESSING: frozenset({JobStatus.COMPLETE, JobStatus.ERROR}),
    JobStatus.LYRICS_ERROR: frozenset(),
    JobStatus.COMPLETE: frozenset(),
    JobStatus.ERROR: frozenset(),
}

TERMINAL_STATUSES: frozenset[JobStatus] = frozenset(
    status for status, targets in ALLOWED_TRANSITIONS.items() if not targets
)

# statuses whose generated lyrics may be shown to the owner
LYRICS_VISIBLE_STATUSES: frozenset[JobStatus] = frozenset(
    {
        JobStatus.LYRICS_COMPLETE,
        JobStatus.AUDIO_PENDING,
        JobStatus.AUDIO_PROCESSING,
        JobStatus.PROCESSING,
        JobStatus.COMPLETE,
    },
)


def is_terminal(status: JobStatus) -> bool:
    return status in TERMINAL_STATUSES


def can_transition(status_from: JobStatus, status_to: JobStatus) -> bool:
    return status_to in ALLOWED_TRANSITIONS[status_from]


def ensure_transition(status_from: JobStatus, status_to: JobStatus) -> None:
    """Raise ``InvalidTransitionError`` unless the edge is in the table."""

    if not can_transition(status_from, status_to):
        raise InvalidTransitionError(status_from, status_to)
