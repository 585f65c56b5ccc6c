"""Domain models for song generation jobs and the credit ledger."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class JobStatus(str, Enum):
    """Durable job lifecycle states."""

    LYRICS_PENDING = "lyrics_pending"
    LYRICS_PROCESSING = "lyrics_processing"
    LYRICS_COMPLETE = "lyrics_complete"
    LYRICS_ERROR = "lyrics_error"
    AUDIO_PENDING = "audio_pending"
    AUDIO_PROCESSING = "audio_processing"
    PROCESSING = "processing"
    COMPLETE = "complete"
    ERROR = "error"


class FailureClass(str, Enum):
    """Normalized failure classes used by retry policy."""

    TIMEOUT = "timeout"
    SERVICE_TRANSIENT = "service_transient"
    SERVICE_REJECTED = "service_rejected"
    MALFORMED_RESPONSE = "malformed_response"
    INSUFFICIENT_CREDITS = "insufficient_credits"
    CALLBACK_FAILED = "callback_failed"
    CALLBACK_MALFORMED = "callback_malformed"
    STALE_CLAIM = "stale_claim"
    CALLBACK_TIMEOUT = "callback_timeout"


class LedgerEntryKind(str, Enum):
    DEBIT = "debit"
    REFUND = "refund"
    GRANT = "grant"


class DequeueOutcome(str, Enum):
    """What a periodic trigger learns about one dequeue invocation."""

    PROCESSED = "processed"
    IDLE = "idle"
    INTERNAL_ERROR = "internal_error"


class CallbackOutcome(str, Enum):
    COMPLETE = "complete"
    FAIL = "fail"
    PROGRESS = "progress"
    MALFORMED = "malformed"


@dataclass(slots=True)
class JobInputs:
    """Free-text admission inputs for one song."""

    workout: str
    music_style: str = ""
    custom_style: str = ""
    tone: str = ""
    language: str = ""
    athlete_name: str = ""
    track_name: str = ""

    @property
    def effective_style(self) -> str:
        """Custom style wins over the preset style."""

        return self.custom_style.strip() or self.music_style.strip()


@dataclass(slots=True)
class AccountView:
    account_id: str
    display_name: str
    credits: int
    created_at: datetime


@dataclass(slots=True)
class JobView:
    """Readable job view for services, stages and CLI."""

    job_id: str
    account_id: str
    inputs: JobInputs
    title: str
    status: JobStatus
    lyrics: str | None
    external_task_id: str | None
    artifact_url: str | None
    audio_attempts: int
    error_summary: str | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class JobEventView:
    """Job event entry for audit trail."""

    event_id: int
    job_id: str
    event_type: str
    status_from: JobStatus | None
    status_to: JobStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class LedgerEntryView:
    entry_id: int
    account_id: str
    job_id: str | None
    kind: LedgerEntryKind
    amount: int
    balance_before: int
    created_at: datetime


@dataclass(slots=True)
class JobDetails:
    """Job details with event stream and ledger entries."""

    job: JobView
    events: list[JobEventView]
    ledger: list[LedgerEntryView]


@dataclass(slots=True)
class AudioClaim:
    """Result of one audio-stage claim and its charge context.

    When ``insufficient_credits`` is set the job was moved straight to ``error``
    without a charge and must not be submitted.
    """

    job: JobView
    charged_now: bool
    balance_before: int | None
    insufficient_credits: bool = False


@dataclass(slots=True)
class LyricsStatusView:
    """Client-facing lyrics poll result; ``lyrics`` is ``None`` until defined."""

    job_id: str
    status: JobStatus
    lyrics: str | None

    @property
    def ready(self) -> bool:
        return self.lyrics is not None


@dataclass(slots=True)
class AudioStatusView:
    """Client-facing audio poll result; ``artifact_url`` is ``None`` until complete."""

    job_id: str
    external_task_id: str | None
    status: JobStatus
    artifact_url: str | None

    @property
    def ready(self) -> bool:
        return self.artifact_url is not None


@dataclass(slots=True)
class CallbackPayload:
    """Provider notification normalized to one shape."""

    outcome: CallbackOutcome
    task_id: str | None
    artifact_url: str | None = None
    failure_message: str | None = None
    reason: str | None = None


@dataclass(slots=True)
class CallbackAck:
    """Acknowledgement returned to the delivering service (always accepted)."""

    job_id: str
    applied: bool
    detail: str
