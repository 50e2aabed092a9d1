"""Media processing models: lease kinds, outcomes and the frame manifest."""

from enum import Enum

from pydantic import BaseModel, Field

# Captures that failed this many times are never claimed again.
MAX_ATTEMPTS = 5


class MediaKind(str, Enum):
    """Background processing job kinds sharing the lease protocol."""

    THUMBNAIL = "thumbnail"
    FRAMES = "frames"


class OutcomeStatus(str, Enum):
    DONE = "done"
    FAILED = "failed"
    EXHAUSTED = "exhausted"
    LEASE_LOST = "lease_lost"


class ProcessOutcome(BaseModel):
    """Result of one claim_and_process call."""

    capture_id: int
    kind: MediaKind
    status: OutcomeStatus
    attempts: int = 0
    output: str | None = None
    frame_count: int | None = None
    error: str | None = None


class FrameEntry(BaseModel):
    index: int
    filename: str
    timestamp_secs: float
    phash: str


class FrameManifest(BaseModel):
    """Written next to extracted frames as ``manifest.json``."""

    capture_id: int
    media_type: str
    frame_count: int
    duration_secs: float | None = None
    frames: list[FrameEntry] = Field(default_factory=list)
