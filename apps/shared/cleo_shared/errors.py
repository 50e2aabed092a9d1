"""Pipeline error hierarchy.

Errors on the publish path carry a stable ``code`` that is copied verbatim
into the terminal ``error`` progress event, so clients can branch on it
without parsing messages.
"""


class PipelineError(Exception):
    """Base error for media processing and publishing."""

    code = "failed"

    def __init__(self, message: str = "", *, code: str | None = None) -> None:
        super().__init__(message or self.__class__.__doc__ or self.__class__.__name__)
        if code is not None:
            self.code = code

    @property
    def message(self) -> str:
        return str(self)


# ── Media processing ─────────────────────────────────────


class LeaseContention(PipelineError):
    """Another worker won the claim race for this capture."""

    code = "lease_contention"


class AttemptsExhausted(PipelineError):
    """Capture reached the attempt cap and is permanently skipped."""

    code = "attempts_exhausted"

    def __init__(self, capture_id: int, kind: str, attempts: int) -> None:
        self.capture_id = capture_id
        self.kind = kind
        self.attempts = attempts
        super().__init__(f"Capture {capture_id} exhausted {kind} attempts ({attempts})")


class MediaProcessingError(PipelineError):
    """ffmpeg / image decoding failed for a capture."""

    code = "media_processing"


class StorageError(PipelineError):
    """Object storage read or write failed."""

    code = "storage"


# ── Publishing ───────────────────────────────────────────


class NotFound(PipelineError):
    """Post, thread or capture does not exist for this owner."""

    code = "not_found"


class CredentialExpiredUnrefreshable(PipelineError):
    """Access token expired and could not be refreshed."""

    code = "unauthorized"


class PlatformRejected(PipelineError):
    """The platform returned an application error for an upload or post."""

    code = "platform_rejected"


class AlreadyPublished(PipelineError):
    """Post is already published; re-publishing is refused."""

    code = "already_posted"


class PublishInProgress(PipelineError):
    """Another publish attempt for the same post or thread is in flight."""

    code = "in_progress"


class PartialThreadFailure(PipelineError):
    """Some thread members were posted before a later member failed."""

    code = "partial_failure"

    def __init__(self, thread_id: int, posted: int, total: int, cause: str = "") -> None:
        self.thread_id = thread_id
        self.posted = posted
        self.total = total
        msg = f"Thread {thread_id}: {posted}/{total} posts published"
        if cause:
            msg += f" ({cause})"
        super().__init__(msg)
