"""X platform error hierarchy."""

from cleo_shared.errors import PlatformRejected


class XApiError(PlatformRejected):
    """X API returned a non-success response."""

    def __init__(self, message: str, status: int | None = None, body: str = "") -> None:
        self.status = status
        self.body = body
        if status is not None:
            message = f"{message} - Status {status}: {body[:500]}"
        super().__init__(message)


class AuthError(XApiError):
    """Access token rejected (401/403)."""

    code = "unauthorized"


class RateLimitError(XApiError):
    """Rate limited by X (429)."""

    code = "rate_limited"

    def __init__(self, retry_after: int | None = None, body: str = "") -> None:
        self.retry_after = retry_after
        msg = "Rate limited by X"
        if retry_after:
            msg += f" (retry after {retry_after}s)"
        super().__init__(msg, status=429, body=body)


class MediaProcessingFailed(XApiError):
    """X reported that server-side media processing failed."""
