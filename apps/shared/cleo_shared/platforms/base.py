"""Base platform client: abstract interface for publishing targets.

The publish executor only talks to this interface, so tests and future
platforms can supply their own implementation.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable

# Called with (segment, total) as each upload chunk is accepted.
UploadProgress = Callable[[int, int], Awaitable[None]]


class MediaState(str, Enum):
    READY = "ready"
    PENDING = "pending"
    FAILED = "failed"


@dataclass(frozen=True)
class MediaHandle:
    media_id: str
    state: MediaState = MediaState.READY
    check_after_secs: float | None = None

    @property
    def pending(self) -> bool:
        return self.state is MediaState.PENDING


@dataclass(frozen=True)
class MediaStatus:
    state: MediaState
    check_after_secs: float | None = None


@dataclass(frozen=True)
class CreatedPost:
    id: str
    text: str = ""


@dataclass(frozen=True)
class TokenGrant:
    access_token: str
    expires_in: int
    refresh_token: str | None = None


class BasePlatformClient(ABC):
    """Abstract base for platform API clients.

    Each platform implements:
    - upload_media(): push bytes, return a handle (possibly still processing)
    - poll_status(): check server-side processing of an uploaded handle
    - create_post(): publish text + media, optionally as a reply
    - refresh_credential(): exchange a refresh token for a new access token
    """

    @property
    @abstractmethod
    def platform(self) -> str:
        """Platform identifier (e.g., 'x')."""
        ...

    @abstractmethod
    async def upload_media(
        self,
        access_token: str,
        data: bytes,
        content_type: str,
        on_progress: UploadProgress | None = None,
    ) -> MediaHandle: ...

    @abstractmethod
    async def poll_status(self, access_token: str, media_id: str) -> MediaStatus: ...

    @abstractmethod
    async def create_post(
        self,
        access_token: str,
        text: str,
        media_ids: list[str],
        reply_to: str | None = None,
    ) -> CreatedPost: ...

    @abstractmethod
    async def refresh_credential(self, refresh_token: str) -> TokenGrant: ...
