"""Processor interface shared by thumbnail generation and frame extraction."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from cleo_shared.config.settings import Settings
from cleo_shared.db.models import CaptureRow
from cleo_shared.models.media import MediaKind
from cleo_shared.storage.object_store import ObjectStore


@dataclass(frozen=True)
class ClaimedCapture:
    """Snapshot of a capture row taken when its lease was acquired."""

    id: int
    kind: MediaKind
    user_id: int
    media_type: str
    content_type: str
    storage_path: str
    captured_at: datetime
    # Lease start written by the claim; outcome updates require it unchanged.
    lease_token: datetime | None = None

    @classmethod
    def from_row(
        cls, row: CaptureRow, kind: MediaKind, lease_token: datetime | None = None
    ) -> "ClaimedCapture":
        return cls(
            id=row.id,
            kind=kind,
            user_id=row.user_id,
            media_type=row.media_type,
            content_type=row.content_type,
            storage_path=row.storage_path,
            captured_at=row.captured_at,
            lease_token=lease_token,
        )

    @property
    def is_video(self) -> bool:
        return self.media_type == "video" or self.content_type.startswith("video/")


class BaseProcessor(ABC):
    """Turns one claimed capture into derived objects.

    ``process`` writes everything to storage and returns the column values to
    persist on success. It raises on failure; the claimer records the attempt.
    """

    kind: MediaKind

    def __init__(self, storage: ObjectStore, settings: Settings) -> None:
        self.storage = storage
        self.settings = settings

    @abstractmethod
    async def process(self, capture: ClaimedCapture) -> dict[str, Any]: ...

    async def discard(self, capture: ClaimedCapture, output: dict[str, Any]) -> None:
        """Remove objects written by ``process`` when the result could not be recorded."""
