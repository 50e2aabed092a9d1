"""Capture processors keyed by MediaKind."""

from cleo_shared.config.settings import Settings
from cleo_shared.models.media import MediaKind
from cleo_shared.storage.object_store import ObjectStore

from media_worker.processors.base import BaseProcessor, ClaimedCapture
from media_worker.processors.frames import FrameProcessor
from media_worker.processors.thumbnails import ThumbnailProcessor


def create_processors(storage: ObjectStore, settings: Settings) -> dict[MediaKind, BaseProcessor]:
    """One processor per kind, sharing the store and settings."""
    return {
        MediaKind.THUMBNAIL: ThumbnailProcessor(storage, settings),
        MediaKind.FRAMES: FrameProcessor(storage, settings),
    }


__all__ = [
    "BaseProcessor",
    "ClaimedCapture",
    "FrameProcessor",
    "ThumbnailProcessor",
    "create_processors",
]
