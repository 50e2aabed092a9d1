"""Thumbnail generation: 300px wide JPEGs for the review dashboard."""

import asyncio
import io
import logging
from typing import Any

from PIL import Image, UnidentifiedImageError

from cleo_shared.errors import MediaProcessingError, StorageError
from cleo_shared.media.ffmpeg import video_frame_jpeg
from cleo_shared.models.media import MediaKind

from media_worker.processors.base import BaseProcessor, ClaimedCapture
from media_worker.processors.paths import thumbnail_path

logger = logging.getLogger(__name__)


def render_thumbnail(data: bytes, width: int, quality: int) -> bytes:
    """Downscale to ``width`` (height capped at 2x width), keeping aspect ratio."""
    try:
        with Image.open(io.BytesIO(data)) as img:
            img.thumbnail((width, width * 2), Image.Resampling.LANCZOS)
            if img.mode not in ("RGB", "L"):
                img = img.convert("RGB")
            out = io.BytesIO()
            img.save(out, format="JPEG", quality=quality)
            return out.getvalue()
    except (UnidentifiedImageError, OSError) as e:
        raise MediaProcessingError(f"Cannot decode image: {e}") from e


class ThumbnailProcessor(BaseProcessor):
    kind = MediaKind.THUMBNAIL

    async def process(self, capture: ClaimedCapture) -> dict[str, Any]:
        data = await self.storage.get(capture.storage_path)
        if capture.is_video:
            # Frame at 1s, or the first frame for shorter clips
            data = await video_frame_jpeg(data, threads=self.settings.ffmpeg_threads)

        thumb = await asyncio.to_thread(
            render_thumbnail, data, self.settings.thumbnail_width, self.settings.thumbnail_quality
        )
        path = thumbnail_path(capture.storage_path)
        await self.storage.put(path, thumb)
        logger.debug("Thumbnail for capture %s: %s (%d bytes)", capture.id, path, len(thumb))
        return {"thumbnail_path": path}

    async def discard(self, capture: ClaimedCapture, output: dict[str, Any]) -> None:
        path = output.get("thumbnail_path")
        if not path:
            return
        try:
            await self.storage.delete(path)
            logger.info("Removed orphan thumbnail %s", path)
        except StorageError:
            logger.warning("Failed to remove orphan thumbnail %s", path, exc_info=True)
