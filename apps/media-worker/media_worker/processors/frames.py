"""Frame extraction: half-resolution stills for downstream analysis.

Videos are sampled at 1 fps by ffmpeg, near-duplicate consecutive frames
are dropped by mean-hash distance, and the kept frames are written as
``frame_<n>.jpg`` under the capture's frames directory. Screenshots yield a
single frame. ``manifest.json`` is written last and describes every frame.
"""

from __future__ import annotations

import asyncio
import io
import logging
import tempfile
from pathlib import Path
from typing import Any

from PIL import Image, UnidentifiedImageError

from cleo_shared.errors import MediaProcessingError
from cleo_shared.media.ffmpeg import FFMPEG, probe_duration, run_tool
from cleo_shared.models.media import FrameEntry, FrameManifest, MediaKind

from media_worker.processors.base import BaseProcessor, ClaimedCapture
from media_worker.processors.hashing import DUPLICATE_DISTANCE, hamming, mean_hash, to_hex
from media_worker.processors.paths import frames_dir

logger = logging.getLogger(__name__)

FRAME_WIDTH = 960
FRAME_HEIGHT = 540
FRAME_QUALITY = 85


def half_res_frame(data: bytes) -> tuple[bytes, int]:
    """Screenshot → (960x540 JPEG, mean hash)."""
    try:
        with Image.open(io.BytesIO(data)) as img:
            frame = img.convert("RGB").resize((FRAME_WIDTH, FRAME_HEIGHT), Image.Resampling.BILINEAR)
    except (UnidentifiedImageError, OSError) as e:
        raise MediaProcessingError(f"Cannot decode image: {e}") from e
    out = io.BytesIO()
    frame.save(out, format="JPEG", quality=FRAME_QUALITY)
    return out.getvalue(), mean_hash(frame)


def frame_hash(data: bytes) -> int | None:
    try:
        with Image.open(io.BytesIO(data)) as img:
            return mean_hash(img)
    except (UnidentifiedImageError, OSError):
        return None


class FrameProcessor(BaseProcessor):
    kind = MediaKind.FRAMES

    async def process(self, capture: ClaimedCapture) -> dict[str, Any]:
        target = frames_dir(capture.storage_path)
        data = await self.storage.get(capture.storage_path)

        if capture.is_video:
            entries, duration = await self._video_frames(data, target)
        else:
            frame, digest = await asyncio.to_thread(half_res_frame, data)
            await self.storage.put(f"{target}/frame_0.jpg", frame)
            entries = [FrameEntry(index=0, filename="frame_0.jpg", timestamp_secs=0.0, phash=to_hex(digest))]
            duration = None

        if not entries:
            raise MediaProcessingError("No frames extracted")

        manifest = FrameManifest(
            capture_id=capture.id,
            media_type=capture.media_type,
            frame_count=len(entries),
            duration_secs=duration,
            frames=entries,
        )
        await self.storage.put(f"{target}/manifest.json", manifest.model_dump_json(indent=2).encode())
        logger.debug("Capture %s: %d frames in %s", capture.id, len(entries), target)
        return {"frames_extracted": True, "frame_count": len(entries)}

    async def _video_frames(self, data: bytes, target: str) -> tuple[list[FrameEntry], float | None]:
        entries: list[FrameEntry] = []
        with tempfile.TemporaryDirectory(prefix="cleo_frames_") as tmp:
            work = Path(tmp)
            src = work / "input"
            src.write_bytes(data)

            try:
                duration = await probe_duration(src)
            except MediaProcessingError as e:
                logger.warning("ffprobe failed, duration unknown: %s", e)
                duration = None
            await run_tool(
                FFMPEG, "-hide_banner", "-loglevel", "error", "-nostdin",
                "-threads", str(self.settings.ffmpeg_threads),
                "-i", str(src),
                "-an", "-sn",
                "-vf", f"fps=1,scale={FRAME_WIDTH}:{FRAME_HEIGHT}",
                "-q:v", "4",
                "-y", str(work / "frame_%04d.jpg"),
            )

            last_hash: int | None = None
            # One frame per second, so the sample index is the timestamp
            for second, path in enumerate(sorted(work.glob("frame_*.jpg"))):
                frame = path.read_bytes()
                digest = await asyncio.to_thread(frame_hash, frame)
                if digest is None:
                    logger.warning("Skipping undecodable frame %s", path.name)
                    continue
                if last_hash is not None and hamming(last_hash, digest) <= DUPLICATE_DISTANCE:
                    continue
                last_hash = digest

                filename = f"frame_{len(entries)}.jpg"
                await self.storage.put(f"{target}/{filename}", frame)
                entries.append(
                    FrameEntry(
                        index=len(entries),
                        filename=filename,
                        timestamp_secs=float(second),
                        phash=to_hex(digest),
                    )
                )
        return entries, duration
