"""ffmpeg / ffprobe subprocess helpers.

All helpers take and return bytes; inputs are staged in a private temporary
directory because ffmpeg needs seekable files for mp4/mov containers.
"""

from __future__ import annotations

import asyncio
import logging
import tempfile
from pathlib import Path

from cleo_shared.errors import MediaProcessingError

logger = logging.getLogger(__name__)

FFMPEG = "ffmpeg"
FFPROBE = "ffprobe"


async def run_tool(*args: str) -> bytes:
    """Run ffmpeg/ffprobe, returning stdout. Non-zero exit raises with stderr."""
    try:
        proc = await asyncio.create_subprocess_exec(
            *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise MediaProcessingError(f"Failed to spawn {args[0]}: {e}") from e

    stdout, stderr = await proc.communicate()
    if proc.returncode != 0:
        tail = stderr.decode("utf-8", errors="replace").strip()[-800:]
        raise MediaProcessingError(f"{args[0]} exited with {proc.returncode}: {tail}")
    return stdout


async def probe_duration(path: Path) -> float | None:
    """Container duration in seconds, or None if ffprobe can't tell."""
    out = await run_tool(
        FFPROBE,
        "-v", "error",
        "-show_entries", "format=duration",
        "-of", "default=noprint_wrappers=1:nokey=1",
        str(path),
    )
    try:
        return float(out.decode().strip())
    except ValueError:
        return None


async def video_frame_jpeg(data: bytes, *, seek: str | None = "00:00:01", threads: int = 1) -> bytes:
    """Grab a single frame from a video as JPEG.

    Clips shorter than the seek point produce no output, so the first frame
    is used as a fallback.
    """
    with tempfile.TemporaryDirectory(prefix="cleo_frame_") as tmp:
        src = Path(tmp) / "input"
        out = Path(tmp) / "frame.jpg"
        src.write_bytes(data)

        seeks = [seek, None] if seek else [None]
        last_error: MediaProcessingError | None = None
        for ss in seeks:
            args = [FFMPEG, "-y", "-threads", str(threads)]
            if ss:
                args += ["-ss", ss]
            args += ["-i", str(src), "-frames:v", "1", "-q:v", "2", str(out)]
            try:
                await run_tool(*args)
            except MediaProcessingError as e:
                last_error = e
                continue
            if out.exists() and out.stat().st_size > 0:
                return out.read_bytes()
        raise last_error or MediaProcessingError("ffmpeg produced no frame")


async def trim_clip(
    data: bytes, start_timestamp: str, duration_secs: float, *, threads: int = 1
) -> bytes:
    """Cut ``duration_secs`` starting at ``start_timestamp`` into an mp4 (stream copy)."""
    if duration_secs <= 0:
        raise MediaProcessingError("duration_secs must be positive")
    with tempfile.TemporaryDirectory(prefix="cleo_trim_") as tmp:
        src = Path(tmp) / "input"
        out = Path(tmp) / "clip.mp4"
        src.write_bytes(data)
        await run_tool(
            FFMPEG, "-y",
            "-threads", str(threads),
            "-ss", start_timestamp or "0",
            "-i", str(src),
            "-t", f"{duration_secs:g}",
            "-c", "copy",
            str(out),
        )
        if not out.exists() or out.stat().st_size == 0:
            raise MediaProcessingError("ffmpeg trim produced an empty clip")
        clip = out.read_bytes()
    logger.info("Trimmed clip at %s for %.1fs (%d bytes)", start_timestamp, duration_secs, len(clip))
    return clip
