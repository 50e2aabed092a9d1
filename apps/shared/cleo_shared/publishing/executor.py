"""Publish executor: drives one post through upload, processing and creation.

State machine (``*`` terminal)::

    pending → uploading → processing → posting → complete*
                         any state → error*

The ``pending|failed → posting`` transition is a single conditional UPDATE
that also increments ``publish_attempts``; it is both the duplicate-submit
guard and the one place attempts are counted. Every failure after it is
persisted as ``failed`` and reported as an ``error`` event. Nothing here
retries on its own; retry is a separate caller action.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cleo_shared.config.settings import Settings
from cleo_shared.db.models import CaptureRow, PostRow, utc_now
from cleo_shared.errors import (
    AlreadyPublished,
    NotFound,
    PipelineError,
    PlatformRejected,
    PublishInProgress,
)
from cleo_shared.media.ffmpeg import trim_clip
from cleo_shared.models.progress import (
    Complete,
    Error,
    Posting,
    Processing,
    ProgressEvent,
    PublishStatus,
    Uploading,
)
from cleo_shared.platforms.base import BasePlatformClient, MediaHandle, MediaState
from cleo_shared.platforms.x.errors import MediaProcessingFailed
from cleo_shared.publishing.channel import Emit, ProgressChannel, start_operation
from cleo_shared.publishing.credentials import CredentialGuard
from cleo_shared.storage.object_store import ObjectStore

logger = logging.getLogger(__name__)

MAX_IMAGES = 4


@dataclass
class PublishOutcome:
    post_id: int
    ok: bool
    tweet_id: str | None = None
    error: str | None = None
    code: str | None = None


class PublishExecutor:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        storage: ObjectStore,
        platform: BasePlatformClient,
        credentials: CredentialGuard,
        settings: Settings,
        sleep: Callable[[float], object] = asyncio.sleep,
    ) -> None:
        self._session_factory = session_factory
        self._storage = storage
        self._platform = platform
        self._credentials = credentials
        self._settings = settings
        self._sleep = sleep

    def publish(self, post_id: int, owner_id: int) -> ProgressChannel:
        """Start publishing a standalone post; events arrive on the returned channel."""
        return start_operation(
            lambda channel: self.run(post_id, owner_id, channel.emit),
            name=f"publish-post-{post_id}",
        )

    # ──────────────────────────────────────────────
    # Execution
    # ──────────────────────────────────────────────

    async def run(
        self,
        post_id: int,
        owner_id: int,
        emit: Emit,
        *,
        reply_to: str | None = None,
        position: int | None = None,
    ) -> PublishOutcome:
        """Publish one post, emitting progress; returns the terminal outcome."""
        tags: dict = {"post_id": post_id}
        if position is not None:
            tags["position"] = position

        def send(event: ProgressEvent) -> None:
            emit(event.tagged(**tags))

        def refuse(err: PipelineError) -> PublishOutcome:
            logger.info("Post %s refused: %s", post_id, err)
            send(Error(message=err.message, code=err.code))
            return PublishOutcome(post_id=post_id, ok=False, error=err.message, code=err.code)

        post = await self._load_post(post_id, owner_id)
        if post is None:
            return refuse(NotFound(f"Post {post_id} not found"))
        if post.posted_at is not None or post.publish_status == PublishStatus.POSTED.value:
            return refuse(AlreadyPublished(f"Post {post_id} is already posted as {post.tweet_id}"))

        if not await self._begin_attempt(post_id):
            current = await self._load_post(post_id, owner_id)
            if current is not None and current.posted_at is not None:
                return refuse(AlreadyPublished(f"Post {post_id} is already posted as {current.tweet_id}"))
            return refuse(PublishInProgress(f"Post {post_id} is already being published"))

        logger.info(
            "Publishing post %s (attempt %d, reply_to=%s)",
            post_id,
            post.publish_attempts + 1,
            reply_to,
        )
        try:
            token = await self._credentials.ensure_valid(owner_id)
            media_ids = await self._upload_media(token, post, owner_id, send)
            send(Posting())
            created = await self._platform.create_post(token, post.text, media_ids, reply_to=reply_to)
        except Exception as e:
            message = str(e) or type(e).__name__
            code = e.code if isinstance(e, PipelineError) else "failed"
            if isinstance(e, PipelineError):
                logger.warning("Post %s failed: %s", post_id, message)
            else:
                logger.exception("Post %s failed unexpectedly", post_id)
            await self._mark_failed(post_id, message)
            send(Error(message=message, code=code))
            return PublishOutcome(post_id=post_id, ok=False, error=message, code=code)

        await self._mark_posted(post_id, created.id, reply_to)
        logger.info("Post %s published as %s", post_id, created.id)
        send(Complete(tweet_id=created.id, text=created.text or post.text))
        return PublishOutcome(post_id=post_id, ok=True, tweet_id=created.id)

    # ──────────────────────────────────────────────
    # Media
    # ──────────────────────────────────────────────

    async def _upload_media(
        self, token: str, post: PostRow, owner_id: int, send: Emit
    ) -> list[str]:
        if post.video_clip:
            if post.image_capture_ids:
                raise PlatformRejected("A post can carry a video clip or images, not both")
            return [await self._upload_video(token, post.video_clip, owner_id, send)]

        capture_ids = list(post.image_capture_ids or [])
        if not capture_ids:
            return []
        if len(capture_ids) > MAX_IMAGES:
            raise PlatformRejected(f"At most {MAX_IMAGES} images per post, got {len(capture_ids)}")

        captures = await self._load_captures(capture_ids, owner_id)
        total = len(capture_ids)
        media_ids: list[str] = []
        for index, capture_id in enumerate(capture_ids, start=1):
            capture = captures[capture_id]
            data = await self._storage.get(capture.storage_path)
            handle = await self._platform.upload_media(token, data, capture.content_type)
            send(Uploading(segment=index, total=total, percent=index * 100 // total))
            if handle.pending:
                await self._wait_until_ready(token, handle, send)
            media_ids.append(handle.media_id)
        return media_ids

    async def _upload_video(self, token: str, clip: dict, owner_id: int, send: Emit) -> str:
        source_id = int(clip["source_capture_id"])
        capture = (await self._load_captures([source_id], owner_id))[source_id]
        data = await self._storage.get(capture.storage_path)
        content_type = capture.content_type

        duration = clip.get("duration_secs")
        if duration:
            data = await trim_clip(
                data,
                str(clip.get("start_timestamp") or "0"),
                float(duration),
                threads=self._settings.ffmpeg_threads,
            )
            content_type = "video/mp4"

        async def on_progress(segment: int, total: int) -> None:
            send(Uploading(segment=segment, total=total, percent=segment * 100 // max(total, 1)))

        handle = await self._platform.upload_media(token, data, content_type, on_progress)
        if handle.pending:
            await self._wait_until_ready(token, handle, send)
        return handle.media_id

    async def _wait_until_ready(self, token: str, handle: MediaHandle, send: Emit) -> None:
        """Poll platform-side processing until the media is usable."""
        send(Processing())
        wait = handle.check_after_secs
        for _ in range(self._settings.media_status_poll_limit):
            await self._sleep(wait or self._settings.media_status_default_wait_seconds)
            status = await self._platform.poll_status(token, handle.media_id)
            if status.state is MediaState.READY:
                return
            if status.state is MediaState.FAILED:
                raise MediaProcessingFailed(f"Media {handle.media_id} processing failed")
            wait = status.check_after_secs
        raise MediaProcessingFailed(
            f"Media {handle.media_id} still processing after "
            f"{self._settings.media_status_poll_limit} status checks"
        )

    # ──────────────────────────────────────────────
    # Persistence
    # ──────────────────────────────────────────────

    async def _load_post(self, post_id: int, owner_id: int) -> PostRow | None:
        async with self._session_factory() as session:
            return (
                await session.execute(
                    select(PostRow).where(PostRow.id == post_id, PostRow.user_id == owner_id)
                )
            ).scalar_one_or_none()

    async def _load_captures(self, capture_ids: list[int], owner_id: int) -> dict[int, CaptureRow]:
        async with self._session_factory() as session:
            rows = (
                await session.execute(
                    select(CaptureRow).where(
                        CaptureRow.id.in_(capture_ids), CaptureRow.user_id == owner_id
                    )
                )
            ).scalars()
            found = {row.id: row for row in rows}
        missing = [cid for cid in capture_ids if cid not in found]
        if missing:
            raise NotFound(f"Captures not found: {missing}")
        return found

    async def _begin_attempt(self, post_id: int) -> bool:
        async with self._session_factory() as session, session.begin():
            result = await session.execute(
                update(PostRow)
                .where(
                    PostRow.id == post_id,
                    PostRow.posted_at.is_(None),
                    PostRow.publish_status.in_(
                        [PublishStatus.PENDING.value, PublishStatus.FAILED.value]
                    ),
                )
                .values(
                    publish_status=PublishStatus.POSTING.value,
                    publish_attempts=PostRow.publish_attempts + 1,
                    publish_error=None,
                    publish_error_at=None,
                )
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    async def _mark_posted(self, post_id: int, tweet_id: str, reply_to: str | None) -> None:
        async with self._session_factory() as session, session.begin():
            await session.execute(
                update(PostRow)
                .where(PostRow.id == post_id, PostRow.posted_at.is_(None))
                .values(
                    publish_status=PublishStatus.POSTED.value,
                    posted_at=utc_now(),
                    tweet_id=tweet_id,
                    reply_to_tweet_id=reply_to,
                    publish_error=None,
                    publish_error_at=None,
                )
                .execution_options(synchronize_session=False)
            )

    async def _mark_failed(self, post_id: int, message: str) -> None:
        async with self._session_factory() as session, session.begin():
            await session.execute(
                update(PostRow)
                .where(PostRow.id == post_id, PostRow.posted_at.is_(None))
                .values(
                    publish_status=PublishStatus.FAILED.value,
                    publish_error=message[:2000],
                    publish_error_at=utc_now(),
                )
                .execution_options(synchronize_session=False)
            )

    async def reset_for_retry(self, post_id: int, owner_id: int) -> bool:
        """Move a failed post back to pending. False if it isn't failed."""
        async with self._session_factory() as session, session.begin():
            result = await session.execute(
                update(PostRow)
                .where(
                    PostRow.id == post_id,
                    PostRow.user_id == owner_id,
                    PostRow.posted_at.is_(None),
                    PostRow.publish_status == PublishStatus.FAILED.value,
                )
                .values(publish_status=PublishStatus.PENDING.value)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1
