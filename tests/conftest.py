"""
Shared test fixtures for the publishing pipeline.

Provides a file-backed SQLite database (real concurrent connections through
aiosqlite), an in-memory object store, a scriptable fake X client, and row
factories for users, credentials, captures, posts and threads.
"""

import asyncio
import io
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest
from PIL import Image
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from cleo_shared.config.settings import Settings
from cleo_shared.db.models import (
    Base,
    CaptureRow,
    CredentialRow,
    PostRow,
    ThreadRow,
    UserRow,
)
from cleo_shared.errors import PlatformRejected, StorageError
from cleo_shared.platforms.base import (
    BasePlatformClient,
    CreatedPost,
    MediaHandle,
    MediaState,
    MediaStatus,
    TokenGrant,
)
from cleo_shared.publishing.credentials import CredentialGuard
from cleo_shared.publishing.executor import PublishExecutor
from cleo_shared.publishing.sequencer import ThreadSequencer


# =============================================================================
# Settings / database
# =============================================================================


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        db_url=f"sqlite+aiosqlite:///{tmp_path / 'cleo.db'}",
        media_base_path=str(tmp_path / "media"),
        claim_backoff_seconds=0.001,
        media_status_default_wait_seconds=0,
        media_status_poll_limit=5,
        worker_concurrency=4,
        worker_poll_interval_seconds=0.01,
    )


@pytest.fixture
async def engine(settings):
    engine = create_async_engine(settings.async_db_url, connect_args={"timeout": 30})
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False)


# =============================================================================
# Collaborators
# =============================================================================


class MemoryStore:
    """Dict-backed ObjectStore."""

    def __init__(self) -> None:
        self.objects: dict[str, bytes] = {}

    async def get(self, ref: str) -> bytes:
        try:
            return self.objects[ref]
        except KeyError:
            raise StorageError(f"Object not found: {ref}") from None

    async def put(self, ref: str, data: bytes) -> str:
        self.objects[ref] = data
        return ref

    async def delete(self, ref: str) -> None:
        self.objects.pop(ref, None)


class FakePlatform(BasePlatformClient):
    """Scriptable platform client that records every call.

    - ``post_ids``: external ids handed out in order (then ``tw-<n>``)
    - ``fail_texts``: post texts whose create_post is rejected
    - ``video_segments``: chunk count reported for video uploads
    - ``video_pending`` / ``image_pending`` / ``status_states``: server-side
      processing script
    - ``grant`` / ``refresh_error``: refresh_credential behaviour
    """

    def __init__(self) -> None:
        self.post_ids: list[str] = []
        self.fail_texts: set[str] = set()
        self.video_segments = 3
        self.video_pending = False
        self.image_pending = False
        self.status_states: list[MediaState] = []
        self.grant = TokenGrant(access_token="fresh-access", expires_in=7200, refresh_token="fresh-refresh")
        self.refresh_error: Exception | None = None
        self.uploads: list[dict[str, Any]] = []
        self.posts: list[dict[str, Any]] = []
        self.refresh_calls = 0
        self.status_calls = 0

    @property
    def platform(self) -> str:
        return "fake"

    async def upload_media(self, access_token, data, content_type, on_progress=None):
        self.uploads.append({"token": access_token, "size": len(data), "content_type": content_type})
        media_id = f"media-{len(self.uploads)}"
        if content_type.startswith("video/"):
            for segment in range(1, self.video_segments + 1):
                if on_progress is not None:
                    await on_progress(segment, self.video_segments)
            if self.video_pending:
                return MediaHandle(media_id=media_id, state=MediaState.PENDING, check_after_secs=0)
        elif self.image_pending:
            return MediaHandle(media_id=media_id, state=MediaState.PENDING, check_after_secs=0)
        return MediaHandle(media_id=media_id)

    async def poll_status(self, access_token, media_id):
        self.status_calls += 1
        state = self.status_states.pop(0) if self.status_states else MediaState.READY
        return MediaStatus(state=state, check_after_secs=0)

    async def create_post(self, access_token, text, media_ids, reply_to=None):
        self.posts.append(
            {"token": access_token, "text": text, "media_ids": list(media_ids), "reply_to": reply_to}
        )
        if text in self.fail_texts:
            raise PlatformRejected(f"Rejected: {text}")
        tweet_id = self.post_ids.pop(0) if self.post_ids else f"tw-{len(self.posts)}"
        return CreatedPost(id=tweet_id, text=text)

    async def refresh_credential(self, refresh_token):
        self.refresh_calls += 1
        # Let concurrent refreshers interleave
        await asyncio.sleep(0.01)
        if self.refresh_error is not None:
            raise self.refresh_error
        return self.grant


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def platform() -> FakePlatform:
    return FakePlatform()


def png_bytes(width: int = 640, height: int = 480, color=(200, 30, 30)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (width, height), color).save(buf, format="PNG")
    return buf.getvalue()


# =============================================================================
# Row factories
# =============================================================================


class Seeder:
    """Inserts rows with sensible defaults; keyword args override columns."""

    def __init__(self, session_factory) -> None:
        self.session_factory = session_factory
        self._clock = datetime(2025, 1, 1, tzinfo=timezone.utc)

    async def _add(self, row):
        async with self.session_factory() as session, session.begin():
            session.add(row)
        return row

    async def user(self, username: str = "alice") -> UserRow:
        return await self._add(UserRow(username=username))

    async def credential(self, user_id: int, **kw) -> CredentialRow:
        values = {
            "access_token": "stored-access",
            "refresh_token": "stored-refresh",
            "token_expires_at": datetime.now(timezone.utc) + timedelta(hours=1),
        }
        values.update(kw)
        return await self._add(CredentialRow(user_id=user_id, **values))

    async def capture(self, user_id: int, **kw) -> CaptureRow:
        self._clock += timedelta(minutes=1)
        values = {
            "media_type": "image",
            "content_type": "image/png",
            "storage_path": f"image/user_{user_id}/2025-01-01/{int(self._clock.timestamp())}.png",
            "captured_at": self._clock,
        }
        values.update(kw)
        return await self._add(CaptureRow(user_id=user_id, **values))

    async def post(self, user_id: int, **kw) -> PostRow:
        values = {"text": "hello", "image_capture_ids": []}
        values.update(kw)
        return await self._add(PostRow(user_id=user_id, **values))

    async def thread(self, user_id: int, texts: list[str], **kw) -> tuple[ThreadRow, list[PostRow]]:
        thread = await self._add(ThreadRow(user_id=user_id, **kw))
        posts = [
            await self.post(user_id, text=text, thread_id=thread.id, thread_position=i)
            for i, text in enumerate(texts)
        ]
        return thread, posts

    async def reload(self, model, pk):
        async with self.session_factory() as session:
            return (await session.execute(select(model).where(model.id == pk))).scalar_one()


@pytest.fixture
def seed(session_factory) -> Seeder:
    return Seeder(session_factory)


@pytest.fixture
async def owner(seed) -> UserRow:
    user = await seed.user()
    await seed.credential(user.id)
    return user


# =============================================================================
# Publishing
# =============================================================================


async def no_sleep(_seconds: float) -> None:
    return None


@pytest.fixture
def credentials(session_factory, platform):
    return CredentialGuard(session_factory, platform)


@pytest.fixture
def executor(session_factory, store, platform, credentials, settings):
    return PublishExecutor(session_factory, store, platform, credentials, settings, sleep=no_sleep)


@pytest.fixture
def sequencer(session_factory, executor):
    return ThreadSequencer(session_factory, executor)


class EventLog(list):
    """Emit target that keeps events as wire dicts."""

    def __call__(self, event) -> None:
        self.append(event.to_wire())

    def types(self) -> list[str]:
        return [e["type"] for e in self]


@pytest.fixture
def events() -> EventLog:
    return EventLog()
