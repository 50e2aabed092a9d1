"""Publish state read models, rebuilt purely from persisted rows.

Lets a caller that lost its progress stream find out how a publish ended.
"""

from datetime import datetime

from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cleo_shared.db.models import PostRow, ThreadRow, as_utc
from cleo_shared.errors import NotFound


class PostPublishState(BaseModel):
    post_id: int
    publish_status: str
    publish_attempts: int
    tweet_id: str | None = None
    posted_at: datetime | None = None
    reply_to_tweet_id: str | None = None
    publish_error: str | None = None
    publish_error_at: datetime | None = None
    thread_id: int | None = None
    thread_position: int | None = None

    @classmethod
    def from_row(cls, row: PostRow) -> "PostPublishState":
        return cls(
            post_id=row.id,
            publish_status=row.publish_status,
            publish_attempts=row.publish_attempts,
            tweet_id=row.tweet_id,
            posted_at=as_utc(row.posted_at),
            reply_to_tweet_id=row.reply_to_tweet_id,
            publish_error=row.publish_error,
            publish_error_at=as_utc(row.publish_error_at),
            thread_id=row.thread_id,
            thread_position=row.thread_position,
        )


class ThreadPublishState(BaseModel):
    thread_id: int
    status: str
    posted_at: datetime | None = None
    first_tweet_id: str | None = None
    posts: list[PostPublishState] = Field(default_factory=list)

    @property
    def next_position(self) -> int | None:
        """Position a retry would resume from, None when nothing is left."""
        for post in self.posts:
            if post.posted_at is None:
                return post.thread_position
        return None


async def load_post_state(
    session_factory: async_sessionmaker[AsyncSession], post_id: int, owner_id: int
) -> PostPublishState:
    async with session_factory() as session:
        row = (
            await session.execute(
                select(PostRow).where(PostRow.id == post_id, PostRow.user_id == owner_id)
            )
        ).scalar_one_or_none()
    if row is None:
        raise NotFound(f"Post {post_id} not found")
    return PostPublishState.from_row(row)


async def load_thread_state(
    session_factory: async_sessionmaker[AsyncSession], thread_id: int, owner_id: int
) -> ThreadPublishState:
    async with session_factory() as session:
        thread = (
            await session.execute(
                select(ThreadRow).where(ThreadRow.id == thread_id, ThreadRow.user_id == owner_id)
            )
        ).scalar_one_or_none()
        if thread is None:
            raise NotFound(f"Thread {thread_id} not found")
        posts = (
            await session.execute(
                select(PostRow)
                .where(PostRow.thread_id == thread_id)
                .order_by(PostRow.thread_position.asc())
            )
        ).scalars()
        return ThreadPublishState(
            thread_id=thread.id,
            status=thread.status,
            posted_at=as_utc(thread.posted_at),
            first_tweet_id=thread.first_tweet_id,
            posts=[PostPublishState.from_row(p) for p in posts],
        )
