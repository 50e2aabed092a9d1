"""Thread sequencer: publishes a thread as a reply chain, in position order.

Only one run per thread can be in flight: the run starts with an atomic
``draft|partial_failed → posting`` transition and always releases it. Members
already posted are skipped and their external ids seed ``reply_to``, so a
retried ``partial_failed`` thread resumes at the first unposted position. The
first member error stops the run; later positions are never attempted.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cleo_shared.db.models import PostRow, ThreadRow, utc_now
from cleo_shared.errors import (
    AlreadyPublished,
    NotFound,
    PartialThreadFailure,
    PipelineError,
    PublishInProgress,
)
from cleo_shared.models.progress import Complete, Error, ProgressEvent, ThreadStatus
from cleo_shared.publishing.channel import Emit, ProgressChannel, start_operation
from cleo_shared.publishing.executor import PublishExecutor

logger = logging.getLogger(__name__)


@dataclass
class ThreadOutcome:
    thread_id: int
    status: str
    posted: list[int] = field(default_factory=list)
    failed_post_id: int | None = None
    first_tweet_id: str | None = None
    error: str | None = None
    code: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == ThreadStatus.POSTED.value


class ThreadSequencer:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        executor: PublishExecutor,
    ) -> None:
        self._session_factory = session_factory
        self._executor = executor

    def publish_thread(self, thread_id: int, owner_id: int) -> ProgressChannel:
        return start_operation(
            lambda channel: self.run(thread_id, owner_id, channel.emit),
            name=f"publish-thread-{thread_id}",
        )

    async def run(self, thread_id: int, owner_id: int, emit: Emit) -> ThreadOutcome:
        """Publish the thread's unposted members, then settle the thread status."""

        def finish(event: ProgressEvent) -> None:
            emit(event.tagged(thread_id=thread_id))

        def refuse(err: PipelineError, status: str | None = None) -> ThreadOutcome:
            logger.info("Thread %s refused: %s", thread_id, err)
            finish(Error(message=err.message, code=err.code, status=status))
            return ThreadOutcome(
                thread_id=thread_id, status=status or "", error=err.message, code=err.code
            )

        size = await self._member_count(thread_id, owner_id)
        if size is None:
            return refuse(NotFound(f"Thread {thread_id} not found"))
        if not size:
            return refuse(NotFound(f"Thread {thread_id} has no posts"))

        if not await self._begin(thread_id):
            status = await self._current_status(thread_id)
            if status == ThreadStatus.POSTED.value:
                return refuse(AlreadyPublished(f"Thread {thread_id} is already posted"), status)
            return refuse(
                PublishInProgress(f"Thread {thread_id} is already being published"), status
            )

        # Members are read only while this run holds the posting status.
        outcome = ThreadOutcome(thread_id=thread_id, status=ThreadStatus.POSTING.value)
        reply_to: str | None = None
        try:
            for member in await self._load_members(thread_id):
                if member.posted_at is not None:
                    reply_to = member.tweet_id
                    outcome.posted.append(member.id)
                    continue

                result = await self._executor.run(
                    member.id,
                    owner_id,
                    emit,
                    reply_to=reply_to,
                    position=member.thread_position,
                )
                if not result.ok:
                    outcome.failed_post_id = member.id
                    outcome.error = result.error
                    outcome.code = result.code
                    break
                reply_to = result.tweet_id
                outcome.posted.append(member.id)
        finally:
            posted, total = await self._settle(thread_id, outcome)

        if outcome.ok:
            logger.info("Thread %s posted (%d posts)", thread_id, total)
            finish(
                Complete(
                    tweet_id=outcome.first_tweet_id or "",
                    text=f"Thread posted ({total} posts)",
                    status=outcome.status,
                )
            )
        elif posted:
            failure = PartialThreadFailure(thread_id, posted, total, outcome.error or "")
            logger.warning("%s; thread is now %s", failure, outcome.status)
            finish(Error(message=failure.message, code=failure.code, status=outcome.status))
        else:
            logger.warning("Thread %s failed before any post was published", thread_id)
            finish(
                Error(
                    message=outcome.error or "Thread publish failed",
                    code=outcome.code or "failed",
                    status=outcome.status,
                )
            )
        return outcome

    # ──────────────────────────────────────────────
    # Persistence
    # ──────────────────────────────────────────────

    async def _member_count(self, thread_id: int, owner_id: int) -> int | None:
        """Number of posts in an owned thread, or None when it is not owned."""
        async with self._session_factory() as session:
            thread = (
                await session.execute(
                    select(ThreadRow.id).where(
                        ThreadRow.id == thread_id, ThreadRow.user_id == owner_id
                    )
                )
            ).scalar_one_or_none()
            if thread is None:
                return None
            return (
                await session.execute(
                    select(func.count(PostRow.id)).where(PostRow.thread_id == thread_id)
                )
            ).scalar_one()

    async def _load_members(self, thread_id: int) -> list[PostRow]:
        async with self._session_factory() as session:
            rows = await session.execute(
                select(PostRow)
                .where(PostRow.thread_id == thread_id)
                .order_by(PostRow.thread_position.asc())
            )
            return list(rows.scalars())

    async def _current_status(self, thread_id: int) -> str | None:
        async with self._session_factory() as session:
            return (
                await session.execute(select(ThreadRow.status).where(ThreadRow.id == thread_id))
            ).scalar_one_or_none()

    async def _begin(self, thread_id: int) -> bool:
        async with self._session_factory() as session, session.begin():
            result = await session.execute(
                update(ThreadRow)
                .where(
                    ThreadRow.id == thread_id,
                    ThreadRow.status.in_(
                        [ThreadStatus.DRAFT.value, ThreadStatus.PARTIAL_FAILED.value]
                    ),
                )
                .values(status=ThreadStatus.POSTING.value)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    async def _settle(self, thread_id: int, outcome: ThreadOutcome) -> tuple[int, int]:
        """Release the posting status based on what is actually persisted.

        Returns the persisted ``(posted, total)`` member counts.
        """
        async with self._session_factory() as session, session.begin():
            rows = (
                await session.execute(
                    select(PostRow.posted_at, PostRow.tweet_id)
                    .where(PostRow.thread_id == thread_id)
                    .order_by(PostRow.thread_position.asc())
                )
            ).all()
            posted = [row for row in rows if row.posted_at is not None]

            values: dict = {}
            if rows and len(posted) == len(rows):
                values = {
                    "status": ThreadStatus.POSTED.value,
                    "posted_at": utc_now(),
                    "first_tweet_id": rows[0].tweet_id,
                }
                outcome.first_tweet_id = rows[0].tweet_id
            elif posted:
                values = {"status": ThreadStatus.PARTIAL_FAILED.value}
            else:
                values = {"status": ThreadStatus.DRAFT.value}

            await session.execute(
                update(ThreadRow)
                .where(ThreadRow.id == thread_id, ThreadRow.status == ThreadStatus.POSTING.value)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
        outcome.status = values["status"]
        return len(posted), len(rows)
