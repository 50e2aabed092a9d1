"""Publish service: the entry points callers use.

Routes publish / retry requests to the executor or the thread sequencer.
A post that belongs to a thread is always published through its thread so
the reply chain stays in order.
"""

import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cleo_shared.config.settings import Settings
from cleo_shared.db.models import PostRow
from cleo_shared.platforms.base import BasePlatformClient
from cleo_shared.publishing.channel import ProgressChannel, start_operation
from cleo_shared.publishing.credentials import CredentialGuard
from cleo_shared.publishing.executor import PublishExecutor
from cleo_shared.publishing.sequencer import ThreadSequencer
from cleo_shared.publishing.state import (
    PostPublishState,
    ThreadPublishState,
    load_post_state,
    load_thread_state,
)
from cleo_shared.storage.object_store import ObjectStore

logger = logging.getLogger(__name__)


class PublishService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        storage: ObjectStore,
        platform: BasePlatformClient,
        settings: Settings,
    ) -> None:
        self._session_factory = session_factory
        self.credentials = CredentialGuard(session_factory, platform)
        self.executor = PublishExecutor(
            session_factory, storage, platform, self.credentials, settings
        )
        self.sequencer = ThreadSequencer(session_factory, self.executor)

    async def _thread_of(self, post_id: int, owner_id: int) -> int | None:
        async with self._session_factory() as session:
            return (
                await session.execute(
                    select(PostRow.thread_id).where(
                        PostRow.id == post_id, PostRow.user_id == owner_id
                    )
                )
            ).scalar_one_or_none()

    async def publish_post(self, post_id: int, owner_id: int) -> ProgressChannel:
        thread_id = await self._thread_of(post_id, owner_id)
        if thread_id is not None:
            logger.info("Post %s belongs to thread %s; publishing the thread", post_id, thread_id)
            return self.sequencer.publish_thread(thread_id, owner_id)
        return self.executor.publish(post_id, owner_id)

    def publish_thread(self, thread_id: int, owner_id: int) -> ProgressChannel:
        return self.sequencer.publish_thread(thread_id, owner_id)

    async def retry_post(self, post_id: int, owner_id: int) -> ProgressChannel:
        """Re-enter the executor from ``pending`` for a failed post.

        Thread members resume through their thread instead.
        """
        thread_id = await self._thread_of(post_id, owner_id)
        if thread_id is not None:
            return self.retry_thread(thread_id, owner_id)

        async def _retry(channel: ProgressChannel) -> None:
            reset = await self.executor.reset_for_retry(post_id, owner_id)
            logger.info("Retry post %s (reset from failed: %s)", post_id, reset)
            await self.executor.run(post_id, owner_id, channel.emit)

        return start_operation(_retry, name=f"retry-post-{post_id}")

    def retry_thread(self, thread_id: int, owner_id: int) -> ProgressChannel:
        """Resume a partial_failed (or draft) thread from its first unposted member."""
        return self.sequencer.publish_thread(thread_id, owner_id)

    async def post_state(self, post_id: int, owner_id: int) -> PostPublishState:
        return await load_post_state(self._session_factory, post_id, owner_id)

    async def thread_state(self, thread_id: int, owner_id: int) -> ThreadPublishState:
        return await load_thread_state(self._session_factory, thread_id, owner_id)
