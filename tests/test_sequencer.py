"""
Tests for the thread sequencer: reply chaining, stop-on-first-failure,
partial failure bookkeeping and resuming a partially posted thread.
"""

import asyncio

from cleo_shared.db.models import PostRow, ThreadRow
from cleo_shared.publishing.state import load_thread_state


class TestThreadPublish:
    async def test_members_post_as_reply_chain(self, sequencer, platform, seed, owner, events):
        thread, posts = await seed.thread(owner.id, ["one", "two", "three"])
        platform.post_ids = ["t1", "t2", "t3"]

        outcome = await sequencer.run(thread.id, owner.id, events)

        assert outcome.ok
        assert [p["reply_to"] for p in platform.posts] == [None, "t1", "t2"]
        assert [p["text"] for p in platform.posts] == ["one", "two", "three"]
        row = await seed.reload(ThreadRow, thread.id)
        assert row.status == "posted"
        assert row.first_tweet_id == "t1"
        assert row.posted_at is not None
        assert events[-1] == {
            "type": "complete",
            "thread_id": thread.id,
            "status": "posted",
            "tweet_id": "t1",
            "text": "Thread posted (3 posts)",
        }

    async def test_member_events_carry_post_and_position(self, sequencer, seed, owner, events):
        thread, posts = await seed.thread(owner.id, ["a", "b"])

        await sequencer.run(thread.id, owner.id, events)

        member_events = events[:-1]
        assert {(e["post_id"], e["position"]) for e in member_events} == {
            (posts[0].id, 0),
            (posts[1].id, 1),
        }
        assert events.types().count("complete") == 3

    async def test_failure_stops_the_chain(self, sequencer, platform, seed, owner, events):
        thread, posts = await seed.thread(owner.id, ["one", "two", "three"])
        platform.post_ids = ["t1"]
        platform.fail_texts = {"two"}

        outcome = await sequencer.run(thread.id, owner.id, events)

        assert not outcome.ok
        assert outcome.status == "partial_failed"
        assert outcome.failed_post_id == posts[1].id
        assert [p["text"] for p in platform.posts] == ["one", "two"]

        first, second, third = [await seed.reload(PostRow, p.id) for p in posts]
        assert first.publish_status == "posted" and first.tweet_id == "t1"
        assert second.publish_status == "failed"
        assert third.publish_status == "pending" and third.publish_attempts == 0
        assert (await seed.reload(ThreadRow, thread.id)).status == "partial_failed"

        assert events[-1]["type"] == "error"
        assert events[-1]["code"] == "partial_failure"
        assert events[-1]["thread_id"] == thread.id
        assert events[-1]["status"] == "partial_failed"

    async def test_first_member_failure_leaves_draft(self, sequencer, platform, seed, owner, events):
        thread, _ = await seed.thread(owner.id, ["one", "two"])
        platform.fail_texts = {"one"}

        outcome = await sequencer.run(thread.id, owner.id, events)

        assert outcome.status == "draft"
        assert (await seed.reload(ThreadRow, thread.id)).status == "draft"
        assert events[-1]["code"] == "platform_rejected"
        assert len(platform.posts) == 1


class TestResume:
    async def test_retry_resumes_after_last_posted_member(self, sequencer, platform, seed, owner, events):
        thread, posts = await seed.thread(owner.id, ["one", "two", "three"])
        platform.post_ids = ["t1", "t2", "t3"]
        platform.fail_texts = {"two"}
        await sequencer.run(thread.id, owner.id, events)

        platform.fail_texts = set()
        platform.posts.clear()
        outcome = await sequencer.run(thread.id, owner.id, events)

        assert outcome.ok
        assert [(p["text"], p["reply_to"]) for p in platform.posts] == [("two", "t1"), ("three", "t2")]
        second = await seed.reload(PostRow, posts[1].id)
        assert second.publish_attempts == 2
        assert second.reply_to_tweet_id == "t1"
        assert (await seed.reload(ThreadRow, thread.id)).first_tweet_id == "t1"

    async def test_members_posted_before_begin_are_skipped(
        self, sequencer, executor, platform, seed, owner, session_factory, monkeypatch, events
    ):
        thread, posts = await seed.thread(owner.id, ["one", "two"])
        platform.post_ids = ["t1", "t2"]
        begin = sequencer._begin

        async def raced_begin(thread_id):
            # Another run posts the first member and releases the thread.
            await executor.run(posts[0].id, owner.id, lambda e: None, position=0)
            async with session_factory() as session, session.begin():
                row = await session.get(ThreadRow, thread_id)
                row.status = "partial_failed"
            return await begin(thread_id)

        monkeypatch.setattr(sequencer, "_begin", raced_begin)

        outcome = await sequencer.run(thread.id, owner.id, events)

        assert outcome.ok
        assert [(p["text"], p["reply_to"]) for p in platform.posts] == [("one", None), ("two", "t1")]
        row = await seed.reload(ThreadRow, thread.id)
        assert row.status == "posted"
        assert row.first_tweet_id == "t1"
        assert events[-1]["text"] == "Thread posted (2 posts)"

    async def test_state_reports_resume_position(self, sequencer, platform, seed, owner, session_factory, events):
        thread, _ = await seed.thread(owner.id, ["one", "two", "three"])
        platform.fail_texts = {"three"}
        await sequencer.run(thread.id, owner.id, events)

        state = await load_thread_state(session_factory, thread.id, owner.id)

        assert state.status == "partial_failed"
        assert [p.publish_status for p in state.posts] == ["posted", "posted", "failed"]
        assert state.next_position == 2


class TestRefusals:
    async def test_posted_thread_is_refused(self, sequencer, platform, seed, owner, events):
        thread, _ = await seed.thread(owner.id, ["only"])
        await sequencer.run(thread.id, owner.id, events)
        events.clear()

        outcome = await sequencer.run(thread.id, owner.id, events)

        assert outcome.code == "already_posted"
        assert len(platform.posts) == 1
        assert events == [
            {
                "type": "error",
                "thread_id": thread.id,
                "status": "posted",
                "code": "already_posted",
                "message": f"Thread {thread.id} is already posted",
            }
        ]

    async def test_thread_in_flight_is_refused(self, sequencer, platform, seed, owner, events):
        thread, _ = await seed.thread(owner.id, ["one"], status="posting")

        outcome = await sequencer.run(thread.id, owner.id, events)

        assert outcome.code == "in_progress"
        assert platform.posts == []
        assert (await seed.reload(ThreadRow, thread.id)).status == "posting"

    async def test_concurrent_runs_publish_once(self, sequencer, platform, seed, owner, monkeypatch):
        thread, _ = await seed.thread(owner.id, ["one", "two"])
        gate = asyncio.Event()
        create_post = platform.create_post

        async def gated(*args, **kw):
            await gate.wait()
            return await create_post(*args, **kw)

        monkeypatch.setattr(platform, "create_post", gated)

        first = asyncio.create_task(sequencer.run(thread.id, owner.id, lambda e: None))
        while (await seed.reload(ThreadRow, thread.id)).status != "posting":
            await asyncio.sleep(0.01)
        second = await sequencer.run(thread.id, owner.id, lambda e: None)
        gate.set()

        assert second.code == "in_progress"
        assert (await first).ok
        assert len(platform.posts) == 2

    async def test_empty_thread(self, sequencer, seed, owner, events):
        thread, _ = await seed.thread(owner.id, [])

        outcome = await sequencer.run(thread.id, owner.id, events)

        assert outcome.code == "not_found"
        assert (await seed.reload(ThreadRow, thread.id)).status == "draft"

    async def test_foreign_thread(self, sequencer, seed, owner, events):
        other = await seed.user("mallory")
        thread, _ = await seed.thread(other.id, ["x"])

        outcome = await sequencer.run(thread.id, owner.id, events)

        assert outcome.code == "not_found"
        assert events.types() == ["error"]
