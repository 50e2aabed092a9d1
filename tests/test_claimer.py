"""
Tests for the media processing claimer and its lease queries.

Covers eligibility (attempt cap, output set, fresh vs stale leases),
oldest-first ordering, single-winner claims under concurrency, and how
success / failure outcomes are recorded.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy.exc import OperationalError

from cleo_shared.db.claims import try_claim
from cleo_shared.db.models import CaptureRow
from cleo_shared.errors import AttemptsExhausted, MediaProcessingError, NotFound
from cleo_shared.models.media import MediaKind, OutcomeStatus

from media_worker.claimer import MediaClaimer
from media_worker.processors import BaseProcessor


class StubProcessor(BaseProcessor):
    """Processor whose result is scripted per test."""

    def __init__(self, kind, output=None, error=None):
        self.kind = kind
        self.output = output or {}
        self.error = error
        self.processed: list[int] = []
        self.discarded: list[int] = []

    async def process(self, capture):
        self.processed.append(capture.id)
        if self.error is not None:
            raise self.error
        return dict(self.output)

    async def discard(self, capture, output):
        self.discarded.append(capture.id)


@pytest.fixture
def thumbnailer():
    return StubProcessor(MediaKind.THUMBNAIL, output={"thumbnail_path": "thumbnails/x.jpg"})


@pytest.fixture
def extractor():
    return StubProcessor(MediaKind.FRAMES, output={"frames_extracted": True, "frame_count": 3})


@pytest.fixture
def claimer(session_factory, settings, thumbnailer, extractor):
    return MediaClaimer(
        session_factory,
        {MediaKind.THUMBNAIL: thumbnailer, MediaKind.FRAMES: extractor},
        settings,
    )


def ago(seconds: int) -> datetime:
    return datetime.now(timezone.utc) - timedelta(seconds=seconds)


# =============================================================================
# Eligibility
# =============================================================================


class TestEligibility:
    async def test_capture_at_attempt_cap_is_never_claimed(self, claimer, seed, owner):
        await seed.capture(owner.id, thumbnail_attempts=5)
        await seed.capture(owner.id, thumbnail_attempts=7)

        assert await claimer.claim(MediaKind.THUMBNAIL) is None

    async def test_capture_below_cap_is_claimed(self, claimer, seed, owner):
        capture = await seed.capture(owner.id, thumbnail_attempts=4)

        claimed = await claimer.claim(MediaKind.THUMBNAIL)

        assert claimed is not None and claimed.id == capture.id
        row = await seed.reload(CaptureRow, capture.id)
        assert row.thumbnail_processing is True
        assert row.thumbnail_processing_started_at is not None

    async def test_capture_with_output_is_not_claimed(self, claimer, seed, owner):
        await seed.capture(owner.id, thumbnail_path="thumbnails/done.jpg")
        await seed.capture(owner.id, frames_extracted=True, frame_count=2)

        assert await claimer.claim(MediaKind.THUMBNAIL) is not None  # the second one
        assert await claimer.claim(MediaKind.THUMBNAIL) is None

    async def test_fresh_lease_is_not_reclaimable(self, claimer, seed, owner):
        await seed.capture(
            owner.id, thumbnail_processing=True, thumbnail_processing_started_at=ago(10)
        )

        assert await claimer.claim(MediaKind.THUMBNAIL) is None

    async def test_stale_lease_is_reclaimable(self, claimer, seed, owner, settings):
        capture = await seed.capture(
            owner.id,
            thumbnail_processing=True,
            thumbnail_processing_started_at=ago(settings.thumbnail_lease_seconds + 60),
        )

        claimed = await claimer.claim(MediaKind.THUMBNAIL)

        assert claimed is not None and claimed.id == capture.id
        row = await seed.reload(CaptureRow, capture.id)
        assert row.thumbnail_processing_started_at.replace(tzinfo=timezone.utc) > ago(60)

    async def test_leased_flag_without_start_time_counts_as_stale(self, claimer, seed, owner):
        capture = await seed.capture(owner.id, frames_processing=True)

        claimed = await claimer.claim(MediaKind.FRAMES)

        assert claimed is not None and claimed.id == capture.id

    async def test_oldest_capture_is_claimed_first(self, claimer, seed, owner):
        base = datetime(2024, 6, 1, tzinfo=timezone.utc)
        newer = await seed.capture(owner.id, captured_at=base + timedelta(days=2))
        oldest = await seed.capture(owner.id, captured_at=base)
        middle = await seed.capture(owner.id, captured_at=base + timedelta(days=1))

        order = [(await claimer.claim(MediaKind.THUMBNAIL)).id for _ in range(3)]

        assert order == [oldest.id, middle.id, newer.id]

    async def test_kinds_lease_independently(self, claimer, seed, owner):
        capture = await seed.capture(owner.id)

        thumb = await claimer.claim(MediaKind.THUMBNAIL)
        frames = await claimer.claim(MediaKind.FRAMES)

        assert thumb.id == capture.id and frames.id == capture.id
        assert await claimer.claim(MediaKind.THUMBNAIL) is None


# =============================================================================
# Exclusivity
# =============================================================================


class TestExclusivity:
    async def test_conditional_update_has_one_winner(self, session_factory, seed, owner):
        capture = await seed.capture(owner.id)
        now = datetime.now(timezone.utc)

        async with session_factory() as first, first.begin():
            won_first = await try_claim(first, MediaKind.THUMBNAIL, capture.id, now, 900)
        async with session_factory() as second, second.begin():
            won_second = await try_claim(second, MediaKind.THUMBNAIL, capture.id, now, 900)

        assert (won_first, won_second) == (True, False)

    async def test_concurrent_claims_single_winner(self, claimer, seed, owner):
        capture = await seed.capture(owner.id)

        results = await asyncio.gather(*(claimer.claim(MediaKind.THUMBNAIL) for _ in range(8)))

        winners = [r for r in results if r is not None]
        assert len(winners) == 1
        assert winners[0].id == capture.id

    async def test_concurrent_claims_spread_over_backlog(self, claimer, seed, owner):
        captures = [await seed.capture(owner.id) for _ in range(3)]

        results = await asyncio.gather(*(claimer.claim(MediaKind.FRAMES) for _ in range(6)))

        claimed = sorted(r.id for r in results if r is not None)
        assert claimed == sorted(c.id for c in captures)


# =============================================================================
# Outcomes
# =============================================================================


class TestOutcomes:
    async def test_success_writes_output_and_clears_lease(self, claimer, seed, owner):
        capture = await seed.capture(owner.id, thumbnail_attempts=2, thumbnail_error="old")

        outcome = await claimer.claim_and_process(MediaKind.THUMBNAIL)

        assert outcome.status is OutcomeStatus.DONE
        assert outcome.output == "thumbnails/x.jpg"
        row = await seed.reload(CaptureRow, capture.id)
        assert row.thumbnail_path == "thumbnails/x.jpg"
        assert row.thumbnail_processing is False
        assert row.thumbnail_processing_started_at is None
        assert row.thumbnail_error is None
        assert row.thumbnail_attempts == 2

    async def test_frames_success_sets_count(self, claimer, seed, owner):
        capture = await seed.capture(owner.id)

        outcome = await claimer.claim_and_process(MediaKind.FRAMES)

        assert outcome.frame_count == 3
        row = await seed.reload(CaptureRow, capture.id)
        assert row.frames_extracted is True
        assert row.frame_count == 3
        assert row.frames_processing is False

    async def test_failure_counts_attempt_and_releases_lease(self, claimer, seed, owner, thumbnailer):
        thumbnailer.error = MediaProcessingError("cannot decode")
        capture = await seed.capture(owner.id)

        outcome = await claimer.claim_and_process(MediaKind.THUMBNAIL)

        assert outcome.status is OutcomeStatus.FAILED
        assert outcome.attempts == 1
        row = await seed.reload(CaptureRow, capture.id)
        assert row.thumbnail_path is None
        assert row.thumbnail_processing is False
        assert row.thumbnail_processing_started_at is None
        assert row.thumbnail_attempts == 1
        assert "cannot decode" in row.thumbnail_error

    async def test_fifth_failure_exhausts_capture(self, claimer, seed, owner, thumbnailer):
        thumbnailer.error = MediaProcessingError("corrupt")
        capture = await seed.capture(owner.id)

        statuses = []
        for _ in range(5):
            statuses.append((await claimer.claim_and_process(MediaKind.THUMBNAIL)).status)

        assert statuses[:4] == [OutcomeStatus.FAILED] * 4
        assert statuses[4] is OutcomeStatus.EXHAUSTED
        assert await claimer.claim_and_process(MediaKind.THUMBNAIL) is None
        assert thumbnailer.processed == [capture.id] * 5

    async def test_unexpected_processor_error_is_recorded(self, claimer, seed, owner, extractor):
        extractor.error = ValueError("boom")
        capture = await seed.capture(owner.id)

        outcome = await claimer.claim_and_process(MediaKind.FRAMES)

        assert outcome.status is OutcomeStatus.FAILED
        row = await seed.reload(CaptureRow, capture.id)
        assert row.frame_attempts == 1
        assert row.frames_error == "ValueError: boom"

    async def test_failure_after_reclaim_leaves_new_lease_alone(
        self, claimer, seed, owner, thumbnailer, session_factory
    ):
        capture = await seed.capture(owner.id)
        reclaimed_at = ago(1)

        async def reclaimed_then_fail(claimed):
            # Another worker takes over the row while this one is still busy.
            async with session_factory() as session, session.begin():
                row = await session.get(CaptureRow, claimed.id)
                row.thumbnail_processing_started_at = reclaimed_at
            raise MediaProcessingError("timed out")

        thumbnailer.process = reclaimed_then_fail

        outcome = await claimer.claim_and_process(MediaKind.THUMBNAIL)

        assert outcome.status is OutcomeStatus.LEASE_LOST
        row = await seed.reload(CaptureRow, capture.id)
        assert row.thumbnail_processing is True
        assert row.thumbnail_processing_started_at is not None
        assert row.thumbnail_attempts == 0
        assert row.thumbnail_error is None
        assert await claimer.claim(MediaKind.THUMBNAIL) is None

    async def test_success_after_reclaim_is_not_recorded(
        self, claimer, seed, owner, thumbnailer, session_factory
    ):
        capture = await seed.capture(owner.id)

        async def reclaimed_then_succeed(claimed):
            async with session_factory() as session, session.begin():
                row = await session.get(CaptureRow, claimed.id)
                row.thumbnail_processing_started_at = ago(1)
            return {"thumbnail_path": "thumbnails/x.jpg"}

        thumbnailer.process = reclaimed_then_succeed

        outcome = await claimer.claim_and_process(MediaKind.THUMBNAIL)

        assert outcome.status is OutcomeStatus.DONE
        row = await seed.reload(CaptureRow, capture.id)
        assert row.thumbnail_path is None
        assert row.thumbnail_processing is True

    async def test_db_failure_discards_written_output(self, claimer, seed, owner, thumbnailer):
        capture = await seed.capture(owner.id)
        failing = AsyncMock(side_effect=OperationalError("UPDATE captures", {}, Exception("gone")))

        with patch("media_worker.claimer.record_success", failing):
            outcome = await claimer.claim_and_process(MediaKind.THUMBNAIL)

        assert outcome.status is OutcomeStatus.FAILED
        assert thumbnailer.discarded == [capture.id]
        row = await seed.reload(CaptureRow, capture.id)
        assert row.thumbnail_path is None
        assert row.thumbnail_attempts == 1


# =============================================================================
# Targeted claims
# =============================================================================


class TestTargetedClaim:
    async def test_exhausted_capture_raises(self, claimer, seed, owner):
        capture = await seed.capture(owner.id, frame_attempts=5)

        with pytest.raises(AttemptsExhausted) as exc:
            await claimer.claim_and_process(MediaKind.FRAMES, capture.id)
        assert exc.value.attempts == 5

    async def test_missing_capture_raises(self, claimer):
        with pytest.raises(NotFound):
            await claimer.claim_and_process(MediaKind.THUMBNAIL, 9999)

    async def test_leased_capture_returns_none(self, claimer, seed, owner):
        capture = await seed.capture(
            owner.id, thumbnail_processing=True, thumbnail_processing_started_at=ago(5)
        )

        assert await claimer.claim_and_process(MediaKind.THUMBNAIL, capture.id) is None

    async def test_targeted_capture_skips_backlog_order(self, claimer, seed, owner, thumbnailer):
        await seed.capture(owner.id)
        target = await seed.capture(owner.id)

        outcome = await claimer.claim_and_process(MediaKind.THUMBNAIL, target.id)

        assert outcome.capture_id == target.id
        assert thumbnailer.processed == [target.id]
