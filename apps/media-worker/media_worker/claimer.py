"""Media processing claimer: lease a capture, process it, record the outcome.

Workers never coordinate in memory. A claim is the conditional UPDATE in
``cleo_shared.db.claims``; losing the race surfaces as LeaseContention,
which is retried here with a short jittered backoff and never escapes.
Processing failures are recorded on the row (attempts + reason) and
returned as data.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cleo_shared.config.settings import Settings
from cleo_shared.db.claims import (
    attempts_of,
    is_done,
    is_exhausted,
    lease_seconds_for,
    record_failure,
    record_success,
    select_next_candidate,
    try_claim,
)
from cleo_shared.db.models import CaptureRow, utc_now
from cleo_shared.errors import AttemptsExhausted, LeaseContention, NotFound, PipelineError
from cleo_shared.models.media import MAX_ATTEMPTS, MediaKind, OutcomeStatus, ProcessOutcome
from cleo_shared.utils.retry import RetryConfig, retry_async

from media_worker.processors import BaseProcessor, ClaimedCapture

logger = logging.getLogger(__name__)


class MediaClaimer:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        processors: dict[MediaKind, BaseProcessor],
        settings: Settings,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._session_factory = session_factory
        self._processors = processors
        self._settings = settings
        self._clock = clock
        self._claim_retrying = retry_async(
            RetryConfig(
                max_retries=settings.claim_max_retries,
                delay=settings.claim_backoff_seconds,
                backoff_factor=2.0,
                max_delay=1.0,
                jitter=0.5,
                exceptions=(LeaseContention,),
            ),
            log_level=logging.DEBUG,
        )(self._claim_once)

    # ──────────────────────────────────────────────
    # Claiming
    # ──────────────────────────────────────────────

    async def claim(self, kind: MediaKind) -> ClaimedCapture | None:
        """Lease the oldest eligible capture, or None when there is nothing to do."""
        try:
            return await self._claim_retrying(kind)
        except LeaseContention:
            logger.debug("Gave up claiming %s work after repeated contention", kind.value)
            return None

    async def _claim_once(self, kind: MediaKind) -> ClaimedCapture | None:
        lease = lease_seconds_for(kind, self._settings)
        async with self._session_factory() as session, session.begin():
            now = self._clock()
            capture_id = await select_next_candidate(session, kind, now, lease)
            if capture_id is None:
                return None
            if not await try_claim(session, kind, capture_id, now, lease):
                raise LeaseContention(f"Capture {capture_id} claimed by another worker")
            row = await session.get(CaptureRow, capture_id)
            logger.debug("Claimed capture %s for %s", capture_id, kind.value)
            return ClaimedCapture.from_row(row, kind, now)

    async def claim_capture(self, kind: MediaKind, capture_id: int) -> ClaimedCapture | None:
        """Lease one specific capture.

        Raises:
            NotFound: capture is missing or its output already exists.
            AttemptsExhausted: capture reached the attempt cap.
        Returns None when another worker holds a live lease on it.
        """
        lease = lease_seconds_for(kind, self._settings)
        async with self._session_factory() as session, session.begin():
            now = self._clock()
            if await try_claim(session, kind, capture_id, now, lease):
                row = await session.get(CaptureRow, capture_id)
                return ClaimedCapture.from_row(row, kind, now)

            row = await session.get(CaptureRow, capture_id)
            if row is None:
                raise NotFound(f"Capture {capture_id} not found")
            if is_done(row, kind):
                raise NotFound(f"Capture {capture_id} already has {kind.value} output")
            if is_exhausted(row, kind):
                raise AttemptsExhausted(capture_id, kind.value, attempts_of(row, kind))
        logger.info("Capture %s is leased by another worker", capture_id)
        return None

    # ──────────────────────────────────────────────
    # Processing
    # ──────────────────────────────────────────────

    async def claim_and_process(
        self, kind: MediaKind, capture_id: int | None = None
    ) -> ProcessOutcome | None:
        """Claim at most one capture, process it and commit the outcome."""
        if capture_id is not None:
            capture = await self.claim_capture(kind, capture_id)
        else:
            capture = await self.claim(kind)
        if capture is None:
            return None
        return await self.process(capture)

    async def process(self, capture: ClaimedCapture) -> ProcessOutcome:
        processor = self._processors[capture.kind]
        try:
            output = await processor.process(capture)
        except Exception as e:
            if not isinstance(e, PipelineError):
                logger.warning("Unexpected %s error on capture %s", capture.kind.value, capture.id, exc_info=True)
            return await self._fail(capture, e)

        try:
            async with self._session_factory() as session, session.begin():
                stored = await record_success(
                    session, capture.kind, capture.id, capture.lease_token, output
                )
        except SQLAlchemyError as e:
            logger.error("Failed to record %s for capture %s: %s", capture.kind.value, capture.id, e)
            await processor.discard(capture, output)
            return await self._fail(capture, e)

        if not stored:
            logger.info(
                "Capture %s %s lease was lost; output left to its current holder",
                capture.id,
                capture.kind.value,
            )
        else:
            logger.info("Processed %s for capture %s", capture.kind.value, capture.id)
        return ProcessOutcome(
            capture_id=capture.id,
            kind=capture.kind,
            status=OutcomeStatus.DONE,
            output=output.get("thumbnail_path"),
            frame_count=output.get("frame_count"),
        )

    async def _fail(self, capture: ClaimedCapture, error: Exception) -> ProcessOutcome:
        reason = f"{type(error).__name__}: {error}"
        async with self._session_factory() as session, session.begin():
            attempts = await record_failure(
                session, capture.kind, capture.id, capture.lease_token, reason
            )

        if attempts is None:
            logger.warning(
                "Lease on capture %s for %s was lost; failure not recorded: %s",
                capture.id,
                capture.kind.value,
                reason,
            )
            return ProcessOutcome(
                capture_id=capture.id,
                kind=capture.kind,
                status=OutcomeStatus.LEASE_LOST,
                error=reason,
            )

        status = OutcomeStatus.EXHAUSTED if attempts >= MAX_ATTEMPTS else OutcomeStatus.FAILED
        logger.warning(
            "%s failed for capture %s (attempt %d/%d): %s",
            capture.kind.value,
            capture.id,
            attempts,
            MAX_ATTEMPTS,
            reason,
        )
        if status is OutcomeStatus.EXHAUSTED:
            logger.error("Capture %s permanently skipped for %s", capture.id, capture.kind.value)
        return ProcessOutcome(
            capture_id=capture.id,
            kind=capture.kind,
            status=status,
            attempts=attempts,
            error=reason,
        )
