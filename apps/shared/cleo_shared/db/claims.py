"""Lease-based claim queries for capture processing.

One query builder serves every MediaKind: the per-kind columns are looked up
in ``LEASES`` and plugged into the same eligibility clause, claim update and
outcome updates. Exclusivity comes from running the claim as a conditional
UPDATE guarded by the selection clause and checking that exactly one row
changed; no lock table or advisory lock is involved.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql.elements import ColumnElement

from cleo_shared.config.settings import Settings
from cleo_shared.db.models import CaptureRow
from cleo_shared.models.media import MAX_ATTEMPTS, MediaKind


@dataclass(frozen=True)
class LeaseColumns:
    """Columns that make up one kind's lease and retry bookkeeping."""

    processing: Any
    started_at: Any
    attempts: Any
    error: Any
    output_unset: ColumnElement[bool]


LEASES: dict[MediaKind, LeaseColumns] = {
    MediaKind.THUMBNAIL: LeaseColumns(
        processing=CaptureRow.thumbnail_processing,
        started_at=CaptureRow.thumbnail_processing_started_at,
        attempts=CaptureRow.thumbnail_attempts,
        error=CaptureRow.thumbnail_error,
        output_unset=CaptureRow.thumbnail_path.is_(None),
    ),
    MediaKind.FRAMES: LeaseColumns(
        processing=CaptureRow.frames_processing,
        started_at=CaptureRow.frames_processing_started_at,
        attempts=CaptureRow.frame_attempts,
        error=CaptureRow.frames_error,
        output_unset=CaptureRow.frames_extracted.is_(False),
    ),
}


def lease_seconds_for(kind: MediaKind, settings: Settings) -> int:
    if kind is MediaKind.THUMBNAIL:
        return settings.thumbnail_lease_seconds
    return settings.frames_lease_seconds


def eligible_clause(kind: MediaKind, now: datetime, lease_seconds: int) -> ColumnElement[bool]:
    """Output unset, under the attempt cap, and unleased or holding a stale lease.

    A row flagged as processing without a start time can never expire on its
    own, so it is treated as stale.
    """
    cols = LEASES[kind]
    cutoff = now - timedelta(seconds=lease_seconds)
    return and_(
        cols.output_unset,
        cols.attempts < MAX_ATTEMPTS,
        or_(
            cols.processing.is_(False),
            cols.started_at.is_(None),
            cols.started_at < cutoff,
        ),
    )


async def select_next_candidate(
    session: AsyncSession, kind: MediaKind, now: datetime, lease_seconds: int
) -> int | None:
    """Oldest eligible capture id, so backlog drains in capture order."""
    stmt = (
        select(CaptureRow.id)
        .where(eligible_clause(kind, now, lease_seconds))
        .order_by(CaptureRow.captured_at.asc(), CaptureRow.id.asc())
        .limit(1)
    )
    return (await session.execute(stmt)).scalar_one_or_none()


async def try_claim(
    session: AsyncSession,
    kind: MediaKind,
    capture_id: int,
    now: datetime,
    lease_seconds: int,
) -> bool:
    """Take the lease on one capture. False means another worker holds it."""
    cols = LEASES[kind]
    stmt = (
        update(CaptureRow)
        .where(CaptureRow.id == capture_id, eligible_clause(kind, now, lease_seconds))
        .values({cols.processing: True, cols.started_at: now})
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    return result.rowcount == 1


def lease_held(kind: MediaKind, capture_id: int, lease_token: datetime) -> ColumnElement[bool]:
    """The row still carries the lease taken at ``lease_token``.

    The claim's start time doubles as the lease token: a worker that reclaims
    a stale lease overwrites it, so the previous holder can no longer record.
    """
    cols = LEASES[kind]
    return and_(
        CaptureRow.id == capture_id,
        cols.output_unset,
        cols.processing.is_(True),
        cols.started_at == lease_token,
    )


async def record_success(
    session: AsyncSession,
    kind: MediaKind,
    capture_id: int,
    lease_token: datetime,
    output: dict[str, Any],
) -> bool:
    """Write terminal output and release the lease in a single update.

    Returns False when the lease was lost: the output was already set or
    another worker reclaimed the row. The deterministic output path makes
    that harmless; the current holder records the same output.
    """
    cols = LEASES[kind]
    values = {
        cols.processing: False,
        cols.started_at: None,
        cols.error: None,
    }
    values.update({getattr(CaptureRow, name): value for name, value in output.items()})
    stmt = (
        update(CaptureRow)
        .where(lease_held(kind, capture_id, lease_token))
        .values(values)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    return result.rowcount == 1


async def record_failure(
    session: AsyncSession,
    kind: MediaKind,
    capture_id: int,
    lease_token: datetime,
    reason: str,
) -> int | None:
    """Count a failed attempt, release the lease and keep the reason.

    Returns the attempt count after the increment, or None when the lease
    was lost and nothing was recorded.
    """
    cols = LEASES[kind]
    stmt = (
        update(CaptureRow)
        .where(lease_held(kind, capture_id, lease_token))
        .values(
            {
                cols.attempts: cols.attempts + 1,
                cols.processing: False,
                cols.started_at: None,
                cols.error: reason[:2000],
            }
        )
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    if result.rowcount != 1:
        return None
    attempts = await session.execute(select(cols.attempts).where(CaptureRow.id == capture_id))
    return attempts.scalar_one()


def attempts_of(capture: CaptureRow, kind: MediaKind) -> int:
    if kind is MediaKind.THUMBNAIL:
        return capture.thumbnail_attempts
    return capture.frame_attempts


def is_done(capture: CaptureRow, kind: MediaKind) -> bool:
    if kind is MediaKind.THUMBNAIL:
        return capture.thumbnail_path is not None
    return capture.frames_extracted


def is_exhausted(capture: CaptureRow, kind: MediaKind) -> bool:
    return attempts_of(capture, kind) >= MAX_ATTEMPTS
