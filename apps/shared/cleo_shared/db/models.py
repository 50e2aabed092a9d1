"""SQLAlchemy ORM models: captures, posts, threads and platform credentials."""

from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    SmallInteger,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# Postgres types in production; SQLite only autoincrements INTEGER PRIMARY KEY.
BigId = BigInteger().with_variant(Integer, "sqlite")
JsonDoc = JSON().with_variant(JSONB, "postgresql")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes read back from drivers that drop tzinfo."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class Base(DeclarativeBase):
    pass


class UserRow(Base):
    """Account owning captures, posts and a platform credential."""

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(BigId, primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )


class CredentialRow(Base):
    """X OAuth 2.0 token pair, one per user."""

    __tablename__ = "credentials"

    user_id: Mapped[int] = mapped_column(
        BigId, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True
    )
    access_token: Mapped[str] = mapped_column(Text, nullable=False)
    refresh_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    token_expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )


class CaptureRow(Base):
    """A raw screenshot or screen recording plus its background-processing state."""

    __tablename__ = "captures"

    id: Mapped[int] = mapped_column(BigId, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        BigId, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    media_type: Mapped[str] = mapped_column(String(16), nullable=False)  # image | video
    content_type: Mapped[str] = mapped_column(String(64), nullable=False)
    storage_path: Mapped[str] = mapped_column(Text, nullable=False)
    captured_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    # Derived variants (crop / trim of another capture)
    source_capture_id: Mapped[int | None] = mapped_column(
        BigId, ForeignKey("captures.id", ondelete="SET NULL"), nullable=True
    )
    edit_params: Mapped[dict | None] = mapped_column(JsonDoc, nullable=True)

    # Thumbnail lease
    thumbnail_path: Mapped[str | None] = mapped_column(Text, nullable=True)
    thumbnail_processing: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    thumbnail_processing_started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    thumbnail_attempts: Mapped[int] = mapped_column(SmallInteger, nullable=False, default=0)
    thumbnail_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Frame extraction lease
    frames_extracted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    frame_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    frames_processing: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    frames_processing_started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    frame_attempts: Mapped[int] = mapped_column(SmallInteger, nullable=False, default=0)
    frames_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("ix_captures_user_captured", "user_id", "captured_at"),
        Index(
            "ix_captures_thumbnail_pending",
            "captured_at",
            postgresql_where=text("thumbnail_path IS NULL AND thumbnail_attempts < 5"),
            sqlite_where=text("thumbnail_path IS NULL AND thumbnail_attempts < 5"),
        ),
        Index(
            "ix_captures_frames_pending",
            "captured_at",
            postgresql_where=text("frames_extracted = false AND frame_attempts < 5"),
            sqlite_where=text("frames_extracted = 0 AND frame_attempts < 5"),
        ),
    )


class ThreadRow(Base):
    """Ordered reply chain of posts."""

    __tablename__ = "tweet_threads"

    id: Mapped[int] = mapped_column(BigId, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        BigId, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    title: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="draft")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    posted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    first_tweet_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    __table_args__ = (
        Index("ix_tweet_threads_user_status", "user_id", "status"),
        CheckConstraint(
            "status IN ('draft', 'posting', 'posted', 'partial_failed')",
            name="ck_tweet_threads_status",
        ),
    )


class PostRow(Base):
    """A single publishable tweet, standalone or a thread member."""

    __tablename__ = "tweets"

    id: Mapped[int] = mapped_column(BigId, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        BigId, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    text: Mapped[str] = mapped_column(Text, nullable=False)
    # {"source_capture_id": int, "start_timestamp": "HH:MM:SS", "duration_secs": float}
    video_clip: Mapped[dict | None] = mapped_column(JsonDoc, nullable=True)
    image_capture_ids: Mapped[list] = mapped_column(JsonDoc, nullable=False, default=list)
    rationale: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    # Publish bookkeeping
    publish_status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    publish_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    publish_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    publish_error_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    posted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    tweet_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    # Thread linkage
    thread_id: Mapped[int | None] = mapped_column(
        BigId, ForeignKey("tweet_threads.id", ondelete="CASCADE"), nullable=True
    )
    thread_position: Mapped[int | None] = mapped_column(Integer, nullable=True)
    reply_to_tweet_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    __table_args__ = (
        UniqueConstraint("thread_id", "thread_position", name="uq_tweets_thread_position"),
        Index("ix_tweets_user_status", "user_id", "publish_status"),
        CheckConstraint(
            "publish_status IN ('pending', 'posting', 'posted', 'failed')",
            name="ck_tweets_publish_status",
        ),
        # A post counts as published only once its external id is stored.
        CheckConstraint("posted_at IS NULL OR tweet_id IS NOT NULL", name="ck_tweets_posted_has_id"),
    )
