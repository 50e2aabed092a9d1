"""Create publishing pipeline tables (users, credentials, captures, tweet_threads, tweets)

Revision ID: 20261018_0100
Revises:
Create Date: 2026-10-18 01:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '20261018_0100'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'users',
        sa.Column('id', sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column('username', sa.String(64), nullable=False, unique=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
    )

    op.create_table(
        'credentials',
        sa.Column('user_id', sa.BigInteger, sa.ForeignKey('users.id', ondelete='CASCADE'), primary_key=True),
        sa.Column('access_token', sa.Text, nullable=False),
        sa.Column('refresh_token', sa.Text, nullable=True),
        sa.Column('token_expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
    )

    op.create_table(
        'captures',
        sa.Column('id', sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column('user_id', sa.BigInteger, sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('media_type', sa.String(16), nullable=False),
        sa.Column('content_type', sa.String(64), nullable=False),
        sa.Column('storage_path', sa.Text, nullable=False),
        sa.Column('captured_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('source_capture_id', sa.BigInteger, sa.ForeignKey('captures.id', ondelete='SET NULL'), nullable=True),
        sa.Column('edit_params', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        # Thumbnail lease
        sa.Column('thumbnail_path', sa.Text, nullable=True),
        sa.Column('thumbnail_processing', sa.Boolean, nullable=False, server_default=sa.text('false')),
        sa.Column('thumbnail_processing_started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('thumbnail_attempts', sa.SmallInteger, nullable=False, server_default='0'),
        sa.Column('thumbnail_error', sa.Text, nullable=True),
        # Frame extraction lease
        sa.Column('frames_extracted', sa.Boolean, nullable=False, server_default=sa.text('false')),
        sa.Column('frame_count', sa.Integer, nullable=True),
        sa.Column('frames_processing', sa.Boolean, nullable=False, server_default=sa.text('false')),
        sa.Column('frames_processing_started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('frame_attempts', sa.SmallInteger, nullable=False, server_default='0'),
        sa.Column('frames_error', sa.Text, nullable=True),
    )
    op.create_index('ix_captures_user_captured', 'captures', ['user_id', 'captured_at'])
    # Partial indexes keep the claim scan limited to the unfinished backlog
    op.create_index(
        'ix_captures_thumbnail_pending', 'captures', ['captured_at'],
        postgresql_where=sa.text('thumbnail_path IS NULL AND thumbnail_attempts < 5'),
    )
    op.create_index(
        'ix_captures_frames_pending', 'captures', ['captured_at'],
        postgresql_where=sa.text('frames_extracted = false AND frame_attempts < 5'),
    )

    op.create_table(
        'tweet_threads',
        sa.Column('id', sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column('user_id', sa.BigInteger, sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('title', sa.Text, nullable=True),
        sa.Column('status', sa.String(16), nullable=False, server_default='draft'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('posted_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('first_tweet_id', sa.String(64), nullable=True),
        sa.CheckConstraint(
            "status IN ('draft', 'posting', 'posted', 'partial_failed')",
            name='ck_tweet_threads_status',
        ),
    )
    op.create_index('ix_tweet_threads_user_status', 'tweet_threads', ['user_id', 'status'])

    op.create_table(
        'tweets',
        sa.Column('id', sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column('user_id', sa.BigInteger, sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('text', sa.Text, nullable=False),
        sa.Column('video_clip', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('image_capture_ids', postgresql.JSONB(astext_type=sa.Text()), nullable=False, server_default='[]'),
        sa.Column('rationale', sa.Text, nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        # Publish bookkeeping
        sa.Column('publish_status', sa.String(16), nullable=False, server_default='pending'),
        sa.Column('publish_attempts', sa.Integer, nullable=False, server_default='0'),
        sa.Column('publish_error', sa.Text, nullable=True),
        sa.Column('publish_error_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('posted_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('tweet_id', sa.String(64), nullable=True),
        # Thread linkage
        sa.Column('thread_id', sa.BigInteger, sa.ForeignKey('tweet_threads.id', ondelete='CASCADE'), nullable=True),
        sa.Column('thread_position', sa.Integer, nullable=True),
        sa.Column('reply_to_tweet_id', sa.String(64), nullable=True),
        sa.UniqueConstraint('thread_id', 'thread_position', name='uq_tweets_thread_position'),
        sa.CheckConstraint(
            "publish_status IN ('pending', 'posting', 'posted', 'failed')",
            name='ck_tweets_publish_status',
        ),
        sa.CheckConstraint('posted_at IS NULL OR tweet_id IS NOT NULL', name='ck_tweets_posted_has_id'),
    )
    op.create_index('ix_tweets_user_status', 'tweets', ['user_id', 'publish_status'])


def downgrade() -> None:
    op.drop_index('ix_tweets_user_status', table_name='tweets')
    op.drop_table('tweets')
    op.drop_index('ix_tweet_threads_user_status', table_name='tweet_threads')
    op.drop_table('tweet_threads')
    op.drop_index('ix_captures_frames_pending', table_name='captures')
    op.drop_index('ix_captures_thumbnail_pending', table_name='captures')
    op.drop_index('ix_captures_user_captured', table_name='captures')
    op.drop_table('captures')
    op.drop_table('credentials')
    op.drop_table('users')
