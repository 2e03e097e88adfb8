"""Initial queue tables.

Creates:
    - comments: chat events with a denormalized pointer to the spawned request
    - requests: media requests and their lifecycle status
    - playback_logs: append-only playback history (request_id SET NULL on delete)

Revision ID: 001_initial_queue_tables
Revises:
Create Date: 2026-10-17

"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001_initial_queue_tables"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

REQUEST_STATUSES = (
    "QUEUED",
    "VALIDATING",
    "DOWNLOADING",
    "READY",
    "PLAYING",
    "DONE",
    "SUSPEND",
    "REJECTED",
    "FAILED",
)


def upgrade() -> None:
    op.create_table(
        "comments",
        sa.Column("id", sa.String(128), nullable=False),
        sa.Column("platform", sa.String(32), nullable=False),
        sa.Column("room_id", sa.String(255), nullable=True),
        sa.Column("user_id", sa.String(255), nullable=True),
        sa.Column("user_name", sa.String(255), nullable=True),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("published_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("request_id", sa.String(40), nullable=True),
        sa.Column("request_status", sa.String(16), nullable=True),
        sa.Column("request_status_reason", sa.Text(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_comments_published_at", "comments", ["published_at"])
    op.create_index("ix_comments_request_id", "comments", ["request_id"])

    op.create_table(
        "requests",
        sa.Column("id", sa.String(40), nullable=False),
        sa.Column("bucket", sa.String(100), nullable=False, server_default="queue"),
        sa.Column("comment_id", sa.String(128), nullable=True),
        sa.Column("platform", sa.String(32), nullable=False, server_default="debug"),
        sa.Column("user_id", sa.String(255), nullable=True),
        sa.Column("user_name", sa.String(255), nullable=True),
        sa.Column("original_message", sa.Text(), nullable=False, server_default=""),
        sa.Column("url", sa.Text(), nullable=False),
        sa.Column("parsed_site", sa.String(32), nullable=True),
        sa.Column("parsed_video_id", sa.String(512), nullable=True),
        sa.Column("parsed_normalized_url", sa.Text(), nullable=True),
        sa.Column("title", sa.Text(), nullable=True),
        sa.Column("duration_sec", sa.Float(), nullable=True),
        sa.Column("uploader", sa.String(255), nullable=True),
        sa.Column("uploaded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("view_count", sa.BigInteger(), nullable=True),
        sa.Column("like_count", sa.BigInteger(), nullable=True),
        sa.Column("dislike_count", sa.BigInteger(), nullable=True),
        sa.Column("comment_count", sa.BigInteger(), nullable=True),
        sa.Column("mylist_count", sa.BigInteger(), nullable=True),
        sa.Column("favorite_count", sa.BigInteger(), nullable=True),
        sa.Column("danmaku_count", sa.BigInteger(), nullable=True),
        sa.Column("thumbnail_url", sa.Text(), nullable=True),
        sa.Column("meta_refreshed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("file_name", sa.String(300), nullable=True),
        sa.Column("cache_file_path", sa.Text(), nullable=True),
        sa.Column("cache_file_size", sa.BigInteger(), nullable=True),
        sa.Column(
            "status",
            sa.Enum(*REQUEST_STATUSES, name="requeststatus"),
            nullable=False,
            server_default="QUEUED",
        ),
        sa.Column("status_reason", sa.Text(), nullable=True),
        sa.Column("queue_position", sa.Integer(), nullable=True),
        sa.Column("play_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("play_ended_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.PrimaryKeyConstraint("id"),
    )

    # Worker claims and queue listing
    op.create_index("ix_requests_bucket_status", "requests", ["bucket", "status"])
    # Duplicate and cooldown lookups
    op.create_index("ix_requests_identity", "requests", ["parsed_site", "parsed_video_id"])

    op.create_table(
        "playback_logs",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("request_id", sa.String(40), nullable=True),
        sa.Column("title", sa.Text(), nullable=True),
        sa.Column("url", sa.Text(), nullable=False),
        sa.Column(
            "played_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(
            ["request_id"],
            ["requests.id"],
            name="fk_playback_logs_request_id",
            ondelete="SET NULL",
        ),
    )
    op.create_index("ix_playback_logs_played_at", "playback_logs", ["played_at"])


def downgrade() -> None:
    op.drop_index("ix_playback_logs_played_at", table_name="playback_logs")
    op.drop_table("playback_logs")
    op.drop_index("ix_requests_identity", table_name="requests")
    op.drop_index("ix_requests_bucket_status", table_name="requests")
    op.drop_table("requests")
    op.drop_index("ix_comments_request_id", table_name="comments")
    op.drop_index("ix_comments_published_at", table_name="comments")
    op.drop_table("comments")
    sa.Enum(name="requeststatus").drop(op.get_bind(), checkfirst=True)
