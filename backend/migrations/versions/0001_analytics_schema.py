"""analytics schema: raw events, daily aggregates, dedup ledger and job queue

Revision ID: 0001_analytics_schema
Revises:
Create Date: 2024-11-14

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "0001_analytics_schema"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "raw_events",
        sa.Column("event_id", sa.String(length=36), nullable=False),
        sa.Column("site_id", sa.Text(), nullable=False),
        sa.Column("event_type", sa.Text(), nullable=False),
        sa.Column("path", sa.Text(), nullable=False),
        sa.Column("visitor_id", sa.Text(), nullable=True),
        sa.Column("event_ts", sa.DateTime(), nullable=False),
        sa.Column("event_date", sa.Date(), nullable=False),
        sa.Column("ingestion_ts", sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("event_id"),
    )
    op.create_index("idx_raw_events_site_date", "raw_events", ["site_id", "event_date"])
    op.create_index("idx_raw_events_site_date_path", "raw_events", ["site_id", "event_date", "path"])

    op.create_table(
        "site_daily_aggregates",
        sa.Column("site_id", sa.Text(), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("total_views", sa.BigInteger(), server_default="0", nullable=False),
        sa.Column("unique_visitors", sa.BigInteger(), server_default="0", nullable=False),
        sa.PrimaryKeyConstraint("site_id", "date", name="pk_site_daily_aggregates"),
    )

    op.create_table(
        "site_daily_path_counts",
        sa.Column("site_id", sa.Text(), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("path", sa.Text(), nullable=False),
        sa.Column("views", sa.BigInteger(), server_default="0", nullable=False),
        sa.PrimaryKeyConstraint("site_id", "date", "path", name="pk_site_daily_path_counts"),
    )
    op.create_index(
        "idx_path_counts_site_date_views_desc",
        "site_daily_path_counts",
        ["site_id", "date", sa.text("views DESC")],
    )

    op.create_table(
        "site_daily_unique_visitors",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("site_id", sa.Text(), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("visitor_id", sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "unq_site_date_visitor",
        "site_daily_unique_visitors",
        ["site_id", "date", sa.text("coalesce(visitor_id, '')")],
        unique=True,
    )

    op.create_table(
        "jobs",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("queue", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=64), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False),
        sa.Column("state", sa.String(length=16), nullable=False),
        sa.Column("attempts_made", sa.Integer(), nullable=False),
        sa.Column("max_attempts", sa.Integer(), nullable=False),
        sa.Column("available_at", sa.DateTime(), nullable=False),
        sa.Column("lease_token", sa.String(length=36), nullable=True),
        sa.Column("lease_expires_at", sa.DateTime(), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("processed_on", sa.DateTime(), nullable=True),
        sa.Column("finished_on", sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_jobs_queue_state_priority", "jobs", ["queue", "state", "priority", "id"])

    op.create_table(
        "queue_state",
        sa.Column("queue", sa.String(length=64), nullable=False),
        sa.Column("paused", sa.Boolean(), nullable=False),
        sa.PrimaryKeyConstraint("queue"),
    )


def downgrade() -> None:
    op.drop_table("queue_state")
    op.drop_index("idx_jobs_queue_state_priority", table_name="jobs")
    op.drop_table("jobs")
    op.drop_index("unq_site_date_visitor", table_name="site_daily_unique_visitors")
    op.drop_table("site_daily_unique_visitors")
    op.drop_index("idx_path_counts_site_date_views_desc", table_name="site_daily_path_counts")
    op.drop_table("site_daily_path_counts")
    op.drop_table("site_daily_aggregates")
    op.drop_index("idx_raw_events_site_date_path", table_name="raw_events")
    op.drop_index("idx_raw_events_site_date", table_name="raw_events")
    op.drop_table("raw_events")
