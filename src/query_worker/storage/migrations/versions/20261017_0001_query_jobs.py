"""Create query job queue table."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261017_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "query_jobs",
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("query_sql", sa.Text(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("result_xml", sa.Text(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("worker_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("job_id"),
    )
    op.create_index("ix_query_jobs_status", "query_jobs", ["status"])
    op.create_index("ix_query_jobs_worker_id", "query_jobs", ["worker_id"])
    op.create_index("idx_query_jobs_queue", "query_jobs", ["status", "created_at"])


def downgrade() -> None:
    op.drop_index("idx_query_jobs_queue", table_name="query_jobs")
    op.drop_index("ix_query_jobs_worker_id", table_name="query_jobs")
    op.drop_index("ix_query_jobs_status", table_name="query_jobs")
    op.drop_table("query_jobs")
