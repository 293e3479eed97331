"""Initial schema with jobs and dead_jobs tables

Revision ID: 001
Revises:
Create Date: 2024-01-01 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _job_columns() -> list[sa.Column]:
    # Identical layout for the live queue and the dead-letter store
    return [
        sa.Column("id", sa.String(32), nullable=False),
        sa.Column("queue", sa.String(255), nullable=False, server_default="default"),
        sa.Column("job_type", sa.String(255), nullable=False),
        sa.Column("payload", sa.LargeBinary, nullable=False),
        sa.Column("retry_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("priority", sa.Integer, nullable=False, server_default="0"),
        sa.Column("scheduled_at", sa.DateTime, nullable=False),
        sa.Column("enqueued_at", sa.DateTime, nullable=False),
        sa.Column("leased_at", sa.DateTime, nullable=True),
        sa.Column("lease_expires_at", sa.DateTime, nullable=True),
        sa.PrimaryKeyConstraint("id"),
    ]


def upgrade() -> None:
    op.create_table("jobs", *_job_columns())
    op.create_table("dead_jobs", *_job_columns())

    # Index for queue polling
    op.create_index(
        "ix_jobs_queue_poll",
        "jobs",
        ["queue", "leased_at", "scheduled_at", "priority"],
    )

    # Index for lease expiry checks
    op.create_index("ix_jobs_lease_expiry", "jobs", ["lease_expires_at"])


def downgrade() -> None:
    op.drop_index("ix_jobs_lease_expiry", table_name="jobs")
    op.drop_index("ix_jobs_queue_poll", table_name="jobs")
    op.drop_table("dead_jobs")
    op.drop_table("jobs")
