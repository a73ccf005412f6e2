"""add_queue_states

Revision ID: 8b2e4d61c0a5
Revises: 3f1a9c27d4e8
Create Date: 2026-10-17 10:00:00.000000

"""
from typing import Sequence, Union

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "8b2e4d61c0a5"
down_revision: Union[str, None] = "3f1a9c27d4e8"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    conn = op.get_bind()
    inspector = sa.inspect(conn)

    if "queuestates" not in inspector.get_table_names():
        op.create_table(
            "queuestates",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("queue_name", sa.String(128), nullable=False),
            sa.Column("paused", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("updated_at", sa.DateTime(), nullable=True),
            sa.UniqueConstraint("queue_name", name="uq_queuestates_queue_name"),
        )


def downgrade() -> None:
    op.drop_table("queuestates")
