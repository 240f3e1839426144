"""add git worktree columns to sessions

Revision ID: 2
Revises: 1
Create Date: 2025-09-30
"""

from alembic import op
import sqlalchemy as sa


revision = 2
down_revision = 1
description = "Add branch_name and is_worktree to sessions"


def upgrade() -> None:
    op.add_column("sessions", sa.Column("branch_name", sa.Text(), nullable=True))
    op.add_column("sessions", sa.Column("is_worktree", sa.Boolean(), nullable=True, server_default=sa.text("0")))


def downgrade() -> None:
    op.drop_column("sessions", "is_worktree")
    op.drop_column("sessions", "branch_name")
