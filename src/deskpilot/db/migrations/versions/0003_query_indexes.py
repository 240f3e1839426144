"""index message lookups and session ordering

Revision ID: 3
Revises: 2
Create Date: 2025-11-04
"""

from alembic import op


revision = 3
down_revision = 2
description = "Add indexes on messages(session_id, timestamp) and sessions(last_accessed_at)"


def upgrade() -> None:
    op.create_index("idx_messages_session_id_timestamp", "messages", ["session_id", "timestamp"], if_not_exists=True)
    op.create_index("idx_sessions_last_accessed", "sessions", ["last_accessed_at"], if_not_exists=True)


def downgrade() -> None:
    op.drop_index("idx_sessions_last_accessed", table_name="sessions", if_exists=True)
    op.drop_index("idx_messages_session_id_timestamp", table_name="messages", if_exists=True)
