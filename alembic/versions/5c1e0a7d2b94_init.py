"""init

Revision ID: 5c1e0a7d2b94
Revises:
Create Date: 2026-10-18 14:40:11.518203

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "5c1e0a7d2b94"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "auth_state",
        sa.Column("key", sa.String(512), primary_key=True),
        sa.Column("payload", sa.Text, nullable=False),
        sa.Column("created_at", sa.BigInteger, nullable=False),
    )
    op.create_index("ix_auth_state_created_at", "auth_state", ["created_at"])

    op.create_table(
        "auth_session",
        sa.Column("key", sa.String(512), primary_key=True),
        sa.Column("payload", sa.Text, nullable=False),
        sa.Column("created_at", sa.BigInteger, nullable=False),
    )

    op.create_table(
        "content_records",
        sa.Column("uri", sa.String(1024), primary_key=True),
        sa.Column("author_id", sa.String(512), nullable=False),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("body", sa.Text, nullable=False),
        sa.Column("summary", sa.Text, nullable=True),
        sa.Column("tags", sa.Text, nullable=False),
        sa.Column("published", sa.Boolean, nullable=False),
        sa.Column("created_at", sa.BigInteger, nullable=False),
        sa.Column("updated_at", sa.BigInteger, nullable=False),
        sa.Column("indexed_at", sa.BigInteger, nullable=False),
    )
    op.create_index(
        "idx_content_records_author_created",
        "content_records",
        ["author_id", "created_at"],
    )
    op.create_index("idx_content_records_indexed", "content_records", ["indexed_at"])
    op.create_index(
        "idx_content_records_published_created",
        "content_records",
        ["published", "created_at"],
    )


def downgrade() -> None:
    op.drop_table("content_records")
    op.drop_table("auth_session")
    op.drop_table("auth_state")
