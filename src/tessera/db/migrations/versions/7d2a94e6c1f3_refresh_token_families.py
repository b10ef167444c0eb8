"""Refresh token families: one row per login lineage

Learn: Revocation used to live only on the token rows, so a revocation
sweep could miss a successor inserted by a rotation it was racing.
The family row is now the single lock both sides take first. Existing
families are backfilled from refresh_tokens: a family counts as revoked
when every one of its tokens is.

Revision ID: 7d2a94e6c1f3
Revises: 3c7e1f0a9b42
Create Date: 2026-03-09 16:41:52.118204
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '7d2a94e6c1f3'
down_revision: Union[str, None] = '3c7e1f0a9b42'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

_now = sa.text("CURRENT_TIMESTAMP")


def upgrade() -> None:
    op.create_table(
        "refresh_token_families",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=_now),
        sa.Column("rotated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "idx_refresh_token_families_user", "refresh_token_families", ["user_id"]
    )

    op.execute("""
        INSERT INTO refresh_token_families (id, user_id, created_at, rotated_at, revoked_at)
        SELECT family_id,
               MIN(user_id),
               MIN(issued_at),
               MAX(used_at),
               CASE WHEN COUNT(*) = COUNT(revoked_at) THEN MAX(revoked_at) END
        FROM refresh_tokens
        GROUP BY family_id
    """)

    with op.batch_alter_table("refresh_tokens") as batch:
        batch.create_foreign_key(
            "fk_refresh_tokens_family",
            "refresh_token_families",
            ["family_id"],
            ["id"],
            ondelete="CASCADE",
        )


def downgrade() -> None:
    with op.batch_alter_table("refresh_tokens") as batch:
        batch.drop_constraint("fk_refresh_tokens_family", type_="foreignkey")
    op.drop_index("idx_refresh_token_families_user", table_name="refresh_token_families")
    op.drop_table("refresh_token_families")
