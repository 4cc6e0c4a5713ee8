"""init

Revision ID: 5c1e7a2b9d40
Revises:
Create Date: 2026-10-19 09:12:41.118204

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "5c1e7a2b9d40"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("guid", sa.String(512), primary_key=True),
        sa.Column("subject", sa.String(512), nullable=False),
        sa.Column("username", sa.String(512), nullable=False),
        sa.Column("homeserver", sa.String(512), nullable=True),
        sa.Column("wallet_id", sa.String(512), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_seen_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("idx_users_subject", "users", ["subject"], unique=True)
    op.create_index("idx_users_wallet_id", "users", ["wallet_id"])

    op.create_table(
        "mini_apps",
        sa.Column("app_id", sa.String(64), primary_key=True),
        sa.Column("name", sa.String(512), nullable=False),
        sa.Column("client_type", sa.String(64), nullable=False),
        sa.Column("client_secret", sa.String(512), nullable=True),
        sa.Column("scopes", sa.JSON, nullable=False),
        sa.Column("classification", sa.String(64), nullable=False),
        sa.Column("status", sa.String(64), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("idx_mini_apps_status", "mini_apps", ["status"])

    # append-only; one row per (subject, app_id, scope) approval event
    op.create_table(
        "authorization_approvals",
        sa.Column("guid", sa.String(512), primary_key=True),
        sa.Column("subject", sa.String(512), nullable=False),
        sa.Column("app_id", sa.String(64), nullable=False),
        sa.Column("scope", sa.String(512), nullable=False),
        sa.Column("approved_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("approval_method", sa.String(64), nullable=False),
    )
    op.create_index(
        "idx_approvals_subject_app_scope",
        "authorization_approvals",
        ["subject", "app_id", "scope"],
    )
    op.create_index(
        "idx_approvals_approved_at", "authorization_approvals", ["approved_at"]
    )


def downgrade() -> None:
    op.drop_table("authorization_approvals")
    op.drop_table("mini_apps")
    op.drop_table("users")
