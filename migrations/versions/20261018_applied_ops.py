"""track applied entitlement operations

Revision ID: 20261018_applied_ops
Revises: 20261018_init_scan_schema
Create Date: 2026-10-18 16:40:51.502117

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261018_applied_ops"
down_revision = "20261018_init_scan_schema"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "applied_ops",
        sa.Column("op_id", sa.String(64), primary_key=True),
        sa.Column("owner_id", sa.String(128), nullable=False),
        sa.Column("kind", sa.String(16), nullable=False),
        sa.Column("applied_at", sa.DateTime(timezone=True)),
    )
    op.create_index("ix_applied_ops_owner_id", "applied_ops", ["owner_id"])


def downgrade() -> None:
    op.drop_index("ix_applied_ops_owner_id", table_name="applied_ops")
    op.drop_table("applied_ops")
