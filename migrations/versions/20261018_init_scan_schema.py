"""init scan schema

Revision ID: 20261018_init_scan_schema
Revises:
Create Date: 2026-10-18 10:12:04.118230

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261018_init_scan_schema"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    subscription_status = sa.Enum("free", "premium", name="subscription_status")

    op.create_table(
        "entitlements",
        sa.Column("owner_id", sa.String(128), primary_key=True),
        sa.Column("scans_used", sa.Integer, nullable=False, server_default="0"),
        sa.Column("weekly_limit", sa.Integer, nullable=False),
        sa.Column(
            "subscription_status",
            subscription_status,
            nullable=False,
            server_default="free",
        ),
        sa.Column("subscription_expiry", sa.DateTime(timezone=True)),
        sa.Column("last_reset_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True)),
    )

    op.create_table(
        "scan_history",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("owner_id", sa.String(128), nullable=False),
        sa.Column("image_ref", sa.String, nullable=False),
        sa.Column("analysis", sa.JSON, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("stored_at", sa.DateTime(timezone=True)),
    )
    op.create_index("ix_scan_history_owner_id", "scan_history", ["owner_id"])


def downgrade() -> None:
    op.drop_index("ix_scan_history_owner_id", table_name="scan_history")
    op.drop_table("scan_history")
    op.drop_table("entitlements")
    sa.Enum(name="subscription_status").drop(op.get_bind(), checkfirst=True)
