"""Create customer_links table

Revision ID: 001
Revises: None
Create Date: 2026-10-19 00:00:00.000000+00:00

Creates `customer_links`, the Identity Store behind customer provisioning.
The unique constraint on account_key is the idempotency gate; the service
assumes it exists and never checks for duplicates itself.
"""

from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa

# revision identifiers
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "customer_links",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column(
            "account_key",
            sa.String(128),
            nullable=False,
            comment="Internal account identifier issued by the auth subsystem",
        ),
        sa.Column(
            "provider_customer_id",
            sa.String(255),
            nullable=True,
            comment="Stripe customer id (cus_...), set when CONFIRMED",
        ),
        sa.Column(
            "status",
            sa.String(20),
            nullable=False,
            server_default=sa.text("'pending'"),
            comment="pending, confirmed, failed",
        ),
        sa.Column(
            "failure_reason",
            sa.Text(),
            nullable=True,
            comment="Provider rejection message when FAILED",
        ),
        sa.Column("display_name", sa.String(256), nullable=True),
        sa.Column("contact_email", sa.String(320), nullable=True),
        sa.Column("request_metadata", sa.JSON(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("CURRENT_TIMESTAMP"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("CURRENT_TIMESTAMP"),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("account_key", name="uq_customer_links_account_key"),
        sa.CheckConstraint(
            "status IN ('pending', 'confirmed', 'failed')",
            name="ck_customer_links_status",
        ),
    )

    # Reconciliation sweep: WHERE status = 'pending' AND updated_at <= :cutoff
    op.create_index(
        "idx_customer_links_status_updated_at",
        "customer_links",
        ["status", "updated_at"],
    )


def downgrade() -> None:
    """Drops the table. Every account→customer link is lost."""
    op.drop_index("idx_customer_links_status_updated_at", table_name="customer_links")
    op.drop_table("customer_links")
