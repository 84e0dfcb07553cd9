"""Add provision_attempt to customer_links

Revision ID: 002
Revises: 001
Create Date: 2026-10-20 00:00:00.000000+00:00

Generation number for the Stripe idempotency key. Existing rows start at 0,
which matches the key their original create call used.
"""

from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa

# revision identifiers
revision: str = "002"
down_revision: Union[str, None] = "001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.add_column(
        "customer_links",
        sa.Column(
            "provision_attempt",
            sa.Integer(),
            nullable=False,
            server_default=sa.text("0"),
            comment="Idempotency key generation for provider create calls",
        ),
    )


def downgrade() -> None:
    op.drop_column("customer_links", "provision_attempt")
