"""Add last_renewal_failure_on to profiles table.

Revision ID: 2026_10_19_0002
Revises: 2026_10_19_0001
Create Date: 2026-10-19

"""

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision = "2026_10_19_0002"
down_revision = "2026_10_19_0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    """Add the day of the last counted renewal failure."""
    op.add_column(
        "profiles",
        sa.Column("last_renewal_failure_on", sa.Date(), nullable=True),
    )


def downgrade() -> None:
    """Remove last_renewal_failure_on from profiles table."""
    op.drop_column("profiles", "last_renewal_failure_on")
