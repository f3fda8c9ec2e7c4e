"""Donor availability flag on cohort memberships

Revision ID: 0002_membership_availability
Revises: 0001_initial_schema
Create Date: 2024-02-12 00:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "0002_membership_availability"
down_revision = "0001_initial_schema"
branch_labels = None
depends_on = None


def upgrade():
    with op.batch_alter_table("cohort_memberships") as batch_op:
        batch_op.add_column(
            sa.Column(
                "donor_available",
                sa.Boolean(),
                server_default=sa.true(),
                nullable=False,
            )
        )


def downgrade():
    with op.batch_alter_table("cohort_memberships") as batch_op:
        batch_op.drop_column("donor_available")
