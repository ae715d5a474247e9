"""add ip location table

Revision ID: 3a7c1e9d2b60
Revises:
Create Date: 2026-10-19 09:10:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "3a7c1e9d2b60"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    # The app also creates this table on startup, so it may already exist.
    if sa.inspect(op.get_bind()).has_table("ip_location"):
        return

    op.create_table(
        "ip_location",
        sa.Column("ip", sa.String(length=64), nullable=False),
        sa.Column("nation", sa.String(length=64), nullable=True),
        sa.Column("province", sa.String(length=64), nullable=True),
        sa.Column("city", sa.String(length=64), nullable=True),
        sa.Column("district", sa.String(length=64), nullable=True),
        sa.Column("lat", sa.Float(), nullable=True),
        sa.Column("lon", sa.Float(), nullable=True),
        sa.PrimaryKeyConstraint("ip"),
    )
    with op.batch_alter_table("ip_location", schema=None) as batch_op:
        batch_op.create_index("ix_ip_location_ip", ["ip"], unique=True)
        batch_op.create_index(batch_op.f("ix_ip_location_nation"), ["nation"], unique=False)


def downgrade():
    with op.batch_alter_table("ip_location", schema=None) as batch_op:
        batch_op.drop_index(batch_op.f("ix_ip_location_nation"))
        batch_op.drop_index("ix_ip_location_ip")
    op.drop_table("ip_location")
