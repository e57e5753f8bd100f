"""add pending challenge index and device check toggle

Revision ID: 8c4f2b6d1e37
Revises: 5d2e9a71c4b0
Create Date: 2026-10-19 15:00:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "8c4f2b6d1e37"
down_revision: Union[str, Sequence[str], None] = "5d2e9a71c4b0"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.add_column(
        "protection_settings",
        sa.Column("device_check_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
    )
    op.alter_column("protection_settings", "device_check_enabled", server_default=None)

    # Keep only the newest pending challenge per email before enforcing uniqueness.
    op.execute(
        "UPDATE verification_challenges SET status = 'superseded' "
        "WHERE status = 'pending' AND id NOT IN ("
        "SELECT MAX(id) FROM verification_challenges WHERE status = 'pending' GROUP BY email)"
    )
    op.create_index(
        "uq_verification_challenges_pending_email",
        "verification_challenges",
        ["email"],
        unique=True,
        postgresql_where=sa.text("status = 'pending'"),
        sqlite_where=sa.text("status = 'pending'"),
    )


def downgrade() -> None:
    op.drop_index("uq_verification_challenges_pending_email", table_name="verification_challenges")
    op.drop_column("protection_settings", "device_check_enabled")
