"""add_trade_close_claim

Revision ID: b7e2d4c90a13
Revises: 3f9c1a7d2b10
Create Date: 2026-10-19 14:03:51.904417

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = 'b7e2d4c90a13'
down_revision: Union[str, Sequence[str], None] = '3f9c1a7d2b10'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    # Exit swap in flight outside the row lock; cleared when the outcome is recorded
    op.add_column('trades', sa.Column('closing_started_at', sa.DateTime(timezone=True), nullable=True, comment='Close claimed by a worker (exit swap in flight)'))


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_column('trades', 'closing_started_at')
