"""Add user_notification_state table for activity watermarks

Revision ID: activity_watermarks
Revises:
Create Date: 2026-10-19 12:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = 'activity_watermarks'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table('user_notification_state',
    sa.Column('id', sa.Uuid(), nullable=False),
    sa.Column('user_id', sa.String(), nullable=False),
    sa.Column('role', sa.String(), nullable=False),
    sa.Column('key', sa.String(), nullable=False),
    sa.Column('seen_at', sa.DateTime(timezone=True), nullable=True),
    sa.PrimaryKeyConstraint('id'),
    sa.UniqueConstraint('user_id', 'role', 'key', name='uq_user_notif_state_role_key')
    )
    op.create_index(op.f('ix_user_notification_state_user_id'), 'user_notification_state', ['user_id'], unique=False)


def downgrade() -> None:
    op.drop_index(op.f('ix_user_notification_state_user_id'), table_name='user_notification_state')
    op.drop_table('user_notification_state')
