"""Initial schema: anonymous identities, rooms, messages, room keys.

Revision ID: 001
Revises:
Create Date: 2026-10-18 12:00:00

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'anonymous_identities',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('signed_out_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )

    op.create_table(
        'rooms',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('mood', sa.String(20), nullable=False),
        sa.Column('user1_id', sa.Uuid(), nullable=False),
        sa.Column('user2_id', sa.Uuid(), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='waiting'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint(
            "status IN ('waiting', 'active', 'ended')", name='room_status_check'
        ),
        sa.CheckConstraint(
            'user2_id IS NULL OR user2_id != user1_id', name='room_distinct_users_check'
        ),
    )
    op.create_index('ix_rooms_mood_status_created', 'rooms', ['mood', 'status', 'created_at'])

    op.create_table(
        'messages',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('room_id', sa.Uuid(), nullable=False),
        sa.Column('sender_id', sa.Uuid(), nullable=False),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('iv', sa.String(64), nullable=False),
        sa.Column('sender_public_key', sa.String(128), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['room_id'], ['rooms.id'], ondelete='CASCADE'),
    )
    op.create_index('ix_messages_room_id', 'messages', ['room_id'])

    op.create_table(
        'room_keys',
        sa.Column('room_id', sa.Uuid(), nullable=False),
        sa.Column('encrypted_room_key', sa.Text(), nullable=False),
        sa.Column('shared_by', sa.Uuid(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('room_id'),
        sa.ForeignKeyConstraint(['room_id'], ['rooms.id'], ondelete='CASCADE'),
    )


def downgrade() -> None:
    op.drop_table('room_keys')
    op.drop_index('ix_messages_room_id', table_name='messages')
    op.drop_table('messages')
    op.drop_index('ix_rooms_mood_status_created', table_name='rooms')
    op.drop_table('rooms')
    op.drop_table('anonymous_identities')
