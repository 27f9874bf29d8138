"""Initial schema: users, technicians, categories, locations, requests, audit log.

Revision ID: 001
Revises:
Create Date: 2026-10-18

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

REQUEST_STATUSES = (
    'pending', 'assigned', 'accepted', 'in_progress', 'on_hold',
    'completed', 'rejected', 'cancelled',
)
REQUEST_ACTIONS = (
    'create', 'assign', 'accept', 'reject', 'start', 'hold', 'resume',
    'complete', 'cancel', 'update',
)


def upgrade() -> None:
    op.create_table(
        'users',
        sa.Column('id', sa.Uuid, primary_key=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('role', sa.Enum('requester', 'technician', 'admin', name='userrole'), nullable=False, server_default='requester'),
        sa.Column('is_active', sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime, nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)
    op.create_index('ix_users_role', 'users', ['role'])

    op.create_table(
        'technicians',
        sa.Column('id', sa.Uuid, primary_key=True),
        sa.Column('user_id', sa.Uuid, sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False, unique=True),
        sa.Column('specialty', sa.String(100)),
        sa.Column('is_available', sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime, nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_technicians_is_available', 'technicians', ['is_available'])

    op.create_table(
        'categories',
        sa.Column('id', sa.Uuid, primary_key=True),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('name_th', sa.String(100)),
        sa.Column('sort_order', sa.Integer, nullable=False, server_default='0'),
        sa.Column('is_active', sa.Boolean, nullable=False, server_default=sa.true()),
    )

    op.create_table(
        'locations',
        sa.Column('id', sa.Uuid, primary_key=True),
        sa.Column('building', sa.String(100), nullable=False),
        sa.Column('floor', sa.String(20)),
        sa.Column('room', sa.String(50)),
        sa.Column('is_active', sa.Boolean, nullable=False, server_default=sa.true()),
    )

    op.create_table(
        'requests',
        sa.Column('id', sa.Uuid, primary_key=True),
        sa.Column('request_number', sa.String(20), nullable=False),
        sa.Column('status', sa.Enum(*REQUEST_STATUSES, name='requeststatus'), nullable=False, server_default='pending'),
        sa.Column('requester_id', sa.Uuid, sa.ForeignKey('users.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('technician_id', sa.Uuid, sa.ForeignKey('technicians.id', ondelete='SET NULL')),
        sa.Column('category_id', sa.Uuid, sa.ForeignKey('categories.id'), nullable=False),
        sa.Column('location_id', sa.Uuid, sa.ForeignKey('locations.id'), nullable=False),
        sa.Column('title', sa.String(200), nullable=False),
        sa.Column('description', sa.Text),
        sa.Column('priority', sa.Enum('low', 'normal', 'high', 'urgent', name='priority'), nullable=False, server_default='normal'),
        sa.Column('preferred_date', sa.Date),
        sa.Column('preferred_time', sa.String(50)),
        sa.Column('assigned_at', sa.DateTime),
        sa.Column('started_at', sa.DateTime),
        sa.Column('completed_at', sa.DateTime),
        sa.Column('deleted_at', sa.DateTime),
        sa.Column('created_at', sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime, nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_requests_request_number', 'requests', ['request_number'], unique=True)
    op.create_index('ix_requests_status', 'requests', ['status'])
    op.create_index('ix_requests_requester_id', 'requests', ['requester_id'])
    op.create_index('ix_requests_technician_id', 'requests', ['technician_id'])
    op.create_index('ix_requests_deleted_at', 'requests', ['deleted_at'])
    op.create_index('ix_requests_created_at', 'requests', ['created_at'])

    # Append-only audit log; RESTRICT keeps history even if a request row is purged by hand
    op.create_table(
        'request_logs',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('request_id', sa.Uuid, sa.ForeignKey('requests.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('action', sa.Enum(*REQUEST_ACTIONS, name='requestaction'), nullable=False),
        sa.Column('old_status', postgresql.ENUM(*REQUEST_STATUSES, name='requeststatus', create_type=False)),
        sa.Column('new_status', postgresql.ENUM(*REQUEST_STATUSES, name='requeststatus', create_type=False), nullable=False),
        sa.Column('note', sa.Text),
        sa.Column('actor_id', sa.Uuid, sa.ForeignKey('users.id', ondelete='SET NULL')),
        sa.Column('created_at', sa.DateTime, nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_request_logs_request_id', 'request_logs', ['request_id'])
    op.create_index('ix_request_logs_actor_id', 'request_logs', ['actor_id'])
    op.create_index('ix_request_logs_created_at', 'request_logs', ['created_at'])

    op.create_table(
        'request_sequences',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('prefix', sa.String(20), nullable=False),
        sa.Column('last_value', sa.Integer, nullable=False, server_default='0'),
        sa.Column('updated_at', sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint('prefix', name='uq_request_sequences_prefix'),
        sa.CheckConstraint('last_value >= 0', name='chk_last_value_non_negative'),
    )

    op.create_table(
        'notifications',
        sa.Column('id', sa.Uuid, primary_key=True),
        sa.Column('user_id', sa.Uuid, sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('request_id', sa.Uuid, sa.ForeignKey('requests.id', ondelete='CASCADE')),
        sa.Column('type', sa.String(50), nullable=False),
        sa.Column('title', sa.String(200), nullable=False),
        sa.Column('message', sa.Text, nullable=False),
        sa.Column('link', sa.String(500)),
        sa.Column('is_read', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime, nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_notifications_user_id', 'notifications', ['user_id'])
    op.create_index('ix_notifications_is_read', 'notifications', ['is_read'])
    op.create_index('ix_notifications_created_at', 'notifications', ['created_at'])


def downgrade() -> None:
    # Drop tables
    op.drop_table('notifications')
    op.drop_table('request_sequences')
    op.drop_table('request_logs')
    op.drop_table('requests')
    op.drop_table('locations')
    op.drop_table('categories')
    op.drop_table('technicians')
    op.drop_table('users')

    # Drop enums
    op.execute('DROP TYPE IF EXISTS requestaction')
    op.execute('DROP TYPE IF EXISTS priority')
    op.execute('DROP TYPE IF EXISTS requeststatus')
    op.execute('DROP TYPE IF EXISTS userrole')
