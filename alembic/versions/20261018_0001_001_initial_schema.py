"""Initial schema for subscriptions, episodes, settings and the play queue

Revision ID: 001
Revises:
Create Date: 2026-10-18

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
    # Create subscriptions table
    op.create_table(
        'subscriptions',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('feed_url', sa.String(2048), nullable=False),
        sa.Column('normalized_feed_url', sa.String(2048), unique=True, nullable=False),
        sa.Column('title', sa.String(512), nullable=False),
        sa.Column('description', sa.Text, nullable=True),
        sa.Column('website_url', sa.String(2048), nullable=True),
        sa.Column('author', sa.String(512), nullable=True),
        sa.Column('image_url', sa.String(2048), nullable=True),
        sa.Column('last_synced_at', sa.DateTime, nullable=True),
        sa.Column('etag', sa.String(512), nullable=True),
        sa.Column('last_modified', sa.String(128), nullable=True),
        sa.Column('created_at', sa.DateTime, nullable=True),
        sa.Column('updated_at', sa.DateTime, nullable=True),
    )

    # Create episodes table; download and playback state live on the row
    op.create_table(
        'episodes',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('subscription_id', sa.String(36), sa.ForeignKey('subscriptions.id', ondelete='CASCADE'), nullable=False),
        sa.Column('guid', sa.String(2048), nullable=False),
        sa.Column('title', sa.String(512), nullable=False),
        sa.Column('description', sa.Text, nullable=True),
        sa.Column('published_at', sa.DateTime, nullable=True),
        sa.Column('duration_millis', sa.BigInteger, nullable=True),
        sa.Column('enclosure_url', sa.String(2048), nullable=False),
        sa.Column('enclosure_type', sa.String(64), nullable=False),
        sa.Column('enclosure_length', sa.BigInteger, nullable=True),
        sa.Column('download_status', sa.String(32), nullable=False, server_default='not_downloaded'),
        sa.Column('download_bytes_received', sa.BigInteger, nullable=False, server_default='0'),
        sa.Column('download_bytes_total', sa.BigInteger, nullable=True),
        sa.Column('local_file_path', sa.String(1024), nullable=True),
        sa.Column('file_size_bytes', sa.BigInteger, nullable=True),
        sa.Column('download_error', sa.Text, nullable=True),
        sa.Column('download_attempt', sa.Integer, nullable=False, server_default='0'),
        sa.Column('playback_position_millis', sa.BigInteger, nullable=False, server_default='0'),
        sa.Column('playback_rate', sa.Float, nullable=False, server_default='1.0'),
        sa.Column('last_played_at', sa.DateTime, nullable=True),
        sa.Column('playback_completed', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime, nullable=True),
        sa.Column('updated_at', sa.DateTime, nullable=True),
        sa.UniqueConstraint('subscription_id', 'guid', name='uq_episode_subscription_guid'),
    )
    op.create_index('ix_episodes_subscription_id', 'episodes', ['subscription_id'])
    op.create_index('ix_episodes_download_status', 'episodes', ['download_status'])
    op.create_index('ix_episodes_published_at', 'episodes', ['published_at'])

    # Create settings table
    op.create_table(
        'settings',
        sa.Column('key', sa.String(64), primary_key=True),
        sa.Column('value', sa.Text, nullable=False),
    )

    # Create play queue table
    op.create_table(
        'play_queue',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('episode_id', sa.String(36), sa.ForeignKey('episodes.id', ondelete='CASCADE'), nullable=False),
        sa.Column('position', sa.Integer, nullable=False),
        sa.Column('created_at', sa.DateTime, nullable=True),
    )
    op.create_index('ix_play_queue_position', 'play_queue', ['position'])


def downgrade() -> None:
    op.drop_table('play_queue')
    op.drop_table('settings')
    op.drop_table('episodes')
    op.drop_table('subscriptions')
