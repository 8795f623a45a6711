# migrations/versions/001_initial_schema.py
"""initial schema

Revision ID: 001
Revises: 
Create Date: 2026-10-19

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '001'
down_revision = None
branch_labels = None
depends_on = None

def upgrade():
    # Tabela license_templates
    op.create_table('license_templates',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('owner_id', sa.BigInteger(), nullable=False),
        sa.Column('name', sa.String(length=64), nullable=False),
        sa.Column('allow_redistribution', sa.Boolean(), nullable=False),
        sa.Column('allow_modification', sa.Boolean(), nullable=False),
        sa.Column('allow_backup', sa.Boolean(), nullable=False),
        sa.Column('restrictions_note', sa.Text(), nullable=True),
        sa.Column('usage_count', sa.Integer(), server_default=sa.text('0'), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )

    # Tabela user_settings
    op.create_table('user_settings',
        sa.Column('user_id', sa.BigInteger(), autoincrement=False, nullable=False),
        sa.Column('auto_publish_enabled', sa.Boolean(), server_default=sa.text('false'), nullable=False),
        sa.Column('skip_auto_publish_confirmation', sa.Boolean(), server_default=sa.text('false'), nullable=False),
        sa.Column('default_template_id', sa.Integer(), nullable=True),
        sa.Column('default_system_license_name', sa.String(length=200), nullable=True),
        sa.Column('default_system_backup_override', sa.Boolean(), nullable=True),
        sa.CheckConstraint('default_template_id IS NULL OR default_system_license_name IS NULL', name='single_default_license'),
        sa.PrimaryKeyConstraint('user_id')
    )

    # Tabela published_posts (license columns are copies, template_id is not a foreign key)
    op.create_table('published_posts',
        sa.Column('thread_id', sa.BigInteger(), autoincrement=False, nullable=False),
        sa.Column('message_id', sa.BigInteger(), nullable=False),
        sa.Column('user_id', sa.BigInteger(), nullable=False),
        sa.Column('backup_allowed', sa.Boolean(), nullable=False),
        sa.Column('license_name', sa.String(length=200), nullable=False),
        sa.Column('license_source', sa.String(length=20), nullable=False),
        sa.Column('template_id', sa.Integer(), nullable=True),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('revision', sa.Integer(), server_default=sa.text('1'), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.CheckConstraint("license_source IN ('template', 'system')", name='valid_license_source'),
        sa.CheckConstraint('revision > 0', name='positive_revision'),
        sa.PrimaryKeyConstraint('thread_id'),
        sa.UniqueConstraint('message_id')
    )

    # Índices
    op.create_index('ix_license_templates_owner_id', 'license_templates', ['owner_id'], unique=False)
    op.create_index('ix_published_posts_user_id', 'published_posts', ['user_id'], unique=False)
    op.create_index('ix_published_posts_template_id', 'published_posts', ['template_id'], unique=False)

def downgrade():
    op.drop_index('ix_published_posts_template_id', table_name='published_posts')
    op.drop_index('ix_published_posts_user_id', table_name='published_posts')
    op.drop_index('ix_license_templates_owner_id', table_name='license_templates')
    op.drop_table('published_posts')
    op.drop_table('user_settings')
    op.drop_table('license_templates')
