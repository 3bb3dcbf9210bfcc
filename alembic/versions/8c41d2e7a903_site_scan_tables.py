"""site scan tables

Revision ID: 8c41d2e7a903
Revises:
Create Date: 2026-10-19 09:12:44.318204

Creates site_scan_substation (analyzed sites, unique on name + coordinates)
and site_scan_session (scan history). New databases also get these tables
from create_all() in the app lifespan; stamp them with `alembic stamp head`.
"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = '8c41d2e7a903'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'site_scan_substation',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('external_id', sa.String(length=100), nullable=True),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('address', sa.Text(), nullable=True),
        sa.Column('latitude', sa.Numeric(precision=10, scale=7), nullable=False),
        sa.Column('longitude', sa.Numeric(precision=10, scale=7), nullable=False),
        sa.Column('city', sa.String(length=100), nullable=True),
        sa.Column('state', sa.String(length=100), nullable=True),
        sa.Column('capacity_mva', sa.Float(), nullable=True),
        sa.Column('capacity_min_mw', sa.Float(), nullable=True),
        sa.Column('capacity_max_mw', sa.Float(), nullable=True),
        sa.Column('confidence', sa.Float(), nullable=True),
        sa.Column('load_factor', sa.Float(), nullable=True),
        sa.Column('voltage_level', sa.String(length=50), nullable=True),
        sa.Column('utility_owner', sa.String(length=255), nullable=True),
        sa.Column('interconnection_type', sa.String(length=50), nullable=True),
        sa.Column('ownership_confidence', sa.Float(), nullable=True),
        sa.Column('ownership_source', sa.String(length=100), nullable=True),
        sa.Column('status', sa.String(length=30), nullable=True),
        sa.Column('coordinates_source', sa.String(length=50), nullable=True),
        sa.Column('stored_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('name', 'latitude', 'longitude', name='uq_site_scan_natural_key'),
    )
    op.create_index('idx_site_scan_location', 'site_scan_substation', ['latitude', 'longitude'])
    op.create_index(
        op.f('ix_site_scan_substation_state'), 'site_scan_substation', ['state']
    )
    op.create_index(
        op.f('ix_site_scan_substation_coordinates_source'),
        'site_scan_substation',
        ['coordinates_source'],
    )

    op.create_table(
        'site_scan_session',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('scan_id', sa.String(length=64), nullable=False),
        sa.Column('query', sa.JSON(), nullable=False),
        sa.Column('phase', sa.String(length=20), nullable=False),
        sa.Column('progress', sa.Integer(), nullable=False),
        sa.Column('sites_discovered', sa.Integer(), nullable=True),
        sa.Column('sites_analyzed', sa.Integer(), nullable=True),
        sa.Column('sites_failed', sa.Integer(), nullable=True),
        sa.Column('sites_stored', sa.Integer(), nullable=True),
        sa.Column('warnings', sa.JSON(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('started_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_site_scan_session_scan_id'), 'site_scan_session', ['scan_id'], unique=True)
    op.create_index(op.f('ix_site_scan_session_phase'), 'site_scan_session', ['phase'])


def downgrade() -> None:
    op.drop_index(op.f('ix_site_scan_session_phase'), table_name='site_scan_session')
    op.drop_index(op.f('ix_site_scan_session_scan_id'), table_name='site_scan_session')
    op.drop_table('site_scan_session')
    op.drop_index(op.f('ix_site_scan_substation_coordinates_source'), table_name='site_scan_substation')
    op.drop_index(op.f('ix_site_scan_substation_state'), table_name='site_scan_substation')
    op.drop_index('idx_site_scan_location', table_name='site_scan_substation')
    op.drop_table('site_scan_substation')
