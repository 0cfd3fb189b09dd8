"""Contact segments

Revision ID: 0002_contact_segments
Revises: 0001_initial
Create Date: 2026-10-18

Creates contact_segments (saved broadcast audiences) with the same
row-level security policy as the other tenant tables.
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, UUID

revision = '0002_contact_segments'
down_revision = '0001_initial'
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'contact_segments',
        sa.Column('id', UUID(as_uuid=True), server_default=sa.text('gen_random_uuid()'), nullable=False),
        sa.Column('organization_id', UUID(as_uuid=True), nullable=False),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('criteria', JSONB(), server_default='{}', nullable=False),
        sa.Column('contact_count', sa.Integer(), server_default='0', nullable=False),
        sa.Column('is_active', sa.Boolean(), server_default=sa.text('true'), nullable=False),
        sa.Column('created_by', UUID(as_uuid=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['organization_id'], ['organizations.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['created_by'], ['profiles.id'], ondelete='SET NULL'),
        sa.UniqueConstraint('organization_id', 'name', name='uq_contact_segments_org_name'),
    )
    op.create_index('ix_contact_segments_organization_id', 'contact_segments', ['organization_id'])

    op.execute('ALTER TABLE contact_segments ENABLE ROW LEVEL SECURITY')
    op.execute(
        """
        CREATE POLICY tenant_isolation ON contact_segments
        USING (organization_id = NULLIF(current_setting('app.current_organization_id', true), '')::uuid)
        WITH CHECK (organization_id = NULLIF(current_setting('app.current_organization_id', true), '')::uuid)
        """
    )


def downgrade():
    op.execute('DROP POLICY IF EXISTS tenant_isolation ON contact_segments')
    op.drop_table('contact_segments')
