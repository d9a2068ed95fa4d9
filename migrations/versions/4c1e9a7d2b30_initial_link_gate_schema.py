"""Initial link gate schema: projects, vendors, quotas, links, questions, answers, consents, flags

Revision ID: 4c1e9a7d2b30
Revises:
Create Date: 2026-10-17 09:12:41.503118

"""
import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '4c1e9a7d2b30'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Create projects table
    op.create_table('projects',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False, default=sa.text('gen_random_uuid()')),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('survey_url', sa.String(length=2048), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='DRAFT'),
        sa.Column('target_completions', sa.Integer(), nullable=False, server_default=sa.text('100')),
        sa.Column('current_completions', sa.Integer(), nullable=False, server_default=sa.text('0')),
        sa.Column('settings', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint('current_completions >= 0', name='ck_project_current_nonnegative'),
        sa.CheckConstraint('current_completions <= target_completions', name='ck_project_within_target'),
        sa.PrimaryKeyConstraint('id')
    )

    # Create vendors table
    op.create_table('vendors',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False, default=sa.text('gen_random_uuid()')),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('code', sa.String(length=32), nullable=True),
        sa.Column('contact_email', sa.String(length=255), nullable=True),
        sa.Column('settings', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('code')
    )

    # Create project/vendor quota table
    op.create_table('project_vendors',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False, default=sa.text('gen_random_uuid()')),
        sa.Column('project_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('vendor_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('quota', sa.Integer(), nullable=False, server_default=sa.text('0')),
        sa.Column('current_count', sa.Integer(), nullable=False, server_default=sa.text('0')),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint('current_count >= 0', name='ck_vendor_count_nonnegative'),
        sa.CheckConstraint('current_count <= quota', name='ck_vendor_count_within_quota'),
        sa.ForeignKeyConstraint(['project_id'], ['projects.id'], ),
        sa.ForeignKeyConstraint(['vendor_id'], ['vendors.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('project_id', 'vendor_id', name='uq_project_vendor')
    )

    # Create survey links table
    op.create_table('survey_links',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False, default=sa.text('gen_random_uuid()')),
        sa.Column('uid', sa.String(length=64), nullable=False),
        sa.Column('project_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('vendor_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='UNUSED'),
        sa.Column('variant', sa.String(length=10), nullable=False, server_default='LIVE'),
        sa.Column('version', sa.Integer(), nullable=False, server_default=sa.text('1')),
        sa.Column('issued_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('clicked_at', sa.DateTime(), nullable=True),
        sa.Column('last_seen_at', sa.DateTime(), nullable=True),
        sa.Column('qualified_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('terminated_at', sa.DateTime(), nullable=True),
        sa.Column('ip_address', sa.String(length=64), nullable=True),
        sa.Column('user_agent', sa.Text(), nullable=True),
        sa.Column('geo_data', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('client_metadata', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('allowed_countries', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('current_question_key', sa.String(length=100), nullable=True),
        sa.Column('traversal_count', sa.Integer(), nullable=False, server_default=sa.text('0')),
        sa.Column('disqualification_reason', sa.String(length=255), nullable=True),
        sa.Column('reservation_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.ForeignKeyConstraint(['project_id'], ['projects.id'], ),
        sa.ForeignKeyConstraint(['vendor_id'], ['vendors.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_survey_links_uid'), 'survey_links', ['uid'], unique=True)
    op.create_index('idx_link_project_status', 'survey_links', ['project_id', 'status'], unique=False)
    op.create_index('idx_link_vendor', 'survey_links', ['vendor_id'], unique=False)

    # Create quota reservations table
    op.create_table('quota_reservations',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False, default=sa.text('gen_random_uuid()')),
        sa.Column('project_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('vendor_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('link_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('state', sa.String(length=20), nullable=False, server_default='RESERVED'),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('resolved_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['project_id'], ['projects.id'], ),
        sa.ForeignKeyConstraint(['vendor_id'], ['vendors.id'], ),
        sa.ForeignKeyConstraint(['link_id'], ['survey_links.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('idx_reservation_project_state', 'quota_reservations', ['project_id', 'state'], unique=False)

    # Create questions table
    op.create_table('questions',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False, default=sa.text('gen_random_uuid()')),
        sa.Column('project_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('key', sa.String(length=100), nullable=False),
        sa.Column('sequence', sa.Integer(), nullable=False),
        sa.Column('text', sa.Text(), nullable=False),
        sa.Column('is_required', sa.Boolean(), nullable=False, server_default=sa.text('true')),
        sa.Column('options', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['project_id'], ['projects.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('project_id', 'key', name='uq_question_project_key')
    )
    op.create_index('idx_question_project_sequence', 'questions', ['project_id', 'sequence'], unique=False)

    # Create answer records table
    op.create_table('answer_records',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False, default=sa.text('gen_random_uuid()')),
        sa.Column('link_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('question_key', sa.String(length=100), nullable=False),
        sa.Column('value', sa.Text(), nullable=False),
        sa.Column('source', sa.String(length=20), nullable=False, server_default='ORIGINAL'),
        sa.Column('answered_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['link_id'], ['survey_links.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('idx_answer_link_question', 'answer_records', ['link_id', 'question_key', 'source'], unique=False)

    # Create consent records table
    op.create_table('consent_records',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False, default=sa.text('gen_random_uuid()')),
        sa.Column('link_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('consent_key', sa.String(length=100), nullable=False),
        sa.Column('granted', sa.Boolean(), nullable=False),
        sa.Column('required', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('recorded_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['link_id'], ['survey_links.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('link_id', 'consent_key', name='uq_consent_link_key')
    )

    # Create flags table
    op.create_table('flags',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False, default=sa.text('gen_random_uuid()')),
        sa.Column('link_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('project_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('reason', sa.String(length=100), nullable=False),
        sa.Column('severity', sa.String(length=20), nullable=False, server_default='LOW'),
        sa.Column('message', sa.Text(), nullable=True),
        sa.Column('flag_metadata', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['link_id'], ['survey_links.id'], ),
        sa.ForeignKeyConstraint(['project_id'], ['projects.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('idx_flag_link', 'flags', ['link_id'], unique=False)
    op.create_index('idx_flag_project_reason', 'flags', ['project_id', 'reason'], unique=False)


def downgrade() -> None:
    op.drop_index('idx_flag_project_reason', table_name='flags')
    op.drop_index('idx_flag_link', table_name='flags')
    op.drop_table('flags')
    op.drop_table('consent_records')
    op.drop_index('idx_answer_link_question', table_name='answer_records')
    op.drop_table('answer_records')
    op.drop_index('idx_question_project_sequence', table_name='questions')
    op.drop_table('questions')
    op.drop_index('idx_reservation_project_state', table_name='quota_reservations')
    op.drop_table('quota_reservations')
    op.drop_index('idx_link_vendor', table_name='survey_links')
    op.drop_index('idx_link_project_status', table_name='survey_links')
    op.drop_index(op.f('ix_survey_links_uid'), table_name='survey_links')
    op.drop_table('survey_links')
    op.drop_table('project_vendors')
    op.drop_table('vendors')
    op.drop_table('projects')
