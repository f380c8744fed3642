"""Create pipeline, spread and audit tables

Revision ID: 001
Revises:
Create Date: 2026-10-19

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

ENUMS = {
    'documentstatus': ('PENDING', 'EXTRACTED', 'FAILED'),
    'jobkind': ('EXTRACT_DOCUMENT', 'RENDER_SPREADS'),
    'jobstatus': ('QUEUED', 'RUNNING', 'SUCCEEDED', 'FAILED'),
    'spreadstatus': ('QUEUED', 'READY', 'ERROR'),
    'ledgerseverity': ('INFO', 'WARNING', 'ERROR'),
}


def _enum(name: str) -> sa.Enum:
    return sa.Enum(*ENUMS[name], name=name, create_type=False)


def upgrade() -> None:
    for name, labels in ENUMS.items():
        postgresql.ENUM(*labels, name=name, create_type=True).create(op.get_bind(), checkfirst=True)

    # Source documents
    op.create_table(
        'source_documents',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('tenant_id', sa.String(64), nullable=False),
        sa.Column('case_id', sa.String(64), nullable=False),
        sa.Column('filename', sa.String(255), nullable=False, server_default=''),
        sa.Column('document_type', sa.String(64), nullable=True),
        sa.Column('doc_type_hint', sa.String(64), nullable=True),
        sa.Column('ocr_text', sa.Text(), nullable=False, server_default=''),
        sa.Column('structured_fields', postgresql.JSONB(), nullable=True),
        sa.Column('sha256', sa.String(64), nullable=True),
        sa.Column('tax_year', sa.Integer(), nullable=True),
        sa.Column('status', _enum('documentstatus'), nullable=False, server_default='PENDING'),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_source_documents_id', 'source_documents', ['id'])
    op.create_index('ix_source_documents_tenant_id', 'source_documents', ['tenant_id'])
    op.create_index('ix_source_documents_case_id', 'source_documents', ['case_id'])
    op.create_index('ix_source_documents_sha256', 'source_documents', ['sha256'])

    # Facts
    op.create_table(
        'financial_facts',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('tenant_id', sa.String(64), nullable=False),
        sa.Column('case_id', sa.String(64), nullable=False),
        sa.Column('source_document_id', sa.String(64), nullable=False),
        sa.Column('fact_type', sa.String(64), nullable=False),
        sa.Column('fact_key', sa.String(128), nullable=False),
        sa.Column('fact_period_start', sa.String(10), nullable=True),
        sa.Column('fact_period_end', sa.String(10), nullable=True),
        sa.Column('fact_value_num', sa.Float(), nullable=True),
        sa.Column('fact_value_text', sa.Text(), nullable=True),
        sa.Column('currency', sa.String(3), nullable=False, server_default='USD'),
        sa.Column('confidence', sa.Float(), nullable=True),
        sa.Column('provenance', postgresql.JSONB(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint(
            'tenant_id', 'case_id', 'source_document_id', 'fact_type', 'fact_key',
            'fact_period_start', 'fact_period_end',
            name='uq_financial_facts_identity',
        ),
    )
    op.create_index('ix_financial_facts_case_id', 'financial_facts', ['case_id'])
    op.create_index('ix_financial_facts_source_document_id', 'financial_facts', ['source_document_id'])
    op.create_index('ix_financial_facts_lookup', 'financial_facts', ['tenant_id', 'case_id', 'fact_type', 'fact_key'])

    op.create_table(
        'rent_roll_rows',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('tenant_id', sa.String(64), nullable=False),
        sa.Column('case_id', sa.String(64), nullable=False),
        sa.Column('source_document_id', sa.String(64), nullable=False),
        sa.Column('as_of_date', sa.String(10), nullable=True),
        sa.Column('unit_id', sa.String(64), nullable=False),
        sa.Column('unit_type', sa.String(64), nullable=True),
        sa.Column('sqft', sa.Float(), nullable=True),
        sa.Column('tenant_name', sa.String(255), nullable=True),
        sa.Column('lease_start', sa.String(10), nullable=True),
        sa.Column('lease_end', sa.String(10), nullable=True),
        sa.Column('monthly_rent', sa.Float(), nullable=True),
        sa.Column('annual_rent', sa.Float(), nullable=True),
        sa.Column('market_rent_monthly', sa.Float(), nullable=True),
        sa.Column('occupancy_status', sa.String(16), nullable=False, server_default='OCCUPIED'),
        sa.Column('concessions_monthly', sa.Float(), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('row_index', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_rent_roll_rows_case_id', 'rent_roll_rows', ['case_id'])
    op.create_index('ix_rent_roll_rows_source_document_id', 'rent_roll_rows', ['source_document_id'])

    # Jobs
    op.create_table(
        'pipeline_jobs',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('tenant_id', sa.String(64), nullable=False),
        sa.Column('case_id', sa.String(64), nullable=False),
        sa.Column('kind', _enum('jobkind'), nullable=False),
        sa.Column('status', _enum('jobstatus'), nullable=False, server_default='QUEUED'),

        # Retry tracking
        sa.Column('attempt', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_attempts', sa.Integer(), nullable=False, server_default='3'),

        # Lease
        sa.Column('lease_owner', sa.String(255), nullable=True),
        sa.Column('leased_until', sa.DateTime(), nullable=True),
        sa.Column('next_run_at', sa.DateTime(), nullable=False),

        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('kind_metadata', postgresql.JSONB(), nullable=True),

        # Timestamps
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_pipeline_jobs_case_id', 'pipeline_jobs', ['case_id'])
    op.create_index('ix_pipeline_jobs_due', 'pipeline_jobs', ['kind', 'status', 'next_run_at'])

    # Spreads
    op.create_table(
        'stored_spreads',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('tenant_id', sa.String(64), nullable=False),
        sa.Column('case_id', sa.String(64), nullable=False),
        sa.Column('spread_type', sa.String(64), nullable=False),
        sa.Column('status', _enum('spreadstatus'), nullable=False, server_default='QUEUED'),
        sa.Column('payload', postgresql.JSONB(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('generated_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('tenant_id', 'case_id', 'spread_type', name='uq_stored_spreads_case_type'),
    )
    op.create_index('ix_stored_spreads_case_id', 'stored_spreads', ['case_id'])

    # Decisions and committee
    op.create_table(
        'credit_decisions',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('tenant_id', sa.String(64), nullable=False),
        sa.Column('case_id', sa.String(64), nullable=False),
        sa.Column('status', sa.String(32), nullable=False, server_default='draft'),
        sa.Column('outcome', sa.String(64), nullable=True),
        sa.Column('summary', sa.Text(), nullable=True),
        sa.Column('confidence', sa.Float(), nullable=True),
        sa.Column('confidence_explanation', sa.Text(), nullable=True),
        sa.Column('created_by_user_id', sa.String(64), nullable=True),
        sa.Column('model', sa.String(128), nullable=True),
        sa.Column('policy_results', postgresql.JSONB(), nullable=True),
        sa.Column('committee_minutes', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_credit_decisions_case_id', 'credit_decisions', ['case_id'])

    op.create_table(
        'decision_overrides',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('decision_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('field_path', sa.String(255), nullable=False),
        sa.Column('old_value', postgresql.JSONB(), nullable=True),
        sa.Column('new_value', postgresql.JSONB(), nullable=True),
        sa.Column('reason', sa.Text(), nullable=True),
        sa.Column('justification', sa.Text(), nullable=True),
        sa.Column('severity', sa.String(32), nullable=True),
        sa.Column('created_by_user_id', sa.String(64), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['decision_id'], ['credit_decisions.id'], ondelete='CASCADE'),
    )
    op.create_index('ix_decision_overrides_decision_id', 'decision_overrides', ['decision_id'])

    op.create_table(
        'decision_attestations',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('decision_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('attested_by_user_id', sa.String(64), nullable=False),
        sa.Column('attested_by_name', sa.String(255), nullable=True),
        sa.Column('attested_role', sa.String(64), nullable=True),
        sa.Column('statement', sa.Text(), nullable=False),
        sa.Column('snapshot_hash', sa.String(64), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['decision_id'], ['credit_decisions.id'], ondelete='CASCADE'),
    )
    op.create_index('ix_decision_attestations_decision_id', 'decision_attestations', ['decision_id'])

    op.create_table(
        'committee_members',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('tenant_id', sa.String(64), nullable=False),
        sa.Column('case_id', sa.String(64), nullable=False),
        sa.Column('user_id', sa.String(64), nullable=False),
        sa.Column('name', sa.String(255), nullable=True),
        sa.Column('role', sa.String(64), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_committee_members_case_id', 'committee_members', ['case_id'])

    op.create_table(
        'committee_votes',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('tenant_id', sa.String(64), nullable=False),
        sa.Column('case_id', sa.String(64), nullable=False),
        sa.Column('voter_user_id', sa.String(64), nullable=False),
        sa.Column('voter_name', sa.String(255), nullable=True),
        sa.Column('vote', sa.String(32), nullable=False),
        sa.Column('comment', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_committee_votes_case_id', 'committee_votes', ['case_id'])

    # Snapshots (append-only; hash beside the body)
    op.create_table(
        'decision_snapshots',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('tenant_id', sa.String(64), nullable=False),
        sa.Column('case_id', sa.String(64), nullable=False),
        sa.Column('decision_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('snapshot_version', sa.String(16), nullable=False, server_default='1.0'),
        sa.Column('sequence', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('body', postgresql.JSONB(), nullable=False),
        sa.Column('snapshot_hash', sa.String(64), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['decision_id'], ['credit_decisions.id']),
    )
    op.create_index('ix_decision_snapshots_case_id', 'decision_snapshots', ['case_id'])
    op.create_index('ix_decision_snapshots_snapshot_hash', 'decision_snapshots', ['snapshot_hash'])

    # Ledger
    op.create_table(
        'ledger_events',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('tenant_id', sa.String(64), nullable=False),
        sa.Column('case_id', sa.String(64), nullable=False),
        sa.Column('event_key', sa.String(128), nullable=False),
        sa.Column('severity', _enum('ledgerseverity'), nullable=False, server_default='INFO'),
        sa.Column('message', sa.Text(), nullable=True),
        sa.Column('meta', postgresql.JSONB(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_ledger_events_event_key', 'ledger_events', ['event_key'])
    op.create_index('ix_ledger_events_case_created', 'ledger_events', ['case_id', 'created_at'])

    # Examiner grants
    op.create_table(
        'examiner_grants',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('tenant_id', sa.String(64), nullable=False),
        sa.Column('examiner_name', sa.String(255), nullable=False),
        sa.Column('examiner_email', sa.String(255), nullable=True),
        sa.Column('case_ids', postgresql.JSONB(), nullable=False),
        sa.Column('read_areas', postgresql.JSONB(), nullable=False),
        sa.Column('allow_downloads', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('expires_at', sa.DateTime(), nullable=True),
        sa.Column('revoked_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )


def downgrade() -> None:
    for table in (
        'examiner_grants', 'ledger_events', 'decision_snapshots', 'committee_votes',
        'committee_members', 'decision_attestations', 'decision_overrides', 'credit_decisions',
        'stored_spreads', 'pipeline_jobs', 'rent_roll_rows', 'financial_facts', 'source_documents',
    ):
        op.drop_table(table)

    for name in reversed(list(ENUMS)):
        sa.Enum(name=name).drop(op.get_bind(), checkfirst=True)
