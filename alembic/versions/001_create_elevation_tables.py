"""Create elevation tables: temp_access_grants, scheduled_jobs, elevation_audit_log

Revision ID: 001
Revises:
Create Date: 2026-10-17
"""
from alembic import op
import sqlalchemy as sa

revision = '001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    # --- Grant records (never deleted) ---
    op.create_table(
        'temp_access_grants',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('principal', sa.String(255), nullable=False),
        sa.Column('resource', sa.String(255), nullable=False),
        sa.Column('permissions', sa.JSON(), nullable=False),
        sa.Column('granted_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('scheduled_revoke_at', sa.DateTime(), nullable=False),
        sa.Column('revoked_at', sa.DateTime(), nullable=True),
        sa.Column('granted_by', sa.String(255), nullable=False, server_default='system'),
        sa.Column('revoked_by', sa.String(255), nullable=True),
        sa.Column('status', sa.String(50), nullable=False, server_default='active'),
        sa.Column('reason', sa.Text(), nullable=True),
        sa.Column('emergency_contact', sa.String(255), nullable=True),
        sa.Column('scheduled_job_key', sa.String(64), nullable=True),
        sa.CheckConstraint(
            "status IN ('active', 'revoked', 'expired', 'emergency_revoked')",
            name='ck_temp_access_valid_status',
        ),
        sa.CheckConstraint(
            'scheduled_revoke_at > granted_at',
            name='ck_temp_access_revoke_after_grant',
        ),
    )
    op.create_index('ix_temp_access_principal_status', 'temp_access_grants',
                    ['principal', 'status'])
    op.create_index('ix_temp_access_resource_status', 'temp_access_grants',
                    ['resource', 'status'])
    op.create_index('ix_temp_access_scheduled_revoke', 'temp_access_grants',
                    ['scheduled_revoke_at'],
                    postgresql_where=sa.text("status = 'active'"),
                    sqlite_where=sa.text("status = 'active'"))
    op.create_index('uq_temp_access_active_key', 'temp_access_grants',
                    ['principal', 'resource'], unique=True,
                    postgresql_where=sa.text("status = 'active'"),
                    sqlite_where=sa.text("status = 'active'"))

    # --- Durable scheduler jobs ---
    op.create_table(
        'scheduled_jobs',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('job_key', sa.String(64), nullable=False),
        sa.Column('logical_key', sa.String(512), nullable=False),
        sa.Column('scope', sa.String(255), nullable=True),
        sa.Column('action', sa.String(50), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('run_at', sa.DateTime(), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('claimed_at', sa.DateTime(), nullable=True),
        sa.Column('finished_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_scheduled_jobs_job_key', 'scheduled_jobs', ['job_key'], unique=True)
    op.create_index('ix_scheduled_jobs_logical_key', 'scheduled_jobs', ['logical_key'])
    op.create_index('ix_scheduled_jobs_scope', 'scheduled_jobs', ['scope'])
    op.create_index('ix_scheduled_jobs_run_at', 'scheduled_jobs', ['run_at'])
    op.create_index('ix_scheduled_jobs_status', 'scheduled_jobs', ['status'])

    # --- Append-only audit log ---
    op.create_table(
        'elevation_audit_log',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('event_type', sa.String(50), nullable=False),
        sa.Column('principal', sa.String(255), nullable=True),
        sa.Column('resource', sa.String(255), nullable=True),
        sa.Column('grant_id', sa.Integer(), sa.ForeignKey('temp_access_grants.id'), nullable=True),
        sa.Column('actor', sa.String(255), nullable=True),
        sa.Column('details', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_elevation_audit_log_event_type', 'elevation_audit_log', ['event_type'])
    op.create_index('ix_elevation_audit_log_principal', 'elevation_audit_log', ['principal'])
    op.create_index('ix_elevation_audit_log_resource', 'elevation_audit_log', ['resource'])
    op.create_index('ix_elevation_audit_log_created_at', 'elevation_audit_log', ['created_at'])


def downgrade():
    op.drop_table('elevation_audit_log')
    op.drop_table('scheduled_jobs')
    op.drop_table('temp_access_grants')
