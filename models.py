"""
Database models for the temporary privilege elevation service
"""
from datetime import datetime
from flask_sqlalchemy import SQLAlchemy
from sqlalchemy import text

db = SQLAlchemy()


class TempAccessGrant(db.Model):
    """One time-bounded permission elevation and its lifecycle.

    Rows are never deleted. A grant starts 'active' and moves exactly once
    to one of the terminal statuses.
    """
    __tablename__ = 'temp_access_grants'

    STATUS_ACTIVE = 'active'
    STATUS_REVOKED = 'revoked'
    STATUS_EXPIRED = 'expired'
    STATUS_EMERGENCY_REVOKED = 'emergency_revoked'

    VALID_STATUSES = (
        STATUS_ACTIVE, STATUS_REVOKED, STATUS_EXPIRED, STATUS_EMERGENCY_REVOKED,
    )
    TERMINAL_STATUSES = frozenset({
        STATUS_REVOKED, STATUS_EXPIRED, STATUS_EMERGENCY_REVOKED,
    })

    id = db.Column(db.Integer, primary_key=True, autoincrement=True)
    principal = db.Column(db.String(255), nullable=False)
    resource = db.Column(db.String(255), nullable=False)
    permissions = db.Column(db.JSON, nullable=False)  # ["INSERT", "UPDATE", ...]

    granted_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    scheduled_revoke_at = db.Column(db.DateTime, nullable=False)
    revoked_at = db.Column(db.DateTime)

    granted_by = db.Column(db.String(255), nullable=False, default='system')
    revoked_by = db.Column(db.String(255))

    status = db.Column(db.String(50), nullable=False, default=STATUS_ACTIVE)
    reason = db.Column(db.Text)
    emergency_contact = db.Column(db.String(255))

    # Pending revoke job; only meaningful while status == 'active'
    scheduled_job_key = db.Column(db.String(64))

    __table_args__ = (
        db.CheckConstraint(
            "status IN ('active', 'revoked', 'expired', 'emergency_revoked')",
            name='ck_temp_access_valid_status',
        ),
        db.CheckConstraint(
            'scheduled_revoke_at > granted_at',
            name='ck_temp_access_revoke_after_grant',
        ),
        db.Index('ix_temp_access_principal_status', 'principal', 'status'),
        db.Index('ix_temp_access_resource_status', 'resource', 'status'),
        db.Index(
            'ix_temp_access_scheduled_revoke',
            'scheduled_revoke_at',
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
        # At most one active grant per (principal, resource)
        db.Index(
            'uq_temp_access_active_key',
            'principal', 'resource',
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
    )

    def __repr__(self):
        return f'<TempAccessGrant {self.id} {self.principal}@{self.resource} {self.status}>'

    @property
    def is_active(self):
        return self.status == self.STATUS_ACTIVE

    def hours_remaining(self, now=None):
        """Hours until scheduled revocation, or None if not pending."""
        now = now or datetime.utcnow()
        if not self.is_active or self.scheduled_revoke_at <= now:
            return None
        return round((self.scheduled_revoke_at - now).total_seconds() / 3600, 2)

    def to_dict(self, now=None):
        """Convert grant to dictionary for API responses"""
        now = now or datetime.utcnow()
        return {
            'id': self.id,
            'principal': self.principal,
            'resource': self.resource,
            'permissions': list(self.permissions or []),
            'granted_at': self.granted_at.isoformat() if self.granted_at else None,
            'scheduled_revoke_at': self.scheduled_revoke_at.isoformat() if self.scheduled_revoke_at else None,
            'revoked_at': self.revoked_at.isoformat() if self.revoked_at else None,
            'granted_by': self.granted_by,
            'revoked_by': self.revoked_by,
            'status': self.status,
            'reason': self.reason,
            'emergency_contact': self.emergency_contact,
            'scheduled_job_key': self.scheduled_job_key if self.is_active else None,
            'hours_remaining': self.hours_remaining(now),
            'is_expired': self.is_active and self.scheduled_revoke_at <= now,
        }


class ScheduledJob(db.Model):
    """Durable one-shot job fired by the scheduler worker.

    logical_key identifies what the job is about ("principal@resource");
    job_key identifies this particular registration.
    """
    __tablename__ = 'scheduled_jobs'

    STATUS_PENDING = 'pending'
    STATUS_RUNNING = 'running'
    STATUS_FIRED = 'fired'
    STATUS_CANCELLED = 'cancelled'
    STATUS_FAILED = 'failed'

    VALID_STATUSES = (
        STATUS_PENDING, STATUS_RUNNING, STATUS_FIRED, STATUS_CANCELLED, STATUS_FAILED,
    )

    id = db.Column(db.Integer, primary_key=True)
    job_key = db.Column(db.String(64), unique=True, nullable=False, index=True)
    logical_key = db.Column(db.String(512), nullable=False, index=True)
    scope = db.Column(db.String(255), index=True)  # resource the job acts on
    action = db.Column(db.String(50), nullable=False)
    payload = db.Column(db.JSON, nullable=False, default=dict)

    run_at = db.Column(db.DateTime, nullable=False, index=True)
    status = db.Column(db.String(20), nullable=False, default=STATUS_PENDING, index=True)
    attempts = db.Column(db.Integer, nullable=False, default=0)
    last_error = db.Column(db.Text)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    claimed_at = db.Column(db.DateTime)
    finished_at = db.Column(db.DateTime)

    def __repr__(self):
        return f'<ScheduledJob {self.job_key} {self.logical_key} {self.status}>'

    def to_dict(self):
        return {
            'id': self.id,
            'job_key': self.job_key,
            'logical_key': self.logical_key,
            'scope': self.scope,
            'action': self.action,
            'payload': self.payload,
            'run_at': self.run_at.isoformat() if self.run_at else None,
            'status': self.status,
            'attempts': self.attempts,
            'last_error': self.last_error,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'finished_at': self.finished_at.isoformat() if self.finished_at else None,
        }


class ElevationAuditLog(db.Model):
    """Append-only trail of every attempted grant state change"""
    __tablename__ = 'elevation_audit_log'

    id = db.Column(db.Integer, primary_key=True)
    event_type = db.Column(db.String(50), nullable=False, index=True)
    principal = db.Column(db.String(255), index=True)
    resource = db.Column(db.String(255), index=True)
    grant_id = db.Column(db.Integer, db.ForeignKey('temp_access_grants.id'), nullable=True)
    actor = db.Column(db.String(255))
    details = db.Column(db.JSON, nullable=False, default=dict)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)

    grant = db.relationship('TempAccessGrant', backref=db.backref('audit_entries', lazy='dynamic'))

    def __repr__(self):
        return f'<ElevationAuditLog {self.event_type} grant={self.grant_id}>'

    def to_dict(self):
        return {
            'id': self.id,
            'event_type': self.event_type,
            'principal': self.principal,
            'resource': self.resource,
            'grant_id': self.grant_id,
            'actor': self.actor,
            'details': self.details,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }
