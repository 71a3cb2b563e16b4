"""
Grant store - persistence helpers over TempAccessGrant.

The store never deletes rows. On PostgreSQL, advisory_lock() serialises
work on one (principal, resource) key across processes before any side
effect runs. The partial unique index on (principal, resource) WHERE
status='active' still guards the one-active-grant invariant for every
dialect; insert_grant() turns a violation into ConflictError.
"""
from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime

from sqlalchemy import case, func, text
from sqlalchemy.exc import IntegrityError

from core.elevation.errors import ConflictError
from models import db, TempAccessGrant

ACTIVE = TempAccessGrant.STATUS_ACTIVE


def insert_grant(grant: TempAccessGrant) -> TempAccessGrant:
    """Persist a new active grant.

    Raises:
        ConflictError: another active grant for the same key won the race.
    """
    db.session.add(grant)
    try:
        db.session.commit()
    except IntegrityError as e:
        db.session.rollback()
        existing = get_active_grant(grant.principal, grant.resource)
        details = {}
        if existing is not None:
            details['existing_grant_id'] = existing.id
        raise ConflictError(
            f'User {grant.principal} already has active temporary access '
            f'to schema {grant.resource}',
            **details,
        ) from e
    return grant


@contextmanager
def advisory_lock(key: str):
    """Hold a session-level PostgreSQL advisory lock on a logical key.

    No-op on other dialects, where the in-process key lock is all there is.
    """
    engine = db.engine
    if engine.dialect.name != 'postgresql':
        yield
        return

    with engine.connect() as conn:
        conn = conn.execution_options(isolation_level='AUTOCOMMIT')
        conn.execute(text('SELECT pg_advisory_lock(hashtext(:key))'), {'key': key})
        try:
            yield
        finally:
            conn.execute(text('SELECT pg_advisory_unlock(hashtext(:key))'), {'key': key})


def get_grant(grant_id: int) -> TempAccessGrant | None:
    return db.session.get(TempAccessGrant, grant_id)


def get_active_grant(principal: str, resource: str) -> TempAccessGrant | None:
    """Point lookup of the single active record for a key."""
    return TempAccessGrant.query.filter_by(
        principal=principal, resource=resource, status=ACTIVE,
    ).first()


def held_permissions(principal: str, resource: str) -> list[str] | None:
    """Permissions of the committed active record for a key, or None."""
    row = db.session.query(TempAccessGrant.permissions).filter(
        TempAccessGrant.principal == principal,
        TempAccessGrant.resource == resource,
        TempAccessGrant.status == ACTIVE,
    ).first()
    return list(row[0] or []) if row is not None else None


def get_latest_grant(principal: str, resource: str) -> TempAccessGrant | None:
    """Most recent record for a key in any status."""
    return TempAccessGrant.query.filter_by(
        principal=principal, resource=resource,
    ).order_by(TempAccessGrant.granted_at.desc(), TempAccessGrant.id.desc()).first()


def transition(grant: TempAccessGrant, status: str, revoked_at: datetime,
               revoked_by: str, reason: str | None = None) -> bool:
    """Move an active grant to a terminal status.

    Compare-and-set on status='active': returns False if some other caller
    already moved it. Does not commit.
    """
    if status not in TempAccessGrant.TERMINAL_STATUSES:
        raise ValueError(f'{status!r} is not a terminal status')

    values = {
        'status': status,
        'revoked_at': revoked_at,
        'revoked_by': revoked_by,
    }
    if reason is not None:
        values['reason'] = reason

    updated = TempAccessGrant.query.filter_by(
        id=grant.id, status=ACTIVE,
    ).update(values, synchronize_session=False)
    db.session.expire(grant)
    return updated == 1


def list_grants(principal: str | None = None, resource: str | None = None,
                include_terminal: bool = False,
                limit: int | None = None) -> list[TempAccessGrant]:
    """List grants, active first, then newest grant first."""
    q = TempAccessGrant.query
    if principal is not None:
        q = q.filter_by(principal=principal)
    if resource is not None:
        q = q.filter_by(resource=resource)
    if not include_terminal:
        q = q.filter_by(status=ACTIVE)

    q = q.order_by(
        case((TempAccessGrant.status == ACTIVE, 0), else_=1),
        TempAccessGrant.granted_at.desc(),
        TempAccessGrant.id.desc(),
    )
    if limit is not None:
        q = q.limit(limit)
    return q.all()


def active_grants(resource: str | None = None) -> list[TempAccessGrant]:
    q = TempAccessGrant.query.filter_by(status=ACTIVE)
    if resource is not None:
        q = q.filter_by(resource=resource)
    return q.order_by(TempAccessGrant.id.asc()).all()


def overdue_grants(now: datetime) -> list[TempAccessGrant]:
    """Active grants whose scheduled revoke time has passed."""
    return TempAccessGrant.query.filter(
        TempAccessGrant.status == ACTIVE,
        TempAccessGrant.scheduled_revoke_at <= now,
    ).order_by(TempAccessGrant.scheduled_revoke_at.asc()).all()


def total_grants() -> int:
    return db.session.query(func.count(TempAccessGrant.id)).scalar() or 0


def status_breakdown() -> dict[str, int]:
    rows = db.session.query(
        TempAccessGrant.status, func.count(TempAccessGrant.id),
    ).group_by(TempAccessGrant.status).all()
    return {status: count for status, count in rows}


def active_expiry_window() -> tuple[int, datetime | None, datetime | None]:
    """(count, earliest, latest) scheduled revoke time among active grants."""
    count, earliest, latest = db.session.query(
        func.count(TempAccessGrant.id),
        func.min(TempAccessGrant.scheduled_revoke_at),
        func.max(TempAccessGrant.scheduled_revoke_at),
    ).filter(TempAccessGrant.status == ACTIVE).one()
    return count or 0, earliest, latest

