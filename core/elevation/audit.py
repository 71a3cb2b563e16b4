"""
Elevation audit log - append-only trail for every attempted state change.

Every grant, extension, revocation, expiry and emergency action is logged
here, including the attempts that failed or were compensated. Entries are
never updated or deleted.
"""


def log_elevation_event(event_type, details, principal=None, resource=None,
                        grant_id=None, actor=None):
    """Write an elevation audit log entry.

    Args:
        event_type: One of: grant_created, grant_failed, grant_compensated,
                    grant_revoked, grant_expired, grant_emergency_revoked,
                    grant_extended, extend_failed, revoke_failed,
                    permission_remove_failed, emergency_revoke_started,
                    cleanup_completed.
        details: dict with event-specific data.
        principal: The account the event concerns.
        resource: The schema the event concerns.
        grant_id: The grant record involved (None for failed grants).
        actor: Who performed the action ('system' for automatic expiry).

    Returns:
        ElevationAuditLog instance.
    """
    from models import db, ElevationAuditLog

    entry = ElevationAuditLog(
        event_type=event_type,
        principal=principal,
        resource=resource,
        grant_id=grant_id,
        actor=actor,
        details=details,
    )
    db.session.add(entry)
    # Caller is responsible for commit (batched with the grant update).
    return entry


def get_audit_trail(principal=None, resource=None, event_type=None,
                    grant_id=None, limit=100):
    """Query the elevation audit trail.

    Returns:
        list[ElevationAuditLog] ordered by created_at descending.
    """
    from models import ElevationAuditLog

    q = ElevationAuditLog.query

    if principal is not None:
        q = q.filter_by(principal=principal)
    if resource is not None:
        q = q.filter_by(resource=resource)
    if event_type is not None:
        q = q.filter_by(event_type=event_type)
    if grant_id is not None:
        q = q.filter_by(grant_id=grant_id)

    return q.order_by(
        ElevationAuditLog.created_at.desc(),
        ElevationAuditLog.id.desc(),
    ).limit(limit).all()
