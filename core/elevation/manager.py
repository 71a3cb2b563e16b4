"""
GrantManager - lifecycle of time-bounded privilege elevations.

Every grant moves through one state machine:

    active ──► revoked            (manual Revoke)
           ├─► expired            (scheduled auto-revoke or cleanup sweep)
           └─► emergency_revoked  (EmergencyRevokeAll)

Terminal states are sinks and rows are never deleted.

A Grant touches two independent systems, the privilege backend and the
scheduler. The order is fixed: apply permissions, register the revoke job,
then persist the record. A scheduling failure is compensated by removing
the permissions that were just applied, so the database never holds
permissions without a matching audit record and pending expiry.

Grant and Extend on one (principal, resource) key are serialised by an
in-process lock and, on PostgreSQL, by an advisory lock held across every
side effect, so writers in other processes wait instead of racing. The
partial unique index on active grants remains the last guard; a grant that
still loses the insert removes only what the committed winner does not
hold. Revoke paths race safely: the record is moved out of 'active' before
any backend call, so the first caller wins and later callers see
NotFoundError and make no backend call.

All public methods return (result, None) or (None, ElevationError).
"""
from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta
from typing import Any, Callable

from sqlalchemy.exc import SQLAlchemyError

from core.elevation import store
from core.elevation.audit import log_elevation_event
from core.elevation.backend import PROBED_PRIVILEGES, PrivilegeBackend
from core.elevation.errors import (
    BackendError,
    ConflictError,
    ElevationError,
    NotFoundError,
    SchedulingError,
    ValidationError,
)
from core.elevation.permissions import parse_permissions, permission_names
from core.elevation.scheduler import Scheduler, logical_key
from models import db, TempAccessGrant, ScheduledJob

logger = logging.getLogger(__name__)

MIN_DURATION_HOURS = 1
MAX_DURATION_HOURS = 168  # one week
MIN_EXTEND_HOURS = 1
MAX_EXTEND_HOURS = 24

AUTO_REVOKE_ACTION = 'auto_revoke'
SYSTEM_ACTOR = 'system'
DEFAULT_EMERGENCY_REASON = 'Emergency revocation by administrator'

# Pending revoke jobs younger than this are never treated as orphans: the
# grant that owns them may still be in flight.
ORPHAN_GRACE = timedelta(minutes=5)

_AUDIT_EVENT_FOR_STATUS = {
    TempAccessGrant.STATUS_REVOKED: 'grant_revoked',
    TempAccessGrant.STATUS_EXPIRED: 'grant_expired',
    TempAccessGrant.STATUS_EMERGENCY_REVOKED: 'grant_emergency_revoked',
}


def _hours_between(later: datetime, earlier: datetime) -> float:
    return round((later - earlier).total_seconds() / 3600, 2)


def _validate_hours(value, low, high, message) -> int:
    if isinstance(value, bool):
        raise ValidationError(message, hours_requested=value)
    if not isinstance(value, int):
        try:
            as_float = float(value)
        except (TypeError, ValueError):
            raise ValidationError(message, hours_requested=value) from None
        if not as_float.is_integer():
            raise ValidationError(message, hours_requested=value)
        value = int(as_float)
    if value < low or value > high:
        raise ValidationError(message, hours_requested=value)
    return value


def _validate_name(value, field) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f'{field} is required')
    return value.strip()


class GrantManager:
    """Orchestrates Grant/Revoke/Extend/EmergencyRevokeAll/CleanupExpired."""

    def __init__(self, backend: PrivilegeBackend, scheduler: Scheduler,
                 clock: Callable[[], datetime] = datetime.utcnow) -> None:
        self.backend = backend
        self.scheduler = scheduler
        self._clock = clock
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        scheduler.register_action(AUTO_REVOKE_ACTION, self.auto_revoke)

    def now(self) -> datetime:
        return self._clock()

    def _key_lock(self, principal: str, resource: str) -> threading.Lock:
        key = logical_key(principal, resource)
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    def _audit(self, event_type, details, principal=None, resource=None,
               grant_id=None, actor=None):
        """Write and commit a standalone audit entry."""
        try:
            log_elevation_event(
                event_type=event_type, details=details, principal=principal,
                resource=resource, grant_id=grant_id, actor=actor,
            )
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error('[elevation] could not write %s audit entry: %s', event_type, e)

    # ------------------------------------------------------------------
    # Grant
    # ------------------------------------------------------------------

    def grant(self, principal, resource, duration_hours, permissions=None,
              reason=None, emergency_contact=None, granted_by='admin'):
        """Grant time-bounded permissions on a resource.

        Args:
            principal: Account receiving the permissions.
            resource: Schema the permissions apply to.
            duration_hours: 1..168.
            permissions: Permission names; defaults to INSERT/UPDATE/DELETE.
            reason: Optional free-text justification.
            emergency_contact: Optional contact for audit purposes.
            granted_by: Acting identity.

        Returns:
            (dict, None) with the new record on success.
            (None, ElevationError) on failure.
        """
        try:
            principal = _validate_name(principal, 'principal')
            resource = _validate_name(resource, 'resource')
            duration_hours = _validate_hours(
                duration_hours, MIN_DURATION_HOURS, MAX_DURATION_HOURS,
                f'Duration must be between {MIN_DURATION_HOURS} and '
                f'{MAX_DURATION_HOURS} hours (1 week max)',
            )
            perms = parse_permissions(permissions)
            valid, problem = self.backend.validate_entities(principal, resource)
            if not valid:
                raise ValidationError(problem, principal=principal, resource=resource)
        except ElevationError as e:
            self._audit('grant_failed', {'error': e.message, 'kind': e.kind},
                        principal=principal if isinstance(principal, str) else None,
                        resource=resource if isinstance(resource, str) else None,
                        actor=granted_by)
            return None, e

        with self._key_lock(principal, resource):
            try:
                with store.advisory_lock(logical_key(principal, resource)):
                    return self._grant_locked(principal, resource, duration_hours, perms,
                                              reason, emergency_contact, granted_by)
            except SQLAlchemyError as e:
                db.session.rollback()
                logger.error('[elevation] grant %s@%s failed: %s', principal, resource, e)
                return None, BackendError(f'Grant store unavailable: {e}')

    def _grant_locked(self, principal, resource, duration_hours, perms,
                      reason, emergency_contact, granted_by):
        now = self.now()
        names = permission_names(perms)

        existing = store.get_active_grant(principal, resource)
        if existing is not None:
            error = ConflictError(
                f'User {principal} already has active temporary access to schema {resource}',
                existing_grant_id=existing.id,
                existing_expires_at=existing.scheduled_revoke_at.isoformat(),
                existing_hours_remaining=_hours_between(existing.scheduled_revoke_at, now),
            )
            self._audit('grant_failed', {'error': error.message, 'kind': error.kind,
                                         **error.details},
                        principal=principal, resource=resource, actor=granted_by)
            return None, error

        revoke_at = now + timedelta(hours=duration_hours)

        # --- Side effect 1: apply permissions ---
        try:
            self.backend.apply(principal, resource, perms)
        except BackendError as e:
            logger.error('[elevation] apply %s on %s for %s failed: %s',
                         names, resource, principal, e)
            self._audit('grant_failed', {'error': e.message, 'kind': e.kind,
                                         'permissions': names},
                        principal=principal, resource=resource, actor=granted_by)
            return None, e

        # --- Side effect 2: register the revoke job ---
        key = logical_key(principal, resource)
        try:
            job_key = self.scheduler.schedule(
                key, revoke_at, AUTO_REVOKE_ACTION,
                payload={'principal': principal, 'resource': resource},
                scope=resource,
            )
        except SchedulingError as e:
            return None, self._compensate_grant(principal, resource, perms, e, granted_by)

        # --- Persist only after both side effects succeeded ---
        grant = TempAccessGrant(
            principal=principal,
            resource=resource,
            permissions=names,
            granted_at=now,
            scheduled_revoke_at=revoke_at,
            granted_by=granted_by,
            status=TempAccessGrant.STATUS_ACTIVE,
            reason=reason,
            emergency_contact=emergency_contact,
            scheduled_job_key=job_key,
        )
        try:
            store.insert_grant(grant)
        except ConflictError as e:
            # Another process committed an active grant first; its
            # permissions are live and must survive this rollback.
            db.session.rollback()
            self._unschedule_quietly(job_key)
            return None, self._compensate_grant(
                principal, resource, perms, e, granted_by,
                retain=self._winner_permissions(principal, resource, perms),
            )
        except SQLAlchemyError as e:
            db.session.rollback()
            self._unschedule_quietly(job_key)
            cause = BackendError(f'Failed to record grant: {e}')
            return None, self._compensate_grant(principal, resource, perms, cause, granted_by)

        log_elevation_event(
            event_type='grant_created',
            details={
                'permissions': names,
                'duration_hours': duration_hours,
                'scheduled_revoke_at': revoke_at.isoformat(),
                'job_key': job_key,
                'reason': reason,
                'emergency_contact': emergency_contact,
            },
            principal=principal, resource=resource,
            grant_id=grant.id, actor=granted_by,
        )
        db.session.commit()

        logger.info('[elevation] temporary access granted: %s on %s until %s (job %s)',
                    principal, resource, revoke_at.isoformat(), job_key)

        result = {
            'message': f'Write access granted to {principal} on schema {resource}',
            'grant': grant.to_dict(now),
            'permissions_granted': names,
            'duration_hours': duration_hours,
            'granted_at': now.isoformat(),
            'expires_at': revoke_at.isoformat(),
            'job_key': job_key,
        }
        if reason is not None:
            result['reason'] = reason
        if emergency_contact is not None:
            result['emergency_contact'] = emergency_contact
        return result, None

    def _winner_permissions(self, principal, resource, perms):
        """Permissions held by the committed active grant that beat us."""
        try:
            held = store.held_permissions(principal, resource)
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error('[elevation] could not read winning grant for %s@%s: %s',
                         principal, resource, e)
            # A winner exists but is unreadable: remove nothing.
            return list(perms)
        if not held:
            return []
        return parse_permissions(held)

    def _compensate_grant(self, principal, resource, perms, cause, actor, retain=()):
        """Undo an applied permission change after a later step failed.

        Permissions in ``retain`` belong to another live grant and are not
        removed.
        """
        retain = list(retain)
        to_remove = [p for p in perms if p not in retain]
        failures = []
        if to_remove:
            failures = self._remove_quietly(principal, resource, to_remove, retain)
        rolled_back = not failures
        if rolled_back:
            logger.warning('[elevation] grant %s@%s rolled back: %s',
                           principal, resource, cause.message)
        else:
            logger.error('[elevation] grant %s@%s compensation incomplete, '
                         'still held: %s', principal, resource,
                         [p.value for p, _ in failures])

        self._audit('grant_compensated', {
            'error': cause.message,
            'kind': cause.kind,
            'permissions': permission_names(perms),
            'retained_permissions': permission_names(retain),
            'rolled_back': rolled_back,
            'failed_permissions': [
                {'permission': p.value, 'error': msg} for p, msg in failures
            ],
        }, principal=principal, resource=resource, actor=actor)

        message = cause.message
        if isinstance(cause, SchedulingError):
            message = f'Failed to schedule revoke job: {message}'
        details = dict(cause.details, permissions_rolled_back=rolled_back)
        return type(cause)(message, code=cause.code, **details)

    def _remove_quietly(self, principal, resource, perms, retain=()):
        try:
            return self.backend.remove(principal, resource, perms, retain=retain)
        except BackendError as e:
            return [(p, e.message) for p in perms]

    def _unschedule_quietly(self, job_key):
        try:
            self.scheduler.unschedule(job_key)
        except SchedulingError as e:
            # A surviving job finds no matching active grant and does nothing.
            logger.warning('[elevation] could not unschedule job %s: %s', job_key, e)

    # ------------------------------------------------------------------
    # Revoke
    # ------------------------------------------------------------------

    def revoke(self, principal, resource, auto=False, revoked_by='admin'):
        """Revoke the active grant for a key.

        Args:
            auto: True for expiry (status 'expired', actor 'system', the
                scheduler job is considered consumed).

        Returns:
            (dict, None) on success, (None, NotFoundError) when nothing is
            active, (None, BackendError) when the store is unavailable.
        """
        status = TempAccessGrant.STATUS_EXPIRED if auto else TempAccessGrant.STATUS_REVOKED
        actor = SYSTEM_ACTOR if auto else revoked_by

        with self._key_lock(principal, resource):
            try:
                grant = store.get_active_grant(principal, resource)
                if grant is None:
                    return None, NotFoundError(
                        f'No active grant found for user {principal} on schema {resource}',
                        principal=principal, resource=resource,
                    )
                return self._revoke_record(grant, status, actor, cancel_job=not auto)
            except SQLAlchemyError as e:
                db.session.rollback()
                logger.error('[elevation] revoke %s@%s failed: %s', principal, resource, e)
                return None, BackendError(f'Grant store unavailable: {e}')

    def _revoke_record(self, grant, status, actor, reason=None, cancel_job=True):
        """Move an active grant to ``status`` and remove its permissions.

        The compare-and-set transition runs first and the backend is only
        touched by the caller that won it. Backend failures are logged per
        permission and do not undo the transition. Caller holds the key lock.
        """
        now = self.now()
        principal, resource = grant.principal, grant.resource
        names = list(grant.permissions or [])
        job_key = grant.scheduled_job_key
        granted_at = grant.granted_at
        grant_id = grant.id

        if not store.transition(grant, status, now, actor, reason):
            db.session.rollback()
            return None, NotFoundError(
                f'No active grant found for user {principal} on schema {resource}',
                principal=principal, resource=resource, grant_id=grant_id,
            )

        failures = self._remove_quietly(principal, resource, parse_permissions(names))
        for perm, message in failures:
            log_elevation_event(
                event_type='permission_remove_failed',
                details={'permission': perm.value, 'error': message, 'target_status': status},
                principal=principal, resource=resource,
                grant_id=grant_id, actor=actor,
            )

        failed = [{'permission': p.value, 'error': msg} for p, msg in failures]
        log_elevation_event(
            event_type=_AUDIT_EVENT_FOR_STATUS[status],
            details={
                'permissions': names,
                'failed_permissions': failed,
                'job_key': job_key,
                'reason': reason,
            },
            principal=principal, resource=resource,
            grant_id=grant_id, actor=actor,
        )
        db.session.commit()

        if cancel_job:
            self._unschedule_quietly(job_key)

        verb = {
            TempAccessGrant.STATUS_EXPIRED: 'expired',
            TempAccessGrant.STATUS_REVOKED: 'revoked',
            TempAccessGrant.STATUS_EMERGENCY_REVOKED: 'emergency revoked',
        }[status]
        logger.info('[elevation] access %s: %s on %s', verb, principal, resource)

        return {
            'message': f'Write access {verb} from {principal} on schema {resource}',
            'grant': grant.to_dict(now),
            'permissions_revoked': names,
            'failed_permissions': failed,
            'revoke_type': status,
            'revoked_at': now.isoformat(),
            'grant_duration_seconds': int((now - granted_at).total_seconds()),
        }, None

    def auto_revoke(self, payload: dict[str, Any], job_key: str | None = None):
        """Scheduler action: expire the grant a fired job was registered for.

        Firing twice, firing after a manual revoke, or firing a job that an
        extension superseded are all no-ops. Store failures raise so the
        scheduler retries the job.
        """
        principal = payload.get('principal')
        resource = payload.get('resource')

        with self._key_lock(principal, resource):
            grant = store.get_active_grant(principal, resource)
            if grant is None:
                logger.info('[elevation] auto-revoke %s@%s: nothing active', principal, resource)
                return {'status': 'noop', 'reason': 'no active grant'}

            if job_key is not None and grant.scheduled_job_key not in (None, job_key):
                logger.info('[elevation] auto-revoke %s@%s: job %s superseded by %s',
                            principal, resource, job_key, grant.scheduled_job_key)
                return {'status': 'noop', 'reason': 'job superseded'}

            result, error = self._revoke_record(
                grant, TempAccessGrant.STATUS_EXPIRED, SYSTEM_ACTOR, cancel_job=False,
            )

        if isinstance(error, NotFoundError):
            return {'status': 'noop', 'reason': 'already revoked'}
        if error is not None:
            raise error
        return {
            'status': TempAccessGrant.STATUS_EXPIRED,
            'grant_id': result['grant']['id'],
            'failed_permissions': result['failed_permissions'],
        }

    # ------------------------------------------------------------------
    # Extend
    # ------------------------------------------------------------------

    def extend(self, principal, resource, extra_hours, extended_by='admin'):
        """Push the scheduled revoke time of an active grant forward.

        Returns:
            (dict, None) on success.
            (None, ValidationError) for hours outside 1..24.
            (None, ConflictError 'NotExtendable') if the grant is already
                past its revoke time or is no longer active.
            (None, NotFoundError) if the key was never granted.
        """
        try:
            extra_hours = _validate_hours(
                extra_hours, MIN_EXTEND_HOURS, MAX_EXTEND_HOURS,
                f'Additional hours must be between {MIN_EXTEND_HOURS} and {MAX_EXTEND_HOURS}',
            )
        except ValidationError as e:
            self._audit('extend_failed', {'error': e.message, 'kind': e.kind},
                        principal=principal, resource=resource, actor=extended_by)
            return None, e

        with self._key_lock(principal, resource):
            try:
                with store.advisory_lock(logical_key(principal, resource)):
                    result, error = self._extend_locked(principal, resource, extra_hours,
                                                        extended_by)
            except SQLAlchemyError as e:
                db.session.rollback()
                logger.error('[elevation] extend %s@%s failed: %s', principal, resource, e)
                return None, BackendError(f'Grant store unavailable: {e}')

        if error is not None:
            self._audit('extend_failed', {'error': error.message, 'kind': error.kind,
                                          'code': error.code, **error.details},
                        principal=principal, resource=resource, actor=extended_by)
        return result, error

    def _extend_locked(self, principal, resource, extra_hours, extended_by):
        now = self.now()
        grant = store.get_active_grant(principal, resource)
        if grant is None:
            latest = store.get_latest_grant(principal, resource)
            if latest is not None:
                return None, ConflictError(
                    f'Grant {latest.id} for user {principal} on schema {resource} '
                    f'is {latest.status} and cannot be extended',
                    code='NotExtendable', grant_id=latest.id, status=latest.status,
                )
            return None, NotFoundError(
                f'No active grant found for user {principal} on schema {resource}',
                principal=principal, resource=resource,
            )

        if grant.scheduled_revoke_at <= now:
            return None, ConflictError(
                'Cannot extend expired access grant',
                code='NotExtendable',
                grant_id=grant.id,
                expired_at=grant.scheduled_revoke_at.isoformat(),
                current_time=now.isoformat(),
            )

        previous = grant.scheduled_revoke_at
        new_time = previous + timedelta(hours=extra_hours)
        old_job_key = grant.scheduled_job_key

        # New job first: a failure here leaves the grant and its old job intact.
        try:
            new_job_key = self.scheduler.schedule(
                logical_key(principal, resource), new_time, AUTO_REVOKE_ACTION,
                payload={'principal': principal, 'resource': resource},
                scope=resource,
            )
        except SchedulingError as e:
            return None, e

        grant = store.get_active_grant(principal, resource)
        if grant is None:
            self._unschedule_quietly(new_job_key)
            return None, NotFoundError(
                f'No active grant found for user {principal} on schema {resource}',
                principal=principal, resource=resource,
            )
        grant.scheduled_revoke_at = new_time
        grant.scheduled_job_key = new_job_key
        log_elevation_event(
            event_type='grant_extended',
            details={
                'previous_expires_at': previous.isoformat(),
                'new_expires_at': new_time.isoformat(),
                'additional_hours': extra_hours,
                'old_job_key': old_job_key,
                'new_job_key': new_job_key,
            },
            principal=principal, resource=resource,
            grant_id=grant.id, actor=extended_by,
        )
        try:
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            self._unschedule_quietly(new_job_key)
            raise

        self._unschedule_quietly(old_job_key)

        logger.info('[elevation] extended access for %s on %s until %s (job %s)',
                    principal, resource, new_time.isoformat(), new_job_key)

        return {
            'message': f'Extended access for {principal} on {resource} by {extra_hours} hours',
            'grant': grant.to_dict(now),
            'previous_expires_at': previous.isoformat(),
            'new_expires_at': new_time.isoformat(),
            'additional_hours': extra_hours,
            'total_hours_remaining': _hours_between(new_time, now),
            'new_job_key': new_job_key,
        }, None

    # ------------------------------------------------------------------
    # Batch operations
    # ------------------------------------------------------------------

    def emergency_revoke_all(self, resource=None, reason=DEFAULT_EMERGENCY_REASON,
                             revoked_by='admin'):
        """Revoke every active grant, optionally only on one resource.

        Each grant is processed independently; a failure on one never stops
        the rest. Backend failures still move the record to
        'emergency_revoked' and are reported per item.

        Returns:
            (dict, None) always, with ``success`` True; failures are inside
            ``details``.
        """
        now = self.now()
        reason = reason or DEFAULT_EMERGENCY_REASON
        logger.warning('[elevation] EMERGENCY REVOKE INITIATED by %s at %s (resource=%s)',
                       revoked_by, now.isoformat(), resource or '*')
        self._audit('emergency_revoke_started', {'resource_filter': resource, 'reason': reason},
                    resource=resource, actor=revoked_by)

        targets = [(g.id, g.principal, g.resource) for g in store.active_grants(resource)]

        details = []
        revoked_count = 0
        for grant_id, principal, grant_resource in targets:
            item = {
                'grant_id': grant_id,
                'principal': principal,
                'resource': grant_resource,
                'success': False,
                'failed_permissions': [],
                'error': None,
            }
            with self._key_lock(principal, grant_resource):
                try:
                    grant = store.get_grant(grant_id)
                    if grant is None or not grant.is_active:
                        item['error'] = 'Grant is no longer active'
                        details.append(item)
                        continue
                    result, error = self._revoke_record(
                        grant, TempAccessGrant.STATUS_EMERGENCY_REVOKED,
                        revoked_by, reason=reason,
                    )
                except SQLAlchemyError as e:
                    db.session.rollback()
                    result, error = None, BackendError(f'Grant store unavailable: {e}')

            if error is not None:
                item['error'] = error.message
            else:
                revoked_count += 1
                item['failed_permissions'] = result['failed_permissions']
                item['success'] = not result['failed_permissions']
                if result['failed_permissions']:
                    item['error'] = 'Some permissions could not be removed'
            logger.warning('[elevation] emergency revoked: %s@%s (%s)', principal,
                           grant_resource, 'ok' if item['success'] else item['error'])
            details.append(item)

        try:
            jobs_unscheduled = self.scheduler.unschedule_matching(
                scope=resource, action=AUTO_REVOKE_ACTION,
            )
        except SchedulingError as e:
            logger.error('[elevation] emergency job sweep failed: %s', e)
            jobs_unscheduled = 0

        logger.warning('[elevation] EMERGENCY REVOKE COMPLETED: %d grants revoked', revoked_count)

        return {
            'success': True,
            'message': f'Emergency revoke completed: {revoked_count} grants revoked',
            'revoked_count': revoked_count,
            'revoked_at': now.isoformat(),
            'revoked_by': revoked_by,
            'reason': reason,
            'resource_filter': resource,
            'jobs_unscheduled': jobs_unscheduled,
            'details': details,
        }, None

    def cleanup_expired(self):
        """Expire overdue active grants and drop orphaned revoke jobs.

        Safety net for missed scheduler firings. Running it with nothing
        overdue processes nothing.

        Returns:
            (dict, None) always, with ``success`` True; failures are inside
            ``details``.
        """
        now = self.now()
        overdue = [(g.principal, g.resource, g.id) for g in store.overdue_grants(now)]

        details = []
        processed = 0
        for principal, resource, grant_id in overdue:
            result, error = self.revoke(principal, resource, auto=True)
            if error is None:
                processed += 1
                details.append({'grant_id': grant_id, 'principal': principal,
                                'resource': resource, 'success': True,
                                'failed_permissions': result['failed_permissions']})
            else:
                details.append({'grant_id': grant_id, 'principal': principal,
                                'resource': resource, 'success': False,
                                'error': error.message})

        orphans_removed = self._sweep_orphan_jobs(now)

        if processed or orphans_removed:
            self._audit('cleanup_completed', {
                'processed_count': processed,
                'orphan_jobs_removed': orphans_removed,
            }, actor=SYSTEM_ACTOR)
            logger.info('[elevation] cleanup processed %d expired grant(s), '
                        'removed %d orphan job(s)', processed, orphans_removed)

        return {
            'success': True,
            'message': f'Cleanup completed: {processed} expired grants processed',
            'processed_count': processed,
            'orphan_jobs_removed': orphans_removed,
            'cleanup_time': now.isoformat(),
            'details': details,
        }, None

    def _sweep_orphan_jobs(self, now):
        """Cancel pending revoke jobs that no active grant points at."""
        try:
            owners = {
                logical_key(g.principal, g.resource): g.scheduled_job_key
                for g in store.active_grants()
            }
            cutoff = now - ORPHAN_GRACE
            orphans = [
                job.job_key for job in self.scheduler.pending_jobs()
                if job.action == AUTO_REVOKE_ACTION
                and job.created_at <= cutoff
                and owners.get(job.logical_key) != job.job_key
            ]
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error('[elevation] orphan job scan failed: %s', e)
            return 0

        removed = 0
        for job_key in orphans:
            try:
                if self.scheduler.unschedule(job_key):
                    removed += 1
            except SchedulingError as e:
                logger.warning('[elevation] could not remove orphan job %s: %s', job_key, e)
        return removed

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def list_grants(self, principal=None, resource=None, include_terminal=False,
                    limit=None):
        """Active grants first, then by grant time, newest first."""
        now = self.now()
        return [
            g.to_dict(now) for g in store.list_grants(
                principal=principal, resource=resource,
                include_terminal=include_terminal, limit=limit,
            )
        ]

    def test_permissions(self, principal, resource):
        """Ask the backend what the principal can currently do on a resource.

        Returns:
            (list[dict], None) rows of {operation, permission, allowed, details}.
            (None, ElevationError) if the principal/resource is unknown.
        """
        try:
            valid, problem = self.backend.validate_entities(principal, resource)
            if not valid:
                return None, ValidationError(problem, principal=principal, resource=resource)
            probed = self.backend.probe(principal, resource)
        except BackendError as e:
            return None, e

        if probed is None:
            return [{
                'operation': 'ERROR',
                'permission': 'N/A',
                'allowed': False,
                'details': f'No tables found in schema {resource}',
            }], None

        rows = []
        for privilege in PROBED_PRIVILEGES:
            if privilege not in probed:
                continue
            if privilege == 'USAGE':
                operation, detail = 'SEQUENCE', f'USAGE on sequences in {resource}'
            else:
                operation = 'READ' if privilege == 'SELECT' else 'WRITE'
                detail = f'{privilege} on {resource}'
            rows.append({
                'operation': operation,
                'permission': privilege,
                'allowed': bool(probed[privilege]),
                'details': detail,
            })
        return rows, None

    def status_report(self):
        from core.elevation.status import get_system_status

        return get_system_status(self.scheduler, now=self.now())
