"""
Elevation routes - grant, revoke, extend, emergency and reporting endpoints.

Admin:
    POST /api/elevation/grants                  - Grant temporary access
    POST /api/elevation/grants/revoke           - Revoke an active grant
    POST /api/elevation/grants/extend           - Extend an active grant
    POST /api/elevation/emergency-revoke        - Revoke everything (optionally per resource)
    GET  /api/elevation/grants                  - List grants
    GET  /api/elevation/permissions/<p>/<r>     - Probe current permissions
    GET  /api/elevation/status                  - System status report
    GET  /api/elevation/audit                   - Audit trail
Internal (cron):
    POST /api/elevation/internal/cleanup        - Expire overdue grants
    POST /api/elevation/internal/tick           - Fire due scheduler jobs
"""
import hmac
import os
from functools import wraps

from flask import current_app, jsonify, request

from rate_limiter import limiter

DEFAULT_GRANT_HOURS = 2


def _bearer_matches(secret):
    if not secret:
        return False
    auth_header = request.headers.get('Authorization', '')
    return hmac.compare_digest(auth_header, f'Bearer {secret}')


def _admin_token():
    return current_app.config.get('ADMIN_API_TOKEN') or os.environ.get('ADMIN_API_TOKEN', '')


def require_admin(view):
    """Admin endpoints: Authorization: Bearer <ADMIN_API_TOKEN>."""
    @wraps(view)
    def wrapper(*args, **kwargs):
        if not _bearer_matches(_admin_token()):
            return jsonify({'error': 'Authentication required'}), 401
        return view(*args, **kwargs)
    return wrapper


def require_cron(view):
    """Internal endpoints: CRON_SECRET or the admin token."""
    @wraps(view)
    def wrapper(*args, **kwargs):
        cron_secret = current_app.config.get('CRON_SECRET') or os.environ.get('CRON_SECRET', '')
        if not (_bearer_matches(cron_secret) or _bearer_matches(_admin_token())):
            return jsonify({'error': 'Unauthorized'}), 401
        return view(*args, **kwargs)
    return wrapper


def _actor():
    return (request.headers.get('X-Actor') or 'admin').strip() or 'admin'


def _error_response(error):
    return jsonify(error.to_dict()), error.http_status


def _require_fields(data, *fields):
    for field in fields:
        value = data.get(field)
        if value is None or (isinstance(value, str) and not value.strip()):
            return jsonify({'error': f'{field} is required'}), 400
    return None


def register_elevation_routes(app):

    from core.elevation.service import get_manager

    @app.route('/api/elevation/grants', methods=['POST'])
    @limiter.limit('30 per minute', override_defaults=False)
    @require_admin
    def elevation_grant():
        """Grant temporary write access.

        Body:
            principal (str): Account to elevate.
            resource (str): Schema to grant on.
            duration_hours (int, optional): 1..168, default 2.
            permissions (list[str], optional): Default INSERT/UPDATE/DELETE.
            reason (str, optional): Justification.
            emergency_contact (str, optional): Contact for audit purposes.
        """
        data = request.get_json(silent=True)
        if not data:
            return jsonify({'error': 'Request body is required'}), 400

        missing = _require_fields(data, 'principal', 'resource')
        if missing:
            return missing

        result, error = get_manager().grant(
            principal=data['principal'],
            resource=data['resource'],
            duration_hours=data.get('duration_hours', DEFAULT_GRANT_HOURS),
            permissions=data.get('permissions'),
            reason=data.get('reason'),
            emergency_contact=data.get('emergency_contact'),
            granted_by=_actor(),
        )
        if error:
            return _error_response(error)

        return jsonify({'success': True, **result}), 201

    @app.route('/api/elevation/grants/revoke', methods=['POST'])
    @require_admin
    def elevation_revoke():
        """Revoke the active grant for a principal on a resource.

        Body:
            principal (str), resource (str)
        """
        data = request.get_json(silent=True)
        if not data:
            return jsonify({'error': 'Request body is required'}), 400

        missing = _require_fields(data, 'principal', 'resource')
        if missing:
            return missing

        result, error = get_manager().revoke(
            principal=data['principal'],
            resource=data['resource'],
            revoked_by=_actor(),
        )
        if error:
            return _error_response(error)

        return jsonify({'success': True, **result})

    @app.route('/api/elevation/grants/extend', methods=['POST'])
    @require_admin
    def elevation_extend():
        """Extend an active grant.

        Body:
            principal (str), resource (str)
            additional_hours (int): 1..24.
        """
        data = request.get_json(silent=True)
        if not data:
            return jsonify({'error': 'Request body is required'}), 400

        missing = _require_fields(data, 'principal', 'resource', 'additional_hours')
        if missing:
            return missing

        result, error = get_manager().extend(
            principal=data['principal'],
            resource=data['resource'],
            extra_hours=data['additional_hours'],
            extended_by=_actor(),
        )
        if error:
            return _error_response(error)

        return jsonify({'success': True, **result})

    @app.route('/api/elevation/emergency-revoke', methods=['POST'])
    @require_admin
    def elevation_emergency_revoke():
        """Revoke every active grant.

        Body:
            resource (str, optional): Only grants on this resource.
            reason (str, optional): Recorded on every revoked grant.
        """
        data = request.get_json(silent=True) or {}

        result, error = get_manager().emergency_revoke_all(
            resource=data.get('resource') or None,
            reason=data.get('reason'),
            revoked_by=_actor(),
        )
        if error:
            return _error_response(error)

        return jsonify({'success': True, **result})

    @app.route('/api/elevation/grants', methods=['GET'])
    @require_admin
    def elevation_list_grants():
        """List grants, active first.

        Query params:
            principal (str, optional), resource (str, optional)
            include_terminal (bool, optional): Include revoked/expired.
            limit (int, optional): Max results (default 100).
        """
        include_terminal = request.args.get('include_terminal', 'false').lower() in (
            '1', 'true', 'yes',
        )
        limit = request.args.get('limit', 100, type=int)
        limit = min(max(limit, 1), 500)

        grants = get_manager().list_grants(
            principal=request.args.get('principal'),
            resource=request.args.get('resource'),
            include_terminal=include_terminal,
            limit=limit,
        )
        return jsonify({'grants': grants, 'count': len(grants)})

    @app.route('/api/elevation/permissions/<principal>/<resource>', methods=['GET'])
    @require_admin
    def elevation_test_permissions(principal, resource):
        """Report what the principal can currently do on the resource."""
        rows, error = get_manager().test_permissions(principal, resource)
        if error:
            return _error_response(error)

        return jsonify({
            'principal': principal,
            'resource': resource,
            'results': rows,
        })

    @app.route('/api/elevation/status', methods=['GET'])
    @require_admin
    def elevation_status():
        return jsonify(get_manager().status_report())

    @app.route('/api/elevation/audit', methods=['GET'])
    @require_admin
    def elevation_audit_trail():
        """Query the audit trail.

        Query params:
            principal, resource, event_type (str, optional)
            grant_id (int, optional)
            limit (int, optional): Max results (default 100).
        """
        limit = request.args.get('limit', 100, type=int)
        limit = min(max(limit, 1), 500)

        from core.elevation.audit import get_audit_trail

        entries = get_audit_trail(
            principal=request.args.get('principal'),
            resource=request.args.get('resource'),
            event_type=request.args.get('event_type'),
            grant_id=request.args.get('grant_id', type=int),
            limit=limit,
        )
        return jsonify({
            'entries': [e.to_dict() for e in entries],
            'count': len(entries),
        })

    # ------------------------------------------------------------------
    # Internal: cron
    # ------------------------------------------------------------------

    @app.route('/api/elevation/internal/cleanup', methods=['POST'])
    @require_cron
    def elevation_internal_cleanup():
        """Cron endpoint: expire overdue grants and drop orphan jobs."""
        result, _ = get_manager().cleanup_expired()
        return jsonify({'success': True, **result})

    @app.route('/api/elevation/internal/tick', methods=['POST'])
    @require_cron
    def elevation_internal_tick():
        """Cron endpoint: fire due scheduler jobs."""
        from core.elevation.service import get_service

        outcomes = get_service().scheduler.run_due()
        return jsonify({
            'success': True,
            'jobs_run': len(outcomes),
            'jobs': outcomes,
        })
