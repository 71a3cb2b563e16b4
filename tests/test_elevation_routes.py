"""
Tests for the elevation HTTP API.
"""
import pytest

from models import TempAccessGrant


def _grant(client, headers, **body):
    payload = {'principal': 'u1', 'resource': 's1', 'duration_hours': 1}
    payload.update(body)
    return client.post('/api/elevation/grants', json=payload, headers=headers)


@pytest.mark.routes
class TestAuth:

    def test_missing_token(self, client):
        resp = client.get('/api/elevation/grants')
        assert resp.status_code == 401

    def test_wrong_token(self, client):
        resp = client.get('/api/elevation/grants',
                          headers={'Authorization': 'Bearer wrong'})
        assert resp.status_code == 401

    def test_cron_secret_not_admin(self, client, cron_headers):
        resp = client.get('/api/elevation/status', headers=cron_headers)
        assert resp.status_code == 401

    def test_internal_accepts_admin_token(self, client, admin_headers):
        resp = client.post('/api/elevation/internal/cleanup', headers=admin_headers)
        assert resp.status_code == 200

    def test_health_is_public(self, client):
        resp = client.get('/api/health')
        assert resp.status_code == 200
        assert resp.get_json()['status'] == 'ok'


@pytest.mark.routes
class TestGrantEndpoints:

    def test_grant_created(self, client, admin_headers):
        headers = dict(admin_headers, **{'X-Actor': 'alice'})
        resp = _grant(client, headers, permissions=['insert', 'update'], reason='migration')

        assert resp.status_code == 201
        data = resp.get_json()
        assert data['success'] is True
        assert data['permissions_granted'] == ['INSERT', 'UPDATE']
        assert data['grant']['granted_by'] == 'alice'
        assert data['reason'] == 'migration'

    def test_default_duration(self, client, admin_headers):
        resp = client.post('/api/elevation/grants',
                           json={'principal': 'u1', 'resource': 's1'},
                           headers=admin_headers)
        assert resp.status_code == 201
        assert resp.get_json()['duration_hours'] == 2

    def test_duplicate_grant(self, client, admin_headers):
        _grant(client, admin_headers)
        resp = _grant(client, admin_headers)

        assert resp.status_code == 409
        data = resp.get_json()
        assert data['kind'] == 'ConflictError'
        assert 'existing_grant_id' in data['details']

    def test_missing_fields(self, client, admin_headers):
        resp = client.post('/api/elevation/grants', json={'principal': 'u1'},
                           headers=admin_headers)
        assert resp.status_code == 400

    def test_empty_body(self, client, admin_headers):
        resp = client.post('/api/elevation/grants', headers=admin_headers)
        assert resp.status_code == 400

    def test_invalid_duration(self, client, admin_headers):
        resp = _grant(client, admin_headers, duration_hours=500)
        assert resp.status_code == 400
        assert resp.get_json()['kind'] == 'ValidationError'

    def test_unknown_principal(self, client, admin_headers):
        resp = _grant(client, admin_headers, principal='ghost')
        assert resp.status_code == 400

    def test_revoke(self, client, admin_headers):
        _grant(client, admin_headers)

        resp = client.post('/api/elevation/grants/revoke',
                           json={'principal': 'u1', 'resource': 's1'},
                           headers=admin_headers)
        assert resp.status_code == 200
        assert resp.get_json()['revoke_type'] == 'revoked'

        again = client.post('/api/elevation/grants/revoke',
                            json={'principal': 'u1', 'resource': 's1'},
                            headers=admin_headers)
        assert again.status_code == 404

    def test_extend(self, client, admin_headers):
        _grant(client, admin_headers)

        resp = client.post('/api/elevation/grants/extend',
                           json={'principal': 'u1', 'resource': 's1', 'additional_hours': 3},
                           headers=admin_headers)
        assert resp.status_code == 200
        assert resp.get_json()['additional_hours'] == 3

    def test_extend_revoked(self, client, admin_headers):
        _grant(client, admin_headers)
        client.post('/api/elevation/grants/revoke',
                    json={'principal': 'u1', 'resource': 's1'}, headers=admin_headers)

        resp = client.post('/api/elevation/grants/extend',
                           json={'principal': 'u1', 'resource': 's1', 'additional_hours': 2},
                           headers=admin_headers)
        assert resp.status_code == 409
        assert resp.get_json()['code'] == 'NotExtendable'

    def test_extend_requires_hours(self, client, admin_headers):
        resp = client.post('/api/elevation/grants/extend',
                           json={'principal': 'u1', 'resource': 's1'},
                           headers=admin_headers)
        assert resp.status_code == 400

    def test_emergency_revoke(self, client, admin_headers):
        _grant(client, admin_headers)
        _grant(client, admin_headers, principal='u2', resource='s2')

        resp = client.post('/api/elevation/emergency-revoke',
                           json={'reason': 'credential leak'}, headers=admin_headers)

        assert resp.status_code == 200
        data = resp.get_json()
        assert data['revoked_count'] == 2
        assert data['reason'] == 'credential leak'
        assert TempAccessGrant.query.filter_by(status='emergency_revoked').count() == 2


@pytest.mark.routes
class TestReportingEndpoints:

    def test_list_grants(self, client, admin_headers):
        _grant(client, admin_headers)
        _grant(client, admin_headers, principal='u2')
        client.post('/api/elevation/grants/revoke',
                    json={'principal': 'u2', 'resource': 's1'}, headers=admin_headers)

        active = client.get('/api/elevation/grants', headers=admin_headers).get_json()
        assert active['count'] == 1

        everything = client.get('/api/elevation/grants?include_terminal=true',
                                headers=admin_headers).get_json()
        assert everything['count'] == 2
        assert everything['grants'][0]['status'] == 'active'

    def test_permissions_probe(self, client, admin_headers):
        _grant(client, admin_headers, permissions=['DELETE'])

        resp = client.get('/api/elevation/permissions/u1/s1', headers=admin_headers)

        assert resp.status_code == 200
        allowed = {r['permission']: r['allowed'] for r in resp.get_json()['results']}
        assert allowed['DELETE'] is True
        assert allowed['INSERT'] is False

    def test_permissions_probe_unknown(self, client, admin_headers):
        resp = client.get('/api/elevation/permissions/ghost/s1', headers=admin_headers)
        assert resp.status_code == 400

    def test_status(self, client, admin_headers):
        _grant(client, admin_headers)

        data = client.get('/api/elevation/status', headers=admin_headers).get_json()

        assert data['active_grants']['count'] == 1
        assert data['scheduled_job_count'] == 1
        assert data['system_health'] == 'OK'

    def test_audit(self, client, admin_headers):
        _grant(client, admin_headers)

        data = client.get('/api/elevation/audit?principal=u1',
                          headers=admin_headers).get_json()

        assert data['count'] == 1
        assert data['entries'][0]['event_type'] == 'grant_created'


@pytest.mark.routes
class TestInternalEndpoints:

    def test_cleanup(self, client, cron_headers):
        resp = client.post('/api/elevation/internal/cleanup', headers=cron_headers)
        assert resp.status_code == 200
        assert resp.get_json()['processed_count'] == 0

    def test_tick(self, client, cron_headers, admin_headers):
        _grant(client, admin_headers)

        resp = client.post('/api/elevation/internal/tick', headers=cron_headers)

        assert resp.status_code == 200
        assert resp.get_json()['jobs_run'] == 0

    def test_internal_requires_secret(self, client):
        resp = client.post('/api/elevation/internal/tick')
        assert resp.status_code == 401


@pytest.mark.routes
class TestRateLimiting:

    def test_grant_limit_ignores_client_actor_header(self, client):
        """Rotating X-Actor must not buy a fresh quota on the same address."""
        from rate_limiter import limiter

        limiter.reset()
        limiter.enabled = True
        try:
            codes = [
                _grant(client, {'X-Actor': f'actor-{i}'}).status_code
                for i in range(31)
            ]
        finally:
            limiter.enabled = False
            limiter.reset()

        assert codes[:30] == [401] * 30
        assert codes[30] == 429
