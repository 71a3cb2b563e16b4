"""
Tests for the status report and the audit trail queries.
"""
from datetime import timedelta

import pytest

from conftest import T0
from core.elevation.audit import get_audit_trail, log_elevation_event
from core.elevation.status import get_system_status
from models import db, ElevationAuditLog


@pytest.mark.elevation
class TestSystemStatus:

    def test_empty_system(self, scheduler, clock):
        status = get_system_status(scheduler, now=clock())

        assert status['current_time'] == T0.isoformat()
        assert status['total_grants_ever'] == 0
        assert status['status_breakdown'] == {}
        assert status['active_grants'] == {'count': 0, 'next_expiry': None, 'last_expiry': None}
        assert status['scheduled_job_count'] == 0
        assert status['system_health'] == 'OK'

    def test_counts_and_expiry_window(self, manager, clock):
        manager.grant('u1', 's1', 1)
        manager.grant('u2', 's1', 4)
        manager.grant('u1', 's2', 2)
        manager.revoke('u1', 's2')

        status = manager.status_report()

        assert status['total_grants_ever'] == 3
        assert status['status_breakdown'] == {'active': 2, 'revoked': 1}
        assert status['active_grants']['count'] == 2
        assert status['active_grants']['next_expiry'] == (T0 + timedelta(hours=1)).isoformat()
        assert status['active_grants']['last_expiry'] == (T0 + timedelta(hours=4)).isoformat()
        assert status['scheduled_job_count'] == 2
        assert status['overdue_grants'] == 0
        assert status['system_health'] == 'OK'

    def test_overdue_grant_raises_warning(self, manager, clock, active_grant):
        clock.advance(minutes=90)

        status = manager.status_report()

        assert status['overdue_grants'] == 1
        assert status['system_health'].startswith('WARNING')

    def test_warning_clears_after_cleanup(self, manager, clock, active_grant):
        clock.advance(minutes=90)
        manager.cleanup_expired()

        status = manager.status_report()
        assert status['system_health'] == 'OK'
        assert status['status_breakdown'] == {'expired': 1}


@pytest.mark.elevation
class TestAuditTrail:

    def test_log_requires_caller_commit(self, app):
        entry = log_elevation_event('grant_failed', {'error': 'x'}, principal='u1')
        assert entry in db.session.new
        db.session.commit()
        assert ElevationAuditLog.query.count() == 1

    def test_full_lifecycle_recorded(self, manager, clock, active_grant):
        manager.extend('u1', 's1', 1)
        clock.advance(minutes=5)
        manager.revoke('u1', 's1', revoked_by='carol')

        trail = get_audit_trail(grant_id=active_grant['grant']['id'])
        assert {e.event_type for e in trail} == {
            'grant_created', 'grant_extended', 'grant_revoked',
        }
        revoked = get_audit_trail(event_type='grant_revoked')[0]
        assert revoked.actor == 'carol'
        assert revoked.to_dict()['principal'] == 'u1'

    def test_filters_and_limit(self, manager):
        manager.grant('u1', 's1', 1)
        manager.grant('u2', 's2', 1)

        assert len(get_audit_trail(resource='s2')) == 1
        assert len(get_audit_trail(limit=1)) == 1
        assert get_audit_trail(principal='nobody') == []
