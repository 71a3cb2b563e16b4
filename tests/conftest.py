"""
Pytest configuration and shared fixtures for elevation service tests
"""
import pytest
import os
import sys
import tempfile
from datetime import datetime, timedelta
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

# Set test environment before importing app; the engine is created at import
_db_fd, _db_path = tempfile.mkstemp(suffix='.db')
os.environ['FLASK_ENV'] = 'testing'
os.environ['TESTING'] = 'true'
os.environ['DATABASE_URL'] = f'sqlite:///{_db_path}'
os.environ['ELEVATION_BACKEND'] = 'memory'
os.environ['MEMORY_BACKEND_PRINCIPALS'] = 'u1,u2'
os.environ['MEMORY_BACKEND_RESOURCES'] = 's1,s2'
os.environ['SCHEDULER_ENABLED'] = 'false'
os.environ['AUTO_CREATE_TABLES'] = 'false'
os.environ['ADMIN_API_TOKEN'] = 'test-admin-token'
os.environ['CRON_SECRET'] = 'test-cron-secret'

ADMIN_HEADERS = {'Authorization': 'Bearer test-admin-token'}
CRON_HEADERS = {'Authorization': 'Bearer test-cron-secret'}

T0 = datetime(2026, 3, 2, 9, 0, 0)


class FakeClock:
    """Manually advanced utc clock shared by manager and scheduler."""

    def __init__(self, start=T0):
        self.current = start

    def __call__(self):
        return self.current

    def advance(self, **kwargs):
        self.current += timedelta(**kwargs)
        return self.current


@pytest.fixture(scope='session')
def app():
    """Create and configure a test Flask application instance"""
    from server import app as flask_app
    from models import db
    from rate_limiter import limiter

    flask_app.config.update({
        'TESTING': True,
        'SECRET_KEY': 'test-secret-key',
    })

    # Disable rate limiting for tests (must be done after init_limiter ran)
    limiter.enabled = False

    # Create tables inside a persistent app context
    with flask_app.app_context():
        db.create_all()
        yield flask_app
        db.session.remove()
        db.drop_all()

    # Close and remove temporary database
    os.close(_db_fd)
    os.unlink(_db_path)


@pytest.fixture(autouse=True)
def _clean_db(app):
    """Clean up data and backend state between tests."""
    from models import db
    yield
    db.session.rollback()
    for table in reversed(db.metadata.sorted_tables):
        db.session.execute(table.delete())
    db.session.commit()
    app.extensions['elevation'].backend.reset()


@pytest.fixture(scope='function')
def client(app):
    """Create a test client for the Flask application"""
    return app.test_client()


@pytest.fixture
def admin_headers():
    return dict(ADMIN_HEADERS)


@pytest.fixture
def cron_headers():
    return dict(CRON_HEADERS)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def backend():
    """In-memory backend knowing u1/u2 and s1/s2, plus a schema with no tables."""
    from core.elevation.backend import InMemoryPrivilegeBackend

    return InMemoryPrivilegeBackend(
        principals={'u1', 'u2'},
        resources={'s1', 's2'},
        empty_resources={'empty'},
    )


@pytest.fixture
def scheduler(app, clock):
    from core.elevation.scheduler import DatabaseScheduler

    return DatabaseScheduler(max_attempts=3, clock=clock)


@pytest.fixture
def manager(app, backend, scheduler, clock):
    from core.elevation.manager import GrantManager

    return GrantManager(backend, scheduler, clock=clock)


@pytest.fixture
def active_grant(manager):
    """Scenario A baseline: u1 on s1 for 1h with INSERT/UPDATE."""
    result, error = manager.grant('u1', 's1', 1, ['INSERT', 'UPDATE'])
    assert error is None
    return result
