"""
Tests for the PostgreSQL privilege backend statements.
"""
from unittest.mock import MagicMock

import pytest

from core.elevation.backend import PostgresPrivilegeBackend
from core.elevation.permissions import Permission


@pytest.fixture
def engine():
    engine = MagicMock()
    engine.dialect.identifier_preparer.quote = lambda name: f'"{name}"'
    return engine


def _executed(engine):
    conn = engine.begin.return_value.__enter__.return_value
    return [str(c.args[0]) for c in conn.execute.call_args_list]


# ---------------------------------------------------------------------------
# Grant / revoke statements
# ---------------------------------------------------------------------------

@pytest.mark.elevation
class TestPostgresStatements:

    def test_apply_grants_sequence_usage_for_insert(self, engine):
        PostgresPrivilegeBackend(engine).apply('u1', 's1', [Permission.INSERT])

        assert _executed(engine) == [
            'GRANT INSERT ON ALL TABLES IN SCHEMA "s1" TO "u1"',
            'GRANT USAGE ON ALL SEQUENCES IN SCHEMA "s1" TO "u1"',
        ]

    def test_remove_revokes_sequence_usage(self, engine):
        failures = PostgresPrivilegeBackend(engine).remove('u1', 's1', [Permission.INSERT])

        assert failures == []
        assert _executed(engine) == [
            'REVOKE INSERT ON ALL TABLES IN SCHEMA "s1" FROM "u1"',
            'REVOKE USAGE ON ALL SEQUENCES IN SCHEMA "s1" FROM "u1"',
        ]

    def test_remove_keeps_usage_another_grant_needs(self, engine):
        """UPDATE is still held elsewhere on the key, so sequence USAGE stays."""
        backend = PostgresPrivilegeBackend(engine)

        backend.remove('u1', 's1', [Permission.INSERT, Permission.DELETE],
                       retain=[Permission.UPDATE])

        statements = _executed(engine)
        assert statements == [
            'REVOKE INSERT ON ALL TABLES IN SCHEMA "s1" FROM "u1"',
            'REVOKE DELETE ON ALL TABLES IN SCHEMA "s1" FROM "u1"',
        ]
        assert not any('USAGE' in s for s in statements)

    def test_retained_delete_does_not_keep_usage(self, engine):
        PostgresPrivilegeBackend(engine).remove('u1', 's1', [Permission.UPDATE],
                                                retain=[Permission.DELETE])

        assert 'REVOKE USAGE ON ALL SEQUENCES IN SCHEMA "s1" FROM "u1"' in _executed(engine)
