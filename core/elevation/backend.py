"""
Privilege backends - the systems that physically apply and remove grants.

The grant manager only talks to the ``PrivilegeBackend`` interface:

    validate_entities(principal, resource)  -> bool
    apply(principal, resource, permissions) -> None, raises BackendError
    remove(principal, resource, permissions, retain=()) -> list of failures
    probe(principal, resource)              -> {privilege: allowed} or None

``remove`` is deliberately per-permission: one failed REVOKE must not hide
the others, and the caller decides whether a partial failure is fatal.

Two implementations ship here:
    PostgresPrivilegeBackend - GRANT/REVOKE on all tables in a schema.
    InMemoryPrivilegeBackend - dictionary-backed, for local dev and tests.
"""
from __future__ import annotations

import logging
import threading
from typing import Iterable

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from core.elevation.errors import BackendError
from core.elevation.permissions import Permission, SEQUENCE_PERMISSIONS

logger = logging.getLogger(__name__)

# Privileges reported by probe(), in report order.
PROBED_PRIVILEGES = ('SELECT', 'INSERT', 'UPDATE', 'DELETE', 'USAGE')

RemoveFailures = list[tuple[Permission, str]]


class PrivilegeBackend:
    """Interface consumed by GrantManager."""

    def validate_entities(self, principal: str, resource: str) -> tuple[bool, str | None]:
        """Return (True, None) if both exist, else (False, reason)."""
        raise NotImplementedError

    def apply(self, principal: str, resource: str,
              permissions: Iterable[Permission]) -> None:
        """Grant every permission, atomically. Raises BackendError."""
        raise NotImplementedError

    def remove(self, principal: str, resource: str,
               permissions: Iterable[Permission],
               retain: Iterable[Permission] = ()) -> RemoveFailures:
        """Revoke each permission independently.

        ``retain`` lists permissions another live grant still holds on the
        same key; privileges they imply (sequence USAGE) are left in place.

        Returns:
            list of (permission, error message) for the ones that failed;
            empty on full success.
        """
        raise NotImplementedError

    def probe(self, principal: str, resource: str) -> dict[str, bool] | None:
        """Report current privileges, or None if there is nothing to test."""
        raise NotImplementedError


# ---------------------------------------------------------------------------
# PostgreSQL
# ---------------------------------------------------------------------------

class PostgresPrivilegeBackend(PrivilegeBackend):
    """Applies permissions to every table in a schema for a database role."""

    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    @classmethod
    def from_url(cls, url: str, **engine_options) -> PostgresPrivilegeBackend:
        return cls(create_engine(url, **engine_options))

    def _quote(self, identifier: str) -> str:
        return self._engine.dialect.identifier_preparer.quote(identifier)

    def validate_entities(self, principal, resource):
        try:
            with self._engine.connect() as conn:
                role = conn.execute(
                    text('SELECT 1 FROM pg_roles WHERE rolname = :name'),
                    {'name': principal},
                ).first()
                if role is None:
                    return False, f'User {principal} does not exist'

                schema = conn.execute(
                    text('SELECT 1 FROM information_schema.schemata '
                         'WHERE schema_name = :name'),
                    {'name': resource},
                ).first()
                if schema is None:
                    return False, f'Schema {resource} does not exist'
        except SQLAlchemyError as e:
            raise BackendError(f'Could not validate {principal}@{resource}: {e}') from e
        return True, None

    def _grant_statements(self, principal, resource, perm):
        schema, role = self._quote(resource), self._quote(principal)
        stmts = [f'GRANT {perm.value} ON ALL TABLES IN SCHEMA {schema} TO {role}']
        if perm in SEQUENCE_PERMISSIONS:
            stmts.append(f'GRANT USAGE ON ALL SEQUENCES IN SCHEMA {schema} TO {role}')
        return stmts

    def _revoke_statements(self, principal, resource, perm, keep_sequence_usage=False):
        schema, role = self._quote(resource), self._quote(principal)
        stmts = [f'REVOKE {perm.value} ON ALL TABLES IN SCHEMA {schema} FROM {role}']
        if perm in SEQUENCE_PERMISSIONS and not keep_sequence_usage:
            stmts.append(f'REVOKE USAGE ON ALL SEQUENCES IN SCHEMA {schema} FROM {role}')
        return stmts

    def apply(self, principal, resource, permissions):
        perms = [Permission(p) for p in permissions]
        try:
            with self._engine.begin() as conn:
                for perm in perms:
                    for stmt in self._grant_statements(principal, resource, perm):
                        conn.execute(text(stmt))
        except SQLAlchemyError as e:
            raise BackendError(
                f'Failed to grant {[p.value for p in perms]} on {resource} to {principal}: {e}',
                principal=principal, resource=resource,
            ) from e
        logger.info('[elevation] granted %s on %s to %s',
                    [p.value for p in perms], resource, principal)

    def remove(self, principal, resource, permissions, retain=()):
        keep_usage = bool({Permission(p) for p in retain} & SEQUENCE_PERMISSIONS)
        failures: RemoveFailures = []
        for perm in (Permission(p) for p in permissions):
            try:
                with self._engine.begin() as conn:
                    for stmt in self._revoke_statements(principal, resource, perm,
                                                        keep_usage):
                        conn.execute(text(stmt))
            except SQLAlchemyError as e:
                logger.warning('[elevation] failed to revoke %s permission from %s: %s',
                               perm.value, principal, e)
                failures.append((perm, str(e)))
        return failures

    def probe(self, principal, resource):
        try:
            with self._engine.connect() as conn:
                table = conn.execute(
                    text("SELECT table_name FROM information_schema.tables "
                         "WHERE table_schema = :schema AND table_type = 'BASE TABLE' "
                         "LIMIT 1"),
                    {'schema': resource},
                ).scalar()
                if table is None:
                    return None

                qualified = f'{self._quote(resource)}.{self._quote(table)}'
                result = {}
                for priv in ('SELECT', 'INSERT', 'UPDATE', 'DELETE'):
                    result[priv] = bool(conn.execute(
                        text('SELECT has_table_privilege(:role, :tbl, :priv)'),
                        {'role': principal, 'tbl': qualified, 'priv': priv},
                    ).scalar())

                result['USAGE'] = bool(conn.execute(
                    text('SELECT EXISTS ('
                         ' SELECT 1 FROM information_schema.sequences s'
                         ' WHERE s.sequence_schema = :schema'
                         "   AND has_sequence_privilege(:role, quote_ident(:schema) || '.'"
                         "       || quote_ident(s.sequence_name), 'USAGE'))"),
                    {'role': principal, 'schema': resource},
                ).scalar())
        except SQLAlchemyError as e:
            raise BackendError(f'Could not probe {principal}@{resource}: {e}') from e
        return result


# ---------------------------------------------------------------------------
# In-memory
# ---------------------------------------------------------------------------

class InMemoryPrivilegeBackend(PrivilegeBackend):
    """Dictionary-backed backend.

    Every known principal can SELECT from every known resource; write
    privileges exist only while granted. Failures can be injected per
    (principal, resource) for exercising compensation paths.
    """

    def __init__(self, principals: Iterable[str] = (),
                 resources: Iterable[str] = (),
                 empty_resources: Iterable[str] = ()) -> None:
        self._lock = threading.Lock()
        self.principals = set(principals)
        self.resources = set(resources)
        self.empty_resources = set(empty_resources)
        self.granted: dict[tuple[str, str], set[Permission]] = {}
        self.fail_apply_for: set[tuple[str, str]] = set()
        self.fail_remove_for: set[tuple[str, str]] = set()
        self.calls: list[tuple[str, str, str, list[str]]] = []

    def reset(self) -> None:
        with self._lock:
            self.granted.clear()
            self.fail_apply_for.clear()
            self.fail_remove_for.clear()
            self.calls.clear()

    def calls_for(self, operation: str) -> list[tuple[str, str, str, list[str]]]:
        with self._lock:
            return [c for c in self.calls if c[0] == operation]

    def validate_entities(self, principal, resource):
        if principal not in self.principals:
            return False, f'User {principal} does not exist'
        if resource not in self.resources and resource not in self.empty_resources:
            return False, f'Schema {resource} does not exist'
        return True, None

    def apply(self, principal, resource, permissions):
        perms = [Permission(p) for p in permissions]
        with self._lock:
            self.calls.append(('apply', principal, resource, [p.value for p in perms]))
            if (principal, resource) in self.fail_apply_for:
                raise BackendError(
                    f'Failed to grant {[p.value for p in perms]} on {resource} to {principal}',
                    principal=principal, resource=resource,
                )
            self.granted.setdefault((principal, resource), set()).update(perms)

    def remove(self, principal, resource, permissions, retain=()):
        perms = [Permission(p) for p in permissions]
        failures: RemoveFailures = []
        with self._lock:
            self.calls.append(('remove', principal, resource, [p.value for p in perms]))
            held = self.granted.get((principal, resource), set())
            for perm in perms:
                if (principal, resource) in self.fail_remove_for:
                    failures.append((perm, f'simulated failure revoking {perm.value}'))
                    continue
                held.discard(perm)
            if not held:
                self.granted.pop((principal, resource), None)
        for perm, message in failures:
            logger.warning('[elevation] failed to revoke %s permission from %s: %s',
                           perm.value, principal, message)
        return failures

    def probe(self, principal, resource):
        if resource in self.empty_resources:
            return None
        with self._lock:
            held = set(self.granted.get((principal, resource), set()))
        known = principal in self.principals and resource in self.resources
        return {
            'SELECT': known,
            'INSERT': Permission.INSERT in held,
            'UPDATE': Permission.UPDATE in held,
            'DELETE': Permission.DELETE in held,
            'USAGE': bool(held & SEQUENCE_PERMISSIONS),
        }
