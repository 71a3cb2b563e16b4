"""
core.elevation - Time-bounded privilege elevation.

Grants a principal temporary write permissions on a resource, guarantees
automatic revocation at expiry through a durable scheduler, and keeps a
permanent audit trail of every grant, extension and revocation.

Public API:
    GrantManager                          - grant lifecycle orchestration
    Permission, parse_permissions         - closed permission enumeration
    PrivilegeBackend, PostgresPrivilegeBackend,
    InMemoryPrivilegeBackend              - permission application
    Scheduler, DatabaseScheduler,
    SchedulerWorker                       - deferred revoke jobs
    get_system_status                     - health/statistics report
    log_elevation_event, get_audit_trail  - audit trail
    init_elevation, get_manager           - Flask wiring
    ElevationError and subclasses         - error taxonomy
"""

from core.elevation.errors import (
    ElevationError,
    ValidationError,
    ConflictError,
    NotFoundError,
    BackendError,
    SchedulingError,
)
from core.elevation.permissions import (
    Permission,
    DEFAULT_PERMISSIONS,
    parse_permissions,
)
from core.elevation.backend import (
    PrivilegeBackend,
    PostgresPrivilegeBackend,
    InMemoryPrivilegeBackend,
)
from core.elevation.scheduler import (
    Scheduler,
    DatabaseScheduler,
    SchedulerWorker,
    logical_key,
)
from core.elevation.manager import (
    GrantManager,
    AUTO_REVOKE_ACTION,
    MAX_DURATION_HOURS,
    MAX_EXTEND_HOURS,
)
from core.elevation.status import get_system_status
from core.elevation.audit import log_elevation_event, get_audit_trail
from core.elevation.service import init_elevation, get_manager, get_service

__all__ = [
    'ElevationError',
    'ValidationError',
    'ConflictError',
    'NotFoundError',
    'BackendError',
    'SchedulingError',
    'Permission',
    'DEFAULT_PERMISSIONS',
    'parse_permissions',
    'PrivilegeBackend',
    'PostgresPrivilegeBackend',
    'InMemoryPrivilegeBackend',
    'Scheduler',
    'DatabaseScheduler',
    'SchedulerWorker',
    'logical_key',
    'GrantManager',
    'AUTO_REVOKE_ACTION',
    'MAX_DURATION_HOURS',
    'MAX_EXTEND_HOURS',
    'get_system_status',
    'log_elevation_event',
    'get_audit_trail',
    'init_elevation',
    'get_manager',
    'get_service',
]
