"""
Wiring for the elevation service inside a Flask app.

init_elevation(app) builds the privilege backend, scheduler and grant
manager from app.config, stores them on app.extensions['elevation'] and,
when enabled, starts the background scheduler worker.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass

from flask import current_app

from core.elevation.backend import (
    InMemoryPrivilegeBackend,
    PostgresPrivilegeBackend,
    PrivilegeBackend,
)
from core.elevation.manager import GrantManager
from core.elevation.scheduler import DatabaseScheduler, SchedulerWorker

logger = logging.getLogger(__name__)

EXTENSION_KEY = 'elevation'


@dataclass
class ElevationService:
    backend: PrivilegeBackend
    scheduler: DatabaseScheduler
    manager: GrantManager
    worker: SchedulerWorker | None = None


def _split(value: str | None) -> list[str]:
    return [v.strip() for v in (value or '').split(',') if v.strip()]


def build_backend(config) -> PrivilegeBackend:
    """Pick the privilege backend named by ELEVATION_BACKEND."""
    kind = config.get('ELEVATION_BACKEND', 'memory')
    if kind == 'postgres':
        url = config.get('TARGET_DATABASE_URL') or config['SQLALCHEMY_DATABASE_URI']
        return PostgresPrivilegeBackend.from_url(url, pool_pre_ping=True)
    if kind == 'memory':
        return InMemoryPrivilegeBackend(
            principals=_split(config.get('MEMORY_BACKEND_PRINCIPALS')),
            resources=_split(config.get('MEMORY_BACKEND_RESOURCES')),
        )
    raise ValueError(f'Unknown ELEVATION_BACKEND: {kind!r}')


def init_elevation(app, backend: PrivilegeBackend | None = None) -> ElevationService:
    backend = backend or build_backend(app.config)
    scheduler = DatabaseScheduler(max_attempts=app.config.get('SCHEDULER_MAX_ATTEMPTS', 5))
    manager = GrantManager(backend, scheduler)

    worker = None
    if app.config.get('SCHEDULER_ENABLED'):
        worker = SchedulerWorker(
            app, scheduler,
            interval_seconds=app.config.get('SCHEDULER_INTERVAL_SECONDS', 60),
            cleanup=manager.cleanup_expired,
            cleanup_interval_minutes=app.config.get('CLEANUP_INTERVAL_MINUTES', 60),
        )
        worker.start()

    service = ElevationService(backend=backend, scheduler=scheduler,
                               manager=manager, worker=worker)
    app.extensions[EXTENSION_KEY] = service
    logger.info('[elevation] service initialised (backend=%s, worker=%s)',
                type(backend).__name__, 'on' if worker else 'off')
    return service


def get_service() -> ElevationService:
    return current_app.extensions[EXTENSION_KEY]


def get_manager() -> GrantManager:
    return get_service().manager
