"""
Error taxonomy for grant operations.

Service functions do not raise these to their callers. They return
``(result, None)`` on success and ``(None, error)`` on failure, where
``error`` is one of the classes below. Routes map ``http_status`` directly.
"""
from __future__ import annotations

from typing import Any


class ElevationError(Exception):
    """Base class for all grant lifecycle failures."""

    kind = 'ElevationError'
    http_status = 400

    def __init__(self, message: str, code: str | None = None,
                 **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.kind
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        return {
            'success': False,
            'error': self.message,
            'kind': self.kind,
            'code': self.code,
            'details': self.details,
        }


class ValidationError(ElevationError):
    """Bad duration, empty permission set, unknown principal or resource."""
    kind = 'ValidationError'
    http_status = 400


class ConflictError(ElevationError):
    """Duplicate active grant, or extend on a grant that cannot be extended."""
    kind = 'ConflictError'
    http_status = 409


class NotFoundError(ElevationError):
    """No active grant for the (principal, resource) pair."""
    kind = 'NotFoundError'
    http_status = 404


class BackendError(ElevationError):
    """The privilege backend failed to apply or remove permissions."""
    kind = 'BackendError'
    http_status = 502


class SchedulingError(ElevationError):
    """The revoke job could not be registered."""
    kind = 'SchedulingError'
    http_status = 503
