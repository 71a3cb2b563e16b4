"""
Closed enumeration of grantable permission kinds.

Permission names arriving at the API boundary are parsed here and nowhere
else; everything downstream works with ``Permission`` members.
"""
from __future__ import annotations

from enum import Enum
from typing import Iterable

from core.elevation.errors import ValidationError


class Permission(str, Enum):
    INSERT = 'INSERT'
    UPDATE = 'UPDATE'
    DELETE = 'DELETE'
    TRUNCATE = 'TRUNCATE'

    def __str__(self) -> str:
        return self.value


DEFAULT_PERMISSIONS = (Permission.INSERT, Permission.UPDATE, Permission.DELETE)

# Inserting or updating rows with serial keys also needs sequence USAGE.
SEQUENCE_PERMISSIONS = frozenset({Permission.INSERT, Permission.UPDATE})


def parse_permissions(values: Iterable[str | Permission] | None,
                      default: Iterable[Permission] | None = DEFAULT_PERMISSIONS,
                      ) -> list[Permission]:
    """Validate and normalise a permission list.

    Args:
        values: Permission names (any case) or members. None falls back to
            ``default``.
        default: Used when ``values`` is None. Pass None to require values.

    Returns:
        list[Permission] de-duplicated, in first-seen order.

    Raises:
        ValidationError: unknown permission name, or empty result.
    """
    if values is None:
        if default is None:
            raise ValidationError('At least one permission is required')
        return list(default)

    if isinstance(values, (str, Permission)):
        values = [values]

    parsed: list[Permission] = []
    for value in values:
        if isinstance(value, Permission):
            perm = value
        else:
            name = str(value).strip().upper()
            try:
                perm = Permission(name)
            except ValueError:
                raise ValidationError(
                    f'Unknown permission "{value}"',
                    allowed=[p.value for p in Permission],
                ) from None
        if perm not in parsed:
            parsed.append(perm)

    if not parsed:
        raise ValidationError('At least one permission is required')
    return parsed


def permission_names(perms: Iterable[Permission]) -> list[str]:
    """Serialise permissions for storage and API responses."""
    return [Permission(p).value for p in perms]
