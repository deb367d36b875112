from __future__ import annotations

import re

from playstats.utils.errors import UnsafeIdentifierError


_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_MAX_IDENTIFIER_LENGTH = 63


class SafeIdentifier(str):
    """A SQL identifier that may be interpolated into DDL.

    Validation happens once, at construction. Catalog-discovered names (primary
    key constraint names, aggregate names) and configured column lists pass
    through here before they reach a statement.
    Catalog names are rendered through ``quoted`` so their case survives.
    """

    __slots__ = ()

    def __new__(cls, value: object) -> "SafeIdentifier":
        if isinstance(value, SafeIdentifier):
            return value
        if not isinstance(value, str):
            raise UnsafeIdentifierError(value)
        if len(value) > _MAX_IDENTIFIER_LENGTH or not _IDENTIFIER_RE.match(value):
            raise UnsafeIdentifierError(value)
        return super().__new__(cls, value)

    def __repr__(self) -> str:
        return f"SafeIdentifier({str.__repr__(self)})"

    @property
    def quoted(self) -> str:
        return f'"{self}"'


def identifier_list(raw: str) -> tuple[SafeIdentifier, ...]:
    """Parse ``"server_user_id, server_id"`` into validated identifiers."""
    parts = [part.strip() for part in raw.split(",")]
    if not parts or any(not part for part in parts):
        raise UnsafeIdentifierError(raw)
    return tuple(SafeIdentifier(part) for part in parts)
