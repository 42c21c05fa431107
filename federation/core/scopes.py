"""
Scope parsing and validation.

Scopes arrive on the wire as space- or comma-separated strings and are stored
as JSON lists. Both are parsed once into a ``Scope``: an ordered,
de-duplicated tuple of scope names.
"""

import re
from typing import Iterable, Optional, Union

from federation.core.config import Settings, get_settings
from federation.core.errors import InvalidScope

_SCOPE_SPLIT = re.compile(r"[\s,]+")
_SCOPE_TOKEN = re.compile(r"^[\x21\x23-\x5B\x5D-\x7E]+$")  # RFC 6749 scope-token


class Scope(tuple):
    """Ordered set of scope names."""

    def __new__(cls, values: Iterable[str] = ()):
        cleaned = (value.strip() for value in values if value and value.strip())
        return super().__new__(cls, dict.fromkeys(cleaned))

    @classmethod
    def parse(cls, raw: Union[str, Iterable[str], None]) -> "Scope":
        if raw is None:
            return cls()
        if isinstance(raw, str):
            return cls(_SCOPE_SPLIT.split(raw))
        return cls(raw)

    def issubset(self, other: Iterable[str]) -> bool:
        allowed = set(other)
        return all(name in allowed for name in self)

    def union(self, other: Iterable[str]) -> "Scope":
        return Scope(list(self) + list(other))

    def difference(self, other: Iterable[str]) -> "Scope":
        excluded = set(other)
        return Scope(name for name in self if name not in excluded)

    def to_list(self):
        return list(self)

    def __str__(self) -> str:
        return " ".join(self)

    def __repr__(self) -> str:
        return f"Scope({list(self)!r})"


def validate_requested_scope(
    requested: Union[str, Iterable[str], None],
    client_scopes: Iterable[str],
    settings: Optional[Settings] = None,
) -> Scope:
    """
    Validate requested scopes against globally supported scopes and the client's grant.

    Args:
        requested: Raw scope parameter or an iterable of scope names
        client_scopes: Scopes the client is allowed to request

    Returns:
        The normalized Scope; the configured default scopes when none were requested

    Raises:
        InvalidScope: If any scope is malformed, unsupported, or not granted to the client
    """
    settings = settings or get_settings()
    scope = Scope.parse(requested)
    if not scope:
        scope = Scope(settings.oauth2_default_scopes)

    malformed = [name for name in scope if not _SCOPE_TOKEN.match(name)]
    if malformed:
        raise InvalidScope(f"Malformed scopes: {', '.join(malformed)}")

    unsupported = scope.difference(settings.oauth2_supported_scopes)
    if unsupported:
        raise InvalidScope(f"Unsupported scopes: {', '.join(unsupported)}")

    unauthorized = scope.difference(client_scopes)
    if unauthorized:
        raise InvalidScope(f"Client not authorized for scopes: {', '.join(unauthorized)}")

    return scope
