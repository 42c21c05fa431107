"""
Redirect URI validation.

Registered redirect URIs are either exact URIs or single-level wildcard
patterns of the form ``scheme://*.domain.tld/path``. Matching is done on the
parsed components, never by turning a pattern into a regular expression.
"""

import logging
import string
from typing import Iterable, Optional
from urllib.parse import urlsplit

from federation.core.config import Settings, get_settings
from federation.core.errors import InvalidRequest

logger = logging.getLogger(__name__)

WILDCARD_PREFIX = "*."
LABEL_CHARS = frozenset(string.ascii_letters + string.digits + "-")

DANGEROUS_SCHEMES = {
    'javascript', 'data', 'vbscript', 'file', 'ftp',
    'blob', 'filesystem', 'chrome', 'chrome-extension',
    'moz-extension', 'safari-extension'
}
LOCAL_HOSTS = {'localhost', '127.0.0.1', '::1'}


def _split(uri: str):
    try:
        parsed = urlsplit(uri)
        port = parsed.port
    except ValueError:
        return None, None
    return parsed, port


def _has_userinfo(parsed) -> bool:
    return "@" in parsed.netloc or parsed.username is not None or parsed.password is not None


def is_wildcard_pattern(uri: str) -> bool:
    parsed, _ = _split(uri)
    return bool(parsed and parsed.netloc.startswith(WILDCARD_PREFIX))


def redirect_uri_matches(pattern: str, candidate: str) -> bool:
    """
    Check a candidate redirect URI against one registered URI or wildcard pattern.

    A wildcard stands for exactly one DNS label made of letters, digits and
    hyphens. The scheme, port and path must match the pattern exactly, and
    candidates with userinfo, a query or a fragment never match a wildcard.
    """
    if not pattern or not candidate:
        return False
    if pattern == candidate:
        return True

    pattern_parts, pattern_port = _split(pattern)
    if pattern_parts is None or not pattern_parts.netloc.startswith(WILDCARD_PREFIX):
        return False
    if pattern_parts.query or pattern_parts.fragment:
        return False

    parts, port = _split(candidate)
    if parts is None:
        return False
    if _has_userinfo(parts) or parts.query or parts.fragment or candidate.endswith(("?", "#")):
        return False
    if parts.scheme != pattern_parts.scheme:
        return False
    if port != pattern_port:
        return False
    if parts.path != pattern_parts.path:
        return False

    host = parts.hostname or ""
    suffix = pattern_parts.hostname[len(WILDCARD_PREFIX):] if pattern_parts.hostname else ""
    if not suffix or "*" in suffix or not host.endswith("." + suffix):
        return False

    label = host[:-(len(suffix) + 1)]
    return bool(label) and all(char in LABEL_CHARS for char in label)


def validate_redirect_uri(registered_uris: Iterable[str], candidate: str) -> bool:
    """Return True if the candidate matches any registered URI or pattern."""
    if not candidate:
        return False
    registered = list(registered_uris or [])
    if candidate in registered:
        return True
    return any(redirect_uri_matches(pattern, candidate) for pattern in registered)


def check_redirect_uri_pattern(pattern: str, settings: Optional[Settings] = None) -> str:
    """
    Validate a redirect URI or wildcard pattern at client registration.

    Blocks dangerous schemes and embedded credentials, and requires HTTPS
    outside debug mode except for localhost.

    Raises:
        InvalidRequest: If the URI cannot be registered
    """
    settings = settings or get_settings()
    parsed, _ = _split(pattern)
    if parsed is None or not parsed.scheme:
        raise InvalidRequest(f"Invalid redirect_uri format: {pattern}")

    scheme = parsed.scheme.lower()
    if scheme in DANGEROUS_SCHEMES:
        raise InvalidRequest(f"Redirect URI scheme '{parsed.scheme}' is not allowed")

    if not parsed.hostname:
        raise InvalidRequest("Redirect URI must include a valid hostname")

    if _has_userinfo(parsed):
        raise InvalidRequest("Redirect URI must not contain authentication credentials")

    if parsed.fragment:
        raise InvalidRequest("Redirect URI must not contain a fragment")

    hostname = parsed.hostname.lower()
    if scheme != "https" and not (settings.debug or hostname in LOCAL_HOSTS):
        raise InvalidRequest("Redirect URI must use HTTPS in production")

    if "*" in parsed.netloc:
        if not parsed.netloc.startswith(WILDCARD_PREFIX) or "*" in parsed.netloc[len(WILDCARD_PREFIX):]:
            raise InvalidRequest("Wildcard is only allowed as the entire left-most host label")
        labels = hostname[len(WILDCARD_PREFIX):].split(".")
        if len(labels) < 2 or not all(labels):
            raise InvalidRequest("Wildcard redirect URIs need at least two labels after the wildcard")
        if parsed.query:
            raise InvalidRequest("Wildcard redirect URIs must not contain a query")
    if "*" in parsed.path:
        raise InvalidRequest("Wildcards are not allowed in the redirect URI path")

    return pattern


class RedirectURIValidator:
    """Binds redirect URI matching to the client registry."""

    def __init__(self, registry):
        self.registry = registry

    def validate(self, client_id: str, candidate: str) -> bool:
        client = self.registry.get(client_id)
        if client is None or not client.is_active:
            return False
        matched = validate_redirect_uri(client.redirect_uris, candidate)
        if not matched:
            logger.warning(f"Redirect URI not registered for client {client_id}: {candidate}")
        return matched
