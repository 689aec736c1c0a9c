"""
Data types and identifier derivation for the ark store.
"""

import hashlib
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional
from urllib.parse import urlparse, urlunparse

from .kinds import AttributeKind


def utc_now() -> str:
    """Current UTC timestamp in canonical format: YYYY-MM-DDTHH:MM:SS.ffffff.

    All timestamps in ark are UTC, stored without timezone suffix.
    Microseconds are kept so that creation order survives quick successive writes.
    """
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")


def parse_utc_timestamp(ts: str) -> datetime:
    """Parse a stored timestamp string to a timezone-aware UTC datetime."""
    ts = ts.replace("Z", "+00:00")
    dt = datetime.fromisoformat(ts)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


# ---------------------------------------------------------------------------
# Key normalization
# ---------------------------------------------------------------------------

_UNRESERVED = frozenset(
    'ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-._~'
)
_DEFAULT_PORTS = {'http': 80, 'https': 443}

# scheme = ALPHA *( ALPHA / DIGIT / "+" / "-" / "." ), followed by "://"
_URI_SCHEME_PATTERN = re.compile(r'^([a-zA-Z][a-zA-Z0-9+.-]*)://')

_RESOURCE_ID_RE = re.compile(r'[0-9a-f]{64}')


def _decode_unreserved(s: str) -> str:
    """Decode percent-encoded unreserved characters (RFC 3986 §2.3).

    Only decodes %XX where the decoded char is unreserved (letters, digits,
    ``-._~``). Reserved percent-encodings are kept with uppercase hex digits.
    """
    if '%' not in s:
        return s
    result: list[str] = []
    i = 0
    while i < len(s):
        if s[i] == '%' and i + 2 < len(s):
            hex_str = s[i + 1:i + 3]
            try:
                char = chr(int(hex_str, 16))
                if char in _UNRESERVED:
                    result.append(char)
                else:
                    result.append(f'%{hex_str.upper()}')
                i += 3
                continue
            except ValueError:
                pass
        result.append(s[i])
        i += 1
    return ''.join(result)


def _resolve_dot_segments(path: str) -> str:
    """Remove dot segments from a URI path (RFC 3986 §5.2.4)."""
    segments = path.split('/')
    output: list[str] = []
    for seg in segments:
        if seg == '.':
            continue
        elif seg == '..':
            if output and output[-1] != '':
                output.pop()
        else:
            output.append(seg)
    resolved = '/'.join(output)
    if path.startswith('/') and not resolved.startswith('/'):
        resolved = '/' + resolved
    return resolved


def _normalize_http_uri(uri: str) -> str:
    """RFC 3986 §6.2.2 syntax-based normalization for HTTP/HTTPS URIs."""
    parsed = urlparse(uri)

    scheme = parsed.scheme.lower()
    host = (parsed.hostname or '').lower()

    try:
        port = parsed.port
    except ValueError:
        # Out of range or not a number: keep the port text as written
        port = parsed.netloc.rpartition('@')[2].rpartition(':')[2]
    if port and port == _DEFAULT_PORTS.get(scheme):
        port = None
    netloc = f'{host}:{port}' if port else host
    if parsed.username:
        userinfo = parsed.username
        if parsed.password:
            userinfo += f':{parsed.password}'
        netloc = f'{userinfo}@{netloc}'

    path = _resolve_dot_segments(_decode_unreserved(parsed.path))
    if not path:
        path = '/'

    query = _decode_unreserved(parsed.query)
    fragment = _decode_unreserved(parsed.fragment)

    return urlunparse((scheme, netloc, path, parsed.params, query, fragment))


def _normalize_path(path: str) -> str:
    """Canonicalize separators of a filesystem path.

    Backslashes become forward slashes, repeated separators collapse, ``.``
    segments are dropped and a trailing separator is removed. ``..`` is kept:
    resolving it without the filesystem could merge distinct paths.
    """
    path = path.replace('\\', '/')
    absolute = path.startswith('/')
    segments = [seg for seg in path.split('/') if seg not in ('', '.')]
    joined = '/'.join(segments)
    if absolute:
        return '/' + joined
    return joined or '.'


def normalize_key(key: str) -> str:
    """Normalize a defining key so that equivalent keys compare equal.

    HTTP/HTTPS URLs get RFC 3986 safe normalizations, other ``scheme://``
    keys get a lowercase scheme, and everything else is treated as a path.
    """
    key = key.strip()
    match = _URI_SCHEME_PATTERN.match(key)
    if match:
        scheme = match.group(1).lower()
        if scheme in _DEFAULT_PORTS:
            return _normalize_http_uri(key)
        return scheme + key[len(match.group(1)):]
    return _normalize_path(key)


class ResourceId(str):
    """Hex SHA-256 of a normalized defining key."""
    __slots__ = ()


def derive_id(defining_key: str) -> ResourceId:
    """Derive the stable resource id for a defining key."""
    digest = hashlib.sha256(normalize_key(defining_key).encode("utf-8"))
    return ResourceId(digest.hexdigest())


def is_resource_id(value: str) -> bool:
    """Check if a string has the shape of a derived resource id."""
    return isinstance(value, str) and bool(_RESOURCE_ID_RE.fullmatch(value))


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Resource:
    """
    A tracked link or file.

    This is a read-only snapshot. Use the registry to update display
    fields or to touch the modification time.

    Attributes:
        id: Derived from the defining key, never changes
        defining_key: URL or path the resource was created from
        display_fields: Short labels such as title and description
        created_at: UTC timestamp of creation
        modified_at: UTC timestamp of the last attribute write
    """
    id: ResourceId
    defining_key: str
    display_fields: dict[str, str] = field(default_factory=dict)
    created_at: str = ""
    modified_at: str = ""

    @property
    def title(self) -> Optional[str]:
        return self.display_fields.get("title")

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "defining_key": self.defining_key,
            "display_fields": dict(self.display_fields),
            "created_at": self.created_at,
            "modified_at": self.modified_at,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "Resource":
        return cls(
            id=ResourceId(d["id"]),
            defining_key=d["defining_key"],
            display_fields=dict(d.get("display_fields") or {}),
            created_at=d["created_at"],
            modified_at=d["modified_at"],
        )

    def __str__(self) -> str:
        title = f" {self.title}" if self.title else ""
        return f"{self.id[:12]}{title} <{self.defining_key}>"


@dataclass(frozen=True)
class VersionRecord:
    """One immutable entry of an attribute's history."""
    resource_id: ResourceId
    kind: AttributeKind
    version_number: int
    timestamp: str
    payload: Any
