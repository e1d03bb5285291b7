#Filename: structures.py
"""
CORE DATA STRUCTURES
Single Source of Truth (SSOT) for the Decoy Proxy.
Shared by the Classifier, the Forwarder and the HTTP/1.1 wire handler.
Strict type enforcement at the runtime boundary.
"""

import re
from typing import Dict, List, Tuple, Optional, Any, Iterable, Iterator, FrozenSet

# -- Constants --

# RFC 3986 Section 3.1: scheme = ALPHA *( ALPHA / DIGIT / "+" / "-" / "." )
SCHEME_PATTERN = re.compile(r'^([A-Za-z][A-Za-z0-9+.\-]*):')

DEFAULT_PORT: int = 8181
DEFAULT_BIND: str = "0.0.0.0"
MAX_BODY_SIZE: int = 10 * 1024 * 1024    # 10MB limit for inbound request bodies
UPSTREAM_TIMEOUT: float = 10.0

EMPTY_HTML: bytes = b"<html></html>"

# RFC 2616 Section 13.5.1: Hop-by-hop headers, never forwarded in either direction.
# Stored lower-case; lookups are canonicalized with str.lower().
HOP_BY_HOP_HEADERS: FrozenSet[str] = frozenset({
    'connection', 'keep-alive', 'proxy-authenticate', 'proxy-authorization',
    'te', 'trailers', 'transfer-encoding', 'upgrade'
})

# Presence of any of these makes the proxy pretend the resource does not exist.
AUTH_HEADERS: Tuple[str, ...] = ('www-authenticate', 'authorization', 'proxy-authorization')

# OpSec: Headers to redact in logs when redaction is enabled
SENSITIVE_HEADERS: FrozenSet[str] = frozenset({
    'authorization', 'proxy-authorization', 'cookie', 'set-cookie',
    'x-auth-token', 'x-api-key', 'access_token', 'authentication', 'bearer'
})

# -- Types --

class Headers:
    """
    Ordered, case-insensitive multi-map of HTTP header fields.
    Every name keeps the spelling it was first added with; all lookups
    go through the lower-cased key.
    """
    __slots__ = ('_fields',)

    def __init__(self, items: Optional[Iterable[Tuple[str, str]]] = None) -> None:
        # lower-case key -> (display name, [values])
        self._fields: Dict[str, Tuple[str, List[str]]] = {}
        if items is not None:
            if isinstance(items, Headers):
                items = items.multi_items()
            elif isinstance(items, dict):
                items = items.items()
            for name, value in items:
                self.add(name, value)

    def add(self, name: str, value: str) -> None:
        """Appends a value, keeping any existing ones."""
        key = name.lower()
        if key in self._fields:
            self._fields[key][1].append(value)
        else:
            self._fields[key] = (name, [value])

    def set(self, name: str, value: str) -> None:
        """Replaces all values of the field with a single one."""
        key = name.lower()
        display = self._fields[key][0] if key in self._fields else name
        self._fields[key] = (display, [value])

    def get(self, name: str, default: str = "") -> str:
        """Returns the first value, or default if the field is absent."""
        entry = self._fields.get(name.lower())
        if not entry or not entry[1]:
            return default
        return entry[1][0]

    def get_list(self, name: str) -> List[str]:
        entry = self._fields.get(name.lower())
        return list(entry[1]) if entry else []

    def delete(self, name: str) -> None:
        """Removes the field. Deleting a missing field is a no-op."""
        self._fields.pop(name.lower(), None)

    def keys(self) -> List[str]:
        return [display for display, _ in self._fields.values()]

    def items(self) -> List[Tuple[str, List[str]]]:
        """Returns (name, values) pairs in insertion order."""
        return [(display, list(values)) for display, values in self._fields.values()]

    def multi_items(self) -> List[Tuple[str, str]]:
        """Returns one (name, value) pair per value, grouped by field."""
        return [
            (display, value)
            for display, values in self._fields.values()
            for value in values
        ]

    def copy(self) -> 'Headers':
        return Headers(self.multi_items())

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and name.lower() in self._fields

    def __iter__(self) -> Iterator[str]:
        return iter(self.keys())

    def __len__(self) -> int:
        return len(self._fields)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Headers):
            return NotImplemented
        return self.multi_items() == other.multi_items()

    def __repr__(self) -> str:
        return f"Headers({self.multi_items()!r})"


class IncomingRequest:
    """
    A request as received from the client.
    The url is the absolute target (scheme + host + path + query).
    """
    __slots__ = ('method', 'url', 'headers', 'remote_addr', 'body', 'version')

    def __init__(
        self,
        method: str,
        url: str,
        headers: Optional[Headers] = None,
        remote_addr: str = "",
        body: bytes = b"",
        version: str = "HTTP/1.1"
    ) -> None:
        if headers is None:
            headers = Headers()
        if not isinstance(headers, Headers):
            raise TypeError(f"headers must be Headers, got {type(headers).__name__}")
        if not isinstance(body, bytes):
            raise TypeError(f"Request body must be bytes, got {type(body).__name__}")
        self.method: str = method
        self.url: str = url
        self.headers: Headers = headers
        self.remote_addr: str = remote_addr
        self.body: bytes = body
        self.version: str = version

    @property
    def scheme(self) -> str:
        """Scheme of the target URL, empty for origin-form and '*' targets."""
        match = SCHEME_PATTERN.match(self.url)
        if match is None:
            return ""
        return match.group(1).lower()

    def __repr__(self) -> str:
        return f"<IncomingRequest {self.method} {self.url} from {self.remote_addr or '?'}>"


class OutboundRequest:
    """
    The request sent upstream. Derived from an IncomingRequest; it only
    carries the absolute URL, never the inbound request-target or version.
    """
    __slots__ = ('method', 'url', 'headers', 'body')

    def __init__(self, method: str, url: str, headers: Headers, body: bytes = b"") -> None:
        self.method = method
        self.url = url
        self.headers = headers
        self.body = body

    def __repr__(self) -> str:
        return f"<OutboundRequest {self.method} {self.url}>"


class Decision:
    """
    Result of classifying a request: either a synthetic response or
    an instruction to forward.
    """
    __slots__ = ('rule', 'status', 'body', 'content_type', 'reason', 'forward', 'error')

    def __init__(
        self,
        rule: str,
        status: int = 200,
        body: bytes = b"",
        content_type: Optional[str] = None,
        reason: str = "",
        forward: bool = False,
        error: Optional[Exception] = None
    ) -> None:
        self.rule = rule
        self.status = status
        self.body = body
        self.content_type = content_type
        self.reason = reason
        self.forward = forward
        self.error = error

    @classmethod
    def from_error(cls, rule: str, error: Any) -> 'Decision':
        """Builds the client-visible response for a rejection error."""
        return cls(
            rule,
            status=error.status,
            body=error.body,
            content_type=error.content_type,
            reason=str(error),
            error=error
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'rule': self.rule,
            'status': self.status,
            'body': self.body.decode('utf-8', 'ignore'),
            'content_type': self.content_type,
            'reason': self.reason,
            'forward': self.forward
        }

    def __repr__(self) -> str:
        action = "forward" if self.forward else f"status:{self.status}"
        return f"<Decision {self.rule} {action}>"


class ProxyConfig:
    """
    Runtime configuration of the proxy.

    Defaults reproduce the fixed behavior: listen on 0.0.0.0:8181, answer
    every request with a synthetic response and never contact an upstream.
    Setting forwarding_enabled makes forwarding the last-resort rule in
    place of the empty HTML page.
    """
    __slots__ = (
        'host', 'port', 'log_path', 'forwarding_enabled', 'upstream_timeout',
        'upstream_verify_ssl', 'redact_sensitive_headers', 'max_body_size'
    )

    def __init__(
        self,
        host: str = DEFAULT_BIND,
        port: int = DEFAULT_PORT,
        log_path: Optional[str] = None,
        forwarding_enabled: bool = False,
        upstream_timeout: Optional[float] = UPSTREAM_TIMEOUT,
        upstream_verify_ssl: bool = True,
        redact_sensitive_headers: bool = False,
        max_body_size: int = MAX_BODY_SIZE
    ) -> None:
        if not 0 <= port <= 65535:
            raise ValueError(f"Port out of range: {port}")
        if upstream_timeout is not None and upstream_timeout <= 0:
            raise ValueError("upstream_timeout must be positive or None")
        self.host = host
        self.port = port
        self.log_path = log_path
        self.forwarding_enabled = forwarding_enabled
        self.upstream_timeout = upstream_timeout
        self.upstream_verify_ssl = upstream_verify_ssl
        self.redact_sensitive_headers = redact_sensitive_headers
        self.max_body_size = max_body_size

    def to_dict(self) -> Dict[str, Any]:
        return {name: getattr(self, name) for name in self.__slots__}

    def __repr__(self) -> str:
        mode = "forwarding" if self.forwarding_enabled else "decoy"
        return f"<ProxyConfig {self.host}:{self.port} {mode}>"
