#Filename: proxy_common.py
"""
PROXY COMMON DEFINITIONS
Shared logic, constants, exceptions and header helpers for the Decoy Proxy.
Implements Single Source of Truth (SSOT) for wire-level limits.
"""

import asyncio
import re
from http import HTTPStatus
from typing import Optional, Tuple, List, Callable, Any

from structures import Headers, Decision, HOP_BY_HOP_HEADERS, SENSITIVE_HEADERS

# -- Constants --
STRICT_HEADER_PATTERN = re.compile(rb'^([!#$%&\'*+\-.^_`|~0-9a-zA-Z]+):[ \t]*(.*)$')
IDLE_TIMEOUT = 60.0
MAX_HEADER_LIST_SIZE = 262144
READ_CHUNK_SIZE = 65536
COMPACTION_THRESHOLD = 65536

FORWARDED_FOR = "X-Forwarded-For"

# Callback signature shared by every component: callback(level, message)
LogCallback = Callable[[str, object], None]

class ProxyError(Exception):
    """Base exception for Proxy operations."""
    status: int = 500
    body: bytes = b""
    content_type: Optional[str] = None

class RequestRejected(ProxyError):
    """A request answered with a synthetic refusal, never forwarded."""

class UnsupportedSchemeError(RequestRejected):
    """Target scheme is neither http nor https."""
    status = 400
    content_type = "text/plain; charset=utf-8"

    def __init__(self, scheme: str):
        super().__init__(f"unsupported protocol scheme {scheme}")
        self.scheme = scheme
        self.body = f"unsupported protocol scheme {scheme}\n".encode('utf-8', 'replace')

class AuthenticationPresentError(RequestRejected):
    """An authentication header was sent; the resource is reported as missing."""
    status = 404

    def __init__(self, header: str = ""):
        super().__init__("found authentication header")
        self.header = header

class TunnelNotSupportedError(RequestRejected):
    """CONNECT was requested; tunnels are never established."""
    status = 404

    def __init__(self) -> None:
        super().__init__("CONNECT request - returning 404")

class UpstreamTransportError(ProxyError):
    """The outbound call to the upstream could not complete."""
    status = 500
    content_type = "text/plain; charset=utf-8"
    body = b"Server Error\n"

class PayloadTooLargeError(ProxyError):
    """Raised when the inbound body exceeds the configured limit."""
    status = 413

class BadRequestError(ProxyError):
    """Inbound framing could not be parsed."""
    status = 400

class ResponseAlreadyStartedError(ProxyError):
    """A second status was written after bytes reached the client."""

class StartupConfigurationError(ProxyError):
    """Required startup configuration (the log path) is missing."""

# -- Stateless Helper Functions --

def copy_headers(dst: Headers, src: Headers) -> None:
    """Appends every value of every field in src to dst, in order."""
    for name, value in src.multi_items():
        dst.add(name, value)

def strip_hop_headers(headers: Headers) -> Headers:
    """Removes every hop-by-hop field in place. Safe to call repeatedly."""
    for name in HOP_BY_HOP_HEADERS:
        headers.delete(name)
    return headers

def chain_forwarded_for(headers: Headers, host: str) -> str:
    """
    Returns the X-Forwarded-For value after appending host.
    Prior values (possibly spread over several fields) are folded into one
    comma+space separated list.
    """
    prior = headers.get_list(FORWARDED_FOR)
    if prior:
        return ", ".join(prior) + ", " + host
    return host

def split_host_port(addr: str) -> Optional[Tuple[str, int]]:
    """
    Splits 'host:port' or '[v6]:port' into (host, port).
    Returns None when the address has no usable port.
    """
    if not addr:
        return None
    if addr.startswith('['):
        end = addr.find(']')
        if end == -1 or not addr[end + 1:].startswith(':'):
            return None
        host, port_str = addr[1:end], addr[end + 2:]
    else:
        if addr.count(':') != 1:
            return None
        host, port_str = addr.split(':', 1)
    if not port_str.isdigit():
        return None
    port = int(port_str)
    if port > 65535:
        return None
    return host, port

def format_peer(peername: Any) -> str:
    """Renders a socket peername tuple as 'host:port' ('[host]:port' for IPv6)."""
    if isinstance(peername, tuple) and len(peername) >= 2:
        host = str(peername[0])
        if ':' in host:
            return f"[{host}]:{peername[1]}"
        return f"{host}:{peername[1]}"
    return str(peername) if peername else ""

def flatten_headers(headers: Headers, redact: bool = False) -> str:
    """One-line rendering of all fields: 'Name : v1,v2, Other : v'."""
    parts: List[str] = []
    for name, values in headers.items():
        if redact and name.lower() in SENSITIVE_HEADERS:
            rendered = "[REDACTED]"
        else:
            rendered = ",".join(values)
        parts.append(f"{name} : {rendered}")
    return ", ".join(parts)

def reason_phrase(status: int) -> str:
    try:
        return HTTPStatus(status).phrase
    except ValueError:
        return ""

def validate_header_value(value: str) -> bool:
    """Field values MUST NOT contain CR, LF, or NUL."""
    return '\r' not in value and '\n' not in value and '\x00' not in value

class ResponseWriter:
    """
    Serializes one HTTP/1.1 response onto the client stream.
    The status line can be written exactly once; after that only body
    bytes may follow.
    """
    __slots__ = ('writer', 'head_only', 'started', 'status', 'close_connection', 'bytes_sent')

    def __init__(self, writer: asyncio.StreamWriter, head_only: bool = False):
        self.writer = writer
        self.head_only = head_only
        self.started = False
        self.status = 0
        self.close_connection = False
        self.bytes_sent = 0

    async def write_head(self, status: int, headers: Headers, close: bool = False) -> None:
        """Writes the status line and fields. Raises if a head was already sent."""
        if self.started:
            raise ResponseAlreadyStartedError(
                f"Response already started with status {self.status}"
            )
        self.started = True
        self.status = status
        self.close_connection = close

        # [VECTOR OPTIMIZATION] Batch header writes to minimize syscalls
        buf = [f"HTTP/1.1 {status} {reason_phrase(status)}\r\n".encode('latin-1')]
        for name, value in headers.multi_items():
            if not validate_header_value(value):
                continue
            buf.append(f"{name}: {value}\r\n".encode('latin-1', 'replace'))
        if close:
            buf.append(b"Connection: close\r\n")
        buf.append(b"\r\n")
        self.writer.write(b"".join(buf))
        await self.writer.drain()

    async def write(self, data: bytes) -> None:
        if not self.started:
            raise ProxyError("Body written before response head")
        if self.head_only or not data:
            return
        self.writer.write(data)
        await self.writer.drain()
        self.bytes_sent += len(data)

    async def send_decision(self, decision: Decision, close: bool = False) -> None:
        """Writes a complete synthetic response for a classifier decision."""
        headers = Headers()
        if decision.content_type:
            headers.add("Content-Type", decision.content_type)
        if decision.error is not None:
            headers.add("X-Content-Type-Options", "nosniff")
        headers.add("Content-Length", str(len(decision.body)))
        await self.write_head(decision.status, headers, close=close)
        if decision.body:
            await self.write(decision.body)
