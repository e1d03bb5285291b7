#Filename: proxy_core.py
"""
ASYNC PROXY CORE - DECOY PROXY
HTTP/1.1 connection handler and TCP listener.
Parses requests, hands them to the Classifier and, when it elects to,
to the Forwarder.
"""

import asyncio
from typing import Optional, Tuple

from structures import (
    IncomingRequest, Headers, Decision, ProxyConfig, MAX_BODY_SIZE
)
from proxy_common import (
    LogCallback, ResponseWriter, ProxyError, BadRequestError, PayloadTooLargeError,
    UpstreamTransportError, STRICT_HEADER_PATTERN, IDLE_TIMEOUT, MAX_HEADER_LIST_SIZE,
    COMPACTION_THRESHOLD, READ_CHUNK_SIZE, format_peer, split_host_port
)
from classifier import Classifier, build_rules
from forwarder import Forwarder

def resolve_target_url(method: str, target: str) -> str:
    """
    Returns the target URL of a request line.
    Absolute-form and origin-form targets are kept as sent; a CONNECT
    authority-form target gets https for port 443 and http otherwise.
    """
    if method == 'CONNECT' and '://' not in target and not target.startswith('/'):
        parsed = split_host_port(target)
        scheme = "https" if parsed is None or parsed[1] == 443 else "http"
        return f"{scheme}://{target}"
    return target

class Http11ProxyHandler:
    """
    Handles one HTTP/1.1 client connection. Requests on a keep-alive
    connection are processed one after another.
    """
    __slots__ = (
        'reader', 'writer', 'classifier', 'forwarder', 'callback', 'max_body_size',
        'client_addr', 'buffer', '_buffer_offset', '_previous_byte_was_cr'
    )

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        classifier: Classifier,
        forwarder: Optional[Forwarder],
        manager_callback: Optional[LogCallback],
        max_body_size: int = MAX_BODY_SIZE
    ):
        """Initializes the Http11ProxyHandler."""
        self.reader = reader
        self.writer = writer
        self.classifier = classifier
        self.forwarder = forwarder if forwarder is not None else Forwarder(manager_callback)
        self.callback = manager_callback
        self.max_body_size = max_body_size
        self.client_addr = format_peer(writer.get_extra_info('peername'))
        self.buffer = bytearray()
        self._buffer_offset = 0
        self._previous_byte_was_cr = False

    def log(self, level: str, msg: object) -> None:
        """Emits a log message via the callback."""
        if self.callback:
            try:
                self.callback(level, msg)
            except Exception: # pylint: disable=broad-exception-caught
                pass

    async def _read_strict_line(self) -> bytes:
        """
        Reads a single line from the buffer/stream, strictly adhering to RFC limits.
        Detects excessive length.
        """
        while True:
            lf_index = self.buffer.find(b'\n', self._buffer_offset)
            if lf_index == -1:
                if len(self.buffer) - self._buffer_offset > 0:
                    self._previous_byte_was_cr = self.buffer[-1] == 0x0D
                if (len(self.buffer) - self._buffer_offset) > MAX_HEADER_LIST_SIZE:
                    raise BadRequestError("Header Line Exceeded Max Length")

                # Buffer compaction
                if (
                    self._buffer_offset > COMPACTION_THRESHOLD
                    and self._buffer_offset > (len(self.buffer) // 2)
                ):
                    del self.buffer[:self._buffer_offset]
                    self._buffer_offset = 0

                try:
                    data = await asyncio.wait_for(
                        self.reader.read(READ_CHUNK_SIZE), timeout=IDLE_TIMEOUT
                    )
                except asyncio.TimeoutError as exc:
                    raise ProxyError("Read Timeout (Idle)") from exc

                if not data:
                    if len(self.buffer) - self._buffer_offset > 0:
                        raise ProxyError("Incomplete message")
                    return b""
                self.buffer.extend(data)
                continue

            line_len = lf_index - self._buffer_offset
            if line_len > MAX_HEADER_LIST_SIZE:
                raise BadRequestError("Header Line Exceeded Max Length")

            is_crlf = False
            if lf_index > self._buffer_offset:
                if self.buffer[lf_index - 1] == 0x0D:
                    is_crlf = True
            elif lf_index == self._buffer_offset:
                if self._previous_byte_was_cr:
                    is_crlf = True

            line_end = lf_index - 1 if is_crlf else lf_index
            if line_end > self._buffer_offset:
                line = bytes(self.buffer[self._buffer_offset:line_end])
            else:
                line = b""

            self._buffer_offset = lf_index + 1
            self._previous_byte_was_cr = False
            return line

    async def run(self) -> None:
        """Main loop handling HTTP/1.1 request processing."""
        try:
            while True:
                try:
                    request = await self.read_request()
                except (BadRequestError, PayloadTooLargeError) as e:
                    self.log("ERROR", f"Framing Error: {e}")
                    await self._send_error(e.status, str(e))
                    return
                except ProxyError as e:
                    self.log("ERROR", f"Framing Error: {e}")
                    return

                if request is None:
                    break

                if not await self.handle_request(request):
                    break
        except Exception as e: # pylint: disable=broad-exception-caught
            self.log("ERROR", f"HTTP/1.1 Proxy Error: {e}")
        finally:
            if not self.writer.is_closing():
                self.writer.close()

    async def read_request(self) -> Optional[IncomingRequest]:
        """Reads one request off the connection. Returns None on a clean EOF."""
        line = await self._read_strict_line()
        # Tolerate stray empty lines between pipelined requests (RFC 9112 Section 2.2).
        while line == b"" and self._buffer_offset < len(self.buffer):
            line = await self._read_strict_line()
        if not line:
            return None

        try:
            parts = line.split(b' ', 2)
            if len(parts) != 3:
                raise ValueError
            method_b, target_b, version_b = parts
            method = method_b.decode('ascii')
            target = target_b.decode('ascii')
            version = version_b.decode('ascii')
        except ValueError as exc:
            raise BadRequestError("Malformed Request Line") from exc
        if not version.startswith("HTTP/1."):
            raise BadRequestError("Unsupported HTTP Version")

        headers = await self._read_headers()
        body = await self._read_body(headers)

        return IncomingRequest(
            method, resolve_target_url(method, target), headers,
            self.client_addr, body, version
        )

    async def _read_headers(self) -> Headers:
        headers = Headers()
        while True:
            h_line = await self._read_strict_line()
            if not h_line:
                break
            if h_line[0] in (0x20, 0x09):
                raise BadRequestError("Obsolete Line Folding Rejected")
            match = STRICT_HEADER_PATTERN.match(h_line)
            if not match:
                raise BadRequestError("Invalid Header Syntax")
            key = match.group(1).decode('ascii')
            val = match.group(2).decode('latin-1').strip()
            headers.add(key, val)
        return headers

    async def _read_body(self, headers: Headers) -> bytes:
        """Reads the body framed by Transfer-Encoding or Content-Length."""
        te = headers.get('transfer-encoding')
        cl = headers.get('content-length')
        if te:
            # RFC 9112 Section 6.3: Transfer-Encoding overrides Content-Length
            if cl:
                headers.delete('content-length')
            enc = [e.strip().lower() for e in te.split(',')]
            if enc[-1] != 'chunked':
                raise BadRequestError("Bad Transfer-Encoding")
            return await self._read_chunked_body()
        if cl:
            try:
                length = int(cl)
                if length < 0:
                    raise ValueError
            except ValueError as exc:
                raise BadRequestError("Invalid Content-Length") from exc
            if len(set(headers.get_list('content-length'))) > 1:
                raise BadRequestError("Invalid Content-Length")
            return await self._read_bytes(length)
        return b""

    async def handle_request(self, request: IncomingRequest) -> bool:
        """
        Classifies and answers one request.
        Returns True if the connection can carry another request.
        """
        response = ResponseWriter(self.writer, head_only=request.method == "HEAD")
        keep_alive = self._wants_keep_alive(request)
        decision = self.classifier.classify(request)

        if not decision.forward:
            await response.send_decision(decision, close=not keep_alive)
            return keep_alive

        try:
            await self.forwarder.forward(request, response)
        except UpstreamTransportError as e:
            self.log("ERROR", str(e))
            if not response.started:
                await response.send_decision(Decision.from_error("forward", e), close=True)
            return False
        return keep_alive and not response.close_connection

    def _wants_keep_alive(self, request: IncomingRequest) -> bool:
        if request.method == 'CONNECT':
            return False
        conn = ",".join(request.headers.get_list('connection')).lower()
        if 'close' in conn:
            return False
        if request.version == "HTTP/1.0":
            return 'keep-alive' in conn
        return True

    async def _send_error(self, code: int, message: str) -> None:
        """Sends an HTTP error response to the client."""
        try:
            resp = (
                f"HTTP/1.1 {code} {message}\r\n"
                "Connection: close\r\nContent-Length: 0\r\n\r\n"
            ).encode()
            self.writer.write(resp)
            await self.writer.drain()
        except Exception: # pylint: disable=broad-exception-caught
            pass

    async def _read_chunked_body(self) -> bytes:
        """Reads a chunked HTTP body."""
        parts = []
        total = 0
        while True:
            line = await self._read_strict_line()
            if b';' in line:
                line, _ = line.split(b';', 1)
            try:
                size = int(line.strip(), 16)
            except ValueError as exc:
                raise BadRequestError("Invalid chunk size") from exc
            if size < 0:
                raise BadRequestError("Invalid chunk size")

            if size == 0:
                # Trailer section
                while True:
                    t = await self._read_strict_line()
                    if not t:
                        break
                break

            total += size
            if total > self.max_body_size:
                raise PayloadTooLargeError(
                    f"Chunked body exceeded {self.max_body_size} bytes."
                )
            parts.append(await self._read_bytes(size))
            await self._read_strict_line()
        return b"".join(parts)

    async def _read_bytes(self, n: int) -> bytes:
        """Reads exactly n bytes from the stream."""
        if n > self.max_body_size:
            raise PayloadTooLargeError(f"Content-Length {n} exceeds limit.")

        while (len(self.buffer) - self._buffer_offset) < n:
            try:
                data = await asyncio.wait_for(
                    self.reader.read(READ_CHUNK_SIZE), timeout=IDLE_TIMEOUT
                )
            except asyncio.TimeoutError as exc:
                raise ProxyError("Read Timeout (Idle) in Body") from exc
            if not data:
                raise ProxyError("Incomplete read")

            if (
                self._buffer_offset > COMPACTION_THRESHOLD
                and self._buffer_offset > (len(self.buffer) // 2)
            ):
                del self.buffer[:self._buffer_offset]
                self._buffer_offset = 0
            self.buffer.extend(data)

        chunk = bytes(self.buffer[self._buffer_offset : self._buffer_offset + n])
        self._buffer_offset += n
        return chunk

def build_pipeline(
    config: ProxyConfig, manager_callback: Optional[LogCallback]
) -> Tuple[Classifier, Forwarder]:
    """Creates the Classifier and Forwarder described by config."""
    classifier = Classifier(
        manager_callback, build_rules(config), redact=config.redact_sensitive_headers
    )
    forwarder = Forwarder(
        manager_callback,
        timeout=config.upstream_timeout,
        verify_ssl=config.upstream_verify_ssl
    )
    return classifier, forwarder

async def create_proxy_server(
    config: ProxyConfig,
    manager_callback: Optional[LogCallback],
    classifier: Optional[Classifier] = None,
    forwarder: Optional[Forwarder] = None
) -> asyncio.AbstractServer:
    """Binds the listener. Every connection gets its own handler task."""
    default_classifier, default_forwarder = build_pipeline(config, manager_callback)
    classifier = classifier or default_classifier
    forwarder = forwarder or default_forwarder

    async def _handle(r: asyncio.StreamReader, w: asyncio.StreamWriter) -> None:
        await Http11ProxyHandler(
            r, w, classifier, forwarder, manager_callback,
            max_body_size=config.max_body_size
        ).run()

    return await asyncio.start_server(_handle, config.host, config.port)

async def start_proxy_server(
    config: ProxyConfig,
    manager_callback: LogCallback,
    classifier: Optional[Classifier] = None,
    forwarder: Optional[Forwarder] = None
) -> asyncio.AbstractServer:
    """
    Starts the TCP server on the configured host/port and serves until cancelled.
    """
    server = await create_proxy_server(config, manager_callback, classifier, forwarder)
    manager_callback("SYSTEM", f"Starting proxy server on {config.host}:{config.port}")

    async with server:
        try:
            await server.serve_forever()
        except asyncio.CancelledError:
            pass
        finally:
            manager_callback("SYSTEM", "Proxy stopped")
            server.close()
            await server.wait_closed()
    return server
