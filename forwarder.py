#Filename: forwarder.py
"""
UPSTREAM FORWARDER
Performs a genuine one-hop forward with httpx and relays the upstream
response to the client, stripping hop-by-hop fields in both directions.
"""

from typing import List, Optional, Tuple

import httpx

from structures import IncomingRequest, OutboundRequest, Headers, UPSTREAM_TIMEOUT
from proxy_common import (
    LogCallback, ResponseWriter, UpstreamTransportError, FORWARDED_FOR,
    copy_headers, strip_hop_headers, chain_forwarded_for, split_host_port
)

def build_outbound_request(request: IncomingRequest) -> OutboundRequest:
    """
    Derives the upstream request. Only scheme, host, path and query
    (the absolute URL) drive the new connection.
    """
    headers = strip_hop_headers(request.headers.copy())
    peer = split_host_port(request.remote_addr)
    if peer is not None:
        headers.set(FORWARDED_FOR, chain_forwarded_for(headers, peer[0]))
    return OutboundRequest(request.method, request.url, headers, request.body)

def encode_headers(headers: Headers) -> List[Tuple[bytes, bytes]]:
    """Byte pairs for httpx; values were read off the wire as latin-1."""
    return [
        (name.encode('latin-1'), value.encode('latin-1', 'replace'))
        for name, value in headers.multi_items()
    ]

def response_headers(response: httpx.Response) -> Headers:
    """Upstream response fields minus hop-by-hop ones, every value kept."""
    # raw keeps the upstream's spelling of each name
    upstream = strip_hop_headers(Headers(
        (name.decode('latin-1'), value.decode('latin-1'))
        for name, value in response.headers.raw
    ))
    relayed = Headers()
    copy_headers(relayed, upstream)
    return relayed

class Forwarder:
    """
    Sends one request upstream per call.
    No pooling and no retries: each call opens its own client.
    """
    __slots__ = ('callback', 'timeout', 'verify_ssl', 'transport')

    def __init__(
        self,
        callback: Optional[LogCallback] = None,
        timeout: Optional[float] = UPSTREAM_TIMEOUT,
        verify_ssl: bool = True,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.callback = callback
        self.timeout = timeout
        self.verify_ssl = verify_ssl
        self.transport = transport

    def log(self, level: str, msg: object) -> None:
        """Emits a log message via the callback."""
        if self.callback:
            self.callback(level, msg)

    def _client(self) -> httpx.AsyncClient:
        if self.transport is not None:
            return httpx.AsyncClient(transport=self.transport, follow_redirects=False, trust_env=False)
        return httpx.AsyncClient(
            timeout=httpx.Timeout(self.timeout),
            verify=self.verify_ssl,
            follow_redirects=False,
            trust_env=False
        )

    async def forward(self, request: IncomingRequest, writer: ResponseWriter) -> None:
        """
        Forwards request and relays the response through writer.
        Raises UpstreamTransportError if the upstream cannot be reached
        (nothing written yet) or the relay breaks off (head already sent).
        """
        outbound = build_outbound_request(request)

        async with self._client() as client:
            try:
                # Built directly so the client's default fields are not merged in.
                upstream_req = httpx.Request(
                    outbound.method,
                    outbound.url,
                    headers=encode_headers(outbound.headers),
                    content=outbound.body or None,
                    extensions={"timeout": httpx.Timeout(self.timeout).as_dict()}
                )
                response = await client.send(upstream_req, stream=True)
            except (httpx.HTTPError, httpx.InvalidURL) as e:
                raise UpstreamTransportError(f"ServeHTTP: {e}") from e

            try:
                await self._relay(request, response, writer)
            finally:
                await response.aclose()

    async def _relay(
        self, request: IncomingRequest, response: httpx.Response, writer: ResponseWriter
    ) -> None:
        self.log(
            "UPSTREAM",
            f"{request.remote_addr} {response.status_code} {response.reason_phrase}".rstrip()
        )
        headers = response_headers(response)
        # Without a length the body is framed by closing our side.
        close = "content-length" not in headers and not writer.head_only
        await writer.write_head(response.status_code, headers, close=close)

        try:
            if response.is_stream_consumed:
                # Transports that hand back an already-read body
                await writer.write(response.content)
            else:
                async for chunk in response.aiter_raw():
                    await writer.write(chunk)
        except (httpx.HTTPError, httpx.StreamError, ConnectionError) as e:
            writer.close_connection = True
            raise UpstreamTransportError(f"Relay aborted after {writer.bytes_sent} bytes: {e}") from e
