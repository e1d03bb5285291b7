# tests/test_proxy_common.py
"""
Tests for the header helpers, address helpers and ResponseWriter.
"""
import pytest
from structures import Headers, Decision
from proxy_common import (
    copy_headers, strip_hop_headers, chain_forwarded_for, split_host_port,
    format_peer, flatten_headers, reason_phrase, ResponseWriter,
    ResponseAlreadyStartedError, ProxyError, UnsupportedSchemeError
)
from conftest import written

HOP_INPUT = [
    ("Connection", "keep-alive"), ("KEEP-ALIVE", "timeout=5"),
    ("proxy-authenticate", "Basic"), ("Proxy-Authorization", "Basic eA=="),
    ("te", "trailers"), ("Trailers", "X-Sum"), ("Transfer-Encoding", "chunked"),
    ("upgrade", "websocket"), ("Content-Type", "text/plain"), ("X-Keep", "1")
]

class TestCopyHeaders:
    def test_appends_every_value(self):
        dst = Headers([("Set-Cookie", "a=1")])
        src = Headers([("Set-Cookie", "b=2"), ("Set-Cookie", "a=1"), ("Vary", "Accept")])
        copy_headers(dst, src)
        assert dst.get_list("set-cookie") == ["a=1", "b=2", "a=1"]
        assert dst.get("vary") == "Accept"

    def test_empty_source(self):
        dst = Headers([("A", "1")])
        copy_headers(dst, Headers())
        assert dst.multi_items() == [("A", "1")]

class TestStripHopHeaders:
    def test_removes_all_hop_headers_any_case(self):
        h = strip_hop_headers(Headers(HOP_INPUT))
        assert h.multi_items() == [("Content-Type", "text/plain"), ("X-Keep", "1")]

    def test_idempotent(self):
        once = strip_hop_headers(Headers(HOP_INPUT))
        twice = strip_hop_headers(once.copy())
        assert once == twice

class TestChainForwardedFor:
    def test_no_prior(self):
        assert chain_forwarded_for(Headers(), "5.6.7.8") == "5.6.7.8"

    def test_single_prior(self):
        h = Headers([("X-Forwarded-For", "1.2.3.4")])
        assert chain_forwarded_for(h, "5.6.7.8") == "1.2.3.4, 5.6.7.8"

    def test_multiple_prior_fields_folded(self):
        h = Headers([("x-forwarded-for", "1.1.1.1"), ("X-Forwarded-For", "2.2.2.2, 3.3.3.3")])
        assert chain_forwarded_for(h, "4.4.4.4") == "1.1.1.1, 2.2.2.2, 3.3.3.3, 4.4.4.4"

    def test_does_not_mutate(self):
        h = Headers([("X-Forwarded-For", "1.2.3.4")])
        chain_forwarded_for(h, "5.6.7.8")
        assert h.get_list("X-Forwarded-For") == ["1.2.3.4"]

class TestAddresses:
    @pytest.mark.parametrize("addr,expected", [
        ("1.2.3.4:80", ("1.2.3.4", 80)),
        ("[::1]:8181", ("::1", 8181)),
        ("localhost:0", ("localhost", 0)),
        ("1.2.3.4", None),
        ("::1", None),
        ("[::1]", None),
        ("host:port", None),
        ("host:99999", None),
        ("", None),
    ])
    def test_split_host_port(self, addr, expected):
        assert split_host_port(addr) == expected

    def test_format_peer(self):
        assert format_peer(("10.0.0.1", 5555)) == "10.0.0.1:5555"
        assert format_peer(("::1", 8181, 0, 0)) == "[::1]:8181"
        assert format_peer(None) == ""

def test_flatten_headers():
    h = Headers([("Accept", "a"), ("Accept", "b"), ("Authorization", "secret")])
    assert flatten_headers(h) == "Accept : a,b, Authorization : secret"
    assert "secret" not in flatten_headers(h, redact=True)
    assert "Authorization : [REDACTED]" in flatten_headers(h, redact=True)

def test_reason_phrase():
    assert reason_phrase(404) == "Not Found"
    assert reason_phrase(599) == ""

class TestResponseWriter:
    @pytest.mark.asyncio
    async def test_send_decision(self, mock_writer):
        resp = ResponseWriter(mock_writer)
        await resp.send_decision(Decision("default", 200, b"<html></html>", "text/html; charset=utf-8"))
        out = written(mock_writer)
        assert out.startswith(b"HTTP/1.1 200 OK\r\n")
        assert b"Content-Type: text/html; charset=utf-8\r\n" in out
        assert b"Content-Length: 13\r\n" in out
        assert out.endswith(b"\r\n\r\n<html></html>")
        assert b"Connection: close" not in out

    @pytest.mark.asyncio
    async def test_error_decision_has_nosniff(self, mock_writer):
        resp = ResponseWriter(mock_writer)
        await resp.send_decision(Decision.from_error("scheme", UnsupportedSchemeError("ftp")), close=True)
        out = written(mock_writer)
        assert out.startswith(b"HTTP/1.1 400 Bad Request\r\n")
        assert b"X-Content-Type-Options: nosniff\r\n" in out
        assert b"Connection: close\r\n" in out
        assert out.endswith(b"unsupported protocol scheme ftp\n")

    @pytest.mark.asyncio
    async def test_second_head_rejected(self, mock_writer):
        resp = ResponseWriter(mock_writer)
        await resp.write_head(200, Headers())
        with pytest.raises(ResponseAlreadyStartedError):
            await resp.write_head(500, Headers())
        assert written(mock_writer).count(b"HTTP/1.1") == 1

    @pytest.mark.asyncio
    async def test_body_before_head_rejected(self, mock_writer):
        with pytest.raises(ProxyError):
            await ResponseWriter(mock_writer).write(b"x")

    @pytest.mark.asyncio
    async def test_head_only_suppresses_body(self, mock_writer):
        resp = ResponseWriter(mock_writer, head_only=True)
        await resp.write_head(200, Headers([("Content-Length", "5")]))
        await resp.write(b"hello")
        assert b"hello" not in written(mock_writer)
        assert resp.bytes_sent == 0

    @pytest.mark.asyncio
    async def test_drops_injected_values(self, mock_writer):
        resp = ResponseWriter(mock_writer)
        await resp.write_head(200, Headers([("X-Bad", "a\r\nInjected: 1"), ("X-Good", "b")]))
        out = written(mock_writer)
        assert b"Injected" not in out
        assert b"X-Good: b\r\n" in out
