"""Tests for server/httpd.py ConnectionHandler - the per-connection loop."""

import json
from dataclasses import replace
from unittest.mock import patch

import pytest

from conftest import FakeAgent, MemoryConnection, build_request, parse_responses
from server.httpd import ConnectionHandler


@pytest.fixture
def handler(server_config, fake_agent):
    return ConnectionHandler(server_config, fake_agent)


def _serve(handler, data: bytes):
    conn = MemoryConnection(data)
    handler.serve(conn)
    return conn, parse_responses(conn.output.getvalue())


class TestAuthentication:
    """Every request needs the API key."""

    @pytest.mark.parametrize("method,path", [
        ("GET", "/"),
        ("POST", "/node/update"),
        ("POST", "/node/geofiles"),
        ("GET", "/nowhere"),
    ])
    def test_missing_key(self, handler, fake_agent, method, path):
        _, responses = _serve(handler, build_request(method, path, api_key=None))
        assert len(responses) == 1
        status, _, body = responses[0]
        assert status == 401
        assert body == b'{"detail":"missing api key"}'
        assert fake_agent.calls == []

    @pytest.mark.parametrize("method,path", [("GET", "/"), ("POST", "/node/update")])
    def test_invalid_key(self, handler, fake_agent, method, path):
        _, responses = _serve(handler, build_request(method, path, api_key="nope"))
        status, _, body = responses[0]
        assert status == 401
        assert body == b'{"detail":"invalid api key"}'
        assert fake_agent.calls == []

    def test_body_not_read_when_unauthorized(self, handler):
        """The body of an unauthenticated request stays unread."""
        body = b'{"region": "iran"}'
        conn, responses = _serve(handler, build_request(
            "POST", "/node/geofiles", body=body, api_key="nope", keep_alive=True,
        ))
        assert responses[0][0] == 401
        assert len(responses) == 1
        assert conn.rfile.read() == body

    def test_unauthorized_keep_alive_continues(self, handler):
        """401 without a body keeps a keep-alive connection open."""
        data = build_request(api_key="nope", keep_alive=True) + build_request()
        _, responses = _serve(handler, data)
        assert [r[0] for r in responses] == [401, 200]


class TestRequests:
    """Authenticated requests."""

    def test_health(self, handler):
        _, responses = _serve(handler, build_request())
        assert responses == [(200, {
            "content-type": "application/json",
            "content-length": "15",
            "connection": "close",
        }, b'{"status":"ok"}')]

    def test_not_found(self, handler):
        _, responses = _serve(handler, build_request("GET", "/status"))
        assert responses[0][0] == 404
        assert responses[0][2] == b'{"detail":"Not found"}'

    def test_payload_too_large(self, handler, fake_agent):
        """Oversized bodies are rejected without buffering them."""
        data = build_request(
            "POST", "/node/core_update", headers={"Content-Length": "2000000"},
        ) + b"x" * 1024
        conn, responses = _serve(handler, data)
        assert len(responses) == 1
        status, _, body = responses[0]
        assert status == 400
        assert body == b'{"detail":"Payload too large"}'
        assert fake_agent.calls == []
        assert len(conn.rfile.read()) == 1024

    def test_truncated_body(self, handler, fake_agent):
        data = build_request("POST", "/node/core_update", headers={"Content-Length": "50"})
        _, responses = _serve(handler, data + b'{"core_version"')
        assert responses[0][0] == 400
        assert responses[0][2] == b'{"detail":"Failed to read request body"}'
        assert fake_agent.calls == []

    def test_core_update_failure(self, server_config):
        agent = FakeAgent(exit_code=1, output="")
        handler = ConnectionHandler(server_config, agent)
        body = json.dumps({"core_version": "1.2.3"}).encode()
        _, responses = _serve(handler, build_request("POST", "/node/core_update", body=body))
        status, _, raw = responses[0]
        assert status == 404
        assert "1.2.3" in json.loads(raw)["detail"]

    def test_geofiles(self, handler, fake_agent):
        body = b'{"region":"IRAN"}'
        _, responses = _serve(handler, build_request("POST", "/node/geofiles", body=body))
        assert responses[0][0] == 200
        assert fake_agent.calls == [("geofiles", "iran")]

    def test_surrogate_region_answered(self, handler, fake_agent):
        """An escaped lone surrogate echoed in the detail still gets a 400."""
        body = b'{"region":"\\ud800"}'
        _, responses = _serve(handler, build_request("POST", "/node/geofiles", body=body))
        assert len(responses) == 1
        status, headers, raw = responses[0]
        assert status == 400
        assert json.loads(raw) == {"detail": "Unsupported region \ud800"}
        assert int(headers["content-length"]) == len(raw)
        assert fake_agent.calls == []

    def test_surrogate_version_answered(self, server_config):
        agent = FakeAgent(exit_code=1)
        handler = ConnectionHandler(server_config, agent)
        body = b'{"core_version":"\\udcff"}'
        _, responses = _serve(handler, build_request("POST", "/node/core_update", body=body))
        status, _, raw = responses[0]
        assert status == 404
        assert "\udcff" in json.loads(raw)["detail"]

    def test_non_ascii_api_key(self, server_config, fake_agent):
        """A non-ASCII key sent as UTF-8 bytes matches the configured key."""
        handler = ConnectionHandler(replace(server_config, api_key="clé"), fake_agent)
        data = (
            b"GET / HTTP/1.1\r\n"
            + "X-Api-Key: clé\r\n".encode("utf-8")
            + b"\r\n"
        )
        _, responses = _serve(handler, data)
        assert responses[0][0] == 200

    def test_non_ascii_api_key_mismatch(self, server_config, fake_agent):
        handler = ConnectionHandler(replace(server_config, api_key="clé"), fake_agent)
        data = b"GET / HTTP/1.1\r\n" + "X-Api-Key: cle\r\n".encode("utf-8") + b"\r\n"
        _, responses = _serve(handler, data)
        assert responses[0][0] == 401

    def test_content_length_matches_body(self, handler):
        """Every response's Content-Length equals its body length."""
        requests = [
            build_request(keep_alive=True),
            build_request("POST", "/node/update", keep_alive=True),
            build_request("POST", "/node/geofiles", body=b'{"region":"br\\u00e9sil"}', keep_alive=True),
            build_request("GET", "/missing", keep_alive=True),
            build_request(api_key="bad", keep_alive=True),
            build_request("POST", "/node/core_update", body=b"{bad"),
        ]
        conn = MemoryConnection(b"".join(requests))
        handler.serve(conn)
        raw = conn.output.getvalue()
        responses = parse_responses(raw)
        assert len(responses) == 6
        for _, headers, body in responses:
            assert int(headers["content-length"]) == len(body)
        assert sum(len(b) for _, _, b in responses) < len(raw)


class TestKeepAlive:
    """Connection continuation."""

    def test_keep_alive_serves_second_request(self, handler):
        data = build_request(keep_alive=True) + build_request()
        _, responses = _serve(handler, data)
        assert [r[0] for r in responses] == [200, 200]

    def test_close_ends_after_one_response(self, handler):
        data = build_request(headers={"Connection": "close"}) + build_request()
        conn, responses = _serve(handler, data)
        assert len(responses) == 1
        assert conn.rfile.read() == build_request()

    def test_no_header_ends_after_one_response(self, handler):
        data = build_request() + build_request()
        _, responses = _serve(handler, data)
        assert len(responses) == 1

    def test_connection_close_header_sent_on_keep_alive(self, handler):
        """Responses always carry Connection: close."""
        data = build_request(keep_alive=True) + build_request()
        _, responses = _serve(handler, data)
        assert all(h["connection"] == "close" for _, h, _ in responses)

    def test_health_independent_of_prior_request(self, handler):
        data = (
            build_request("POST", "/node/geofiles", body=b'{"region":"x"}', keep_alive=True)
            + build_request()
        )
        _, responses = _serve(handler, data)
        assert responses[1] == (200, responses[1][1], b'{"status":"ok"}')

    def test_peer_close_after_keep_alive(self, handler):
        """End of stream after a keep-alive response ends quietly."""
        _, responses = _serve(handler, build_request(keep_alive=True))
        assert len(responses) == 1


class TestProtocolErrors:
    """Non-HTTP input is dropped without a response."""

    def test_tls_noise_dropped(self, handler):
        conn, responses = _serve(handler, b"\x16\x03\x01\x00\xa5\x01\x00\x00\xa1\x03\x03 garbage\r\n")
        assert responses == []
        assert conn.drained is True

    def test_bad_second_request_dropped(self, handler):
        data = build_request(keep_alive=True) + b"HELLO\r\n\r\n"
        conn, responses = _serve(handler, data)
        assert [r[0] for r in responses] == [200]
        assert conn.drained is True

    def test_empty_connection(self, handler):
        conn, responses = _serve(handler, b"")
        assert responses == []
        assert conn.drained is False

    def test_write_failure_ends_connection(self, handler):
        """A broken pipe while responding ends only this connection."""
        conn = MemoryConnection(build_request(keep_alive=True) + build_request())
        with patch.object(conn, "write", side_effect=BrokenPipeError):
            handler.serve(conn)
        assert conn.output.getvalue() == b""
