"""HTTP/1.1 subset spoken on the control-plane port.

Requests are parsed by hand from a plaintext byte stream handed over by the
TLS terminator. Only what the command set needs is supported: a request
line, headers, and an optional Content-Length body. No chunked encoding,
no compression, no pipelining.
"""

import json
import logging
import os
import re
import select
import socket
from dataclasses import dataclass, field
from typing import BinaryIO, Dict, Optional

logger = logging.getLogger(__name__)

METHODS = ("GET", "POST", "PUT", "DELETE", "HEAD", "OPTIONS", "PATCH")
REQUEST_LINE = re.compile(r"^(%s)\s+/" % "|".join(METHODS))
HEADER_LINE = re.compile(r"^[A-Za-z0-9-]+:")
CONTENT_LENGTH = re.compile(r"^\s*(\d+)")

# Longest accepted request or header line, in bytes
MAX_LINE = 65536

# Seconds to wait for stray bytes after a bad request line
DRAIN_GRACE = 0.1

REASONS = {
    200: "OK",
    400: "Bad Request",
    401: "Unauthorized",
    404: "Not Found",
}


class ProtocolError(Exception):
    """Input is not an HTTP request; the connection is dropped unanswered."""


class ValidationError(Exception):
    """Client error answered with 400 and a JSON detail."""

    http_status = 400

    def __init__(self, detail: str):
        self.detail = detail
        super().__init__(detail)


class PayloadTooLarge(ValidationError):
    """Declared Content-Length exceeds the configured maximum."""

    def __init__(self, content_length: int):
        self.content_length = content_length
        super().__init__("Payload too large")


class BodyReadError(ValidationError):
    """Stream ended before the declared body arrived."""

    def __init__(self):
        super().__init__("Failed to read request body")


class Connection:
    """One accepted session: a plaintext input and output byte stream."""

    def __init__(self, rfile: BinaryIO, wfile: BinaryIO, peer: str = "-"):
        self.rfile = rfile
        self.wfile = wfile
        self.peer = peer
        self.keep_alive = False

    def readline(self, limit: int = MAX_LINE + 1) -> bytes:
        return self.rfile.readline(limit)

    def read(self, size: int) -> bytes:
        """Read up to size bytes, stopping early only at end of stream."""
        chunks = []
        remaining = size
        while remaining > 0:
            chunk = self.rfile.read(remaining)
            if not chunk:
                break
            chunks.append(chunk)
            remaining -= len(chunk)
        return b"".join(chunks)

    def write(self, data: bytes):
        self.wfile.write(data)
        self.wfile.flush()

    def drain(self, grace: float = DRAIN_GRACE):
        """Discard whatever the peer sends within the grace period."""


class SocketConnection(Connection):
    """Connection over an accepted (TLS-wrapped) socket."""

    def __init__(self, sock: socket.socket, rfile: BinaryIO, wfile: BinaryIO, peer: str = "-"):
        super().__init__(rfile, wfile, peer)
        self.sock = sock

    def drain(self, grace: float = DRAIN_GRACE):
        previous = self.sock.gettimeout()
        self.sock.settimeout(grace)
        try:
            while self.rfile.read1(4096):
                pass
        except OSError:
            pass
        finally:
            try:
                self.sock.settimeout(previous)
            except OSError:
                pass


class StreamConnection(Connection):
    """Connection over inherited file descriptors (stdin/stdout under socat)."""

    def drain(self, grace: float = DRAIN_GRACE):
        fd = self.rfile.fileno()
        try:
            while True:
                ready, _, _ = select.select([fd], [], [], grace)
                if not ready or not os.read(fd, 4096):
                    return
        except OSError:
            return


@dataclass
class Request:
    """A parsed request. The body is filled in only after authentication."""

    method: str
    path: str
    version: str = ""
    headers: Dict[str, str] = field(default_factory=dict)
    content_length: int = 0
    body: bytes = b""

    def header(self, name: str, default: str = "") -> str:
        """Case-insensitive header lookup."""
        return self.headers.get(name.lower(), default)

    @property
    def api_key(self) -> str:
        return self.header("x-api-key")

    @property
    def connection(self) -> str:
        return self.header("connection", "close").lower()

    @property
    def keep_alive(self) -> bool:
        return self.connection == "keep-alive"


def _decode_line(line: bytes) -> str:
    return line.decode("latin-1").rstrip("\r\n")


def read_request(conn: Connection) -> Optional[Request]:
    """Read a request line and headers from the connection.

    The body is left on the stream; see read_body().

    Returns:
        Request, or None if the peer closed the stream before sending a line

    Raises:
        ProtocolError: If the first line is not an HTTP request line, or a
            line exceeds MAX_LINE
    """
    raw = conn.readline()
    if not raw:
        return None
    if len(raw) > MAX_LINE:
        raise ProtocolError("Request line too long")

    request_line = _decode_line(raw)
    if not REQUEST_LINE.match(request_line):
        raise ProtocolError(request_line)

    parts = request_line.split()
    request = Request(
        method=parts[0],
        path=parts[1],
        version=parts[2] if len(parts) > 2 else "",
    )

    while True:
        raw = conn.readline()
        if not raw:
            break
        if len(raw) > MAX_LINE:
            raise ProtocolError("Header line too long")
        line = _decode_line(raw)
        if not line:
            break
        # Skip any lines that don't look like headers
        if not HEADER_LINE.match(line):
            continue
        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        request.headers[name.lower()] = value

    match = CONTENT_LENGTH.match(request.header("content-length"))
    if match:
        request.content_length = int(match.group(1))
    return request


def read_body(conn: Connection, request: Request, max_body: int) -> bytes:
    """Read exactly the declared body of a request.

    Nothing is read when the declared length exceeds max_body.

    Raises:
        PayloadTooLarge: If Content-Length > max_body
        BodyReadError: If the stream ends early
    """
    if request.content_length <= 0:
        return b""
    if request.content_length > max_body:
        raise PayloadTooLarge(request.content_length)

    body = conn.read(request.content_length)
    if len(body) < request.content_length:
        raise BodyReadError()
    request.body = body
    return body


def reason_phrase(status: int) -> str:
    return REASONS.get(status, "Internal Server Error")


def encode_body(data: dict) -> bytes:
    """Compact JSON encoding used for every response body.

    Non-ASCII text is written as \\uXXXX escapes, so echoed client input
    (including lone surrogates) always encodes.
    """
    return json.dumps(data, separators=(",", ":")).encode("ascii")


def build_response(data: dict, status: int) -> bytes:
    """Serialize a complete response.

    Connection: close is always sent, even when the server keeps the
    connection open for another request.
    """
    body = encode_body(data)
    head = (
        f"HTTP/1.1 {status} {reason_phrase(status)}\r\n"
        "Content-Type: application/json\r\n"
        f"Content-Length: {len(body)}\r\n"
        "Connection: close\r\n"
        "\r\n"
    )
    return head.encode("ascii") + body


def write_response(conn: Connection, data: dict, status: int):
    """Write a JSON response to the connection."""
    conn.write(build_response(data, status))
