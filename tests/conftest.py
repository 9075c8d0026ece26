"""Shared pytest fixtures for pg-node-api tests."""

import io
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from config import ServerConfig
from server.agent import CommandOutcome
from server.protocol import Connection

TEST_API_KEY = "test-api-key"


def _name(cn):
    if cn is None:
        return x509.Name([x509.NameAttribute(NameOID.ORGANIZATION_NAME, "pg-node tests")])
    return x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, cn)])


def write_cert(
    directory: Path,
    subject_cn="node.test",
    issuer_cn=None,
    days=30,
    expired=False,
    stem="server",
):
    """Write a PEM certificate and key; returns (cert_path, key_path).

    issuer_cn defaults to subject_cn (self-signed). The certificate is
    always signed with its own key: classification only looks at names.
    """
    key = ec.generate_private_key(ec.SECP256R1())
    now = datetime.now(timezone.utc)
    if expired:
        not_before, not_after = now - timedelta(days=10), now - timedelta(days=1)
    else:
        not_before, not_after = now - timedelta(minutes=5), now + timedelta(days=days)

    builder = (
        x509.CertificateBuilder()
        .subject_name(_name(subject_cn))
        .issuer_name(_name(subject_cn if issuer_cn is None else issuer_cn))
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before)
        .not_valid_after(not_after)
        .add_extension(
            x509.SubjectAlternativeName([x509.DNSName("localhost")]), critical=False,
        )
    )
    cert = builder.sign(key, hashes.SHA256())

    cert_path = directory / f"{stem}.crt"
    key_path = directory / f"{stem}.key"
    cert_path.write_bytes(cert.public_bytes(serialization.Encoding.PEM))
    key_path.write_bytes(key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ))
    return cert_path, key_path


@pytest.fixture
def self_signed_cert(tmp_path):
    """Self-signed certificate/key pair for CN=node.test."""
    return write_cert(tmp_path)


@pytest.fixture
def ca_signed_cert(tmp_path):
    """Certificate whose issuer CN differs from its subject CN."""
    return write_cert(tmp_path, subject_cn="node.example.com", issuer_cn="Example CA", stem="ca")


@pytest.fixture
def server_config(self_signed_cert):
    """ServerConfig using a self-signed certificate."""
    cert_path, key_path = self_signed_cert
    return ServerConfig(
        api_key=TEST_API_KEY,
        cert_path=cert_path,
        key_path=key_path,
        port=0,
        bind="127.0.0.1",
    )


class FakeAgent:
    """NodeAgent that records calls and returns canned outcomes."""

    def __init__(self, exit_code=0, output=""):
        self.outcome = CommandOutcome(exit_code=exit_code, output=output)
        self.calls = []

    def update(self):
        self.calls.append(("update",))
        return self.outcome

    def core_update(self, version):
        self.calls.append(("core_update", version))
        return self.outcome

    def geofiles(self, region):
        self.calls.append(("geofiles", region))
        return self.outcome


@pytest.fixture
def fake_agent():
    return FakeAgent()


class MemoryConnection(Connection):
    """Connection over in-memory streams; records drain calls."""

    def __init__(self, data: bytes):
        self.output = io.BytesIO()
        super().__init__(io.BytesIO(data), self.output, peer="test")
        self.drained = False

    def drain(self, grace=0.1):
        self.drained = True
        self.rfile.read()


def build_request(
    method="GET",
    path="/",
    headers=None,
    body=b"",
    api_key=TEST_API_KEY,
    keep_alive=False,
):
    """Raw request bytes."""
    lines = [f"{method} {path} HTTP/1.1", "Host: node.test"]
    if api_key is not None:
        lines.append(f"X-Api-Key: {api_key}")
    if keep_alive:
        lines.append("Connection: keep-alive")
    if body:
        lines.append(f"Content-Length: {len(body)}")
    for name, value in (headers or {}).items():
        lines.append(f"{name}: {value}")
    return ("\r\n".join(lines) + "\r\n\r\n").encode("latin-1") + body


def parse_responses(raw: bytes):
    """Split raw response bytes into (status, headers, body) tuples."""
    responses = []
    while raw:
        head, _, rest = raw.partition(b"\r\n\r\n")
        lines = head.decode("latin-1").split("\r\n")
        status = int(lines[0].split()[1])
        headers = {}
        for line in lines[1:]:
            name, _, value = line.partition(": ")
            headers[name.lower()] = value
        length = int(headers["content-length"])
        responses.append((status, headers, rest[:length]))
        raw = rest[length:]
    return responses
