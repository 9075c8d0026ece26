"""TLS certificate inspection for the server.

Classifies the configured certificate as self-signed or CA-signed. The
classification picks the listener's client-certificate policy: a CA-signed
server certificate turns on mutual TLS, a self-signed (or unparseable) one
leaves it off.
"""

import logging
import shutil
import ssl
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.x509.oid import NameOID

from config import ConfigError, ServerConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CertificateInfo:
    """Result of classifying a server certificate."""

    subject: str
    issuer: str
    self_signed: bool
    not_after: Optional[datetime]
    valid: bool
    fingerprint: str = ""

    @property
    def require_client_cert(self) -> bool:
        """Mutual TLS is required only for CA-signed certificates."""
        return not self.self_signed

    @property
    def days_remaining(self) -> Optional[int]:
        """Whole days until expiry (negative once expired)."""
        if self.not_after is None:
            return None
        return (self.not_after - datetime.now(timezone.utc)).days

    def to_dict(self) -> dict:
        return {
            "subject": self.subject,
            "issuer": self.issuer,
            "self_signed": self.self_signed,
            "not_after": self.not_after.isoformat() if self.not_after else None,
            "days_remaining": self.days_remaining,
            "valid": self.valid,
            "fingerprint": self.fingerprint,
            "require_client_cert": self.require_client_cert,
        }


def _common_name(name: x509.Name) -> str:
    """Normalized Common Name of an X.509 name ('' if absent)."""
    attrs = name.get_attributes_for_oid(NameOID.COMMON_NAME)
    if not attrs:
        return ""
    value = attrs[0].value
    if isinstance(value, bytes):
        value = value.decode("utf-8", "replace")
    return " ".join(value.split()).casefold()


def get_cert_fingerprint(cert: x509.Certificate) -> str:
    """SHA256 fingerprint as colon-separated hex (e.g., "AB:CD:EF:...")."""
    digest = cert.fingerprint(hashes.SHA256())
    return ":".join(f"{b:02X}" for b in digest)


def load_certificate(cert_path: Path) -> x509.Certificate:
    """Load a PEM certificate.

    Raises:
        OSError: If the file cannot be read
        ValueError: If the file is not a PEM certificate
    """
    return x509.load_pem_x509_certificate(Path(cert_path).read_bytes())


def classify_certificate(cert_path: Path) -> CertificateInfo:
    """Classify a certificate file.

    Subject and issuer Common Names are compared after whitespace and case
    normalization; equal non-empty names mean self-signed, anything else
    (including a certificate with no Common Name) counts as CA-signed. This
    is a heuristic: it does not verify signatures. An expired certificate is
    only logged. A certificate that cannot be parsed is reported as invalid
    and self-signed so the server starts without requiring client
    certificates.

    Args:
        cert_path: Path to PEM certificate file

    Returns:
        CertificateInfo
    """
    try:
        cert = load_certificate(cert_path)
    except (OSError, ValueError) as e:
        logger.error("Invalid certificate file: %s (%s)", cert_path, e)
        return CertificateInfo(
            subject="", issuer="", self_signed=True, not_after=None, valid=False,
        )

    subject = _common_name(cert.subject)
    issuer = _common_name(cert.issuer)
    self_signed = bool(subject) and subject == issuer
    not_after = cert.not_valid_after_utc
    expired = datetime.now(timezone.utc) > not_after

    if self_signed:
        logger.info("Certificate is self-signed: %s", cert_path)
    else:
        logger.info("Certificate appears to be CA-signed: %s", cert_path)

    if expired:
        logger.warning("Certificate has expired: %s", cert_path)
        logger.warning("Expiration: %s", not_after.isoformat())
    else:
        days = (not_after - datetime.now(timezone.utc)).days
        logger.info(
            "Certificate valid for %d more days (expires: %s)", days, not_after.isoformat()
        )

    return CertificateInfo(
        subject=subject,
        issuer=issuer,
        self_signed=self_signed,
        not_after=not_after,
        valid=not expired,
        fingerprint=get_cert_fingerprint(cert),
    )


def check_tls_capability(config: ServerConfig):
    """Verify the selected TLS backend can run.

    Raises:
        ConfigError: If the backend's TLS support is missing
    """
    if config.tls_backend == "socat":
        if shutil.which("socat") is None:
            raise ConfigError("socat is required for the socat TLS backend")
        return
    if not getattr(ssl, "HAS_TLSv1_2", False):
        raise ConfigError(f"TLS 1.2 support is required ({ssl.OPENSSL_VERSION})")


def build_server_context(config: ServerConfig, require_client_cert: bool) -> ssl.SSLContext:
    """Create the server-side SSL context for the builtin backend.

    Raises:
        ConfigError: If the certificate/key pair cannot be loaded
    """
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    context.minimum_version = ssl.TLSVersion.TLSv1_2
    try:
        context.load_cert_chain(
            certfile=str(config.cert_path),
            keyfile=str(config.key_path),
        )
    except (OSError, ssl.SSLError) as e:
        raise ConfigError(f"Failed to load TLS certificate/key: {e}") from e

    if require_client_cert:
        context.verify_mode = ssl.CERT_REQUIRED
        context.load_default_certs(ssl.Purpose.CLIENT_AUTH)
    else:
        context.verify_mode = ssl.CERT_NONE
    return context
