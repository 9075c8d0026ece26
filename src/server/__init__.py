"""Server package for the node control plane.

The server accepts authenticated maintenance commands from the central
panel over TLS and runs them through the node agent.
"""

from server.httpd import (
    ConnectionHandler,
    Server,
    create_server,
)
from server.tls import (
    CertificateInfo,
    classify_certificate,
    get_cert_fingerprint,
)
from server.auth import (
    AuthError,
    validate_api_key,
)
from server.agent import (
    CommandOutcome,
    DependencyError,
    NodeAgent,
    SubprocessNodeAgent,
)
from server.supervisor import (
    State,
    Supervisor,
)
from server.service import (
    PidFile,
    stop_server,
    reload_server,
    check_status,
    get_pid_file,
)

__all__ = [
    # Server
    "ConnectionHandler",
    "Server",
    "create_server",
    # TLS
    "CertificateInfo",
    "classify_certificate",
    "get_cert_fingerprint",
    # Auth
    "AuthError",
    "validate_api_key",
    # Agent
    "CommandOutcome",
    "DependencyError",
    "NodeAgent",
    "SubprocessNodeAgent",
    # Supervisor
    "State",
    "Supervisor",
    # Service
    "PidFile",
    "stop_server",
    "reload_server",
    "check_status",
    "get_pid_file",
]
