"""TLS terminators.

A terminator binds the control-plane port, completes TLS handshakes and
hands each client session to the connection handler as a plaintext stream.

- builtin: stdlib ssl on a threading TCP server, one thread per session.
- socat: an external `socat OPENSSL-LISTEN ... fork` process that forks a
  `server connection` child per session, serving stdin/stdout.
"""

import logging
import shlex
import socketserver
import ssl
import subprocess
import sys
from pathlib import Path
from typing import Callable, List, Optional

from config import ServerConfig
from server.protocol import SocketConnection
from server.supervisor import TerminatorError
from server.tls import build_server_context

logger = logging.getLogger(__name__)

# Seconds allowed for the TLS handshake of a new session
HANDSHAKE_TIMEOUT = 10.0

CLI_PATH = Path(__file__).resolve().parent.parent / "cli.py"


class TLSRequestHandler(socketserver.StreamRequestHandler):
    """Completes the TLS handshake and hands the stream to the connection handler."""

    def setup(self):
        self.request.settimeout(self.server.handshake_timeout)
        self.request.do_handshake()
        # No read timeout once the session is up
        self.request.settimeout(None)
        super().setup()

    def handle(self):
        peer = "%s:%s" % self.client_address[:2]
        conn = SocketConnection(self.request, self.rfile, self.wfile, peer=peer)
        self.server.connection_handler.serve(conn)


class TLSServer(socketserver.ThreadingMixIn, socketserver.TCPServer):
    """Threaded TLS listener."""

    daemon_threads = True
    allow_reuse_address = True

    def __init__(
        self,
        address: tuple,
        context: ssl.SSLContext,
        connection_handler,
        handshake_timeout: float = HANDSHAKE_TIMEOUT,
    ):
        self.context = context
        self.connection_handler = connection_handler
        self.handshake_timeout = handshake_timeout
        super().__init__(address, TLSRequestHandler)

    def get_request(self):
        """Accept a socket; the handshake runs later on the session thread."""
        sock, addr = self.socket.accept()
        tls_sock = self.context.wrap_socket(
            sock, server_side=True, do_handshake_on_connect=False,
        )
        return tls_sock, addr

    def handle_error(self, request, client_address):
        """Log failed sessions (handshake noise, port scanners) without a traceback."""
        error = sys.exc_info()[1]
        logger.info("TLS session with %s failed: %s", client_address[0], error)
        logger.debug("Session error details", exc_info=True)


class BuiltinTerminator:
    """Terminates TLS in-process."""

    def __init__(self, config: ServerConfig, require_client_cert: bool, connection_handler):
        self.config = config
        self.require_client_cert = require_client_cert
        self.connection_handler = connection_handler
        self.server: Optional[TLSServer] = None

    def run(self, on_listening: Callable[[], None]):
        """Serve until stop() is called.

        Raises:
            ConfigError: If the certificate/key pair cannot be loaded
            OSError: If the port cannot be bound
        """
        context = build_server_context(self.config, self.require_client_cert)
        self.server = TLSServer(
            (self.config.bind, self.config.port), context, self.connection_handler,
        )
        logger.info("Listening on https://%s:%d", self.config.bind, self.config.port)
        on_listening()
        try:
            self.server.serve_forever()
        finally:
            self.server.server_close()

    def stop(self):
        if self.server:
            self.server.shutdown()


class SocatTerminator:
    """Terminates TLS in a supervised socat process."""

    def __init__(
        self,
        config: ServerConfig,
        require_client_cert: bool,
        handler_command: Optional[List[str]] = None,
    ):
        self.config = config
        self.require_client_cert = require_client_cert
        self.handler_command = handler_command or self.default_handler_command(config)
        self.process: Optional[subprocess.Popen] = None

    @staticmethod
    def default_handler_command(config: ServerConfig) -> List[str]:
        """Command socat runs for each session."""
        cmd = [sys.executable, str(CLI_PATH), "server", "connection"]
        if config.env_file:
            cmd += ["--env-file", str(config.env_file)]
        return cmd

    def build_command(self) -> List[str]:
        verify = "verify=1" if self.require_client_cert else "verify=0"
        listen = (
            f"OPENSSL-LISTEN:{self.config.port},"
            f"cert={self.config.cert_path},key={self.config.key_path},"
            f"{verify},reuseaddr,fork"
        )
        if self.config.bind and self.config.bind != "0.0.0.0":
            listen += f",bind={self.config.bind}"
        return ["socat", listen, "EXEC:" + shlex.join(self.handler_command)]

    def run(self, on_listening: Callable[[], None]):
        """Run socat until it exits.

        Raises:
            TerminatorError: If socat cannot be started or exits non-zero
        """
        cmd = self.build_command()
        logger.info("Starting HTTPS server with socat on port %d...", self.config.port)
        logger.debug("Running: %s", " ".join(cmd))
        try:
            self.process = subprocess.Popen(cmd)
        except OSError as e:
            raise TerminatorError(f"Failed to start socat: {e}") from e

        on_listening()
        rc = self.process.wait()
        if rc != 0:
            raise TerminatorError(f"socat exited with code {rc}")
        logger.info("socat exited")

    def stop(self):
        if self.process and self.process.poll() is None:
            self.process.terminate()


def create_terminator(server):
    """Create the terminator for a Server's configured backend."""
    if server.config.tls_backend == "socat":
        return SocatTerminator(server.config, server.require_client_cert)
    return BuiltinTerminator(
        server.config, server.require_client_cert, server.connection_handler,
    )
