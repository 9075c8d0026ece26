"""Control-plane HTTPS server.

ConnectionHandler runs the request/response loop for one plaintext stream:
parse, authenticate, route, respond, and repeat while the client asks for
keep-alive. Server ties the configuration, certificate policy, node agent
and terminator supervisor together.
"""

import logging
import signal
import sys
import threading
from typing import Callable, Optional

from config import ConfigError, ServerConfig
from server.agent import NodeAgent, SubprocessNodeAgent
from server.auth import validate_api_key
from server.handlers import dispatch
from server.protocol import (
    BodyReadError,
    Connection,
    PayloadTooLarge,
    ProtocolError,
    read_body,
    read_request,
    write_response,
)
from server.supervisor import Supervisor
from server.terminator import create_terminator
from server.tls import (
    CertificateInfo,
    build_server_context,
    check_tls_capability,
    classify_certificate,
)

logger = logging.getLogger(__name__)


class ConnectionHandler:
    """Serves requests on one connection until it should close."""

    def __init__(self, config: ServerConfig, agent: NodeAgent):
        self.config = config
        self.agent = agent

    def serve(self, conn: Connection):
        """Run the request loop for a connection.

        Returns when the peer closes, sends a non-HTTP line, or does not ask
        for keep-alive. Stream errors end only this connection.
        """
        try:
            while self.handle_one(conn):
                logger.debug("Processing next request on same connection...")
        except (BrokenPipeError, ConnectionResetError) as e:
            logger.debug("Connection %s closed by peer: %s", conn.peer, e)
        except OSError as e:
            logger.info("Connection %s error: %s", conn.peer, e)
        except Exception:
            logger.exception("Unexpected error on connection %s", conn.peer)

    def handle_one(self, conn: Connection) -> bool:
        """Handle one request.

        Returns:
            True if another request should be read from the connection
        """
        try:
            request = read_request(conn)
        except ProtocolError as e:
            logger.info("Invalid request line (likely SSL error or non-HTTP data): %s", e)
            conn.drain()
            return False

        if request is None:
            logger.debug("Connection closed without data")
            return False

        logger.info("Valid HTTP request: %s %s", request.method, request.path)
        conn.keep_alive = request.keep_alive

        error = validate_api_key(request.api_key, self.config.api_key)
        if error:
            write_response(conn, error.to_dict(), error.http_status)
            logger.warning(
                "Unauthorized: %s x-api-key for %s %s", error.code, request.method, request.path
            )
            # An unread body would be taken for the next request line
            return conn.keep_alive and request.content_length == 0

        try:
            read_body(conn, request, self.config.max_body)
        except PayloadTooLarge as e:
            write_response(conn, {"detail": e.detail}, e.http_status)
            logger.warning("Body rejected: %d bytes (too large)", e.content_length)
            return False
        except BodyReadError as e:
            logger.warning("Failed to read request body")
            write_response(conn, {"detail": e.detail}, e.http_status)
            return False

        if request.body:
            logger.debug("Body received: %d bytes", len(request.body))

        data, status = dispatch(request.method, request.path, request.body, self.agent)
        write_response(conn, data, status)
        logger.info("Responded %d to %s %s", status, request.method, request.path)

        if conn.keep_alive:
            logger.info("Keep-alive connection, waiting for next request...")
            return True
        logger.info("Closing connection as requested")
        return False


class Server:
    """Control-plane server: certificate policy, agent and supervised terminator."""

    def __init__(
        self,
        config: ServerConfig,
        agent: Optional[NodeAgent] = None,
        terminator_factory: Optional[Callable] = None,
    ):
        """Initialize server.

        Args:
            config: Server configuration
            agent: Node agent (default: SubprocessNodeAgent for config.agent_binary)
            terminator_factory: Callable(server) -> Terminator; defaults to the
                backend named by config.tls_backend
        """
        self.config = config
        self.agent = agent or SubprocessNodeAgent(config.agent_binary, config.agent_timeout)
        self.connection_handler = ConnectionHandler(config, self.agent)
        self.terminator_factory = terminator_factory or create_terminator
        self.cert_info: Optional[CertificateInfo] = None
        self.supervisor: Optional[Supervisor] = None
        self.fatal_error: Optional[ConfigError] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def require_client_cert(self) -> bool:
        return bool(self.cert_info and self.cert_info.require_client_cert)

    def start(self):
        """Validate TLS material and start the terminator supervisor.

        Raises:
            ConfigError: If TLS support or the certificate/key pair is unusable
        """
        check_tls_capability(self.config)

        self.cert_info = classify_certificate(self.config.cert_path)
        if self.cert_info.not_after is None:
            logger.warning("Certificate validation failed, but continuing anyway...")
        elif self.cert_info.self_signed:
            logger.info("Using self-signed TLS certificate: %s", self.config.cert_path)
        else:
            logger.info("Using CA-signed TLS certificate: %s", self.config.cert_path)

        if self.config.tls_backend == "builtin":
            # Fail before listening if the pair does not load
            build_server_context(self.config, self.require_client_cert)

        if self.require_client_cert:
            logger.info("Enabling client certificate verification (CA-signed certificate detected)")
        else:
            logger.info("Disabling client certificate verification (self-signed or invalid certificate)")

        logger.info(
            "TLS enabled on port %d with cert=%s key=%s",
            self.config.port, self.config.cert_path, self.config.key_path,
        )
        logger.info("API key protection enabled")
        if self.cert_info.fingerprint:
            logger.info("Certificate fingerprint: %s", self.cert_info.fingerprint)

        self.supervisor = Supervisor(lambda: self.terminator_factory(self))
        self._thread = threading.Thread(
            target=self._run_supervisor, name="terminator-supervisor", daemon=True,
        )
        self._thread.start()
        self._setup_signal_handlers()

    def _run_supervisor(self):
        try:
            self.supervisor.run()
        except ConfigError as e:
            logger.error("Fatal configuration error: %s", e)
            self.fatal_error = e

    def serve_forever(self):
        """Block until the supervisor stops.

        Raises:
            ConfigError: If the first terminator start failed on configuration
        """
        if not self._thread:
            raise RuntimeError("Server not started")

        try:
            while self._thread.is_alive():
                self._thread.join(timeout=1.0)
        except KeyboardInterrupt:
            logger.info("Shutdown requested")
        finally:
            self.shutdown()

        if self.fatal_error:
            raise self.fatal_error

    def reload(self):
        """Re-read the certificate and restart the terminator with its policy."""
        self.cert_info = classify_certificate(self.config.cert_path)
        if self.supervisor:
            self.supervisor.restart()

    def shutdown(self):
        """Stop the supervisor and the running terminator."""
        if self.supervisor and not self.supervisor.stopping:
            logger.info("Shutting down server")
            self.supervisor.stop()
        if self._thread and self._thread is not threading.current_thread():
            self._thread.join(timeout=5.0)

    def _setup_signal_handlers(self):
        """Setup signal handlers for certificate reload and shutdown."""
        if threading.current_thread() is not threading.main_thread():
            return

        def handle_sighup(signum, frame):
            """Handle SIGHUP by reloading the certificate policy."""
            logger.info("Received SIGHUP, reloading certificate")
            self.reload()

        def handle_sigterm(signum, frame):
            """Handle SIGTERM for graceful shutdown."""
            logger.info("Received SIGTERM")
            self.shutdown()
            sys.exit(0)

        signal.signal(signal.SIGHUP, handle_sighup)
        signal.signal(signal.SIGTERM, handle_sigterm)


def create_server(
    config: ServerConfig,
    agent: Optional[NodeAgent] = None,
    terminator_factory: Optional[Callable] = None,
) -> Server:
    """Create a server instance.

    Returns:
        Server instance (not yet started)
    """
    return Server(config=config, agent=agent, terminator_factory=terminator_factory)
