"""CLI for the server command.

Provides the `server` verb for the control-plane service (start runs it in
the foreground under the service manager; stop, reload and status signal or
query the running process through its PID file) and the per-session
`connection` handler run by the socat backend.
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Optional

from config import DEFAULT_PORT, ConfigError, ServerConfig, load_config
from server.service import (
    PidFile,
    ServiceError,
    check_status,
    get_pid_file,
    reload_server,
    stop_server,
)
from server.httpd import ConnectionHandler, Server
from server.agent import SubprocessNodeAgent
from server.protocol import StreamConnection
from server.tls import classify_certificate

logger = logging.getLogger(__name__)

PROG = "pg-node-api server"


def _configure_logging(verbose: bool):
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _add_common_args(parser: argparse.ArgumentParser):
    """Add arguments shared between subcommands."""
    parser.add_argument(
        "--env-file",
        type=Path,
        help="Env file with API_KEY, SSL_CERT_FILE, SSL_KEY_FILE, API_PORT",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose logging",
    )


def _add_pid_args(parser: argparse.ArgumentParser, port_help: str):
    parser.add_argument(
        "--port", "-p",
        type=int,
        help=port_help,
    )
    parser.add_argument(
        "--pid-file",
        type=Path,
        help="PID file of the running server (default: /var/run/pg-node/server-<port>.pid)",
    )


def _load(args) -> Optional[ServerConfig]:
    """Load configuration, logging the error on failure."""
    try:
        return load_config(env_file=args.env_file)
    except ConfigError as e:
        logger.error("%s", e)
        return None


def _health_key(config: ServerConfig) -> Optional[str]:
    """API key for health checks, unless client certificates are required."""
    if classify_certificate(config.cert_path).require_client_cert:
        return None
    return config.api_key


def _handle_start(argv):
    """Handle 'server start': run the server until SIGTERM or Ctrl+C."""
    parser = argparse.ArgumentParser(
        prog=f"{PROG} start",
        description="Run the control-plane server in the foreground",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    _add_common_args(parser)
    parser.add_argument(
        "--pid-file",
        type=Path,
        help="PID file to hold while running (default: /var/run/pg-node/server-<port>.pid)",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Output startup info as JSON",
    )

    args = parser.parse_args(argv)
    _configure_logging(args.verbose)

    config = _load(args)
    if config is None:
        return 1

    pid_file = args.pid_file or get_pid_file(config.port)
    try:
        with PidFile(pid_file):
            return _run(config, args)
    except ServiceError as e:
        logger.error("%s", e)
        return 1


def _run(config: ServerConfig, args) -> int:
    """Start the supervisor and block until it stops."""
    server = Server(config)

    try:
        server.start()
    except ConfigError as e:
        logger.error("Failed to start server: %s", e)
        return 1

    if args.json:
        info = {
            "url": f"https://{config.bind}:{config.port}",
            "port": config.port,
            "backend": config.tls_backend,
            "certificate": server.cert_info.to_dict(),
        }
        print(json.dumps(info, indent=2))
    else:
        print(f"\nServer running at https://{config.bind}:{config.port}")
        if server.cert_info.fingerprint:
            print(f"Certificate fingerprint: {server.cert_info.fingerprint}")
        policy = "required" if server.require_client_cert else "not required"
        print(f"Client certificates: {policy}")
        print("\nPress Ctrl+C to stop...")
    sys.stdout.flush()

    try:
        server.serve_forever()
    except ConfigError as e:
        logger.error("Server stopped: %s", e)
        return 1
    return 0


def _handle_connection(argv):
    """Handle 'server connection': serve one TLS session on stdin/stdout.

    Run by socat for every accepted session; socat owns the TLS layer.
    """
    parser = argparse.ArgumentParser(
        prog=f"{PROG} connection",
        description="Serve one plaintext session on stdin/stdout",
    )
    _add_common_args(parser)

    args = parser.parse_args(argv)
    # Logging goes to stderr; stdout carries the HTTP responses
    _configure_logging(args.verbose)

    config = _load(args)
    if config is None:
        return 1

    agent = SubprocessNodeAgent(config.agent_binary, config.agent_timeout)
    conn = StreamConnection(sys.stdin.buffer, sys.stdout.buffer, peer="socat")
    ConnectionHandler(config, agent).serve(conn)
    return 0


def _target(args):
    """Port, PID file and health-check key from the arguments or env file."""
    config = _load(args) if args.port is None else None
    if config is None:
        port, api_key = (args.port or DEFAULT_PORT), None
    else:
        port, api_key = config.port, _health_key(config)
    return port, args.pid_file or get_pid_file(port), api_key


def _handle_stop(argv):
    """Handle 'server stop': SIGTERM the running server and wait for it."""
    parser = argparse.ArgumentParser(
        prog=f"{PROG} stop",
        description="Stop the running control-plane server",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    _add_common_args(parser)
    _add_pid_args(parser, "Port of server to stop (default: API_PORT from the env file)")
    parser.add_argument(
        "--timeout",
        type=float,
        default=10.0,
        help="Seconds to wait for the server to exit",
    )

    args = parser.parse_args(argv)
    _configure_logging(args.verbose)
    port, pid_file, api_key = _target(args)

    status = check_status(pid_file, port, api_key)
    if not status["running"]:
        print(f"Server not running (port {port})")
        return 0

    print(f"Stopping server (PID {status['pid']}, port {port})...")
    try:
        success = stop_server(pid_file, timeout=args.timeout)
    except ServiceError as e:
        logger.error("%s", e)
        success = False

    if success:
        print("Server stopped")
        return 0

    print("Error: Failed to stop server", file=sys.stderr)
    return 1


def _handle_reload(argv):
    """Handle 'server reload': SIGHUP the running server."""
    parser = argparse.ArgumentParser(
        prog=f"{PROG} reload",
        description="Re-read the certificate and restart the TLS terminator",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    _add_common_args(parser)
    _add_pid_args(parser, "Port of server to reload (default: API_PORT from the env file)")

    args = parser.parse_args(argv)
    _configure_logging(args.verbose)
    port, pid_file, _ = _target(args)

    try:
        pid = reload_server(pid_file)
    except ServiceError as e:
        logger.error("%s", e)
        return 1

    if pid is None:
        print(f"Server not running (port {port})")
        return 1
    print(f"Reload requested (PID {pid}, port {port})")
    return 0


def _handle_status(argv):
    """Handle 'server status': check the running server."""
    parser = argparse.ArgumentParser(
        prog=f"{PROG} status",
        description="Check control-plane server status",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    _add_common_args(parser)
    _add_pid_args(parser, "Port to check (default: API_PORT from the env file)")
    parser.add_argument(
        "--json",
        action="store_true",
        help="Output as JSON",
    )

    args = parser.parse_args(argv)
    _configure_logging(args.verbose)
    port, pid_file, api_key = _target(args)

    status = check_status(pid_file, port, api_key)

    if args.json:
        print(json.dumps(status, indent=2))
    else:
        if status["running"]:
            health = "healthy" if status["healthy"] else "unhealthy"
            print(f"Server: running (PID {status['pid']}, port {port}, {health})")
        else:
            print(f"Server: not running (port {port})")

    # Exit codes: 0 = running+healthy, 1 = not running, 2 = running+unhealthy
    if not status["running"]:
        return 1
    if not status["healthy"]:
        return 2
    return 0


def main(argv=None):
    """CLI entry point for server command.

    Dispatches to start/stop/reload/status/connection subcommands.

    Args:
        argv: Command line arguments (default: sys.argv[1:])

    Returns:
        Exit code
    """
    if argv is None:
        argv = sys.argv[1:]

    subcommands = {
        "start": _handle_start,
        "stop": _handle_stop,
        "reload": _handle_reload,
        "status": _handle_status,
        "connection": _handle_connection,
    }

    if not argv or argv[0] in ("-h", "--help"):
        print(f"Usage: {PROG} <command> [options]")
        print()
        print("Commands:")
        print("  start       Run the control-plane server (foreground)")
        print("  stop        Stop the running server")
        print("  reload      Re-read the certificate (SIGHUP)")
        print("  status      Check control-plane server status")
        print("  connection  Serve one session on stdin/stdout (used by socat)")
        print()
        print(f"Run '{PROG} <command> --help' for command-specific options.")
        return 0

    subcmd = argv[0]
    if subcmd not in subcommands:
        print(f"Error: Unknown server command '{subcmd}'")
        print(f"Available commands: {', '.join(subcommands)}")
        return 1

    return subcommands[subcmd](argv[1:])


if __name__ == "__main__":
    sys.exit(main())
