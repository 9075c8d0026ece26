"""Service lifecycle for the control-plane process.

The server runs in the foreground under a service manager, the way the
node's service script runs it. While it runs it holds a port-qualified PID
file; the other CLI verbs find it through that file and talk to it with
signals:

    SIGTERM  stop the supervisor and the terminator, then exit
    SIGHUP   re-classify the certificate and restart the terminator

Status combines the PID file with a health check against the port.
"""

import http.client
import logging
import os
import signal
import socket
import ssl
import time
from pathlib import Path
from typing import Optional

from server.auth import API_KEY_HEADER

logger = logging.getLogger(__name__)

PID_DIR = Path("/var/run/pg-node")


class ServiceError(Exception):
    """The service cannot be started or controlled."""


def get_pid_file(port: int) -> Path:
    """PID file of the server listening on port."""
    return PID_DIR / f"server-{port}.pid"


def read_pid(pid_file: Path) -> Optional[int]:
    """PID recorded in pid_file, or None if absent or unreadable."""
    try:
        return int(pid_file.read_text().strip())
    except (OSError, ValueError):
        return None


def process_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, owned by another user
        return True
    return True


def running_pid(pid_file: Path) -> Optional[int]:
    """PID of the live process owning pid_file; stale files are removed."""
    pid = read_pid(pid_file)
    if pid is None:
        return None
    if process_alive(pid):
        return pid
    logger.info("Removing stale PID file %s (PID %d)", pid_file, pid)
    pid_file.unlink(missing_ok=True)
    return None


class PidFile:
    """Holds the PID file for the lifetime of a running server.

    Usage:
        with PidFile(get_pid_file(config.port)):
            server.serve_forever()
    """

    def __init__(self, path: Path):
        self.path = path
        self.pid = os.getpid()

    def __enter__(self):
        other = running_pid(self.path)
        if other is not None and other != self.pid:
            raise ServiceError(f"Server already running (PID {other}, {self.path})")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(f"{self.pid}\n")
        except OSError as e:
            raise ServiceError(f"Cannot write PID file {self.path}: {e}") from e
        return self

    def __exit__(self, exc_type, exc, tb):
        # A newer server may have taken over the file
        if read_pid(self.path) == self.pid:
            self.path.unlink(missing_ok=True)
        return False


def port_open(port: int, timeout: float = 2.0) -> bool:
    try:
        with socket.create_connection(("127.0.0.1", port), timeout=timeout):
            return True
    except OSError:
        return False


def health_check(port: int, api_key: Optional[str] = None, timeout: float = 2.0) -> bool:
    """Ask the local server for `GET /` and expect 200.

    Without an API key (the server requires client certificates) only the
    TCP port is checked.
    """
    if not api_key:
        return port_open(port, timeout)
    context = ssl.create_default_context()
    context.check_hostname = False
    context.verify_mode = ssl.CERT_NONE
    conn = http.client.HTTPSConnection("127.0.0.1", port, timeout=timeout, context=context)
    try:
        conn.request("GET", "/", headers={API_KEY_HEADER: api_key})
        response = conn.getresponse()
        response.read()
        return response.status == 200
    except (OSError, http.client.HTTPException):
        return False
    finally:
        conn.close()


def check_status(pid_file: Path, port: int, api_key: Optional[str] = None) -> dict:
    """Status of the server owning pid_file.

    Returns:
        Dict with keys: running (bool), pid (int|None), healthy (bool)
    """
    pid = running_pid(pid_file)
    if pid is None:
        return {"running": False, "pid": None, "healthy": False}
    return {"running": True, "pid": pid, "healthy": health_check(port, api_key)}


def signal_server(pid_file: Path, signum: int) -> Optional[int]:
    """Send signum to the running server.

    Returns:
        PID signalled, or None if no server is running
    """
    pid = running_pid(pid_file)
    if pid is None:
        return None
    try:
        os.kill(pid, signum)
    except ProcessLookupError:
        return None
    except PermissionError as e:
        raise ServiceError(f"Cannot signal PID {pid}: {e}") from e
    logger.debug("Sent %s to PID %d", signal.Signals(signum).name, pid)
    return pid


def stop_server(pid_file: Path, timeout: float = 10.0) -> bool:
    """Ask the running server to shut down and wait for it to exit.

    Returns:
        True once no server is running, False if it outlived the timeout
    """
    pid = signal_server(pid_file, signal.SIGTERM)
    if pid is None:
        return True
    deadline = time.monotonic() + timeout
    while process_alive(pid):
        if time.monotonic() >= deadline:
            logger.error("Server (PID %d) still running after %gs", pid, timeout)
            return False
        time.sleep(0.2)
    # The server removes its own file; clear it if it was killed instead
    if read_pid(pid_file) == pid:
        pid_file.unlink(missing_ok=True)
    return True


def reload_server(pid_file: Path) -> Optional[int]:
    """Make the running server re-read its certificate policy."""
    return signal_server(pid_file, signal.SIGHUP)
