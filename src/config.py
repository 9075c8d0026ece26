"""Control-plane configuration.

Configuration is read once at startup from the process environment and an
optional env file (KEY=VALUE lines):
- $ENV_FILE, if set
- /opt/pg-node/.env (default install location)
- .env in the project directory (fallback when the default does not exist)

Values in the env file override the process environment. The resulting
ServerConfig is immutable and shared read-only by every connection.
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from dotenv import dotenv_values

logger = logging.getLogger(__name__)

APP_NAME = "pg-node"
DEFAULT_ENV_FILE = Path("/opt") / APP_NAME / ".env"
# Checkout root (parent of src/), where the service script keeps its .env
LOCAL_ENV_FILE = Path(__file__).resolve().parent.parent / ".env"
DEFAULT_PORT = 3000
DEFAULT_BIND = "0.0.0.0"
MAX_BODY = 1048576
TLS_BACKENDS = ("builtin", "socat")


class ConfigError(Exception):
    """Configuration error."""


@dataclass(frozen=True)
class ServerConfig:
    """Process-wide server configuration."""

    api_key: str
    cert_path: Path
    key_path: Path
    port: int = DEFAULT_PORT
    bind: str = DEFAULT_BIND
    max_body: int = MAX_BODY
    agent_binary: str = APP_NAME
    tls_backend: str = "builtin"
    agent_timeout: Optional[float] = None
    env_file: Optional[Path] = None


def resolve_env_file(environ: Mapping[str, str], env_file: Optional[Path] = None) -> Path:
    """Pick the env file to load.

    Args:
        environ: Process environment
        env_file: Explicit env file (overrides everything)

    Returns:
        Path of the env file (may not exist)
    """
    if env_file is not None:
        return Path(env_file)
    path = Path(environ.get("ENV_FILE") or DEFAULT_ENV_FILE)
    local = LOCAL_ENV_FILE
    if not path.is_file() and local.is_file():
        return local
    return path


def _parse_port(value: str) -> int:
    try:
        port = int(value)
    except ValueError:
        raise ConfigError(f"API_PORT must be an integer: {value!r}")
    if not 1 <= port <= 65535:
        raise ConfigError(f"API_PORT out of range: {port}")
    return port


def _parse_timeout(value: str) -> Optional[float]:
    if not value:
        return None
    try:
        timeout = float(value)
    except ValueError:
        raise ConfigError(f"AGENT_TIMEOUT must be a number of seconds: {value!r}")
    return timeout if timeout > 0 else None


def _require_readable(name: str, path: Path):
    if not path.is_file() or not os.access(path, os.R_OK):
        raise ConfigError(f"Cannot read {name}: {path}")


def load_config(
    environ: Optional[Mapping[str, str]] = None,
    env_file: Optional[Path] = None,
) -> ServerConfig:
    """Load and validate the server configuration.

    Args:
        environ: Environment to read (default: os.environ)
        env_file: Explicit env file path

    Returns:
        Validated ServerConfig

    Raises:
        ConfigError: If the API key or TLS material is missing or unreadable,
            or a value is malformed
    """
    values = dict(os.environ if environ is None else environ)

    path = resolve_env_file(values, env_file)
    if path.is_file():
        raw = dotenv_values(path, interpolate=False)
        file_values = {k: v for k, v in raw.items() if v is not None}
        values.update(file_values)
        logger.info("Loaded env file: %s", path)
    else:
        logger.info("Env file not found, using defaults: %s", path)

    api_key = values.get("API_KEY", "")
    if not api_key:
        raise ConfigError("API_KEY must be set in the env file")

    cert = values.get("SSL_CERT_FILE", "")
    key = values.get("SSL_KEY_FILE", "")
    if not cert or not key:
        raise ConfigError("TLS required: set SSL_CERT_FILE and SSL_KEY_FILE in the env file")
    cert_path = Path(cert)
    key_path = Path(key)
    _require_readable("SSL_CERT_FILE", cert_path)
    _require_readable("SSL_KEY_FILE", key_path)

    backend = values.get("TLS_BACKEND", "builtin").strip().lower() or "builtin"
    if backend not in TLS_BACKENDS:
        raise ConfigError(
            f"Unknown TLS_BACKEND {backend!r} (expected one of: {', '.join(TLS_BACKENDS)})"
        )

    return ServerConfig(
        api_key=api_key,
        cert_path=cert_path,
        key_path=key_path,
        port=_parse_port(values.get("API_PORT", "") or str(DEFAULT_PORT)),
        bind=values.get("API_BIND", "") or DEFAULT_BIND,
        agent_binary=values.get("NODE_AGENT", "") or APP_NAME,
        tls_backend=backend,
        agent_timeout=_parse_timeout(values.get("AGENT_TIMEOUT", "")),
        env_file=path if path.is_file() else None,
    )
