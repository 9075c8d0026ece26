"""Command endpoints for the control plane.

Routes:
    GET  /                   health check
    POST /node/update        node agent update
    POST /node/core_update   node agent core-update {"core_version": "..."}
    POST /node/geofiles      node agent geofiles {"region": "iran|russia|china"}

Handlers return (response_dict, http_status). The response field names and
messages are relied on by the central panel.
"""

import json
import logging
from typing import Any, Callable, Dict, Optional, Tuple

from server.agent import GEOFILES_REGIONS, DependencyError, NodeAgent

logger = logging.getLogger(__name__)

Handler = Callable[[bytes, NodeAgent], Tuple[dict, int]]


class InvalidBody(Exception):
    """Request body is not a JSON object."""


def _detail(message: str) -> dict:
    return {"detail": message}


def _body_field(body: bytes, name: str) -> str:
    """Extract a field from a JSON object body.

    Missing, null, false and empty values all yield ''. Non-string values
    are returned as their JSON text.

    Raises:
        InvalidBody: If the body is not a JSON object
    """
    try:
        data = json.loads(body)
    except (ValueError, UnicodeDecodeError):
        raise InvalidBody()
    if not isinstance(data, dict):
        raise InvalidBody()

    value: Any = data.get(name)
    if value is None or value is False:
        return ""
    if isinstance(value, str):
        return value
    return json.dumps(value)


def handle_health(body: bytes, agent: NodeAgent) -> Tuple[dict, int]:
    return {"status": "ok"}, 200


def handle_node_update(body: bytes, agent: NodeAgent) -> Tuple[dict, int]:
    """Run the node agent's update."""
    outcome = agent.update()
    if not outcome.success:
        logger.error("update failed with exit code: %d", outcome.exit_code)
        return _detail("update failed on server"), 500
    return _detail("node updated successfully"), 200


def handle_node_core_update(body: bytes, agent: NodeAgent) -> Tuple[dict, int]:
    """Run the node agent's core-update for the requested version.

    A failed core-update is reported as 404: the usual cause is a version
    that does not exist upstream.
    """
    core_version = ""
    if body:
        try:
            core_version = _body_field(body, "core_version")
        except InvalidBody:
            logger.warning("Failed to parse JSON body for core_version")
            return _detail("Invalid JSON body"), 400

    if not core_version:
        return _detail("core_version is required"), 400

    outcome = agent.core_update(core_version)
    if outcome.success:
        return _detail("node core updated successfully"), 200

    logger.error(
        "core-update failed for version: %s (exit code: %d)",
        core_version, outcome.exit_code,
    )
    logger.error("Error output: %s", outcome.output)
    clean_error = outcome.diagnostic
    if clean_error:
        message = f"core-update failed for version {core_version}: {clean_error}"
    else:
        message = (
            f"core-update failed for version {core_version}. "
            "Version may not exist or network error occurred."
        )
    return _detail(message), 404


def handle_geofiles_update(body: bytes, agent: NodeAgent) -> Tuple[dict, int]:
    """Run the node agent's geofiles update for one region."""
    region = ""
    if body:
        try:
            region = _body_field(body, "region")
        except InvalidBody:
            logger.warning("Failed to parse JSON body for region")
            return _detail("Invalid JSON body"), 400

    if not region:
        return _detail("region is required (iran, russia, china)"), 400

    if region.lower() not in GEOFILES_REGIONS:
        logger.warning("Invalid region provided: %s", region)
        return _detail(f"Unsupported region {region}"), 400

    outcome = agent.geofiles(region.lower())
    if not outcome.success:
        logger.error("geofiles update failed")
        return _detail("geofiles update failed on server"), 500
    return _detail("geofiles updated successfully"), 200


ROUTES: Dict[Tuple[str, str], Handler] = {
    ("GET", "/"): handle_health,
    ("POST", "/node/update"): handle_node_update,
    ("POST", "/node/core_update"): handle_node_core_update,
    ("POST", "/node/geofiles"): handle_geofiles_update,
}


def find_handler(method: str, path: str) -> Optional[Handler]:
    return ROUTES.get((method, path))


def dispatch(method: str, path: str, body: bytes, agent: NodeAgent) -> Tuple[dict, int]:
    """Route an authenticated request to its handler.

    Args:
        method: Request method
        path: Request path (exact match, no query handling)
        body: Request body
        agent: Node agent used by command handlers

    Returns:
        Tuple of (response_dict, http_status)
    """
    handler = find_handler(method, path)
    if handler is None:
        return _detail("Not found"), 404

    try:
        return handler(body, agent)
    except DependencyError as e:
        logger.error("%s is required to run %s %s", e.tool, method, path)
        return _detail(str(e)), 500
    except Exception:
        logger.exception("Unexpected error handling %s %s", method, path)
        return _detail("Internal server error"), 500
