"""API key authentication for the control plane.

Every request, including the health check, must carry the configured key
in the X-Api-Key header. Authentication happens after the headers are read
and before the body is read or the request is routed.
"""

import hmac
import logging
from typing import Optional

logger = logging.getLogger(__name__)

API_KEY_HEADER = "X-Api-Key"


class AuthError(Exception):
    """Authentication error with error code and HTTP status."""

    def __init__(self, code: str, message: str, http_status: int = 401):
        self.code = code
        self.message = message
        self.http_status = http_status
        super().__init__(f"{code}: {message}")

    def to_dict(self) -> dict:
        return {"detail": self.message}


def keys_match(presented: str, expected: str) -> bool:
    """Compare API keys byte for byte in constant time.

    presented is the header value as decoded from the wire (latin-1), so
    re-encoding it recovers the bytes the client sent; expected is the
    configured key, stored as UTF-8 text.
    """
    try:
        presented_bytes = presented.encode("latin-1")
    except UnicodeEncodeError:
        return False
    return hmac.compare_digest(presented_bytes, expected.encode("utf-8"))


def validate_api_key(
    presented: str,
    expected: str,
) -> Optional[AuthError]:
    """Validate the X-Api-Key header value.

    Args:
        presented: Header value from the request ('' when absent)
        expected: Configured API key

    Returns:
        None if auth is valid, or AuthError on failure
    """
    if not presented:
        return AuthError("missing", "missing api key")
    if not keys_match(presented, expected):
        return AuthError("invalid", "invalid api key")
    return None
