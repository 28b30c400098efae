"""Shared-secret check for admin tools."""

import hmac
from typing import Mapping, Optional

import structlog

from .errors import UnauthorizedError

logger = structlog.get_logger()

ADMIN_HEADER = "x-admin-token"


def _header(headers: Optional[Mapping[str, str]], name: str) -> Optional[str]:
    if not headers:
        return None
    for key, value in headers.items():
        if key.lower() == name:
            return value
    return None


def check_admin_token(expected: Optional[str], headers: Optional[Mapping[str, str]]) -> None:
    """Raise UnauthorizedError unless the admin header matches ``expected``.

    An unconfigured token rejects every call.
    """
    provided = _header(headers, ADMIN_HEADER)
    if not expected or not provided or not hmac.compare_digest(provided.encode(), expected.encode()):
        logger.warning("admin_unauthorized", header_present=provided is not None)
        raise UnauthorizedError()
