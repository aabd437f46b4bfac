"""Hostname validation for positional CLI arguments."""

from __future__ import annotations

import logging
import re
from enum import Enum

from snowflake_installer.errors import InvalidHostnameError

logger = logging.getLogger(__name__)

MAX_HOSTNAME_LENGTH = 63
HOSTNAME_RE = re.compile(r"^[A-Za-z0-9]([A-Za-z0-9-]*[A-Za-z0-9])?$")


class HostnameIssue(str, Enum):
    EMPTY = "empty"
    CONTAINS_EQUALS = "contains_equals"
    TOO_LONG = "too_long"
    INVALID_FORMAT = "invalid_format"


def check_hostname(hostname: str) -> HostnameIssue | None:
    """Return the first rule ``hostname`` violates, or ``None`` when valid.

    ``=`` is checked before the format rule so that a ``KEY=VALUE`` token
    passed positionally is reported as such rather than as a bad format.
    """
    if not hostname:
        return HostnameIssue.EMPTY
    if "=" in hostname:
        return HostnameIssue.CONTAINS_EQUALS
    if len(hostname) > MAX_HOSTNAME_LENGTH:
        return HostnameIssue.TOO_LONG
    if not HOSTNAME_RE.fullmatch(hostname):
        return HostnameIssue.INVALID_FORMAT
    return None


def _message_for(issue: HostnameIssue, hostname: str) -> str:
    if issue is HostnameIssue.EMPTY:
        return "Hostname cannot be empty"
    if issue is HostnameIssue.CONTAINS_EQUALS:
        return (
            f"Invalid hostname '{hostname}'. To set env vars, prefix them: "
            "VAR=VALUE snowflake-install install [hostname] [disk]"
        )
    if issue is HostnameIssue.TOO_LONG:
        return f"Hostname too long (max {MAX_HOSTNAME_LENGTH} characters): {hostname}"
    return (
        f"Invalid hostname format: {hostname} "
        "(use letters, digits, hyphens; must start/end with alphanumeric)"
    )


def validate_hostname(hostname: str) -> str:
    """Return ``hostname`` unchanged when valid.

    Raises:
        InvalidHostnameError: With the violated rule on ``.issue``.
    """
    issue = check_hostname(hostname)
    if issue is not None:
        raise InvalidHostnameError(issue, _message_for(issue, hostname))
    logger.debug("Hostname validation passed: %s", hostname)
    return hostname
