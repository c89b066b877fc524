"""
Log sanitization utilities to prevent log injection and credential leaks.
"""

import re
from typing import Any

_TOKEN_PATTERN = re.compile(r"(glpat-|Bearer\s+|Basic\s+)[A-Za-z0-9._=+/-]+")


def sanitize_for_log(value: Any, max_length: int = 100) -> str:
    """
    Sanitize a value for safe logging.

    Removes control characters and newlines that could be used for log
    injection, and masks anything that looks like an access token.

    Args:
        value: The value to sanitize
        max_length: Maximum length of the output (default 100)

    Returns:
        Sanitized string safe for logging
    """
    str_value = str(value)

    sanitized = re.sub(r"[\x00-\x1f\x7f-\x9f\r\n\t]", "", str_value)
    sanitized = _TOKEN_PATTERN.sub(lambda m: m.group(1) + "***", sanitized)

    if len(sanitized) > max_length:
        sanitized = sanitized[:max_length] + "..."

    return sanitized


def sanitize_service_name(service_name: str) -> str:
    """
    Sanitize a service name for logging.

    Service names should only contain alphanumeric characters, hyphens,
    underscores and dots.
    """
    sanitized = re.sub(r"[^a-zA-Z0-9_.-]", "", service_name)
    return sanitized[:64]


def short_sha(sha: str) -> str:
    """Shorten a commit SHA for display."""
    return sha[:8]
