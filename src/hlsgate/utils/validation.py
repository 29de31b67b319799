"""Input validation utilities.

Provides validation functions for:
- RTSP source URL (scheme, host, loopback policy)
- Stream identifiers (charset and length)
- Hostname/IP validation

Note on Logging:
    These are pure validation functions that return (bool, error_message).
    Only logs when URL parsing fails (unexpected). Most validation failures
    return descriptive error messages to the caller who decides how to log.

Security:
    The stream identifier becomes a directory name under the HLS output root,
    so validate_stream_id() is the only guard against path traversal.
    Loopback hosts are rejected so a worker can't be pointed at services
    listening on this machine.
"""
from __future__ import annotations

import ipaddress
import logging
import re
from typing import Final
from urllib.parse import urlparse

logger = logging.getLogger(__name__)

# ============================================================================
# Constants
# ============================================================================

REQUIRED_SCHEME: Final[str] = "rtsp"
"""Only plain RTSP sources are accepted."""

STREAM_ID_PATTERN: Final[re.Pattern[str]] = re.compile(r"^[A-Za-z0-9_-]+$")
"""Allowed stream identifier characters."""

MAX_STREAM_ID_LENGTH: Final[int] = 50

LOCAL_HOSTNAMES: Final[set[str]] = {"localhost", "localhost.localdomain", "ip6-localhost", "ip6-loopback"}
"""Hostnames that always resolve to this machine."""

MIN_PORT: Final[int] = 1
MAX_PORT: Final[int] = 65535
"""Valid TCP/UDP port range."""

# Type alias for validation results
ValidationResult = tuple[bool, str | None]
"""Validation result: (is_valid, error_message)"""

# ============================================================================
# Source URL Validation
# ============================================================================

def validate_source_url(url: str) -> ValidationResult:
    """Validate an RTSP source URL against format and policy rules.

    Checks:
    - Scheme is rtsp:// (case-insensitive)
    - Host is present and a valid IP or domain
    - Host is not loopback or unspecified
    - Port is in valid range if specified

    Never raises; any parse failure becomes a rejection.

    Args:
        url: Source URL to validate

    Returns:
        (True, None) if valid
        (False, error_message) if invalid

    Examples:
        >>> validate_source_url("rtsp://192.168.1.100/stream")
        (True, None)

        >>> validate_source_url("http://example.com")
        (False, 'Only RTSP protocol is allowed')

        >>> validate_source_url("rtsp://127.0.0.1/stream")
        (False, 'Localhost URLs are not allowed')
    """
    if not url or not isinstance(url, str):
        return False, "RTSP URL is required and must be a string"

    try:
        parsed = urlparse(url.strip())
        hostname = parsed.hostname
        port = parsed.port
    except ValueError as e:
        logger.warning(f"URL parse error: {e}")
        return False, "Invalid URL format"

    if parsed.scheme.lower() != REQUIRED_SCHEME:
        return False, "Only RTSP protocol is allowed"

    if not hostname:
        return False, "Host cannot be empty"

    if is_local_host(hostname):
        return False, "Localhost URLs are not allowed"

    if not _is_valid_hostname(hostname):
        return False, f"Invalid hostname: {hostname}"

    if port is not None and not (MIN_PORT <= port <= MAX_PORT):
        return False, f"Port must be {MIN_PORT}-{MAX_PORT}"

    return True, None


def is_local_host(hostname: str) -> bool:
    """Check whether a hostname points back at this machine.

    Covers localhost names, the *.localhost zone, the whole 127.0.0.0/8
    block, ::1 and the unspecified addresses (0.0.0.0, ::).
    """
    host = hostname.strip("[]").lower().rstrip(".")
    if host in LOCAL_HOSTNAMES or host.endswith(".localhost"):
        return True

    try:
        address = ipaddress.ip_address(host)
    except ValueError:
        return False

    if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped:
        address = address.ipv4_mapped

    return address.is_loopback or address.is_unspecified


# ============================================================================
# Stream Identifier Validation
# ============================================================================

def validate_stream_id(stream_id: str) -> ValidationResult:
    """Validate a stream identifier.

    Examples:
        >>> validate_stream_id("cam1")
        (True, None)

        >>> validate_stream_id("../etc")
        (False, 'Stream ID must be alphanumeric (max 50 chars)')
    """
    if not stream_id or not isinstance(stream_id, str):
        return False, "Stream ID is required"

    if len(stream_id) > MAX_STREAM_ID_LENGTH or not STREAM_ID_PATTERN.fullmatch(stream_id):
        return False, f"Stream ID must be alphanumeric (max {MAX_STREAM_ID_LENGTH} chars)"

    return True, None


# ============================================================================
# Hostname Validation
# ============================================================================

def _is_valid_hostname(hostname: str) -> bool:
    """Check if hostname is valid IP or domain."""
    return _is_valid_ip(hostname) or _is_valid_domain(hostname)


def _is_valid_ip(ip: str) -> bool:
    try:
        ipaddress.ip_address(ip.strip("[]"))
        return True
    except ValueError:
        return False


def _is_valid_domain(domain: str) -> bool:
    """Check if string is valid domain name (RFC 1035)."""
    if not domain or len(domain) > 253:
        return False

    # RFC 1035: labels separated by dots, 63 chars max per label
    domain_pattern = r'^([a-zA-Z0-9]([a-zA-Z0-9\-]{0,61}[a-zA-Z0-9])?\.)*[a-zA-Z0-9]([a-zA-Z0-9\-]{0,61}[a-zA-Z0-9])?$'
    return bool(re.match(domain_pattern, domain))
