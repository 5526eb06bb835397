"""Client address extraction and anonymization.

Headers are consulted in a fixed priority order and the first non-empty one
wins. This trusts whatever sits in front of the service: a deployment must
make sure only its own proxies can set the higher-priority headers.
"""
from __future__ import annotations

import ipaddress
import logging
from typing import Mapping, Optional

logger = logging.getLogger(__name__)

CLIENT_IP_HEADERS = (
    "cf-connecting-ip",
    "x-real-ip",
    "x-forwarded-for",
    "client-ip",
)


def client_ip(headers: Mapping[str, str], remote_addr: Optional[str] = None) -> Optional[str]:
    """Return the validated client address, or ``None``.

    ``headers`` is matched case-insensitively; ``remote_addr`` is the direct
    peer and has the lowest priority.
    """

    lowered = {name.lower(): value for name, value in headers.items()}
    candidates = [lowered.get(name) for name in CLIENT_IP_HEADERS] + [remote_addr]
    raw = next((value for value in candidates if value), None)
    if raw is None:
        return None

    # Leftmost entry of a forwarded-for chain is the original client.
    ip = raw.split(",")[0].strip()
    try:
        ipaddress.ip_address(ip)
    except ValueError:
        logger.debug("Discarding unparsable client address %r", ip)
        return None
    return ip


def pack_ip(ip: Optional[str], anonymize: bool = False) -> Optional[bytes]:
    """Convert a textual address to its 4 or 16 byte form.

    With ``anonymize`` the last IPv4 octet, or the last 64 bits of an IPv6
    address, are zeroed.
    """

    if not ip:
        return None
    try:
        packed = ipaddress.ip_address(ip.strip()).packed
    except ValueError:
        logger.debug("Cannot pack client address %r", ip)
        return None
    if anonymize:
        if len(packed) == 4:
            packed = packed[:3] + b"\x00"
        else:
            packed = packed[:8] + b"\x00" * 8
    return packed


def unpack_ip(packed: Optional[bytes]) -> str:
    """Render a stored address as text; empty string when absent."""

    if not packed:
        return ""
    try:
        return str(ipaddress.ip_address(bytes(packed)))
    except ValueError:
        return ""


def normalize_ip(
    headers: Mapping[str, str], remote_addr: Optional[str], anonymize: bool
) -> Optional[bytes]:
    """Pick the client address from ``headers`` and pack it for storage."""
    return pack_ip(client_ip(headers, remote_addr), anonymize)
