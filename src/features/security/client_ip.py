"""Best-effort client identification for throttling keys."""

import ipaddress
from collections.abc import Mapping

from fastapi import Request

UNKNOWN_CLIENT = "unknown"

# Proxy headers consulted before the connection address, in priority order
PROXY_HEADERS = ("x-forwarded-for", "x-real-ip", "client-ip")

PRIVATE_NETWORKS = [
    ipaddress.ip_network(cidr)
    for cidr in ("10.0.0.0/8", "172.16.0.0/12", "192.168.0.0/16", "fc00::/7")
]

RESERVED_NETWORKS = [
    ipaddress.ip_network(cidr)
    for cidr in (
        "0.0.0.0/8",
        "127.0.0.0/8",
        "169.254.0.0/16",
        "240.0.0.0/4",
        "::/128",
        "::1/128",
        "fe80::/10",
        "::ffff:0:0/96",
    )
]


def is_public_ip(candidate: str) -> bool:
    """Return True if ``candidate`` is an IP address outside private and reserved ranges.

    Documentation ranges such as 203.0.113.0/24 count as public here; only the
    RFC 1918 / unique-local and the reserved blocks listed above are rejected.
    """
    try:
        address = ipaddress.ip_address(candidate)
    except ValueError:
        return False

    networks = PRIVATE_NETWORKS + RESERVED_NETWORKS
    return not any(address.version == network.version and address in network for network in networks)


def resolve_client_ip(headers: Mapping[str, str], remote_addr: str | None) -> str:
    """Pick the identifier used to key rate limits for a request.

    Args:
        headers: Request headers (case-insensitive mapping)
        remote_addr: Address of the peer that opened the connection

    Returns:
        The first public address among the proxy headers and the connection
        address; otherwise the raw connection address, or ``"unknown"``.

    """
    candidates = [headers.get(name) for name in PROXY_HEADERS]
    candidates.append(remote_addr)

    for raw in candidates:
        if not raw:
            continue
        first = raw.split(",")[0].strip()
        if is_public_ip(first):
            return first

    return remote_addr or UNKNOWN_CLIENT


def client_ip_from_request(request: Request) -> str:
    remote_addr = request.client.host if request.client else None
    return resolve_client_ip(request.headers, remote_addr)
