"""Client identity and GitHub webhook source address checks."""

import ipaddress
from typing import Iterable, Mapping, Optional

# https://api.github.com/meta "hooks" ranges
GITHUB_WEBHOOK_RANGES = (
    "140.82.112.0/20",
    "143.55.64.0/20",
    "185.199.108.0/22",
    "192.30.252.0/22",
)

UNKNOWN_CLIENT = "unknown"


def client_ip(headers: Mapping[str, str], peer_host: Optional[str] = None) -> str:
    """Resolve the originating client address for a request.

    Uses the first hop of X-Forwarded-For, then X-Real-IP, then the socket
    peer address.
    """
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        first_hop = forwarded.split(",")[0].strip()
        if first_hop:
            return first_hop

    real_ip = headers.get("x-real-ip")
    if real_ip and real_ip.strip():
        return real_ip.strip()

    return peer_host or UNKNOWN_CLIENT


def _normalize(address: str) -> str:
    if address.lower().startswith("::ffff:"):
        return address[len("::ffff:"):]
    return address


class IPAllowList:
    """Matches client addresses against a set of CIDR networks.

    Attributes:
        networks: Parsed networks that are allowed.
    """

    def __init__(self, ranges: Iterable[str] = GITHUB_WEBHOOK_RANGES) -> None:
        self.networks = [
            ipaddress.ip_network(cidr) for cidr in ranges
        ]

    def is_allowed(self, address: str) -> bool:
        try:
            ip = ipaddress.ip_address(_normalize(address))
        except ValueError:
            return False
        if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
            ip = ip.ipv4_mapped
        return any(ip in network for network in self.networks)
