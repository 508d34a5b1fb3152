"""Choosing the address used to reach a joining node."""

from __future__ import annotations

import ipaddress
from collections.abc import Callable, Iterable
from typing import Union

_IPLike = Union[str, bytes, int, ipaddress.IPv4Address, ipaddress.IPv6Address]


def _split_host_port(address: str) -> str | None:
    """Return the host part of ``host:port`` or ``[host]:port``."""
    if address.startswith("["):
        end = address.find("]")
        if end < 0 or address[end + 1 : end + 2] != ":":
            return None
        host = address[1:end]
        if "[" in host or "]" in address[end + 2 :]:
            return None
        return host
    colon = address.rfind(":")
    if colon < 0:
        return None
    host = address[:colon]
    if ":" in host or "[" in host or "]" in host or "]" in address[colon + 1 :]:
        return None
    return host


def _normalize(value: _IPLike) -> ipaddress.IPv4Address | ipaddress.IPv6Address | None:
    try:
        ip = value if isinstance(value, (ipaddress.IPv4Address, ipaddress.IPv6Address)) else ipaddress.ip_address(value)
    except ValueError:
        return None
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        return ip.ipv4_mapped
    return ip


def get_remote_host(
    lookup_ip: Callable[[str], Iterable[_IPLike]],
    hostname: str,
    remote_address: str,
) -> str:
    """Return hostname if it resolves to the remote IP, else the remote IP."""
    remote_host = _split_host_port(remote_address) or ""
    try:
        ips = list(lookup_ip(hostname) or ())
    except OSError:
        return remote_host
    remote_ip = _normalize(remote_host) if "%" not in remote_host else None
    if remote_ip is not None and any(_normalize(ip) == remote_ip for ip in ips):
        return hostname
    return remote_host