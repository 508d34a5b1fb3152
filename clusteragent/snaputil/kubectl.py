"""Helpers for Kubernetes node objects."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any

_INTERNAL_IP = "InternalIP"


def parse_node_internal_ips(nodes: Iterable[Mapping[str, Any]]) -> list[str]:
    """Return the InternalIP addresses of the given node objects, in order."""
    addresses: list[str] = []
    for node in nodes:
        status = node.get("status") or {}
        for address in status.get("addresses") or ():
            if address.get("type") == _INTERNAL_IP:
                addresses.append(address.get("address", ""))
    return addresses