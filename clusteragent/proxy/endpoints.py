"""Control plane addresses from the endpoints of the kubernetes service."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

DEFAULT_PORT = 16443


def parse_addresses(endpoints: Mapping[str, Any] | None) -> list[str]:
    """Return sorted ``ip:port`` strings from a Kubernetes Endpoints object.

    Each subset uses the port named "https", or 16443 if it has none.
    """
    if endpoints is None:
        return []
    addresses: list[str] = []
    for subset in endpoints.get("subsets") or ():
        port = next(
            (p.get("port") for p in subset.get("ports") or () if p.get("name") == "https"),
            DEFAULT_PORT,
        )
        addresses.extend(f"{address.get('ip', '')}:{port}" for address in subset.get("addresses") or ())
    return sorted(addresses)