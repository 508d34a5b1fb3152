"""Patching the calico CNI manifest."""

from __future__ import annotations

import ipaddress
import re
from typing import Any

from clusteragent.snap.snap import SnapError

_IPV4_METHOD_RE = re.compile(r"(IP_AUTODETECTION_METHOD(.*\n.*)?)first-found", re.MULTILINE)
_IPV6_METHOD_RE = re.compile(r"(IP6_AUTODETECTION_METHOD(.*\n.*)?)first-found", re.MULTILINE)


def _is_ipv4(address: str) -> bool:
    """Return whether address is IPv4; raise ValueError if it is not an IP."""
    if "%" in address:
        raise ValueError(f"could not parse IP address {address!r}")
    try:
        ip = ipaddress.ip_address(address)
    except ValueError:
        raise ValueError(f"could not parse IP address {address!r}") from None
    if isinstance(ip, ipaddress.IPv6Address):
        return ip.ipv4_mapped is not None
    return True


def maybe_patch_calico_autodetection_method(snap: Any, can_reach_host: str, apply: bool) -> None:
    """Switch calico's IP autodetection from ``first-found`` to ``can-reach``.

    IPv6 hosts update IP6_AUTODETECTION_METHOD instead. The manifest is only
    written (and optionally applied) when it actually changes.
    """
    try:
        config = snap.read_cni_yaml()
    except (OSError, SnapError) as exc:
        raise SnapError(f"failed to read existing cni configuration: {exc}") from exc

    pattern = _IPV4_METHOD_RE if _is_ipv4(can_reach_host) else _IPV6_METHOD_RE
    replacement = f"can-reach={can_reach_host}"
    new_config = pattern.sub(lambda match: match.group(1) + replacement, config)
    if new_config == config:
        return

    try:
        snap.write_cni_yaml(new_config.encode("utf-8"))
    except (OSError, SnapError) as exc:
        raise SnapError(f"failed to update cni configuration: {exc}") from exc
    if apply:
        try:
            snap.apply_cni()
        except (OSError, SnapError) as exc:
            raise SnapError(f"failed to apply cni configuration: {exc}") from exc