"""Inspecting and reconfiguring the local dqlite cluster."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

import yaml

from clusteragent.snap.snap import SnapError

_LOCALHOST_PREFIX = "127.0.0.1:"


class DqliteError(Exception):
    """An operation on the dqlite cluster failed."""


@dataclass
class DqliteClusterNode:
    """A node of the dqlite cluster.

    ``node_role`` is 0 for voters, 1 for stand-by and 2 for spare nodes.
    """

    address: str = ""
    id: int = 0
    node_role: int = 0

    @classmethod
    def from_mapping(cls, data: Any) -> DqliteClusterNode:
        """Build a node from its cluster.yaml / info.yaml representation."""
        if data is None:
            return cls()
        if not isinstance(data, Mapping):
            raise ValueError(f"expected a mapping for a dqlite node, got {type(data).__name__}")
        address = data.get("Address")
        try:
            node_id = int(data.get("ID") or 0)
            role = int(data.get("Role") or 0)
        except (TypeError, ValueError) as exc:
            raise ValueError(f"invalid dqlite node: {exc}") from exc
        if node_id < 0:
            raise ValueError(f"invalid dqlite node ID {node_id}")
        return cls(address="" if address is None else str(address), id=node_id, node_role=role)

    def to_mapping(self) -> dict[str, Any]:
        """Return the yaml representation; zero ID and role are left out."""
        data: dict[str, Any] = {"Address": self.address}
        if self.id:
            data["ID"] = self.id
        if self.node_role:
            data["Role"] = self.node_role
        return data


DqliteCluster = list[DqliteClusterNode]


def _split_port(address: str) -> str:
    """Return the port of ``host:port`` or ``[host]:port``, or "" if malformed."""
    if address.startswith("["):
        end = address.find("]")
        if end < 0 or address[end + 1 : end + 2] != ":":
            return ""
        return address[end + 2 :]
    host, sep, port = address.rpartition(":")
    if not sep or ":" in host:
        return ""
    return port


def _join_host_port(host: str, port: str) -> str:
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


def get_dqlite_cluster(snap: Any) -> DqliteCluster:
    """Return all currently known dqlite cluster nodes."""
    try:
        cluster_yaml = snap.read_dqlite_cluster_yaml()
    except (OSError, SnapError) as exc:
        raise DqliteError(f"failed to read list of dqlite nodes: {exc}") from exc
    try:
        data = yaml.safe_load(cluster_yaml)
        if data is None:
            return []
        if not isinstance(data, list):
            raise ValueError("expected a list of dqlite nodes")
        return [DqliteClusterNode.from_mapping(item) for item in data]
    except (yaml.YAMLError, ValueError) as exc:
        raise DqliteError(f"failed to parse list of dqlite nodes: {exc}") from exc


def update_dqlite_ip(snap: Any, host: str) -> None:
    """Make the local dqlite node bind to a new IP address."""
    try:
        info_yaml = snap.read_dqlite_info_yaml()
    except (OSError, SnapError) as exc:
        raise DqliteError(f"failed to retrieve current node info: {exc}") from exc
    try:
        node = DqliteClusterNode.from_mapping(yaml.safe_load(info_yaml))
    except (yaml.YAMLError, ValueError) as exc:
        raise DqliteError(f"invalid format for current node info: {exc}") from exc

    update = DqliteClusterNode(address=_join_host_port(host, _split_port(node.address)))
    data = yaml.safe_dump(update.to_mapping(), default_flow_style=False, sort_keys=False)
    try:
        snap.write_dqlite_update_yaml(data.encode("utf-8"))
    except (OSError, SnapError) as exc:
        raise DqliteError(f"failed to create dqlite update file: {exc}") from exc
    try:
        snap.restart_service("k8s-dqlite")
    except Exception as exc:
        raise DqliteError(f"failed to restart k8s-dqlite service: {exc}") from exc


def wait_for_dqlite_cluster(
    snap: Any,
    condition: Callable[[DqliteCluster], bool],
    cancel: threading.Event | None = None,
    interval: float = 1.0,
) -> DqliteCluster:
    """Poll the dqlite cluster until condition(cluster) holds and return it.

    Setting ``cancel`` stops the wait with a DqliteError.
    """
    while True:
        cluster = get_dqlite_cluster(snap)
        try:
            ok = condition(cluster)
        except Exception as exc:
            raise DqliteError(f"failed check for cluster condition: {exc}") from exc
        if ok:
            return cluster
        if cancel is not None:
            if cancel.wait(interval):
                raise DqliteError("timed out waiting for cluster condition: context canceled")
        else:
            time.sleep(interval)


def maybe_update_dqlite_bind_address(
    snap: Any,
    host_port: str,
    remote_ip: str,
    find_matching_bind_address: Callable[[str], str],
    cancel: threading.Event | None = None,
) -> None:
    """Make sure a joining node can reach the local dqlite node.

    Fails if the joining node is already known. A single node bound to
    localhost is rebound to the address matching ``host_port``.
    """
    try:
        cluster = wait_for_dqlite_cluster(snap, lambda c: len(c) >= 1, cancel)
    except DqliteError as exc:
        raise DqliteError(f"failed to retrieve dqlite cluster nodes: {exc}") from exc

    if any(node.address.startswith(f"{remote_ip}:") for node in cluster):
        raise DqliteError(f"the joining node ({remote_ip}) is already known to dqlite")

    if len(cluster) != 1 or not cluster[0].address.startswith(_LOCALHOST_PREFIX):
        return

    try:
        bind_address = find_matching_bind_address(host_port)
    except Exception as exc:
        raise DqliteError(
            f"failed to find matching dqlite bind address for {host_port}: {exc}"
        ) from exc
    try:
        update_dqlite_ip(snap, bind_address)
    except DqliteError as exc:
        raise DqliteError(f"failed to update dqlite address to {bind_address!r}: {exc}") from exc

    try:
        wait_for_dqlite_cluster(
            snap,
            lambda c: len(c) >= 1 and not c[0].address.startswith(_LOCALHOST_PREFIX),
            cancel,
        )
    except DqliteError as exc:
        raise DqliteError(f"failed waiting for dqlite cluster to come up: {exc}") from exc


def remove_node_from_dqlite(snap: Any, remove_ep: str) -> None:
    """Remove a node from the dqlite cluster with the dqlite tool."""
    bin_path = snap.get_snap_path("bin", "dqlite")
    cluster_yaml = snap.get_snap_data_path("var", "kubernetes", "backend", "cluster.yaml")
    cluster_crt = snap.get_snap_data_path("var", "kubernetes", "backend", "cluster.crt")
    cluster_key = snap.get_snap_data_path("var", "kubernetes", "backend", "cluster.key")
    try:
        # The ".remove <address>" statement must be passed as one argument.
        snap.run_command(
            bin_path,
            "-s",
            f"file://{cluster_yaml}",
            "-c",
            cluster_crt,
            "-k",
            cluster_key,
            "-f",
            "json",
            "k8s",
            f".remove {remove_ep}",
        )
    except Exception as exc:
        raise DqliteError(f"failed to run remove command: {exc}") from exc