"""Traefik-compatible configuration of the API server proxy."""

from __future__ import annotations

import logging
import os
import threading
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from typing import Any

import yaml
from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

logger = logging.getLogger(__name__)

DEFAULT_LISTEN = ":16443"
DEFAULT_SNAP_DATA = "/var/snap/microk8s/current"
ROUTER_RULE = "HostSNI(`*`)"
ROUTER_SERVICE = "kube-apiserver"

# Supported fields; anything else only earns a warning.
_TRAEFIK_SCHEMA: dict[str, Any] = {
    "entryPoints": {"apiserver": {"address": None}},
    "providers": {"file": {"filename": None, "watch": None}},
}
_PROVIDER_SCHEMA: dict[str, Any] = {
    "tcp": {
        "routers": {
            "Router-1": {"rule": None, "service": None, "tls": {"passthrough": None}},
        },
        "services": {
            "kube-apiserver": {"loadBalancer": {"servers": [{"address": None}]}},
        },
    },
}

# Events that do not change the file.
_IGNORED_EVENTS = frozenset({"opened", "closed", "closed_no_write"})


class ConfigError(Exception):
    """The proxy configuration could not be loaded or written."""


def _mapping(data: Any, name: str) -> Mapping[str, Any]:
    if data is None:
        return {}
    if not isinstance(data, Mapping):
        raise ValueError(f"{name}: expected a mapping, got {type(data).__name__}")
    return data


def _string(value: Any, name: str) -> str:
    if value is None:
        return ""
    if isinstance(value, (Mapping, list)):
        raise ValueError(f"{name}: expected a string, got {type(value).__name__}")
    return str(value)


def _boolean(value: Any, name: str) -> bool:
    if value is None:
        return False
    if not isinstance(value, bool):
        raise ValueError(f"{name}: expected a boolean, got {value!r}")
    return value


@dataclass
class TraefikConfiguration:
    """The supported subset of the traefik static configuration."""

    api_server_address: str = ""
    provider_filename: str = ""
    provider_watch: bool = False

    @classmethod
    def from_mapping(cls, data: Any) -> TraefikConfiguration:
        """Build from parsed yaml; raises ValueError on malformed sections."""
        root = _mapping(data, "traefik configuration")
        entry_points = _mapping(root.get("entryPoints"), "entryPoints")
        apiserver = _mapping(entry_points.get("apiserver"), "entryPoints.apiserver")
        providers = _mapping(root.get("providers"), "providers")
        file_provider = _mapping(providers.get("file"), "providers.file")
        return cls(
            api_server_address=_string(apiserver.get("address"), "entryPoints.apiserver.address"),
            provider_filename=_string(file_provider.get("filename"), "providers.file.filename"),
            provider_watch=_boolean(file_provider.get("watch"), "providers.file.watch"),
        )


@dataclass
class ProviderConfiguration:
    """The supported subset of the traefik file provider configuration."""

    servers: list[str] = field(default_factory=list)
    router_rule: str = ""
    router_service: str = ""
    tls_passthrough: bool = False

    @classmethod
    def from_mapping(cls, data: Any) -> ProviderConfiguration:
        """Build from parsed yaml; raises ValueError on malformed sections."""
        root = _mapping(data, "provider configuration")
        tcp = _mapping(root.get("tcp"), "tcp")
        routers = _mapping(tcp.get("routers"), "tcp.routers")
        router = _mapping(routers.get("Router-1"), "tcp.routers.Router-1")
        tls = _mapping(router.get("tls"), "tcp.routers.Router-1.tls")
        services = _mapping(tcp.get("services"), "tcp.services")
        service = _mapping(services.get("kube-apiserver"), "tcp.services.kube-apiserver")
        balancer = _mapping(service.get("loadBalancer"), "loadBalancer")
        raw_servers = balancer.get("servers") or []
        if not isinstance(raw_servers, list):
            raise ValueError("loadBalancer.servers: expected a list")
        servers = [
            _string(_mapping(server, "server").get("address"), "server.address")
            for server in raw_servers
        ]
        return cls(
            servers=servers,
            router_rule=_string(router.get("rule"), "rule"),
            router_service=_string(router.get("service"), "service"),
            tls_passthrough=_boolean(tls.get("passthrough"), "tls.passthrough"),
        )

    @classmethod
    def for_endpoints(cls, endpoints: Iterable[str]) -> ProviderConfiguration:
        """Configuration that passes TLS through to the given endpoints."""
        return cls(
            servers=list(endpoints),
            router_rule=ROUTER_RULE,
            router_service=ROUTER_SERVICE,
            tls_passthrough=True,
        )

    def to_mapping(self) -> dict[str, Any]:
        """Return the yaml representation."""
        return {
            "tcp": {
                "routers": {
                    "Router-1": {
                        "rule": self.router_rule,
                        "service": self.router_service,
                        "tls": {"passthrough": self.tls_passthrough},
                    },
                },
                "services": {
                    "kube-apiserver": {
                        "loadBalancer": {
                            "servers": [{"address": address} for address in self.servers],
                        },
                    },
                },
            },
        }


class _FileChangeHandler(FileSystemEventHandler):
    def __init__(self, path: str, changed: threading.Event) -> None:
        super().__init__()
        self._path = os.path.abspath(path)
        self._changed = changed

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.event_type in _IGNORED_EVENTS:
            return
        paths = (event.src_path, getattr(event, "dest_path", ""))
        if any(p and os.path.abspath(os.fsdecode(p)) == self._path for p in paths):
            self._changed.set()


@dataclass
class Configuration:
    """Listen address and control plane endpoints of the proxy.

    ``changed`` is set when the watched provider file changes on disk.
    """

    listen: str
    endpoints: list[str]
    changed: threading.Event = field(default_factory=threading.Event, compare=False)
    _observer: Any = field(default=None, init=False, repr=False, compare=False)

    def _watch(self, path: str) -> None:
        if not os.path.exists(path):
            raise OSError(f"could not watch for changes in {path}: file does not exist")
        observer = Observer()
        directory = os.path.dirname(os.path.abspath(path))
        observer.schedule(_FileChangeHandler(path, self.changed), directory, recursive=False)
        observer.start()
        self._observer = observer

    def close(self) -> None:
        """Stop watching the provider file."""
        observer, self._observer = self._observer, None
        if observer is not None:
            observer.stop()
            observer.join()

    def __enter__(self) -> Configuration:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


def _unknown_fields(data: Any, schema: Any, prefix: str = "") -> Iterator[str]:
    if isinstance(schema, dict) and isinstance(data, Mapping):
        for key, value in data.items():
            if key not in schema:
                yield f"{prefix}{key}"
            else:
                yield from _unknown_fields(value, schema[key], f"{prefix}{key}.")
    elif isinstance(schema, list) and isinstance(data, list):
        for index, item in enumerate(data):
            yield from _unknown_fields(item, schema[0], f"{prefix}{index}.")


def _load_yaml(path: str, schema: Mapping[str, Any]) -> Any:
    """Load a yaml file, warning about fields the proxy does not support."""
    try:
        with open(path, "rb") as handle:
            contents = handle.read()
    except OSError as exc:
        raise ConfigError(f"failed to read file: {exc}") from exc
    try:
        data = yaml.safe_load(contents)
    except yaml.YAMLError as exc:
        raise ConfigError(f"unmarshal configuration failed: {exc}") from exc
    unknown = list(_unknown_fields(data, schema))
    if unknown:
        logger.warning(
            "unsupported fields %s in %s. Note that only a subset of traefik configuration "
            "fields are supported by the API server proxy.",
            ", ".join(unknown),
            path,
        )
    return data


def _load_traefik(path: str) -> TraefikConfiguration:
    data = _load_yaml(path, _TRAEFIK_SCHEMA)
    try:
        return TraefikConfiguration.from_mapping(data)
    except ValueError as exc:
        raise ConfigError(f"unmarshal configuration failed: {exc}") from exc


def default_provider_file() -> str:
    """Path of the provider file when the traefik configuration names none."""
    snap_data = os.environ.get("SNAP_DATA") or DEFAULT_SNAP_DATA
    parent = os.path.dirname(os.path.normpath(snap_data))
    return os.path.join(parent, "current", "args", "traefik", "provider.yaml")


def load_configuration(traefik_config_file: str) -> Configuration:
    """Load the proxy configuration from a traefik configuration file.

    If the provider file is watched, the returned configuration must be closed.
    """
    try:
        traefik = _load_traefik(traefik_config_file)
    except ConfigError as exc:
        raise ConfigError(f"failed to load traefik configuration: {exc}") from exc

    try:
        provider_data = _load_yaml(traefik.provider_filename, _PROVIDER_SCHEMA)
        provider = ProviderConfiguration.from_mapping(provider_data)
    except ValueError as exc:
        raise ConfigError(
            f"failed to load provider configuration: unmarshal configuration failed: {exc}"
        ) from exc
    except ConfigError as exc:
        raise ConfigError(f"failed to load provider configuration: {exc}") from exc

    if not provider.servers:
        raise ConfigError("empty list of control plane endpoints")

    config = Configuration(
        listen=traefik.api_server_address or DEFAULT_LISTEN,
        endpoints=sorted(provider.servers),
    )
    if traefik.provider_watch:
        try:
            config._watch(traefik.provider_filename)
        except OSError as exc:
            logger.warning("failed to setup file watch: %s", exc)
    return config


def update_configuration(endpoints: Iterable[str], traefik_config_file: str) -> None:
    """Write the control plane endpoints to the traefik provider file."""
    provider_file = ""
    try:
        provider_file = _load_traefik(traefik_config_file).provider_filename
    except ConfigError:
        pass
    if not provider_file:
        provider_file = default_provider_file()

    document = yaml.safe_dump(
        ProviderConfiguration.for_endpoints(endpoints).to_mapping(),
        default_flow_style=False,
        sort_keys=False,
    )
    try:
        fd = os.open(provider_file, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o664)
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(document)
    except OSError as exc:
        raise ConfigError(f"failed to update provider config: failed to write file: {exc}") from exc