import logging
import os

import pytest
import yaml

from clusteragent.proxy.config import (
    ConfigError,
    Configuration,
    ProviderConfiguration,
    TraefikConfiguration,
    default_provider_file,
    load_configuration,
    update_configuration,
)

PROVIDER_YAML = """
tcp:
  routers:
    Router-1:
      rule: "HostSNI(`*`)"
      service: "kube-apiserver"
      tls:
        passthrough: true
  services:
    kube-apiserver:
      loadBalancer:
        servers:
          - address: 10.0.0.3:16443
          - address: 10.0.0.1:16443
          - address: 10.0.0.2:16443
"""


def _traefik_yaml(provider, watch=False, address=":16443"):
    lines = ["entryPoints:", "  apiserver:"]
    if address is not None:
        lines.append(f'    address: "{address}"')
    lines += [
        "providers:",
        "  file:",
        f"    filename: {provider}",
        f"    watch: {'true' if watch else 'false'}",
    ]
    return "\n".join(lines) + "\n"


@pytest.fixture
def files(tmp_path):
    provider = tmp_path / "provider.yaml"
    provider.write_text(PROVIDER_YAML)
    traefik = tmp_path / "traefik.yaml"
    traefik.write_text(_traefik_yaml(provider))
    return traefik, provider


def test_load(files):
    traefik, _ = files
    with load_configuration(str(traefik)) as cfg:
        assert cfg.endpoints == ["10.0.0.1:16443", "10.0.0.2:16443", "10.0.0.3:16443"]
        assert cfg.listen == ":16443"


def test_load_default_listen(tmp_path, files):
    _, provider = files
    traefik = tmp_path / "other.yaml"
    traefik.write_text(_traefik_yaml(provider, address=None))
    with load_configuration(str(traefik)) as cfg:
        assert cfg.listen == ":16443"


def test_update(files):
    traefik, provider = files
    update_configuration(["10.0.0.4:16443", "10.0.0.5:16443"], str(traefik))
    with load_configuration(str(traefik)) as cfg:
        assert cfg.endpoints == ["10.0.0.4:16443", "10.0.0.5:16443"]
    written = ProviderConfiguration.from_mapping(yaml.safe_load(provider.read_text()))
    assert written.router_rule == "HostSNI(`*`)"
    assert written.router_service == "kube-apiserver"
    assert written.tls_passthrough is True


def test_config_changed(tmp_path, files):
    _, provider = files
    traefik = tmp_path / "watched.yaml"
    traefik.write_text(_traefik_yaml(provider, watch=True))
    cfg = load_configuration(str(traefik))
    try:
        assert not cfg.changed.is_set()
        os.remove(provider)
        assert cfg.changed.wait(5)
    finally:
        cfg.close()


def test_missing_traefik_file(tmp_path):
    with pytest.raises(ConfigError, match="failed to load traefik configuration"):
        load_configuration(str(tmp_path / "missing.yaml"))


def test_missing_provider_file(tmp_path):
    traefik = tmp_path / "traefik.yaml"
    traefik.write_text(_traefik_yaml(tmp_path / "missing.yaml"))
    with pytest.raises(ConfigError, match="failed to load provider configuration"):
        load_configuration(str(traefik))


def test_empty_servers(tmp_path):
    provider = tmp_path / "provider.yaml"
    provider.write_text("tcp:\n  services:\n    kube-apiserver:\n      loadBalancer:\n        servers: []\n")
    traefik = tmp_path / "traefik.yaml"
    traefik.write_text(_traefik_yaml(provider))
    with pytest.raises(ConfigError, match="empty list of control plane endpoints"):
        load_configuration(str(traefik))


def test_unknown_fields_warn(tmp_path, files, caplog):
    _, provider = files
    traefik = tmp_path / "extra.yaml"
    traefik.write_text(_traefik_yaml(provider) + "log:\n  level: DEBUG\n")
    with caplog.at_level(logging.WARNING):
        with load_configuration(str(traefik)) as cfg:
            assert len(cfg.endpoints) == 3
    assert "log" in caplog.text


def test_malformed_section(tmp_path):
    traefik = tmp_path / "traefik.yaml"
    traefik.write_text("providers: just-a-string\n")
    with pytest.raises(ConfigError):
        load_configuration(str(traefik))


def test_update_falls_back_to_default_provider(tmp_path, monkeypatch):
    target = tmp_path / "current" / "args" / "traefik"
    target.mkdir(parents=True)
    monkeypatch.setenv("SNAP_DATA", str(tmp_path / "1010"))
    update_configuration(["10.0.0.9:16443"], str(tmp_path / "missing.yaml"))
    data = yaml.safe_load((target / "provider.yaml").read_text())
    assert ProviderConfiguration.from_mapping(data).servers == ["10.0.0.9:16443"]


@pytest.mark.parametrize(
    "snap_data, expected",
    [
        ("", "/var/snap/microk8s/current/args/traefik/provider.yaml"),
        ("/var/snap/microk8s/current", "/var/snap/microk8s/current/args/traefik/provider.yaml"),
        ("/var/snap/microk8s2/1010", "/var/snap/microk8s2/current/args/traefik/provider.yaml"),
    ],
)
def test_default_provider_file(monkeypatch, snap_data, expected):
    monkeypatch.setenv("SNAP_DATA", snap_data)
    assert default_provider_file() == expected


def test_provider_round_trip():
    original = ProviderConfiguration.for_endpoints(["1.1.1.1:16443", "2.2.2.2:16443"])
    assert ProviderConfiguration.from_mapping(original.to_mapping()) == original


def test_traefik_from_mapping():
    cfg = TraefikConfiguration.from_mapping(
        {
            "entryPoints": {"apiserver": {"address": ":1234"}},
            "providers": {"file": {"filename": "p.yaml", "watch": True}},
        }
    )
    assert cfg == TraefikConfiguration(":1234", "p.yaml", True)


def test_close_without_watch_keeps_event_unset():
    cfg = Configuration(listen=":1", endpoints=["a:1"])
    cfg.close()
    assert cfg.changed.is_set() is False