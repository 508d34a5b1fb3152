# clusteragent

Building blocks for a cluster agent that runs alongside a snap-packaged
Kubernetes distribution.

## Contents

- `clusteragent.util.files`: `file_exists`, `read_file`, `setup_permissions`
  and `parse_argument_line` for `--key=value` / `--key value` lines.
- `clusteragent.util.token`: `new_random_string` (with the `ALPHA` and
  `DIGITS` alphabets), and token files with optional expiry
  (`token|unix-timestamp`): `is_valid_token`, `append_token`, `remove_token`.
- `clusteragent.util.csr`: `generate_csr_conf` renders a `csr.conf.template`
  with the default SANs plus any extra IPs or DNS names.
- `clusteragent.util.commands`: `run_command` runs a command and raises
  `CommandError` on a non-zero exit; an optional `cancel` event kills it.
- `clusteragent.util.remote`: `get_remote_host` returns a joining node's
  hostname if it resolves to the remote IP, otherwise the remote IP.
- `clusteragent.snap.snap`: the `Snap` class, giving access to paths, locks,
  certificates, dqlite files, service arguments, tokens, addons, upgrades,
  image import, certificate signing, containerd registry configuration and
  cluster joining. Failures are raised as `SnapError`.
- `clusteragent.snap.services`: `get_service_argument` and
  `update_service_arguments` for service argument files.
- `clusteragent.snaputil.calico`: `maybe_patch_calico_autodetection_method`
  switches calico from `first-found` to `can-reach=<ip>`.
- `clusteragent.snaputil.dqlite`: `DqliteClusterNode`, `get_dqlite_cluster`,
  `update_dqlite_ip`, `wait_for_dqlite_cluster`,
  `maybe_update_dqlite_bind_address` and `remove_node_from_dqlite`; failures
  are raised as `DqliteError`.
- `clusteragent.snaputil.kubectl`: `parse_node_internal_ips` picks the
  `InternalIP` addresses out of Kubernetes node objects (plain mappings).
- `clusteragent.proxy.config`: loading and writing the Traefik-compatible
  configuration of the API server proxy (`load_configuration`,
  `update_configuration`, `default_provider_file`), with an optional watch on
  the provider file.
- `clusteragent.proxy.endpoints`: `parse_addresses` turns a Kubernetes
  Endpoints object (a plain mapping) into sorted `ip:port` strings.

## Installation

```
pip install .
```

To run the tests:

```
pip install .[test]
pytest
```

## Examples

Service arguments:

```python
from clusteragent.snap.snap import Snap
from clusteragent.snap.services import get_service_argument, update_service_arguments

snap = Snap("/snap/microk8s/current", "/var/snap/microk8s/current", "/var/snap/microk8s/common")
port = get_service_argument(snap, "kube-apiserver", "--secure-port")
changed = update_service_arguments(snap, "kube-apiserver", [{"--v": "2"}], ["--insecure-port"])
```

Commands are run through the runner given to `Snap`, which makes them easy to
record:

```python
calls = []
snap = Snap("testdata", "testdata", "testdata", run_command=lambda *args: calls.append(args))
snap.enable_addon("dns")
snap.restart_service("kube-apiserver")
```

Proxy configuration:

```python
from clusteragent.proxy.config import load_configuration, update_configuration

with load_configuration("/var/snap/microk8s/current/args/traefik/traefik.yaml") as config:
    print(config.listen, config.endpoints)
    if config.changed.is_set():
        print("provider file changed on disk")

update_configuration(["10.0.0.4:16443", "10.0.0.5:16443"],
                     "/var/snap/microk8s/current/args/traefik/traefik.yaml")
```

## What this package does not do

- It does not forward connections: there is no running TCP proxy, only the
  configuration it would read and the endpoint parsing it would use.
- It does not talk to the Kubernetes API. `parse_addresses` and
  `parse_node_internal_ips` work on objects you have already fetched.
- It has no HTTP server and no command-line entry point.