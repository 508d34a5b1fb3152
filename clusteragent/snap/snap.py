"""Access to the files, tokens and commands of the local MicroK8s snap."""

from __future__ import annotations

import os
import platform
import subprocess
import threading
import time
from collections.abc import Callable, Mapping
from typing import BinaryIO, Union

import yaml

from clusteragent.util import commands
from clusteragent.util.files import file_exists, parse_argument_line, read_file
from clusteragent.util.token import (
    ALPHA,
    DIGITS,
    append_token,
    is_valid_token,
    new_random_string,
    remove_token,
)

DEFAULT_CAPI_PATH = "/capi"

CommandRunner = Callable[..., None]
_Data = Union[bytes, bytearray, str]

_GO_ARCH = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "aarch64": "arm64",
    "arm64": "arm64",
    "armv7l": "arm",
    "armv6l": "arm",
    "armhf": "arm",
    "i386": "386",
    "i686": "386",
    "x86": "386",
    "ppc64le": "ppc64le",
    "s390x": "s390x",
    "riscv64": "riscv64",
}


class SnapError(Exception):
    """An operation on the snap failed."""


def _go_arch() -> str:
    """Return the platform name used for image imports."""
    machine = platform.machine().lower()
    return _GO_ARCH.get(machine, machine)


def _join(base: str, *parts: str) -> str:
    elements = [element for element in (base, *parts) if element]
    if not elements:
        return ""
    return os.path.normpath(os.sep.join(elements))


def _write_file(path: str, data: _Data, mode: int) -> None:
    if isinstance(data, str):
        data = data.encode("utf-8")
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
    with os.fdopen(fd, "wb") as handle:
        handle.write(bytes(data))


def snapctl_service_name(service_name: str, has_kubelite: bool) -> str:
    """Infer the name of the snapctl daemon for a service."""
    if service_name in ("kube-apiserver", "kube-proxy", "kube-scheduler", "kube-controller-manager"):
        service_name = service_name[len("kube-"):]
    if has_kubelite and service_name in (
        "apiserver",
        "proxy",
        "kubelet",
        "scheduler",
        "controller-manager",
    ):
        service_name = "kubelite"
    if service_name.startswith("microk8s.daemon-"):
        return service_name
    return f"microk8s.daemon-{service_name}"


class Snap:
    """The cluster agent's view of the MicroK8s snap."""

    def __init__(
        self,
        snap_dir: str,
        snap_data_dir: str,
        snap_common_dir: str,
        *,
        capi_path: str = DEFAULT_CAPI_PATH,
        run_command: CommandRunner | None = None,
        apply_cni_retries: int = 1,
        apply_cni_backoff: float = 0.0,
    ) -> None:
        self.snap_dir = snap_dir
        self.snap_data_dir = snap_data_dir
        self.snap_common_dir = snap_common_dir
        self.capi_path = capi_path
        self._runner: CommandRunner = run_command or commands.run_command
        self.apply_cni_retries = max(apply_cni_retries, 1)
        self.apply_cni_backoff = apply_cni_backoff

        self._cluster_tokens_lock = threading.Lock()
        self._cert_tokens_lock = threading.Lock()
        self._callback_tokens_lock = threading.Lock()
        self._known_tokens_lock = threading.Lock()

    # Commands and paths

    def run_command(self, *args: str) -> None:
        """Run a command through the configured runner."""
        self._runner(*args)

    def get_snap_path(self, *args: str) -> str:
        """Return a path inside the snap directory."""
        return _join(self.snap_dir, *args)

    def get_snap_data_path(self, *args: str) -> str:
        """Return a path inside the snap's data directory."""
        return _join(self.snap_data_dir, *args)

    def get_snap_common_path(self, *args: str) -> str:
        """Return a path inside the snap's common directory."""
        return _join(self.snap_common_dir, *args)

    def get_capi_path(self, *args: str) -> str:
        """Return a path inside the CAPI directory."""
        return _join(self.capi_path, *args)

    def _is_strict(self) -> bool:
        try:
            meta = yaml.safe_load(read_file(self.get_snap_path("meta", "snapcraft.yaml")))
        except (OSError, yaml.YAMLError):
            return False
        return isinstance(meta, dict) and meta.get("confinement") == "strict"

    @property
    def group_name(self) -> str:
        """The group MicroK8s uses: "snap_microk8s" when strict, else "microk8s"."""
        return "snap_microk8s" if self._is_strict() else "microk8s"

    # Addons, services and upgrades

    def enable_addon(self, addon: str, *args: str) -> None:
        """Enable a MicroK8s addon."""
        self._runner(self.get_snap_path("microk8s-enable.wrapper"), addon, *args)

    def disable_addon(self, addon: str, *args: str) -> None:
        """Disable a MicroK8s addon."""
        self._runner(self.get_snap_path("microk8s-disable.wrapper"), addon, *args)

    def restart_service(self, service_name: str) -> None:
        """Restart a MicroK8s service through snapctl."""
        self._runner(
            "snapctl", "restart", snapctl_service_name(service_name, self.has_kubelite_lock())
        )

    def run_upgrade(self, upgrade: str, phase: str) -> None:
        """Run one phase (prepare, commit or rollback) of an upgrade script."""
        if phase not in ("prepare", "commit", "rollback"):
            raise SnapError(f"unknown upgrade phase {phase!r}")
        script = self.get_snap_path("upgrade-scripts", upgrade, f"{phase}-node.sh")
        if not file_exists(script):
            raise SnapError(f"could not find script {script}")
        try:
            self._runner(script)
        except Exception as exc:
            raise SnapError(f"failed to execute {script}: {exc}") from exc

    # Certificates and manifests

    def read_ca(self) -> str:
        """Return the CA certificate in PEM format."""
        return read_file(self.get_snap_data_path("certs", "ca.crt"))

    def read_ca_key(self) -> str:
        """Return the CA private key in PEM format."""
        return read_file(self.get_snap_data_path("certs", "ca.key"))

    def read_service_account_key(self) -> str:
        """Return the service account key in PEM format."""
        return read_file(self.get_snap_data_path("certs", "serviceaccount.key"))

    def _cni_yaml_path(self) -> str:
        return self.get_snap_data_path("args", "cni-network", "cni.yaml")

    def read_cni_yaml(self) -> str:
        """Return the CNI manifest."""
        return read_file(self._cni_yaml_path())

    def write_cni_yaml(self, manifest: _Data) -> None:
        """Replace the CNI manifest."""
        _write_file(self._cni_yaml_path(), manifest, 0o660)

    def apply_cni(self) -> None:
        """Apply the CNI manifest, retrying with a backoff between attempts."""
        error: BaseException | None = None
        for _ in range(self.apply_cni_retries):
            try:
                self._runner(
                    self.get_snap_path("microk8s-kubectl.wrapper"),
                    "apply",
                    "-f",
                    self._cni_yaml_path(),
                )
                return
            except Exception as exc:
                error = exc
            time.sleep(self.apply_cni_backoff)
        raise SnapError(f"failed after {self.apply_cni_retries} retries: {error}") from error

    def _backend_path(self, name: str) -> str:
        return self.get_snap_data_path("var", "kubernetes", "backend", name)

    def read_dqlite_cert(self) -> str:
        """Return the dqlite certificate in PEM format."""
        return read_file(self._backend_path("cluster.crt"))

    def read_dqlite_key(self) -> str:
        """Return the dqlite private key in PEM format."""
        return read_file(self._backend_path("cluster.key"))

    def read_dqlite_info_yaml(self) -> str:
        """Return the contents of dqlite's info.yaml."""
        return read_file(self._backend_path("info.yaml"))

    def read_dqlite_cluster_yaml(self) -> str:
        """Return the contents of dqlite's cluster.yaml."""
        return read_file(self._backend_path("cluster.yaml"))

    def write_dqlite_update_yaml(self, data: _Data) -> None:
        """Write dqlite's update.yaml."""
        _write_file(self._backend_path("update.yaml"), data, 0o660)

    @property
    def kubeconfig_file(self) -> str:
        """Path to the client kubeconfig file."""
        return self.get_snap_data_path("credentials", "client.config")

    # Locks

    def _lock_path(self, name: str) -> str:
        return self.get_snap_data_path("var", "lock", name)

    def has_kubelite_lock(self) -> bool:
        """Whether this node runs kubelite."""
        return file_exists(self._lock_path("lite.lock"))

    def has_dqlite_lock(self) -> bool:
        """Whether this node runs dqlite."""
        return file_exists(self._lock_path("ha-cluster"))

    def has_no_certs_reissue_lock(self) -> bool:
        """Whether CA certificate reissue is disabled on this node."""
        return file_exists(self._lock_path("no-cert-reissue"))

    def create_no_certs_reissue_lock(self) -> None:
        """Create the lock that disables CA certificate reissue."""
        os.close(os.open(self._lock_path("no-cert-reissue"), os.O_RDONLY | os.O_CREAT, 0o600))

    # Service arguments

    def read_service_arguments(self, service_name: str) -> str:
        """Return the arguments file of a service."""
        return read_file(self.get_snap_data_path("args", service_name))

    def write_service_arguments(self, service_name: str, arguments: _Data) -> None:
        """Replace the arguments file of a service."""
        _write_file(self.get_snap_data_path("args", service_name), arguments, 0o660)

    def _service_argument(self, service_name: str, argument: str) -> str:
        try:
            arguments = self.read_service_arguments(service_name)
        except OSError:
            return ""
        for line in arguments.split("\n"):
            line = line.strip()
            if not line:
                continue
            key, value = parse_argument_line(line)
            if key == argument:
                return value
        return ""

    # Tokens

    def _credentials_path(self, name: str) -> str:
        return self.get_snap_data_path("credentials", name)

    def consume_cluster_token(self, token: str) -> bool:
        """Check a join token; one-time tokens are removed once used."""
        with self._cluster_tokens_lock:
            valid, _ = is_valid_token(token, self._credentials_path("persistent-cluster-tokens.txt"))
            if valid:
                return True
            tokens_file = self._credentials_path("cluster-tokens.txt")
            valid, has_ttl = is_valid_token(token, tokens_file)
            if valid and not has_ttl:
                try:
                    remove_token(token, tokens_file, self.group_name)
                except OSError:
                    pass
            return valid

    def consume_certificate_request_token(self, token: str) -> bool:
        """Check a certificate request token and remove it once used."""
        with self._cert_tokens_lock:
            tokens_file = self._credentials_path("certs-request-tokens.txt")
            valid, _ = is_valid_token(token, tokens_file)
            if valid:
                try:
                    remove_token(token, tokens_file, self.group_name)
                except OSError:
                    pass
            return valid

    def consume_self_callback_token(self, token: str) -> bool:
        """Check the callback token of this cluster agent."""
        valid, _ = is_valid_token(token, self._credentials_path("callback-token.txt"))
        return valid

    def add_persistent_cluster_token(self, token: str) -> None:
        """Add a join token that never expires."""
        with self._cert_tokens_lock:
            append_token(
                token, self._credentials_path("persistent-cluster-tokens.txt"), self.group_name
            )

    def add_certificate_request_token(self, token: str) -> None:
        """Add a one-time certificate request token."""
        with self._cert_tokens_lock:
            append_token(token, self._credentials_path("certs-request-tokens.txt"), self.group_name)

    def add_callback_token(self, cluster_agent_endpoint: str, token: str) -> None:
        """Record the token used to call a remote cluster agent."""
        with self._callback_tokens_lock:
            append_token(
                f"{cluster_agent_endpoint} {token}",
                self._credentials_path("callback-tokens.txt"),
                self.group_name,
            )

    def get_or_create_self_callback_token(self) -> str:
        """Return this agent's callback token, creating it on first use."""
        with self._callback_tokens_lock:
            path = self._credentials_path("callback-token.txt")
            try:
                return read_file(path).strip()
            except OSError:
                pass
            token = new_random_string(ALPHA, 64)
            try:
                _write_file(path, f"{token}\n", 0o600)
            except OSError as exc:
                raise SnapError(f"failed to create callback token file: {exc}") from exc
            return token

    def get_or_create_kubelet_token(self, hostname: str) -> str:
        """Return the kubelet token for hostname, creating one if needed."""
        user = f"system:node:{hostname}"
        try:
            return self.get_known_token(user)
        except SnapError:
            pass
        token = new_random_string(ALPHA, 32)
        uid = new_random_string(DIGITS, 8)
        with self._known_tokens_lock:
            try:
                append_token(
                    f'{token},{user},kubelet-{uid},"system:nodes"',
                    self._credentials_path("known_tokens.csv"),
                    self.group_name,
                )
            except OSError as exc:
                raise SnapError(f"failed to add new kubelet token for {user}: {exc}") from exc
        return token

    def get_known_token(self, username: str) -> str:
        """Return the token of a user from known_tokens.csv."""
        with self._known_tokens_lock:
            try:
                contents = read_file(self._credentials_path("known_tokens.csv"))
            except OSError as exc:
                raise SnapError(
                    f"failed to retrieve known token for user {username}: {exc}"
                ) from exc
        for line in contents.split("\n"):
            parts = line.strip().split(",", 2)
            if len(parts) >= 2 and parts[1] == username:
                return parts[0]
        raise SnapError(f"no known token found for user {username}")

    def is_capi_auth_token_valid(self, token: str) -> bool:
        """Whether token matches the CAPI auth token."""
        try:
            contents = read_file(self.get_capi_path("etc", "token"))
        except OSError as exc:
            raise SnapError(f"failed to read token file: {exc}") from exc
        return contents.strip() == token

    # External tools

    def sign_certificate(self, csr_pem: _Data) -> bytes:
        """Sign a certificate request and return the certificate in PEM format."""
        if isinstance(csr_pem, str):
            csr_pem = csr_pem.encode("utf-8")
        command = [self.get_snap_path("actions", "common", "utils.sh"), "sign_certificate"]
        try:
            result = subprocess.run(command, input=bytes(csr_pem), stdout=subprocess.PIPE)
        except OSError as exc:
            raise SnapError(f"sign_certificate failed: {exc}") from exc
        if result.returncode != 0:
            raise SnapError(f"sign_certificate failed: exit status {result.returncode}")
        return result.stdout

    def import_image(self, stream: BinaryIO | bytes) -> None:
        """Import an OCI image read from stream into containerd."""
        data = stream if isinstance(stream, (bytes, bytearray)) else stream.read()
        command = [
            self.get_snap_path("bin", "ctr"),
            "--namespace",
            "k8s.io",
            "--address",
            self.get_snap_common_path("run", "containerd.sock"),
            "image",
            "import",
            "--platform",
            _go_arch(),
            "-",
        ]
        try:
            result = subprocess.run(command, input=bytes(data), stdout=2)
        except OSError as exc:
            raise SnapError(f"microk8s.ctr command failed: {exc}") from exc
        if result.returncode != 0:
            raise SnapError(f"microk8s.ctr command failed: exit status {result.returncode}")

    def write_csr_config(self, csr_conf: _Data) -> None:
        """Replace csr.conf.template on the local node."""
        _write_file(self.get_snap_data_path("certs", "csr.conf.template"), csr_conf, 0o660)

    def update_containerd_registry_configs(self, configs: Mapping[str, _Data]) -> None:
        """Write a hosts.toml file for each registry."""
        hosts_dir = os.path.abspath(self.get_snap_data_path("args", "certs.d"))
        for registry, hosts_toml in configs.items():
            directory = os.path.abspath(_join(hosts_dir, registry))
            if not directory.startswith(hosts_dir):
                raise SnapError("invalid registry name, possible path-traversal prevented")
            try:
                os.makedirs(directory, mode=0o755, exist_ok=True)
            except OSError as exc:
                raise SnapError(
                    f"failed to create directory for registry {registry}: {exc}"
                ) from exc
            try:
                _write_file(os.path.join(directory, "hosts.toml"), hosts_toml, 0o644)
            except OSError as exc:
                raise SnapError(
                    f"failed to write hosts.toml for registry {registry}: {exc}"
                ) from exc

    def add_addons_repository(self, name: str, url: str, reference: str, force: bool) -> None:
        """Configure an addons repository on the local node."""
        command = [self.get_snap_path("microk8s-addons.wrapper"), "repo", "add", name, url]
        if reference:
            command += ["--reference", reference]
        if force:
            command.append("--force")
        try:
            self._runner(*command)
        except Exception as exc:
            raise SnapError(f"failed to execute addons repo add command: {exc}") from exc

    def join_cluster(self, url: str, worker: bool) -> None:
        """Join an existing cluster as a control plane or worker node."""
        command = [self.get_snap_path("microk8s-join.wrapper"), url]
        if worker:
            command.append("--worker")
        try:
            self._runner(*command)
        except Exception as exc:
            raise SnapError(f"failed to execute microk8s join command: {exc}") from exc

    def read_etcd_certificates(self) -> tuple[str, str, str]:
        """Return the etcd CA, certificate and key used by kube-apiserver.

        Certificates that are not configured come back as empty strings.
        """
        results = []
        for argument in ("--etcd-cafile", "--etcd-certfile", "--etcd-keyfile"):
            cert_file = self._service_argument("kube-apiserver", argument).strip('"')
            cert_file = cert_file.replace("$SNAP_DATA", self.snap_data_dir)
            cert_file = cert_file.replace("${SNAP_DATA}", self.snap_data_dir)
            if not cert_file:
                results.append("")
                continue
            try:
                results.append(read_file(cert_file))
            except OSError as exc:
                raise SnapError(f"failed to read {argument}: {exc}") from exc
        ca, cert, key = results
        return ca, cert, key